from typing import List, Optional
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from tandem.utils.diagnostics import BundleError, TandemDiagnostic, TandemError

# Create a stderr console for logging
error_console = Console(stderr=True)

RESOLVED_MESSAGE = "Looks like the problem is fixed now"

class OutputFormatter:
    """
    Operator-facing console output for the build and reload loops.
    Everything goes to stderr so the served application owns stdout.
    """

    @staticmethod
    def log(message: str, severity: str = "info") -> None:
        """
        Print system messages to stderr with color coding.
        """
        style = "white"

        if severity == "warning":
            style = "yellow"
        elif severity == "error":
            style = "red"
        elif severity == "critical":
            style = "bold red"
        elif severity == "success":
            style = "green"

        error_console.print(f"[{style}]{escape(message)}[/{style}]")

    @staticmethod
    def step(message: str, elapsed: Optional[float] = None) -> None:
        """Print a completed pipeline step, e.g. `• Compiled server 0.42s`."""
        timing = f" [bright_black]{elapsed:.2f}s[/bright_black]" if elapsed is not None else ""
        error_console.print(f"  [yellow]•[/yellow] {escape(message)}{timing}")

    @staticmethod
    def problem(message: str) -> None:
        error_console.print(f"  [red]• {escape(message)}[/red]")
        error_console.print()

    @staticmethod
    def resolved() -> None:
        error_console.print()
        error_console.print(f"  [bright_green]• {RESOLVED_MESSAGE}[/bright_green]")

    @staticmethod
    def running(url: str, again: bool = False) -> None:
        label = "Running again at" if again else "Running at"
        error_console.print()
        error_console.print(f" [bold]{label} {escape(url)}[/bold]")
        error_console.print("    [bright_black]Press Ctrl+c or q to quit[/bright_black]")
        error_console.print()

    @staticmethod
    def print_error(error: BaseException) -> None:
        """
        Print an error, preferring the bundler's highlighted code frame when present.
        """
        if isinstance(error, BundleError) and error.highlighted_code_frame:
            if error.file_name:
                error_console.print(escape(error.file_name))
            # Frames arrive pre-colored; print them untouched.
            error_console.print(error.highlighted_code_frame, markup=False, highlight=False)
            return

        if isinstance(error, TandemError):
            error_console.print(f"[red]{escape(str(error.to_diagnostic()))}[/red]")
            cause = error.__cause__
            if cause is not None:
                error_console.print(f"[bright_black]{escape(type(cause).__name__)}: {escape(str(cause))}[/bright_black]")
            return

        error_console.print(f"[red]{escape(type(error).__name__)}: {escape(str(error))}[/red]")

    @staticmethod
    def print_diagnostics(diagnostics: List[TandemDiagnostic]) -> None:
        """
        Prints a table of collected diagnostics.
        """
        if not diagnostics:
            return

        table = Table(title="Tandem Diagnostics", border_style="red", header_style="bold red")
        table.add_column("Severity", style="bold")
        table.add_column("Code")
        table.add_column("Message")
        table.add_column("Location")

        for diag in diagnostics:
            color = "red"
            if diag.severity == "warning":
                color = "yellow"
            elif diag.severity == "critical":
                color = "bold red"

            loc = f"{diag.file_path}"
            if diag.line_number:
                loc += f":{diag.line_number}"

            table.add_row(
                f"[{color}]{diag.severity.upper()}[/{color}]",
                diag.error_code,
                escape(diag.message),
                loc
            )

        error_console.print(table)
        error_console.print() # spacing
