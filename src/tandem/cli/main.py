import typer
from pathlib import Path
from typing import Any, Dict, Optional

from tandem.cli.formatter import OutputFormatter
from tandem.config.loader import resolve_options
from tandem.core.models import BuildOptions
from tandem.runtime.loader import find_source_views, load_server
from tandem.runtime.session import Session
from tandem.utils.diagnostics import ConfigError, TandemError

app = typer.Typer(name="tandem", help="Tandem development orchestrator", rich_markup_mode=None)

COMMAND_SETTINGS = {"allow_extra_args": True, "ignore_unknown_options": True}


def _read_option_value(tokens: list[str], index: int, option_name: str) -> tuple[str, int]:
    if index + 1 >= len(tokens):
        raise typer.BadParameter(f"Option {option_name} requires a value.")
    return tokens[index + 1], index + 2


def _parse_port(value: str, option_name: str) -> int:
    try:
        port = int(value)
    except ValueError as exc:
        raise typer.BadParameter(f"Option {option_name} must be an integer.") from exc
    if port < 1 or port > 65535:
        raise typer.BadParameter(f"Option {option_name} must be between 1 and 65535.")
    return port


def _parse_common_options(ctx: typer.Context) -> Dict[str, Any]:
    """Parse --root, --production, --port and --quiet out of the raw argument list."""
    root_dir: Optional[Path] = None
    env: Dict[str, Any] = {}
    overrides: Dict[str, Any] = {}

    tokens = list(ctx.args)
    extras: list[str] = []
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token in ("--root", "-r"):
            root_value, index = _read_option_value(tokens, index, token)
            root_dir = Path(root_value)
            continue
        if token.startswith("--root="):
            root_dir = Path(token.split("=", 1)[1])
            index += 1
            continue
        if token in ("--port", "-p"):
            port_value, index = _read_option_value(tokens, index, token)
            env["port"] = _parse_port(port_value, token)
            continue
        if token.startswith("--port="):
            env["port"] = _parse_port(token.split("=", 1)[1], "--port")
            index += 1
            continue
        if token == "--production":
            env["app_env"] = "production"
            index += 1
            continue
        if token in ("--quiet", "-q"):
            overrides["is_logging_enabled"] = False
            index += 1
            continue
        if token.startswith("-"):
            raise typer.BadParameter(f"Unknown option: {token}")
        extras.append(token)
        index += 1

    if extras and root_dir is None:
        root_dir = Path(extras.pop(0))
    if extras:
        raise typer.BadParameter(f"Unexpected arguments: {' '.join(extras)}")

    return {"root_path": root_dir, "env": env, **overrides}


def _load_options(ctx: typer.Context) -> BuildOptions:
    parsed = _parse_common_options(ctx)
    try:
        return resolve_options(**parsed)
    except ConfigError as e:
        OutputFormatter.print_error(e)
        raise typer.Exit(code=1)


@app.command(context_settings=COMMAND_SETTINGS)
def run(ctx: typer.Context):
    """Clean, compile server and client, then serve with hot reload."""
    options = _load_options(ctx)
    exit_code = Session(options).compile_and_run()
    raise typer.Exit(code=exit_code)


@app.command("compile", context_settings=COMMAND_SETTINGS)
def compile_command(ctx: typer.Context):
    """Clean and compile server and client once, then exit."""
    options = _load_options(ctx)
    session = Session(options, read_keys=False)

    exit_code = 0
    try:
        session.clean()
        # Watchers started by the pipeline are stopped again by shutdown() below.
        session.compile()
    except TandemError as e:
        OutputFormatter.print_error(e)
        exit_code = 1
    finally:
        session.shutdown()

    raise typer.Exit(code=exit_code)


@app.command(context_settings=COMMAND_SETTINGS)
def clean(ctx: typer.Context):
    """Delete the compiled output directory."""
    options = _load_options(ctx)
    removed = Session(options).clean()
    if not removed and options.is_logging_enabled:
        OutputFormatter.log("Nothing to clean.", severity="info")


@app.command(context_settings=COMMAND_SETTINGS)
def check(ctx: typer.Context):
    """Load the server once and report whether it can listen."""
    options = _load_options(ctx)
    try:
        handle = load_server(options)
    except TandemError as e:
        OutputFormatter.print_diagnostics([e.to_diagnostic()])
        raise typer.Exit(code=1)

    OutputFormatter.log(f"Server at {handle.path} responds to listen.", severity="success")
    views = find_source_views(handle)
    if views is not None:
        OutputFormatter.log(f"Source views: {views}", severity="info")


if __name__ == "__main__":
    app()
