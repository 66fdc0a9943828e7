from __future__ import annotations

import os
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from tandem.build.bundler import BUILD_ERROR, BUILD_START, BUNDLED, Bundle, Bundler, CommandBundler
from tandem.build.template_injector import BUNDLE_DELIMITER, inject_template, split_bundle_markup
from tandem.cli.formatter import OutputFormatter
from tandem.core.models import BuildOptions
from tandem.runtime.contracts import ProblemState
from tandem.runtime.loader import find_source_views, load_server
from tandem.utils.diagnostics import BundleError, CompileError, TandemError

BundlerFactory = Callable[[Path, BuildOptions, bool], Bundler]


class WatchProcess:
    """A long-running child process owned by the session (e.g. the compiler in watch mode)."""

    def __init__(self, command: List[str], cwd: Optional[Path] = None) -> None:
        self.command = command
        self.cwd = cwd
        self.process: Optional[subprocess.Popen] = None

    def start(self) -> "WatchProcess":
        self.process = subprocess.Popen(
            self.command,
            cwd=str(self.cwd) if self.cwd else None,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        return self

    @property
    def is_running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def stop(self, timeout: float = 5.0) -> None:
        if self.process is None or self.process.poll() is not None:
            return
        self.process.terminate()
        try:
            self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            self.process.kill()
            self.process.wait()


@dataclass
class PipelineHandles:
    """Long-lived resources created by the pipeline. The session tears these down."""

    watch_process: Optional[WatchProcess] = None
    bundler: Optional[Bundler] = None
    client_problem: ProblemState = field(default_factory=ProblemState)


def _elapsed(started_at: float) -> float:
    return time.perf_counter() - started_at


def compile_server(options: BuildOptions) -> Optional[WatchProcess]:
    """
    Run the server compile command once; outside production also start it in watch mode.

    Raises:
        CompileError: the command could not be run or exited non-zero.
    """
    started_at = time.perf_counter()
    command = list(options.server_compile_command)

    try:
        completed = subprocess.run(
            command,
            cwd=str(options.root_path),
            capture_output=True,
            text=True,
        )
    except OSError as exc:
        OutputFormatter.problem("There was a problem compiling the server")
        raise CompileError(f"Unable to run {command[0]!r}: {exc}", path=str(options.root_path)) from exc

    if completed.returncode != 0:
        OutputFormatter.problem("There was a problem compiling the server")
        details = (completed.stdout or "") + (completed.stderr or "")
        raise CompileError(
            f"{' '.join(command)} exited with status {completed.returncode}"
            + (f":\n{details.strip()}" if details.strip() else "."),
            path=str(options.root_path),
            returncode=completed.returncode,
        )

    if options.is_logging_enabled:
        OutputFormatter.step("Compiled server", _elapsed(started_at))

    if options.is_production:
        return None

    return WatchProcess(command + [options.server_watch_flag], cwd=options.root_path).start()


def write_client_entry(options: BuildOptions) -> Path:
    """
    Write the synthetic HTML entry the bundler starts from.

    It references the script entry and, when present, the stylesheet entry,
    separated by BUNDLE_DELIMITER so the generated markup can be split again.
    """
    entry_path = options.cache_path / "client.html"
    entry_path.parent.mkdir(parents=True, exist_ok=True)

    script_path = Path(os.path.relpath(options.root_path / options.client_index, entry_path.parent)).as_posix()
    parts = [f'<script src="{script_path}"></script>']

    if options.styles_index and (options.root_path / options.styles_index).exists():
        styles_path = Path(os.path.relpath(options.root_path / options.styles_index, entry_path.parent)).as_posix()
        parts.append(BUNDLE_DELIMITER)
        parts.append(f'<link rel="stylesheet" href="{styles_path}" />')

    entry_path.write_text("\n".join(parts) + "\n", encoding="utf-8")
    return entry_path


def _source_views(options: BuildOptions) -> Optional[Path]:
    quiet_options = options.model_copy(update={"is_logging_enabled": False})
    try:
        return find_source_views(load_server(quiet_options))
    except TandemError:
        return None


class ClientBuild:
    """Handlers wired onto a bundler for one session's client build loop."""

    def __init__(self, options: BuildOptions, problem: ProblemState) -> None:
        self.options = options
        self.problem = problem
        self.is_first_build = True
        self.first_build_error: Optional[TandemError] = None
        self.started_at = time.perf_counter()
        self._lock = threading.Lock()

    def attach(self, bundler: Bundler) -> None:
        bundler.on(BUILD_START, self.on_build_start)
        bundler.on(BUNDLED, self.on_bundled)
        bundler.on(BUILD_ERROR, self.on_build_error)

    def on_build_start(self, entry_points: object) -> None:
        self.started_at = time.perf_counter()

    def on_bundled(self, bundle: Bundle) -> None:
        with self._lock:
            if bundle.entry_html:
                try:
                    inject_template(self.options, split_bundle_markup(bundle.entry_html), _source_views(self.options))
                except TandemError as error:
                    self._fail(error)
                    return

            if self.problem.record_success() and self.options.is_logging_enabled:
                OutputFormatter.resolved()

            if self.is_first_build:
                self.is_first_build = False
                if self.options.is_logging_enabled:
                    OutputFormatter.step("Compiled client", _elapsed(self.started_at))

    def on_build_error(self, error: BundleError) -> None:
        with self._lock:
            self._fail(error)

    def _fail(self, error: TandemError) -> None:
        self.problem.record_failure()
        OutputFormatter.problem("There was a problem compiling the client")
        OutputFormatter.print_error(error)

        if self.is_first_build:
            self.first_build_error = error
            OutputFormatter.log("Try again once the problem is resolved.", severity="warning")


def compile_client(
    options: BuildOptions,
    handles: Optional[PipelineHandles] = None,
    bundler_factory: BundlerFactory = CommandBundler.from_options,
) -> PipelineHandles:
    """
    Bundle the client and inject the result into the HTML template.

    The first build runs before this returns. A failing first build re-raises
    its BundleError (or the TemplateError/TemplateMissing from injection);
    later failures are reported and the last output stays served.
    """
    handles = handles or PipelineHandles()
    entry_path = write_client_entry(options)

    bundler = bundler_factory(entry_path, options, not options.is_production)
    handles.bundler = bundler

    options.on_before_bundle(bundler)

    client_build = ClientBuild(options, handles.client_problem)
    client_build.attach(bundler)

    bundler.bundle()

    if client_build.first_build_error is not None:
        raise client_build.first_build_error

    return handles


def compile(
    options: BuildOptions,
    handles: Optional[PipelineHandles] = None,
    bundler_factory: BundlerFactory = CommandBundler.from_options,
) -> PipelineHandles:
    """
    Compile the server, then the client.

    The client step never starts before the server step has finished, since
    template injection asks the loaded server for its view directories.
    """
    handles = handles or PipelineHandles()
    handles.watch_process = compile_server(options)
    compile_client(options, handles, bundler_factory)
    return handles
