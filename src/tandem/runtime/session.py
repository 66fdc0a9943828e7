from __future__ import annotations

import os
import select
import shutil
import signal
import sys
import threading
import time
from typing import Any, Callable, Optional

from prompt_toolkit.input import create_input
from prompt_toolkit.keys import Keys

from tandem.build import pipeline
from tandem.build.bundler import CommandBundler
from tandem.cli.formatter import OutputFormatter
from tandem.core.models import BuildOptions
from tandem.listener import AssetServer
from tandem.runtime.loader import guess_compiled_path
from tandem.runtime.supervisor import HotReloadSupervisor

QUIT_KEY = "q"


def clean(options: BuildOptions) -> bool:
    """Delete the compiled output directory. Never touches a directory inside `src`."""
    started_at = time.perf_counter()
    compiled_path = guess_compiled_path(options)

    try:
        relative_parts = compiled_path.resolve().relative_to(options.root_path.resolve()).parts
    except ValueError:
        relative_parts = compiled_path.parts
    if "src" in relative_parts or not compiled_path.exists():
        return False

    shutil.rmtree(compiled_path)
    if options.is_logging_enabled:
        OutputFormatter.step(f"Deleted {options.output_dir} directory", time.perf_counter() - started_at)
    return True


class Session:
    """
    One clean -> compile -> run lifecycle.

    Every way out (a fatal build error, an uncaught error on any thread,
    Ctrl+c, SIGTERM or the `q` key) ends in `shutdown()`, which stops the
    bundler before anything else and waits for it.
    """

    def __init__(
        self,
        options: BuildOptions,
        bundler_factory: pipeline.BundlerFactory = CommandBundler.from_options,
        supervisor_factory: Callable[[BuildOptions], HotReloadSupervisor] = HotReloadSupervisor,
        read_keys: Optional[bool] = None,
    ) -> None:
        self.options = options
        self.bundler_factory = bundler_factory
        self.supervisor_factory = supervisor_factory
        if read_keys is None:
            read_keys = sys.stdin is not None and sys.stdin.isatty() and os.name != "nt"
        self.read_keys = read_keys

        self.handles = pipeline.PipelineHandles()
        self.supervisor: Optional[HotReloadSupervisor] = None
        self.asset_server: Optional[AssetServer] = None

        self.exit_code = 0
        self._shutdown_requested = threading.Event()
        self._shutdown_lock = threading.Lock()
        self._is_shut_down = False
        self._previous_thread_hook: Optional[Callable[..., Any]] = None
        self._previous_sigterm: Any = None

    def clean(self) -> bool:
        if self.options.is_production:
            # Production caches may still point at the previous output.
            return False
        return clean(self.options)

    def compile(self) -> None:
        pipeline.compile(self.options, self.handles, self.bundler_factory)

    def run(self) -> None:
        """Bring up the listener (and the asset server) and block until shutdown is requested."""
        self.supervisor = self.supervisor_factory(self.options)
        self.supervisor.start()

        if self.options.asset_port is not None:
            public_dir = guess_compiled_path(self.options) / "public"
            self.asset_server = AssetServer(public_dir, self.options.public_path, host=self.options.env.host)
            self.asset_server.listen(self.options.asset_port)

        self.wait()

    def compile_and_run(self) -> int:
        self._install_hooks()
        try:
            if self.options.is_logging_enabled:
                OutputFormatter.log("")
            self.clean()
            self.compile()
            self.run()
        except KeyboardInterrupt:
            OutputFormatter.log("Server stopped.")
        except Exception as error:
            OutputFormatter.print_error(error)
            self.exit_code = 1
        finally:
            self.shutdown()
            self._restore_hooks()
        return self.exit_code

    def request_shutdown(self, exit_code: int = 0) -> None:
        """Ask the main thread to tear down. Safe to call from any thread."""
        self.exit_code = max(self.exit_code, exit_code)
        self._shutdown_requested.set()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested.is_set()

    def wait(self) -> None:
        if self.read_keys:
            self._wait_for_keys()
            return

        while not self._shutdown_requested.wait(0.2):
            pass

    def shutdown(self) -> None:
        """Stop the bundler, the compiler watch, the listener and the asset server. Idempotent."""
        with self._shutdown_lock:
            if self._is_shut_down:
                return
            self._is_shut_down = True

        self._shutdown_requested.set()

        if self.handles.bundler is not None:
            self.handles.bundler.stop()
        if self.handles.watch_process is not None:
            self.handles.watch_process.stop()
        if self.supervisor is not None:
            self.supervisor.stop()
        if self.asset_server is not None:
            self.asset_server.destroy()

    def _wait_for_keys(self) -> None:
        key_input = create_input()
        with key_input.raw_mode():
            while not self._shutdown_requested.is_set():
                ready, _, _ = select.select([key_input.fileno()], [], [], 0.2)
                if not ready:
                    continue
                for key_press in key_input.read_keys():
                    if key_press.key == Keys.ControlC or key_press.data == QUIT_KEY:
                        OutputFormatter.log("Server stopped.")
                        self.request_shutdown(0)

    def _thread_excepthook(self, args: threading.ExceptHookArgs) -> None:
        OutputFormatter.print_error(args.exc_value)
        self.request_shutdown(1)

    def _handle_sigterm(self, signum: int, frame: Any) -> None:
        self.request_shutdown(0)

    def _install_hooks(self) -> None:
        self._previous_thread_hook = threading.excepthook
        threading.excepthook = self._thread_excepthook
        if threading.current_thread() is threading.main_thread():
            self._previous_sigterm = signal.signal(signal.SIGTERM, self._handle_sigterm)

    def _restore_hooks(self) -> None:
        if self._previous_thread_hook is not None:
            threading.excepthook = self._previous_thread_hook
            self._previous_thread_hook = None
        if self._previous_sigterm is not None:
            signal.signal(signal.SIGTERM, self._previous_sigterm)
            self._previous_sigterm = None


def compile_and_run(options: BuildOptions, **session_kwargs: Any) -> int:
    """Clean and compile the app, then run it until asked to stop. Returns the exit code."""
    return Session(options, **session_kwargs).compile_and_run()
