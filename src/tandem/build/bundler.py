from __future__ import annotations

import os
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol

from dotenv import dotenv_values

from tandem.core.models import BuildOptions, WatchSettings
from tandem.runtime.polling_watcher import PollingWatcher
from tandem.utils.diagnostics import BundleError

BUILD_START = "build_start"
BUNDLED = "bundled"
BUILD_ERROR = "build_error"

OUT_FILE = "client.html"


@dataclass(frozen=True)
class Bundle:
    """One finished bundling pass. `entry_html` is the generated entry markup, if any."""

    entry_html: Optional[str]
    out_dir: Path


class Bundler(Protocol):
    """Client bundler contract: event handlers, a first build, and a stop operation."""

    def on(self, event: str, handler: Callable[..., None]) -> None:
        ...

    def bundle(self) -> bool:
        ...

    def stop(self) -> None:
        ...


def bundle_environment(options: BuildOptions) -> Dict[str, str]:
    """Environment for the bundler: `.env` values, then the real environment on top."""
    env: Dict[str, str] = {
        key: value for key, value in dotenv_values(options.root_path / ".env").items() if value is not None
    }
    env.update(os.environ)
    env.setdefault("NODE_ENV", "production" if options.is_production else "development")
    return env


class CommandBundler:
    """
    Bundler that shells out to an external bundling command.

    Each pass runs the command to completion and reads the generated
    `client.html` from the output directory. In watch mode the client source
    directory is polled on a background thread and every debounced batch of
    changes triggers another pass.
    """

    def __init__(
        self,
        entry: Path,
        out_dir: Path,
        command: List[str],
        public_url: str = "/assets/",
        watch: bool = False,
        watch_dir: Optional[Path] = None,
        watch_settings: Optional[WatchSettings] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Path] = None,
    ) -> None:
        self.entry = entry
        self.out_dir = out_dir
        self.command = command
        self.public_url = public_url
        self.watch = watch
        self.watch_dir = watch_dir or entry.parent
        self.watch_settings = watch_settings or WatchSettings()
        self.env = env
        self.cwd = cwd

        self._handlers: Dict[str, List[Callable[..., None]]] = {}
        self._stop_event = threading.Event()
        self._watch_thread: Optional[threading.Thread] = None
        self._process: Optional[subprocess.Popen] = None
        self._process_lock = threading.Lock()

    @classmethod
    def from_options(cls, entry: Path, options: BuildOptions, watch: bool) -> "CommandBundler":
        return cls(
            entry=entry,
            out_dir=options.root_path / options.output_dir / "public",
            command=list(options.bundle_command),
            public_url=options.public_path,
            watch=watch,
            watch_dir=(options.root_path / options.client_index).parent,
            watch_settings=options.watch,
            env=bundle_environment(options),
            cwd=options.root_path,
        )

    def on(self, event: str, handler: Callable[..., None]) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def bundle(self) -> bool:
        """Run the first build on the calling thread, then start watching if enabled."""
        success = self.build_once()
        if self.watch and not self._stop_event.is_set():
            self._start_watching()
        return success

    def build_once(self) -> bool:
        """Run one pass. Does nothing once `stop()` has been called."""
        if self._stop_event.is_set():
            return False

        self._emit(BUILD_START, [self.entry])
        try:
            output = self._run_command()
        except BundleError as error:
            if self._stop_event.is_set():
                # A pass cut short by stop() is not a build failure.
                return False
            self._emit(BUILD_ERROR, error)
            return False

        self._emit(BUNDLED, Bundle(entry_html=output, out_dir=self.out_dir))
        return True

    def stop(self) -> None:
        """Stop watching and terminate an in-flight pass, waiting for both."""
        self._stop_event.set()

        with self._process_lock:
            process = self._process
        if process is not None and process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()

        watch_thread = self._watch_thread
        if watch_thread is not None and watch_thread.is_alive() and watch_thread is not threading.current_thread():
            watch_thread.join()
        self._watch_thread = None

    def rendered_command(self) -> List[str]:
        values = {
            "entry": str(self.entry),
            "out_dir": str(self.out_dir),
            "public_url": self.public_url,
        }
        return [part.format(**values) for part in self.command]

    def _run_command(self) -> Optional[str]:
        command = self.rendered_command()
        try:
            with self._process_lock:
                if self._stop_event.is_set():
                    raise BundleError("Bundling was interrupted.", path=str(self.entry))
                self._process = subprocess.Popen(
                    command,
                    cwd=str(self.cwd) if self.cwd else None,
                    env=self.env,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                )
                process = self._process
            stdout, stderr = process.communicate()
        except OSError as exc:
            raise BundleError(f"Unable to run bundler command {command[0]!r}: {exc}", path=str(self.entry)) from exc
        finally:
            with self._process_lock:
                self._process = None

        if self._stop_event.is_set() and process.returncode != 0:
            raise BundleError("Bundling was interrupted.", path=str(self.entry))

        if process.returncode != 0:
            details = (stderr or stdout or "").strip()
            raise BundleError(
                f"Bundler exited with status {process.returncode}" + (f":\n{details}" if details else "."),
                path=str(self.entry),
            )

        output_file = self.out_dir / OUT_FILE
        if not output_file.exists():
            return None
        return output_file.read_text(encoding="utf-8")

    def _start_watching(self) -> None:
        if self._watch_thread is not None:
            return

        watcher = PollingWatcher(
            root_dir=self.watch_dir,
            interval_ms=self.watch_settings.interval_ms,
            debounce_ms=self.watch_settings.debounce_ms,
            include_patterns=self.watch_settings.include_patterns,
            exclude_patterns=self.watch_settings.exclude_patterns,
        )
        watcher.start()
        self._watch_thread = threading.Thread(
            target=watcher.run,
            args=(self._stop_event, lambda paths: self.build_once()),
            name="tandem-bundler-watch",
            daemon=True,
        )
        self._watch_thread.start()

    def _emit(self, event: str, payload: object) -> None:
        for handler in self._handlers.get(event, []):
            handler(payload)

