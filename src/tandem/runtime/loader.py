from __future__ import annotations

import importlib
import linecache
import os
import sys
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Any, Iterator, List, Optional

from tandem.cli.formatter import OutputFormatter
from tandem.core.models import BuildOptions
from tandem.utils.diagnostics import LoadError, ShapeError

# The bundler rebuild loop and the reload loop both import the server.
_import_lock = threading.RLock()


def guess_compiled_path(options: BuildOptions) -> Path:
    """Directory that receives compiled output, including `public/`."""
    return options.root_path / options.output_dir


def guess_server_path(options: BuildOptions) -> Path:
    """Locate the server entry: the configured server dir, else the compiled output dir."""
    server_path = options.root_path / options.server_dir
    if server_path.exists():
        return server_path

    python_file = server_path.with_suffix(".py")
    if python_file.exists():
        return python_file

    return guess_compiled_path(options)


@dataclass(frozen=True)
class ServerHandle:
    """A freshly loaded server value that is known to expose `listen`."""

    app: Any
    path: Path

    def listen(self, port: int) -> Any:
        return self.app.listen(port)

    def views(self) -> List[str]:
        """View directories the server declares, as `views` or `get("views")`."""
        views = getattr(self.app, "views", None)
        if views is None and callable(getattr(self.app, "get", None)):
            try:
                views = self.app.get("views")
            except Exception:
                views = None

        if views is None:
            return []
        if isinstance(views, (str, Path)):
            return [str(views)]
        return [str(view) for view in views]


def _module_name_for(server_path: Path) -> str:
    return server_path.stem if server_path.is_file() else server_path.name


def clear_module_cache(target: Path) -> List[str]:
    """Drop every imported module whose file lives under `target`, with its bytecode.

    Returns the purged module names.
    """
    prefix = str(target.resolve())
    purged: List[str] = []

    for name, module in list(sys.modules.items()):
        module_file = getattr(module, "__file__", None)
        if not isinstance(module_file, str):
            continue
        try:
            resolved = str(Path(module_file).resolve())
        except OSError:
            continue
        if resolved != prefix and not resolved.startswith(prefix + os.sep):
            continue

        _remove_cached_bytecode(module)
        del sys.modules[name]
        purged.append(name)

    importlib.invalidate_caches()
    linecache.checkcache()
    return purged


def _remove_cached_bytecode(module: ModuleType) -> None:
    # pyc validation is mtime-in-seconds + size; a quick edit can look unchanged.
    cached_path = getattr(module, "__cached__", None)
    if not isinstance(cached_path, str):
        return

    cached_file = Path(cached_path)
    try:
        cached_file.unlink()
    except OSError:
        return


@contextmanager
def _temporary_sys_path(root: str) -> Iterator[None]:
    inserted = root not in sys.path
    if inserted:
        sys.path.insert(0, root)

    try:
        yield
    finally:
        if inserted:
            try:
                sys.path.remove(root)
            except ValueError:
                pass


def _report_problem(options: BuildOptions) -> None:
    if options.is_logging_enabled:
        OutputFormatter.problem("There is a problem with your server")


def load_server(options: BuildOptions) -> ServerHandle:
    """
    Import a fresh copy of the server and check that it can listen.

    Raises:
        LoadError: the server module is missing or fails to import.
        ShapeError: the module imports but exposes no callable `listen`.
    """
    server_path = guess_server_path(options).resolve()
    module_name = _module_name_for(server_path)

    if not server_path.exists():
        _report_problem(options)
        raise LoadError(f"Cannot find a server at {server_path}.", path=str(server_path))

    try:
        with _import_lock:
            clear_module_cache(server_path)
            # Same-named modules loaded from another location would shadow this one.
            for name in [n for n in sys.modules if n == module_name or n.startswith(module_name + ".")]:
                del sys.modules[name]

            with _temporary_sys_path(str(server_path.parent)):
                module = importlib.import_module(module_name)
    except Exception as exc:
        _report_problem(options)
        raise LoadError(
            f"{server_path} could not be imported: {type(exc).__name__}: {exc}",
            path=str(server_path),
        ) from exc

    server: Any = module
    default = getattr(module, "default", None)
    if default is not None:
        server = default

    if not callable(getattr(server, "listen", None)):
        _report_problem(options)
        raise ShapeError(f"{server_path} exists but does not respond to listen.", path=str(server_path))

    return ServerHandle(app=server, path=server_path)


def find_source_views(handle: Optional[ServerHandle]) -> Optional[Path]:
    """Pick the view directory that points at source files rather than compiled output."""
    if handle is None:
        return None

    for view in handle.views():
        if "src" in Path(view).parts:
            return Path(view)
    return None
