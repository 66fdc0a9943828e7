"""HTTP listeners with immediate teardown.

`WSGIServer` gives any WSGI application the `listen(port)` capability the
hot-reload supervisor expects. The listener it returns tracks every open
connection so `destroy()` closes them at once instead of waiting for
keep-alive clients to go away.
"""

from __future__ import annotations

import socket
import socketserver
import threading
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable, Optional, Set
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer as _BaseWSGIServer


class _QuietWSGIRequestHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        return None


class _TrackingWSGIServer(socketserver.ThreadingMixIn, _BaseWSGIServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._connections: Set[socket.socket] = set()
        self._connections_lock = threading.Lock()
        super().__init__(*args, **kwargs)

    def process_request(self, request, client_address) -> None:
        with self._connections_lock:
            self._connections.add(request)
        super().process_request(request, client_address)

    def shutdown_request(self, request) -> None:
        with self._connections_lock:
            self._connections.discard(request)
        super().shutdown_request(request)

    def close_connections(self) -> None:
        with self._connections_lock:
            connections = list(self._connections)
            self._connections.clear()

        for connection in connections:
            try:
                connection.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            connection.close()


class Listener:
    """A bound, serving socket. Exactly one per ActiveServer."""

    def __init__(self, server: socketserver.BaseServer, port: int) -> None:
        self._server = server
        self.port = port
        self._thread = threading.Thread(target=self._serve, name=f"tandem-listener-{port}", daemon=True)
        self._destroyed = False
        self._thread.start()

    def _serve(self) -> None:
        self._server.serve_forever(poll_interval=0.2)

    @property
    def is_alive(self) -> bool:
        return not self._destroyed and self._thread.is_alive()

    def destroy(self) -> None:
        """Stop accepting, drop open connections and release the port."""
        if self._destroyed:
            return
        self._destroyed = True

        self._server.shutdown()
        close_connections = getattr(self._server, "close_connections", None)
        if close_connections is not None:
            close_connections()
        self._server.server_close()
        self._thread.join(timeout=2)

    close = destroy


class WSGIServer:
    """Adapter exposing `listen(port)` for a WSGI callable.

    A server module typically ends with::

        default = WSGIServer(app, views=[str(Path(__file__).parent / "views")])
    """

    def __init__(self, app: Callable[..., Any], host: str = "127.0.0.1", views: Optional[list] = None) -> None:
        self.app = app
        self.host = host
        self.views = list(views or [])

    def listen(self, port: int) -> Listener:
        server = _TrackingWSGIServer((self.host, port), _QuietWSGIRequestHandler)
        server.set_app(self.app)
        return Listener(server, port)


def _asset_handler(directory: Path, public_path: str):
    prefix = "/" + public_path.strip("/")

    class _AssetRequestHandler(SimpleHTTPRequestHandler):
        def __init__(self, *args: Any, **kwargs: Any) -> None:
            super().__init__(*args, directory=str(directory), **kwargs)

        def translate_path(self, path: str) -> str:
            if prefix != "/" and path.startswith(prefix):
                path = path[len(prefix):] or "/"
            return super().translate_path(path)

        def log_message(self, format: str, *args: Any) -> None:
            return None

    return _AssetRequestHandler


class AssetServer:
    """Static server for bundled client assets, bound once on its own port."""

    def __init__(self, directory: Path, public_path: str = "/assets/", host: str = "127.0.0.1") -> None:
        self.directory = directory
        self.public_path = public_path
        self.host = host
        self.listener: Optional[Listener] = None

    def listen(self, port: int) -> Listener:
        if self.listener is not None:
            return self.listener

        server = ThreadingHTTPServer((self.host, port), _asset_handler(self.directory, self.public_path))
        server.daemon_threads = True
        self.listener = Listener(server, port)
        return self.listener

    def destroy(self) -> None:
        if self.listener is not None:
            self.listener.destroy()
            self.listener = None
