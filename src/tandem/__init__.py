"""Development orchestrator: compile a server and a client bundle, then hot-reload the server."""

from tandem.config.loader import resolve_options
from tandem.core.models import BuildOptions, BundleArtifact
from tandem.listener import WSGIServer
from tandem.runtime.session import Session, compile_and_run

__all__ = [
	"BuildOptions",
	"BundleArtifact",
	"Session",
	"WSGIServer",
	"compile_and_run",
	"resolve_options",
]
