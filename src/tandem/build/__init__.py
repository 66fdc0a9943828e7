"""Server compile and client bundle pipeline."""

from tandem.build.pipeline import PipelineHandles, WatchProcess, compile, compile_client, compile_server
from tandem.build.template_injector import inject, inject_template, locate_template, split_bundle_markup

__all__ = [
	"PipelineHandles",
	"WatchProcess",
	"compile",
	"compile_client",
	"compile_server",
	"inject",
	"inject_template",
	"locate_template",
	"split_bundle_markup",
]
