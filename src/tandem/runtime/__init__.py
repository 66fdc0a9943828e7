"""Server loading and hot-reload components."""

from tandem.runtime.contracts import (
	ProblemState,
	ReloadResult,
	ReloadStatus,
	SupervisorEvent,
	SupervisorState,
	transition_supervisor_state,
)
from tandem.runtime.loader import ServerHandle, clear_module_cache, guess_compiled_path, guess_server_path, load_server
from tandem.runtime.polling_watcher import PollingWatcher
from tandem.runtime.supervisor import ActiveServer, HotReloadSupervisor, ReloadLifecycleEvent

__all__ = [
	"ActiveServer",
	"HotReloadSupervisor",
	"PollingWatcher",
	"ProblemState",
	"ReloadLifecycleEvent",
	"ReloadResult",
	"ReloadStatus",
	"ServerHandle",
	"SupervisorEvent",
	"SupervisorState",
	"clear_module_cache",
	"guess_compiled_path",
	"guess_server_path",
	"load_server",
	"transition_supervisor_state",
]
