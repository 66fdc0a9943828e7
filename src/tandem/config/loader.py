import importlib
import os
import re
import yaml
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union
from pydantic import ValidationError

from tandem.core.models import BuildOptions, EnvironmentSettings, WatchSettings
from tandem.utils.diagnostics import ConfigError

ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::([^}]+))?\}")
CONFIG_FILE_NAME = "tandem.yaml"
ROOT_MARKERS = (CONFIG_FILE_NAME, "pyproject.toml", "package.json")

def interpolate_env_vars(content: str) -> str:
    """Replace ${VAR} or ${VAR:default} with environment variables."""
    def replace_match(match: re.Match) -> str:
        var_name = match.group(1)
        default_value = match.group(2) if match.group(2) is not None else ""
        return os.environ.get(var_name, default_value)

    return ENV_VAR_PATTERN.sub(replace_match, content)

def load_config(path: Path) -> Dict[str, Any]:
    """
    Load tandem.yaml with environment variable interpolation.

    Keeps only the known sections: tandem, build, server, watch.
    """
    if not path.exists():
        return {}

    try:
        content = path.read_text()
        interpolated_content = interpolate_env_vars(content)
        full_config = yaml.safe_load(interpolated_content) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Unable to read config: {e}", path=str(path))

    if not isinstance(full_config, dict):
        raise ConfigError("Config root must be a mapping.", path=str(path))

    allowed_keys = {"tandem", "build", "server", "watch"}
    filtered_config = {k: v for k, v in full_config.items() if k in allowed_keys}

    return filtered_config

def guess_root_path(start: Optional[Path] = None) -> Path:
    """
    Walk up from `start` (default: cwd) to the nearest directory holding a project marker.
    """
    current = (start or Path.cwd()).expanduser().resolve()
    for candidate in (current, *current.parents):
        if any((candidate / marker).exists() for marker in ROOT_MARKERS):
            return candidate
    return current

def resolve_hook(hook: Union[None, str, Callable[[Any], None]]) -> Optional[Callable[[Any], None]]:
    """Turn a 'module:attribute' import string into the callable it names."""
    if hook is None or callable(hook):
        return hook

    module_name, _, attribute = str(hook).partition(":")
    if not module_name or not attribute:
        raise ConfigError(f"Invalid hook reference '{hook}'. Expected 'module:attribute'.")

    try:
        module = importlib.import_module(module_name)
        resolved = getattr(module, attribute)
    except (ImportError, AttributeError) as e:
        raise ConfigError(f"Unable to import hook '{hook}': {e}")

    if not callable(resolved):
        raise ConfigError(f"Hook '{hook}' is not callable.")
    return resolved

def resolve_options(root_path: Optional[Path] = None, **overrides: Any) -> BuildOptions:
    """
    Build a complete BuildOptions from defaults, tandem.yaml, the environment and overrides.

    Precedence (lowest first): built-in defaults, tandem.yaml, explicit overrides.
    Overrides set to None are ignored so CLI flags can be passed through untouched.
    """
    root = (root_path or guess_root_path()).expanduser().resolve()
    config_data = load_config(root / CONFIG_FILE_NAME)

    values: Dict[str, Any] = {}
    values.update(config_data.get("build", {}) or {})
    for key, value in (config_data.get("server", {}) or {}).items():
        values[f"server_{key}" if not key.startswith("server_") else key] = value
    values.update(config_data.get("tandem", {}) or {})

    env_overrides = overrides.pop("env", None) or {}
    watch_data = config_data.get("watch", {}) or {}

    values.update({k: v for k, v in overrides.items() if v is not None})
    values["root_path"] = root

    try:
        values["env"] = EnvironmentSettings(_env_file=root / ".env", **env_overrides)
        values["watch"] = WatchSettings(**watch_data)
        if "on_before_bundle" in values:
            hook = resolve_hook(values["on_before_bundle"])
            if hook is None:
                values.pop("on_before_bundle")
            else:
                values["on_before_bundle"] = hook
        return BuildOptions(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}", path=str(root / CONFIG_FILE_NAME))
