from pathlib import Path
from typing import Any, Callable, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_BUNDLE_COMMAND: List[str] = [
    "npx",
    "parcel",
    "build",
    "{entry}",
    "--dist-dir",
    "{out_dir}",
    "--public-url",
    "{public_url}",
    "--no-source-maps",
]


def _noop_hook(bundler: Any) -> None:
    return None


class EnvironmentSettings(BaseSettings):
    """
    Process environment consumed by the orchestrator (PORT, APP_ENV, HOST).

    Values come from the real environment first, then from `<root>/.env`.
    """
    model_config = SettingsConfigDict(env_file=".env", extra='ignore')

    port: int = Field(default=5000, ge=1, le=65535)
    host: str = "127.0.0.1"
    app_env: str = "development"

    @property
    def is_production(self) -> bool:
        return self.app_env.strip().lower() == "production"


class WatchSettings(BaseModel):
    """
    Polling watcher settings (the 'watch' section in tandem.yaml).
    """
    model_config = ConfigDict(extra='ignore')

    interval_ms: int = Field(default=250, ge=50)
    debounce_ms: int = Field(default=150, ge=0)
    include_patterns: List[str] = Field(default_factory=lambda: ["*"])
    exclude_patterns: List[str] = Field(
        default_factory=lambda: ["__pycache__/*", "*/__pycache__/*", "*.pyc", ".*"]
    )


class BuildOptions(BaseModel):
    """
    Fully resolved configuration for one run.

    Always build this through `tandem.config.loader.resolve_options` so that
    every field carries a concrete value before any component sees it.
    """
    model_config = ConfigDict(frozen=True, extra='forbid', arbitrary_types_allowed=True)

    root_path: Path
    public_path: str = "/assets/"
    client_index: str = "src/client/index.tsx"
    styles_index: Optional[str] = "src/client/styles.scss"
    template_file: Optional[str] = None
    is_logging_enabled: bool = True
    on_before_bundle: Callable[[Any], None] = _noop_hook

    output_dir: str = "dist"
    server_dir: str = "src/server"
    server_compile_command: List[str] = Field(default_factory=lambda: ["pyright"])
    server_watch_flag: str = "--watch"
    bundle_command: List[str] = Field(default_factory=lambda: list(DEFAULT_BUNDLE_COMMAND))
    use_fallback_template: bool = True
    asset_port: Optional[int] = Field(default=None, ge=1, le=65535)

    env: EnvironmentSettings = Field(default_factory=EnvironmentSettings)
    watch: WatchSettings = Field(default_factory=WatchSettings)

    @property
    def is_production(self) -> bool:
        return self.env.is_production

    @property
    def port(self) -> int:
        return self.env.port

    @property
    def cache_path(self) -> Path:
        return self.root_path / ".cache"


class BundleArtifact(BaseModel):
    """
    Markup produced by one successful client build, consumed by the template injector.
    """
    model_config = ConfigDict(frozen=True)

    script_html: Optional[str] = None
    style_html: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.script_html and not self.style_html
