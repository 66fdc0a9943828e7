import pytest
import sys
from pathlib import Path

# Ensure src/ is in the python path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from tandem.core.models import BuildOptions, EnvironmentSettings


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep the host's PORT/HOST/APP_ENV out of the settings under test."""
    for name in ("PORT", "HOST", "APP_ENV"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def root_dir(tmp_path):
    """
    Returns a temporary directory to act as the project root for tests.
    """
    return tmp_path


@pytest.fixture
def make_options(root_dir):
    """Build quiet BuildOptions rooted at root_dir, ignoring any .env in the cwd."""

    def _make(**overrides) -> BuildOptions:
        env = overrides.pop("env", None) or EnvironmentSettings(_env_file=None)
        overrides.setdefault("is_logging_enabled", False)
        return BuildOptions(root_path=root_dir, env=env, **overrides)

    return _make


@pytest.fixture
def write_server(root_dir):
    """Write `src/server/__init__.py` with the given source and return the package dir."""

    def _write(source: str) -> Path:
        server_dir = root_dir / "src" / "server"
        server_dir.mkdir(parents=True, exist_ok=True)
        (server_dir / "__init__.py").write_text(source)
        return server_dir

    return _write
