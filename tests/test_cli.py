import json
import sys

from typer.testing import CliRunner

from tandem.cli.main import app

runner = CliRunner()


def _combined_output(result) -> str:
    return f"{result.stdout}{getattr(result, 'stderr', '')}"


def _write_server(root):
    server_dir = root / "src" / "server"
    server_dir.mkdir(parents=True)
    (server_dir / "__init__.py").write_text("def listen(port):\n    return None\n")


def test_help_lists_commands():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for command in ("run", "compile", "clean", "check"):
        assert command in result.stdout


def test_clean_removes_output_dir(tmp_path):
    (tmp_path / "dist" / "public").mkdir(parents=True)

    result = runner.invoke(app, ["clean", "--root", str(tmp_path)])

    assert result.exit_code == 0
    assert not (tmp_path / "dist").exists()


def test_clean_with_nothing_to_delete(tmp_path):
    result = runner.invoke(app, ["clean", str(tmp_path)])

    assert result.exit_code == 0
    assert "Nothing to clean." in _combined_output(result)


def test_check_reports_missing_server(tmp_path):
    result = runner.invoke(app, ["check", "--root", str(tmp_path), "--quiet"])

    assert result.exit_code == 1
    assert "Tandem Diagnostics" in _combined_output(result)


def test_check_accepts_server_with_listen(tmp_path):
    _write_server(tmp_path)

    result = runner.invoke(app, ["check", f"--root={tmp_path}"])

    assert result.exit_code == 0
    assert "responds" in _combined_output(result)


def test_invalid_port_is_a_usage_error(tmp_path):
    result = runner.invoke(app, ["clean", "--root", str(tmp_path), "--port", "http"])

    assert result.exit_code == 2


def test_unknown_option_is_a_usage_error(tmp_path):
    result = runner.invoke(app, ["clean", "--root", str(tmp_path), "--verbose"])

    assert result.exit_code == 2


def test_invalid_config_exits_with_error(tmp_path):
    (tmp_path / "tandem.yaml").write_text("build:\n  bogus: true\n")

    result = runner.invoke(app, ["clean", "--root", str(tmp_path)])

    assert result.exit_code == 1


def test_compile_exits_nonzero_when_server_compile_fails(tmp_path):
    command = [sys.executable, "-c", "raise SystemExit(1)"]
    (tmp_path / "tandem.yaml").write_text(f"server:\n  compile_command: {json.dumps(command)}\n")

    result = runner.invoke(app, ["compile", "--root", str(tmp_path), "--production"])

    assert result.exit_code == 1
    assert "ERR_COMPILE" in _combined_output(result)
