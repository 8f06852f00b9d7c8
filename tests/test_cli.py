import json
from pathlib import Path

from typer.testing import CliRunner

from cx_code.cli import app

runner = CliRunner()


def _write(path: Path, content: str) -> Path:
    path.write_text(content)
    return path


def test_run_python_snippet_per_item(tmp_path: Path, isolated_cx_home: Path):
    """Unit Test: Verifies `run` executes a snippet over the items from --input."""
    code_file = _write(tmp_path / "double.py", 'return {"b": _json["a"] * 2}')
    input_file = _write(tmp_path / "items.json", json.dumps([{"a": 1}, {"a": 2}]))

    result = runner.invoke(
        app,
        [
            "run",
            str(code_file),
            "--language",
            "python",
            "--mode",
            "runOnceForEachItem",
            "--input",
            str(input_file),
        ],
    )

    assert result.exit_code == 0, result.output
    assert '"b": 2' in result.stdout
    assert '"b": 4' in result.stdout
    assert '"pairedItem"' in result.stdout


def test_run_reads_env_file(tmp_path: Path, isolated_cx_home: Path):
    code_file = _write(tmp_path / "env.js", "return [{ url: $env.API_URL }];")
    env_file = _write(tmp_path / ".env", "API_URL=https://example.test\n")
    input_file = _write(tmp_path / "items.json", "[]")

    result = runner.invoke(
        app,
        [
            "run",
            str(code_file),
            "-i",
            str(input_file),
            "--env-file",
            str(env_file),
        ],
    )

    assert result.exit_code == 0, result.output
    assert "https://example.test" in result.stdout


def test_run_failure_exits_with_error(tmp_path: Path, isolated_cx_home: Path):
    code_file = _write(tmp_path / "broken.py", "return 1 / 0")
    input_file = _write(tmp_path / "items.json", json.dumps([{"a": 1}]))

    result = runner.invoke(
        app, ["run", str(code_file), "-l", "python", "-i", str(input_file)]
    )

    assert result.exit_code == 1
    assert "ZeroDivisionError" in result.output


def test_run_continue_on_fail_emits_error_items(tmp_path: Path, isolated_cx_home: Path):
    code_file = _write(tmp_path / "broken.py", "return 1 / 0")
    input_file = _write(tmp_path / "items.json", json.dumps([{"a": 1}]))

    result = runner.invoke(
        app,
        [
            "run",
            str(code_file),
            "-l",
            "python",
            "-i",
            str(input_file),
            "--continue-on-fail",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "ZeroDivisionError: division by zero" in result.stdout


def test_install_with_only_builtin_modules(isolated_cx_home: Path):
    result = runner.invoke(app, ["install", "json, os"])

    assert result.exit_code == 0
    assert "Nothing to install" in result.stdout


def test_version_flag():
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert "cx-code version" in result.stdout
