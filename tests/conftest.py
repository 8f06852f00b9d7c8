import pytest
from pathlib import Path
import shutil

from cx_code.config import CodeSettings
from cx_code.data.schemas import Record
from cx_code.engine.context import StepContext
from cx_code.engine.sandbox.driver import CodeStepExecutor


@pytest.fixture
def isolated_cx_home(tmp_path: Path, monkeypatch) -> Path:
    """
    Provides a pristine, isolated, and empty ~/.cx directory for each test function.
    The CX_CODE_* environment is cleared so that local overrides never leak in.
    """
    test_cx_home = tmp_path / ".cx"
    if test_cx_home.exists():
        shutil.rmtree(test_cx_home)
    test_cx_home.mkdir()
    monkeypatch.setenv("CX_HOME", str(test_cx_home))
    for name in CodeSettings.model_fields:
        monkeypatch.delenv(f"CX_CODE_{name.upper()}", raising=False)

    yield test_cx_home


@pytest.fixture
def settings() -> CodeSettings:
    return CodeSettings()


@pytest.fixture
def executor(settings: CodeSettings) -> CodeStepExecutor:
    """Provides a clean executor for each test."""
    return CodeStepExecutor(settings)


@pytest.fixture
def sample_step() -> StepContext:
    """A two-item step, as the workflow engine would hand it over."""
    return StepContext(
        items=[Record(json={"a": 1}), Record(json={"a": 2})],
        env={"API_URL": "https://example.test"},
        workflow={"id": "wf-1", "name": "Doubler", "active": True},
        parameters={"options": {"limit": 5}, "factor": "={{ json.a * 10 }}"},
    )
