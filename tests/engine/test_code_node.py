from unittest.mock import AsyncMock

import pytest

from cx_code.data.schemas import Record
from cx_code.engine.code_node import CodeNode
from cx_code.engine.context import StepContext
from cx_code.engine.sandbox.driver import CodeStepExecutor


@pytest.fixture
def mock_executor(mocker) -> CodeStepExecutor:
    executor = mocker.MagicMock(spec=CodeStepExecutor)
    executor.execute = AsyncMock(return_value=[Record(json={"ok": True})])
    return executor


@pytest.mark.asyncio
async def test_python_parameters_reach_the_executor(mock_executor):
    """Unit Test: Verifies the node reads its own parameters and passes them on."""
    step = StepContext(
        items=[Record(json={"a": 1})],
        parameters={
            "mode": "runOnceForEachItem",
            "language": "python",
            "pythonCode": "return _json",
            "jsCode": "return $json;",
            "modules": "numpy",
        },
    )

    output = await CodeNode(mock_executor).run(step, continue_on_fail=True)

    assert output[0].json == {"ok": True}
    args = mock_executor.execute.await_args
    assert args.args == (
        "python",
        "runOnceForEachItem",
        step.items,
        "return _json",
        "numpy",
        "degrade",
        None,
    )
    assert args.kwargs == {"step": step}


@pytest.mark.asyncio
async def test_defaults_to_javascript_run_once(mock_executor):
    step = StepContext(parameters={"jsCode": "return [];"})

    await CodeNode(mock_executor).run(step)

    language, mode, _items, code, modules, policy, _sink = (
        mock_executor.execute.await_args.args
    )
    assert (language, mode, code, modules, policy) == (
        "javaScript",
        "runOnceForAllItems",
        "return [];",
        "",
        "abort",
    )


@pytest.mark.asyncio
async def test_old_versions_ignore_the_language(mock_executor):
    """Unit Test: Verifies nodes below version 2 always run JavaScript."""
    step = StepContext(
        type_version=1,
        parameters={"language": "python", "jsCode": "return [];", "pythonCode": "x"},
    )

    await CodeNode(mock_executor).run(step)

    args = mock_executor.execute.await_args.args
    assert args[0] == "javaScript"
    assert args[3] == "return [];"


@pytest.mark.asyncio
async def test_end_to_end_python_node(settings):
    step = StepContext(
        items=[Record(json={"a": 1}), Record(json={"a": 2})],
        parameters={
            "mode": "runOnceForEachItem",
            "language": "python",
            "pythonCode": 'return {"b": _json["a"] * 2}',
        },
    )

    output = await CodeNode(CodeStepExecutor(settings)).run(step)

    assert [(r.json, r.paired_item.item) for r in output] == [
        ({"b": 2}, 0),
        ({"b": 4}, 1),
    ]
