# ~/repositories/cx-code/src/cx_code/engine/code_node.py

from typing import List, Optional

import structlog

from ..data.schemas import Record
from .context import StepContext
from .sandbox.driver import CodeStepExecutor, resolve_language

logger = structlog.get_logger(__name__)

DEFAULT_MODE = "runOnceForAllItems"
DEFAULT_LANGUAGE = "javaScript"


class CodeNode:
    """
    The workflow-facing side of the code step. It reads the node's own
    parameters (`mode`, `language`, `jsCode` / `pythonCode`, `modules`) and
    hands the run to the `CodeStepExecutor`.
    """

    def __init__(self, executor: Optional[CodeStepExecutor] = None):
        self.executor = executor or CodeStepExecutor()

    async def run(self, step: StepContext, continue_on_fail: bool = False) -> List[Record]:
        mode = step.get_node_parameter("mode", 0, DEFAULT_MODE)
        language = resolve_language(
            step.get_node_parameter("language", 0, DEFAULT_LANGUAGE), step.type_version
        )
        code_parameter = "pythonCode" if language == "python" else "jsCode"
        code = step.get_node_parameter(code_parameter, 0, "")
        modules = step.get_node_parameter("modules", 0, "")

        logger.debug(
            "code_node.run",
            node=step.node_name,
            mode=mode,
            language=language,
            continue_on_fail=continue_on_fail,
        )
        return await self.executor.execute(
            language,
            mode,
            step.items,
            code,
            modules,
            "degrade" if continue_on_fail else "abort",
            step.message_sink,
            step=step,
        )
