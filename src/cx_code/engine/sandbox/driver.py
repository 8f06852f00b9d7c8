# ~/repositories/cx-code/src/cx_code/engine/sandbox/driver.py

from typing import Any, Callable, Iterable, List, Literal, Optional, Union

import structlog

from ...config import CodeSettings, load_settings
from ...data.schemas import ItemPointer, Record
from ..context import StepContext
from .base import ExecutionMode, Language, RuntimeAdapter
from .context_builder import ContextBuilder
from .errors import CodeExecutionError
from .installer import ModuleRequest
from .javascript import JavaScriptRuntime
from .python import PythonRuntime

logger = structlog.get_logger(__name__)

FailurePolicy = Literal["abort", "degrade"]

LANGUAGE_ALIASES = {
    "javascript": "javaScript",
    "js": "javaScript",
    "python": "python",
    "py": "python",
}
EXECUTION_MODES = ("runOnceForAllItems", "runOnceForEachItem")


def resolve_language(language: Optional[str], type_version: int = 2) -> Language:
    """
    Maps a configured language onto a runtime. Nodes older than version 2 do
    not offer a language choice and always run JavaScript.
    """
    if type_version < 2 or not language:
        return "javaScript"
    resolved = LANGUAGE_ALIASES.get(language.lower())
    if resolved is None:
        raise ValueError(
            f"Unsupported language '{language}'. Use 'javaScript' or 'python'."
        )
    return resolved


class CodeStepExecutor:
    """
    Runs a snippet over a batch of items in one of the two execution modes
    and applies the caller's failure policy.
    """

    def __init__(self, settings: Optional[CodeSettings] = None):
        self.settings = settings or load_settings()

    def get_runtime(
        self,
        language: Language,
        modules: ModuleRequest = ModuleRequest(),
        message_sink: Optional[Callable[..., Any]] = None,
    ) -> RuntimeAdapter:
        if language == "python":
            return PythonRuntime(self.settings, modules, message_sink)
        return JavaScriptRuntime(self.settings, message_sink)

    async def execute(
        self,
        language: Optional[str],
        mode: ExecutionMode,
        items: Iterable[Union[Record, dict]],
        code: str,
        modules: Union[str, Iterable[str], None] = None,
        failure_policy: FailurePolicy = "abort",
        message_sink: Optional[Callable[..., Any]] = None,
        *,
        step: Optional[StepContext] = None,
    ) -> List[Record]:
        """
        Executes `code` against `items`.

        Args:
            language: 'javaScript' or 'python'.
            mode: 'runOnceForAllItems' or 'runOnceForEachItem'.
            items: The input items, as records or item dicts.
            code: The snippet source.
            modules: Comma-separated (or listed) modules a Python snippet needs.
            failure_policy: 'abort' re-raises failures, 'degrade' turns them into
                `{"json": {"error": message}}` records.
            message_sink: Receives console output; only used in manual mode.
            step: The full host context. Built from `items` when omitted.

        Returns:
            The output records, in input order.
        """
        if mode not in EXECUTION_MODES:
            raise ValueError(
                f"Unsupported mode '{mode}'. Use one of: {', '.join(EXECUTION_MODES)}."
            )
        records = [Record.from_item(item) for item in items]
        if step is None:
            step = StepContext(
                items=records,
                mode="manual" if message_sink else "trigger",
                message_sink=message_sink,
            )
        else:
            step = step.model_copy(update={"items": records})

        resolved_language = resolve_language(language, step.type_version)
        sink = (message_sink or step.message_sink) if step.is_manual else None
        runtime = self.get_runtime(
            resolved_language, ModuleRequest.parse(modules), sink
        )
        builder = ContextBuilder(step, runtime.symbol_renames)
        log = logger.bind(language=resolved_language, mode=mode, item_count=len(records))
        log.info("driver.execute.begin")

        if mode == "runOnceForAllItems":
            output = await self._run_once(runtime, builder, code, failure_policy)
        else:
            output = await self._run_per_item(
                runtime, builder, code, len(records), failure_policy
            )

        log.info("driver.execute.complete", output_count=len(output))
        return output

    async def _run_once(
        self,
        runtime: RuntimeAdapter,
        builder: ContextBuilder,
        code: str,
        failure_policy: FailurePolicy,
    ) -> List[Record]:
        try:
            return await runtime.run_once(builder.build(0), code)
        except CodeExecutionError as e:
            if failure_policy != "degrade":
                raise
            logger.warning("driver.run_once.failed", error=e.message, kind=e.kind)
            return [Record(json={"error": e.message})]

    async def _run_per_item(
        self,
        runtime: RuntimeAdapter,
        builder: ContextBuilder,
        code: str,
        item_count: int,
        failure_policy: FailurePolicy,
    ) -> List[Record]:
        output: List[Record] = []
        for index in range(item_count):
            pointer = ItemPointer(item=index)
            try:
                result = await runtime.run_per_item(builder.build(index), code)
            except CodeExecutionError as e:
                if e.item_index is None:
                    e.item_index = index
                if failure_policy != "degrade":
                    raise
                logger.warning(
                    "driver.item.failed", item_index=index, error=e.message, kind=e.kind
                )
                output.append(Record(json={"error": e.message}, pairedItem=pointer))
                continue

            if result is None:
                continue
            output.append(result.model_copy(update={"paired_item": pointer}))
        return output


async def execute(
    language: Optional[str],
    mode: ExecutionMode,
    items: Iterable[Union[Record, dict]],
    code: str,
    modules: Union[str, Iterable[str], None] = None,
    failure_policy: FailurePolicy = "abort",
    message_sink: Optional[Callable[..., Any]] = None,
    *,
    step: Optional[StepContext] = None,
    settings: Optional[CodeSettings] = None,
) -> List[Record]:
    """Module-level shortcut for `CodeStepExecutor(settings).execute(...)`."""
    return await CodeStepExecutor(settings).execute(
        language,
        mode,
        items,
        code,
        modules,
        failure_policy,
        message_sink,
        step=step,
    )
