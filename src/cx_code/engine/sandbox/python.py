# ~/repositories/cx-code/src/cx_code/engine/sandbox/python.py

import textwrap
import traceback
from collections.abc import Mapping
from typing import Any, Callable, List, Optional, Set

import structlog

from ...config import CodeSettings
from ...data.schemas import Record
from .context_builder import PYTHON_SYMBOL_RENAMES, ExecutionContext
from .errors import ConversionError, RuntimeExecutionError, get_pretty_message
from .installer import ModuleRequest
from .interpreter import RESULT_SYMBOL, SNIPPET_FILENAME, load_interpreter
from .validator import ResultValidator

logger = structlog.get_logger(__name__)

# Symbols the runtime never exports into a snippet's namespace.
RESERVED_SYMBOLS = frozenset({"_env"})
PRINT_SYMBOL = "_printOverwrite"


def wrap_snippet(code: str) -> str:
    """
    Embeds the snippet in an `async` entry point that is awaited straight
    away, so snippets may use `await` and `return` at their top level.
    """
    body = textwrap.indent(code, "  ")
    return f"""
if {PRINT_SYMBOL} is not None:
  print = {PRINT_SYMBOL}

async def __main():
{body}

{RESULT_SYMBOL} = await __main()
"""


def to_native(value: Any, _seen: Optional[Set[int]] = None) -> Any:
    """
    Deep-converts a snippet result into plain dicts and lists that share no
    references with the snippet's namespace. Models are dumped by alias;
    anything else that is not a container is returned as-is.
    """
    if value is None or isinstance(value, (str, int, float, bool)):
        return value

    seen = _seen if _seen is not None else set()
    if hasattr(value, "model_dump") and callable(value.model_dump):
        try:
            value = value.model_dump(by_alias=True, exclude_none=True)
        except Exception as e:
            raise ConversionError(
                f"Could not convert the returned {type(value).__name__}: {e}"
            ) from e

    if not isinstance(value, (Mapping, list, tuple, set, frozenset)):
        return value

    if id(value) in seen:
        raise ConversionError(
            "The returned data contains a circular reference.",
            description="Return data that can be written as JSON.",
        )
    seen.add(id(value))
    try:
        if isinstance(value, Mapping):
            return {key: to_native(item, seen) for key, item in value.items()}
        return [to_native(item, seen) for item in value]
    finally:
        seen.discard(id(value))


class PythonRuntime:
    """
    Runs Python snippets inside the shared interpreter. Requested modules are
    installed before the snippet body runs.
    """

    language = "python"
    symbol_renames = PYTHON_SYMBOL_RENAMES
    object_names = ("dictionary", "dictionaries")

    def __init__(
        self,
        settings: CodeSettings,
        modules: ModuleRequest = ModuleRequest(),
        message_sink: Optional[Callable[..., Any]] = None,
    ):
        self.settings = settings
        self.modules = modules
        self.message_sink = message_sink

    async def run_once(self, context: ExecutionContext, code: str) -> List[Record]:
        result = await self._run_code(context, code)
        return ResultValidator(self.settings, self.object_names).validate_run_once(
            result
        )

    async def run_per_item(
        self, context: ExecutionContext, code: str
    ) -> Optional[Record]:
        result = await self._run_code(context, code)
        validator = ResultValidator(
            self.settings, self.object_names, item_index=context.get("_itemIndex")
        )
        return validator.validate_per_item(result)

    async def _run_code(self, context: ExecutionContext, code: str) -> Any:
        interpreter = load_interpreter(self.settings)
        log = logger.bind(item_index=context.get("_itemIndex"))

        requested = self.modules.without_builtins(self.settings.extra_builtin_modules)
        if len(requested):
            installed = await interpreter.load_packages(requested)
            log.debug("python_runtime.modules_ready", installed=installed)

        namespace = interpreter.new_namespace()
        try:
            for key, value in context.items():
                if key in RESERVED_SYMBOLS:
                    continue
                namespace[key] = value
            namespace[PRINT_SYMBOL] = self.message_sink
            raw_result = await interpreter.run_async(wrap_snippet(code), namespace)
        except (Exception, SystemExit) as error:
            log.debug("python_runtime.snippet_failed", error_type=type(error).__name__)
            raise self._pretty_error(error) from error
        finally:
            namespace.clear()

        return to_native(raw_result)

    def _pretty_error(self, error: BaseException) -> RuntimeExecutionError:
        """
        Formats the error as the snippet sees it: host frames are dropped
        from the traceback, so their source lines never end up in the message.
        """
        kind = type(error).__name__
        report = traceback.TracebackException.from_exception(error, lookup_lines=False)
        snippet_frames = [f for f in report.stack if f.filename == SNIPPET_FILENAME]
        lines: List[str] = []
        if snippet_frames:
            lines.append("Traceback (most recent call last):\n")
            lines.extend(traceback.StackSummary.from_list(snippet_frames).format())
        lines.extend(report.format_exception_only())
        raw_message = "".join(lines).strip()
        return RuntimeExecutionError(get_pretty_message(raw_message, kind), kind=kind)
