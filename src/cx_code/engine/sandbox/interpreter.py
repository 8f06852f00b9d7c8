# ~/repositories/cx-code/src/cx_code/engine/sandbox/interpreter.py

import ast
import asyncio
import builtins
import inspect
import threading
import warnings
from typing import Any, Dict, Iterable, List, Optional

import structlog

from ...config import CodeSettings, load_settings
from .installer import PackageInstaller

logger = structlog.get_logger(__name__)

SNIPPET_FILENAME = "<code-step>"
SNIPPET_MODULE = "__code_step__"
RESULT_SYMBOL = "__code_step_result__"

# Seconds between attempts to take the execution lock while another run holds it.
LOCK_POLL_INTERVAL = 0.01


class PythonInterpreter:
    """
    The process-wide Python runtime used by every Python code step.

    It owns the package installer and an execution lock. Snippets get a
    fresh global namespace per run; only the interpreter itself (installed
    packages, warning filters, imported modules) outlives a run.
    """

    def __init__(self, settings: CodeSettings):
        self.settings = settings
        self.installer = PackageInstaller(settings)
        self._lock = threading.Lock()

    def bootstrap(self) -> None:
        """Silences deprecation noise raised from snippet code."""
        for category in (DeprecationWarning, PendingDeprecationWarning, FutureWarning):
            warnings.filterwarnings("ignore", category=category, module=SNIPPET_MODULE)
        logger.info("python_interpreter.bootstrapped")

    def new_namespace(self) -> Dict[str, Any]:
        return {"__name__": SNIPPET_MODULE, "__builtins__": builtins}

    async def load_packages(self, requirements: Iterable[str]) -> List[str]:
        return await self.installer.install(requirements)

    async def _acquire(self) -> None:
        # A thread lock, so runs on other threads and event loops are excluded too.
        while not self._lock.acquire(blocking=False):
            await asyncio.sleep(LOCK_POLL_INTERVAL)

    async def run_async(self, source: str, namespace: Dict[str, Any]) -> Any:
        """
        Compiles `source` with top-level `await` allowed, runs it in
        `namespace` and returns the value it stored under `RESULT_SYMBOL`.
        Only one snippet runs inside the interpreter at a time, whichever
        thread or event loop it is awaited from.
        """
        await self._acquire()
        try:
            code = compile(
                source, SNIPPET_FILENAME, "exec", flags=ast.PyCF_ALLOW_TOP_LEVEL_AWAIT
            )
            outcome = eval(code, namespace)
            if inspect.iscoroutine(outcome):
                await outcome
            return namespace.get(RESULT_SYMBOL)
        finally:
            self._lock.release()


_interpreter: Optional[PythonInterpreter] = None
_interpreter_lock = threading.Lock()


def load_interpreter(settings: Optional[CodeSettings] = None) -> PythonInterpreter:
    """
    Returns the shared interpreter, creating it on first use. Settings only
    apply to the call that creates it.
    """
    global _interpreter
    if _interpreter is None:
        with _interpreter_lock:
            if _interpreter is None:
                interpreter = PythonInterpreter(settings or load_settings())
                interpreter.bootstrap()
                _interpreter = interpreter
    return _interpreter
