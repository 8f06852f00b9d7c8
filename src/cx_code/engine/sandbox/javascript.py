# ~/repositories/cx-code/src/cx_code/engine/sandbox/javascript.py

import asyncio
import inspect
import json
import re
from contextlib import AsyncExitStack
from datetime import date
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog
from py_mini_racer import JSEvalException, MiniRacer

from ...config import CodeSettings
from ...data.schemas import Record
from ...utils import safe_serialize
from .context_builder import ExecutionContext, InputAccessor, NodeOutputs
from .errors import ConversionError, RuntimeExecutionError, get_pretty_message
from .validator import ResultValidator

logger = structlog.get_logger(__name__)

# Host values that have a native JavaScript counterpart.
JS_NATIVE_ALIASES: Mapping[str, str] = {"DateTime": "Date"}

# The global the runner reports its outcome through.
SETTLE_SYMBOL = "__settle"

_ERROR_KIND = re.compile(r"\b([A-Z][A-Za-z]*Error)\b")

PRELUDE = """
(() => {
  const bindings = JSON.parse(%s);
  const makeInput = (items, index) => ({
    all: () => items,
    first: () => items[0],
    last: () => items[items.length - 1],
    item: items[index],
    itemIndex: index,
  });
  Object.assign(globalThis, bindings.values);
  for (const name of bindings.dates) {
    globalThis[name] = new Date(globalThis[name]);
  }
  for (const [name, input] of Object.entries(bindings.inputs)) {
    globalThis[name] = makeInput(input.items, input.index);
  }
  for (const [name, output] of Object.entries(bindings.outputs)) {
    globalThis[name] = (node) => {
      if (!(node in output.nodes)) {
        throw new Error(`No output data found for node '${node}'.`);
      }
      return makeInput(output.nodes[node], output.index);
    };
  }
  for (const [name, target] of Object.entries(bindings.aliases)) {
    globalThis[name] = globalThis[target];
  }
  for (const [name, hostKey] of bindings.functions) {
    const host = globalThis[hostKey];
    globalThis[name] = async (...args) => {
      const reply = JSON.parse(await host(JSON.stringify(args)));
      if (reply.error !== undefined) {
        throw new Error(reply.error);
      }
      return reply.value;
    };
  }
  const logs = [];
  const format = (value) => {
    if (typeof value === 'string') return value;
    try {
      return JSON.stringify(value);
    } catch (error) {
      return String(value);
    }
  };
  const write = (...args) => logs.push(args.map(format).join(' '));
  globalThis.__logs = logs;
  globalThis.console = { log: write, info: write, warn: write, error: write, debug: write };
})();
"""

# The runner never hands a promise back to the host. It reports through the
# settle callback, so the host never has to call into a busy isolate.
RUNNER = """
void (async () => {
  const settle = globalThis.%(settle)s;
  const logs = globalThis.__logs;
  const report = (outcome) => settle(JSON.stringify({ ...outcome, logs }));
  try {
    const value = await (async () => {
%(code)s
    })();
    let serialized;
    try {
      serialized = JSON.stringify(value === undefined ? null : value);
    } catch (error) {
      report({ ok: false, kind: 'ConversionError', message: String(error && error.message || error) });
      return;
    }
    report({ ok: true, value: serialized });
  } catch (error) {
    const kind = (error && error.name) || 'Error';
    const message = error && error.message !== undefined ? String(error.message) : String(error);
    report({ ok: false, kind, message });
  }
})();
"""


class JavaScriptRuntime:
    """
    Runs JavaScript snippets in a V8 isolate created for this invocation
    alone and closed afterwards.
    """

    language = "javaScript"
    symbol_renames: Mapping[str, str] = {}
    object_names = ("object", "objects")

    def __init__(
        self,
        settings: CodeSettings,
        message_sink: Optional[Callable[..., Any]] = None,
    ):
        self.settings = settings
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
            self.settings, self.object_names, item_index=context.get("$itemIndex")
        )
        return validator.validate_per_item(result)

    def _host_function(self, function: Callable[..., Any]) -> Callable[[str], Any]:
        async def call(payload: str) -> str:
            try:
                result = function(*json.loads(payload))
                if inspect.isawaitable(result):
                    result = await result
                return json.dumps({"value": safe_serialize(result)}, default=str)
            except Exception as e:
                return json.dumps({"error": str(e)})

        return call

    def _bindings(self, context: ExecutionContext) -> Dict[str, Any]:
        bindings: Dict[str, Any] = {
            "values": {},
            "dates": [],
            "inputs": {},
            "outputs": {},
            "aliases": {},
            "functions": [],
        }
        host_functions: Dict[str, Callable[..., Any]] = {}

        for name, value in context.items():
            if isinstance(value, InputAccessor):
                bindings["inputs"][name] = {
                    "items": value.to_items(),
                    "index": value.item_index,
                }
                bindings["values"]["items"] = bindings["inputs"][name]["items"]
            elif isinstance(value, NodeOutputs):
                bindings["outputs"][name] = {
                    "nodes": {node: value(node).to_items() for node in value.names()},
                    "index": context.get("$itemIndex", 0),
                }
            elif name in JS_NATIVE_ALIASES:
                bindings["aliases"][name] = JS_NATIVE_ALIASES[name]
            elif isinstance(value, type):
                logger.debug("javascript_runtime.binding_skipped", symbol=name)
            elif callable(value):
                host_key = f"__host_{len(host_functions)}"
                host_functions[host_key] = value
                bindings["functions"].append([name, host_key])
            else:
                if isinstance(value, date):
                    bindings["dates"].append(name)
                bindings["values"][name] = safe_serialize(value)

        bindings["host_functions"] = host_functions
        return bindings

    def _forward_logs(self, lines: List[str]) -> None:
        for line in lines:
            if self.message_sink is not None:
                self.message_sink(line)
            else:
                logger.debug("javascript_runtime.console", message=line)

    async def _run_snippet(
        self, isolate: MiniRacer, source: str, settled: "asyncio.Future[str]"
    ) -> str:
        await isolate.eval_cancelable(source)
        return await settled

    async def _run_code(self, context: ExecutionContext, code: str) -> Any:
        bindings = self._bindings(context)
        host_functions = bindings.pop("host_functions")
        settled: "asyncio.Future[str]" = asyncio.get_running_loop().create_future()

        async def settle(outcome: str) -> None:
            if not settled.done():
                settled.set_result(outcome)

        # Closing the isolate also terminates a snippet that is still running.
        with MiniRacer() as isolate:
            if self.settings.js_max_memory:
                isolate.set_hard_memory_limit(self.settings.js_max_memory)

            async with AsyncExitStack() as stack:
                global_this = isolate.eval("this")
                for host_key, function in host_functions.items():
                    global_this[host_key] = await stack.enter_async_context(
                        isolate.wrap_py_function(self._host_function(function))
                    )
                global_this[SETTLE_SYMBOL] = await stack.enter_async_context(
                    isolate.wrap_py_function(settle)
                )

                isolate.eval(PRELUDE % json.dumps(json.dumps(bindings, default=str)))
                try:
                    raw = await asyncio.wait_for(
                        self._run_snippet(
                            isolate,
                            RUNNER % {"settle": SETTLE_SYMBOL, "code": code},
                            settled,
                        ),
                        timeout=self.settings.js_timeout,
                    )
                except asyncio.TimeoutError as e:
                    raise RuntimeExecutionError(
                        f"The code took longer than {self.settings.js_timeout} seconds to run.",
                        kind="TimeoutError",
                    ) from e
                except JSEvalException as e:
                    raw_message = str(e)
                    match = _ERROR_KIND.search(raw_message)
                    kind = match.group(1) if match else "Error"
                    raise RuntimeExecutionError(
                        get_pretty_message(raw_message, kind), kind=kind
                    ) from e

        outcome = json.loads(raw)
        self._forward_logs(outcome.get("logs", []))

        if not outcome["ok"]:
            if outcome["kind"] == "ConversionError":
                raise ConversionError(outcome["message"])
            raise RuntimeExecutionError(outcome["message"], kind=outcome["kind"])

        return json.loads(outcome["value"])
