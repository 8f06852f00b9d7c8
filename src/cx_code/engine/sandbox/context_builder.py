# ~/repositories/cx-code/src/cx_code/engine/sandbox/context_builder.py

from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from ...data.schemas import Record
from ..context import StepContext
from ..expressions import jmespath_search

# The symbol -> value mapping handed to a runtime. Read-only once built.
ExecutionContext = Mapping[str, Any]

# Python identifiers cannot start with `$`, so the Python runtime sees every
# host symbol with a leading `_` instead.
PYTHON_SYMBOL_RENAMES: Mapping[str, str] = MappingProxyType(
    {
        "$": "_",
        "$input": "_input",
        "$items": "_items",
        "$json": "_json",
        "$binary": "_binary",
        "$itemIndex": "_itemIndex",
        "$runIndex": "_runIndex",
        "$mode": "_mode",
        "$now": "_now",
        "$today": "_today",
        "$workflow": "_workflow",
        "$execution": "_execution",
        "$node": "_node",
        "$prevNode": "_prevNode",
        "$parameter": "_parameter",
        "$env": "_env",
        "$evaluateExpression": "_evaluateExpression",
        "$jmesPath": "_jmesPath",
        "$getNodeParameter": "_getNodeParameter",
        "$getWorkflowStaticData": "_getWorkflowStaticData",
    }
)


def _copy(record: Record) -> Record:
    return record.model_copy(deep=True)


class InputAccessor:
    """
    The `$input` helper: the items flowing into the step. Items are handed
    out as copies when asked for, so a snippet mutating its input never
    touches the host's items.
    """

    def __init__(
        self,
        items: List[Record],
        item_index: int = 0,
        current: Optional[Record] = None,
    ):
        self._items = items
        self._item_index = item_index
        self._current = current

    def all(self) -> List[Record]:
        return [_copy(item) for item in self._items]

    def first(self) -> Optional[Record]:
        return _copy(self._items[0]) if self._items else None

    def last(self) -> Optional[Record]:
        return _copy(self._items[-1]) if self._items else None

    @property
    def item(self) -> Optional[Record]:
        if self._current is not None:
            return self._current
        if 0 <= self._item_index < len(self._items):
            return _copy(self._items[self._item_index])
        return None

    @property
    def item_index(self) -> int:
        return self._item_index

    def to_items(self) -> List[Dict[str, Any]]:
        """All items as plain item dicts."""
        return [item.to_item() for item in self._items]

    def __len__(self) -> int:
        return len(self._items)


class NodeOutputs:
    """The `$` helper: `$("Node name").all()` reads another node's output items."""

    def __init__(self, outputs: Dict[str, List[Record]], item_index: int = 0):
        self._outputs = outputs
        self._item_index = item_index

    def __call__(self, node_name: str) -> InputAccessor:
        if node_name not in self._outputs:
            raise KeyError(f"No output data found for node '{node_name}'.")
        return InputAccessor(self._outputs[node_name], self._item_index)

    def names(self) -> List[str]:
        return list(self._outputs)


class ContextBuilder:
    """
    Projects a `StepContext` into the flat symbol mapping a runtime exposes to
    the snippet. A build copies only the current item; every other item is
    copied lazily by the accessors.
    """

    def __init__(self, step: StepContext, renames: Optional[Mapping[str, str]] = None):
        self.step = step
        self.renames = renames or {}

    def _host_symbols(self, item_index: int) -> Dict[str, Any]:
        step = self.step
        items = step.items
        current = _copy(items[item_index]) if 0 <= item_index < len(items) else None
        today = step.started_at.replace(hour=0, minute=0, second=0, microsecond=0)
        outputs = NodeOutputs(step.node_outputs, item_index)

        def evaluate_expression(expression: str, itemIndex: Optional[int] = None):
            return step.evaluate_expression(
                expression, item_index if itemIndex is None else itemIndex
            )

        def get_node_parameter(
            name: str, itemIndex: Optional[int] = None, fallback: Any = None
        ):
            return step.get_node_parameter(
                name, item_index if itemIndex is None else itemIndex, fallback
            )

        def get_items(nodeName: Optional[str] = None) -> List[Record]:
            if nodeName is None:
                return [_copy(item) for item in items]
            return outputs(nodeName).all()

        return {
            "$": outputs,
            "$input": InputAccessor(items, item_index, current),
            "$items": get_items,
            "$json": current.json if current else {},
            "$binary": (current.binary or {}) if current else {},
            "$itemIndex": item_index,
            "$runIndex": step.run_index,
            "$mode": step.mode,
            "$now": step.started_at,
            "$today": today,
            "$workflow": dict(step.workflow),
            "$execution": {"id": step.execution_id, "mode": step.mode},
            "$node": {"name": step.node_name, "typeVersion": step.type_version},
            "$prevNode": {
                "name": step.prev_node_name,
                "outputIndex": 0,
                "runIndex": step.run_index,
            },
            "$parameter": dict(step.parameters),
            "$env": dict(step.env),
            "$evaluateExpression": evaluate_expression,
            "$jmesPath": jmespath_search,
            "$getNodeParameter": get_node_parameter,
            "$getWorkflowStaticData": step.get_workflow_static_data,
            "DateTime": datetime,
            "Duration": timedelta,
        }

    def build(self, item_index: int = 0) -> ExecutionContext:
        symbols = self._host_symbols(item_index)
        renamed = {self.renames.get(name, name): value for name, value in symbols.items()}
        return MappingProxyType(renamed)
