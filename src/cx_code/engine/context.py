# ~/repositories/cx-code/src/cx_code/engine/context.py

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from ..data.schemas import Record
from ..utils import get_nested_value, safe_serialize
from .expressions import ExpressionEvaluator

WorkflowMode = Literal[
    "manual", "trigger", "webhook", "cli", "integrated", "internal", "retry"
]
StaticDataType = Literal["global", "node"]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StepContext(BaseModel):
    """
    Everything the workflow engine hands to a code step for one run: the
    input items, the run metadata and the workflow-level state the snippet
    may read or update.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    items: List[Record] = Field(default_factory=list)
    mode: WorkflowMode = Field(
        "trigger", description="How the workflow was started; 'manual' is interactive."
    )
    run_index: int = Field(0, description="How often this node has run before.")
    env: Dict[str, str] = Field(default_factory=dict)
    static_data: Dict[str, Dict[str, Any]] = Field(
        default_factory=lambda: {"global": {}, "node": {}},
        description="Workflow static data, persisted by the engine between runs.",
    )
    workflow: Dict[str, Any] = Field(
        default_factory=lambda: {"id": None, "name": None, "active": False}
    )
    execution_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    node_name: str = "Code"
    prev_node_name: Optional[str] = Field(
        None, description="The node whose output feeds this step."
    )
    type_version: int = 2
    parameters: Dict[str, Any] = Field(default_factory=dict)
    node_outputs: Dict[str, List[Record]] = Field(
        default_factory=dict,
        description="Output items of previously executed nodes, keyed by node name.",
    )
    started_at: datetime = Field(default_factory=_utc_now)
    message_sink: Optional[Callable[..., Any]] = Field(
        None, description="Receives console output when running in manual mode."
    )

    _evaluator: ExpressionEvaluator = PrivateAttr(default_factory=ExpressionEvaluator)

    @property
    def is_manual(self) -> bool:
        return self.mode == "manual"

    def expression_variables(self, item_index: int) -> Dict[str, Any]:
        item = self.items[item_index] if 0 <= item_index < len(self.items) else None
        return {
            "json": item.json if item else {},
            "binary": safe_serialize(item.binary) if item and item.binary else {},
            "items": [i.json for i in self.items],
            "item_index": item_index,
            "run_index": self.run_index,
            "env": self.env,
            "workflow": self.workflow,
            "execution_id": self.execution_id,
            "node": {"name": self.node_name, "parameters": self.parameters},
        }

    def evaluate_expression(self, expression: str, item_index: int = 0) -> Any:
        return self._evaluator.evaluate(
            expression, self.expression_variables(item_index)
        )

    def get_node_parameter(
        self, name: str, item_index: int = 0, fallback: Any = None
    ) -> Any:
        """
        Reads a node parameter by dotted path (`options.limit`). Values written
        as expressions (`={{ ... }}`) are evaluated against the given item.
        """
        if name in self.parameters:
            value = self.parameters[name]
        else:
            value = get_nested_value(self.parameters, name)
        if value is None:
            return fallback
        if self._evaluator.is_expression(value):
            return self.evaluate_expression(value, item_index)
        return value

    def get_workflow_static_data(self, data_type: StaticDataType) -> Dict[str, Any]:
        """Returns the live static data dict so that changes persist with the workflow."""
        if data_type not in ("global", "node"):
            raise ValueError(
                f"The static data type '{data_type}' is not known. Use 'global' or 'node'."
            )
        return self.static_data.setdefault(data_type, {})
