from typing import List, Literal, Mapping, Optional, Protocol

from ...data.schemas import Record
from .context_builder import ExecutionContext

Language = Literal["javaScript", "python"]
ExecutionMode = Literal["runOnceForAllItems", "runOnceForEachItem"]


class RuntimeAdapter(Protocol):
    """The contract every snippet runtime implements."""

    language: Language
    symbol_renames: Mapping[str, str]

    async def run_once(self, context: ExecutionContext, code: str) -> List[Record]:
        """Runs the snippet once for the whole batch and returns its items."""
        ...

    async def run_per_item(
        self, context: ExecutionContext, code: str
    ) -> Optional[Record]:
        """Runs the snippet for one item; `None` drops the item from the output."""
        ...
