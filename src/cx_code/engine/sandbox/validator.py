# ~/repositories/cx-code/src/cx_code/engine/sandbox/validator.py

from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Tuple

import structlog
from pydantic import ValidationError as PydanticValidationError

from ...config import CodeSettings
from ...data.schemas import Record
from ...utils import standardize_output
from .errors import ValidationError

logger = structlog.get_logger(__name__)

ITEM_KEYS = frozenset({"json", "binary", "pairedItem"})


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    return type(value).__name__


class ResultValidator:
    """
    Checks that what a snippet returned has the shape of workflow items and
    turns it into `Record`s with JSON-safe payloads.

    `object_names` is the (singular, plural) wording used in messages, since
    a JavaScript user returns objects while a Python user returns
    dictionaries.
    """

    def __init__(
        self,
        settings: CodeSettings,
        object_names: Tuple[str, str] = ("object", "objects"),
        item_index: Optional[int] = None,
    ):
        self.settings = settings
        self.singular, self.plural = object_names
        self.item_index = item_index

    def _error(self, message: str, description: Optional[str] = None) -> ValidationError:
        return ValidationError(
            message, description=description, item_index=self.item_index
        )

    def _wrap_scalar(self, value: Any) -> Dict[str, Any]:
        if self.settings.scalar_policy == "reject":
            raise self._error(
                f"Code doesn't return a {self.singular}",
                f"Please return a {self.singular} representing the output item. "
                f"('{value}' was returned instead.)",
            )
        return {"json": {self.settings.scalar_key: value}}

    def _validate_top_level_keys(self, item: Mapping) -> None:
        for key in item:
            if key not in ITEM_KEYS:
                raise self._error(
                    f"Unknown top-level item key: {key}",
                    "Access the properties of an item under `.json`, e.g. `item.json`",
                )

    def _to_record(self, item: Mapping) -> Record:
        json_payload = item.get("json")
        if not isinstance(json_payload, Mapping):
            raise self._error(
                "A 'json' property isn't an object",
                f"In the returned data, every key named 'json' must point to an {self.singular}.",
            )
        binary = item.get("binary")
        if binary is not None and not isinstance(binary, Mapping):
            raise self._error(
                "A 'binary' property isn't an object",
                f"In the returned data, every key named 'binary' must point to an {self.singular}.",
            )
        payload: Dict[str, Any] = {"json": standardize_output(dict(json_payload))}
        if binary is not None:
            payload["binary"] = dict(binary)
        if item.get("pairedItem") is not None:
            payload["pairedItem"] = item["pairedItem"]
        try:
            return Record.model_validate(payload)
        except PydanticValidationError as e:
            raise self._error("Returned item is not valid", str(e)) from e

    def _normalize(self, value: Any) -> Dict[str, Any]:
        if isinstance(value, Record):
            return value.to_item()
        if isinstance(value, Mapping):
            if "json" in value:
                self._validate_top_level_keys(value)
                return dict(value)
            return {"json": value}
        return self._wrap_scalar(value)

    def validate_run_once(self, result: Any) -> List[Record]:
        if not isinstance(result, (list, tuple)):
            raise self._error(
                "Code doesn't return items properly",
                f"Please return a list of {self.plural}, one for each item you would "
                f"like to output. (A {_type_name(result)} was returned instead.)",
            )

        shaped = [
            isinstance(el, Record) or (isinstance(el, Mapping) and "json" in el)
            for el in result
        ]
        if any(shaped) and not all(shaped):
            raise self._error(
                "Inconsistent item format",
                "Either every returned item has a 'json' key, or none of them does.",
            )

        records = [self._to_record(self._normalize(el)) for el in result]
        logger.debug("validator.run_once.validated", record_count=len(records))
        return records

    def validate_per_item(self, result: Any) -> Optional[Record]:
        if result is None:
            return None

        if isinstance(result, (list, tuple)):
            first_sentence = (
                f"A list of {_type_name(result[0])}s was returned."
                if result
                else "An empty list was returned."
            )
            raise self._error(
                f"Code doesn't return a single {self.singular}",
                f"{first_sentence} If you need to output multiple items, please use "
                "the 'Run Once for All Items' mode instead.",
            )

        return self._to_record(self._normalize(result))
