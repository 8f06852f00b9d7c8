from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class BinaryPayload(BaseModel):
    """A binary attachment on an item, carried inline as base64 text."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    data: str = Field(..., description="Base64-encoded file content.")
    mime_type: str = Field(
        "application/octet-stream", alias="mimeType", description="The MIME type."
    )
    file_name: Optional[str] = Field(None, alias="fileName")
    file_extension: Optional[str] = Field(None, alias="fileExtension")


class ItemPointer(BaseModel):
    """Points an output record back at the input item it was produced from."""

    item: int = Field(..., ge=0, description="Index of the source input item.")
    input: Optional[int] = Field(
        None, description="Index of the input connection, when there is more than one."
    )


class Record(BaseModel):
    """
    The canonical unit of data flowing between workflow steps.

    Serialized with `to_item()`, a record has the shape
    `{"json": {...}, "binary": {...}, "pairedItem": {"item": n}}` where only
    `json` is required.
    """

    model_config = ConfigDict(populate_by_name=True)

    json_data: Dict[str, Any] = Field(default_factory=dict, alias="json")
    binary: Optional[Dict[str, BinaryPayload]] = None
    paired_item: Optional[ItemPointer] = Field(None, alias="pairedItem")

    @property
    def json(self) -> Dict[str, Any]:
        return self.json_data

    def to_item(self) -> Dict[str, Any]:
        """Returns the record as plain, serializable data."""
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_item(cls, item: Any) -> "Record":
        """Builds a record from either an item dict or a bare json payload."""
        if isinstance(item, Record):
            return item
        if isinstance(item, dict) and "json" in item:
            return cls.model_validate(item)
        return cls(json=item)
