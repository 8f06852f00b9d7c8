from datetime import datetime, timezone
from decimal import Decimal

import pytest

from cx_code.config import CodeSettings
from cx_code.data.schemas import Record
from cx_code.engine.sandbox.errors import ValidationError
from cx_code.engine.sandbox.validator import ResultValidator


@pytest.fixture
def validator(settings: CodeSettings) -> ResultValidator:
    return ResultValidator(settings, ("dictionary", "dictionaries"))


def test_run_once_wraps_plain_objects(validator: ResultValidator):
    """Unit Test: Verifies every plain object in a list becomes one record."""
    records = validator.validate_run_once([{"a": 1}, {"a": 2}, {"a": 3}])

    assert [r.json for r in records] == [{"a": 1}, {"a": 2}, {"a": 3}]


def test_run_once_keeps_item_shaped_values(validator: ResultValidator):
    """Unit Test: Verifies values that already carry `json` are used as they are."""
    records = validator.validate_run_once(
        [
            {"json": {"a": 1}, "pairedItem": {"item": 0}},
            {"json": {"a": 2}, "binary": {"file": {"data": "aGk=", "mimeType": "text/plain"}}},
        ]
    )

    assert records[0].json == {"a": 1}
    assert records[0].paired_item.item == 0
    assert records[1].binary["file"].mime_type == "text/plain"


def test_run_once_rejects_non_list(validator: ResultValidator):
    """Unit Test: Verifies a bare object is not accepted in run-once mode."""
    with pytest.raises(ValidationError) as exc_info:
        validator.validate_run_once({"a": 1})

    assert exc_info.value.message == "Code doesn't return items properly"
    assert "list of dictionaries" in exc_info.value.description


def test_run_once_rejects_mixed_item_format(validator: ResultValidator):
    with pytest.raises(ValidationError, match="Inconsistent item format"):
        validator.validate_run_once([{"json": {"a": 1}}, {"a": 2}])


def test_run_once_rejects_unknown_top_level_key(validator: ResultValidator):
    with pytest.raises(ValidationError, match="Unknown top-level item key: a"):
        validator.validate_run_once([{"json": {}, "a": 1}])


def test_json_must_be_a_mapping(validator: ResultValidator):
    with pytest.raises(ValidationError, match="A 'json' property isn't an object"):
        validator.validate_run_once([{"json": [1, 2]}])


def test_binary_must_be_a_mapping(validator: ResultValidator):
    with pytest.raises(ValidationError, match="A 'binary' property isn't an object"):
        validator.validate_per_item({"json": {}, "binary": "nope"})


def test_per_item_none_drops_the_item(validator: ResultValidator):
    assert validator.validate_per_item(None) is None


def test_per_item_object_and_scalar(validator: ResultValidator):
    """Unit Test: Verifies object returns and scalar returns under the default policy."""
    assert validator.validate_per_item({"b": 2}).json == {"b": 2}
    assert validator.validate_per_item(42).json == {"value": 42}
    assert validator.validate_per_item("text").json == {"value": "text"}


def test_per_item_rejects_lists(validator: ResultValidator):
    with pytest.raises(ValidationError) as exc_info:
        validator.validate_per_item([{"a": 1}])

    assert exc_info.value.message == "Code doesn't return a single dictionary"
    assert "Run Once for All Items" in exc_info.value.description


def test_scalar_reject_policy():
    """Unit Test: Verifies the reject policy refuses scalars in both modes."""
    validator = ResultValidator(CodeSettings(scalar_policy="reject"), item_index=3)

    with pytest.raises(ValidationError) as exc_info:
        validator.validate_per_item(7)
    assert exc_info.value.item_index == 3

    with pytest.raises(ValidationError):
        validator.validate_run_once([1, 2])


def test_scalar_key_is_configurable():
    validator = ResultValidator(CodeSettings(scalar_key="result"))

    assert [r.json for r in validator.validate_run_once([1, "x"])] == [
        {"result": 1},
        {"result": "x"},
    ]


def test_payloads_are_standardized(validator: ResultValidator):
    """Unit Test: Verifies non-JSON values are normalized in every record."""
    record = validator.validate_per_item(
        {
            "when": datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
            "price": Decimal("9.5"),
            "tags": ("a", "b"),
            "nested": {"ids": {1}},
        }
    )

    assert record.json == {
        "when": "2024-05-01T12:00:00Z",
        "price": 9.5,
        "tags": ["a", "b"],
        "nested": {"ids": [1]},
    }


def test_records_are_accepted(validator: ResultValidator):
    records = validator.validate_run_once([Record(json={"a": 1})])

    assert records[0].to_item() == {"json": {"a": 1}}
