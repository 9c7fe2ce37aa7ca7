import pytest

from flag_editor.document import (
    FlagDefinition,
    FlagDocumentError,
    MetadataRow,
    describe_flag,
    from_document,
    metadata_to_rows,
    normalize_metadata_value,
    parse_document_text,
    rows_to_metadata,
    to_document,
)
from flag_editor.targeting import parse_expression
from flag_editor.variants import VariantRow, VariantSet


@pytest.mark.parametrize(
    "document",
    [
        {"state": "ENABLED", "variants": {"on": True, "off": False}, "defaultVariant": "on"},
        {
            "state": "DISABLED",
            "variants": {"on": "new", "off": "old"},
            "defaultVariant": "off",
            "targeting": {"if": [{">=": [{"var": "$flagd.timestamp"}, 1700000000]}, "on", "off"]},
        },
        {
            "state": "ENABLED",
            "variants": {"small": 1, "large": 10},
            "defaultVariant": "small",
            "targeting": {"if": [{"in": [{"var": "tier"}, ["gold", "platinum"]]}, "large", "small"]},
            "metadata": {"owner": "payments", "ttl": 30, "critical": True},
        },
    ],
)
def test_document_round_trip(document) -> None:
    assert to_document(from_document(document)) == document


def test_to_document_omits_empty_optional_fields() -> None:
    model = FlagDefinition(
        variants=VariantSet([VariantRow("on", True), VariantRow("", False)]),
        targeting=parse_expression({}),
        metadata={},
    )
    assert to_document(model) == {"state": "ENABLED", "variants": {"on": True}}


def test_to_document_requires_a_named_variant() -> None:
    model = FlagDefinition(variants=VariantSet([VariantRow("", True)]))
    with pytest.raises(FlagDocumentError, match="Must have at least one variant"):
        to_document(model)
    assert to_document(model, strict=False) == {"state": "ENABLED", "variants": {}}


def test_from_document_validation_messages() -> None:
    with pytest.raises(FlagDocumentError, match="JSON must be an object"):
        from_document(["state"])
    with pytest.raises(FlagDocumentError, match="Must have at least one variant"):
        from_document({"variants": {}})
    with pytest.raises(FlagDocumentError, match="Must have at least one variant"):
        from_document({"state": "ENABLED", "variants": ["on"]})
    with pytest.raises(FlagDocumentError, match="Missing required field: state"):
        from_document({"variants": {"on": True}})
    with pytest.raises(FlagDocumentError, match="Invalid state"):
        from_document({"state": "PAUSED", "variants": {"on": True}})


def test_from_document_drops_malformed_optional_fields() -> None:
    model = from_document(
        {"state": "ENABLED", "variants": {"a": {"x": 1}}, "defaultVariant": None, "targeting": "x", "metadata": [1]}
    )
    assert model.flag_type == "object"
    assert model.default_variant == ""
    assert model.targeting is None
    assert model.metadata is None


def test_parse_document_text_reports_invalid_json() -> None:
    with pytest.raises(FlagDocumentError, match="Invalid JSON"):
        parse_document_text("{nope")


def test_describe_flag() -> None:
    summary = describe_flag(
        {
            "state": "ENABLED",
            "variants": {"on": True, "off": False},
            "targeting": {"fractional": [["on", 50], ["off", 50]]},
        }
    )
    assert summary == {
        "type": "boolean",
        "state": "ENABLED",
        "variants": ["on", "off"],
        "default": None,
        "targeting": "opaque",
    }


def test_metadata_rows_infer_and_normalize() -> None:
    rows = metadata_to_rows({"owner": "web", "weight": 2, "beta": False})
    assert [(row.key, row.type) for row in rows] == [("owner", "string"), ("weight", "number"), ("beta", "boolean")]

    rows.append(MetadataRow(key="  ", type="string", value="ignored"))
    rows.append(MetadataRow(key=" ratio ", type="number", value="0.5"))
    assert rows_to_metadata(rows) == {"owner": "web", "weight": 2, "beta": False, "ratio": 0.5}
    assert rows_to_metadata([]) is None


def test_normalize_metadata_value() -> None:
    assert normalize_metadata_value("12", "number") == 12
    assert normalize_metadata_value("abc", "number") == 0
    assert normalize_metadata_value("true", "boolean") is True
    assert normalize_metadata_value("yes", "boolean") is False
    assert normalize_metadata_value(None, "string") == ""
    assert normalize_metadata_value(5, "string") == "5"


def test_strict_export_rejects_dangling_default() -> None:
    model = FlagDefinition(variants=VariantSet([VariantRow("a", 1)]), default_variant="zzz")
    with pytest.raises(FlagDocumentError, match="Default variant must reference an existing variant"):
        to_document(model)
    assert to_document(model, strict=False)["defaultVariant"] == "zzz"


@pytest.mark.parametrize("value", [{"team": "x"}, ["a"], None, float("inf")])
def test_from_document_rejects_non_scalar_metadata(value) -> None:
    with pytest.raises(FlagDocumentError, match="Metadata values must be strings, numbers or booleans"):
        from_document({"state": "ENABLED", "variants": {"on": True}, "metadata": {"owner": value}})


def test_string_metadata_never_renders_containers() -> None:
    assert normalize_metadata_value({"team": "x"}, "string") == ""
    assert normalize_metadata_value(2.5, "string") == "2.5"
