import pytest

from flag_editor.variants import (
    VariantRow,
    VariantSet,
    coerce_value,
    default_variants,
    infer_flag_type,
    validate_flag_type,
)


def test_infer_flag_type_uses_first_value() -> None:
    assert infer_flag_type({}) == "boolean"
    assert infer_flag_type({"on": True, "off": 1}) == "boolean"
    assert infer_flag_type({"a": 1.5}) == "number"
    assert infer_flag_type({"a": "x", "b": 2}) == "string"
    assert infer_flag_type({"a": {"k": 1}}) == "object"
    assert infer_flag_type({"a": [1, 2]}) == "object"


def test_bool_is_not_treated_as_number() -> None:
    assert infer_flag_type([VariantRow("off", False)]) == "boolean"


def test_default_variants_per_type() -> None:
    assert [(row.name, row.value) for row in default_variants("boolean")] == [("on", True), ("off", False)]
    assert [(row.name, row.value) for row in default_variants("string")] == [("on", ""), ("off", "")]
    assert [(row.name, row.value) for row in default_variants("number")] == [("on", 0), ("off", 0)]
    assert [(row.name, row.value) for row in default_variants("object")] == [("variant-a", {})]


def test_validate_flag_type_rejects_unknown() -> None:
    with pytest.raises(ValueError, match="unsupported flag type"):
        validate_flag_type("integer")


def test_to_mapping_drops_empty_names_and_last_duplicate_wins() -> None:
    variants = VariantSet([VariantRow("a", 1), VariantRow("", 2), VariantRow("a", 3), VariantRow("b", 4)])
    assert variants.names() == ["a", "a", "b"]
    assert variants.to_mapping() == {"a": 3, "b": 4}
    assert list(variants.to_mapping()) == ["a", "b"]


def test_from_mapping_copies_values() -> None:
    source = {"variant-a": {"color": "red"}}
    variants = VariantSet.from_mapping(source)
    variants.rows[0].value["color"] = "blue"
    assert source["variant-a"]["color"] == "red"


def test_row_mutators() -> None:
    variants = VariantSet.for_type("number")
    index = variants.add(0)
    assert index == 2
    variants.rename(index, "beta")
    variants.set_value(index, 7)
    variants.remove(0)
    assert variants.to_mapping() == {"off": 0, "beta": 7}

    variants.replace_all([VariantRow("x", 1)])
    assert variants.to_rows() == [["x", 1]]


def test_repair_default_reassigns_dangling_reference() -> None:
    variants = VariantSet([VariantRow("blue", "b"), VariantRow("green", "g")])
    assert variants.repair_default("blue") == "blue"
    assert variants.repair_default("red") == "blue"
    assert variants.repair_default("") == ""
    assert VariantSet().repair_default("red") == ""


def test_canonical_pair_shape() -> None:
    assert VariantSet.for_type("boolean").is_canonical_pair("boolean")
    assert VariantSet([VariantRow("off", False), VariantRow("on", True)]).is_canonical_pair("boolean")
    assert not VariantSet([VariantRow("on", False), VariantRow("off", True)]).is_canonical_pair("boolean")
    assert VariantSet([VariantRow("on", "blue"), VariantRow("off", "")]).is_canonical_pair("string")
    assert not VariantSet([VariantRow("on", "a"), VariantRow("maybe", "b")]).is_canonical_pair("string")
    assert not VariantSet.for_type("number").is_canonical_pair("number")
    assert not VariantSet([VariantRow("on", True)]).is_canonical_pair("boolean")


def test_coerce_value_reads_form_text() -> None:
    assert coerce_value("boolean", "true") is True
    assert coerce_value("boolean", "no") is False
    assert coerce_value("number", "42") == 42
    assert coerce_value("number", "2.5") == 2.5
    assert coerce_value("number", "abc") == 0
    assert coerce_value("object", '{"a": 1}') == {"a": 1}
    assert coerce_value("object", "{broken", previous={"keep": True}) == {"keep": True}
    assert coerce_value("string", "hello") == "hello"
    assert coerce_value("number", 3) == 3
