"""
Unit tests for filter descriptors and collection schema validation.

Tests cover:
- Operator parsing and operand normalization
- In-memory evaluation (missing fields, type mismatches)
- Serialization and fingerprints
- Schema compatibility checks
"""

import json
import tempfile
from pathlib import Path

import pytest

from bulkops.selection_server.errors import InvalidFilterError
from bulkops.selection_server.filters import (
    CollectionSchema,
    FieldKind,
    FilterDescriptor,
    Operator,
    constraint,
)


class TestOperator:
    """Tests for Operator."""

    def test_from_str(self):
        assert Operator.from_str("eq") is Operator.EQ
        assert Operator.from_str("not_in") is Operator.NOT_IN

    def test_unknown_operator_rejected(self):
        with pytest.raises(InvalidFilterError) as exc_info:
            Operator.from_str("like")
        assert exc_info.value.code == "INVALID_FILTER"
        assert exc_info.value.operator == "like"

    def test_range_flags(self):
        assert Operator.BETWEEN.is_range
        assert Operator.GTE.is_range
        assert not Operator.EQ.is_range
        assert Operator.IN.takes_list
        assert not Operator.LT.takes_list


class TestConstraint:
    """Tests for constraint construction and evaluation."""

    def test_list_operand_normalized_to_tuple(self):
        c = constraint("status", "in", ["a", "b"])
        assert c.value == ("a", "b")
        hash(c)

    def test_set_operand_sorted(self):
        c = constraint("status", "in", {"b", "a"})
        assert c.value == ("a", "b")

    def test_scalar_operator_rejects_list(self):
        with pytest.raises(InvalidFilterError):
            constraint("status", "eq", ["a"])

    def test_list_operator_rejects_string(self):
        with pytest.raises(InvalidFilterError):
            constraint("status", "in", "abc")

    def test_between_requires_two_values(self):
        with pytest.raises(InvalidFilterError):
            constraint("size", "between", [1, 2, 3])

    def test_in_requires_values(self):
        with pytest.raises(InvalidFilterError):
            constraint("status", "in", [])

    def test_empty_field_rejected(self):
        with pytest.raises(InvalidFilterError):
            constraint("", "eq", 1)

    def test_missing_field_never_matches(self):
        assert not constraint("status", "eq", "x").matches({})
        assert not constraint("status", "ne", "x").matches({})
        assert not constraint("status", "not_in", ["x"]).matches({"status": None})

    def test_comparisons(self):
        assert constraint("size", "lt", 10).matches({"size": 5})
        assert constraint("size", "lte", 5).matches({"size": 5})
        assert not constraint("size", "gt", 5).matches({"size": 5})
        assert constraint("size", "gte", 5).matches({"size": 5})
        assert constraint("size", "between", [1, 5]).matches({"size": 5})
        assert not constraint("size", "between", [1, 4]).matches({"size": 5})

    def test_type_mismatch_does_not_match(self):
        assert not constraint("size", "lt", 10).matches({"size": "big"})

    def test_from_dict_missing_keys(self):
        from bulkops.selection_server.filters import FieldConstraint

        with pytest.raises(InvalidFilterError):
            FieldConstraint.from_dict({"field": "status", "op": "eq"})


class TestFilterDescriptor:
    """Tests for FilterDescriptor."""

    def test_empty_matches_everything(self):
        assert FilterDescriptor().matches({})
        assert str(FilterDescriptor()) == "<all records>"

    def test_conjunction(self):
        f = FilterDescriptor.of(("status", "eq", "unreplied"), ("size", "gt", 10))
        assert f.matches({"status": "unreplied", "size": 11})
        assert not f.matches({"status": "unreplied", "size": 9})
        assert f.field_names == ["status", "size"]

    def test_dict_roundtrip(self):
        f = FilterDescriptor.of(("status", "in", ["a", "b"]), ("size", "between", [1, 9]))
        data = json.loads(json.dumps(f.to_dict()))
        assert FilterDescriptor.from_dict(data) == f

    def test_from_dict_none_is_empty(self):
        assert FilterDescriptor.from_dict(None) == FilterDescriptor()

    def test_from_dict_rejects_bad_shapes(self):
        with pytest.raises(InvalidFilterError):
            FilterDescriptor.from_dict({"constraints": "status=x"})
        with pytest.raises(InvalidFilterError):
            FilterDescriptor.from_dict({"constraints": ["status=x"]})

    def test_fingerprint_stable_and_order_sensitive(self):
        a = FilterDescriptor.of(("status", "eq", "x"), ("size", "gt", 1))
        b = FilterDescriptor.of(("status", "eq", "x"), ("size", "gt", 1))
        c = FilterDescriptor.of(("size", "gt", 1), ("status", "eq", "x"))
        assert a.fingerprint() == b.fingerprint()
        assert a.fingerprint() != c.fingerprint()
        assert a.fingerprint().startswith("sha256:")


class TestCollectionSchema:
    """Tests for schema validation of descriptors."""

    @pytest.fixture
    def schema(self):
        return CollectionSchema.from_dict(
            {
                "fields": {
                    "status": "str",
                    "size": "int",
                    "score": "float",
                    "starred": "bool",
                    "received_at": "timestamp",
                }
            }
        )

    def test_valid_descriptor(self, schema):
        schema.validate(
            FilterDescriptor.of(
                ("status", "in", ["unreplied", "open"]),
                ("size", "between", [1, 100]),
                ("score", "gte", 1),
                ("starred", "eq", True),
                ("received_at", "gt", 1700000000000),
            )
        )

    def test_unknown_field(self, schema):
        with pytest.raises(InvalidFilterError) as exc_info:
            schema.validate(FilterDescriptor.of(("colour", "eq", "red")))
        assert exc_info.value.field_name == "colour"

    def test_range_on_bool_rejected(self, schema):
        with pytest.raises(InvalidFilterError):
            schema.validate(FilterDescriptor.of(("starred", "gt", True)))

    def test_wrong_operand_type(self, schema):
        with pytest.raises(InvalidFilterError):
            schema.validate(FilterDescriptor.of(("size", "eq", "ten")))
        with pytest.raises(InvalidFilterError):
            schema.validate(FilterDescriptor.of(("size", "eq", True)))
        with pytest.raises(InvalidFilterError):
            schema.validate(FilterDescriptor.of(("status", "in", ["a", 1])))

    def test_inverted_range(self, schema):
        with pytest.raises(InvalidFilterError):
            schema.validate(FilterDescriptor.of(("size", "between", [10, 1])))

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            CollectionSchema.from_dict({"fields": {"status": "varchar"}})

    def test_from_file(self, schema):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "schema.json"
            path.write_text(json.dumps(schema.to_dict()))
            loaded = CollectionSchema.from_file(path)
        assert loaded.fields["starred"] is FieldKind.BOOLEAN
        assert loaded.to_dict() == schema.to_dict()
