"""Tests for argument validation against tool parameter schemas."""

import pytest

from arg_validator import FieldSpec, ParameterSchema, find_violations, validate_arguments
from jsonrpc import INVALID_PARAMS, ProtocolError

CONTROL = ParameterSchema(
    properties={"deviceId": FieldSpec("string", "id"), "state": FieldSpec("boolean", "on/off")},
    required=("deviceId", "state"),
)


class TestParameterSchema:
    def test_required_must_be_declared(self):
        with pytest.raises(ValueError):
            ParameterSchema(properties={}, required=("deviceId",))

    def test_unknown_field_type(self):
        with pytest.raises(ValueError):
            FieldSpec("array")

    def test_properties_are_read_only(self):
        with pytest.raises(TypeError):
            CONTROL.properties["extra"] = FieldSpec("string")

    def test_json_schema(self):
        assert CONTROL.to_json_schema() == {
            "type": "object",
            "properties": {
                "deviceId": {"type": "string", "description": "id"},
                "state": {"type": "boolean", "description": "on/off"},
            },
            "required": ["deviceId", "state"],
        }

    def test_empty_schema(self):
        assert ParameterSchema().to_json_schema() == {"type": "object", "properties": {}, "required": []}


class TestValidateArguments:
    def test_valid_arguments(self):
        assert validate_arguments({"deviceId": "d1", "state": True}, CONTROL) == {"deviceId": "d1", "state": True}

    def test_extra_fields_dropped(self):
        assert validate_arguments({"deviceId": "d1", "state": False, "brightness": 5}, CONTROL) == {
            "deviceId": "d1",
            "state": False,
        }

    def test_none_is_empty(self):
        assert validate_arguments(None, ParameterSchema()) == {}

    def test_missing_required(self):
        with pytest.raises(ProtocolError) as exc_info:
            validate_arguments({"deviceId": "d1"}, CONTROL)
        err = exc_info.value
        assert err.code == INVALID_PARAMS
        assert err.data == {"violations": [{"field": "state", "reason": "missing required field"}]}

    def test_wrong_type(self):
        with pytest.raises(ProtocolError) as exc_info:
            validate_arguments({"deviceId": "d1", "state": "true"}, CONTROL)
        assert exc_info.value.data["violations"] == [{"field": "state", "reason": "expected boolean, got string"}]

    def test_all_violations_reported(self):
        with pytest.raises(ProtocolError) as exc_info:
            validate_arguments({"deviceId": 12}, CONTROL)
        fields = sorted(v["field"] for v in exc_info.value.data["violations"])
        assert fields == ["deviceId", "state"]
        assert "deviceId" in exc_info.value.message

    def test_not_a_mapping(self):
        with pytest.raises(ProtocolError) as exc_info:
            validate_arguments(["d1", True], CONTROL)
        assert exc_info.value.code == INVALID_PARAMS


class TestPrimitiveTypes:
    @pytest.mark.parametrize(
        "ftype,value,ok",
        [
            ("string", "x", True),
            ("string", 1, False),
            ("boolean", False, True),
            ("boolean", 0, False),
            ("integer", 3, True),
            ("integer", 3.5, False),
            ("integer", True, False),
            ("number", 3, True),
            ("number", 2.5, True),
            ("number", False, False),
            ("number", None, False),
        ],
    )
    def test_type_checks(self, ftype, value, ok):
        schema = ParameterSchema(properties={"v": FieldSpec(ftype)})
        assert (find_violations({"v": value}, schema) == []) is ok

    def test_absent_optional_field_is_fine(self):
        schema = ParameterSchema(properties={"v": FieldSpec("number")})
        assert validate_arguments({}, schema) == {}
