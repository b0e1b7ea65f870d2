# arg_validator.py

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Tuple

from jsonrpc import invalid_params

PRIMITIVE_TYPES = ("string", "boolean", "number", "integer")


@dataclass(frozen=True)
class FieldSpec:
    type: str
    description: str = ""

    def __post_init__(self) -> None:
        if self.type not in PRIMITIVE_TYPES:
            raise ValueError(f"Unsupported field type: {self.type!r}")


@dataclass(frozen=True)
class ParameterSchema:
    properties: Mapping[str, FieldSpec] = field(default_factory=dict)
    required: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        unknown = [name for name in self.required if name not in self.properties]
        if unknown:
            raise ValueError(f"Required fields without a declared type: {unknown}")
        object.__setattr__(self, "properties", MappingProxyType(dict(self.properties)))
        object.__setattr__(self, "required", tuple(self.required))

    def to_json_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                name: ({"type": spec.type, "description": spec.description} if spec.description else {"type": spec.type})
                for name, spec in self.properties.items()
            },
            "required": list(self.required),
        }


def _type_matches(value: Any, expected: str) -> bool:
    # bool is an int subclass in Python; JSON keeps them apart.
    if expected == "string":
        return isinstance(value, str)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    return False


def _json_type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def find_violations(args: Mapping[str, Any], schema: ParameterSchema) -> List[Dict[str, str]]:
    violations: List[Dict[str, str]] = []
    for name in schema.required:
        if name not in args:
            violations.append({"field": name, "reason": "missing required field"})
    for name, spec in schema.properties.items():
        if name in args and not _type_matches(args[name], spec.type):
            violations.append({"field": name, "reason": f"expected {spec.type}, got {_json_type_name(args[name])}"})
    return violations


def validate_arguments(args: Any, schema: ParameterSchema) -> Dict[str, Any]:
    """Check `args` against `schema` and return only the declared fields.

    Raises ProtocolError(INVALID_PARAMS) listing every violation. Undeclared
    extra fields are tolerated and dropped so newer clients keep working.
    """
    if args is None:
        args = {}
    if not isinstance(args, Mapping):
        raise invalid_params("arguments must be an object", {"violations": [{"field": "", "reason": "not an object"}]})

    violations = find_violations(args, schema)
    if violations:
        fields = ", ".join(v["field"] for v in violations)
        raise invalid_params(f"Invalid arguments: {fields}", {"violations": violations})

    return {name: args[name] for name in schema.properties if name in args}
