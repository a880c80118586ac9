"""Variable schema validation.

Turns raw user input (``--var KEY=VALUE`` strings) into an immutable
:class:`Configuration` bound against a blueprint's variable schema.
"""
import re
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Sequence

from scaffoldkit.core.errors import (
    InvalidEnumValue,
    InvalidType,
    MissingVariable,
    UnknownVariable,
)
from scaffoldkit.core.logger import get_logger

logger = get_logger(__name__)

_TRUE = {"true"}
_FALSE = {"false"}
_INT_RE = re.compile(r'^[+-]?\d+$')

_ZERO_VALUES = {
    "string": "",
    "bool": False,
    "int": 0,
    "list": (),
}


class Configuration(Mapping[str, Any]):
    """Validated, fully-bound variable values for one generation run.

    Read-only: every later component reads it, none writes it.
    """

    __slots__ = ("_bindings", "blueprint_id")

    def __init__(self, bindings: Mapping[str, Any], blueprint_id: Optional[str] = None):
        self._bindings = MappingProxyType(dict(bindings))
        self.blueprint_id = blueprint_id

    def __getitem__(self, name: str) -> Any:
        return self._bindings[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._bindings)

    def __len__(self) -> int:
        return len(self._bindings)

    def __repr__(self) -> str:
        return f"Configuration({dict(self._bindings)!r})"

    def as_dict(self) -> Dict[str, Any]:
        """Return a mutable copy of the bindings."""
        return dict(self._bindings)


def coerce_value(variable, raw: Any) -> Any:
    """Coerce a raw value to the variable's kind and check its constraints.

    Strings are parsed; values already of the right Python type are accepted
    as-is (defaults from YAML arrive typed).

    Raises:
        InvalidType: Value cannot be interpreted as the declared kind
        InvalidEnumValue: Enum value is not one of allowed_values
    """
    name = variable.name
    kind = variable.kind

    if kind == "bool":
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise InvalidType(f"Expected 'true' or 'false' for '{name}', got {raw!r}", variable=name)

    if kind == "int":
        if isinstance(raw, bool):
            raise InvalidType(f"Expected an integer for '{name}', got {raw!r}", variable=name)
        if isinstance(raw, int):
            value = raw
        else:
            text = str(raw).strip()
            if not _INT_RE.match(text):
                raise InvalidType(f"Expected a base-10 integer for '{name}', got {raw!r}", variable=name)
            value = int(text, 10)
        if variable.min is not None and value < variable.min:
            raise InvalidType(f"'{name}' must be >= {variable.min}, got {value}", variable=name)
        if variable.max is not None and value > variable.max:
            raise InvalidType(f"'{name}' must be <= {variable.max}, got {value}", variable=name)
        return value

    if kind == "enum":
        value = raw if isinstance(raw, str) else str(raw)
        if value not in variable.allowed_values:
            allowed = ", ".join(repr(v) for v in variable.allowed_values)
            raise InvalidEnumValue(
                f"Invalid value {value!r} for '{name}'; expected one of: {allowed}", variable=name
            )
        return value

    if kind == "list":
        if isinstance(raw, (list, tuple)):
            items = [str(item).strip() for item in raw]
        elif isinstance(raw, str):
            items = [item.strip() for item in raw.split(",")]
        else:
            raise InvalidType(f"Expected a comma-separated list for '{name}', got {raw!r}", variable=name)
        return tuple(item for item in items if item)

    # string
    if not isinstance(raw, str):
        if isinstance(raw, (bool, int, float)):
            raw = str(raw).lower() if isinstance(raw, bool) else str(raw)
        else:
            raise InvalidType(f"Expected a string for '{name}', got {raw!r}", variable=name)
    if variable.pattern is not None and not re.fullmatch(variable.pattern, raw):
        raise InvalidType(
            f"Value {raw!r} for '{name}' does not match pattern {variable.pattern!r}", variable=name
        )
    return raw


def default_value(variable) -> Any:
    """Value bound to an optional variable the user did not supply."""
    if variable.default is None:
        return _ZERO_VALUES[variable.kind]
    return coerce_value(variable, variable.default)


def validate(
    schema: Sequence[Any],
    raw: Mapping[str, Any],
    blueprint_id: Optional[str] = None,
) -> Configuration:
    """Validate raw user input against a variable schema.

    Args:
        schema: The blueprint's Variables
        raw: User-supplied values keyed by variable name
        blueprint_id: Blueprint id used for error context

    Returns:
        Immutable Configuration with a binding for every declared variable

    Raises:
        UnknownVariable: A key in raw is not declared by the schema
        MissingVariable: A required variable has no value
        InvalidType / InvalidEnumValue: A value fails coercion
    """
    declared = {variable.name for variable in schema}
    unknown = sorted(set(raw) - declared)
    if unknown:
        hint = ", ".join(sorted(declared)) or "none"
        raise UnknownVariable(
            f"Unknown variable(s): {', '.join(unknown)} (declared: {hint})",
            blueprint=blueprint_id,
            variable=unknown[0],
        )

    bindings: Dict[str, Any] = {}
    for variable in schema:
        try:
            if variable.name in raw:
                bindings[variable.name] = coerce_value(variable, raw[variable.name])
            elif variable.required:
                raise MissingVariable(
                    f"Required variable '{variable.name}' was not provided", variable=variable.name
                )
            else:
                bindings[variable.name] = default_value(variable)
                logger.debug(f"Using default for {variable.name}: {bindings[variable.name]!r}")
        except (MissingVariable, InvalidType, InvalidEnumValue) as e:
            e.blueprint = blueprint_id
            raise

    return Configuration(bindings, blueprint_id=blueprint_id)


def parse_assignments(assignments: Sequence[str]) -> Dict[str, str]:
    """Parse ``KEY=VALUE`` strings into a raw input mapping.

    Raises:
        InvalidType: An assignment has no '=' or an empty key
    """
    raw: Dict[str, str] = {}
    for assignment in assignments:
        key, sep, value = assignment.partition("=")
        key = key.strip()
        if not sep or not key:
            raise InvalidType(f"Expected KEY=VALUE, got {assignment!r}")
        raw[key] = value
    return raw
