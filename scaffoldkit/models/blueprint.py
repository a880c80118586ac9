"""Blueprint document models.

``BlueprintDocument`` mirrors the ``blueprint.yaml`` file and rejects unknown
keys; the loader turns a validated document plus its template sources into an
immutable :class:`Blueprint`.
"""
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Any, Dict, Literal, Mapping, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from scaffoldkit.core.conditions import describe, parse_condition
from scaffoldkit.core.errors import ConfigurationError

VariableKind = Literal["string", "bool", "int", "enum", "list"]

_KIND_ALIASES = {
    "str": "string",
    "boolean": "bool",
    "integer": "int",
    "choice": "enum",
    "array": "list",
}

DEFAULT_FILE_MODE = 0o644
EXECUTABLE_FILE_MODE = 0o755


class Variable(BaseModel):
    """A typed configuration variable declared by a blueprint."""

    model_config = ConfigDict(extra='forbid', frozen=True, populate_by_name=True)

    name: str
    kind: VariableKind = Field("string", validation_alias=AliasChoices("kind", "type"))
    description: str = ""
    required: bool = False
    default: Any = None
    allowed_values: Tuple[Any, ...] = Field(
        default=(), validation_alias=AliasChoices("allowed_values", "choices")
    )
    min: Optional[int] = None
    max: Optional[int] = None
    pattern: Optional[str] = Field(None, validation_alias=AliasChoices("pattern", "validation"))

    @model_validator(mode='before')
    @classmethod
    def normalize_kind(cls, data: Any) -> Any:
        """Map legacy kind names and promote strings with choices to enums."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        key = "kind" if "kind" in data else "type" if "type" in data else None
        kind = str(data[key]).lower() if key else "string"
        kind = _KIND_ALIASES.get(kind, kind)
        if kind == "string" and (data.get("choices") or data.get("allowed_values")):
            kind = "enum"
        if key:
            data[key] = kind
        else:
            data["kind"] = kind
        return data

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        """Variable names must be usable as template identifiers."""
        if not re.match(r'^[A-Za-z_][A-Za-z0-9_]*$', v):
            raise ValueError(f"Variable name '{v}' is not a valid identifier")
        return v

    @field_validator('allowed_values')
    @classmethod
    def stringify_allowed_values(cls, v):
        """Enum values are compared as strings."""
        return tuple(str(item) for item in v)

    @model_validator(mode='after')
    def validate_declaration(self) -> 'Variable':
        """Check kind-specific settings and that the default is a legal value."""
        from scaffoldkit.core.schema import coerce_value

        if self.kind == "enum" and not self.allowed_values:
            raise ValueError(f"Enum variable '{self.name}' must declare allowed_values")
        if self.kind != "enum" and self.allowed_values:
            raise ValueError(f"Only enum variables may declare allowed_values ('{self.name}')")
        if (self.min is not None or self.max is not None) and self.kind != "int":
            raise ValueError(f"Only int variables may declare min/max ('{self.name}')")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"Variable '{self.name}' has min {self.min} greater than max {self.max}")
        if self.pattern is not None:
            if self.kind != "string":
                raise ValueError(f"Only string variables may declare a pattern ('{self.name}')")
            try:
                re.compile(self.pattern)
            except re.error as e:
                raise ValueError(f"Variable '{self.name}' has an invalid pattern: {e}")
        if self.default is not None:
            try:
                coerce_value(self, self.default)
            except ConfigurationError as e:
                raise ValueError(f"Default for '{self.name}' is invalid: {e.message}")
        elif not self.required and self.kind == "enum":
            raise ValueError(f"Optional enum variable '{self.name}' must declare a default")
        return self


class FileSpec(BaseModel):
    """One ``files:`` entry of a blueprint document."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    source: str
    destination: str
    condition: Any = None
    mode: Optional[int] = None
    executable: bool = False
    description: str = ""

    @field_validator('condition', mode='before')
    @classmethod
    def parse_condition_field(cls, v):
        """Parse string or structured conditions into an expression AST."""
        if v is None or v == "":
            return None
        return parse_condition(v)

    @field_validator('mode', mode='before')
    @classmethod
    def parse_mode(cls, v):
        """Accept octal strings ("0755", "755") or integers."""
        if v is None:
            return None
        if isinstance(v, str):
            try:
                v = int(v, 8)
            except ValueError:
                raise ValueError(f"File mode '{v}' is not an octal number")
        if not isinstance(v, int) or isinstance(v, bool) or not 0 <= v <= 0o7777:
            raise ValueError(f"File mode {v!r} is out of range")
        return v

    @field_validator('source', 'destination')
    @classmethod
    def validate_not_empty(cls, v):
        if not v.strip():
            raise ValueError("must not be empty")
        return v

    @property
    def file_mode(self) -> int:
        if self.mode is not None:
            return self.mode
        return EXECUTABLE_FILE_MODE if self.executable else DEFAULT_FILE_MODE


class DependencySpec(BaseModel):
    """A package requirement declared at manifest level."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    package: str
    version: str
    condition: Any = None
    module: str = "."

    @field_validator('condition', mode='before')
    @classmethod
    def parse_condition_field(cls, v):
        if v is None or v == "":
            return None
        return parse_condition(v)

    @field_validator('module')
    @classmethod
    def normalize_module(cls, v):
        return normalize_module_path(v)


class ModuleSpec(BaseModel):
    """A module root inside the generated tree."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    path: str = "."
    name: str

    @field_validator('path')
    @classmethod
    def normalize_path(cls, v):
        return normalize_module_path(v)


class ManifestSpec(BaseModel):
    """How aggregated dependencies are emitted."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    format: Literal["go"] = "go"
    filename: Optional[str] = None
    toolchain: str = ""
    workspace: str = "go.work"
    modules: Tuple[ModuleSpec, ...] = Field(min_length=1)

    @property
    def manifest_filename(self) -> str:
        return self.filename or "go.mod"

    @property
    def is_multi_module(self) -> bool:
        return len(self.modules) > 1


class BlueprintDocument(BaseModel):
    """The ``blueprint.yaml`` document."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    id: Optional[str] = None
    name: Optional[str] = None
    description: str = ""
    type: str = "other"
    architecture: str = ""
    version: str = "1.0.0"
    author: str = ""
    license: str = ""
    tags: Tuple[str, ...] = ()
    variables: Tuple[Variable, ...] = ()
    fragments: Dict[str, str] = Field(default_factory=dict)
    files: Tuple[FileSpec, ...] = Field(min_length=1)
    dependencies: Tuple[DependencySpec, ...] = ()
    manifest: Optional[ManifestSpec] = None


def normalize_module_path(value: str) -> str:
    """Normalize a module directory to a relative POSIX path ("." for the root)."""
    raw = value.strip().replace("\\", "/")
    if raw.startswith("/"):
        raise ValueError(f"Module path '{value}' must be relative")
    parts = [p for p in PurePosixPath(raw).parts if p not in ("", ".")]
    if ".." in parts:
        raise ValueError(f"Module path '{value}' must not contain '..'")
    return "/".join(parts) or "."


@dataclass(frozen=True)
class Blueprint:
    """A loaded, immutable blueprint: schema, file entries and template sources."""

    id: str
    name: str
    description: str
    type: str
    architecture: str
    version: str
    tags: Tuple[str, ...]
    variables: Tuple[Variable, ...]
    files: Tuple[FileSpec, ...]
    dependencies: Tuple[DependencySpec, ...]
    manifest: Optional[ManifestSpec]
    sources: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    fragments: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    root: Optional[Path] = None

    @property
    def schema(self) -> Dict[str, Variable]:
        """Variables keyed by name."""
        return {variable.name: variable for variable in self.variables}

    def describe_entry(self, entry: FileSpec) -> str:
        """Human readable identifier for a file entry."""
        if entry.condition is None:
            return f"{entry.source} -> {entry.destination}"
        return f"{entry.source} -> {entry.destination} [if {describe(entry.condition)}]"
