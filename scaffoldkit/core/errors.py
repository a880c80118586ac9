"""Error taxonomy for blueprint resolution, rendering and materialization.

Every error carries enough context (blueprint id, file entry, variable name)
for the caller to pinpoint the cause. All failure classes are deterministic
for a given blueprint and configuration, so none of them are retried.
"""
from typing import Optional


class ScaffoldError(Exception):
    """Base class for all engine errors."""

    code = "SCAFFOLD_ERROR"

    def __init__(
        self,
        message: str,
        *,
        blueprint: Optional[str] = None,
        entry: Optional[str] = None,
        variable: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.blueprint = blueprint
        self.entry = entry
        self.variable = variable

    def context(self) -> str:
        """Return the 'key=value' context suffix for this error."""
        parts = []
        if self.blueprint:
            parts.append(f"blueprint={self.blueprint}")
        if self.entry:
            parts.append(f"entry={self.entry}")
        if self.variable:
            parts.append(f"variable={self.variable}")
        return ", ".join(parts)

    def __str__(self) -> str:
        ctx = self.context()
        if ctx:
            return f"[{self.code}] {self.message} ({ctx})"
        return f"[{self.code}] {self.message}"


# Configuration errors: raised before any rendering starts

class ConfigurationError(ScaffoldError):
    code = "CONFIGURATION_ERROR"


class MissingVariable(ConfigurationError):
    code = "MISSING_VARIABLE"


class InvalidType(ConfigurationError):
    code = "INVALID_TYPE"


class InvalidEnumValue(ConfigurationError):
    code = "INVALID_ENUM_VALUE"


class UnknownVariable(ConfigurationError):
    code = "UNKNOWN_VARIABLE"


# Manifest errors: raised while loading a blueprint

class ManifestError(ScaffoldError):
    code = "MANIFEST_ERROR"


class BlueprintNotFound(ManifestError):
    code = "BLUEPRINT_NOT_FOUND"


class DuplicateDestination(ManifestError):
    code = "DUPLICATE_DESTINATION"


# Render errors: fail the file and abort the session

class RenderError(ScaffoldError):
    code = "RENDER_ERROR"


class UndefinedReference(RenderError):
    code = "UNDEFINED_REFERENCE"


class MalformedTemplate(RenderError):
    code = "MALFORMED_TEMPLATE"


class PathTraversal(RenderError):
    code = "PATH_TRAVERSAL"


class DependencyConflict(ScaffoldError):
    """Two facts name the same package at versions that cannot be reconciled."""

    code = "DEPENDENCY_CONFLICT"

    def __init__(self, message: str, *, package: Optional[str] = None, versions=(), **kwargs):
        super().__init__(message, **kwargs)
        self.package = package
        self.versions = tuple(versions)


# Materialization errors: abort and roll back the commit

class MaterializationError(ScaffoldError):
    code = "MATERIALIZATION_ERROR"


class DestinationExists(MaterializationError):
    code = "DESTINATION_EXISTS"

    def __init__(self, message: str, *, paths=(), **kwargs):
        super().__init__(message, **kwargs)
        self.paths = tuple(paths)


class PartialWriteFailure(MaterializationError):
    code = "PARTIAL_WRITE_FAILURE"

    def __init__(self, message: str, *, path: Optional[str] = None, rollback_errors=(), **kwargs):
        super().__init__(message, **kwargs)
        self.path = path
        self.rollback_errors = tuple(rollback_errors)


class GenerationCancelled(ScaffoldError):
    code = "CANCELLED"


# CLI exit codes, most specific class first
EXIT_CODES = (
    (ConfigurationError, 2),
    (ManifestError, 3),
    (RenderError, 4),
    (DependencyConflict, 5),
    (MaterializationError, 6),
    (GenerationCancelled, 130),
)


def exit_code_for(error: BaseException) -> int:
    """Map an error to its machine-distinguishable process exit code."""
    for error_class, code in EXIT_CODES:
        if isinstance(error, error_class):
            return code
    return 1
