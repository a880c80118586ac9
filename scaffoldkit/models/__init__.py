"""Data models for scaffoldkit."""
from scaffoldkit.models.blueprint import (
    Blueprint,
    BlueprintDocument,
    DependencySpec,
    FileSpec,
    ManifestSpec,
    ModuleSpec,
    Variable,
)

__all__ = [
    'Blueprint',
    'BlueprintDocument',
    'DependencySpec',
    'FileSpec',
    'ManifestSpec',
    'ModuleSpec',
    'Variable',
]
