"""Blueprint discovery and loading."""
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from scaffoldkit.core.conditions import check_against_schema, describe
from scaffoldkit.core.errors import (
    BlueprintNotFound,
    DuplicateDestination,
    ManifestError,
    RenderError,
)
from scaffoldkit.core.logger import get_logger
from scaffoldkit.core.renderer import MAX_TEMPLATE_SIZE, TemplateRenderer, safe_relative_path
from scaffoldkit.models.blueprint import Blueprint, BlueprintDocument

logger = get_logger(__name__)

MANIFEST_NAMES = ("blueprint.yaml", "blueprint.yml")
TEMPLATES_DIR = "templates"


class BlueprintLoader:
    """Loads and manages blueprints."""

    def __init__(self, blueprints_dir: Optional[Path] = None):
        """Initialize blueprint loader.

        Args:
            blueprints_dir: Directory with one sub-directory per blueprint.
                        Defaults to the configured (or bundled) blueprints.
        """
        if blueprints_dir is None:
            from scaffoldkit.core.config import get_config
            self.blueprints_dir = Path(get_config().blueprints_dir)
        else:
            self.blueprints_dir = Path(blueprints_dir)

    def _manifest_path(self, blueprint_dir: Path) -> Optional[Path]:
        for name in MANIFEST_NAMES:
            candidate = blueprint_dir / name
            if candidate.is_file():
                return candidate
        return None

    def list_ids(self) -> List[str]:
        """Return the ids of every blueprint directory, sorted."""
        if not self.blueprints_dir.is_dir():
            return []
        return sorted(
            entry.name for entry in self.blueprints_dir.iterdir()
            if entry.is_dir() and self._manifest_path(entry) is not None
        )

    def exists(self, blueprint_id: str) -> bool:
        return blueprint_id in self.list_ids()

    def list_blueprints(self, blueprint_type: Optional[str] = None) -> List[Blueprint]:
        """List available blueprints.

        Args:
            blueprint_type: Filter by archetype type (e.g., 'cli', 'workspace')

        Returns:
            Blueprints sorted by type then id; broken blueprints are skipped
            with a warning
        """
        if not self.blueprints_dir.exists():
            logger.warning(f"Blueprint directory not found: {self.blueprints_dir}")
            return []

        blueprints = []
        for blueprint_id in self.list_ids():
            try:
                blueprint = self.load_blueprint(blueprint_id)
            except ManifestError as e:
                logger.warning(f"Failed to load blueprint {blueprint_id}: {e}")
                continue
            if blueprint_type is None or blueprint.type.lower() == blueprint_type.lower():
                blueprints.append(blueprint)

        return sorted(blueprints, key=lambda b: (b.type, b.id))

    def load_blueprint(self, blueprint_id: str) -> Blueprint:
        """Load a blueprint by id.

        Raises:
            BlueprintNotFound: No blueprint directory with that id
            ManifestError: The blueprint document is invalid
        """
        blueprint_dir = self.blueprints_dir / blueprint_id
        manifest_file = self._manifest_path(blueprint_dir) if blueprint_dir.is_dir() else None
        if manifest_file is None:
            available = ", ".join(self.list_ids()) or "none"
            raise BlueprintNotFound(
                f"Blueprint '{blueprint_id}' not found in {self.blueprints_dir} (available: {available})",
                blueprint=blueprint_id,
            )
        return self._load_blueprint_file(manifest_file, blueprint_id)

    def load_blueprint_file(self, manifest_path: Path | str) -> Blueprint:
        """Load a blueprint from the path of its ``blueprint.yaml``.

        Raises:
            BlueprintNotFound: File not found
            ManifestError: Invalid blueprint
        """
        manifest_file = Path(manifest_path)
        if not manifest_file.is_file():
            raise BlueprintNotFound(f"Blueprint file not found: {manifest_path}")
        return self._load_blueprint_file(manifest_file, manifest_file.parent.name)

    def search(self, query: str) -> List[Blueprint]:
        """Search blueprints by id, name, description, or tags."""
        query = query.lower()
        return [
            bp for bp in self.list_blueprints()
            if query in bp.id.lower()
            or query in bp.name.lower()
            or query in bp.description.lower()
            or any(query in tag.lower() for tag in bp.tags)
        ]

    def get_types(self) -> Dict[str, List[Blueprint]]:
        """Get blueprints grouped by type."""
        types: Dict[str, List[Blueprint]] = {}
        for blueprint in self.list_blueprints():
            types.setdefault(blueprint.type, []).append(blueprint)
        return types

    # -- Loading -----------------------------------------------------------

    def _load_blueprint_file(self, manifest_file: Path, blueprint_id: str) -> Blueprint:
        """Parse, validate and cross-check one blueprint document."""
        try:
            with open(manifest_file, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ManifestError(f"Invalid YAML in {manifest_file}: {e}", blueprint=blueprint_id) from e

        if not data:
            raise ManifestError(f"Empty blueprint file: {manifest_file}", blueprint=blueprint_id)
        if not isinstance(data, dict):
            raise ManifestError(f"Blueprint document must be a mapping: {manifest_file}", blueprint=blueprint_id)

        try:
            document = BlueprintDocument.model_validate(data)
        except ValidationError as e:
            raise ManifestError(
                f"Invalid blueprint document {manifest_file}:\n  " + _format_validation_error(e),
                blueprint=blueprint_id,
            ) from e
        except ManifestError as e:
            e.blueprint = e.blueprint or blueprint_id
            raise

        blueprint_id = document.id or blueprint_id
        templates_dir = manifest_file.parent / TEMPLATES_DIR

        sources: Dict[str, str] = {}
        for entry in document.files:
            if entry.source not in sources:
                sources[entry.source] = _read_template(templates_dir, entry.source, blueprint_id)

        fragments: Dict[str, str] = {}
        for name, path in sorted(document.fragments.items()):
            fragments[name] = _read_template(templates_dir, path, blueprint_id)

        blueprint = Blueprint(
            id=blueprint_id,
            name=document.name or blueprint_id,
            description=document.description,
            type=document.type,
            architecture=document.architecture,
            version=document.version,
            tags=document.tags,
            variables=document.variables,
            files=document.files,
            dependencies=document.dependencies,
            manifest=document.manifest,
            sources=MappingProxyType(sources),
            fragments=MappingProxyType(fragments),
            root=manifest_file.parent,
        )

        cross_check(blueprint)
        logger.debug(
            f"Loaded blueprint {blueprint.id}: {len(blueprint.variables)} variables, "
            f"{len(blueprint.files)} files, {len(blueprint.dependencies)} dependencies"
        )
        return blueprint


def cross_check(blueprint: Blueprint) -> None:
    """Validate every name a blueprint uses against its variable schema.

    Runs before any rendering so that conditions and templates can only
    reference declared variables.

    Raises:
        ManifestError: Undeclared variable, ill-typed condition, template
            syntax error, duplicate destination or bad manifest section
    """
    schema = blueprint.schema
    declared = set(schema)
    seen_names = set()
    for variable in blueprint.variables:
        if variable.name in seen_names:
            raise ManifestError(f"Variable '{variable.name}' is declared twice",
                                blueprint=blueprint.id, variable=variable.name)
        seen_names.add(variable.name)

    renderer = TemplateRenderer(blueprint.fragments)

    def check_template(source: str, label: str) -> None:
        try:
            names = renderer.undeclared_variables(source, label)
            fragments = renderer.referenced_fragments(source, label)
        except RenderError as e:
            raise ManifestError(f"Template does not parse: {e.message}", blueprint=blueprint.id, entry=label) from e
        unknown = sorted(names - declared)
        if unknown:
            raise ManifestError(
                f"Template references undeclared variable(s): {', '.join(unknown)}",
                blueprint=blueprint.id, entry=label, variable=unknown[0],
            )
        missing = sorted(fragments - set(blueprint.fragments))
        if missing:
            raise ManifestError(
                f"Template references unknown fragment(s): {', '.join(missing)}",
                blueprint=blueprint.id, entry=label,
            )

    for name, source in blueprint.fragments.items():
        check_template(source, f"fragment:{name}")

    for entry in blueprint.files:
        label = blueprint.describe_entry(entry)
        if entry.condition is not None:
            problems = check_against_schema(entry.condition, schema)
            if problems:
                raise ManifestError(
                    f"Condition '{describe(entry.condition)}' " + "; ".join(problems),
                    blueprint=blueprint.id, entry=label,
                )
        check_template(entry.destination, f"{entry.source} (destination)")
        check_template(blueprint.sources[entry.source], entry.source)

    _check_duplicate_destinations(blueprint)

    for dependency in blueprint.dependencies:
        label = f"dependency:{dependency.package}"
        if dependency.condition is not None:
            problems = check_against_schema(dependency.condition, schema)
            if problems:
                raise ManifestError(
                    f"Condition '{describe(dependency.condition)}' " + "; ".join(problems),
                    blueprint=blueprint.id, entry=label,
                )

    manifest = blueprint.manifest
    if manifest is None:
        if blueprint.dependencies:
            raise ManifestError("Dependencies are declared but there is no manifest section",
                                blueprint=blueprint.id)
        return

    check_template(manifest.toolchain, "manifest:toolchain")
    module_paths = set()
    for module in manifest.modules:
        if module.path in module_paths:
            raise ManifestError(f"Module '{module.path}' is declared twice", blueprint=blueprint.id)
        module_paths.add(module.path)
        check_template(module.name, f"module:{module.path}")
    for dependency in blueprint.dependencies:
        if dependency.module not in module_paths:
            raise ManifestError(
                f"Dependency {dependency.package} is scoped to undeclared module '{dependency.module}'",
                blueprint=blueprint.id, entry=f"dependency:{dependency.package}",
            )


def _check_duplicate_destinations(blueprint: Blueprint) -> None:
    by_destination: Dict[str, list] = {}
    for entry in blueprint.files:
        by_destination.setdefault(entry.destination.strip(), []).append(entry)

    for destination, entries in by_destination.items():
        if len(entries) < 2:
            continue
        unconditional = [e for e in entries if e.condition is None]
        conditions = [e.condition for e in entries if e.condition is not None]
        if unconditional or len(set(conditions)) != len(conditions):
            raise DuplicateDestination(
                f"Destination '{destination}' is declared by {len(entries)} entries "
                f"({', '.join(e.source for e in entries)}) whose conditions are not exclusive",
                blueprint=blueprint.id, entry=destination,
            )


def _read_template(templates_dir: Path, relative: str, blueprint_id: str) -> str:
    try:
        clean = safe_relative_path(relative, entry=relative)
    except RenderError as e:
        raise ManifestError(f"Invalid template source path: {e.message}",
                            blueprint=blueprint_id, entry=relative) from e
    path = templates_dir / clean
    if not path.is_file():
        raise ManifestError(f"Template source not found: {path}", blueprint=blueprint_id, entry=relative)
    size = path.stat().st_size
    if size > MAX_TEMPLATE_SIZE:
        raise ManifestError(f"Template source is {size} bytes, more than the {MAX_TEMPLATE_SIZE} byte limit: {path}",
                            blueprint=blueprint_id, entry=relative)
    try:
        return path.read_text(encoding='utf-8')
    except UnicodeDecodeError as e:
        raise ManifestError(f"Template source is not UTF-8 text: {path}",
                            blueprint=blueprint_id, entry=relative) from e


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        lines.append(f"{location}: {item.get('msg')}")
    return "\n  ".join(lines)
