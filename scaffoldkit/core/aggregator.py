"""Dependency aggregation across rendered files and modules.

Facts are collected from every rendered FileEntry (a fan-in barrier per
module), then reduced to one deduplicated, version-resolved manifest per
module. Multi-module blueprints also get a workspace index listing the module
directories that received output.
"""
import re
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from scaffoldkit.core.errors import DependencyConflict
from scaffoldkit.core.logger import get_logger

logger = get_logger(__name__)

ROOT_MODULE = "."

_SEMVER_RE = re.compile(
    r'^v?(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)'
    r'(?:-(?P<pre>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?'
    r'(?:\+(?P<build>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$'
)
# Go pseudo-versions end in a 14-digit UTC timestamp and a 12-hex commit prefix
_PSEUDO_RE = re.compile(r'(?:^|[.-])\d{14}-[0-9a-f]{12}$')


@dataclass(frozen=True)
class DependencyFact:
    """One declared package requirement, created per render and never mutated."""

    module_scope: str
    package_path: str
    version: str
    source: str = ""


@dataclass(frozen=True)
class Requirement:
    package_path: str
    version: str


@dataclass(frozen=True)
class AggregateManifest:
    """Deduplicated, version-resolved requirements of one module."""

    module_scope: str
    module_name: str
    requirements: Tuple[Requirement, ...]
    replacements: Tuple[Tuple[str, str], ...] = ()

    def packages(self) -> List[str]:
        return [req.package_path for req in self.requirements]

    def version_of(self, package_path: str) -> Optional[str]:
        for req in self.requirements:
            if req.package_path == package_path:
                return req.version
        return None


@dataclass(frozen=True)
class WorkspaceIndex:
    """Module directories of a multi-module project that received output."""

    modules: Tuple[str, ...]


class DependencyCollector:
    """Concurrent-safe accumulator for facts emitted by render workers."""

    def __init__(self):
        self._facts: List[DependencyFact] = []
        self._lock = threading.Lock()

    def add(self, fact: DependencyFact) -> None:
        with self._lock:
            self._facts.append(fact)

    def extend(self, facts: Iterable[DependencyFact]) -> None:
        with self._lock:
            self._facts.extend(facts)

    def facts(self) -> List[DependencyFact]:
        with self._lock:
            return list(self._facts)

    def by_module(self) -> Dict[str, List[DependencyFact]]:
        """Group collected facts by module scope."""
        grouped: Dict[str, List[DependencyFact]] = {}
        for fact in self.facts():
            grouped.setdefault(fact.module_scope, []).append(fact)
        return grouped


# ---------------------------------------------------------------------------
# Version comparison
# ---------------------------------------------------------------------------

def parse_semver(version: str) -> Optional[Tuple[int, int, int, Tuple]]:
    """Parse a semantic version into a sortable key.

    Returns:
        ``(major, minor, patch, prerelease_key)`` or None when the string is
        not semver or is a Go pseudo-version
    """
    match = _SEMVER_RE.match(version.strip())
    if not match:
        return None
    pre = match.group("pre")
    if pre and _PSEUDO_RE.search(pre):
        return None
    return (
        int(match.group("major")),
        int(match.group("minor")),
        int(match.group("patch")),
        _prerelease_key(pre),
    )


def _prerelease_key(pre: Optional[str]) -> Tuple:
    # A release sorts after every prerelease of the same version
    if not pre:
        return (1,)
    identifiers = []
    for ident in pre.split("."):
        if ident.isdigit():
            identifiers.append((0, int(ident), ""))
        else:
            identifiers.append((1, 0, ident))
    return (0, tuple(identifiers))


def resolve_version(package_path: str, versions: Sequence[str], module_scope: str = ROOT_MODULE) -> str:
    """Pick the single version for a package declared at several versions.

    Raises:
        DependencyConflict: Versions differ and are not all semver-comparable,
            or two different strings share the same precedence
    """
    distinct = sorted(set(versions))
    if len(distinct) == 1:
        return distinct[0]

    keyed = []
    for version in distinct:
        key = parse_semver(version)
        if key is None:
            raise DependencyConflict(
                f"Cannot reconcile {package_path} versions {', '.join(distinct)}: "
                f"'{version}' is not a comparable semantic version",
                package=package_path,
                versions=distinct,
                entry=module_scope,
            )
        keyed.append((key, version))

    keyed.sort(key=lambda item: item[0])
    best_key, best = keyed[-1]
    if keyed[-2][0] == best_key:
        raise DependencyConflict(
            f"Cannot reconcile {package_path} versions {keyed[-2][1]} and {best}: equal precedence",
            package=package_path,
            versions=distinct,
            entry=module_scope,
        )
    logger.debug(f"Resolved {package_path} to {best} from {', '.join(distinct)}")
    return best


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def aggregate(
    facts: Sequence[DependencyFact],
    module_scope: str = ROOT_MODULE,
    module_name: str = "",
    siblings: Optional[Dict[str, str]] = None,
) -> AggregateManifest:
    """Reduce one module's facts to its AggregateManifest.

    Args:
        facts: Facts scoped to this module (others are rejected)
        module_scope: Module directory
        module_name: Declared module path of this module
        siblings: Other present modules, module path -> directory; requirements
            on them become local-path replacements

    Returns:
        AggregateManifest with requirements sorted by package path
    """
    siblings = siblings or {}
    versions: Dict[str, List[str]] = {}
    for fact in facts:
        if fact.module_scope != module_scope:
            raise ValueError(f"Fact for {fact.module_scope} passed to aggregation of {module_scope}")
        if fact.package_path == module_name:
            continue
        versions.setdefault(fact.package_path, []).append(fact.version)

    requirements = []
    replacements = []
    for package_path in sorted(versions):
        if package_path in siblings:
            requirements.append(Requirement(package_path, "v0.0.0"))
            replacements.append((package_path, relative_module_path(module_scope, siblings[package_path])))
            continue
        version = resolve_version(package_path, versions[package_path], module_scope)
        requirements.append(Requirement(package_path, version))

    return AggregateManifest(
        module_scope=module_scope,
        module_name=module_name,
        requirements=tuple(requirements),
        replacements=tuple(replacements),
    )


def module_for_path(destination: str, module_paths: Iterable[str]) -> Optional[str]:
    """Return the module owning a destination (longest matching directory prefix)."""
    best: Optional[Tuple[int, str]] = None
    for module_path in module_paths:
        if module_path == ROOT_MODULE:
            depth = 0
        elif destination == module_path or destination.startswith(module_path + "/"):
            depth = module_path.count("/") + 1
        else:
            continue
        if best is None or depth > best[0]:
            best = (depth, module_path)
    return best[1] if best else None


def build_workspace_index(module_paths: Iterable[str], destinations: Iterable[str]) -> WorkspaceIndex:
    """List exactly the modules that own at least one rendered destination."""
    module_paths = list(module_paths)
    present = set()
    for destination in destinations:
        owner = module_for_path(destination, module_paths)
        if owner is not None:
            present.add(owner)
    return WorkspaceIndex(tuple(sorted(present)))


def relative_module_path(from_dir: str, to_dir: str) -> str:
    """Relative path between two module directories, always starting with '.'."""
    from_parts = [] if from_dir == ROOT_MODULE else from_dir.split("/")
    to_parts = [] if to_dir == ROOT_MODULE else to_dir.split("/")
    common = 0
    while common < min(len(from_parts), len(to_parts)) and from_parts[common] == to_parts[common]:
        common += 1
    ups = [".."] * (len(from_parts) - common)
    rest = to_parts[common:]
    if not ups:
        return "./" + "/".join(rest) if rest else "."
    return "/".join(ups + rest)
