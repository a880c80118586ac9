"""Generation session: one end-to-end run of a blueprint.

A session walks the blueprint's file entries, renders the included ones on a
thread pool, aggregates the dependency facts they declare per module, emits
the dependency manifests and workspace index, and finally hands the staged
set to the Materializer. Nothing touches the disk before ``commit``.
"""
import posixpath
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from scaffoldkit.core.aggregator import (
    AggregateManifest,
    DependencyCollector,
    DependencyFact,
    WorkspaceIndex,
    aggregate,
    build_workspace_index,
    module_for_path,
    relative_module_path,
)
from scaffoldkit.core.conditions import evaluate
from scaffoldkit.core.errors import (
    ConfigurationError,
    DuplicateDestination,
    GenerationCancelled,
    ManifestError,
    MaterializationError,
    ScaffoldError,
)
from scaffoldkit.core.logger import get_logger
from scaffoldkit.core.manifests import get_emitter
from scaffoldkit.core.materializer import Materializer, RenderedFile
from scaffoldkit.core.renderer import RenderResult, TemplateRenderer
from scaffoldkit.core.schema import Configuration, validate
from scaffoldkit.models.blueprint import Blueprint, FileSpec

logger = get_logger(__name__)


class SessionState(Enum):
    NEW = "new"
    STAGED = "staged"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"
    FAILED = "failed"


CLOSED_STATES = (
    SessionState.COMMITTED,
    SessionState.ROLLED_BACK,
    SessionState.CANCELLED,
    SessionState.FAILED,
)


class GenerationSession:
    """Owns the staged output of a single generation run.

    The session is not shared between runs: once it is committed, rolled
    back, cancelled or failed it refuses further use.
    """

    def __init__(self, blueprint: Blueprint, configuration: Configuration, max_workers: Optional[int] = None):
        if max_workers is not None and max_workers < 1:
            raise ConfigurationError(f"max_workers must be a positive integer, got {max_workers}",
                                     blueprint=blueprint.id)
        self.blueprint = blueprint
        self.configuration = configuration
        self.max_workers = max_workers
        self.state = SessionState.NEW
        self.renderer = TemplateRenderer(blueprint.fragments)

        self.files: List[RenderedFile] = []
        self.manifests: Dict[str, AggregateManifest] = {}
        self.workspace: Optional[WorkspaceIndex] = None
        self.excluded: List[str] = []
        self.dropped: List[str] = []
        self.written: List[str] = []

        self._cancel_event = threading.Event()

    @property
    def closed(self) -> bool:
        return self.state in CLOSED_STATES

    # -- Planning ----------------------------------------------------------

    def plan(self) -> List[FileSpec]:
        """Return the file entries whose conditions hold, in manifest order."""
        included = []
        excluded = []
        for entry in self.blueprint.files:
            label = self.blueprint.describe_entry(entry)
            try:
                keep = entry.condition is None or evaluate(entry.condition, self.configuration)
            except ManifestError as e:
                e.blueprint = e.blueprint or self.blueprint.id
                e.entry = e.entry or label
                raise
            if keep:
                included.append(entry)
            else:
                excluded.append(entry.source)
                logger.debug(f"Excluded {label}")
        self.excluded = excluded
        return included

    # -- Staging -----------------------------------------------------------

    def stage(self) -> List[RenderedFile]:
        """Render every included entry and build the manifests, in memory only.

        Returns:
            Staged files ordered by destination path

        Raises:
            RenderError: A template failed; the session is marked failed
            DuplicateDestination: Two included entries rendered to one path
            DependencyConflict: Irreconcilable versions for one package
            GenerationCancelled: cancel() was called while staging
        """
        self._require_state(SessionState.NEW, "stage")
        try:
            self._stage()
        except GenerationCancelled:
            self.state = SessionState.CANCELLED
            raise
        except KeyboardInterrupt:
            self._cancel_event.set()
            self.state = SessionState.CANCELLED
            raise GenerationCancelled("Generation cancelled before commit; nothing was written",
                                      blueprint=self.blueprint.id) from None
        except ScaffoldError as e:
            e.blueprint = e.blueprint or self.blueprint.id
            self.state = SessionState.FAILED
            self._discard()
            raise
        except Exception:
            self.state = SessionState.FAILED
            self._discard()
            raise
        if self._cancel_event.is_set():
            self.state = SessionState.CANCELLED
            self._discard()
            raise GenerationCancelled("Generation cancelled before commit; nothing was written",
                                      blueprint=self.blueprint.id)
        self.state = SessionState.STAGED
        return list(self.files)

    def _stage(self) -> None:
        included = self.plan()
        logger.info(f"Rendering {len(included)} of {len(self.blueprint.files)} files for {self.blueprint.id}")

        results = self._render_all(included)

        module_paths = self._module_paths()
        collector = DependencyCollector()
        rendered: Dict[str, RenderedFile] = {}
        owners: Dict[str, str] = {}

        for entry, (path, result) in zip(included, results):
            if path in owners:
                raise DuplicateDestination(
                    f"Entries {owners[path]} and {entry.source} both render to '{path}'",
                    entry=entry.source,
                )
            owners[path] = entry.source

            if result.requirements:
                collector.extend(self._facts_for(entry, path, result, module_paths))

            if result.dropped:
                self.dropped.append(path)
                logger.debug(f"Dropped {path}: rendered content is blank")
                continue
            rendered[path] = RenderedFile(path, result.content, entry.file_mode, entry.source)
            logger.debug(f"Rendered {entry.source} -> {path}")

        for dependency in self.blueprint.dependencies:
            if dependency.condition is None or evaluate(dependency.condition, self.configuration):
                collector.add(DependencyFact(dependency.module, dependency.package, dependency.version, "blueprint"))

        if self.blueprint.manifest is not None:
            self._stage_manifests(rendered, collector, module_paths)

        self.files = [rendered[path] for path in sorted(rendered)]
        logger.info(
            f"Staged {len(self.files)} files ({len(self.excluded)} excluded, {len(self.dropped)} dropped)"
        )

    def _render_all(self, entries: List[FileSpec]) -> List[Tuple[str, RenderResult]]:
        """Render entries concurrently; results come back in entry order."""
        if not entries:
            return []
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="scaffoldkit-render") as executor:
            futures = [executor.submit(self._render_entry, entry) for entry in entries]
            results = []
            try:
                # Fan-in barrier: every future is joined before aggregation starts
                for future in futures:
                    results.append(future.result())
            except BaseException:
                self._cancel_event.set()
                for future in futures:
                    future.cancel()
                raise
        return results

    def _render_entry(self, entry: FileSpec) -> Tuple[str, RenderResult]:
        if self._cancel_event.is_set():
            raise GenerationCancelled("Generation cancelled before commit; nothing was written")
        label = self.blueprint.describe_entry(entry)
        try:
            path = self.renderer.render_path(entry.destination, self.configuration, f"{entry.source} (destination)")
            result = self.renderer.render(self.blueprint.sources[entry.source], self.configuration, entry.source)
        except ScaffoldError as e:
            e.blueprint = self.blueprint.id
            e.entry = label
            raise
        return path, result

    def _module_paths(self) -> List[str]:
        if self.blueprint.manifest is None:
            return []
        return [module.path for module in self.blueprint.manifest.modules]

    def _facts_for(self, entry: FileSpec, path: str, result: RenderResult, module_paths: List[str]) -> List[DependencyFact]:
        owner = module_for_path(path, module_paths)
        if owner is None:
            raise ManifestError(
                f"{entry.source} declares dependencies but '{path}' is outside every declared module",
                entry=entry.source,
            )
        return [DependencyFact(owner, package, version, entry.source) for package, version in result.requirements]

    def _stage_manifests(
        self,
        rendered: Dict[str, RenderedFile],
        collector: DependencyCollector,
        module_paths: List[str],
    ) -> None:
        manifest = self.blueprint.manifest
        emitter = get_emitter(manifest.format)
        toolchain = self.renderer.render_text(manifest.toolchain, self.configuration, "manifest:toolchain")

        names: Dict[str, str] = {}
        for module in manifest.modules:
            name = self.renderer.render_text(module.name, self.configuration, f"module:{module.path}")
            if not name:
                raise ManifestError(f"Module '{module.path}' renders to an empty module name",
                                    entry=f"module:{module.path}")
            names[module.path] = name

        index = build_workspace_index(module_paths, rendered)
        present = list(index.modules)
        facts = collector.by_module()
        for scope in sorted(set(facts) - set(present)):
            logger.debug(f"Discarding {len(facts[scope])} dependency facts for module {scope}: no files rendered there")

        generated: Dict[str, RenderedFile] = {}
        workspace_replacements = []
        for scope in present:
            siblings = {names[other]: other for other in present if other != scope}
            aggregate_manifest = aggregate(facts.get(scope, []), scope, names[scope], siblings)
            self.manifests[scope] = aggregate_manifest
            path = manifest.manifest_filename if scope == "." else posixpath.join(scope, manifest.manifest_filename)
            generated[path] = RenderedFile(path, emitter.module_manifest(aggregate_manifest, toolchain), 0o644,
                                           f"manifest:{scope}")
            for package_path, _ in aggregate_manifest.replacements:
                workspace_replacements.append((package_path, relative_module_path(".", siblings[package_path])))
            logger.debug(f"Module {scope} ({names[scope]}): {len(aggregate_manifest.requirements)} requirements")

        if manifest.is_multi_module:
            self.workspace = index
            generated[manifest.workspace] = RenderedFile(
                manifest.workspace,
                emitter.workspace_index(index, toolchain, workspace_replacements),
                0o644,
                "manifest:workspace",
            )
            logger.debug(f"Workspace index lists {', '.join(index.modules) or 'no modules'}")

        for path, manifest_file in generated.items():
            if path in rendered:
                raise ManifestError(
                    f"File entry {rendered[path].source} renders onto generated manifest '{path}'",
                    entry=rendered[path].source,
                )
            rendered[path] = manifest_file

    # -- Commit ------------------------------------------------------------

    def commit(self, dest_root: Path, overwrite: bool = False) -> List[str]:
        """Write the staged output under ``dest_root`` all-or-nothing.

        Returns:
            Relative paths written
        """
        self._require_state(SessionState.STAGED, "commit")
        materializer = Materializer(Path(dest_root), overwrite=overwrite, cancel_event=self._cancel_event)
        try:
            self.written = materializer.commit(self.files)
        except GenerationCancelled as e:
            e.blueprint = e.blueprint or self.blueprint.id
            self.state = SessionState.CANCELLED
            raise
        except MaterializationError as e:
            e.blueprint = e.blueprint or self.blueprint.id
            # A commit that wrote something was undone; one that hit a conflict never started
            self.state = SessionState.ROLLED_BACK if e.code == "PARTIAL_WRITE_FAILURE" else SessionState.FAILED
            raise
        finally:
            self._discard()
        self.state = SessionState.COMMITTED
        logger.info(f"Generated {len(self.written)} files from {self.blueprint.id} into {dest_root}")
        return list(self.written)

    def cancel(self) -> None:
        """Abandon the session.

        Before commit this just drops the staged output. During a commit
        running on another thread, the Materializer notices between writes and
        rolls back.
        """
        self._cancel_event.set()
        if self.state in (SessionState.NEW, SessionState.STAGED):
            self.state = SessionState.CANCELLED
            self._discard()
            logger.info(f"Cancelled generation of {self.blueprint.id}")

    def preview(self) -> Dict[str, bytes]:
        """Stage (if needed) and return the output tree as ``{path: bytes}``."""
        if self.state is SessionState.NEW:
            self.stage()
        self._require_state(SessionState.STAGED, "preview")
        return {rendered.destination_path: rendered.content for rendered in self.files}

    def _require_state(self, expected: SessionState, action: str) -> None:
        if self.state is not expected:
            raise RuntimeError(
                f"Cannot {action} a session in state '{self.state.value}' (expected '{expected.value}')"
            )

    def _discard(self) -> None:
        self.files = []


@dataclass
class GenerationResult:
    """Summary of a generate() call."""

    blueprint_id: str
    dest_root: Optional[Path]
    files: List[str]
    manifests: Dict[str, AggregateManifest] = field(default_factory=dict)
    workspace: Optional[WorkspaceIndex] = None
    excluded: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)
    dry_run: bool = False
    contents: Dict[str, bytes] = field(default_factory=dict)


def generate(
    blueprint_id: str,
    raw_vars: Mapping[str, Any],
    dest_root: Optional[Path] = None,
    *,
    loader=None,
    overwrite: bool = False,
    dry_run: bool = False,
    max_workers: Optional[int] = None,
) -> GenerationResult:
    """Load, validate, render and (unless dry_run) commit one blueprint.

    Args:
        blueprint_id: Blueprint to generate
        raw_vars: User-supplied variable values keyed by name
        dest_root: Project root to write into (required unless dry_run)
        loader: BlueprintLoader to resolve the id (defaults to configured dir)
        overwrite: Replace existing files instead of failing
        dry_run: Stage only and return the rendered contents
        max_workers: Render thread count

    Returns:
        GenerationResult describing what was (or would be) written
    """
    if loader is None:
        from scaffoldkit.core.blueprint_loader import BlueprintLoader
        loader = BlueprintLoader()
    if dest_root is None and not dry_run:
        raise ValueError("dest_root is required unless dry_run is set")

    blueprint = loader.load_blueprint(blueprint_id)
    configuration = validate(blueprint.variables, raw_vars, blueprint_id=blueprint.id)

    if max_workers is None:
        from scaffoldkit.core.config import get_config
        max_workers = get_config().max_workers

    session = GenerationSession(blueprint, configuration, max_workers=max_workers)
    contents = session.preview()
    result = GenerationResult(
        blueprint_id=blueprint.id,
        dest_root=Path(dest_root) if dest_root is not None else None,
        files=sorted(contents),
        manifests=dict(session.manifests),
        workspace=session.workspace,
        excluded=list(session.excluded),
        dropped=list(session.dropped),
        dry_run=dry_run,
    )
    if dry_run:
        result.contents = contents
        session.cancel()
        return result

    result.files = session.commit(Path(dest_root), overwrite=overwrite)
    return result
