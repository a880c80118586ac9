"""Jinja2 template rendering for blueprint paths and contents.

Provides the TemplateRenderer class which renders destination path templates
and content templates against a validated Configuration. Named fragments are
served through a ``DictLoader`` so sibling templates can share them with
``{% include "name" %}`` or ``{% import "name" as m %}``.
"""
import re
import threading
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from jinja2 import DictLoader, StrictUndefined, TemplateError, meta
from jinja2.exceptions import TemplateNotFound, TemplateSyntaxError, UndefinedError
from jinja2.sandbox import SandboxedEnvironment, SecurityError

from scaffoldkit.core.errors import MalformedTemplate, PathTraversal, RenderError, UndefinedReference

# Names the engine injects into every render in addition to the configuration
ENGINE_GLOBALS = frozenset({"require"})

# Template sources and rendered files larger than these are rejected
MAX_TEMPLATE_SIZE = 1024 * 1024
MAX_RENDERED_SIZE = 10 * 1024 * 1024


@dataclass(frozen=True)
class RenderResult:
    """Output of one content render.

    ``content`` is None when the rendered text is empty or whitespace-only;
    such files are dropped rather than written.
    """

    content: Optional[bytes]
    requirements: Tuple[Tuple[str, str], ...] = ()

    @property
    def dropped(self) -> bool:
        return self.content is None


class TemplateRenderer:
    """Renders Jinja2 templates for blueprint generation.

    One renderer serves a whole generation session; ``render`` is safe to call
    from several worker threads at once since every call gets its own context.
    """

    def __init__(self, fragments: Optional[Mapping[str, str]] = None) -> None:
        self.env = SandboxedEnvironment(
            loader=DictLoader(dict(fragments or {})),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["slugify"] = _slugify_filter
        self.env.filters["pascal_case"] = _pascal_case_filter
        self.env.filters["snake_case"] = _snake_case_filter
        self.env.filters["camel_case"] = _camel_case_filter
        self._compiled: Dict[str, Any] = {}
        self._lock = threading.Lock()

    # -- Static analysis ---------------------------------------------------

    def undeclared_variables(self, source: str, name: str = "<template>") -> Set[str]:
        """Return the free names a template reads, excluding engine globals.

        Raises:
            MalformedTemplate: If the template does not parse
        """
        parsed = self._parse(source, name)
        return set(meta.find_undeclared_variables(parsed)) - set(self.env.globals) - ENGINE_GLOBALS

    def referenced_fragments(self, source: str, name: str = "<template>") -> Set[str]:
        """Return the fragment names a template includes, imports or extends.

        Names computed at render time cannot be known statically and are skipped.
        """
        parsed = self._parse(source, name)
        return {ref for ref in meta.find_referenced_templates(parsed) if ref is not None}

    def _parse(self, source: str, name: str):
        try:
            return self.env.parse(source, name=name)
        except TemplateSyntaxError as e:
            raise MalformedTemplate(f"{e.message} (line {e.lineno})", entry=name) from e

    # -- Rendering ---------------------------------------------------------

    def render(self, source: str, config: Mapping[str, Any], name: str = "<template>") -> RenderResult:
        """Render a content template.

        Args:
            source: Template text
            config: Validated Configuration
            name: Identifier used in error messages (usually the source path)

        Returns:
            RenderResult whose content is None when the output is blank
        """
        requirements: List[Tuple[str, str]] = []

        def require(package: str, version: str) -> str:
            if not isinstance(package, str) or not package.strip():
                raise MalformedTemplate(f"require() needs a package path, got {package!r}", entry=name)
            if not isinstance(version, str) or not version.strip():
                raise MalformedTemplate(f"require('{package}') needs a version", entry=name)
            requirements.append((package.strip(), version.strip()))
            return ""

        text = self._render(source, config, name, {"require": require})
        if not text.strip():
            return RenderResult(None, tuple(requirements))
        content = text.encode("utf-8")
        if len(content) > MAX_RENDERED_SIZE:
            raise RenderError(
                f"Rendered output is {len(content)} bytes, more than the {MAX_RENDERED_SIZE} byte limit",
                entry=name,
            )
        return RenderResult(content, tuple(requirements))

    def render_text(self, source: str, config: Mapping[str, Any], name: str = "<template>") -> str:
        """Render a single-line template (module names, toolchain versions)."""
        return self._render(source, config, name, {"require": _no_require}).strip()

    def render_path(self, source: str, config: Mapping[str, Any], name: str = "<destination>") -> str:
        """Render a destination path template and confine it to the project root.

        Raises:
            PathTraversal: If the rendered path is empty, absolute or escapes the root
        """
        rendered = self.render_text(source, config, name)
        return safe_relative_path(rendered, entry=name)

    def _template(self, source: str, name: str):
        with self._lock:
            template = self._compiled.get(source)
        if template is not None:
            return template
        try:
            template = self.env.from_string(source)
        except TemplateSyntaxError as e:
            raise MalformedTemplate(f"{e.message} (line {e.lineno})", entry=name) from e
        with self._lock:
            self._compiled[source] = template
        return template

    def _render(self, source: str, config: Mapping[str, Any], name: str, extra: Dict[str, Any]) -> str:
        template = self._template(source, name)
        context = dict(config)
        context.update(extra)
        try:
            return template.render(**context)
        except UndefinedError as e:
            raise UndefinedReference(f"Template references an undefined value: {e.message}", entry=name) from e
        except TemplateNotFound as e:
            raise MalformedTemplate(f"Unknown fragment '{e.name}'", entry=name) from e
        except TemplateSyntaxError as e:
            raise MalformedTemplate(f"{e.message} (line {e.lineno})", entry=name) from e
        except SecurityError as e:
            raise MalformedTemplate(f"Template performs an unsafe operation: {e}", entry=name) from e
        except TemplateError as e:
            raise MalformedTemplate(str(e), entry=name) from e
        except RenderError:
            raise
        except Exception as e:
            raise RenderError(f"Failed to render template: {type(e).__name__}: {e}", entry=name) from e


def render(template_source: str, config: Mapping[str, Any], fragments: Optional[Mapping[str, str]] = None) -> RenderResult:
    """Render one content template with a throwaway renderer."""
    return TemplateRenderer(fragments).render(template_source, config)


def safe_relative_path(path: str, entry: Optional[str] = None) -> str:
    """Normalize a rendered destination to a relative POSIX path inside the root.

    Raises:
        PathTraversal: Empty, absolute, drive-qualified, NUL-containing or '..' paths
    """
    if "\x00" in path:
        raise PathTraversal("Destination path contains a NUL byte", entry=entry)
    candidate = path.strip().replace("\\", "/")
    if candidate.startswith("/") or re.match(r'^[A-Za-z]:', candidate):
        raise PathTraversal(f"Destination path '{path}' must be relative", entry=entry)
    parts = [part for part in PurePosixPath(candidate).parts if part not in ("", ".")]
    if ".." in parts:
        raise PathTraversal(f"Destination path '{path}' escapes the project root", entry=entry)
    if not parts:
        raise PathTraversal(f"Destination path '{path}' is empty", entry=entry)
    return "/".join(parts)


def _no_require(package: str, version: str) -> str:
    raise MalformedTemplate("require() may only be called from file contents")


# ---------------------------------------------------------------------------
# Jinja2 custom filters
# ---------------------------------------------------------------------------

def _slugify_filter(value: str) -> str:
    """Convert a string to a URL/filename-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", str(value).lower().strip())
    return slug.strip("-")


def _pascal_case_filter(value: str) -> str:
    """Convert ``some-thing`` or ``some_thing`` to ``SomeThing``."""
    parts = re.split(r"[-_\s]+", str(value))
    return "".join(word[:1].upper() + word[1:] for word in parts if word)


def _snake_case_filter(value: str) -> str:
    """Convert ``SomeThing`` or ``some-thing`` to ``some_thing``."""
    s1 = re.sub(r"(.)([A-Z][a-z]+)", r"\1_\2", str(value))
    s2 = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", s1)
    return re.sub(r"[-\s_]+", "_", s2).lower()


def _camel_case_filter(value: str) -> str:
    """Convert ``some-thing`` or ``some_thing`` to ``someThing``."""
    pascal = _pascal_case_filter(value)
    if pascal:
        return pascal[0].lower() + pascal[1:]
    return ""
