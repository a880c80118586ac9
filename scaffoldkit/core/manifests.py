"""Dependency manifest and workspace index writers.

Output is fully sorted so repeated runs are byte-identical.
"""
from typing import Dict, Sequence, Tuple

from scaffoldkit.core.aggregator import ROOT_MODULE, AggregateManifest, WorkspaceIndex, parse_semver


class GoManifestEmitter:
    """Writes ``go.mod`` and ``go.work`` files."""

    format = "go"
    manifest_filename = "go.mod"
    workspace_filename = "go.work"

    def module_manifest(self, manifest: AggregateManifest, toolchain: str) -> bytes:
        lines = [f"module {manifest.module_name}", ""]
        if toolchain:
            lines += [f"go {toolchain}", ""]

        if manifest.requirements:
            lines.append("require (")
            for req in manifest.requirements:
                lines.append(f"\t{req.package_path} {go_version(req.version)}")
            lines += [")", ""]

        if manifest.replacements:
            lines.append("replace (")
            for package_path, local_path in sorted(manifest.replacements):
                lines.append(f"\t{package_path} => {local_path}")
            lines += [")", ""]

        return ("\n".join(lines).rstrip("\n") + "\n").encode("utf-8")

    def workspace_index(
        self,
        index: WorkspaceIndex,
        toolchain: str,
        replacements: Sequence[Tuple[str, str]] = (),
    ) -> bytes:
        lines = []
        if toolchain:
            lines += [f"go {toolchain}", ""]

        lines.append("use (")
        for module_path in index.modules:
            lines.append("\t." if module_path == ROOT_MODULE else f"\t./{module_path}")
        lines += [")", ""]

        if replacements:
            lines.append("replace (")
            for package_path, local_path in sorted(set(replacements)):
                lines.append(f"\t{package_path} => {local_path}")
            lines += [")", ""]

        return ("\n".join(lines).rstrip("\n") + "\n").encode("utf-8")


def go_version(version: str) -> str:
    """Go requires a leading "v" on semantic versions; add it when missing."""
    version = version.strip()
    if not version.startswith("v") and parse_semver(version) is not None:
        return "v" + version
    return version


EMITTERS: Dict[str, GoManifestEmitter] = {
    "go": GoManifestEmitter(),
}


def get_emitter(fmt: str) -> GoManifestEmitter:
    try:
        return EMITTERS[fmt]
    except KeyError:
        raise ValueError(f"Unsupported manifest format '{fmt}'") from None
