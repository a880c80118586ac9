"""Output writer: commits staged files to disk all-or-nothing.

Every write goes to a temporary sibling that is then renamed into place, and
the commit keeps enough bookkeeping to undo itself: files it created are
removed, files it overwrote are restored, and directories it created are
removed deepest first. The destination root ends up either fully populated
or exactly as it was before the commit.
"""
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from scaffoldkit.core.errors import DestinationExists, GenerationCancelled, PartialWriteFailure
from scaffoldkit.core.logger import get_logger

logger = get_logger(__name__)

TEMP_SUFFIX = ".scaffoldkit-tmp"


@dataclass(frozen=True)
class RenderedFile:
    """Rendered output of one included file entry (or a generated manifest).

    ``destination_path`` is a normalized relative POSIX path; content is never
    empty since blank renders are dropped before staging.
    """

    destination_path: str
    content: bytes
    mode: int = 0o644
    source: str = ""


class Materializer:
    """Writes a staged file set under one destination root."""

    def __init__(
        self,
        dest_root: Path,
        overwrite: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ):
        """Initialize materializer.

        Args:
            dest_root: Project root; every path is written relative to it
            overwrite: Replace existing files instead of raising DestinationExists
            cancel_event: Checked between writes; when set the commit rolls back
        """
        self.dest_root = Path(dest_root)
        self.overwrite = overwrite
        self.cancel_event = cancel_event
        self._written: List[Path] = []
        self._backups: Dict[Path, Tuple[bytes, int]] = {}
        self._created_dirs: List[Path] = []

    def check_conflicts(self, files: Sequence[RenderedFile]) -> List[str]:
        """Return destination paths that already exist and would block the commit.

        Raises:
            DestinationExists: A destination (or one of its parents) is occupied
                by something that can never be overwritten, or a symlink leads
                it outside the destination root
        """
        existing = []
        root = self.dest_root.resolve()
        for rendered in files:
            target = self.dest_root / rendered.destination_path
            resolved = target.resolve()
            if resolved != root and root not in resolved.parents:
                raise DestinationExists(
                    f"Destination {rendered.destination_path} resolves to {resolved}, outside {root}",
                    entry=rendered.destination_path,
                    paths=[rendered.destination_path],
                )
            for parent in _parents_within(self.dest_root, target):
                if parent.exists() and not parent.is_dir():
                    raise DestinationExists(
                        f"Cannot create {rendered.destination_path}: {parent} is not a directory",
                        entry=rendered.destination_path,
                        paths=[rendered.destination_path],
                    )
            if target.is_dir():
                raise DestinationExists(
                    f"Destination {rendered.destination_path} is an existing directory",
                    entry=rendered.destination_path,
                    paths=[rendered.destination_path],
                )
            if target.exists():
                existing.append(rendered.destination_path)
        return existing

    def commit(self, files: Sequence[RenderedFile]) -> List[str]:
        """Write every staged file or none of them.

        Returns:
            Relative paths written, in write order

        Raises:
            DestinationExists: Files already present and overwrite is off
            PartialWriteFailure: A write failed; everything was rolled back
            GenerationCancelled: Cancelled mid-commit; everything was rolled back
        """
        if self.dest_root.exists() and not self.dest_root.is_dir():
            raise DestinationExists(f"Destination root {self.dest_root} is not a directory",
                                    paths=[str(self.dest_root)])

        ordered = sorted(files, key=lambda f: f.destination_path)
        existing = self.check_conflicts(ordered)
        if existing and not self.overwrite:
            shown = ", ".join(existing[:5]) + (" ..." if len(existing) > 5 else "")
            raise DestinationExists(
                f"{len(existing)} file(s) already exist in {self.dest_root}: {shown} "
                f"(use --force to overwrite)",
                paths=existing,
            )

        logger.info(f"Writing {len(ordered)} files to {self.dest_root}")
        written = []
        try:
            self._write_all(ordered, written)
        except KeyboardInterrupt:
            errors = self.rollback()
            raise GenerationCancelled(
                f"Generation interrupted after writing {len(written)} of {len(ordered)} files; "
                f"destination restored" + (f" with {len(errors)} rollback error(s)" if errors else ""),
            ) from None

        self._reset()
        return written

    def _write_all(self, ordered: Sequence[RenderedFile], written: List[str]) -> None:
        for rendered in ordered:
            if self.cancel_event is not None and self.cancel_event.is_set():
                errors = self.rollback()
                raise GenerationCancelled(
                    f"Generation cancelled after writing {len(written)} of {len(ordered)} files; "
                    f"destination restored" + (f" with {len(errors)} rollback error(s)" if errors else ""),
                )
            try:
                self._write(rendered)
            except OSError as e:
                logger.error(f"Failed to write {rendered.destination_path}: {e}")
                errors = self.rollback()
                raise PartialWriteFailure(
                    f"Failed to write {rendered.destination_path}: {e}; "
                    f"rolled back {len(written)} written file(s)",
                    path=rendered.destination_path,
                    entry=rendered.source or rendered.destination_path,
                    rollback_errors=errors,
                ) from e
            written.append(rendered.destination_path)
            logger.debug(f"Wrote {rendered.destination_path} ({oct(rendered.mode)})")

    def _write(self, rendered: RenderedFile) -> None:
        target = self.dest_root / rendered.destination_path
        self._ensure_dir(target.parent)

        if target.exists() and target not in self._backups:
            self._backups[target] = (target.read_bytes(), target.stat().st_mode & 0o7777)

        # Write atomically (write to a fresh temp file, then rename)
        fd, temp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=TEMP_SUFFIX)
        temp_file = Path(temp_name)
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(rendered.content)
            os.replace(temp_file, target)
        except BaseException:
            if temp_file.exists():
                temp_file.unlink()
            raise
        if target not in self._backups:
            self._written.append(target)
        os.chmod(target, rendered.mode)

    def _ensure_dir(self, directory: Path) -> None:
        """``mkdir -p`` that remembers which directories it created."""
        missing = []
        current = directory
        while not current.exists():
            missing.append(current)
            if current.parent == current:
                break
            current = current.parent
        for path in reversed(missing):
            path.mkdir()
            self._created_dirs.append(path)

    def rollback(self) -> List[str]:
        """Undo everything written by the current commit.

        Returns:
            Descriptions of cleanup steps that failed (empty on a clean rollback)
        """
        errors = []
        for path in reversed(self._written):
            try:
                if path.exists():
                    path.unlink()
            except OSError as e:
                errors.append(f"remove {path}: {e}")

        for path, (content, mode) in self._backups.items():
            try:
                with open(path, 'wb') as f:
                    f.write(content)
                os.chmod(path, mode)
            except OSError as e:
                errors.append(f"restore {path}: {e}")

        for directory in sorted(self._created_dirs, key=lambda p: len(p.parts), reverse=True):
            try:
                directory.rmdir()
            except OSError as e:
                errors.append(f"remove directory {directory}: {e}")

        for error in errors:
            logger.error(f"Rollback step failed: {error}")
        if not errors:
            logger.info(f"Rolled back commit to {self.dest_root}")
        self._reset()
        return errors

    def _reset(self) -> None:
        self._written = []
        self._backups = {}
        self._created_dirs = []


def commit(session, dest_root: Path, overwrite: bool = False) -> List[str]:
    """Commit a staged GenerationSession to ``dest_root``."""
    return session.commit(dest_root, overwrite=overwrite)


def _parents_within(root: Path, target: Path) -> List[Path]:
    parents = []
    current = target.parent
    while current != root and root in current.parents:
        parents.append(current)
        current = current.parent
    return parents
