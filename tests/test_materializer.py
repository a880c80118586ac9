"""Tests for the all-or-nothing output writer."""
import os
import stat
import threading
from unittest.mock import patch

import pytest

from scaffoldkit.core.errors import DestinationExists, GenerationCancelled, PartialWriteFailure
from scaffoldkit.core.materializer import TEMP_SUFFIX, Materializer, RenderedFile

_real_replace = os.replace


@pytest.fixture
def files():
    return [
        RenderedFile("go.mod", b"module example.com/demo\n"),
        RenderedFile("main.go", b"package main\n"),
        RenderedFile("internal/config/config.go", b"package config\n"),
        RenderedFile("scripts/run.sh", b"#!/bin/sh\n", mode=0o755),
    ]


def fail_on_call(n):
    """os.replace stand-in that fails on its n-th call (1-based)."""
    calls = {"count": 0}

    def _replace(src, dst):
        calls["count"] += 1
        if calls["count"] == n:
            raise OSError(28, "No space left on device")
        return _real_replace(src, dst)

    return _replace


class TestCommit:
    """Test successful commits."""

    def test_writes_all_files(self, tmp_path, files, read_tree):
        dest = tmp_path / "out"
        written = Materializer(dest).commit(files)

        assert written == sorted(f.destination_path for f in files)
        assert read_tree(dest) == {f.destination_path: f.content for f in files}

    def test_file_modes(self, tmp_path, files):
        dest = tmp_path / "out"
        Materializer(dest).commit(files)

        assert stat.S_IMODE((dest / "scripts" / "run.sh").stat().st_mode) == 0o755
        assert stat.S_IMODE((dest / "main.go").stat().st_mode) == 0o644

    def test_no_temp_files_left(self, tmp_path, files):
        dest = tmp_path / "out"
        Materializer(dest).commit(files)

        assert not [p for p in dest.rglob("*") if p.name.endswith(TEMP_SUFFIX)]

    def test_unrelated_file_with_temp_suffix_is_kept(self, tmp_path, files):
        dest = tmp_path / "out"
        dest.mkdir()
        stray = dest / ("main.go" + TEMP_SUFFIX)
        stray.write_bytes(b"user data\n")

        Materializer(dest).commit(files)

        assert stray.read_bytes() == b"user data\n"
        assert (dest / "main.go").read_bytes() == b"package main\n"

    def test_existing_empty_root(self, tmp_path, files):
        dest = tmp_path / "out"
        dest.mkdir()
        Materializer(dest).commit(files)
        assert (dest / "main.go").exists()


class TestConflicts:
    """Test destination conflicts."""

    def test_existing_file_without_overwrite(self, tmp_path, files):
        dest = tmp_path / "out"
        dest.mkdir()
        (dest / "main.go").write_bytes(b"// mine\n")

        with pytest.raises(DestinationExists, match="--force") as exc_info:
            Materializer(dest).commit(files)

        assert exc_info.value.paths == ("main.go",)
        assert (dest / "main.go").read_bytes() == b"// mine\n"
        assert sorted(p.name for p in dest.iterdir()) == ["main.go"]

    def test_existing_file_with_overwrite(self, tmp_path, files):
        dest = tmp_path / "out"
        dest.mkdir()
        (dest / "main.go").write_bytes(b"// mine\n")

        Materializer(dest, overwrite=True).commit(files)

        assert (dest / "main.go").read_bytes() == b"package main\n"

    def test_parent_is_a_file(self, tmp_path, files):
        dest = tmp_path / "out"
        dest.mkdir()
        (dest / "internal").write_bytes(b"")

        with pytest.raises(DestinationExists, match="not a directory"):
            Materializer(dest, overwrite=True).commit(files)

    def test_target_is_a_directory(self, tmp_path, files):
        dest = tmp_path / "out"
        (dest / "main.go").mkdir(parents=True)

        with pytest.raises(DestinationExists, match="existing directory"):
            Materializer(dest, overwrite=True).commit(files)

    def test_root_is_a_file(self, tmp_path, files):
        dest = tmp_path / "out"
        dest.write_bytes(b"")

        with pytest.raises(DestinationExists):
            Materializer(dest).commit(files)


    def test_symlinked_parent_outside_root(self, tmp_path, files):
        dest = tmp_path / "out"
        dest.mkdir()
        outside = tmp_path / "outside"
        outside.mkdir()
        (dest / "internal").symlink_to(outside, target_is_directory=True)

        with pytest.raises(DestinationExists, match="outside") as exc_info:
            Materializer(dest, overwrite=True).commit(files)

        assert exc_info.value.paths == ("internal/config/config.go",)
        assert list(outside.iterdir()) == []
        assert sorted(p.name for p in dest.iterdir()) == ["internal"]

    def test_symlinked_file_outside_root(self, tmp_path, files):
        dest = tmp_path / "out"
        dest.mkdir()
        victim = tmp_path / "victim.go"
        victim.write_bytes(b"// untouched\n")
        (dest / "main.go").symlink_to(victim)

        with pytest.raises(DestinationExists, match="outside"):
            Materializer(dest, overwrite=True).commit(files)
        assert victim.read_bytes() == b"// untouched\n"

    def test_symlink_within_root_is_followed(self, tmp_path, files, read_tree):
        dest = tmp_path / "out"
        (dest / "src").mkdir(parents=True)
        (dest / "internal").symlink_to(dest / "src", target_is_directory=True)

        Materializer(dest).commit(files)

        assert (dest / "src" / "config" / "config.go").read_bytes() == b"package config\n"

class TestRollback:
    """Test that failed commits leave the destination as it was."""

    def test_failure_on_last_write_removes_everything(self, tmp_path, files):
        dest = tmp_path / "out"

        with patch("scaffoldkit.core.materializer.os.replace", side_effect=fail_on_call(len(files))):
            with pytest.raises(PartialWriteFailure) as exc_info:
                Materializer(dest).commit(files)

        # The last file in path order is the one that failed
        assert exc_info.value.path == "scripts/run.sh"
        assert exc_info.value.rollback_errors == ()
        assert not dest.exists()

    def test_failure_restores_overwritten_files(self, tmp_path, files, read_tree):
        dest = tmp_path / "out"
        dest.mkdir()
        (dest / "go.mod").write_bytes(b"module old\n")
        (dest / "notes.txt").write_bytes(b"keep me\n")
        before = read_tree(dest)

        with patch("scaffoldkit.core.materializer.os.replace", side_effect=fail_on_call(3)):
            with pytest.raises(PartialWriteFailure):
                Materializer(dest, overwrite=True).commit(files)

        assert read_tree(dest) == before
        assert sorted(p.name for p in dest.iterdir()) == ["go.mod", "notes.txt"]

    def test_failed_write_keeps_unrelated_temp_suffix_file(self, tmp_path, files):
        dest = tmp_path / "out"
        dest.mkdir()
        stray = dest / ("main.go" + TEMP_SUFFIX)
        stray.write_bytes(b"user data\n")

        # go.mod and internal/config/config.go are written first, main.go fails
        with patch("scaffoldkit.core.materializer.os.replace", side_effect=fail_on_call(3)):
            with pytest.raises(PartialWriteFailure, match="main.go"):
                Materializer(dest).commit(files)

        assert sorted(p.name for p in dest.iterdir()) == [stray.name]
        assert stray.read_bytes() == b"user data\n"

    def test_cancel_event_rolls_back(self, tmp_path, files):
        dest = tmp_path / "out"
        event = threading.Event()
        materializer = Materializer(dest, cancel_event=event)
        original_write = materializer._write

        def write_then_cancel(rendered):
            original_write(rendered)
            event.set()

        materializer._write = write_then_cancel

        with pytest.raises(GenerationCancelled, match="after writing 1 of 4"):
            materializer.commit(files)
        assert not dest.exists()

    def test_keyboard_interrupt_rolls_back(self, tmp_path, files):
        dest = tmp_path / "out"
        calls = {"count": 0}

        def interrupt(src, dst):
            calls["count"] += 1
            if calls["count"] == 2:
                raise KeyboardInterrupt
            return _real_replace(src, dst)

        with patch("scaffoldkit.core.materializer.os.replace", side_effect=interrupt):
            with pytest.raises(GenerationCancelled, match="interrupted"):
                Materializer(dest).commit(files)

        assert not dest.exists()
