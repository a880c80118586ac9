"""Shared test fixtures for scaffoldkit tests."""
from pathlib import Path

import pytest
import yaml

from scaffoldkit.blueprints import BUNDLED_BLUEPRINTS_DIR
from scaffoldkit.core.blueprint_loader import BlueprintLoader
from scaffoldkit.core.config import set_config
from scaffoldkit.core.logger import reset_file_logging


@pytest.fixture(autouse=True)
def reset_engine_config():
    """Make every test read the environment afresh."""
    set_config(None)
    yield
    set_config(None)


@pytest.fixture(autouse=True)
def detach_log_file():
    """Close any log file a test opened."""
    yield
    reset_file_logging()


@pytest.fixture
def bundled_loader():
    """Loader over the blueprints shipped with the package."""
    return BlueprintLoader(BUNDLED_BLUEPRINTS_DIR)


@pytest.fixture
def blueprints_dir(tmp_path):
    """Empty blueprints directory."""
    path = tmp_path / "blueprints"
    path.mkdir()
    return path


@pytest.fixture
def write_blueprint(blueprints_dir):
    """Factory that writes a blueprint directory and returns its loader.

    Usage:
        loader = write_blueprint("demo", document, {"main.go.tmpl": "..."})
    """
    def _write(blueprint_id, document, templates=None):
        root = blueprints_dir / blueprint_id
        (root / "templates").mkdir(parents=True)
        with open(root / "blueprint.yaml", "w", encoding="utf-8") as f:
            yaml.safe_dump(document, f, sort_keys=False)
        for relative, content in (templates or {}).items():
            path = root / "templates" / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        return BlueprintLoader(blueprints_dir)

    return _write


@pytest.fixture
def simple_document():
    """Single-module blueprint with a bool, an enum and a conditional file."""
    return {
        "name": "Demo",
        "description": "Demo blueprint",
        "type": "cli",
        "tags": ["demo"],
        "variables": [
            {"name": "ProjectName", "kind": "string", "required": True},
            {"name": "ModulePath", "kind": "string", "default": "example.com/demo"},
            {"name": "Logger", "kind": "enum", "allowed_values": ["slog", "zap"], "default": "slog"},
            {"name": "WithDocs", "kind": "bool", "default": False},
        ],
        "files": [
            {"source": "main.go.tmpl", "destination": "main.go"},
            {"source": "docs.md.tmpl", "destination": "docs/{{ ProjectName }}.md", "condition": "WithDocs"},
            {"source": "run.sh.tmpl", "destination": "scripts/run.sh", "executable": True},
        ],
        "dependencies": [
            {"package": "go.uber.org/zap", "version": "v1.26.0", "condition": 'Logger == "zap"'},
        ],
        "manifest": {
            "toolchain": "1.21",
            "modules": [{"path": ".", "name": "{{ ModulePath }}"}],
        },
    }


@pytest.fixture
def simple_templates():
    return {
        "main.go.tmpl": "package main\n\n// {{ ProjectName }}\nfunc main() {}\n",
        "docs.md.tmpl": "# {{ ProjectName }}\n",
        "run.sh.tmpl": "#!/bin/sh\necho {{ ProjectName }}\n",
    }


@pytest.fixture
def simple_loader(write_blueprint, simple_document, simple_templates):
    return write_blueprint("demo", simple_document, simple_templates)


@pytest.fixture
def read_tree():
    """Return a helper mapping every file under a root to its bytes."""
    def _read(root: Path):
        return {
            path.relative_to(root).as_posix(): path.read_bytes()
            for path in sorted(Path(root).rglob("*"))
            if path.is_file()
        }

    return _read
