"""Blueprints bundled with scaffoldkit (one directory per blueprint id)."""
from pathlib import Path

BUNDLED_BLUEPRINTS_DIR = Path(__file__).parent
