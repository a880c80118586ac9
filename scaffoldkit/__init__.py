"""scaffoldkit - blueprint resolution and rendering engine for project scaffolding."""

__version__ = "0.1.0"
