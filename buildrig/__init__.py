"""Build driver registry and drivers, build option resolution, version constraints and local build state."""

__version__ = "0.1.0"