"""Flywheel — autonomous creator-economy decision loop."""

__version__ = "0.4.0"
