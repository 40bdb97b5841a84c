"""Pydantic schemas for the Flywheel decision loop."""
