"""SKYGATE diagnostics HTTP API."""

from .diagnostics import create_app, start_diagnostics

__all__ = ["create_app", "start_diagnostics"]
