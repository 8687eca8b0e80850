"""Shared settings, logging and error definitions."""
