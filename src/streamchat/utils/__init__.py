"""Logging and image helpers."""
