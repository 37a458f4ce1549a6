"""Execution event journal."""
