"""Instrument metadata."""
