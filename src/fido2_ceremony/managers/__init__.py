"""Logging manager package."""
