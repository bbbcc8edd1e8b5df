"""Helper utilities for AI request preparation."""
