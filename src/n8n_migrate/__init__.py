"""Top-level package for the n8n dev-to-prod migration tool."""

from __future__ import annotations

from .errors import MigrationError

__all__ = ["MigrationError"]
