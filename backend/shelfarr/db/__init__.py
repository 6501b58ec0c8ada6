"""Database models and utilities.

This module exports all database models and provides database-related utilities.
"""

from __future__ import annotations

from shelfarr.db.models import MetadataJob, MetadataJobLog, metadata

__all__ = [
    "metadata",
    "MetadataJob",
    "MetadataJobLog",
]
