"""Database models."""

from intranet.models.directory import DirectoryEntry
from intranet.models.invitation import Invitation

__all__ = [
    "DirectoryEntry",
    "Invitation",
]
