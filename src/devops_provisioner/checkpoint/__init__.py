"""Checkpoint document model and storage."""

from .models import (
    Checkpoint,
    FolderCheckpoint,
    ResourceRef,
    Slot,
    SlotState,
    UserIdentity,
)
from .store import CheckpointStore, folders_key

__all__ = [
    "Checkpoint",
    "CheckpointStore",
    "FolderCheckpoint",
    "ResourceRef",
    "Slot",
    "SlotState",
    "UserIdentity",
    "folders_key",
]
