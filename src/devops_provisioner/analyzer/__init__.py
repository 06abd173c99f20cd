"""Folder analysis helpers."""

from .classifier import (
    BuildFileClassifier,
    BuildPath,
    BuildSystem,
    FolderClassification,
    FolderClassifier,
    GenericBuild,
    ProjectType,
)

__all__ = [
    "BuildFileClassifier",
    "BuildPath",
    "BuildSystem",
    "FolderClassification",
    "FolderClassifier",
    "GenericBuild",
    "ProjectType",
]
