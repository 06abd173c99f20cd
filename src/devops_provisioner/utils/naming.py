"""Naming rules for generated resources."""

from __future__ import annotations

import re
from typing import Iterable, Iterator, Optional

PROJECT_NAME_PATTERN = re.compile(r"^[a-zA-Z_](-?[a-zA-Z_0-9])*$")


def validate_project_name(name: Optional[str]) -> Optional[str]:
    """Return an error message for an invalid project name, None when valid."""
    if not name:
        return "Project name cannot be empty."
    if re.search(r"\s", name):
        return "Project name may not contain spaces."
    if name.startswith("-") or name.endswith("-"):
        return "Project name cannot start or end with '-'."
    if "--" in name:
        return "Project name cannot contain '--'."
    if name[0].isdigit():
        return "Project name cannot start with a number."
    if not PROJECT_NAME_PATTERN.match(name):
        return "Project name must contain only letters, digits, '_' and single '-' separators."
    return None


def remove_spaces(name: str) -> str:
    return re.sub(r"\s+", "_", name)


def app_name(repository_name: str) -> str:
    """Lower-case name usable in Kubernetes object names."""
    return re.sub(r"[^a-z0-9]+", "-", repository_name.lower()).strip("-")


def secret_name(repository_name: str) -> str:
    return f"{app_name(repository_name)}-generated-ocirsecret"


def pipeline_name(repository_name: str, name: str) -> str:
    return f"{repository_name}: {name}"


def container_repository_name(
    project_name: str,
    repository_name: str,
    sub: Optional[str] = None,
    jvm: bool = False,
    qualify: bool = False,
) -> str:
    """Container registry name, qualified by repository when several share a project."""
    parts = [project_name]
    if qualify:
        parts.append(repository_name)
    if sub:
        parts.append(sub)
    if jvm:
        parts.append("jvm")
    return "-".join(parts).lower()


def log_name_candidates(project_name: str, existing: Iterable[str]) -> Iterator[str]:
    """Yield `<project>Log`, `<project>Log1`, ... skipping names already taken."""
    taken = set(existing)
    base = f"{project_name}Log"
    index = 0
    while True:
        candidate = base if index == 0 else f"{base}{index}"
        if candidate not in taken:
            yield candidate
        index += 1
