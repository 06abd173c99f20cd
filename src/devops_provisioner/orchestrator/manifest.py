"""Generated-resources manifest."""

from __future__ import annotations

import json
from typing import Dict, List


class ResourceManifest:
    """Append-only list of ``{id, originalName}`` entries.

    Backed by a list owned by the checkpoint, so entries recorded by an
    interrupted run are still present when the manifest is saved later.
    """

    def __init__(self, entries: List[Dict[str, str]]) -> None:
        self.entries = entries

    def add(self, resource_id: str, name: str) -> None:
        if any(entry.get("id") == resource_id for entry in self.entries):
            return
        self.entries.append({"id": resource_id, "originalName": name})

    def __len__(self) -> int:
        return len(self.entries)

    def to_json(self) -> str:
        return json.dumps({"items": self.entries}, indent=2)
