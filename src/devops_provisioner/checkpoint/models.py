"""Data models for the checkpoint document.

The checkpoint is the only source of truth for resuming a run. Every
resource id field is a :class:`Slot` with three states:

- NOT_ATTEMPTED: the key is missing from the JSON document
- IN_PROGRESS:   the JSON value is ``false``; a create call was issued but
                 never confirmed, so the step must run again
- CREATED:       the JSON value is the resource id; it is re-verified
                 against the platform before being trusted
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

CHECKPOINT_VERSION = "1.0"

# Project-level slot keys
PROJECT = "project"
NOTIFICATION_TOPIC = "notification_topic"
LOG_GROUP = "log_group"
PROJECT_LOG_WORK_REQUEST = "project_log_work_request"
PROJECT_LOG = "project_log"
ARTIFACT_REPOSITORY = "artifact_repository"
CLUSTER_ENVIRONMENT = "cluster_environment"
KNOWLEDGE_BASE_WORK_REQUEST = "knowledge_base_work_request"
KNOWLEDGE_BASE = "knowledge_base"
ACCESS_POLICIES = "access_policies"
PROJECT_MANIFEST = "project_manifest"

PROJECT_SLOT_KEYS = (
    PROJECT,
    NOTIFICATION_TOPIC,
    LOG_GROUP,
    PROJECT_LOG_WORK_REQUEST,
    PROJECT_LOG,
    ARTIFACT_REPOSITORY,
    CLUSTER_ENVIRONMENT,
    KNOWLEDGE_BASE_WORK_REQUEST,
    KNOWLEDGE_BASE,
    ACCESS_POLICIES,
    PROJECT_MANIFEST,
)

# Folder-level slot keys
CODE_REPOSITORY = "code_repository"
FOLDER_MANIFEST = "manifest"


class SlotState(Enum):
    """Lifecycle of a single resource id field."""
    NOT_ATTEMPTED = "not_attempted"
    IN_PROGRESS = "in_progress"
    CREATED = "created"


@dataclass(frozen=True)
class Slot:
    """One tri-state resource id field."""

    state: SlotState = SlotState.NOT_ATTEMPTED
    value: Optional[str] = None

    @classmethod
    def not_attempted(cls) -> "Slot":
        return cls()

    @classmethod
    def in_progress(cls) -> "Slot":
        return cls(state=SlotState.IN_PROGRESS)

    @classmethod
    def created(cls, resource_id: str) -> "Slot":
        if not resource_id:
            raise ValueError("A created slot requires a non-empty resource id")
        return cls(state=SlotState.CREATED, value=resource_id)

    @property
    def is_created(self) -> bool:
        return self.state is SlotState.CREATED

    @property
    def is_in_progress(self) -> bool:
        return self.state is SlotState.IN_PROGRESS

    def to_json(self) -> Any:
        """JSON form: ``False`` while in progress, the id once created."""
        if self.state is SlotState.CREATED:
            return self.value
        if self.state is SlotState.IN_PROGRESS:
            return False
        return None

    @classmethod
    def from_json(cls, raw: Any) -> "Slot":
        if raw is False:
            return cls.in_progress()
        if isinstance(raw, str) and raw:
            return cls.created(raw)
        return cls.not_attempted()


class SlotOwner:
    """Accessors shared by every model that owns a ``slots`` dict."""

    slots: Dict[str, Slot]

    def slot(self, key: str) -> Slot:
        return self.slots.get(key, Slot.not_attempted())

    def created_id(self, key: str) -> Optional[str]:
        slot = self.slot(key)
        return slot.value if slot.is_created else None

    def set_slot(self, key: str, slot: Slot) -> None:
        if slot.state is SlotState.NOT_ATTEMPTED:
            self.slots.pop(key, None)
        else:
            self.slots[key] = slot

    def _slots_to_dict(self) -> Dict[str, Any]:
        return {key: slot.to_json() for key, slot in self.slots.items()}


@dataclass
class ResourceRef:
    """A selected (not created) resource such as a compartment or cluster."""

    id: str
    name: Optional[str] = None
    compartment_id: Optional[str] = None
    vcn_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id}
        if self.name is not None:
            data["name"] = self.name
        if self.compartment_id is not None:
            data["compartment_id"] = self.compartment_id
        if self.vcn_id is not None:
            data["vcn_id"] = self.vcn_id
        return data

    @classmethod
    def from_dict(cls, data: Any) -> Optional["ResourceRef"]:
        if not isinstance(data, dict) or not data.get("id"):
            return None
        return cls(
            id=data["id"],
            name=data.get("name"),
            compartment_id=data.get("compartment_id"),
            vcn_id=data.get("vcn_id"),
        )


@dataclass
class UserIdentity:
    """Cached committer identity used when populating repositories."""
    name: str
    email: str


_FOLDER_SCALARS = (
    "secret_name",
    "build_command",
    "artifact_location",
    "native_build_command",
    "native_artifact_location",
    "listed_resources",
)

GENERATED = "generated_resources"


@dataclass
class FolderCheckpoint(SlotOwner):
    """Per-folder (or per-submodule) resource ids."""

    slots: Dict[str, Slot] = field(default_factory=dict)
    secret_name: Optional[str] = None
    build_command: Optional[str] = None
    artifact_location: Optional[str] = None
    native_build_command: Optional[str] = None
    native_artifact_location: Optional[str] = None
    subs: Dict[str, "FolderCheckpoint"] = field(default_factory=dict)
    # 本次及之前运行创建的资源 {id, name}，仅追加
    generated: List[Dict[str, str]] = field(default_factory=list)
    # 已写入资源清单 artifact 的条目数
    listed_resources: Optional[int] = None

    def sub(self, name: str) -> "FolderCheckpoint":
        if name not in self.subs:
            self.subs[name] = FolderCheckpoint()
        return self.subs[name]

    def to_dict(self) -> Dict[str, Any]:
        data = self._slots_to_dict()
        for name in _FOLDER_SCALARS:
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        if self.subs:
            data["subs"] = {name: sub.to_dict() for name, sub in self.subs.items()}
        if self.generated:
            data[GENERATED] = list(self.generated)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FolderCheckpoint":
        folder = cls()
        for key, raw in (data or {}).items():
            if key in _FOLDER_SCALARS:
                setattr(folder, key, raw)
            elif key == "subs":
                folder.subs = {
                    name: cls.from_dict(sub) for name, sub in (raw or {}).items()
                }
            elif key == GENERATED:
                folder.generated = list(raw or [])
            else:
                slot = Slot.from_json(raw)
                if slot.state is not SlotState.NOT_ATTEMPTED:
                    folder.slots[key] = slot
        return folder


@dataclass
class Checkpoint(SlotOwner):
    """Persisted state of one deployment run.

    Older documents with missing fields load with those fields absent;
    no migration between versions is attempted.
    """

    version: str = CHECKPOINT_VERSION
    profile: Optional[str] = None
    region: Optional[str] = None
    namespace: Optional[str] = None
    compartment: Optional[ResourceRef] = None
    cluster: Optional[ResourceRef] = None
    subnet: Optional[ResourceRef] = None
    project_name: Optional[str] = None
    tag: Optional[str] = None
    user: Optional[UserIdentity] = None
    slots: Dict[str, Slot] = field(default_factory=dict)
    repositories: Dict[str, FolderCheckpoint] = field(default_factory=dict)
    generated: List[Dict[str, str]] = field(default_factory=list)
    listed_resources: Optional[int] = None

    def folder(self, repository_name: str) -> FolderCheckpoint:
        if repository_name not in self.repositories:
            self.repositories[repository_name] = FolderCheckpoint()
        return self.repositories[repository_name]

    @property
    def project_id(self) -> Optional[str]:
        return self.created_id(PROJECT)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"version": self.version}
        for name in ("profile", "region", "namespace", "tag", "listed_resources"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        for name in ("compartment", "cluster", "subnet"):
            ref = getattr(self, name)
            if ref is not None:
                data[name] = ref.to_dict()
        if self.user is not None:
            data["user"] = {"name": self.user.name, "email": self.user.email}

        slots = self._slots_to_dict()
        # 项目引用序列化为 {id, name}，保持名称与 id 一起持久化
        project = slots.pop(PROJECT, None)
        if project:
            data[PROJECT] = {"id": project, "name": self.project_name}
        elif project is False:
            data[PROJECT] = False
        if not project and self.project_name:
            data["project_name"] = self.project_name
        data.update(slots)

        data["repositories"] = {
            name: folder.to_dict() for name, folder in self.repositories.items()
        }
        if self.generated:
            data[GENERATED] = list(self.generated)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        data = data or {}
        checkpoint = cls(
            version=data.get("version", CHECKPOINT_VERSION),
            profile=data.get("profile"),
            region=data.get("region"),
            namespace=data.get("namespace"),
            compartment=ResourceRef.from_dict(data.get("compartment")),
            cluster=ResourceRef.from_dict(data.get("cluster")),
            subnet=ResourceRef.from_dict(data.get("subnet")),
            project_name=data.get("project_name"),
            tag=data.get("tag"),
            listed_resources=data.get("listed_resources"),
        )
        user = data.get("user")
        if isinstance(user, dict) and user.get("name") is not None:
            checkpoint.user = UserIdentity(name=user["name"], email=user.get("email", ""))

        project = data.get(PROJECT)
        if isinstance(project, dict):
            if project.get("id"):
                checkpoint.slots[PROJECT] = Slot.created(project["id"])
            checkpoint.project_name = project.get("name") or checkpoint.project_name
        elif project is False:
            checkpoint.slots[PROJECT] = Slot.in_progress()

        for key in PROJECT_SLOT_KEYS:
            if key == PROJECT or key not in data:
                continue
            slot = Slot.from_json(data[key])
            if slot.state is not SlotState.NOT_ATTEMPTED:
                checkpoint.slots[key] = slot

        checkpoint.repositories = {
            name: FolderCheckpoint.from_dict(folder)
            for name, folder in (data.get("repositories") or {}).items()
        }
        checkpoint.generated = list(data.get(GENERATED) or [])
        return checkpoint
