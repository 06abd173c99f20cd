"""Data models for the orchestrator module."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..checkpoint import models as slots

if TYPE_CHECKING:
    from ..analyzer.classifier import FolderClassification


class StepKind(str, Enum):
    """One kind of provisioning step."""
    # 项目级
    NOTIFICATION_TOPIC = "notification_topic"
    PROJECT = "project"
    LOG_GROUP = "log_group"
    PROJECT_LOG = "project_log"
    ACCESS_POLICIES = "access_policies"
    PROJECT_SETUP = "project_setup"             # 增量模式下替代上面五步
    ARTIFACT_REPOSITORY = "artifact_repository"
    CLUSTER_ENVIRONMENT = "cluster_environment"
    KNOWLEDGE_BASE = "knowledge_base"
    PROJECT_MANIFEST = "project_manifest"
    # 文件夹级
    CODE_REPOSITORY = "code_repository"
    BUILD_SPEC = "build_spec"
    ARTIFACT = "artifact"
    BUILD_PIPELINE = "build_pipeline"
    BUILD_STAGE = "build_stage"
    ARTIFACTS_STAGE = "artifacts_stage"
    SETUP_COMMAND_ARTIFACT = "setup_command_artifact"
    CONTAINER_REPOSITORY = "container_repository"
    CONTAINER_SPEC = "container_spec"
    CONTAINER_ARTIFACT = "container_artifact"
    CONFIGMAP_ARTIFACT = "configmap_artifact"
    DEPLOY_CONFIG_ARTIFACT = "deploy_config_artifact"
    DEPLOY_PIPELINE = "deploy_pipeline"
    SETUP_SECRET_STAGE = "setup_secret_stage"
    DEPLOY_STAGE = "deploy_stage"
    CONFIGMAP_STAGE = "configmap_stage"
    POPULATE_REPOSITORY = "populate_repository"
    SAVE_CONFIG = "save_config"
    FOLDER_MANIFEST = "folder_manifest"


class Chain(str, Enum):
    """A build path within a folder; prefixes the slot keys it owns."""
    FAT_JAR = "devbuild"
    NATIVE = "nibuild"
    NATIVE_IMAGE = "docker_nibuild"
    JVM_IMAGE = "docker_jvmbuild"

    @property
    def is_container(self) -> bool:
        return self in (Chain.NATIVE_IMAGE, Chain.JVM_IMAGE)

    @property
    def is_native(self) -> bool:
        return self in (Chain.NATIVE, Chain.NATIVE_IMAGE)


_PROJECT_KEYS = {
    StepKind.NOTIFICATION_TOPIC: slots.NOTIFICATION_TOPIC,
    StepKind.PROJECT: slots.PROJECT,
    StepKind.LOG_GROUP: slots.LOG_GROUP,
    StepKind.PROJECT_LOG: slots.PROJECT_LOG,
    StepKind.ACCESS_POLICIES: slots.ACCESS_POLICIES,
    StepKind.ARTIFACT_REPOSITORY: slots.ARTIFACT_REPOSITORY,
    StepKind.CLUSTER_ENVIRONMENT: slots.CLUSTER_ENVIRONMENT,
    StepKind.KNOWLEDGE_BASE: slots.KNOWLEDGE_BASE,
    StepKind.PROJECT_MANIFEST: slots.PROJECT_MANIFEST,
}

_FOLDER_KEYS = {
    StepKind.CODE_REPOSITORY: slots.CODE_REPOSITORY,
    StepKind.SETUP_COMMAND_ARTIFACT: "oke_setup_command_artifact",
    StepKind.FOLDER_MANIFEST: slots.FOLDER_MANIFEST,
}

# 链内资源的 key 后缀: <chain>_<suffix>
_CHAIN_SUFFIXES = {
    StepKind.ARTIFACT: "artifact",
    StepKind.BUILD_PIPELINE: "pipeline",
    StepKind.BUILD_STAGE: "build_stage",
    StepKind.ARTIFACTS_STAGE: "artifacts_stage",
    StepKind.CONTAINER_REPOSITORY: "container_repository",
    StepKind.CONTAINER_ARTIFACT: "artifact",
    StepKind.CONFIGMAP_ARTIFACT: "configmap_artifact",
    StepKind.DEPLOY_CONFIG_ARTIFACT: "deploy_config_artifact",
    StepKind.DEPLOY_PIPELINE: "deploy_pipeline",
    StepKind.SETUP_SECRET_STAGE: "setup_secret_stage",
    StepKind.DEPLOY_STAGE: "deploy_stage",
    StepKind.CONFIGMAP_STAGE: "configmap_stage",
}


def chain_key(chain: Chain, kind: StepKind) -> str:
    return f"{chain.value}_{_CHAIN_SUFFIXES[kind]}"


@dataclass(frozen=True)
class StepDescriptor:
    """One planned step, consumed uniformly by the step runner."""

    kind: StepKind
    description: str
    folder: Optional[str] = None        # repository name
    chain: Optional[Chain] = None
    sub: Optional[str] = None           # GDK 子模块
    weight: int = 1
    params: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def slot_key(self) -> Optional[str]:
        """Checkpoint key of the resource this step provisions, if any."""
        if self.folder is None:
            return _PROJECT_KEYS.get(self.kind)
        if self.kind in _FOLDER_KEYS:
            return _FOLDER_KEYS[self.kind]
        if self.chain is not None and self.kind in _CHAIN_SUFFIXES:
            return chain_key(self.chain, self.kind)
        return None

    @property
    def label(self) -> str:
        parts = [self.kind.value]
        if self.folder:
            parts.insert(0, self.folder)
        if self.sub:
            parts.insert(1, self.sub)
        if self.chain:
            parts.append(self.chain.value)
        return "/".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind.value, "description": self.description}
        if self.folder:
            data["folder"] = self.folder
        if self.chain:
            data["chain"] = self.chain.value
        if self.sub:
            data["sub"] = self.sub
        if self.weight != 1:
            data["weight"] = self.weight
        return data


@dataclass
class DeploymentPlan:
    """Ordered steps with their total weight."""

    steps: List[StepDescriptor] = field(default_factory=list)
    incremental: bool = False

    @property
    def total_weight(self) -> int:
        return sum(step.weight for step in self.steps)

    def steps_for(self, folder: str) -> List[StepDescriptor]:
        return [step for step in self.steps if step.folder == folder]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "incremental": self.incremental,
            "total_weight": self.total_weight,
            "steps": [step.to_dict() for step in self.steps],
        }


@dataclass(frozen=True)
class FeatureFlags:
    bypass_artifacts: bool = False
    cluster_deploy: bool = True
    native_pipelines: bool = False


@dataclass
class FolderTarget:
    """A folder to deploy together with its classification."""

    path: Path
    repository_name: str
    classification: "FolderClassification"


@dataclass(frozen=True)
class ProgressEvent:
    increment_percent: float
    message: str


@dataclass
class RunResult:
    """Outcome of a provisioning run."""

    success: bool
    error: Optional[str] = None

    @classmethod
    def succeeded(cls) -> "RunResult":
        return cls(success=True)

    @classmethod
    def failed(cls, error: str) -> "RunResult":
        return cls(success=False, error=error)


class StepOutcome(str, Enum):
    """How a step resolved; recorded in the run log."""
    CREATED = "created"
    REUSED = "reused"
    SKIPPED = "skipped"
    FAILED = "failed"
