"""Base classes and data types for talking to the cloud platform.

The orchestrator only depends on the two narrow contracts defined here:

- ResourceDirectory: read-only lookups used to reconcile checkpoint ids
- ResourceFactory:   creation calls, each tagged with the run tag
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from ..errors import WorkRequestError

if TYPE_CHECKING:
    from ..config import CloudConfig
    from .auth import AuthenticationProvider

UP_STATES = ("ACTIVE", "UPDATING", "NEEDS_ATTENTION")


class ResourceKind(str, Enum):
    """Every kind of remote resource the orchestrator touches."""
    COMPARTMENT = "compartment"
    CLUSTER = "cluster"
    SUBNET = "subnet"
    PROJECT = "project"
    NOTIFICATION_TOPIC = "notification_topic"
    LOG_GROUP = "log_group"
    LOG = "log"
    ARTIFACT_REPOSITORY = "artifact_repository"
    DEPLOY_ENVIRONMENT = "deploy_environment"
    KNOWLEDGE_BASE = "knowledge_base"
    CODE_REPOSITORY = "code_repository"
    BUILD_PIPELINE = "build_pipeline"
    BUILD_STAGE = "build_stage"
    DEPLOY_ARTIFACT = "deploy_artifact"
    DEPLOY_PIPELINE = "deploy_pipeline"
    DEPLOY_STAGE = "deploy_stage"
    CONTAINER_REPOSITORY = "container_repository"


class WorkRequestService(str, Enum):
    """Services whose long-running operations return work requests."""
    DEVOPS = "devops"
    LOGGING = "logging"
    ADM = "adm"


class WorkRequestStatus(str, Enum):
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELING = "CANCELING"
    CANCELED = "CANCELED"


@dataclass
class ResourceInfo:
    """Lookup result from the Resource Directory."""

    id: str
    display_name: str = ""
    lifecycle_state: Optional[str] = None
    compartment_id: Optional[str] = None
    freeform_tags: Dict[str, str] = field(default_factory=dict)
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_up(self) -> bool:
        if self.lifecycle_state is None:
            return True
        return self.lifecycle_state.upper() in UP_STATES


@dataclass
class CreatedResource:
    """Result of a creation call.

    Asynchronous creations return a work request handle; ``id`` is then
    only known once the work request has been resolved.
    """

    id: Optional[str]
    display_name: str
    work_request: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WorkRequest:
    id: str
    status: WorkRequestStatus
    resource_id: Optional[str] = None
    message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is WorkRequestStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status in (
            WorkRequestStatus.FAILED,
            WorkRequestStatus.CANCELING,
            WorkRequestStatus.CANCELED,
        )


@dataclass
class PipelineParameter:
    name: str
    default_value: str
    description: str = ""


class ResourceDirectory(ABC):
    """Read-only lookups against the remote platform."""

    @abstractmethod
    def get(self, kind: ResourceKind, resource_id: str) -> Optional[ResourceInfo]:
        """Return the resource, or None when it does not exist anymore."""

    @abstractmethod
    def list(
        self,
        kind: ResourceKind,
        compartment_id: Optional[str] = None,
        parent_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> List[ResourceInfo]:
        """List live resources of `kind` within a compartment or parent."""

    @abstractmethod
    def get_namespace(self) -> Optional[str]:
        """Object storage namespace of the tenancy."""

    @abstractmethod
    def get_work_request(
        self, service: WorkRequestService, handle: str
    ) -> Optional[WorkRequest]:
        """Current state of a work request, or None when unknown."""

    @abstractmethod
    def get_current_user(self) -> Dict[str, str]:
        """Name and email of the authenticated user."""

    def wait_for_work_request(
        self,
        service: WorkRequestService,
        handle: str,
        timeout: float = 900,
        interval: float = 5.0,
    ) -> Optional[str]:
        """Poll a work request until it finishes; return the resource id.

        Raises:
            WorkRequestError: the request failed, was cancelled, vanished or
                did not finish within `timeout` seconds
        """
        deadline = time.monotonic() + timeout
        while True:
            request = self.get_work_request(service, handle)
            if request is None:
                raise WorkRequestError(f"Work request {handle} not found")
            if request.succeeded:
                return request.resource_id
            if request.failed:
                raise WorkRequestError(
                    request.message or f"Work request {handle} ended with {request.status.value}"
                )
            if time.monotonic() >= deadline:
                raise WorkRequestError(f"Timed out waiting for work request {handle}")
            time.sleep(interval)


class ResourceFactory(ABC):
    """Creation calls for every resource kind.

    Every call receives the freeform tags to attach, which always include
    the run tag so resources can be rediscovered later.
    """

    @abstractmethod
    def create_notification_topic(
        self, compartment_id: str, name: str, description: str, tags: Dict[str, str]
    ) -> CreatedResource: ...

    @abstractmethod
    def create_project(
        self,
        compartment_id: str,
        name: str,
        description: str,
        topic_id: str,
        tags: Dict[str, str],
    ) -> CreatedResource: ...

    @abstractmethod
    def create_log_group(
        self, compartment_id: str, name: str, description: str, tags: Dict[str, str]
    ) -> CreatedResource: ...

    @abstractmethod
    def create_project_log(
        self,
        log_group_id: str,
        compartment_id: str,
        project_id: str,
        name: str,
        tags: Dict[str, str],
    ) -> CreatedResource:
        """Asynchronous; the result carries a LOGGING work request."""

    @abstractmethod
    def update_access_policies(
        self,
        compartment_id: str,
        cluster_compartment_id: Optional[str] = None,
        subnet_compartment_id: Optional[str] = None,
    ) -> None: ...

    @abstractmethod
    def create_artifact_repository(
        self, compartment_id: str, name: str, description: str, tags: Dict[str, str]
    ) -> CreatedResource: ...

    @abstractmethod
    def create_cluster_environment(
        self, project_id: str, name: str, cluster_id: str, tags: Dict[str, str]
    ) -> CreatedResource: ...

    @abstractmethod
    def create_knowledge_base(
        self, compartment_id: str, name: str, tags: Dict[str, str]
    ) -> CreatedResource:
        """Asynchronous; the result carries an ADM work request."""

    @abstractmethod
    def create_code_repository(
        self,
        project_id: str,
        name: str,
        default_branch: str,
        description: str,
        tags: Dict[str, str],
    ) -> CreatedResource:
        """The id is immediate; a DEVOPS work request tracks readiness."""

    @abstractmethod
    def update_code_repository_tags(self, repository_id: str, tags: Dict[str, str]) -> None: ...

    @abstractmethod
    def create_generic_artifact(
        self,
        project_id: str,
        artifact_repository_id: str,
        name: str,
        path: str,
        description: str,
        tags: Dict[str, str],
    ) -> CreatedResource: ...

    @abstractmethod
    def create_image_artifact(
        self,
        project_id: str,
        name: str,
        image_uri: str,
        description: str,
        tags: Dict[str, str],
    ) -> CreatedResource: ...

    @abstractmethod
    def create_inline_artifact(
        self,
        project_id: str,
        name: str,
        content: str,
        artifact_type: str,
        description: str,
        tags: Dict[str, str],
    ) -> CreatedResource:
        """`artifact_type` is GENERIC_FILE, COMMAND_SPEC or KUBERNETES_MANIFEST."""

    @abstractmethod
    def create_build_pipeline(
        self,
        project_id: str,
        name: str,
        description: str,
        parameters: Sequence[PipelineParameter],
        tags: Dict[str, str],
    ) -> CreatedResource: ...

    @abstractmethod
    def create_build_stage(
        self,
        pipeline_id: str,
        repository: ResourceInfo,
        build_spec_file: str,
        branch: str,
        build_image: str,
        tags: Dict[str, str],
    ) -> CreatedResource: ...

    @abstractmethod
    def create_artifacts_stage(
        self,
        pipeline_id: str,
        build_stage_id: str,
        artifact_id: str,
        artifact_name: str,
        tags: Dict[str, str],
    ) -> CreatedResource: ...

    @abstractmethod
    def create_container_repository(
        self, compartment_id: str, name: str, tags: Dict[str, str]
    ) -> CreatedResource: ...

    @abstractmethod
    def create_deploy_pipeline(
        self,
        project_id: str,
        name: str,
        description: str,
        parameters: Sequence[PipelineParameter],
        tags: Dict[str, str],
    ) -> CreatedResource: ...

    @abstractmethod
    def create_shell_stage(
        self,
        pipeline_id: str,
        predecessor_id: str,
        command_artifact_id: str,
        subnet_id: Optional[str],
        name: str,
        tags: Dict[str, str],
    ) -> CreatedResource: ...

    @abstractmethod
    def create_cluster_deploy_stage(
        self,
        pipeline_id: str,
        predecessor_id: str,
        environment_id: str,
        manifest_artifact_ids: Sequence[str],
        name: str,
        tags: Dict[str, str],
    ) -> CreatedResource: ...


class CloudClient(ResourceDirectory, ResourceFactory):
    """A client implementing both contracts against one platform."""


def create_cloud_client(
    auth: "AuthenticationProvider", config: "CloudConfig"
) -> CloudClient:
    """
    Factory function to create the REST client for an authentication provider.

    Args:
        auth: resolved authentication provider
        config: cloud connection settings

    Returns:
        A client implementing ResourceDirectory and ResourceFactory
    """
    from .rest import RestCloudClient
    return RestCloudClient(auth, config)
