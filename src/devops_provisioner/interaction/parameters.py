"""Collection of deployment parameters (compartment, cluster, subnet, names)."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from .handler import (
    InputType,
    InteractionRequest,
    QuestionCategory,
    UserInteractionHandler,
)
from ..checkpoint.models import ResourceRef
from ..cloud.base import ResourceDirectory, ResourceInfo, ResourceKind
from ..errors import DeploymentCancelled, PreconditionError
from ..utils.naming import validate_project_name

logger = logging.getLogger(__name__)

SKIP_CLUSTER = "Do not deploy to a cluster"


class ParameterProvider(ABC):
    """Supplies the parameters the orchestrator cannot derive on its own.

    Every method raises :class:`DeploymentCancelled` when the user declines.
    """

    @abstractmethod
    def select_compartment(self) -> ResourceRef:
        """Compartment that will hold the project."""

    @abstractmethod
    def select_cluster(self, compartment: ResourceRef) -> Optional[ResourceRef]:
        """Cluster to deploy to, or None to skip cluster deployment."""

    @abstractmethod
    def select_subnet(self, cluster: ResourceRef) -> Optional[ResourceRef]:
        """Subnet for the shell stages of the deploy pipelines."""

    @abstractmethod
    def ask_project_name(self, suggested: Optional[str], reason: Optional[str] = None) -> str:
        """A valid project name; `reason` explains why a new one is needed."""


class InteractiveParameterProvider(ParameterProvider):
    """Asks the user through a :class:`UserInteractionHandler`."""

    def __init__(
        self,
        directory: ResourceDirectory,
        handler: UserInteractionHandler,
        root_compartment_id: Optional[str] = None,
        preset_compartment_id: Optional[str] = None,
    ) -> None:
        self.directory = directory
        self.handler = handler
        self.root_compartment_id = root_compartment_id
        self.preset_compartment_id = preset_compartment_id

    def select_compartment(self) -> ResourceRef:
        if self.preset_compartment_id:
            info = self.directory.get(ResourceKind.COMPARTMENT, self.preset_compartment_id)
            # 预设值只使用一次；失效后回到交互选择
            self.preset_compartment_id = None
            if info is not None:
                return ResourceRef(id=info.id, name=info.display_name)
            self.handler.notify("The requested compartment does not exist anymore.", "warning")

        compartments = self.directory.list(
            ResourceKind.COMPARTMENT, compartment_id=self.root_compartment_id
        )
        if not compartments:
            raise PreconditionError("No compartment available for the DevOps project.")
        chosen = self._choose(
            "Select the compartment for the DevOps project",
            compartments,
            key="compartment",
        )
        if chosen is None:
            raise DeploymentCancelled("No compartment selected.")
        return ResourceRef(id=chosen.id, name=chosen.display_name)

    def select_cluster(self, compartment: ResourceRef) -> Optional[ResourceRef]:
        clusters = [
            cluster
            for cluster in self.directory.list(ResourceKind.CLUSTER, compartment_id=compartment.id)
            if cluster.is_up
        ]
        if not clusters:
            logger.info("No active cluster in compartment %s", compartment.name or compartment.id)
            return None
        chosen = self._choose(
            "Select the cluster to deploy to",
            clusters,
            key="cluster",
            extra_options=[SKIP_CLUSTER],
        )
        if chosen is None:
            return None
        return ResourceRef(
            id=chosen.id,
            name=chosen.display_name,
            compartment_id=chosen.compartment_id or compartment.id,
            vcn_id=chosen.attributes.get("vcnId"),
        )

    def select_subnet(self, cluster: ResourceRef) -> Optional[ResourceRef]:
        subnets = self.directory.list(
            ResourceKind.SUBNET, compartment_id=cluster.compartment_id, parent_id=cluster.vcn_id
        )
        if not subnets:
            return None
        if len(subnets) == 1:
            subnet = subnets[0]
        else:
            subnet = self._choose("Select the subnet for deployment jobs", subnets, key="subnet")
            if subnet is None:
                raise DeploymentCancelled("No subnet selected.")
        return ResourceRef(id=subnet.id, name=subnet.display_name, compartment_id=subnet.compartment_id)

    def ask_project_name(self, suggested: Optional[str], reason: Optional[str] = None) -> str:
        context = reason
        while True:
            response = self.handler.ask(InteractionRequest(
                question="Enter the name of the DevOps project",
                input_type=InputType.TEXT,
                category=QuestionCategory.NAMING,
                context=context,
                default=suggested,
                key="project_name",
            ))
            if response.cancelled:
                raise DeploymentCancelled("No project name provided.")
            name = response.value.strip()
            error = validate_project_name(name)
            if error is None:
                return name
            if response.value == suggested:
                # 非交互模式下默认值无效时不能无限重试
                raise PreconditionError(f"Invalid project name '{name}': {error}")
            context = error

    def _choose(
        self,
        question: str,
        items: List[ResourceInfo],
        key: str,
        extra_options: Optional[List[str]] = None,
    ) -> Optional[ResourceInfo]:
        labels = [f"{item.display_name} ({item.id})" for item in items]
        options = labels + list(extra_options or [])
        response = self.handler.ask(InteractionRequest(
            question=question,
            input_type=InputType.CHOICE,
            options=options,
            category=QuestionCategory.SELECTION,
            allow_custom=True,
            key=key,
        ))
        if response.cancelled:
            if extra_options:
                return None
            raise DeploymentCancelled(f"{question}: cancelled.")
        for item, label in zip(items, labels):
            if response.value in (label, item.id, item.display_name):
                return item
        return None
