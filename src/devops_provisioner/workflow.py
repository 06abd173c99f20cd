"""High-level workflow: wires the collaborators and runs the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .analyzer import BuildFileClassifier, GenericBuild
from .checkpoint import CheckpointStore, ResourceRef
from .cloud import AuthenticationProvider, CloudClient, ConfigFileAuthentication, ResourceKind, create_cloud_client
from .config import AppConfig
from .errors import PreconditionError
from .gitops import GitRepositoryManager, RepositoryPopulator
from .interaction import (
    AutoResponseHandler,
    CLIInteractionHandler,
    InteractiveParameterProvider,
    UserInteractionHandler,
)
from .orchestrator import ProgressEvent, ProvisioningOrchestrator, RunResult
from .templates import TemplateExpander
from .utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class DeploymentRequest:
    """User-provided deployment request captured from the CLI."""

    folders: List[str]
    project_name: Optional[str] = None
    compartment_id: Optional[str] = None
    existing_project_id: Optional[str] = None
    # 通用项目的构建命令
    build_command: Optional[str] = None
    artifact_location: Optional[str] = None
    native_build_command: Optional[str] = None
    native_artifact_location: Optional[str] = None
    fresh: bool = False
    responses: Dict[str, str] = field(default_factory=dict)


class DeploymentWorkflow:
    """Coordinates one provisioning run."""

    def __init__(
        self,
        config: AppConfig,
        interaction_handler: Optional[UserInteractionHandler] = None,
        auth: Optional[AuthenticationProvider] = None,
        client: Optional[CloudClient] = None,
        checkpoint_dir: Optional[Path] = None,
        log_dir: Optional[Path] = None,
        populator: Optional[RepositoryPopulator] = None,
    ) -> None:
        self.config = config
        self.interaction_handler = interaction_handler
        self.auth = auth
        self.client = client
        self.checkpoint_dir = checkpoint_dir
        self.log_dir = log_dir
        self.populator = populator
        self._last_percent = 0.0

    def run_deploy(self, request: DeploymentRequest) -> RunResult:
        folders = [Path(folder).expanduser().resolve() for folder in request.folders]
        logger.info("Preparing deployment for %d folder(s)", len(folders))

        auth = self.auth or ConfigFileAuthentication(
            config_file=self.config.cloud.config_file,
            profile=self.config.cloud.profile,
            region=self.config.cloud.region,
        )
        client = self.client or create_cloud_client(auth, self.config.cloud)
        handler = self.interaction_handler or self._default_handler(request)

        store = CheckpointStore.for_folders(folders, self.checkpoint_dir)
        checkpoint = None
        if request.fresh:
            store.clear()
        else:
            checkpoint = store.load()
            if checkpoint is not None:
                logger.info("Resuming from checkpoint %s", store.path)

        existing_project = None
        if request.existing_project_id:
            existing_project = self._existing_project(client, request.existing_project_id)

        parameters = InteractiveParameterProvider(
            client,
            handler,
            root_compartment_id=auth.tenancy,
            preset_compartment_id=request.compartment_id,
        )
        orchestrator = ProvisioningOrchestrator(
            directory=client,
            factory=client,
            store=store,
            classifier=BuildFileClassifier(self._overrides(request)),
            populator=self.populator or GitRepositoryManager(),
            expander=TemplateExpander(),
            parameters=parameters,
            profile=auth.profile,
            region=auth.region,
            deploy_config=self.config.deploy,
            cloud_config=self.config.cloud,
            progress_callback=self._on_progress,
            existing_project=existing_project,
            project_name=request.project_name,
            log_dir=self.log_dir,
        )

        self._last_percent = 0.0
        result = orchestrator.run(folders, checkpoint)
        if result.success:
            logger.info("🎉 Deployment completed successfully!")
        else:
            logger.error("💥 Deployment failed: %s", result.error)
            logger.info("   Run the same command again to resume from %s", store.path)
        return result

    def _default_handler(self, request: DeploymentRequest) -> UserInteractionHandler:
        if not self.config.interaction.enabled or self.config.interaction.mode == "auto":
            return AutoResponseHandler(responses=request.responses)
        return CLIInteractionHandler()

    @staticmethod
    def _existing_project(client: CloudClient, project_id: str) -> ResourceRef:
        info = client.get(ResourceKind.PROJECT, project_id)
        if info is None:
            raise PreconditionError(f"Project {project_id} does not exist.")
        if not info.compartment_id:
            raise PreconditionError(f"Cannot determine the compartment of project {project_id}.")
        return ResourceRef(id=info.id, name=info.display_name, compartment_id=info.compartment_id)

    @staticmethod
    def _overrides(request: DeploymentRequest) -> Dict[str, GenericBuild]:
        if not (request.build_command or request.native_build_command):
            return {}
        build = GenericBuild(
            build_command=request.build_command,
            artifact_location=request.artifact_location,
            native_build_command=request.native_build_command,
            native_artifact_location=request.native_artifact_location,
        )
        return {"*": build}

    def _on_progress(self, event: ProgressEvent) -> None:
        self._last_percent += event.increment_percent
        logger.info("[%3.0f%%] %s", min(self._last_percent, 100.0), event.message)
