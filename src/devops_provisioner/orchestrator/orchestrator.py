"""Provisioning orchestrator: pre-flight, plan, execute, join."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

from ..analyzer.classifier import BuildPath, FolderClassification, FolderClassifier
from ..checkpoint import models as keys
from ..checkpoint.models import (
    CHECKPOINT_VERSION,
    Checkpoint,
    FolderCheckpoint,
    ResourceRef,
    Slot,
    SlotOwner,
    UserIdentity,
)
from ..checkpoint.store import CheckpointStore
from ..cloud.base import (
    CreatedResource,
    PipelineParameter,
    ResourceDirectory,
    ResourceFactory,
    ResourceInfo,
    ResourceKind,
    WorkRequestService,
)
from ..config import CloudConfig, DeployConfig
from ..errors import (
    CloudError,
    DeploymentCancelled,
    PreconditionError,
    ProvisioningError,
    WorkRequestError,
)
from ..gitops.manager import RepositoryPopulator
from ..interaction.parameters import ParameterProvider
from ..paths import DEVOPS_RESOURCES_DIR, get_logs_dir
from ..templates.expander import TemplateExpander
from ..utils.naming import (
    app_name,
    container_repository_name,
    log_name_candidates,
    pipeline_name,
    remove_spaces,
    secret_name,
    validate_project_name,
)
from .assembler import PipelineAssembler
from .background import BackgroundTasks
from .manifest import ResourceManifest
from .models import (
    Chain,
    DeploymentPlan,
    FeatureFlags,
    FolderTarget,
    RunResult,
    StepDescriptor,
    StepKind,
    StepOutcome,
    chain_key,
)
from .progress import ProgressCallback, ProgressReporter
from .step_runner import StepRunner

logger = logging.getLogger(__name__)

TAG_DEPLOY_ID = "devops_tooling_deployID"
TAG_PROJECT = "devops_tooling_projectOCID"
TAG_CODE_REPOSITORY = "devops_tooling_codeRepoID"
TAG_CODE_REPOSITORY_PREFIX = "devops_tooling_codeRepoPrefix"
TAG_DEPLOY_INCOMPLETE = "devops_tooling_deployIncomplete"
TAG_PROJECT_RESOURCES_LIST = "devops_tooling_projectResourcesList"
TAG_CODE_REPOSITORY_RESOURCES_LIST = "devops_tooling_codeRepoResourcesList"

SERVICES_CONFIG_FILE = "devops.json"

_PROJECT_LOG_TASK = "project_log"
_KNOWLEDGE_BASE_TASK = "knowledge_base"


class ProvisioningOrchestrator:
    """
    Walks the resource graph for a set of folders.

    Usage:
        orchestrator = ProvisioningOrchestrator(directory, factory, store, ...)
        result = orchestrator.run(folders, checkpoint)
    """

    def __init__(
        self,
        directory: ResourceDirectory,
        factory: ResourceFactory,
        store: CheckpointStore,
        classifier: FolderClassifier,
        populator: RepositoryPopulator,
        expander: TemplateExpander,
        parameters: ParameterProvider,
        profile: str,
        region: str,
        deploy_config: Optional[DeployConfig] = None,
        cloud_config: Optional[CloudConfig] = None,
        progress_callback: Optional[ProgressCallback] = None,
        existing_project: Optional[ResourceRef] = None,
        project_name: Optional[str] = None,
        log_dir: Optional[Path] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """
        Args:
            existing_project: add the folders to this project (incremental
                mode); its ``compartment_id`` must be set
            project_name: name for a new project instead of asking
            cancel_event: checked between steps; when set the run stops
                with the checkpoint consistent
        """
        self.directory = directory
        self.factory = factory
        self.store = store
        self.classifier = classifier
        self.populator = populator
        self.expander = expander
        self.parameters = parameters
        self.profile = profile
        self.region = region
        self.config = deploy_config or DeployConfig()
        self.cloud_config = cloud_config or CloudConfig()
        self.progress_callback = progress_callback
        self.existing_project = existing_project
        self.project_name = project_name
        self.log_dir = log_dir
        self.cancel_event = cancel_event

        self.checkpoint = Checkpoint()
        self.plan: Optional[DeploymentPlan] = None
        self.runner: Optional[StepRunner] = None
        self.background: Optional[BackgroundTasks] = None
        self.targets: Dict[str, FolderTarget] = {}
        self.cluster_enabled = False
        self._repositories: Dict[str, ResourceInfo] = {}
        # 后台任务 -> 创建时使用的名称
        self._pending_names: Dict[str, str] = {}

        # 日志
        self.deployment_log: dict = {}
        self.current_log_file: Optional[Path] = None

        self._handlers: Dict[StepKind, Callable[[StepDescriptor], StepOutcome]] = {
            StepKind.NOTIFICATION_TOPIC: self._notification_topic,
            StepKind.PROJECT: self._project,
            StepKind.LOG_GROUP: self._log_group,
            StepKind.PROJECT_LOG: self._project_log,
            StepKind.ACCESS_POLICIES: self._access_policies,
            StepKind.PROJECT_SETUP: self._project_setup,
            StepKind.ARTIFACT_REPOSITORY: self._artifact_repository,
            StepKind.CLUSTER_ENVIRONMENT: self._cluster_environment,
            StepKind.KNOWLEDGE_BASE: self._knowledge_base,
            StepKind.PROJECT_MANIFEST: self._project_manifest,
            StepKind.CODE_REPOSITORY: self._code_repository,
            StepKind.BUILD_SPEC: self._build_spec,
            StepKind.ARTIFACT: self._artifact,
            StepKind.BUILD_PIPELINE: self._build_pipeline,
            StepKind.BUILD_STAGE: self._build_stage,
            StepKind.ARTIFACTS_STAGE: self._artifacts_stage,
            StepKind.SETUP_COMMAND_ARTIFACT: self._setup_command_artifact,
            StepKind.CONTAINER_REPOSITORY: self._container_repository,
            StepKind.CONTAINER_SPEC: self._container_spec,
            StepKind.CONTAINER_ARTIFACT: self._container_artifact,
            StepKind.CONFIGMAP_ARTIFACT: self._configmap_artifact,
            StepKind.DEPLOY_CONFIG_ARTIFACT: self._deploy_config_artifact,
            StepKind.DEPLOY_PIPELINE: self._deploy_pipeline,
            StepKind.SETUP_SECRET_STAGE: self._setup_secret_stage,
            StepKind.DEPLOY_STAGE: self._deploy_stage,
            StepKind.CONFIGMAP_STAGE: self._configmap_stage,
            StepKind.POPULATE_REPOSITORY: self._populate_repository,
            StepKind.SAVE_CONFIG: self._save_config,
            StepKind.FOLDER_MANIFEST: self._folder_manifest,
        }

    @property
    def incremental(self) -> bool:
        return self.existing_project is not None

    # ------------------------------------------------------------------
    # Entry point

    def run(
        self,
        folders: Sequence[Union[str, Path]],
        checkpoint: Optional[Checkpoint] = None,
    ) -> RunResult:
        """
        Provision every resource needed to build and deploy `folders`.

        Args:
            folders: source folders, processed sequentially
            checkpoint: checkpoint of an earlier run to resume, if any

        Returns:
            RunResult with a single human-readable error on failure
        """
        folder_paths = [Path(folder) for folder in folders]
        self.checkpoint = checkpoint or Checkpoint()
        self.background = BackgroundTasks(self.config.background_workers)
        self._repositories = {}
        self._pending_names = {}
        self._init_log(folder_paths)

        logger.info("")
        logger.info("=" * 60)
        logger.info("DEVOPS PROVISIONING")
        logger.info("=" * 60)
        logger.info("Folders: %s", ", ".join(str(path) for path in folder_paths))
        logger.info("Mode: %s", "add to existing project" if self.incremental else "new project")
        logger.info("")

        try:
            if not folder_paths:
                raise PreconditionError("No folders to deploy.")
            self._preflight(folder_paths)
            targets = self._classify(folder_paths)
            self.plan = self.assemble(targets)
            self.deployment_log["plan"] = self.plan.to_dict()
            self._save_log()

            logger.info("Total steps: %d (weight %d)", len(self.plan.steps), self.plan.total_weight)
            progress = ProgressReporter(self.plan.total_weight, self.progress_callback)
            self.runner = StepRunner(
                self.directory, self.store, self.checkpoint, progress, listener=self._log_step
            )
            for step in self.plan.steps:
                if self.cancel_event is not None and self.cancel_event.is_set():
                    raise DeploymentCancelled("Deployment cancelled.")
                self.runner.run(step, self._handlers[step.kind])
        except ProvisioningError as exc:
            self.background.abandon()
            self._persist()
            logger.error("=" * 60)
            logger.error("Deployment failed: %s", exc)
            logger.error("=" * 60)
            self._finalize_log("cancelled" if isinstance(exc, DeploymentCancelled) else "failed", str(exc))
            return RunResult.failed(str(exc))
        except BaseException:
            self.background.abandon()
            self._persist()
            self._finalize_log("error", "unexpected error")
            raise

        self.background.close()
        self._persist()
        logger.info("=" * 60)
        logger.info("Deployment completed successfully!")
        logger.info("=" * 60)
        self._finalize_log("success")
        return RunResult.succeeded()

    def assemble(self, targets: Sequence[FolderTarget]) -> DeploymentPlan:
        flags = FeatureFlags(
            bypass_artifacts=self.config.bypass_artifacts,
            cluster_deploy=self.cluster_enabled,
            native_pipelines=self.config.native_pipelines,
        )
        return PipelineAssembler(flags).assemble(targets, incremental=self.incremental)

    # ------------------------------------------------------------------
    # Pre-flight

    def _preflight(self, folders: List[Path]) -> None:
        cp = self.checkpoint
        cp.profile = self.profile
        cp.region = self.region
        self._persist()

        if not cp.namespace:
            try:
                cp.namespace = self.directory.get_namespace()
            except CloudError as exc:
                raise PreconditionError(f"Cannot resolve the object storage namespace: {exc}") from exc
            if not cp.namespace:
                raise PreconditionError("Cannot resolve the object storage namespace.")
            self._persist()

        if self.incremental:
            existing = self.existing_project
            if cp.compartment is None or cp.compartment.id != existing.compartment_id:
                cp.compartment = ResourceRef(id=existing.compartment_id)

        if cp.compartment is not None:
            info = self._lookup(ResourceKind.COMPARTMENT, cp.compartment.id)
            if info is None:
                logger.warning("Compartment %s no longer exists", cp.compartment.name or cp.compartment.id)
                cp.compartment = None
            else:
                cp.compartment.name = info.display_name or cp.compartment.name
            self._persist()
        if cp.compartment is None:
            if self.incremental:
                raise PreconditionError("The compartment of the existing project does not exist anymore.")
            cp.compartment = self.parameters.select_compartment()
            self._persist()

        self._preflight_cluster()

        if self.incremental:
            self._preflight_existing_project()
        else:
            self._preflight_project(folders)

        if not cp.tag:
            cp.tag = f"devops-deploy-{datetime.now().isoformat(timespec='seconds')}"
        self._persist()

    def _preflight_cluster(self) -> None:
        cp = self.checkpoint
        self.cluster_enabled = False
        if not self.config.cluster_deploy:
            return

        if cp.cluster is not None:
            info = self._lookup(ResourceKind.CLUSTER, cp.cluster.id)
            if info is None or not info.is_up:
                logger.warning("Cluster %s is not available anymore", cp.cluster.name or cp.cluster.id)
                cp.cluster = None
                cp.subnet = None
                self._persist()
        if cp.cluster is None:
            cluster = self.parameters.select_cluster(cp.compartment)
            if cluster is None:
                logger.info("No cluster selected, deployment pipelines will not be created")
                return
            if not cluster.vcn_id:
                raise PreconditionError(f"Cluster {cluster.name or cluster.id} has no VCN.")
            cp.cluster = cluster
            cp.subnet = None
            self._persist()

        if cp.subnet is not None and self._lookup(ResourceKind.SUBNET, cp.subnet.id) is None:
            cp.subnet = None
        if cp.subnet is None:
            subnet = self.parameters.select_subnet(cp.cluster)
            if subnet is None:
                raise PreconditionError(
                    f"No subnet available in the VCN of cluster {cp.cluster.name or cp.cluster.id}."
                )
            cp.subnet = subnet
            self._persist()
        self.cluster_enabled = True

    def _preflight_project(self, folders: List[Path]) -> None:
        cp = self.checkpoint
        project_id = cp.project_id
        if project_id:
            info = self._lookup(ResourceKind.PROJECT, project_id)
            if info is None:
                logger.warning("Project %s no longer exists, it will be recreated", cp.project_name or project_id)
                cp.set_slot(keys.PROJECT, Slot.not_attempted())
            else:
                cp.project_name = info.display_name or cp.project_name
                return

        if cp.project_name and validate_project_name(cp.project_name) is None:
            return
        if self.project_name:
            error = validate_project_name(self.project_name)
            if error:
                raise PreconditionError(f"Invalid project name '{self.project_name}': {error}")
            cp.project_name = self.project_name
        else:
            suggested = remove_spaces(folders[0].name) if len(folders) == 1 else None
            cp.project_name = self.parameters.ask_project_name(suggested)
        self._persist()

    def _preflight_existing_project(self) -> None:
        cp = self.checkpoint
        existing = self.existing_project
        info = self._lookup(ResourceKind.PROJECT, existing.id)
        if info is None:
            raise PreconditionError(f"Project {existing.name or existing.id} does not exist.")
        cp.set_slot(keys.PROJECT, Slot.created(existing.id))
        cp.project_name = info.display_name or existing.name
        self._persist()

    def _classify(self, folders: List[Path]) -> List[FolderTarget]:
        targets: List[FolderTarget] = []
        self.targets = {}
        for folder in folders:
            if not folder.is_dir():
                raise PreconditionError(f"Folder {folder} does not exist.")
            repository = remove_spaces(folder.name)
            if repository in self.targets:
                raise PreconditionError(f"Two folders map to the same repository name {repository}.")
            state = self.checkpoint.folder(repository)
            classification = self.classifier.classify(folder)
            _restore_builds(classification, state)
            if not classification.supported:
                raise PreconditionError(
                    f"Cannot deploy {folder}: no build command or native build command could be resolved."
                )
            target = FolderTarget(path=folder, repository_name=repository, classification=classification)
            self.targets[repository] = target
            targets.append(target)

            if classification.build:
                state.build_command = classification.build.command
                state.artifact_location = classification.build.artifact_location
            if classification.native_build:
                state.native_build_command = classification.native_build.command
                state.native_artifact_location = classification.native_build.artifact_location
        self._persist()
        return targets

    # ------------------------------------------------------------------
    # Project-level steps

    def _notification_topic(self, step: StepDescriptor) -> StepOutcome:
        cp = self.checkpoint
        return self.runner.ensure(
            cp, step.slot_key, "notification topic", f"{cp.project_name}Topic",
            kind=ResourceKind.NOTIFICATION_TOPIC,
            create=lambda name: self.factory.create_notification_topic(
                cp.compartment.id, name, "Notifications for the DevOps project", self._tags()
            ),
            manifest=self._project_manifest_entries(),
        ).outcome

    def _project(self, step: StepDescriptor) -> StepOutcome:
        cp = self.checkpoint
        topic_id = self._require(cp, keys.NOTIFICATION_TOPIC, "notification topic")

        def rename(name: str, exc: Exception) -> str:
            new_name = self.parameters.ask_project_name(
                name, reason=f"Project name '{name}' is already in use: {exc}"
            )
            cp.project_name = new_name
            self._persist()
            return new_name

        result = self.runner.ensure(
            cp, step.slot_key, "project", cp.project_name,
            kind=ResourceKind.PROJECT,
            create=lambda name: self.factory.create_project(
                cp.compartment.id, name, "DevOps project", topic_id, self._tags()
            ),
            rename=rename,
            max_renames=self.config.max_project_name_retries,
            manifest=self._project_manifest_entries(),
        )
        if result.name and result.name != cp.project_name:
            cp.project_name = result.name
            self._persist()
        return result.outcome

    def _log_group(self, step: StepDescriptor) -> StepOutcome:
        cp = self.checkpoint
        return self.runner.ensure(
            cp, step.slot_key, "log group", f"{cp.project_name}LogGroup",
            kind=ResourceKind.LOG_GROUP,
            create=lambda name: self.factory.create_log_group(
                cp.compartment.id, name, "Logs of the DevOps project", self._tags()
            ),
            manifest=self._project_manifest_entries(),
        ).outcome

    def _project_log(self, step: StepDescriptor) -> StepOutcome:
        cp = self.checkpoint
        log_group_id = self._require(cp, keys.LOG_GROUP, "log group")
        project_id = self._require(cp, keys.PROJECT, "project")

        existing = self._list(ResourceKind.LOG, parent_id=log_group_id)
        log_id = cp.created_id(keys.PROJECT_LOG)
        if log_id:
            if any(info.id == log_id for info in existing):
                logger.info("Using already created project log %s", log_id)
                return StepOutcome.REUSED
            logger.info("Project log %s no longer exists, it will be recreated", log_id)
            cp.set_slot(keys.PROJECT_LOG, Slot.not_attempted())
            cp.set_slot(keys.PROJECT_LOG_WORK_REQUEST, Slot.not_attempted())

        candidates = log_name_candidates(cp.project_name, (info.display_name for info in existing))
        result = self.runner.ensure(
            cp, keys.PROJECT_LOG_WORK_REQUEST, "project log", next(candidates),
            verify=lambda handle: self._work_request_alive(WorkRequestService.LOGGING, handle),
            create=lambda name: self.factory.create_project_log(
                log_group_id, cp.compartment.id, project_id, name, self._tags()
            ),
            rename=lambda name, exc: next(candidates),
            id_of=lambda created: created.work_request,
        )
        cp.set_slot(keys.PROJECT_LOG, Slot.in_progress())
        self._persist()
        if result.name:
            self._pending_names[_PROJECT_LOG_TASK] = result.name
        self._poll_in_background(_PROJECT_LOG_TASK, WorkRequestService.LOGGING, result.id)
        return result.outcome

    def _access_policies(self, step: StepDescriptor) -> StepOutcome:
        cp = self.checkpoint
        compartment_id = cp.compartment.id

        def apply(name: str) -> CreatedResource:
            self.factory.update_access_policies(
                compartment_id,
                cp.cluster.compartment_id if self.cluster_enabled else None,
                cp.subnet.compartment_id if self.cluster_enabled and cp.subnet else None,
            )
            return CreatedResource(id=compartment_id, display_name=name)

        # 记录已配置策略的 compartment，无需远程校验
        return self.runner.ensure(
            cp, step.slot_key, "access policies", "access policies",
            verify=lambda value: value == compartment_id,
            create=apply,
        ).outcome

    def _project_setup(self, step: StepDescriptor) -> StepOutcome:
        logger.info("Using existing project %s (%s)", self.checkpoint.project_name, self.checkpoint.project_id)
        return StepOutcome.SKIPPED

    def _artifact_repository(self, step: StepDescriptor) -> StepOutcome:
        cp = self.checkpoint
        if self.incremental:
            return self._resolve_by_project_tag(
                step.slot_key, ResourceKind.ARTIFACT_REPOSITORY, "artifact repository", required=True
            )
        return self.runner.ensure(
            cp, step.slot_key, "artifact repository", f"{cp.project_name}ArtifactRepository",
            kind=ResourceKind.ARTIFACT_REPOSITORY,
            create=lambda name: self.factory.create_artifact_repository(
                cp.compartment.id, name, "Artifacts of the DevOps project", self._tags(project=True)
            ),
            manifest=self._project_manifest_entries(),
        ).outcome

    def _cluster_environment(self, step: StepDescriptor) -> StepOutcome:
        cp = self.checkpoint
        project_id = self._require(cp, keys.PROJECT, "project")
        cluster_id = cp.cluster.id

        def same_cluster(info: ResourceInfo) -> bool:
            return info.attributes.get("clusterId") in (None, cluster_id)

        if self.incremental and not cp.slot(step.slot_key).is_created:
            for info in self._list(ResourceKind.DEPLOY_ENVIRONMENT, parent_id=project_id):
                if info.attributes.get("clusterId") == cluster_id:
                    cp.set_slot(step.slot_key, Slot.created(info.id))
                    self._persist()
                    logger.info("Using existing cluster environment %s", info.display_name)
                    return StepOutcome.REUSED

        return self.runner.ensure(
            cp, step.slot_key, "cluster environment", f"{cp.cluster.name or 'OKE'} Environment",
            kind=ResourceKind.DEPLOY_ENVIRONMENT,
            accept=same_cluster,
            create=lambda name: self.factory.create_cluster_environment(
                project_id, name, cluster_id, self._tags()
            ),
            manifest=self._project_manifest_entries(),
        ).outcome

    def _knowledge_base(self, step: StepDescriptor) -> StepOutcome:
        cp = self.checkpoint
        if self.incremental:
            return self._resolve_by_project_tag(
                step.slot_key, ResourceKind.KNOWLEDGE_BASE, "knowledge base", required=False
            )

        kb_id = cp.created_id(keys.KNOWLEDGE_BASE)
        if kb_id:
            if self._lookup(ResourceKind.KNOWLEDGE_BASE, kb_id) is not None:
                logger.info("Using already created knowledge base %s", kb_id)
                return StepOutcome.REUSED
            logger.info("Knowledge base %s no longer exists, it will be recreated", kb_id)
            cp.set_slot(keys.KNOWLEDGE_BASE, Slot.not_attempted())
            cp.set_slot(keys.KNOWLEDGE_BASE_WORK_REQUEST, Slot.not_attempted())

        result = self.runner.ensure(
            cp, keys.KNOWLEDGE_BASE_WORK_REQUEST, "knowledge base", f"{cp.project_name}Audits",
            verify=lambda handle: self._work_request_alive(WorkRequestService.ADM, handle),
            create=lambda name: self.factory.create_knowledge_base(
                cp.compartment.id, name, self._tags(project=True)
            ),
            id_of=lambda created: created.work_request,
        )
        cp.set_slot(keys.KNOWLEDGE_BASE, Slot.in_progress())
        self._persist()
        if result.name:
            self._pending_names[_KNOWLEDGE_BASE_TASK] = result.name
        self._poll_in_background(_KNOWLEDGE_BASE_TASK, WorkRequestService.ADM, result.id)
        return result.outcome

    def _project_manifest(self, step: StepDescriptor) -> StepOutcome:
        self._join_knowledge_base()
        self._join_project_log()
        for name in self.background.names():
            self.background.join(name)

        cp = self.checkpoint
        tags = {TAG_DEPLOY_ID: cp.tag, TAG_PROJECT_RESOURCES_LIST: "true"}
        return self._save_manifest(
            cp, step.slot_key, "GeneratedResources-Project",
            f"List of resources generated for DevOps project {cp.project_name}", tags,
        )

    # ------------------------------------------------------------------
    # Folder-level steps

    def _code_repository(self, step: StepDescriptor) -> StepOutcome:
        cp = self.checkpoint
        project_id = self._require(cp, keys.PROJECT, "project")
        folder = cp.folder(step.folder)
        tags = self._tags()
        tags[TAG_DEPLOY_INCOMPLETE] = "true"

        result = self.runner.ensure(
            folder, step.slot_key, "source code repository", step.folder,
            kind=ResourceKind.CODE_REPOSITORY,
            create=lambda name: self.factory.create_code_repository(
                project_id, name, self.config.default_branch,
                f"Source code of {self.targets[step.folder].path.name}", tags,
            ),
            manifest=ResourceManifest(folder.generated),
        )
        if result.info is not None:
            self._repositories[step.folder] = result.info
        elif result.created is not None:
            created = result.created
            self._repositories[step.folder] = ResourceInfo(
                id=result.id,
                display_name=created.display_name or step.folder,
                freeform_tags=tags,
                attributes=created.attributes,
            )
            if created.work_request:
                self._poll_in_background(
                    self._repository_task(step.folder), WorkRequestService.DEVOPS, created.work_request
                )
        return result.outcome

    def _build_spec(self, step: StepDescriptor) -> StepOutcome:
        params = step.params
        build = params["build"]
        self.expander.expand(
            params["template"],
            {
                "build_command": build.command,
                "artifact_location": build.artifact_location,
                "output_name": params["output_name"],
                "output_path": params["output_path"],
            },
            folder=self.targets[step.folder].path,
        )
        return StepOutcome.CREATED

    def _artifact(self, step: StepDescriptor) -> StepOutcome:
        cp = self.checkpoint
        project_id = self._require(cp, keys.PROJECT, "project")
        repository_id = self._require(cp, keys.ARTIFACT_REPOSITORY, "artifact repository")
        params = step.params
        return self.runner.ensure(
            cp.folder(step.folder), step.slot_key, "artifact", params["artifact_name"],
            kind=ResourceKind.DEPLOY_ARTIFACT,
            create=lambda name: self.factory.create_generic_artifact(
                project_id, repository_id, name, params["output_path"],
                f"{params['pipeline_name']} output", self._tags(step),
            ),
            manifest=self._folder_manifest_entries(step),
        ).outcome

    def _build_pipeline(self, step: StepDescriptor) -> StepOutcome:
        project_id = self._require(self.checkpoint, keys.PROJECT, "project")
        parameters = [
            PipelineParameter("GRAALVM_VERSION", self.config.graalvm_version, "GraalVM version"),
            PipelineParameter("JAVA_VERSION", self.config.java_version, "Java version"),
        ]
        return self.runner.ensure(
            self._state(step), step.slot_key, "build pipeline",
            pipeline_name(step.folder, step.params["pipeline_name"]),
            kind=ResourceKind.BUILD_PIPELINE,
            create=lambda name: self.factory.create_build_pipeline(
                project_id, name, step.params["pipeline_name"], parameters, self._tags(step, pipeline=True)
            ),
            manifest=self._folder_manifest_entries(step),
        ).outcome

    def _build_stage(self, step: StepDescriptor) -> StepOutcome:
        state = self._state(step)
        pipeline_id = self._require(state, chain_key(step.chain, StepKind.BUILD_PIPELINE), "build pipeline")
        repository = self._repository_info(step.folder)
        return self.runner.ensure(
            state, step.slot_key, "build stage", "Build",
            kind=ResourceKind.BUILD_STAGE,
            accept=_parent_is("buildPipelineId", pipeline_id),
            create=lambda name: self.factory.create_build_stage(
                pipeline_id, repository, step.params["spec_path"], self.config.default_branch,
                self.config.build_image, self._tags(step),
            ),
            manifest=self._folder_manifest_entries(step),
        ).outcome

    def _artifacts_stage(self, step: StepDescriptor) -> StepOutcome:
        state = self._state(step)
        pipeline_id = self._require(state, chain_key(step.chain, StepKind.BUILD_PIPELINE), "build pipeline")
        stage_id = self._require(state, chain_key(step.chain, StepKind.BUILD_STAGE), "build stage")
        artifact_id = self._require(state, chain_key(step.chain, StepKind.ARTIFACT), "artifact")
        return self.runner.ensure(
            state, step.slot_key, "artifacts stage", "Artifacts",
            kind=ResourceKind.BUILD_STAGE,
            accept=_parent_is("buildPipelineId", pipeline_id),
            create=lambda name: self.factory.create_artifacts_stage(
                pipeline_id, stage_id, artifact_id, step.params["output_name"], self._tags(step)
            ),
            manifest=self._folder_manifest_entries(step),
        ).outcome

    def _setup_command_artifact(self, step: StepDescriptor) -> StepOutcome:
        cp = self.checkpoint
        project_id = self._require(cp, keys.PROJECT, "project")
        folder = cp.folder(step.folder)
        if not folder.secret_name:
            folder.secret_name = secret_name(step.folder)
            self._persist()
        content = self.expander.render("oke_docker_secret_setup.yaml", {
            "secret_name": folder.secret_name,
            "cluster_id": cp.cluster.id,
            "region": self.region,
        })
        return self.runner.ensure(
            folder, step.slot_key, "command artifact",
            f"{step.folder}_oke_deploy_docker_secret_setup_command",
            kind=ResourceKind.DEPLOY_ARTIFACT,
            create=lambda name: self.factory.create_inline_artifact(
                project_id, name, content, "COMMAND_SPEC",
                "Creates the image pull secret in the cluster", self._tags(step),
            ),
            manifest=self._folder_manifest_entries(step),
        ).outcome

    def _container_repository(self, step: StepDescriptor) -> StepOutcome:
        cp = self.checkpoint
        return self.runner.ensure(
            self._state(step), step.slot_key, "container repository", self._container_repository_name(step),
            kind=ResourceKind.CONTAINER_REPOSITORY,
            create=lambda name: self.factory.create_container_repository(
                cp.compartment.id, name, self._tags(step)
            ),
            manifest=self._folder_manifest_entries(step),
        ).outcome

    def _container_spec(self, step: StepDescriptor) -> StepOutcome:
        params = step.params
        build = params["build"]
        folder = self.targets[step.folder].path
        self.expander.expand(
            params["template"],
            {
                "build_command": build.command if build else "",
                "artifact_location": build.artifact_location if build else "",
                "dockerfile": params["dockerfile"],
                "image_name": self._image_name(step),
                "output_name": params["output_name"],
            },
            folder=folder,
            target=params["target"],
        )
        if params["dockerfile_template"]:
            self.expander.expand(
                params["dockerfile_template"],
                {
                    "artifact_location": build.artifact_location,
                    "java_version": self.config.java_version,
                },
                folder=folder,
                target=params["dockerfile_target"],
            )
        return StepOutcome.CREATED

    def _container_artifact(self, step: StepDescriptor) -> StepOutcome:
        project_id = self._require(self.checkpoint, keys.PROJECT, "project")
        image_uri = f"{self._image_name(step)}:${{DOCKER_TAG}}"
        return self.runner.ensure(
            self._state(step), step.slot_key, "container image artifact", step.params["artifact_name"],
            kind=ResourceKind.DEPLOY_ARTIFACT,
            create=lambda name: self.factory.create_image_artifact(
                project_id, name, image_uri, f"{step.params['pipeline_name']} output", self._tags(step)
            ),
            manifest=self._folder_manifest_entries(step),
        ).outcome

    def _configmap_artifact(self, step: StepDescriptor) -> StepOutcome:
        project_id = self._require(self.checkpoint, keys.PROJECT, "project")
        content = self.expander.render("oke_configmap.yaml", {"app_name": self._app_name(step)})
        return self.runner.ensure(
            self._state(step), step.slot_key, "ConfigMap artifact", step.params["configmap_name"],
            kind=ResourceKind.DEPLOY_ARTIFACT,
            create=lambda name: self.factory.create_inline_artifact(
                project_id, name, content, "KUBERNETES_MANIFEST", "Application ConfigMap", self._tags(step)
            ),
            manifest=self._folder_manifest_entries(step),
        ).outcome

    def _deploy_config_artifact(self, step: StepDescriptor) -> StepOutcome:
        cp = self.checkpoint
        project_id = self._require(cp, keys.PROJECT, "project")
        folder = cp.folder(step.folder)
        content = self.expander.render("oke_deploy_config.yaml", {
            "app_name": self._app_name(step),
            "image_name": self._image_name(step),
            "secret_name": folder.secret_name or secret_name(step.folder),
        })
        return self.runner.ensure(
            self._state(step), step.slot_key, "deployment configuration artifact",
            step.params["deploy_config_name"],
            kind=ResourceKind.DEPLOY_ARTIFACT,
            create=lambda name: self.factory.create_inline_artifact(
                project_id, name, content, "KUBERNETES_MANIFEST", "Deployment configuration", self._tags(step)
            ),
            manifest=self._folder_manifest_entries(step),
        ).outcome

    def _deploy_pipeline(self, step: StepDescriptor) -> StepOutcome:
        project_id = self._require(self.checkpoint, keys.PROJECT, "project")
        parameters = [PipelineParameter("DOCKER_TAG", "latest", "Tag of the image to deploy")]
        return self.runner.ensure(
            self._state(step), step.slot_key, "deployment pipeline",
            pipeline_name(step.folder, step.params["deploy_pipeline_name"]),
            kind=ResourceKind.DEPLOY_PIPELINE,
            create=lambda name: self.factory.create_deploy_pipeline(
                project_id, name, step.params["deploy_pipeline_name"], parameters,
                self._tags(step, pipeline=True),
            ),
            manifest=self._folder_manifest_entries(step),
        ).outcome

    def _setup_secret_stage(self, step: StepDescriptor) -> StepOutcome:
        state = self._state(step)
        pipeline_id = self._require(state, chain_key(step.chain, StepKind.DEPLOY_PIPELINE), "deployment pipeline")
        command_id = self._require(
            self.checkpoint.folder(step.folder),
            self._folder_key(step, StepKind.SETUP_COMMAND_ARTIFACT),
            "command artifact",
        )
        subnet_id = self.checkpoint.subnet.id if self.checkpoint.subnet else None
        return self.runner.ensure(
            state, step.slot_key, "secret setup stage", "Setup OCIR Secret",
            kind=ResourceKind.DEPLOY_STAGE,
            accept=_parent_is("deployPipelineId", pipeline_id),
            create=lambda name: self.factory.create_shell_stage(
                pipeline_id, pipeline_id, command_id, subnet_id, name, self._tags(step)
            ),
            manifest=self._folder_manifest_entries(step),
        ).outcome

    def _deploy_stage(self, step: StepDescriptor) -> StepOutcome:
        return self._cluster_stage(step, StepKind.DEPLOY_CONFIG_ARTIFACT, "deploy to cluster stage", "Deploy to OKE")

    def _configmap_stage(self, step: StepDescriptor) -> StepOutcome:
        return self._cluster_stage(step, StepKind.CONFIGMAP_ARTIFACT, "apply ConfigMap stage", "Apply ConfigMap")

    def _cluster_stage(self, step: StepDescriptor, manifest_kind: StepKind, label: str, name: str) -> StepOutcome:
        state = self._state(step)
        pipeline_id = self._require(state, chain_key(step.chain, StepKind.DEPLOY_PIPELINE), "deployment pipeline")
        predecessor_id = self._require(state, chain_key(step.chain, StepKind.SETUP_SECRET_STAGE), "secret setup stage")
        environment_id = self._require(self.checkpoint, keys.CLUSTER_ENVIRONMENT, "cluster environment")
        manifest_id = self._require(state, chain_key(step.chain, manifest_kind), "Kubernetes manifest artifact")
        return self.runner.ensure(
            state, step.slot_key, label, name,
            kind=ResourceKind.DEPLOY_STAGE,
            accept=_parent_is("deployPipelineId", pipeline_id),
            create=lambda stage_name: self.factory.create_cluster_deploy_stage(
                pipeline_id, predecessor_id, environment_id, [manifest_id], stage_name, self._tags(step)
            ),
            manifest=self._folder_manifest_entries(step),
        ).outcome

    def _populate_repository(self, step: StepDescriptor) -> StepOutcome:
        cp = self.checkpoint
        repository_id = self._require(cp.folder(step.folder), keys.CODE_REPOSITORY, "source code repository")
        task = self._repository_task(step.folder)
        if self.background.pending(task):
            self.background.join(task)

        info = self.directory.get(ResourceKind.CODE_REPOSITORY, repository_id)
        if info is None:
            raise PreconditionError(f"Source code repository {step.folder} does not exist anymore.")
        self._repositories[step.folder] = info
        if TAG_DEPLOY_INCOMPLETE not in info.freeform_tags:
            logger.info("Source code repository %s is already populated", step.folder)
            return StepOutcome.REUSED

        remote_url = info.attributes.get("sshUrl") or info.attributes.get("httpUrl")
        if not remote_url:
            raise PreconditionError(f"Source code repository {step.folder} has no URL.")
        self.populator.populate(remote_url, self.targets[step.folder].path, self._user(), self.config.default_branch)

        tags = {key: value for key, value in info.freeform_tags.items() if key != TAG_DEPLOY_INCOMPLETE}
        self.factory.update_code_repository_tags(repository_id, tags)
        return StepOutcome.CREATED

    def _save_config(self, step: StepDescriptor) -> StepOutcome:
        self._join_knowledge_base()
        cp = self.checkpoint
        folder = cp.folder(step.folder)

        build_pipelines: List[dict] = []
        deploy_pipelines: List[dict] = []
        for sub, state in [(None, folder)] + sorted(folder.subs.items()):
            for key, slot in sorted(state.slots.items()):
                if not slot.is_created:
                    continue
                entry = {"ocid": slot.value, "key": key}
                if sub:
                    entry["subproject"] = sub
                if key.endswith("_deploy_pipeline"):
                    deploy_pipelines.append(entry)
                elif key.endswith("_pipeline"):
                    build_pipelines.append(entry)

        services = {
            "version": CHECKPOINT_VERSION,
            "profile": cp.profile,
            "region": cp.region,
            "compartment": cp.compartment.id,
            "project": {"ocid": cp.project_id, "name": cp.project_name},
            "repository": {"ocid": folder.created_id(keys.CODE_REPOSITORY), "name": step.folder},
            "build_pipelines": build_pipelines,
            "deploy_pipelines": deploy_pipelines,
        }
        knowledge_base = cp.created_id(keys.KNOWLEDGE_BASE)
        if knowledge_base:
            services["knowledge_base"] = knowledge_base

        path = self.targets[step.folder].path / DEVOPS_RESOURCES_DIR / SERVICES_CONFIG_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            json.dump(services, handle, indent=2, ensure_ascii=False)
        logger.info("Saved services configuration to %s", path)
        return StepOutcome.CREATED

    def _folder_manifest(self, step: StepDescriptor) -> StepOutcome:
        folder = self.checkpoint.folder(step.folder)
        tags = {TAG_DEPLOY_ID: self.checkpoint.tag, TAG_CODE_REPOSITORY_RESOURCES_LIST: "true"}
        repository_id = folder.created_id(keys.CODE_REPOSITORY)
        if repository_id:
            tags[TAG_CODE_REPOSITORY] = repository_id
        return self._save_manifest(
            folder, step.slot_key, f"GeneratedResources-CodeRepository-{step.folder}",
            f"List of resources generated for code repository {step.folder}", tags,
        )

    # ------------------------------------------------------------------
    # Helpers

    def _save_manifest(
        self,
        state: Union[Checkpoint, FolderCheckpoint],
        key: str,
        name: str,
        description: str,
        tags: Dict[str, str],
    ) -> StepOutcome:
        """
        Save the generated-resources list as an inline artifact.

        A list artifact is immutable: when entries were added since it was
        saved, a new one is created. Cleanup finds every list by its tags.
        """
        project_id = self.checkpoint.project_id
        manifest = ResourceManifest(state.generated)
        count = len(manifest)
        if state.slot(key).is_created and state.listed_resources != count:
            logger.info("List of generated resources %s is outdated, saving a new one", name)
            state.set_slot(key, Slot.not_attempted())
        try:
            result = self.runner.ensure(
                state, key, "resources list", name,
                kind=ResourceKind.DEPLOY_ARTIFACT,
                create=lambda artifact_name: self.factory.create_inline_artifact(
                    project_id, artifact_name, manifest.to_json(), "GENERIC_FILE", description, tags,
                ),
            )
        except ProvisioningError as exc:
            logger.warning("Failed to save list of generated resources %s: %s", name, exc)
            return StepOutcome.SKIPPED
        if result.outcome is StepOutcome.CREATED:
            state.listed_resources = count
            self._persist()
        return result.outcome

    def _resolve_by_project_tag(
        self, key: str, kind: ResourceKind, label: str, required: bool
    ) -> StepOutcome:
        cp = self.checkpoint
        current = cp.created_id(key)
        if current and self._lookup(kind, current) is not None:
            return StepOutcome.REUSED
        matches = [
            info for info in self._list(kind, compartment_id=cp.compartment.id)
            if info.freeform_tags.get(TAG_PROJECT) == cp.project_id
        ]
        if not matches:
            if required:
                raise PreconditionError(f"No {label} found for project {cp.project_name}.")
            logger.warning("No %s found for project %s", label, cp.project_name)
            cp.set_slot(key, Slot.not_attempted())
            self._persist()
            return StepOutcome.SKIPPED
        cp.set_slot(key, Slot.created(matches[0].id))
        self._persist()
        logger.info("Using %s %s", label, matches[0].display_name or matches[0].id)
        return StepOutcome.REUSED

    def _poll_in_background(self, task: str, service: WorkRequestService, handle: str) -> None:
        def poll() -> str:
            resource_id = self.directory.wait_for_work_request(
                service,
                handle,
                timeout=self.cloud_config.work_request_timeout,
                interval=self.cloud_config.work_request_poll_interval,
            )
            if not resource_id:
                raise WorkRequestError(f"Work request {handle} finished without a resource id")
            return resource_id

        self.background.submit(task, poll)

    def _join_project_log(self) -> None:
        def display_name(log_id: str) -> Optional[str]:
            log_group_id = self.checkpoint.created_id(keys.LOG_GROUP)
            for info in self._list(ResourceKind.LOG, parent_id=log_group_id):
                if info.id == log_id:
                    return info.display_name
            return None

        self._join_work_request(
            _PROJECT_LOG_TASK, keys.PROJECT_LOG, keys.PROJECT_LOG_WORK_REQUEST, "project log", display_name
        )

    def _join_knowledge_base(self) -> None:
        self._join_work_request(
            _KNOWLEDGE_BASE_TASK, keys.KNOWLEDGE_BASE, keys.KNOWLEDGE_BASE_WORK_REQUEST, "knowledge base",
            lambda kb_id: getattr(self._lookup(ResourceKind.KNOWLEDGE_BASE, kb_id), "display_name", None),
        )

    def _join_work_request(
        self,
        task: str,
        key: str,
        request_key: str,
        label: str,
        display_name: Callable[[str], Optional[str]],
    ) -> None:
        if not self.background.pending(task):
            return
        cp = self.checkpoint
        try:
            resource_id = self.background.join(task)
        except WorkRequestError:
            cp.set_slot(request_key, Slot.not_attempted())
            self._persist()
            raise
        cp.set_slot(key, Slot.created(resource_id))
        name = self._pending_names.pop(task, None)
        if name is None:
            # 复用了上次运行的 work request，名称只能从资源本身读取
            try:
                name = display_name(resource_id) or label
            except CloudError as exc:
                logger.warning("Could not read the name of %s %s: %s", label, resource_id, exc)
                name = label
        self._project_manifest_entries().add(resource_id, name)
        self._persist()
        logger.info("Created %s %s (%s)", label, name, resource_id)

    def _work_request_alive(self, service: WorkRequestService, handle: str) -> bool:
        request = self.directory.get_work_request(service, handle)
        return request is not None and not request.failed

    def _user(self) -> UserIdentity:
        cp = self.checkpoint
        if cp.user is None:
            data = self.directory.get_current_user()
            cp.user = UserIdentity(name=data.get("name", ""), email=data.get("email", ""))
            self._persist()
        return cp.user

    def _tags(self, step: Optional[StepDescriptor] = None, project: bool = False, pipeline: bool = False) -> Dict[str, str]:
        cp = self.checkpoint
        tags = {TAG_DEPLOY_ID: cp.tag}
        if project and cp.project_id:
            tags[TAG_PROJECT] = cp.project_id
        if step is not None and step.folder:
            repository_id = cp.folder(step.folder).created_id(keys.CODE_REPOSITORY)
            if repository_id:
                tags[TAG_CODE_REPOSITORY] = repository_id
            if pipeline:
                tags[TAG_CODE_REPOSITORY_PREFIX] = f"{step.folder}: "
        return tags

    def _state(self, step: StepDescriptor) -> FolderCheckpoint:
        folder = self.checkpoint.folder(step.folder)
        return folder.sub(step.sub) if step.sub else folder

    @staticmethod
    def _folder_key(step: StepDescriptor, kind: StepKind) -> str:
        return StepDescriptor(kind, "", folder=step.folder).slot_key

    def _require(self, state: SlotOwner, key: str, label: str) -> str:
        value = state.created_id(key)
        if not value:
            raise PreconditionError(f"Cannot continue: {label} has not been created.")
        return value

    def _lookup(self, kind: ResourceKind, resource_id: str) -> Optional[ResourceInfo]:
        try:
            return self.directory.get(kind, resource_id)
        except CloudError as exc:
            logger.warning("Could not look up %s %s: %s", kind.value, resource_id, exc)
            return None

    def _list(self, kind: ResourceKind, compartment_id: Optional[str] = None, parent_id: Optional[str] = None) -> List[ResourceInfo]:
        return self.directory.list(kind, compartment_id=compartment_id, parent_id=parent_id)

    def _repository_info(self, repository: str) -> ResourceInfo:
        if repository not in self._repositories:
            repository_id = self._require(self.checkpoint.folder(repository), keys.CODE_REPOSITORY, "source code repository")
            info = self.directory.get(ResourceKind.CODE_REPOSITORY, repository_id)
            if info is None:
                raise PreconditionError(f"Source code repository {repository} does not exist anymore.")
            self._repositories[repository] = info
        return self._repositories[repository]

    @staticmethod
    def _repository_task(repository: str) -> str:
        return f"repository:{repository}"

    def _container_repository_name(self, step: StepDescriptor) -> str:
        return container_repository_name(
            self.checkpoint.project_name,
            step.folder,
            sub=step.sub,
            jvm=step.params["jvm"],
            qualify=self.incremental or len(self.targets) > 1,
        )

    def _image_name(self, step: StepDescriptor) -> str:
        return f"{self.region}.ocir.io/{self.checkpoint.namespace}/{self._container_repository_name(step)}"

    @staticmethod
    def _app_name(step: StepDescriptor) -> str:
        name = app_name(step.folder)
        if step.sub:
            name = f"{name}-{app_name(step.sub)}"
        if step.chain is Chain.JVM_IMAGE:
            name = f"{name}-jvm"
        return name

    def _project_manifest_entries(self) -> ResourceManifest:
        return ResourceManifest(self.checkpoint.generated)

    def _folder_manifest_entries(self, step: StepDescriptor) -> ResourceManifest:
        return ResourceManifest(self.checkpoint.folder(step.folder).generated)

    def _persist(self) -> None:
        self.store.save(self.checkpoint)

    # ------------------------------------------------------------------
    # Run log

    def _init_log(self, folders: List[Path]) -> None:
        """初始化日志文件"""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_dir = Path(self.log_dir) if self.log_dir else get_logs_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        self.current_log_file = log_dir / f"deploy_{timestamp}.json"
        self.deployment_log = {
            "version": "1.0",
            "folders": [str(folder) for folder in folders],
            "checkpoint": str(self.store.path),
            "incremental": self.incremental,
            "start_time": datetime.now().isoformat(),
            "end_time": None,
            "status": "running",
            "plan": None,
            "steps": [],
        }
        logger.info("Logging to: %s", self.current_log_file)

    def _log_step(self, step: StepDescriptor, outcome: StepOutcome, error: Optional[str]) -> None:
        entry = step.to_dict()
        entry["outcome"] = outcome.value
        entry["timestamp"] = datetime.now().isoformat()
        if error:
            entry["error"] = error
        self.deployment_log.setdefault("steps", []).append(entry)
        self._save_log()

    def _save_log(self) -> None:
        if not self.current_log_file:
            return
        with self.current_log_file.open("w", encoding="utf-8") as handle:
            json.dump(self.deployment_log, handle, indent=2, ensure_ascii=False)

    def _finalize_log(self, status: str, error: Optional[str] = None) -> None:
        self.deployment_log["status"] = status
        self.deployment_log["end_time"] = datetime.now().isoformat()
        if error:
            self.deployment_log["error"] = error
        self._save_log()
        logger.info("Log saved: %s", self.current_log_file)


def _restore_builds(classification: FolderClassification, state: FolderCheckpoint) -> None:
    """Fill build paths the classifier could not resolve from an earlier run."""
    if classification.build is None and state.build_command and state.artifact_location:
        classification.build = BuildPath(state.build_command, state.artifact_location)
    if (
        classification.native_build is None
        and state.native_build_command
        and state.native_artifact_location
    ):
        classification.native_build = BuildPath(state.native_build_command, state.native_artifact_location)


def _parent_is(attribute: str, parent_id: str) -> Callable[[ResourceInfo], bool]:
    """A stage is only reusable while it belongs to the current pipeline."""
    def check(info: ResourceInfo) -> bool:
        return info.attributes.get(attribute) in (None, parent_id)
    return check
