"""Pipeline assembler: turns folder classifications into an ordered step plan.

The plan is pure data. Each builder below returns the steps of one part of
the graph, and every step carries its own weight, so the progress total is
always the sum of what will actually be reported.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from ..analyzer.classifier import BuildPath, FolderClassification, ProjectType
from ..paths import DEVOPS_RESOURCES_DIR
from .models import (
    Chain,
    DeploymentPlan,
    FeatureFlags,
    FolderTarget,
    StepDescriptor,
    StepKind,
)

# 增量模式下被替代的项目级步骤数
PROJECT_SETUP_STEPS = (
    StepKind.NOTIFICATION_TOPIC,
    StepKind.PROJECT,
    StepKind.LOG_GROUP,
    StepKind.PROJECT_LOG,
    StepKind.ACCESS_POLICIES,
)

_PROJECT_DESCRIPTIONS = {
    StepKind.NOTIFICATION_TOPIC: "Creating notification topic",
    StepKind.PROJECT: "Creating DevOps project",
    StepKind.LOG_GROUP: "Creating log group",
    StepKind.PROJECT_LOG: "Creating project log",
    StepKind.ACCESS_POLICIES: "Setting up access policies",
}

_CHAIN_NAMES = {
    Chain.FAT_JAR: ("Build Fat JAR", "fat JAR"),
    Chain.NATIVE: ("Build Native Executable", "native executable"),
    Chain.NATIVE_IMAGE: ("Build Native Docker Image", "native container image"),
    Chain.JVM_IMAGE: ("Build Docker Image", "container image"),
}

_OUTPUT_NAMES = {
    Chain.FAT_JAR: "fatjar",
    Chain.NATIVE: "executable",
    Chain.NATIVE_IMAGE: "docker_image",
    Chain.JVM_IMAGE: "docker_image",
}


@dataclass
class ContainerImage:
    """A container image to build for a folder (or one of its sub-modules)."""

    chain: Chain
    sub: Optional[str] = None
    build: Optional[BuildPath] = None
    # Helidon 项目自带的 Dockerfile
    own_dockerfile: Optional[str] = None


def container_images(classification: FolderClassification) -> List[ContainerImage]:
    """Native images first, then JVM images."""
    images: List[ContainerImage] = []
    project_type = classification.project_type
    if project_type is ProjectType.GDK:
        for sub in classification.cloud_subprojects:
            if sub in classification.sub_native_builds:
                images.append(ContainerImage(
                    Chain.NATIVE_IMAGE, sub, classification.sub_native_builds[sub]
                ))
        if "oci" in classification.sub_builds:
            images.append(ContainerImage(Chain.JVM_IMAGE, "oci", classification.sub_builds["oci"]))
    elif project_type is ProjectType.HELIDON:
        dockerfiles = classification.dockerfiles
        if "Dockerfile.native" in dockerfiles:
            images.append(ContainerImage(Chain.NATIVE_IMAGE, own_dockerfile="Dockerfile.native"))
        for name in ("Dockerfile.jlink", "Dockerfile"):
            if name in dockerfiles:
                images.append(ContainerImage(Chain.JVM_IMAGE, own_dockerfile=name))
                break
    else:
        if classification.native_build:
            images.append(ContainerImage(Chain.NATIVE_IMAGE, build=classification.native_build))
        if classification.build:
            images.append(ContainerImage(Chain.JVM_IMAGE, build=classification.build))
    return images


class PipelineAssembler:
    """Composes the ordered step list for one run."""

    PROJECT_SETUP_WEIGHT = len(PROJECT_SETUP_STEPS)

    def __init__(self, flags: FeatureFlags) -> None:
        self.flags = flags

    def assemble(self, targets: Sequence[FolderTarget], incremental: bool = False) -> DeploymentPlan:
        steps = self.project_steps(incremental)
        for target in targets:
            steps.extend(self.folder_steps(target))
        steps.append(StepDescriptor(StepKind.PROJECT_MANIFEST, "Saving list of generated resources"))
        return DeploymentPlan(steps=steps, incremental=incremental)

    def project_steps(self, incremental: bool) -> List[StepDescriptor]:
        if incremental:
            steps = [StepDescriptor(
                StepKind.PROJECT_SETUP,
                "Using existing DevOps project",
                weight=self.PROJECT_SETUP_WEIGHT,
            )]
            artifact_description = "Resolving artifact repository"
            knowledge_description = "Resolving knowledge base"
        else:
            steps = [StepDescriptor(kind, _PROJECT_DESCRIPTIONS[kind]) for kind in PROJECT_SETUP_STEPS]
            artifact_description = "Creating artifact repository"
            knowledge_description = "Creating knowledge base"

        steps.append(StepDescriptor(StepKind.ARTIFACT_REPOSITORY, artifact_description))
        if self.flags.cluster_deploy:
            steps.append(StepDescriptor(StepKind.CLUSTER_ENVIRONMENT, "Creating cluster environment"))
        steps.append(StepDescriptor(StepKind.KNOWLEDGE_BASE, knowledge_description))
        return steps

    def folder_steps(self, target: FolderTarget) -> List[StepDescriptor]:
        repo = target.repository_name
        classification = target.classification
        steps = [StepDescriptor(StepKind.CODE_REPOSITORY, f"Creating source code repository {repo}", folder=repo)]

        if classification.build:
            steps.extend(self.build_chain(repo, Chain.FAT_JAR, classification.build))
        if classification.native_build:
            steps.extend(self.build_chain(repo, Chain.NATIVE, classification.native_build))

        images = container_images(classification)
        if any(self._deploys(image.chain) for image in images):
            steps.append(StepDescriptor(
                StepKind.SETUP_COMMAND_ARTIFACT,
                "Creating command artifact to set up the image pull secret",
                folder=repo,
            ))
        for image in images:
            steps.extend(self.container_chain(repo, image))

        steps.extend([
            StepDescriptor(StepKind.POPULATE_REPOSITORY, f"Populating source code repository {repo}", folder=repo),
            StepDescriptor(StepKind.SAVE_CONFIG, "Saving services configuration", folder=repo),
            StepDescriptor(StepKind.FOLDER_MANIFEST, "Saving list of generated resources", folder=repo),
        ])
        return steps

    def build_chain(self, repo: str, chain: Chain, build: BuildPath) -> List[StepDescriptor]:
        pipeline_name, what = _CHAIN_NAMES[chain]
        bypass = self.flags.bypass_artifacts
        template = f"{chain.value}_spec{'_no_output_artifacts' if bypass else ''}.yaml"
        suffix = "fatjar" if chain is Chain.FAT_JAR else "executable"
        params: Dict[str, Any] = {
            "template": template,
            "spec_path": f"{DEVOPS_RESOURCES_DIR}/{template}",
            "build": build,
            "output_name": _OUTPUT_NAMES[chain],
            "output_path": f"{repo}-dev.jar" if chain is Chain.FAT_JAR else f"{repo}-dev",
            "artifact_name": f"{repo}_dev_{suffix}",
            "pipeline_name": pipeline_name,
        }

        def step(kind: StepKind, description: str) -> StepDescriptor:
            return StepDescriptor(kind, description, folder=repo, chain=chain, params=params)

        steps = [step(StepKind.BUILD_SPEC, f"Creating build spec for {what}")]
        if not bypass:
            steps.append(step(StepKind.ARTIFACT, f"Creating artifact for {what}"))
        steps.append(step(StepKind.BUILD_PIPELINE, f"Creating build pipeline for {what}"))
        steps.append(step(StepKind.BUILD_STAGE, f"Creating build stage for {what}"))
        if not bypass:
            steps.append(step(StepKind.ARTIFACTS_STAGE, f"Creating artifacts stage for {what}"))
        return steps

    def container_chain(self, repo: str, image: ContainerImage) -> List[StepDescriptor]:
        chain = image.chain
        pipeline_name, what = _CHAIN_NAMES[chain]
        if image.sub:
            pipeline_name = f"{pipeline_name} ({image.sub})"
            what = f"{what} of {image.sub}"
        location = f"{image.sub}/" if image.sub else ""
        tag = "native" if chain.is_native else "jvm"
        prefix = f"{repo}_{image.sub}" if image.sub else repo

        if image.own_dockerfile:
            template = "docker_build_spec.yaml"
            dockerfile_template = None
            dockerfile = image.own_dockerfile
        else:
            template = f"{chain.value}_spec.yaml"
            dockerfile_template = "Dockerfile.native" if chain.is_native else "Dockerfile.jvm"
            dockerfile = f"{DEVOPS_RESOURCES_DIR}/{location}{dockerfile_template}"

        params: Dict[str, Any] = {
            "template": template,
            "target": f"{location}{template}",
            "spec_path": f"{DEVOPS_RESOURCES_DIR}/{location}{template}",
            "dockerfile_template": dockerfile_template,
            "dockerfile_target": f"{location}{dockerfile_template}" if dockerfile_template else None,
            "dockerfile": dockerfile,
            "build": image.build,
            "jvm": not chain.is_native,
            "output_name": _OUTPUT_NAMES[chain],
            "artifact_name": f"{prefix}_{tag}_docker_image",
            "configmap_name": f"{prefix}_{tag}_oke_configmap",
            "deploy_config_name": f"{prefix}_{tag}_oke_deploy_configuration",
            "pipeline_name": pipeline_name,
            "deploy_pipeline_name": "Deploy Native Docker Image to OKE" if chain.is_native else "Deploy Docker Image to OKE",
        }
        if image.sub:
            params["deploy_pipeline_name"] = f"{params['deploy_pipeline_name']} ({image.sub})"

        def step(kind: StepKind, description: str) -> StepDescriptor:
            return StepDescriptor(kind, description, folder=repo, chain=chain, sub=image.sub, params=params)

        steps = [
            step(StepKind.CONTAINER_REPOSITORY, f"Creating container repository for {what}"),
            step(StepKind.CONTAINER_SPEC, f"Creating build spec for {what}"),
            step(StepKind.CONTAINER_ARTIFACT, f"Creating artifact for {what}"),
            step(StepKind.BUILD_PIPELINE, f"Creating build pipeline for {what}"),
            step(StepKind.BUILD_STAGE, f"Creating build stage for {what}"),
            step(StepKind.ARTIFACTS_STAGE, f"Creating artifacts stage for {what}"),
        ]
        if self._deploys(chain):
            steps.extend([
                step(StepKind.CONFIGMAP_ARTIFACT, f"Creating ConfigMap artifact for {what}"),
                step(StepKind.DEPLOY_CONFIG_ARTIFACT, f"Creating deployment configuration for {what}"),
                step(StepKind.DEPLOY_PIPELINE, f"Creating deployment pipeline for {what}"),
                step(StepKind.SETUP_SECRET_STAGE, f"Creating secret setup stage for {what}"),
                step(StepKind.DEPLOY_STAGE, f"Creating deploy to cluster stage for {what}"),
                step(StepKind.CONFIGMAP_STAGE, f"Creating apply ConfigMap stage for {what}"),
            ])
        return steps

    def _deploys(self, chain: Chain) -> bool:
        if not self.flags.cluster_deploy:
            return False
        return not chain.is_native or self.flags.native_pipelines
