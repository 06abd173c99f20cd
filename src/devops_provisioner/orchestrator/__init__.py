"""Orchestrator module for resumable provisioning runs.

This module provides:
- PipelineAssembler: Turns folder classifications into an ordered step plan
- StepRunner: Applies the check-reuse-or-create protocol to each step
- ProvisioningOrchestrator: Runs pre-flight checks, the plan and background joins
- ProgressReporter: Weighted progress events
"""

from .models import (
    Chain,
    DeploymentPlan,
    FeatureFlags,
    FolderTarget,
    ProgressEvent,
    RunResult,
    StepDescriptor,
    StepKind,
    StepOutcome,
    chain_key,
)
from .assembler import PipelineAssembler, container_images
from .background import BackgroundTasks
from .manifest import ResourceManifest
from .progress import ProgressReporter
from .step_runner import StepRunner
from .orchestrator import ProvisioningOrchestrator

__all__ = [
    "Chain",
    "DeploymentPlan",
    "FeatureFlags",
    "FolderTarget",
    "ProgressEvent",
    "RunResult",
    "StepDescriptor",
    "StepKind",
    "StepOutcome",
    "chain_key",
    "PipelineAssembler",
    "container_images",
    "BackgroundTasks",
    "ResourceManifest",
    "ProgressReporter",
    "StepRunner",
    "ProvisioningOrchestrator",
]
