"""Step runner: the check-reuse-or-create protocol.

For every provisionable resource the runner

1. re-verifies a checkpointed id against the Resource Directory and clears
   it when the resource is gone,
2. otherwise marks the slot IN_PROGRESS and persists the checkpoint
   *before* issuing the create call,
3. stores the new id and persists again.

A slot left IN_PROGRESS by a crashed run is never skipped: the next run
goes through creation again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from ..checkpoint.models import Checkpoint, Slot, SlotOwner
from ..checkpoint.store import CheckpointStore
from ..cloud.base import CreatedResource, ResourceDirectory, ResourceInfo, ResourceKind
from ..errors import (
    CloudError,
    DeploymentCancelled,
    NameConflictError,
    PreconditionError,
    ProvisioningError,
    StepFailedError,
)
from ..gitops.manager import GitCommandError
from .manifest import ResourceManifest
from .models import StepDescriptor, StepOutcome
from .progress import ProgressReporter

logger = logging.getLogger(__name__)

StepHandler = Callable[[StepDescriptor], StepOutcome]
StepListener = Callable[[StepDescriptor, StepOutcome, Optional[str]], None]

# 这些异常已带有面向用户的信息，不再包装
_PASSTHROUGH = (StepFailedError, PreconditionError, DeploymentCancelled)


@dataclass
class Ensured:
    """Result of :meth:`StepRunner.ensure`."""

    id: str
    outcome: StepOutcome
    name: Optional[str] = None
    info: Optional[ResourceInfo] = None
    created: Optional[CreatedResource] = None

    @property
    def reused(self) -> bool:
        return self.outcome is StepOutcome.REUSED


class StepRunner:
    """Executes planned steps against one checkpoint."""

    def __init__(
        self,
        directory: ResourceDirectory,
        store: CheckpointStore,
        checkpoint: Checkpoint,
        progress: ProgressReporter,
        listener: Optional[StepListener] = None,
    ) -> None:
        self.directory = directory
        self.store = store
        self.checkpoint = checkpoint
        self.progress = progress
        self.listener = listener
        self.current: Optional[StepDescriptor] = None

    def persist(self) -> None:
        self.store.save(self.checkpoint)

    @property
    def location(self) -> str:
        """``<compartment>/<project>[/<repository>]`` for log messages."""
        parts = []
        if self.checkpoint.compartment is not None:
            parts.append(self.checkpoint.compartment.name or self.checkpoint.compartment.id)
        if self.checkpoint.project_name:
            parts.append(self.checkpoint.project_name)
        if self.current is not None and self.current.folder:
            parts.append(self.current.folder)
        return "/".join(parts)

    def run(self, step: StepDescriptor, handler: StepHandler) -> StepOutcome:
        """Run one step and report its weight once it resolved."""
        self.current = step
        logger.info("%s...", step.description)
        try:
            outcome = handler(step)
        except _PASSTHROUGH as exc:
            self._notify(step, StepOutcome.FAILED, str(exc))
            raise
        except (ProvisioningError, GitCommandError, OSError) as exc:
            logger.error("%s failed: %s", step.description, exc)
            self._notify(step, StepOutcome.FAILED, str(exc))
            raise StepFailedError(f"{step.description} failed", exc) from exc
        finally:
            self.current = None

        self._notify(step, outcome, None)
        self.progress.report(step.weight, step.description)
        return outcome

    def ensure(
        self,
        state: SlotOwner,
        key: str,
        label: str,
        name: str,
        create: Callable[[str], CreatedResource],
        kind: Optional[ResourceKind] = None,
        accept: Optional[Callable[[ResourceInfo], bool]] = None,
        verify: Optional[Callable[[str], bool]] = None,
        rename: Optional[Callable[[str, NameConflictError], str]] = None,
        max_renames: int = 1,
        id_of: Optional[Callable[[CreatedResource], Optional[str]]] = None,
        manifest: Optional[ResourceManifest] = None,
    ) -> Ensured:
        """
        Reuse the resource recorded under `key` or create a new one.

        Args:
            state: checkpoint or folder checkpoint owning the slot
            key: slot key
            label: human-readable resource kind for log messages
            name: display name used for creation
            create: issues the create call for a given name
            kind: Directory kind used to verify a recorded id
            accept: extra check on a found resource (e.g. its parent id)
            verify: replaces the Directory lookup for non-resource slots
            rename: picks a new name after a name conflict
            max_renames: how many times a conflicting name may be replaced
            id_of: extracts the value to store from the creation result
            manifest: receives the created resource

        Raises:
            NameConflictError: the name was still in use after `max_renames`
            ProvisioningError: the create call failed; the slot is left
                IN_PROGRESS in the persisted checkpoint
        """
        current = state.slot(key)
        if current.is_created:
            info = None
            if verify is not None:
                alive = self._safe(lambda: verify(current.value), label, current.value)
            else:
                info = self._lookup(kind, current.value, label)
                alive = info is not None and (accept is None or accept(info))
            if alive:
                logger.info("Using already created %s %s (%s)", label, current.value, self.location)
                return Ensured(
                    id=current.value,
                    outcome=StepOutcome.REUSED,
                    name=info.display_name if info else None,
                    info=info,
                )
            logger.info("%s %s no longer exists, it will be recreated", label.capitalize(), current.value)
            state.set_slot(key, Slot.not_attempted())
        elif current.is_in_progress:
            logger.info("Previous attempt to create %s was not confirmed, retrying", label)

        state.set_slot(key, Slot.in_progress())
        self.persist()

        logger.info("Creating %s %s (%s)", label, name, self.location)
        renames = 0
        while True:
            try:
                created = create(name)
                break
            except NameConflictError as exc:
                if rename is None or renames >= max_renames:
                    raise
                renames += 1
                previous, name = name, rename(name, exc)
                logger.warning("%s name '%s' is already in use, retrying with '%s'", label.capitalize(), previous, name)

        resource_id = id_of(created) if id_of else created.id
        if not resource_id:
            raise CloudError(f"Creating {label} {name} returned no identifier")
        state.set_slot(key, Slot.created(resource_id))
        if manifest is not None:
            manifest.add(resource_id, created.display_name or name)
        self.persist()
        return Ensured(
            id=resource_id,
            outcome=StepOutcome.CREATED,
            name=created.display_name or name,
            created=created,
        )

    def _lookup(self, kind: Optional[ResourceKind], resource_id: str, label: str) -> Optional[ResourceInfo]:
        if kind is None:
            raise ValueError(f"No way to verify {label}: pass kind or verify")
        info = self._safe(lambda: self.directory.get(kind, resource_id), label, resource_id)
        if info is None or not info.is_up:
            return None
        return info

    @staticmethod
    def _safe(call, label: str, resource_id: str):
        # 校验失败按“不存在”处理
        try:
            return call()
        except CloudError as exc:
            logger.warning("Could not verify %s %s: %s", label, resource_id, exc)
            return None

    def _notify(self, step: StepDescriptor, outcome: StepOutcome, error: Optional[str]) -> None:
        if self.listener:
            self.listener(step, outcome, error)
