import tempfile
import unittest
from pathlib import Path

from devops_provisioner.checkpoint import Checkpoint, CheckpointStore, ResourceRef, Slot
from devops_provisioner.cloud import CreatedResource, ResourceKind
from devops_provisioner.errors import CloudError, NameConflictError, PreconditionError, StepFailedError
from devops_provisioner.gitops import GitCommandError
from devops_provisioner.orchestrator import (
    ProgressReporter,
    ResourceManifest,
    StepDescriptor,
    StepKind,
    StepOutcome,
    StepRunner,
)

from fakes import FakeCloud


class StepRunnerTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.cloud = FakeCloud()
        self.store = CheckpointStore(Path(self._tmp.name) / "checkpoint.json")
        self.checkpoint = Checkpoint(project_name="demo")
        self.events = []
        self.outcomes = []
        self.runner = StepRunner(
            self.cloud,
            self.store,
            self.checkpoint,
            ProgressReporter(4, self.events.append),
            listener=lambda step, outcome, error: self.outcomes.append((step.kind, outcome, error)),
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def create_topic(self, name: str) -> CreatedResource:
        info = self.cloud.add(ResourceKind.NOTIFICATION_TOPIC, name)
        return CreatedResource(id=info.id, display_name=name)

    def test_creates_and_persists_id(self) -> None:
        result = self.runner.ensure(
            self.checkpoint, "notification_topic", "topic", "demoTopic",
            create=self.create_topic, kind=ResourceKind.NOTIFICATION_TOPIC,
        )

        self.assertEqual(result.outcome, StepOutcome.CREATED)
        self.assertEqual(self.checkpoint.created_id("notification_topic"), result.id)
        self.assertEqual(self.store.load().created_id("notification_topic"), result.id)

    def test_persists_sentinel_before_create_call(self) -> None:
        seen = []

        def create(name: str) -> CreatedResource:
            seen.append(self.store.load().slot("notification_topic"))
            return self.create_topic(name)

        self.runner.ensure(
            self.checkpoint, "notification_topic", "topic", "demoTopic",
            create=create, kind=ResourceKind.NOTIFICATION_TOPIC,
        )

        self.assertTrue(seen[0].is_in_progress)

    def test_failed_create_keeps_sentinel(self) -> None:
        def create(name: str) -> CreatedResource:
            raise CloudError("boom", status=500)

        with self.assertRaises(CloudError):
            self.runner.ensure(
                self.checkpoint, "notification_topic", "topic", "demoTopic",
                create=create, kind=ResourceKind.NOTIFICATION_TOPIC,
            )

        self.assertTrue(self.store.load().slot("notification_topic").is_in_progress)

    def test_reuses_existing_resource_without_creating(self) -> None:
        existing = self.cloud.add(ResourceKind.NOTIFICATION_TOPIC, "demoTopic")
        self.checkpoint.set_slot("notification_topic", Slot.created(existing.id))

        result = self.runner.ensure(
            self.checkpoint, "notification_topic", "topic", "demoTopic",
            create=lambda name: self.fail("must not create"),
            kind=ResourceKind.NOTIFICATION_TOPIC,
        )

        self.assertEqual(result.outcome, StepOutcome.REUSED)
        self.assertEqual(result.id, existing.id)
        self.assertIs(result.info, existing)

    def test_in_progress_sentinel_is_never_skipped(self) -> None:
        self.checkpoint.set_slot("notification_topic", Slot.in_progress())
        calls = []

        def create(name: str) -> CreatedResource:
            calls.append(name)
            return self.create_topic(name)

        result = self.runner.ensure(
            self.checkpoint, "notification_topic", "topic", "demoTopic",
            create=create, kind=ResourceKind.NOTIFICATION_TOPIC,
        )

        self.assertEqual(calls, ["demoTopic"])
        self.assertEqual(result.outcome, StepOutcome.CREATED)

    def test_vanished_resource_is_recreated(self) -> None:
        self.checkpoint.set_slot("notification_topic", Slot.created("ocid1.topic.gone"))

        result = self.runner.ensure(
            self.checkpoint, "notification_topic", "topic", "demoTopic",
            create=self.create_topic, kind=ResourceKind.NOTIFICATION_TOPIC,
        )

        self.assertEqual(result.outcome, StepOutcome.CREATED)
        self.assertNotEqual(result.id, "ocid1.topic.gone")

    def test_rejected_resource_is_recreated(self) -> None:
        stage = self.cloud.add(ResourceKind.BUILD_STAGE, "Build", attributes={"buildPipelineId": "old"})
        self.checkpoint.set_slot("build_stage", Slot.created(stage.id))

        result = self.runner.ensure(
            self.checkpoint, "build_stage", "build stage", "Build",
            create=lambda name: CreatedResource(id="ocid1.stage.new", display_name=name),
            kind=ResourceKind.BUILD_STAGE,
            accept=lambda info: info.attributes.get("buildPipelineId") == "new",
        )

        self.assertEqual(result.id, "ocid1.stage.new")

    def test_lookup_error_counts_as_missing(self) -> None:
        self.checkpoint.set_slot("notification_topic", Slot.created("ocid1.topic.1"))

        def broken_get(kind, resource_id):
            raise CloudError("unavailable", status=503)

        self.cloud.get = broken_get
        result = self.runner.ensure(
            self.checkpoint, "notification_topic", "topic", "demoTopic",
            create=lambda name: CreatedResource(id="ocid1.topic.2", display_name=name),
            kind=ResourceKind.NOTIFICATION_TOPIC,
        )

        self.assertEqual(result.outcome, StepOutcome.CREATED)

    def test_name_conflict_renames_once(self) -> None:
        attempts = []

        def create(name: str) -> CreatedResource:
            attempts.append(name)
            if name == "demo":
                raise NameConflictError("demo already exists", status=409)
            return CreatedResource(id="ocid1.project.1", display_name=name)

        result = self.runner.ensure(
            self.checkpoint, "project", "project", "demo",
            create=create, kind=ResourceKind.PROJECT,
            rename=lambda name, exc: "demo2",
        )

        self.assertEqual(attempts, ["demo", "demo2"])
        self.assertEqual(result.name, "demo2")

    def test_name_conflict_gives_up_after_limit(self) -> None:
        def create(name: str) -> CreatedResource:
            raise NameConflictError(f"{name} already exists", status=409)

        with self.assertRaises(NameConflictError):
            self.runner.ensure(
                self.checkpoint, "project", "project", "demo",
                create=create, kind=ResourceKind.PROJECT,
                rename=lambda name, exc: name + "x",
                max_renames=2,
            )

    def test_stores_work_request_handle_and_manifest_entry(self) -> None:
        manifest = ResourceManifest(self.checkpoint.generated)

        result = self.runner.ensure(
            self.checkpoint, "knowledge_base_work_request", "knowledge base", "demoAudits",
            create=lambda name: CreatedResource(id=None, display_name=name, work_request="wr-1"),
            verify=lambda handle: True,
            id_of=lambda created: created.work_request,
            manifest=manifest,
        )

        self.assertEqual(result.id, "wr-1")
        self.assertEqual(self.checkpoint.generated, [{"id": "wr-1", "originalName": "demoAudits"}])

    def test_run_reports_weight_once(self) -> None:
        step = StepDescriptor(StepKind.PROJECT_SETUP, "Using existing DevOps project", weight=3)

        outcome = self.runner.run(step, lambda s: StepOutcome.SKIPPED)

        self.assertEqual(outcome, StepOutcome.SKIPPED)
        self.assertEqual(len(self.events), 1)
        self.assertAlmostEqual(self.events[0].increment_percent, 75.0)
        self.assertEqual(self.outcomes, [(StepKind.PROJECT_SETUP, StepOutcome.SKIPPED, None)])

    def test_run_wraps_failures_with_step_description(self) -> None:
        step = StepDescriptor(StepKind.POPULATE_REPOSITORY, "Populating source code repository demo", folder="demo")

        def handler(s):
            raise GitCommandError(["git", "push"], 128, "permission denied")

        with self.assertRaises(StepFailedError) as ctx:
            self.runner.run(step, handler)

        self.assertTrue(str(ctx.exception).startswith("Populating source code repository demo failed: "))
        self.assertEqual(self.events, [])
        self.assertEqual(self.outcomes[0][1], StepOutcome.FAILED)

    def test_run_passes_precondition_errors_through(self) -> None:
        step = StepDescriptor(StepKind.ARTIFACT_REPOSITORY, "Resolving artifact repository")

        def handler(s):
            raise PreconditionError("No artifact repository found for project demo.")

        with self.assertRaises(PreconditionError):
            self.runner.run(step, handler)

    def test_location_includes_current_folder(self) -> None:
        self.checkpoint.compartment = ResourceRef(id="c1", name="dev")
        seen = []
        step = StepDescriptor(StepKind.CODE_REPOSITORY, "Creating source code repository demo", folder="demo")

        self.runner.run(step, lambda s: seen.append(self.runner.location) or StepOutcome.CREATED)

        self.assertEqual(seen, ["dev/demo/demo"])


if __name__ == "__main__":
    unittest.main()
