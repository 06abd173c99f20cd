import json
import tempfile
import threading
import unittest
from pathlib import Path

from devops_provisioner.analyzer import BuildFileClassifier, GenericBuild
from devops_provisioner.checkpoint import Checkpoint, CheckpointStore, ResourceRef
from devops_provisioner.checkpoint import models as keys
from devops_provisioner.cloud import ResourceKind
from devops_provisioner.config import CloudConfig
from devops_provisioner.orchestrator import ProvisioningOrchestrator
from devops_provisioner.orchestrator.orchestrator import (
    TAG_CODE_REPOSITORY,
    TAG_CODE_REPOSITORY_RESOURCES_LIST,
    TAG_DEPLOY_INCOMPLETE,
    TAG_PROJECT,
    TAG_PROJECT_RESOURCES_LIST,
)
from devops_provisioner.templates import TemplateExpander

from fakes import COMPARTMENT, FakeCloud, RecordingPopulator, StaticParameters, cloud_error

# 单个通用项目、启用集群部署时的步骤数
GENERIC_STEPS = 31


class OrchestratorTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.folder = self.root / "demo"
        self.folder.mkdir()
        (self.folder / "README.md").write_text("demo", encoding="utf-8")
        self.cloud = FakeCloud()
        self.store = CheckpointStore(self.root / "checkpoint.json")
        self.populator = RecordingPopulator()
        self.parameters = StaticParameters(names=["demo"])
        self.events = []

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def make(self, **overrides) -> ProvisioningOrchestrator:
        options = dict(
            directory=self.cloud,
            factory=self.cloud,
            store=self.store,
            classifier=BuildFileClassifier({"*": GenericBuild("mvn package", "target/demo.jar")}),
            populator=self.populator,
            expander=TemplateExpander(),
            parameters=self.parameters,
            profile="DEFAULT",
            region="us-phoenix-1",
            cloud_config=CloudConfig(work_request_poll_interval=0),
            progress_callback=self.events.append,
            log_dir=self.root / "logs",
        )
        options.update(overrides)
        return ProvisioningOrchestrator(**options)

    def deploy(self, **overrides):
        self.events.clear()
        return self.make(**overrides).run([self.folder], self.store.load())

    def total_progress(self) -> float:
        return sum(event.increment_percent for event in self.events)

    def listed_ids(self, artifact_id) -> list:
        content = json.loads(self.cloud.resources[artifact_id].attributes["content"])
        return [item["id"] for item in content["items"]]


class FreshRunTests(OrchestratorTestCase):
    def test_creates_every_resource(self) -> None:
        result = self.deploy()

        self.assertTrue(result.success, result.error)
        self.assertEqual(len(self.events), GENERIC_STEPS)
        self.assertAlmostEqual(self.total_progress(), 100.0)

        checkpoint = self.store.load()
        self.assertEqual(checkpoint.project_name, "demo")
        self.assertIsNotNone(checkpoint.project_id)
        self.assertIsNotNone(checkpoint.created_id(keys.PROJECT_LOG))
        self.assertIsNotNone(checkpoint.created_id(keys.KNOWLEDGE_BASE))
        folder = checkpoint.folder("demo")
        for key in ("code_repository", "devbuild_pipeline", "devbuild_artifacts_stage",
                    "docker_jvmbuild_container_repository", "docker_jvmbuild_deploy_stage",
                    "oke_setup_command_artifact", "manifest"):
            self.assertIsNotNone(folder.created_id(key), key)
        self.assertEqual(folder.secret_name, "demo-generated-ocirsecret")

    def test_writes_build_files_and_services_configuration(self) -> None:
        self.assertTrue(self.deploy().success)

        devops_dir = self.folder / ".devops"
        self.assertTrue((devops_dir / "devbuild_spec.yaml").is_file())
        self.assertTrue((devops_dir / "docker_jvmbuild_spec.yaml").is_file())
        self.assertTrue((devops_dir / "Dockerfile.jvm").is_file())
        spec = (devops_dir / "devbuild_spec.yaml").read_text(encoding="utf-8")
        self.assertIn("mvn package", spec)
        self.assertNotIn("${{", spec)

        services = json.loads((devops_dir / "devops.json").read_text(encoding="utf-8"))
        self.assertEqual(services["project"]["name"], "demo")
        self.assertEqual(services["compartment"], COMPARTMENT)
        self.assertEqual(len(services["build_pipelines"]), 2)
        self.assertEqual(len(services["deploy_pipelines"]), 1)
        self.assertIn("knowledge_base", services)

    def test_populates_repository_and_clears_incomplete_tag(self) -> None:
        self.assertTrue(self.deploy().success)

        self.assertEqual(len(self.populator.calls), 1)
        remote_url, folder, user, branch = self.populator.calls[0]
        self.assertEqual(remote_url, "ssh://devops.example.com/demo")
        self.assertEqual(folder, self.folder)
        self.assertEqual(user.email, "tester@example.com")
        self.assertEqual(branch, "master")

        repository_id = self.store.load().folder("demo").created_id(keys.CODE_REPOSITORY)
        self.assertNotIn(TAG_DEPLOY_INCOMPLETE, self.cloud.resources[repository_id].freeform_tags)

    def test_saves_generated_resource_manifests(self) -> None:
        self.assertTrue(self.deploy().success)

        names = [name for kind, name in self.cloud.created if kind is ResourceKind.DEPLOY_ARTIFACT]
        self.assertIn("GeneratedResources-Project", names)
        self.assertIn("GeneratedResources-CodeRepository-demo", names)
        checkpoint = self.store.load()
        project_names = {entry["originalName"] for entry in checkpoint.generated}
        self.assertIn("demo", project_names)
        self.assertIn("demoLog", project_names)
        self.assertIn("demoAudits", project_names)

        folder = checkpoint.folder("demo")
        folder_list = self.cloud.resources[folder.created_id(keys.FOLDER_MANIFEST)]
        self.assertEqual(folder_list.freeform_tags[TAG_CODE_REPOSITORY_RESOURCES_LIST], "true")
        self.assertEqual(folder_list.freeform_tags[TAG_CODE_REPOSITORY], folder.created_id(keys.CODE_REPOSITORY))
        project_list = self.cloud.resources[checkpoint.created_id(keys.PROJECT_MANIFEST)]
        self.assertEqual(project_list.freeform_tags[TAG_PROJECT_RESOURCES_LIST], "true")
        self.assertEqual(folder.listed_resources, len(folder.generated))
        self.assertEqual(self.listed_ids(folder_list.id), [entry["id"] for entry in folder.generated])

    def test_run_log_records_every_step(self) -> None:
        self.assertTrue(self.deploy().success)

        logs = list((self.root / "logs").glob("deploy_*.json"))
        self.assertEqual(len(logs), 1)
        data = json.loads(logs[0].read_text(encoding="utf-8"))
        self.assertEqual(data["status"], "success")
        self.assertEqual(len(data["steps"]), GENERIC_STEPS)
        self.assertEqual(data["plan"]["total_weight"], GENERIC_STEPS)

    def test_without_cluster_skips_deploy_pipelines(self) -> None:
        self.parameters.cluster = False
        result = self.deploy()

        self.assertTrue(result.success, result.error)
        self.assertEqual(len(self.events), 23)
        self.assertAlmostEqual(self.total_progress(), 100.0)
        self.assertNotIn(ResourceKind.DEPLOY_PIPELINE, self.cloud.created_kinds())
        self.assertNotIn(ResourceKind.DEPLOY_ENVIRONMENT, self.cloud.created_kinds())

    def test_unsupported_folder_fails_before_creating_anything(self) -> None:
        result = self.deploy(classifier=BuildFileClassifier())

        self.assertFalse(result.success)
        self.assertIn("Cannot deploy", result.error)
        self.assertEqual(self.cloud.created, [])

    def test_cancel_event_stops_at_step_boundary(self) -> None:
        cancel = threading.Event()
        cancel.set()
        result = self.deploy(cancel_event=cancel)

        self.assertFalse(result.success)
        self.assertEqual(result.error, "Deployment cancelled.")
        self.assertEqual(self.cloud.created, [])


class ResumeTests(OrchestratorTestCase):
    def test_second_run_makes_no_create_calls(self) -> None:
        self.assertTrue(self.deploy().success)
        self.cloud.created.clear()
        self.cloud.updates.clear()

        result = self.deploy()

        self.assertTrue(result.success, result.error)
        self.assertEqual(self.cloud.created, [])
        self.assertEqual(self.cloud.updates, [])
        self.assertEqual(len(self.populator.calls), 1)
        self.assertAlmostEqual(self.total_progress(), 100.0)

    def test_failed_create_leaves_in_progress_sentinel(self) -> None:
        self.cloud.failures["create_build_pipeline"] = cloud_error()

        result = self.deploy()

        self.assertFalse(result.success)
        self.assertIn("Creating build pipeline for fat JAR failed", result.error)
        self.assertIn("Internal server error", result.error)
        raw = json.loads(self.store.path.read_text(encoding="utf-8"))
        self.assertIs(raw["repositories"]["demo"]["devbuild_pipeline"], False)
        self.assertTrue(self.store.load().folder("demo").slot("devbuild_pipeline").is_in_progress)

    def test_resume_after_failure_recreates_only_unconfirmed_resources(self) -> None:
        self.cloud.failures["create_build_pipeline"] = cloud_error()
        self.assertFalse(self.deploy().success)
        self.cloud.created.clear()

        result = self.deploy()

        self.assertTrue(result.success, result.error)
        kinds = self.cloud.created_kinds()
        for kind in (ResourceKind.PROJECT, ResourceKind.CODE_REPOSITORY,
                     ResourceKind.KNOWLEDGE_BASE, ResourceKind.LOG):
            self.assertNotIn(kind, kinds)
        self.assertEqual(self.cloud.created.count((ResourceKind.BUILD_PIPELINE, "demo: Build Fat JAR")), 1)
        self.assertIsNotNone(self.store.load().created_id(keys.KNOWLEDGE_BASE))

    def test_deleted_pipeline_is_recreated_with_its_stages(self) -> None:
        self.assertTrue(self.deploy().success)
        pipeline_id = self.store.load().folder("demo").created_id("devbuild_pipeline")
        self.cloud.delete(pipeline_id)
        self.cloud.created.clear()

        result = self.deploy()

        self.assertTrue(result.success, result.error)
        self.assertEqual(self.cloud.created, [
            (ResourceKind.BUILD_PIPELINE, "demo: Build Fat JAR"),
            (ResourceKind.BUILD_STAGE, "Build"),
            (ResourceKind.BUILD_STAGE, "Artifacts"),
            (ResourceKind.DEPLOY_ARTIFACT, "GeneratedResources-CodeRepository-demo"),
        ])
        self.assertNotEqual(self.store.load().folder("demo").created_id("devbuild_pipeline"), pipeline_id)

    def test_resources_list_is_saved_again_with_recreated_resources(self) -> None:
        self.assertTrue(self.deploy().success)
        first = self.store.load()
        first_list = first.folder("demo").created_id(keys.FOLDER_MANIFEST)
        self.cloud.delete(first.folder("demo").created_id("devbuild_pipeline"))

        self.assertTrue(self.deploy().success)

        checkpoint = self.store.load()
        folder = checkpoint.folder("demo")
        new_list = folder.created_id(keys.FOLDER_MANIFEST)
        self.assertNotEqual(new_list, first_list)
        self.assertIn(folder.created_id("devbuild_pipeline"), self.listed_ids(new_list))
        self.assertEqual(folder.listed_resources, len(folder.generated))
        self.assertEqual(checkpoint.created_id(keys.PROJECT_MANIFEST), first.created_id(keys.PROJECT_MANIFEST))

    def test_generic_folder_resumes_with_recorded_build_command(self) -> None:
        self.cloud.failures["create_build_pipeline"] = cloud_error()
        self.assertFalse(self.deploy().success)
        folder = self.store.load().folder("demo")
        self.assertEqual(folder.build_command, "mvn package")
        self.assertEqual(folder.artifact_location, "target/demo.jar")

        result = self.deploy(classifier=BuildFileClassifier())

        self.assertTrue(result.success, result.error)
        spec = (self.folder / ".devops" / "devbuild_spec.yaml").read_text(encoding="utf-8")
        self.assertIn("mvn package", spec)
        self.assertIn((ResourceKind.BUILD_PIPELINE, "demo: Build Fat JAR"), self.cloud.created)

    def test_generic_folder_without_recorded_command_is_unsupported(self) -> None:
        result = self.deploy(classifier=BuildFileClassifier())

        self.assertFalse(result.success)
        self.assertIn("Cannot deploy", result.error)

    def test_missing_compartment_is_selected_again(self) -> None:
        checkpoint = Checkpoint()
        checkpoint.compartment = ResourceRef(id="ocid1.compartment.gone", name="old")
        self.store.save(checkpoint)

        result = self.deploy()

        self.assertTrue(result.success, result.error)
        self.assertIn("compartment", self.parameters.calls)
        self.assertEqual(self.store.load().compartment.id, COMPARTMENT)

    def test_knowledge_base_failure_surfaces_at_join_point(self) -> None:
        self.cloud.failing_work_requests.add("create_knowledge_base")

        result = self.deploy()

        self.assertFalse(result.success)
        self.assertIn("Saving services configuration failed", result.error)
        checkpoint = self.store.load()
        self.assertTrue(checkpoint.slot(keys.KNOWLEDGE_BASE).is_in_progress)
        self.assertFalse(checkpoint.slot(keys.KNOWLEDGE_BASE_WORK_REQUEST).is_created)
        self.assertFalse((self.folder / ".devops" / "devops.json").exists())

        self.cloud.failing_work_requests.clear()
        self.cloud.created.clear()
        result = self.deploy()

        self.assertTrue(result.success, result.error)
        self.assertEqual(self.cloud.created_kinds().count(ResourceKind.KNOWLEDGE_BASE), 1)
        self.assertNotIn(ResourceKind.BUILD_PIPELINE, self.cloud.created_kinds())


class NameConflictTests(OrchestratorTestCase):
    def test_project_name_conflict_asks_for_new_name(self) -> None:
        self.cloud.add(ResourceKind.PROJECT, "demo", compartment_id=COMPARTMENT)
        self.parameters.names = ["demo", "demo2"]

        result = self.deploy()

        self.assertTrue(result.success, result.error)
        checkpoint = self.store.load()
        self.assertEqual(checkpoint.project_name, "demo2")
        self.assertIn((ResourceKind.PROJECT, "demo2"), self.cloud.created)
        self.assertIn((ResourceKind.LOG_GROUP, "demo2LogGroup"), self.cloud.created)

    def test_project_name_retries_are_bounded(self) -> None:
        self.cloud.add(ResourceKind.PROJECT, "demo", compartment_id=COMPARTMENT)
        self.cloud.add(ResourceKind.PROJECT, "other", compartment_id=COMPARTMENT)
        self.parameters.names = ["demo", "other", "third"]

        result = self.deploy()

        self.assertFalse(result.success)
        self.assertIn("already exists", result.error)
        self.assertTrue(self.store.load().slot(keys.PROJECT).is_in_progress)

    def test_log_name_conflict_uses_next_candidate(self) -> None:
        self.cloud.conflicting_names.add("demoLog")

        result = self.deploy()

        self.assertTrue(result.success, result.error)
        self.assertIn((ResourceKind.LOG, "demoLog1"), self.cloud.created)


class IncrementalRunTests(OrchestratorTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.project = self.cloud.add(ResourceKind.PROJECT, "shared", compartment_id=COMPARTMENT)
        self.existing = ResourceRef(id=self.project.id, name="shared", compartment_id=COMPARTMENT)

    def add_project_resources(self) -> None:
        tags = {TAG_PROJECT: self.project.id}
        self.cloud.add(ResourceKind.ARTIFACT_REPOSITORY, "sharedArtifactRepository",
                       compartment_id=COMPARTMENT, tags=tags)
        self.cloud.add(ResourceKind.KNOWLEDGE_BASE, "sharedAudits", compartment_id=COMPARTMENT, tags=tags)

    def test_reuses_project_level_resources(self) -> None:
        self.add_project_resources()

        result = self.deploy(existing_project=self.existing)

        self.assertTrue(result.success, result.error)
        kinds = self.cloud.created_kinds()
        for kind in (ResourceKind.PROJECT, ResourceKind.NOTIFICATION_TOPIC, ResourceKind.LOG_GROUP,
                     ResourceKind.LOG, ResourceKind.ARTIFACT_REPOSITORY, ResourceKind.KNOWLEDGE_BASE):
            self.assertNotIn(kind, kinds)
        self.assertIn((ResourceKind.CONTAINER_REPOSITORY, "shared-demo-jvm"), self.cloud.created)
        self.assertNotIn(("policies", COMPARTMENT), self.cloud.updates)
        self.assertEqual(self.store.load().project_name, "shared")

    def test_progress_counts_project_setup_as_one_lump(self) -> None:
        self.add_project_resources()

        self.assertTrue(self.deploy(existing_project=self.existing).success)

        total_steps = GENERIC_STEPS - 5 + 1
        self.assertEqual(len(self.events), total_steps)
        self.assertAlmostEqual(self.events[0].increment_percent, 100.0 * 5 / GENERIC_STEPS)
        self.assertAlmostEqual(self.total_progress(), 100.0)

    def test_missing_artifact_repository_fails(self) -> None:
        result = self.deploy(existing_project=self.existing)

        self.assertFalse(result.success)
        self.assertIn("No artifact repository found", result.error)

    def test_missing_knowledge_base_is_tolerated(self) -> None:
        self.cloud.add(ResourceKind.ARTIFACT_REPOSITORY, "sharedArtifactRepository",
                       compartment_id=COMPARTMENT, tags={TAG_PROJECT: self.project.id})

        result = self.deploy(existing_project=self.existing)

        self.assertTrue(result.success, result.error)
        services = json.loads((self.folder / ".devops" / "devops.json").read_text(encoding="utf-8"))
        self.assertNotIn("knowledge_base", services)


if __name__ == "__main__":
    unittest.main()
