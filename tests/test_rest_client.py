import base64
import threading
import unittest
from unittest import mock

import requests

from devops_provisioner.cloud import (
    AuthenticationProvider,
    PipelineParameter,
    ResourceKind,
    WorkRequestService,
    WorkRequestStatus,
    create_cloud_client,
)
from devops_provisioner.cloud.rest import RestCloudClient
from devops_provisioner.config import CloudConfig
from devops_provisioner.errors import CloudError, NameConflictError


class _NoAuth(requests.auth.AuthBase):
    def __call__(self, request):
        return request


class StaticAuth(AuthenticationProvider):
    @property
    def profile(self) -> str:
        return "DEFAULT"

    @property
    def region(self) -> str:
        return "us-phoenix-1"

    @property
    def tenancy(self) -> str:
        return "ocid1.tenancy.test"

    def request_auth(self):
        return _NoAuth()


def response(status=200, payload=None, headers=None):
    fake = mock.Mock(spec=requests.Response)
    fake.status_code = status
    fake.headers = headers or {}
    fake.json.return_value = payload
    fake.content = b"{}" if payload is not None else b""
    fake.text = "" if payload is None else str(payload)
    return fake


class RestCloudClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = create_cloud_client(StaticAuth(), CloudConfig(request_timeout=7))
        self.request = mock.Mock()
        self.client.session.request = self.request

    def test_factory_returns_rest_client(self) -> None:
        self.assertIsInstance(self.client, RestCloudClient)
        self.assertEqual(self.client.region, "us-phoenix-1")

    def test_get_missing_resource_returns_none(self) -> None:
        self.request.return_value = response(404, {"code": "NotAuthorizedOrNotFound", "message": "missing"})

        self.assertIsNone(self.client.get(ResourceKind.PROJECT, "ocid1.project.1"))

    def test_get_deleted_resource_returns_none(self) -> None:
        self.request.return_value = response(200, {"id": "p1", "name": "demo", "lifecycleState": "DELETED"})

        self.assertIsNone(self.client.get(ResourceKind.PROJECT, "p1"))

    def test_get_uses_region_endpoint_and_timeout(self) -> None:
        self.request.return_value = response(200, {"id": "p1", "name": "demo", "lifecycleState": "ACTIVE"})

        info = self.client.get(ResourceKind.PROJECT, "p1")

        self.assertEqual(info.display_name, "demo")
        args, kwargs = self.request.call_args
        self.assertEqual(args, ("GET", "https://devops.us-phoenix-1.oci.oraclecloud.com/20210630/projects/p1"))
        self.assertEqual(kwargs["timeout"], 7)

    def test_list_follows_pages_and_drops_gone_items(self) -> None:
        self.request.side_effect = [
            response(200, {"items": [{"id": "a", "displayName": "one"}]}, {"opc-next-page": "2"}),
            response(200, {"items": [
                {"id": "b", "displayName": "two", "lifecycleState": "DELETING"},
                {"id": "c", "displayName": "three"},
            ]}),
        ]

        items = self.client.list(ResourceKind.BUILD_STAGE, parent_id="pipeline1")

        self.assertEqual([item.id for item in items], ["a", "c"])
        second_params = self.request.call_args_list[1][1]["params"]
        self.assertEqual(second_params["buildPipelineId"], "pipeline1")
        self.assertEqual(second_params["page"], "2")

    def test_log_listing_is_scoped_to_log_group(self) -> None:
        self.request.return_value = response(200, [])

        self.client.list(ResourceKind.LOG, parent_id="lg1")

        self.assertTrue(self.request.call_args[0][1].endswith("/logGroups/lg1/logs"))

    def test_name_conflict_is_classified(self) -> None:
        self.request.return_value = response(409, {"code": "Conflict", "message": "Project demo already exists"})

        with self.assertRaises(NameConflictError):
            self.client.create_project("c1", "demo", "", "t1", {})

    def test_server_error_raises_cloud_error(self) -> None:
        self.request.return_value = response(500, {"code": "InternalError", "message": "boom"})

        with self.assertRaises(CloudError) as ctx:
            self.client.create_log_group("c1", "demoLogGroup", "", {})

        self.assertEqual(ctx.exception.status, 500)
        self.assertNotIsInstance(ctx.exception, NameConflictError)

    def test_transport_error_is_wrapped(self) -> None:
        self.request.side_effect = requests.exceptions.ConnectionError("refused")

        with self.assertRaises(CloudError):
            self.client.get_namespace()

    def test_asynchronous_create_returns_work_request(self) -> None:
        self.request.return_value = response(202, None, {"opc-work-request-id": "wr1"})

        created = self.client.create_knowledge_base("c1", "demoAudits", {"devops_tooling_deployID": "x"})

        self.assertIsNone(created.id)
        self.assertEqual(created.work_request, "wr1")
        body = self.request.call_args[1]["json"]
        self.assertEqual(body["freeformTags"], {"devops_tooling_deployID": "x"})

    def test_inline_artifact_is_base64_encoded(self) -> None:
        self.request.return_value = response(200, {"id": "a1", "displayName": "cfg"})

        self.client.create_inline_artifact("p1", "cfg", "kind: ConfigMap", "KUBERNETES_MANIFEST", "", {})

        source = self.request.call_args[1]["json"]["deployArtifactSource"]
        self.assertEqual(base64.b64decode(source["base64EncodedContent"]).decode(), "kind: ConfigMap")

    def test_pipeline_parameters(self) -> None:
        self.request.return_value = response(200, {"id": "bp1", "displayName": "demo: Build"})

        self.client.create_build_pipeline("p1", "demo: Build", "", [PipelineParameter("JAVA_VERSION", "21", "Java")], {})

        items = self.request.call_args[1]["json"]["buildPipelineParameters"]["items"]
        self.assertEqual(items, [{"name": "JAVA_VERSION", "defaultValue": "21", "description": "Java"}])

    def test_work_request_resource_id(self) -> None:
        self.request.return_value = response(200, {
            "status": "SUCCEEDED",
            "resources": [
                {"actionType": "RELATED", "identifier": "other"},
                {"actionType": "CREATED", "identifier": "kb1"},
            ],
        })

        request = self.client.get_work_request(WorkRequestService.ADM, "wr1")

        self.assertIs(request.status, WorkRequestStatus.SUCCEEDED)
        self.assertEqual(request.resource_id, "kb1")

    def test_access_policies_merge_into_existing_policy(self) -> None:
        existing = {"id": "pol1", "statements": ["Allow group admins to manage all-resources in tenancy"]}
        self.request.side_effect = [response(200, [existing]), response(200, {})]

        self.client.update_access_policies("ocid1.compartment.abcdefgh", cluster_compartment_id="other")

        method, url = self.request.call_args[0]
        self.assertEqual(method, "PUT")
        self.assertTrue(url.endswith("/policies/pol1"))
        statements = self.request.call_args[1]["json"]["statements"]
        self.assertEqual(len(statements), 5)
        self.assertIn(existing["statements"][0], statements)


    def test_each_thread_gets_its_own_session(self) -> None:
        sessions = []
        worker = threading.Thread(target=lambda: sessions.append(self.client.session))
        worker.start()
        worker.join()

        self.assertIs(self.client.session, self.client.session)
        self.assertIsNot(sessions[0], self.client.session)
        self.assertIs(sessions[0].auth, self.client.session.auth)
        self.assertEqual(sessions[0].headers["accept"], "application/json")

    def test_proxy_applies_to_every_session(self) -> None:
        client = create_cloud_client(StaticAuth(), CloudConfig(proxy="http://proxy:3128"))
        sessions = []
        worker = threading.Thread(target=lambda: sessions.append(client.session))
        worker.start()
        worker.join()

        self.assertEqual(client.session.proxies["https"], "http://proxy:3128")
        self.assertEqual(sessions[0].proxies["https"], "http://proxy:3128")


if __name__ == "__main__":
    unittest.main()
