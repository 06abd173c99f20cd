"""REST implementation of the Resource Directory and Factory."""

from __future__ import annotations

import base64
import logging
import os
import threading
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

import requests

from .base import (
    CloudClient,
    CreatedResource,
    PipelineParameter,
    ResourceInfo,
    ResourceKind,
    WorkRequest,
    WorkRequestService,
    WorkRequestStatus,
)
from ..errors import CloudError, NameConflictError, ResourceNotFoundError, is_name_conflict

if TYPE_CHECKING:
    from ..config import CloudConfig
    from .auth import AuthenticationProvider

logger = logging.getLogger(__name__)

# (service host prefix, API version, collection path)
_ENDPOINTS: Dict[ResourceKind, tuple] = {
    ResourceKind.COMPARTMENT: ("identity", "20160918", "compartments"),
    ResourceKind.CLUSTER: ("containerengine", "20180222", "clusters"),
    ResourceKind.SUBNET: ("iaas", "20160918", "subnets"),
    ResourceKind.PROJECT: ("devops", "20210630", "projects"),
    ResourceKind.NOTIFICATION_TOPIC: ("notification", "20181201", "topics"),
    ResourceKind.LOG_GROUP: ("logging", "20200531", "logGroups"),
    ResourceKind.LOG: ("logging", "20200531", "logGroups/{parent}/logs"),
    ResourceKind.ARTIFACT_REPOSITORY: ("artifacts", "20160918", "repositories"),
    ResourceKind.DEPLOY_ENVIRONMENT: ("devops", "20210630", "deployEnvironments"),
    ResourceKind.KNOWLEDGE_BASE: ("adm", "20220421", "knowledgeBases"),
    ResourceKind.CODE_REPOSITORY: ("devops", "20210630", "repositories"),
    ResourceKind.BUILD_PIPELINE: ("devops", "20210630", "buildPipelines"),
    ResourceKind.BUILD_STAGE: ("devops", "20210630", "buildPipelineStages"),
    ResourceKind.DEPLOY_ARTIFACT: ("devops", "20210630", "deployArtifacts"),
    ResourceKind.DEPLOY_PIPELINE: ("devops", "20210630", "deployPipelines"),
    ResourceKind.DEPLOY_STAGE: ("devops", "20210630", "deployStages"),
    ResourceKind.CONTAINER_REPOSITORY: ("artifacts", "20160918", "container/repositories"),
}

_GONE_STATES = ("DELETED", "DELETING", "FAILED")

_WORK_REQUEST_ENDPOINTS: Dict[WorkRequestService, tuple] = {
    WorkRequestService.DEVOPS: ("devops", "20210630"),
    WorkRequestService.LOGGING: ("logging", "20200531"),
    WorkRequestService.ADM: ("adm", "20220421"),
}

# Kinds listed by parent rather than by compartment
_PARENT_FILTERS = {
    ResourceKind.CODE_REPOSITORY: "projectId",
    ResourceKind.BUILD_PIPELINE: "projectId",
    ResourceKind.DEPLOY_ARTIFACT: "projectId",
    ResourceKind.DEPLOY_PIPELINE: "projectId",
    ResourceKind.DEPLOY_ENVIRONMENT: "projectId",
    ResourceKind.BUILD_STAGE: "buildPipelineId",
    ResourceKind.DEPLOY_STAGE: "deployPipelineId",
    ResourceKind.SUBNET: "vcnId",
}


class RestCloudClient(CloudClient):
    """Signed JSON-over-HTTPS client for the platform control plane APIs."""

    def __init__(self, auth: "AuthenticationProvider", config: "CloudConfig") -> None:
        self.auth = auth
        self.config = config
        self.region = auth.region
        self._signer = auth.request_auth()
        # requests.Session 不保证线程安全，后台轮询线程各用一个
        self._local = threading.local()

        self.proxy = config.proxy or os.environ.get("HTTPS_PROXY") or os.environ.get("HTTP_PROXY")
        if self.proxy:
            logger.info("Cloud client using proxy: %s", self.proxy)

    @property
    def session(self) -> requests.Session:
        """HTTP session of the calling thread."""
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.auth = self._signer
            session.headers.update({"accept": "application/json"})
            if self.proxy:
                session.proxies = {"http": self.proxy, "https": self.proxy}
            self._local.session = session
        return session

    # ------------------------------------------------------------------
    # HTTP plumbing

    def _base_url(self, service: str, version: str) -> str:
        return f"https://{service}.{self.region}.oci.oraclecloud.com/{version}"

    def _url(self, kind: ResourceKind, resource_id: Optional[str] = None, parent: Optional[str] = None) -> str:
        service, version, path = _ENDPOINTS[kind]
        path = path.format(parent=parent or "")
        url = f"{self._base_url(service, version)}/{path}"
        if resource_id:
            url = f"{url}/{resource_id}"
        return url

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            response = self.session.request(
                method, url, timeout=self.config.request_timeout, **kwargs
            )
        except requests.exceptions.RequestException as exc:
            logger.error("%s %s failed: %s", method, url, exc)
            raise CloudError(f"Request to {url} failed: {exc}") from exc

        if response.status_code >= 400:
            code, message = self._error_details(response)
            if response.status_code == 404:
                raise ResourceNotFoundError(message, status=404, code=code)
            if is_name_conflict(message):
                raise NameConflictError(message, status=response.status_code, code=code)
            logger.error("%s %s returned %s: %s", method, url, response.status_code, message)
            raise CloudError(message, status=response.status_code, code=code)
        return response

    @staticmethod
    def _error_details(response: requests.Response) -> tuple:
        try:
            payload = response.json()
        except ValueError:
            return None, response.text[:500] or f"HTTP {response.status_code}"
        return payload.get("code"), payload.get("message") or f"HTTP {response.status_code}"

    def _post(self, kind: ResourceKind, body: Dict[str, Any], parent: Optional[str] = None) -> requests.Response:
        return self._request("POST", self._url(kind, parent=parent), json=body)

    def _created(self, response: requests.Response, name_key: str = "displayName") -> CreatedResource:
        data = response.json() if response.content else {}
        return CreatedResource(
            id=data.get("id"),
            display_name=data.get(name_key) or data.get("name") or "",
            work_request=response.headers.get("opc-work-request-id"),
            attributes=data,
        )

    @staticmethod
    def _to_info(data: Dict[str, Any]) -> ResourceInfo:
        return ResourceInfo(
            id=data.get("id") or data.get("topicId") or "",
            display_name=data.get("displayName") or data.get("name") or "",
            lifecycle_state=data.get("lifecycleState"),
            compartment_id=data.get("compartmentId"),
            freeform_tags=data.get("freeformTags") or {},
            attributes=data,
        )

    # ------------------------------------------------------------------
    # ResourceDirectory

    def get(self, kind: ResourceKind, resource_id: str) -> Optional[ResourceInfo]:
        try:
            response = self._request("GET", self._url(kind, resource_id))
        except ResourceNotFoundError:
            return None
        info = self._to_info(response.json())
        if _is_gone(info):
            return None
        return info

    def list(
        self,
        kind: ResourceKind,
        compartment_id: Optional[str] = None,
        parent_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> List[ResourceInfo]:
        params: Dict[str, Any] = {}
        if compartment_id:
            params["compartmentId"] = compartment_id
        if parent_id and kind in _PARENT_FILTERS:
            params[_PARENT_FILTERS[kind]] = parent_id
        if name:
            params["name" if kind in (ResourceKind.NOTIFICATION_TOPIC, ResourceKind.PROJECT) else "displayName"] = name

        items: List[ResourceInfo] = []
        page: Optional[str] = None
        while True:
            if page:
                params["page"] = page
            response = self._request("GET", self._url(kind, parent=parent_id), params=params)
            payload = response.json()
            rows = payload.get("items", []) if isinstance(payload, dict) else payload
            items.extend(self._to_info(row) for row in rows)
            page = response.headers.get("opc-next-page")
            if not page:
                break
        return [item for item in items if not _is_gone(item)]

    def get_namespace(self) -> Optional[str]:
        response = self._request("GET", f"https://objectstorage.{self.region}.oraclecloud.com/n/")
        namespace = response.json()
        return namespace if isinstance(namespace, str) else None

    def get_work_request(self, service: WorkRequestService, handle: str) -> Optional[WorkRequest]:
        host, version = _WORK_REQUEST_ENDPOINTS[service]
        try:
            response = self._request("GET", f"{self._base_url(host, version)}/workRequests/{handle}")
        except ResourceNotFoundError:
            return None
        data = response.json()
        resource_id = None
        for resource in data.get("resources", []):
            if resource.get("actionType") in ("CREATED", "IN_PROGRESS") and resource.get("identifier"):
                resource_id = resource["identifier"]
                break
        try:
            status = WorkRequestStatus(data.get("status", "ACCEPTED"))
        except ValueError:
            status = WorkRequestStatus.IN_PROGRESS
        return WorkRequest(id=handle, status=status, resource_id=resource_id)

    def get_current_user(self) -> Dict[str, str]:
        user_id = getattr(self.auth, "user", None)
        if not user_id:
            raise CloudError("The authentication provider does not expose a user id")
        response = self._request("GET", f"{self._base_url('identity', '20160918')}/users/{user_id}")
        data = response.json()
        return {"name": data.get("description") or data.get("name", ""), "email": data.get("email") or ""}

    # ------------------------------------------------------------------
    # ResourceFactory

    def create_notification_topic(self, compartment_id, name, description, tags):
        response = self._post(ResourceKind.NOTIFICATION_TOPIC, {
            "name": name,
            "compartmentId": compartment_id,
            "description": description,
            "freeformTags": tags,
        })
        created = self._created(response, name_key="name")
        created.id = created.id or created.attributes.get("topicId")
        return created

    def create_project(self, compartment_id, name, description, topic_id, tags):
        response = self._post(ResourceKind.PROJECT, {
            "name": name,
            "description": description,
            "notificationConfig": {"topicId": topic_id},
            "compartmentId": compartment_id,
            "freeformTags": tags,
        })
        return self._created(response, name_key="name")

    def create_log_group(self, compartment_id, name, description, tags):
        response = self._post(ResourceKind.LOG_GROUP, {
            "compartmentId": compartment_id,
            "displayName": name,
            "description": description,
            "freeformTags": tags,
        })
        return self._created(response)

    def create_project_log(self, log_group_id, compartment_id, project_id, name, tags):
        response = self._post(ResourceKind.LOG, {
            "displayName": name,
            "logType": "SERVICE",
            "isEnabled": True,
            "configuration": {
                "compartmentId": compartment_id,
                "source": {
                    "sourceType": "OCISERVICE",
                    "service": "devops",
                    "resource": project_id,
                    "category": "all",
                    "parameters": {},
                },
                "archiving": {"isEnabled": False},
            },
            "retentionDuration": 30,
            "freeformTags": tags,
        }, parent=log_group_id)
        return CreatedResource(
            id=None,
            display_name=name,
            work_request=response.headers.get("opc-work-request-id"),
        )

    def update_access_policies(self, compartment_id, cluster_compartment_id=None, subnet_compartment_id=None):
        statements = [
            f"Allow any-user to manage all-resources in compartment id {compartment_id} "
            f"where ALL {{request.principal.type='devopsbuildpipeline'}}",
            f"Allow any-user to manage all-resources in compartment id {compartment_id} "
            f"where ALL {{request.principal.type='devopsdeploypipeline'}}",
            f"Allow any-user to manage all-resources in compartment id {compartment_id} "
            f"where ALL {{request.principal.type='devopsrepository'}}",
        ]
        for extra in {cluster_compartment_id, subnet_compartment_id} - {None, compartment_id}:
            statements.append(
                f"Allow any-user to manage all-resources in compartment id {extra} "
                f"where ALL {{request.principal.type='devopsdeploypipeline'}}"
            )
        base = self._base_url("identity", "20160918")
        name = f"devops-provisioner-policy-{compartment_id[-8:]}"
        existing = self._request(
            "GET", f"{base}/policies", params={"compartmentId": compartment_id, "name": name}
        ).json()
        if existing:
            policy = existing[0]
            merged = sorted(set(policy.get("statements", [])) | set(statements))
            self._request("PUT", f"{base}/policies/{policy['id']}", json={"statements": merged})
        else:
            self._request("POST", f"{base}/policies", json={
                "compartmentId": compartment_id,
                "name": name,
                "description": "Access policies for DevOps build and deployment pipelines",
                "statements": statements,
            })

    def create_artifact_repository(self, compartment_id, name, description, tags):
        response = self._post(ResourceKind.ARTIFACT_REPOSITORY, {
            "repositoryType": "GENERIC",
            "displayName": name,
            "compartmentId": compartment_id,
            "description": description,
            "isImmutable": False,
            "freeformTags": tags,
        })
        return self._created(response)

    def create_cluster_environment(self, project_id, name, cluster_id, tags):
        response = self._post(ResourceKind.DEPLOY_ENVIRONMENT, {
            "deployEnvironmentType": "OKE_CLUSTER",
            "displayName": name,
            "projectId": project_id,
            "clusterId": cluster_id,
            "freeformTags": tags,
        })
        return self._created(response)

    def create_knowledge_base(self, compartment_id, name, tags):
        response = self._post(ResourceKind.KNOWLEDGE_BASE, {
            "displayName": name,
            "compartmentId": compartment_id,
            "freeformTags": tags,
        })
        return CreatedResource(
            id=None,
            display_name=name,
            work_request=response.headers.get("opc-work-request-id"),
        )

    def create_code_repository(self, project_id, name, default_branch, description, tags):
        response = self._post(ResourceKind.CODE_REPOSITORY, {
            "name": name,
            "description": description,
            "projectId": project_id,
            "defaultBranch": default_branch,
            "repositoryType": "HOSTED",
            "freeformTags": tags,
        })
        return self._created(response, name_key="name")

    def update_code_repository_tags(self, repository_id, tags):
        self._request("PUT", self._url(ResourceKind.CODE_REPOSITORY, repository_id), json={"freeformTags": tags})

    def create_generic_artifact(self, project_id, artifact_repository_id, name, path, description, tags):
        response = self._post(ResourceKind.DEPLOY_ARTIFACT, {
            "displayName": name,
            "description": description,
            "deployArtifactType": "GENERIC_FILE",
            "deployArtifactSource": {
                "deployArtifactSourceType": "GENERIC_ARTIFACT",
                "repositoryId": artifact_repository_id,
                "deployArtifactPath": path,
                "deployArtifactVersion": "dev",
            },
            "argumentSubstitutionMode": "NONE",
            "projectId": project_id,
            "freeformTags": tags,
        })
        return self._created(response)

    def create_image_artifact(self, project_id, name, image_uri, description, tags):
        response = self._post(ResourceKind.DEPLOY_ARTIFACT, {
            "displayName": name,
            "description": description,
            "deployArtifactType": "DOCKER_IMAGE",
            "deployArtifactSource": {
                "deployArtifactSourceType": "OCIR",
                "imageUri": image_uri,
            },
            "argumentSubstitutionMode": "SUBSTITUTE_PLACEHOLDERS",
            "projectId": project_id,
            "freeformTags": tags,
        })
        return self._created(response)

    def create_inline_artifact(self, project_id, name, content, artifact_type, description, tags):
        response = self._post(ResourceKind.DEPLOY_ARTIFACT, {
            "displayName": name,
            "description": description,
            "deployArtifactType": artifact_type,
            "deployArtifactSource": {
                "deployArtifactSourceType": "INLINE",
                "base64EncodedContent": _b64(content),
            },
            "argumentSubstitutionMode": "SUBSTITUTE_PLACEHOLDERS",
            "projectId": project_id,
            "freeformTags": tags,
        })
        return self._created(response)

    def create_build_pipeline(self, project_id, name, description, parameters, tags):
        response = self._post(ResourceKind.BUILD_PIPELINE, {
            "displayName": name,
            "description": description,
            "projectId": project_id,
            "buildPipelineParameters": {"items": _parameters(parameters)},
            "freeformTags": tags,
        })
        return self._created(response)

    def create_build_stage(self, pipeline_id, repository, build_spec_file, branch, build_image, tags):
        response = self._post(ResourceKind.BUILD_STAGE, {
            "displayName": "Build",
            "description": "Build stage",
            "buildPipelineId": pipeline_id,
            "buildPipelineStagePredecessorCollection": {"items": [{"id": pipeline_id}]},
            "buildSpecFile": build_spec_file,
            "image": build_image,
            "buildSourceCollection": {"items": [{
                "name": repository.display_name,
                "repositoryUrl": repository.attributes.get("httpUrl"),
                "repositoryId": repository.id,
                "branch": branch,
                "connectionType": "DEVOPS_CODE_REPOSITORY",
            }]},
            "buildPipelineStageType": "BUILD",
            "freeformTags": tags,
        })
        return self._created(response)

    def create_artifacts_stage(self, pipeline_id, build_stage_id, artifact_id, artifact_name, tags):
        response = self._post(ResourceKind.BUILD_STAGE, {
            "displayName": "Artifacts",
            "description": "Artifacts stage",
            "buildPipelineId": pipeline_id,
            "buildPipelineStagePredecessorCollection": {"items": [{"id": build_stage_id}]},
            "deliverArtifactCollection": {"items": [
                {"artifactName": artifact_name, "artifactId": artifact_id}
            ]},
            "buildPipelineStageType": "DELIVER_ARTIFACT",
            "freeformTags": tags,
        })
        return self._created(response)

    def create_container_repository(self, compartment_id, name, tags):
        response = self._post(ResourceKind.CONTAINER_REPOSITORY, {
            "compartmentId": compartment_id,
            "displayName": name,
            "isImmutable": False,
            "isPublic": False,
            "freeformTags": tags,
        })
        return self._created(response)

    def create_deploy_pipeline(self, project_id, name, description, parameters, tags):
        response = self._post(ResourceKind.DEPLOY_PIPELINE, {
            "displayName": name,
            "description": description,
            "projectId": project_id,
            "deployPipelineParameters": {"items": _parameters(parameters)},
            "freeformTags": tags,
        })
        return self._created(response)

    def create_shell_stage(self, pipeline_id, predecessor_id, command_artifact_id, subnet_id, name, tags):
        body: Dict[str, Any] = {
            "displayName": name,
            "deployPipelineId": pipeline_id,
            "deployStagePredecessorCollection": {"items": [{"id": predecessor_id}]},
            "deployStageType": "SHELL",
            "commandSpecDeployArtifactId": command_artifact_id,
            "containerConfig": {
                "containerConfigType": "CONTAINER_INSTANCE_CONFIG",
                "shapeName": "CI.Standard.E4.Flex",
                "shapeConfig": {"ocpus": 1, "memoryInGBs": 1},
                "networkChannel": {"networkChannelType": "SERVICE_VNIC_CHANNEL", "subnetId": subnet_id},
            },
            "freeformTags": tags,
        }
        response = self._post(ResourceKind.DEPLOY_STAGE, body)
        return self._created(response)

    def create_cluster_deploy_stage(self, pipeline_id, predecessor_id, environment_id, manifest_artifact_ids, name, tags):
        response = self._post(ResourceKind.DEPLOY_STAGE, {
            "displayName": name,
            "deployPipelineId": pipeline_id,
            "deployStagePredecessorCollection": {"items": [{"id": predecessor_id}]},
            "deployStageType": "OKE_DEPLOYMENT",
            "okeClusterDeployEnvironmentId": environment_id,
            "kubernetesManifestDeployArtifactIds": list(manifest_artifact_ids),
            "freeformTags": tags,
        })
        return self._created(response)


def _parameters(parameters: Sequence[PipelineParameter]) -> List[Dict[str, str]]:
    return [
        {"name": p.name, "defaultValue": p.default_value, "description": p.description}
        for p in parameters
    ]


def _is_gone(info: ResourceInfo) -> bool:
    return bool(info.lifecycle_state) and info.lifecycle_state.upper() in _GONE_STATES


def _b64(content: str) -> str:
    return base64.b64encode(content.encode("utf-8")).decode("ascii")
