"""Cloud platform access: lookups, creation calls and authentication."""

from .auth import AuthenticationProvider, ConfigFileAuthentication, RequestSigner
from .base import (
    CloudClient,
    CreatedResource,
    PipelineParameter,
    ResourceDirectory,
    ResourceFactory,
    ResourceInfo,
    ResourceKind,
    WorkRequest,
    WorkRequestService,
    WorkRequestStatus,
    create_cloud_client,
)

__all__ = [
    "AuthenticationProvider",
    "CloudClient",
    "ConfigFileAuthentication",
    "CreatedResource",
    "PipelineParameter",
    "RequestSigner",
    "ResourceDirectory",
    "ResourceFactory",
    "ResourceInfo",
    "ResourceKind",
    "WorkRequest",
    "WorkRequestService",
    "WorkRequestStatus",
    "create_cloud_client",
]
