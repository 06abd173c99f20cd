"""Configuration loading utilities for devops-provisioner."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

_DEFAULT_CONFIG_PATH = Path("config/default_config.json")

DEFAULT_GRAALVM_VERSION = "23"
DEFAULT_JAVA_VERSION = "21"
DEFAULT_BUILD_IMAGE = "OL7_X86_64_STANDARD_10"


@dataclass
class CloudConfig:
    """Connection settings for the cloud platform REST APIs."""

    profile: str = "DEFAULT"
    config_file: str = "~/.oci/config"
    region: Optional[str] = None            # 覆盖配置文件中的 region
    request_timeout: int = 60               # 单次 HTTP 调用超时（秒）
    work_request_poll_interval: float = 5.0
    work_request_timeout: int = 900
    proxy: Optional[str] = None


@dataclass
class DeployConfig:
    """Feature flags and naming defaults for a provisioning run."""

    bypass_artifacts: bool = False          # 不创建 deliver-artifacts 阶段和产物
    cluster_deploy: bool = True             # 创建部署到集群的流水线
    native_pipelines: bool = False          # 为 native 镜像创建集群部署流水线
    default_branch: str = "master"
    graalvm_version: str = DEFAULT_GRAALVM_VERSION
    java_version: str = DEFAULT_JAVA_VERSION
    build_image: str = DEFAULT_BUILD_IMAGE
    max_project_name_retries: int = 1
    background_workers: int = 4


@dataclass
class InteractionConfig:
    """Configuration for user interaction."""

    enabled: bool = True
    mode: str = "cli"  # "cli" | "auto"


@dataclass
class AppConfig:
    """Top-level configuration."""

    cloud: CloudConfig = field(default_factory=CloudConfig)
    deploy: DeployConfig = field(default_factory=DeployConfig)
    interaction: InteractionConfig = field(default_factory=InteractionConfig)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AppConfig":
        def section(name: str) -> Dict[str, Any]:
            # 过滤掉以下划线开头的注释字段
            data = payload.get(name, {}) or {}
            return {k: v for k, v in data.items() if not k.startswith("_")}

        return cls(
            cloud=CloudConfig(**{**CloudConfig().__dict__, **section("cloud")}),
            deploy=DeployConfig(**{**DeployConfig().__dict__, **section("deploy")}),
            interaction=InteractionConfig(
                **{**InteractionConfig().__dict__, **section("interaction")}
            ),
        )


def _env_flag(name: str) -> Optional[bool]:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load configuration from `path` or the default location.

    Falls back to built-in defaults when no file is found and no explicit
    path was given.

    Environment variables (higher priority than config file):
    - DEVOPS_PROVISIONER_PROFILE: profile name inside the config file
    - DEVOPS_PROVISIONER_CONFIG_FILE: path to the profile config file
    - DEVOPS_PROVISIONER_REGION: region identifier override
    - DEVOPS_PROVISIONER_PROXY: HTTP proxy for REST calls
    - DEVOPS_PROVISIONER_BYPASS_ARTIFACTS: skip deliver-artifacts stages
    - DEVOPS_PROVISIONER_SKIP_CLUSTER: disable cluster deployment pipelines
    - NI_PIPELINES_ENABLED: enable native image cluster deployment pipelines
    """

    if path and not Path(path).is_file():
        raise FileNotFoundError(f"Could not find configuration file: {path}")

    config = AppConfig()
    candidate = Path(path) if path else _DEFAULT_CONFIG_PATH
    if candidate.is_file():
        with candidate.open("r", encoding="utf-8") as handle:
            config = AppConfig.from_dict(json.load(handle))

    env_profile = os.getenv("DEVOPS_PROVISIONER_PROFILE")
    if env_profile:
        config.cloud.profile = env_profile

    env_config_file = os.getenv("DEVOPS_PROVISIONER_CONFIG_FILE")
    if env_config_file:
        config.cloud.config_file = env_config_file

    env_region = os.getenv("DEVOPS_PROVISIONER_REGION")
    if env_region:
        config.cloud.region = env_region

    env_proxy = os.getenv("DEVOPS_PROVISIONER_PROXY")
    if env_proxy:
        config.cloud.proxy = env_proxy

    bypass = _env_flag("DEVOPS_PROVISIONER_BYPASS_ARTIFACTS")
    if bypass is not None:
        config.deploy.bypass_artifacts = bypass

    skip_cluster = _env_flag("DEVOPS_PROVISIONER_SKIP_CLUSTER")
    if skip_cluster is not None:
        config.deploy.cluster_deploy = not skip_cluster

    native_pipelines = _env_flag("NI_PIPELINES_ENABLED")
    if native_pipelines is not None:
        config.deploy.native_pipelines = native_pipelines

    return config
