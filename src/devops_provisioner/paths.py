"""Unified path constants for devops-provisioner.

All local state is stored under the .devops-provisioner directory:
- .devops-provisioner/checkpoints/   # Checkpoint documents, one per folder set
- .devops-provisioner/logs/          # JSON run logs
"""

from pathlib import Path

BASE_DIR = Path(".devops-provisioner")

CHECKPOINTS_DIR = BASE_DIR / "checkpoints"
LOGS_DIR = BASE_DIR / "logs"

# 写入每个部署文件夹内的资源目录
DEVOPS_RESOURCES_DIR = ".devops"


def get_checkpoints_dir() -> Path:
    CHECKPOINTS_DIR.mkdir(parents=True, exist_ok=True)
    return CHECKPOINTS_DIR


def get_logs_dir() -> Path:
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    return LOGS_DIR
