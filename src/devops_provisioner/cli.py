"""Command-line interface for devops-provisioner."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Optional

from .checkpoint import CheckpointStore
from .config import load_config
from .errors import ProvisioningError
from .paths import LOGS_DIR
from .utils.logging import get_logger, set_verbose
from .workflow import DeploymentRequest, DeploymentWorkflow

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devops-provisioner",
        description="Provision cloud DevOps build and deployment pipelines for local folders.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a JSON config file overriding defaults.",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    deploy_parser = subparsers.add_parser(
        "deploy", help="Create (or resume creating) the DevOps resources for folders"
    )
    deploy_parser.add_argument("folders", nargs="+", help="Source folders to deploy")
    deploy_parser.add_argument("--project-name", default=None, help="Name of the new DevOps project")
    deploy_parser.add_argument("--compartment", default=None, help="Compartment OCID")
    deploy_parser.add_argument(
        "--existing-project", default=None,
        help="Add the folders to this existing DevOps project (OCID)",
    )

    # 通用项目的构建命令
    deploy_parser.add_argument("--build-command", default=None, help="Build command for generic folders")
    deploy_parser.add_argument("--artifact", default=None, help="Artifact produced by --build-command")
    deploy_parser.add_argument("--native-build-command", default=None, help="Native executable build command")
    deploy_parser.add_argument("--native-artifact", default=None, help="Artifact produced by --native-build-command")

    deploy_parser.add_argument(
        "--bypass-artifacts", action="store_true",
        help="Do not create artifacts and deliver-artifacts stages",
    )
    deploy_parser.add_argument(
        "--skip-cluster", action="store_true",
        help="Do not create cluster deployment pipelines",
    )
    deploy_parser.add_argument(
        "--non-interactive", action="store_true",
        help="Never prompt; fail when a value is missing",
    )
    deploy_parser.add_argument(
        "--fresh", action="store_true",
        help="Ignore the stored checkpoint and start over",
    )

    # status 子命令 - 查看检查点
    status_parser = subparsers.add_parser(
        "status", help="Show the stored checkpoint for folders"
    )
    status_parser.add_argument("folders", nargs="+", help="Folders of a previous deployment")

    # logs 子命令 - 查看运行日志
    logs_parser = subparsers.add_parser(
        "logs", help="View provisioning run logs"
    )
    logs_parser.add_argument(
        "--file", "-f", type=str,
        help="Show a specific log file"
    )
    logs_parser.add_argument(
        "--latest", action="store_true",
        help="Show the latest run log"
    )

    return parser


def handle_status_command(args: argparse.Namespace) -> int:
    store = CheckpointStore.for_folders(args.folders)
    checkpoint = store.load()
    if checkpoint is None:
        print("📁 No checkpoint found for these folders.")
        return 0

    print(f"\n{'='*60}")
    print(f"📄 Checkpoint: {store.path}")
    print(f"{'='*60}")
    print(f"Profile:     {checkpoint.profile or '-'} ({checkpoint.region or '-'})")
    if checkpoint.compartment:
        print(f"Compartment: {checkpoint.compartment.name or checkpoint.compartment.id}")
    print(f"Project:     {checkpoint.project_name or '-'} {checkpoint.project_id or ''}")
    if checkpoint.cluster:
        print(f"Cluster:     {checkpoint.cluster.name or checkpoint.cluster.id}")
    print(f"Run tag:     {checkpoint.tag or '-'}")

    print(f"\n{'─'*60}")
    for key, slot in sorted(checkpoint.slots.items()):
        print(f"  {_slot_mark(slot)} {key:<32} {slot.value or ''}")
    for name, folder in sorted(checkpoint.repositories.items()):
        print(f"\n📦 {name}")
        for key, slot in sorted(folder.slots.items()):
            print(f"  {_slot_mark(slot)} {key:<32} {slot.value or ''}")
        for sub_name, sub in sorted(folder.subs.items()):
            for key, slot in sorted(sub.slots.items()):
                print(f"  {_slot_mark(slot)} {sub_name + '/' + key:<32} {slot.value or ''}")
    print()
    return 0


def _slot_mark(slot) -> str:
    return "✅" if slot.is_created else "🔄"


def handle_logs_command(args: argparse.Namespace) -> int:
    """Handle the logs subcommand."""
    log_dir = Path.cwd() / LOGS_DIR

    if args.file:
        target = Path(args.file)
        if not target.exists():
            target = log_dir / args.file
        if not target.exists():
            print(f"❌ Log file not found: {args.file}")
            return 1
        show_log_file(target)
        return 0

    log_files = sorted(log_dir.glob("deploy_*.json"), key=lambda p: p.stat().st_mtime, reverse=True) \
        if log_dir.exists() else []
    if not log_files:
        print("📁 No run logs found. Run a deployment first.")
        return 0

    if args.latest:
        show_log_file(log_files[0])
        return 0

    print(f"📁 Run logs in: {log_dir}\n")
    print(f"{'#':<4} {'Status':<12} {'Folders':<40} {'Time':<20} {'File'}")
    print("-" * 100)
    for i, log_file in enumerate(log_files, 1):
        try:
            with open(log_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            print(f"{i:<4} ❓ {'error':<10} {'?':<40} {'?':<20} {log_file.name}")
            continue
        status = data.get("status", "unknown")
        folders = ", ".join(Path(folder).name for folder in data.get("folders", []))
        start_time = (data.get("start_time") or "")[:19].replace("T", " ")
        status_emoji = {"success": "✅", "failed": "❌", "running": "🔄"}.get(status, "❓")
        print(f"{i:<4} {status_emoji} {status:<10} {folders[:40]:<40} {start_time:<20} {log_file.name}")
    return 0


def show_log_file(log_file: Path) -> None:
    """Display a run log file."""
    with open(log_file, "r", encoding="utf-8") as f:
        data = json.load(f)

    status = data.get("status", "unknown")
    status_emoji = {"success": "✅", "failed": "❌", "running": "🔄", "cancelled": "⏹️"}.get(status, "❓")

    print(f"\n{'='*60}")
    print(f"📄 Run Log: {log_file.name}")
    print(f"{'='*60}")
    print(f"Folders: {', '.join(data.get('folders', []))}")
    print(f"Status:  {status_emoji} {status}")
    print(f"Started: {data.get('start_time', '-')}")
    print(f"Ended:   {data.get('end_time') or '-'}")
    if data.get("error"):
        print(f"Error:   {data['error']}")

    print(f"\n{'─'*60}")
    for entry in data.get("steps", []):
        outcome = entry.get("outcome", "?")
        mark = {"created": "➕", "reused": "♻️", "skipped": "⏭️", "failed": "❌"}.get(outcome, "❓")
        where = f"[{entry['folder']}] " if entry.get("folder") else ""
        print(f"  {mark} {where}{entry.get('description', '')} ({outcome})")
        if entry.get("error"):
            print(f"      {entry['error']}")
    print()


def dispatch_command(args: argparse.Namespace) -> int:
    set_verbose(getattr(args, "verbose", False))

    if args.command == "logs":
        return handle_logs_command(args)

    if args.command == "status":
        return handle_status_command(args)

    if args.command == "deploy":
        config = load_config(args.config)
        if args.bypass_artifacts:
            config.deploy.bypass_artifacts = True
        if args.skip_cluster:
            config.deploy.cluster_deploy = False
        if args.non_interactive:
            config.interaction.enabled = False

        request = DeploymentRequest(
            folders=args.folders,
            project_name=args.project_name,
            compartment_id=args.compartment,
            existing_project_id=args.existing_project,
            build_command=args.build_command,
            artifact_location=args.artifact,
            native_build_command=args.native_build_command,
            native_artifact_location=args.native_artifact,
            fresh=args.fresh,
        )
        try:
            result = DeploymentWorkflow(config).run_deploy(request)
        except ProvisioningError as exc:
            logger.error("💥 %s", exc)
            return 1
        return 0 if result.success else 1

    raise ValueError(f"Unsupported command: {args.command}")


def run_cli(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return dispatch_command(args)
