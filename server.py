#!/usr/bin/env python3
"""
Fleet MCP — VM fleet control for the broadcast graphics pipeline.

Runs as an MCP server (stdio or streamable-http) that gives agents one
uniform tool surface over the competition VM fleet:

  - EC2 instances and AMIs tagged for the project (boto3)
  - shell commands and file transfer on the VMs (OpenSSH)
  - the dev/prod Firebase Realtime Databases (firebase-admin)
  - the VM pool: which competition is leased which instance

Every tool returns a JSON document. Failures come back as a JSON object
with an "error" field; no tool call raises to the client.
"""

import argparse
import asyncio
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import boto3
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from fleet_compute import ComputeAdapter
from fleet_config import FleetConfig, StoreProject, load_config
from fleet_errors import ConfigurationError
from fleet_gateway import ToolGateway
from fleet_pool import PoolRegistry
from fleet_ssh import RemoteDispatcher
from fleet_store import StateStore, StoreHandle, connect_firebase

logger = logging.getLogger("fleet")


# ---------------------------------------------------------------------------
# Components — built once, passed explicitly, closed on shutdown
# ---------------------------------------------------------------------------

@dataclass
class FleetServices:
    config: FleetConfig
    ec2: Any
    compute: ComputeAdapter
    dispatcher: RemoteDispatcher
    store: StateStore
    pool: PoolRegistry
    gateway: ToolGateway

    async def aclose(self) -> None:
        await self.store.aclose()
        close = getattr(self.ec2, "close", None)
        if close is not None:
            await asyncio.to_thread(close)


def build_services(
    config: FleetConfig,
    ec2_client: Any = None,
    store_connector: Callable[[StoreProject], StoreHandle] = connect_firebase,
    dispatcher: RemoteDispatcher | None = None,
) -> FleetServices:
    ec2 = ec2_client if ec2_client is not None else boto3.client("ec2", region_name=config.aws_region)
    compute = ComputeAdapter(config, ec2)
    dispatcher = dispatcher or RemoteDispatcher(config)
    store = StateStore(config, connector=store_connector)
    pool = PoolRegistry(config, compute, store)
    gateway = ToolGateway(compute, dispatcher, store, pool)
    return FleetServices(config, ec2, compute, dispatcher, store, pool, gateway)


# ---------------------------------------------------------------------------
# MCP Server
# ---------------------------------------------------------------------------

def _build_instructions(config: FleetConfig) -> str:
    """Generate MCP instructions from the loaded configuration."""
    alias_lines = [f"  {name:12s} — {addr}" for name, addr in sorted(config.target_aliases.items())]
    aliases_block = "\n".join(alias_lines) or "  (none)"
    projects = ", ".join(sorted(config.store_projects))

    return (
        "Fleet MCP — VM fleet control for the graphics pipeline.\n"
        "\n"
        f"Instances are those tagged Project={config.project_tag} in {config.aws_region}.\n"
        "\n"
        "Target aliases (any other target is used as a literal address):\n"
        f"{aliases_block}\n"
        "\n"
        "Compute tools:\n"
        "  list_instances / list_images / start_instance / stop_instance\n"
        "  create_image / list_security_group_rules\n"
        "\n"
        "Remote tools:\n"
        "  exec          — One command on one VM. Has a sudo option.\n"
        "  multi_exec    — Same command on several VMs concurrently.\n"
        "  upload_file / download_file — scp transfers.\n"
        "\n"
        f"Store tools (project is one of: {projects}):\n"
        "  store_get / store_set / store_update / store_delete\n"
        "  store_list_paths / store_export\n"
        "\n"
        "Pool tools:\n"
        "  pool_status   — Every instance with its competition assignment.\n"
        "  pool_assign   — By instance, or let the pool pick one.\n"
        "  pool_release / pool_release_competition / pool_reassign / pool_lookup\n"
        "\n"
        "Results are JSON. A result with an \"error\" field is a failure.\n"
    )


def _drop_none(**kwargs: Any) -> dict[str, Any]:
    return {k: v for k, v in kwargs.items() if v is not None}


def create_server(services: FleetServices) -> FastMCP:
    mcp = FastMCP("fleet", instructions=_build_instructions(services.config))
    gateway = services.gateway

    async def _call(tool: str, args: dict[str, Any]) -> str:
        result = await gateway.dispatch(tool, args)
        return json.dumps(result, indent=2, default=str)

    @mcp.custom_route("/health", methods=["GET"])
    async def _health_route(request: Request) -> Response:
        return JSONResponse({
            "status": "ok",
            "tools": gateway.tool_names,
            "targets": dict(services.config.target_aliases),
            "storeProjects": sorted(services.config.store_projects),
        })

    # --- compute ---

    @mcp.tool()
    async def list_instances(tag_filter: str | None = None, state_filter: str | None = None) -> str:
        """List EC2 instances tagged for the project.

        Args:
            tag_filter: Project tag value to match (defaults to the configured tag)
            state_filter: Optional state: running, stopped, pending, stopping, shutting-down, terminated
        """
        return await _call("list_instances", _drop_none(tagFilter=tag_filter, stateFilter=state_filter))

    @mcp.tool()
    async def list_images(name_pattern: str | None = None) -> str:
        """List AMIs owned by this account, newest first.

        Args:
            name_pattern: Name glob (defaults to the configured project patterns)
        """
        return await _call("list_images", _drop_none(namePattern=name_pattern))

    @mcp.tool()
    async def start_instance(instance_id: str) -> str:
        """Start a stopped instance. Returns immediately; boot takes 1-2 minutes.

        Args:
            instance_id: EC2 instance ID (e.g. i-0abc123def456789)
        """
        return await _call("start_instance", {"instanceId": instance_id})

    @mcp.tool()
    async def stop_instance(instance_id: str) -> str:
        """Stop a running instance.

        Args:
            instance_id: EC2 instance ID
        """
        return await _call("stop_instance", {"instanceId": instance_id})

    @mcp.tool()
    async def create_image(instance_id: str, name: str, description: str | None = None) -> str:
        """Create an AMI from an instance without rebooting it.

        Args:
            instance_id: Instance to snapshot
            name: AMI name (e.g. gymnastics-vm-v2.2)
            description: What the image contains
        """
        return await _call("create_image", _drop_none(instanceId=instance_id, name=name, description=description))

    @mcp.tool()
    async def list_security_group_rules() -> str:
        """Show the inbound rules of the fleet's security group."""
        return await _call("list_security_group_rules", {})

    # --- remote shell ---

    @mcp.tool(name="exec")
    async def exec_command(target: str, command: str, sudo: bool = False) -> str:
        """Execute a shell command on one VM over SSH.

        Args:
            target: VM address, or an alias such as "coordinator"
            command: Shell command to execute
            sudo: If True, prepend sudo (assumes passwordless sudo on target)
        """
        return await _call("exec", {"target": target, "command": command, "sudo": sudo})

    @mcp.tool()
    async def multi_exec(targets: list[str], command: str, sudo: bool = False) -> str:
        """Execute the same command on several VMs concurrently.

        One unreachable VM does not affect the others; each result says
        whether its own target succeeded.

        Args:
            targets: VM addresses and/or aliases
            command: Shell command to execute on every target
            sudo: If True, prepend sudo
        """
        return await _call("multi_exec", {"targets": targets, "command": command, "sudo": sudo})

    @mcp.tool()
    async def upload_file(target: str, local_path: str, remote_path: str) -> str:
        """Upload a local file to a VM via scp.

        Args:
            target: VM address or alias
            local_path: File on this machine
            remote_path: Destination path on the VM
        """
        return await _call("upload_file", {"target": target, "localPath": local_path, "remotePath": remote_path})

    @mcp.tool()
    async def download_file(target: str, remote_path: str, local_path: str) -> str:
        """Download a file from a VM via scp.

        Args:
            target: VM address or alias
            remote_path: File on the VM
            local_path: Destination path on this machine
        """
        return await _call("download_file", {"target": target, "remotePath": remote_path, "localPath": local_path})

    # --- state store ---

    @mcp.tool()
    async def store_get(project: str, path: str) -> str:
        """Read data at a path in the dev or prod database.

        Args:
            project: "dev" or "prod"
            path: Slash-delimited path (e.g. competitions/abc/config)
        """
        return await _call("store_get", {"project": project, "path": path})

    @mcp.tool()
    async def store_set(project: str, path: str, data: Any) -> str:
        """Overwrite the data at a path.

        Args:
            project: "dev" or "prod"
            path: Slash-delimited path
            data: Any JSON value
        """
        return await _call("store_set", {"project": project, "path": path, "data": data})

    @mcp.tool()
    async def store_update(project: str, path: str, data: dict[str, Any]) -> str:
        """Merge fields into the object at a path; other fields are kept.

        Args:
            project: "dev" or "prod"
            path: Slash-delimited path
            data: Object of fields to write
        """
        return await _call("store_update", {"project": project, "path": path, "data": data})

    @mcp.tool()
    async def store_delete(project: str, path: str) -> str:
        """Delete the data at a path. Deleting a missing path succeeds.

        Args:
            project: "dev" or "prod"
            path: Slash-delimited path
        """
        return await _call("store_delete", {"project": project, "path": path})

    @mcp.tool()
    async def store_list_paths(project: str, path: str = "/") -> str:
        """List the child keys under a path without reading their data.

        Args:
            project: "dev" or "prod"
            path: Slash-delimited path (default: root)
        """
        return await _call("store_list_paths", {"project": project, "path": path})

    @mcp.tool()
    async def store_export(project: str, path: str = "/") -> str:
        """Export the full subtree at a path with a timestamp.

        Args:
            project: "dev" or "prod"
            path: Slash-delimited path (default: root)
        """
        return await _call("store_export", {"project": project, "path": path})

    # --- pool ---

    @mcp.tool()
    async def pool_status() -> str:
        """Show every pool instance with its state and competition assignment."""
        return await _call("pool_status", {})

    @mcp.tool()
    async def pool_assign(competition_id: str, instance_id: str | None = None) -> str:
        """Assign an instance to a competition, starting it if it is stopped.

        Without instance_id the first available running instance is used; if
        none is running, a stopped one is started and the call asks you to
        try again. Fails if the instance is assigned to another competition
        or the competition already holds another instance. Repeating the call
        for the same pair writes vmAddress once a started instance has an IP.

        Args:
            competition_id: Competition to lease the VM to
            instance_id: EC2 instance ID (optional)
        """
        return await _call("pool_assign", _drop_none(competitionId=competition_id, instanceId=instance_id))

    @mcp.tool()
    async def pool_release(instance_id: str) -> str:
        """Release an instance from its competition. The VM keeps running.

        Args:
            instance_id: EC2 instance ID
        """
        return await _call("pool_release", {"instanceId": instance_id})

    @mcp.tool()
    async def pool_release_competition(competition_id: str) -> str:
        """Release whichever instance a competition holds. Holding none succeeds.

        Args:
            competition_id: Competition to release
        """
        return await _call("pool_release_competition", {"competitionId": competition_id})

    @mcp.tool()
    async def pool_lookup(competition_id: str) -> str:
        """Show the instance a competition holds, with its state and vmAddress.

        Args:
            competition_id: Competition to look up
        """
        return await _call("pool_lookup", {"competitionId": competition_id})

    @mcp.tool()
    async def pool_reassign(instance_id: str, competition_id: str) -> str:
        """Move an assigned instance to another competition in one step.

        Args:
            instance_id: EC2 instance ID
            competition_id: Competition that takes over the VM
        """
        return await _call("pool_reassign", {"instanceId": instance_id, "competitionId": competition_id})

    return mcp


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _setup_logging() -> None:
    logging.basicConfig(
        level=os.environ.get("FLEET_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Audit logger — JSON-lines to ~/.fleet/audit.log
    audit_log_path = Path.home() / ".fleet" / "audit.log"
    audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    audit_handler = logging.FileHandler(audit_log_path)
    audit_handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger = logging.getLogger("fleet-audit")
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False


async def _serve(services: FleetServices, mcp: FastMCP, transport: str, host: str, port: int) -> None:
    try:
        if transport == "streamable-http":
            import uvicorn

            app = mcp.streamable_http_app()
            logger.info(f"fleet: starting HTTP server on {host}:{port}")
            config = uvicorn.Config(app, host=host, port=port, log_level="info")
            await uvicorn.Server(config).serve()
        else:
            await mcp.run_stdio_async()
    finally:
        try:
            logger.info("fleet: shutting down, closing clients...")
            await services.aclose()
        except Exception:
            logger.exception("fleet: error during shutdown")


def main() -> None:
    _setup_logging()

    parser = argparse.ArgumentParser(description="Fleet MCP server")
    parser.add_argument("--transport", choices=["stdio", "streamable-http"], default="stdio")
    parser.add_argument("--port", type=int, default=8222)
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--config", type=Path, default=None, help="path to fleet.yaml")
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        raise SystemExit(str(e))

    services = build_services(config)
    mcp = create_server(services)
    logger.info(
        f"fleet: {len(services.gateway.tool_names)} tools, region {config.aws_region}, "
        f"tag {config.project_tag}, pool project {config.pool_project}"
    )
    asyncio.run(_serve(services, mcp, args.transport, args.host, args.port))


if __name__ == "__main__":
    main()
