"""
fleet_gateway.py — the one entry point callers talk to.

dispatch(tool, args) validates the arguments against the tool's schema,
routes to exactly one component operation and returns a JSON-serializable
value. Whatever goes wrong underneath comes back as
{"error", "type", "tool", "args"}; dispatch itself never raises.
"""

import json
import logging
import time
from typing import Annotated, Any, Awaitable, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr
from pydantic import ValidationError as SchemaError
from pydantic.alias_generators import to_camel

from fleet_compute import INSTANCE_STATES, ComputeAdapter
from fleet_errors import FleetError, Outcome, ValidationError, error_record
from fleet_pool import PoolRegistry
from fleet_ssh import RemoteDispatcher
from fleet_store import StateStore

logger = logging.getLogger("fleet.gateway")
audit_logger = logging.getLogger("fleet-audit")

NonEmptyStr = Annotated[StrictStr, Field(min_length=1)]
InstanceState = Literal[INSTANCE_STATES]


def _audit(event: str, **kwargs: Any) -> None:
    """Emit a structured JSON audit log entry."""
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


# ---------------------------------------------------------------------------
# Argument schemas (camelCase on the wire)
# ---------------------------------------------------------------------------

class ToolArgs(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )


class NoArgs(ToolArgs):
    pass


class ListInstancesArgs(ToolArgs):
    tag_filter: NonEmptyStr | None = None
    state_filter: InstanceState | None = None


class ListImagesArgs(ToolArgs):
    name_pattern: NonEmptyStr | None = None


class InstanceArgs(ToolArgs):
    instance_id: NonEmptyStr


class CreateImageArgs(ToolArgs):
    instance_id: NonEmptyStr
    name: NonEmptyStr
    description: StrictStr | None = None


class ExecArgs(ToolArgs):
    target: NonEmptyStr
    command: NonEmptyStr
    sudo: StrictBool = False


class MultiExecArgs(ToolArgs):
    targets: Annotated[list[NonEmptyStr], Field(min_length=1)]
    command: NonEmptyStr
    sudo: StrictBool = False


class TransferArgs(ToolArgs):
    target: NonEmptyStr
    local_path: NonEmptyStr
    remote_path: NonEmptyStr


class StorePathArgs(ToolArgs):
    project: StrictStr
    path: NonEmptyStr


class StoreBrowseArgs(ToolArgs):
    project: StrictStr
    path: NonEmptyStr = "/"


class StoreSetArgs(ToolArgs):
    project: StrictStr
    path: NonEmptyStr
    data: Any


class StoreUpdateArgs(ToolArgs):
    project: StrictStr
    path: NonEmptyStr
    data: dict[str, Any]


class PoolAssignArgs(ToolArgs):
    competition_id: NonEmptyStr
    instance_id: NonEmptyStr | None = None


class PoolReassignArgs(ToolArgs):
    competition_id: NonEmptyStr
    instance_id: NonEmptyStr


class CompetitionArgs(ToolArgs):
    competition_id: NonEmptyStr


def _schema_message(tool: str, e: SchemaError) -> str:
    problems = []
    for err in e.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "args"
        problems.append(f"{loc}: {err['msg']}")
    return f"Invalid arguments for {tool}: " + "; ".join(problems)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Outcome):
        value = value.unwrap()
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


Handler = Callable[[Any], Awaitable[Any]]


class ToolGateway:
    """Stateless router from tool name + arguments to one component call."""

    def __init__(
        self,
        compute: ComputeAdapter,
        dispatcher: RemoteDispatcher,
        store: StateStore,
        pool: PoolRegistry,
    ):
        self._tools: dict[str, tuple[type[ToolArgs], Handler]] = {
            # compute
            "list_instances": (ListInstancesArgs, lambda a: compute.list_instances(a.tag_filter, a.state_filter)),
            "list_images": (ListImagesArgs, lambda a: compute.list_images(a.name_pattern)),
            "start_instance": (InstanceArgs, lambda a: compute.start_instance(a.instance_id)),
            "stop_instance": (InstanceArgs, lambda a: compute.stop_instance(a.instance_id)),
            "create_image": (CreateImageArgs, lambda a: compute.create_image(a.instance_id, a.name, a.description)),
            "list_security_group_rules": (NoArgs, lambda a: compute.list_security_group_rules()),
            # remote shell
            "exec": (ExecArgs, lambda a: dispatcher.exec(a.target, a.command, a.sudo)),
            "multi_exec": (MultiExecArgs, lambda a: dispatcher.multi_exec(a.targets, a.command, a.sudo)),
            "upload_file": (TransferArgs, lambda a: dispatcher.upload(a.target, a.local_path, a.remote_path)),
            "download_file": (TransferArgs, lambda a: dispatcher.download(a.target, a.remote_path, a.local_path)),
            # state store
            "store_get": (StorePathArgs, lambda a: store.get(a.project, a.path)),
            "store_set": (StoreSetArgs, lambda a: store.set(a.project, a.path, a.data)),
            "store_update": (StoreUpdateArgs, lambda a: store.update(a.project, a.path, a.data)),
            "store_delete": (StorePathArgs, lambda a: store.delete(a.project, a.path)),
            "store_list_paths": (StoreBrowseArgs, lambda a: store.list_paths(a.project, a.path)),
            "store_export": (StoreBrowseArgs, lambda a: store.export(a.project, a.path)),
            # pool
            "pool_status": (NoArgs, lambda a: pool.status()),
            "pool_assign": (PoolAssignArgs, lambda a: pool.assign(a.competition_id, a.instance_id)),
            "pool_release": (InstanceArgs, lambda a: pool.release(a.instance_id)),
            "pool_release_competition": (CompetitionArgs, lambda a: pool.release_competition(a.competition_id)),
            "pool_lookup": (CompetitionArgs, lambda a: pool.lookup(a.competition_id)),
            "pool_reassign": (PoolReassignArgs, lambda a: pool.reassign(a.instance_id, a.competition_id)),
        }

    @property
    def tool_names(self) -> list[str]:
        return sorted(self._tools)

    def _validate(self, tool: str, args: Any) -> tuple[ToolArgs, Handler]:
        if tool not in self._tools:
            raise ValidationError(f"Unknown tool: {tool}. Available tools: {', '.join(self.tool_names)}")
        if args is None:
            args = {}
        if not isinstance(args, dict):
            raise ValidationError(f"Invalid arguments for {tool}: expected an object, got {type(args).__name__}")
        schema, handler = self._tools[tool]
        try:
            return schema.model_validate(args), handler
        except SchemaError as e:
            raise ValidationError(_schema_message(tool, e))

    async def dispatch(self, tool: str, args: dict[str, Any] | None = None) -> Any:
        started = time.monotonic()
        failed = True
        try:
            parsed, handler = self._validate(tool, args)
            result = _jsonable(await handler(parsed))
            failed = False
        except FleetError as e:
            logger.info(f"{tool}: {e.kind}: {e}")
            result = error_record(e, tool, args)
        except Exception as e:
            logger.exception(f"{tool}: unhandled error")
            result = error_record(e, tool, args)

        _audit(
            "tool_call",
            tool=tool,
            arg_keys=sorted(args) if isinstance(args, dict) else [],
            ok=not failed,
            duration_ms=round((time.monotonic() - started) * 1000, 1),
            **({"error": result["error"]} if failed else {}),
        )
        return result
