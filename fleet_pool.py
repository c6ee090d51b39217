"""
fleet_pool.py — leases fleet VMs to competitions.

Assignments live in the pool's store project under

    vmPool/assignments/{instanceId}/{assignmentId}
        competitionId, instanceId, assignedAt, releasedAt
    vmPool/competitions/{competitionId}
        instanceId, assignmentId

Assignment records are never deleted; releasing one only sets releasedAt.
An instance has at most one record without releasedAt (its active
assignment) and a competition holds at most one instance, found through
vmPool/competitions. While an instance is assigned,
competitions/{competitionId}/config/vmAddress points at it.

This registry is the only writer of that region. Every operation runs under
the asyncio.Locks of the competition and instance it touches, always taken
competition first, and every change is persisted with a single multi-path
update so readers never see half of it. status() takes no locks and may be
slightly stale.
"""

import asyncio
import contextlib
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable

from fleet_compute import INSTANCE_ID_PATTERN, ComputeAdapter, Instance
from fleet_config import FleetConfig
from fleet_errors import AssignmentError, DataIntegrityError, ValidationError, returns_outcome
from fleet_store import StateStore

logger = logging.getLogger("fleet.pool")

ASSIGNMENTS_PATH = "vmPool/assignments"
COMPETITIONS_PATH = "vmPool/competitions"

# Firebase keys may not contain any of these.
_INVALID_KEY_CHARS = re.compile(r"[.$#\[\]/]")

UNASSIGNABLE_STATES = ("shutting-down", "terminated")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Assignment:
    assignment_id: str
    competition_id: str
    instance_id: str
    assigned_at: str
    released_at: str | None = None

    @property
    def active(self) -> bool:
        return self.released_at is None

    def to_record(self) -> dict[str, Any]:
        record = {
            "competitionId": self.competition_id,
            "instanceId": self.instance_id,
            "assignedAt": self.assigned_at,
        }
        if self.released_at is not None:
            record["releasedAt"] = self.released_at
        return record

    def to_dict(self) -> dict[str, Any]:
        return {
            "assignmentId": self.assignment_id,
            "competitionId": self.competition_id,
            "instanceId": self.instance_id,
            "assignedAt": self.assigned_at,
            "releasedAt": self.released_at,
        }

    @classmethod
    def from_record(cls, assignment_id: str, instance_id: str, raw: Any) -> "Assignment":
        if not isinstance(raw, dict) or "competitionId" not in raw or "assignedAt" not in raw:
            raise DataIntegrityError(f"Malformed assignment record {instance_id}/{assignment_id}: {raw!r}")
        return cls(
            assignment_id=assignment_id,
            competition_id=raw["competitionId"],
            instance_id=raw.get("instanceId", instance_id),
            assigned_at=raw["assignedAt"],
            released_at=raw.get("releasedAt"),
        )


def active_assignment(instance_id: str, records: Any) -> Assignment | None:
    """Pick the active assignment out of one instance's stored history."""
    if records is None:
        return None
    if not isinstance(records, dict):
        raise DataIntegrityError(f"Malformed assignment history for {instance_id}: {records!r}")
    active = [
        a for a in (Assignment.from_record(key, instance_id, raw) for key, raw in records.items())
        if a.active
    ]
    if len(active) > 1:
        raise DataIntegrityError(
            f"Instance {instance_id} has {len(active)} active assignments: "
            + ", ".join(a.competition_id for a in active)
        )
    return active[0] if active else None


def _check_instance_id(instance_id: str) -> None:
    if not INSTANCE_ID_PATTERN.match(instance_id):
        raise ValidationError(f"Invalid instance id '{instance_id}': expected i-<hex>")


def _check_competition_id(competition_id: str) -> None:
    if not competition_id.strip() or _INVALID_KEY_CHARS.search(competition_id):
        raise ValidationError(
            f"Invalid competition id '{competition_id}': must be non-empty "
            "and may not contain . $ # [ ] /"
        )


class PoolRegistry:
    def __init__(
        self,
        config: FleetConfig,
        compute: ComputeAdapter,
        store: StateStore,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config
        self.compute = compute
        self.store = store
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def project(self) -> str:
        return self.config.pool_project

    # -----------------------------------------------------------------------
    # Locks
    # -----------------------------------------------------------------------

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @contextlib.asynccontextmanager
    async def _locked(self, competition_id: str | None = None, instance_id: str | None = None) -> AsyncIterator[None]:
        # competition before instance, everywhere
        async with contextlib.AsyncExitStack() as stack:
            if competition_id is not None:
                await stack.enter_async_context(self._lock_for(f"competition:{competition_id}"))
            if instance_id is not None:
                await stack.enter_async_context(self._lock_for(f"instance:{instance_id}"))
            yield

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def _now(self) -> str:
        return self._clock().isoformat()

    def _vm_address_path(self, competition_id: str) -> str:
        return f"competitions/{competition_id}/config/vmAddress"

    def _vm_address(self, instance: Instance | None) -> str | None:
        if instance is None or not instance.public_ip:
            return None
        return f"{instance.public_ip}:{self.config.service_port}"

    async def _read(self, path: str) -> Any:
        return (await self.store.get(self.project, path)).unwrap()["data"]

    async def _active(self, instance_id: str) -> Assignment | None:
        return active_assignment(instance_id, await self._read(f"{ASSIGNMENTS_PATH}/{instance_id}"))

    async def _held_by(self, competition_id: str) -> Assignment | None:
        """The active assignment of the instance this competition holds, if any."""
        entry = await self._read(f"{COMPETITIONS_PATH}/{competition_id}")
        if entry is None:
            return None
        if not isinstance(entry, dict) or not isinstance(entry.get("instanceId"), str):
            raise DataIntegrityError(f"Malformed {COMPETITIONS_PATH}/{competition_id}: {entry!r}")
        active = await self._active(entry["instanceId"])
        if active is None or active.competition_id != competition_id:
            # stale index entry, the next assign overwrites it
            return None
        return active

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def _new_assignment(self, competition_id: str, instance_id: str) -> Assignment:
        assigned_at = self._clock()
        return Assignment(
            assignment_id=f"{assigned_at:%Y%m%dT%H%M%S%f}-{uuid.uuid4().hex[:8]}",
            competition_id=competition_id,
            instance_id=instance_id,
            assigned_at=assigned_at.isoformat(),
        )

    def _assign_updates(self, assignment: Assignment, instance: Instance) -> dict[str, Any]:
        updates: dict[str, Any] = {
            f"{ASSIGNMENTS_PATH}/{assignment.instance_id}/{assignment.assignment_id}": assignment.to_record(),
            f"{COMPETITIONS_PATH}/{assignment.competition_id}": {
                "instanceId": assignment.instance_id,
                "assignmentId": assignment.assignment_id,
            },
        }
        vm_address = self._vm_address(instance)
        if vm_address:
            updates[self._vm_address_path(assignment.competition_id)] = vm_address
        return updates

    def _release_updates(self, active: Assignment, released_at: str) -> dict[str, Any]:
        return {
            f"{ASSIGNMENTS_PATH}/{active.instance_id}/{active.assignment_id}/releasedAt": released_at,
            f"{COMPETITIONS_PATH}/{active.competition_id}": None,
            self._vm_address_path(active.competition_id): None,
        }

    async def _assignable_instance(self, instance_id: str) -> Instance:
        instance = (await self.compute.describe_instance(instance_id)).unwrap()
        if instance.state in UNASSIGNABLE_STATES:
            raise AssignmentError(f"Instance {instance_id} is {instance.state} and cannot be assigned")
        return instance

    async def _start_if_stopped(self, instance: Instance, result: dict[str, Any]) -> None:
        if instance.state != "stopped":
            return
        logger.info(f"pool: {instance.instance_id} is stopped, starting it")
        started = await self.compute.start_instance(instance.instance_id)
        if started.ok:
            result["startResult"] = started.value
        else:
            logger.warning(f"pool: start of {instance.instance_id} failed: {started.error}")
            result["startError"] = str(started.error)

    def _assigned_result(self, assignment: Assignment, instance: Instance | None, already: bool) -> dict[str, Any]:
        result = {"success": True, **assignment.to_dict(), "alreadyAssigned": already}
        if instance is not None:
            result["publicIp"] = instance.public_ip
            vm_address = self._vm_address(instance)
            if vm_address:
                result["vmAddress"] = vm_address
        return result

    def _check_competition_free(self, competition_id: str, instance_id: str, holder: Assignment | None) -> None:
        if holder is not None and holder.instance_id != instance_id:
            raise AssignmentError(
                f"Competition {competition_id} already has instance {holder.instance_id} "
                "assigned. Release it first."
            )

    async def _refresh_vm_address(self, active: Assignment) -> dict[str, Any]:
        """Same-competition assign: fill in vmAddress once the instance has booted."""
        instance = (await self.compute.describe_instance(active.instance_id)).unwrap()
        result = self._assigned_result(active, instance, already=True)
        vm_address = self._vm_address(instance)
        if vm_address and await self._read(self._vm_address_path(active.competition_id)) != vm_address:
            updates = {self._vm_address_path(active.competition_id): vm_address}
            (await self.store.update_many(self.project, updates)).unwrap()
            logger.info(f"pool: vmAddress of {active.competition_id} set to {vm_address}")
            result["vmAddressUpdated"] = True
        return result

    async def _assign_locked(self, competition_id: str, instance_id: str) -> tuple[dict[str, Any], Instance | None]:
        """assign() body; the caller holds the competition and instance locks."""
        active = await self._active(instance_id)
        if active is not None:
            if active.competition_id == competition_id:
                logger.info(f"pool: {instance_id} already assigned to {competition_id}")
                return await self._refresh_vm_address(active), None
            raise AssignmentError(
                f"Instance {instance_id} is already assigned to competition "
                f"{active.competition_id}. Release it first."
            )
        self._check_competition_free(competition_id, instance_id, await self._held_by(competition_id))
        instance = await self._assignable_instance(instance_id)
        assignment = self._new_assignment(competition_id, instance_id)
        (await self.store.update_many(self.project, self._assign_updates(assignment, instance))).unwrap()
        logger.info(f"pool: assigned {instance_id} to {competition_id}")
        return self._assigned_result(assignment, instance, already=False), instance

    async def _pick_instance(self, competition_id: str) -> tuple[dict[str, Any], Instance | None]:
        """Assign the first available running instance; the caller holds the competition lock."""
        rows = (await self.status()).unwrap()["instances"]
        for row in rows:
            if not row["available"] or row["state"] != "running":
                continue
            async with self._locked(instance_id=row["instanceId"]):
                try:
                    return await self._assign_locked(competition_id, row["instanceId"])
                except AssignmentError as e:
                    # taken or gone since status() was read
                    logger.info(f"pool: skipping {row['instanceId']}: {e}")

        stopped = [r for r in rows if r["available"] and r["state"] == "stopped"]
        if stopped:
            instance_id = stopped[0]["instanceId"]
            logger.info(f"pool: no available instance, starting stopped {instance_id}")
            (await self.compute.start_instance(instance_id)).unwrap()
            raise AssignmentError(
                f"No instances currently available. Stopped instance {instance_id} is starting, "
                "try again in 2-3 minutes."
            )
        raise AssignmentError("No instances available in pool")

    async def _release_locked(self, active: Assignment) -> dict[str, Any]:
        released_at = self._now()
        (await self.store.update_many(self.project, self._release_updates(active, released_at))).unwrap()
        logger.info(f"pool: released {active.instance_id} from {active.competition_id}")
        return {"success": True, **active.to_dict(), "releasedAt": released_at}

    # -----------------------------------------------------------------------
    # Operations
    # -----------------------------------------------------------------------

    @returns_outcome
    async def status(self) -> dict[str, Any]:
        instances = (await self.compute.list_instances()).unwrap()
        history = await self._read(ASSIGNMENTS_PATH) or {}
        if not isinstance(history, dict):
            raise DataIntegrityError(f"Malformed {ASSIGNMENTS_PATH}: {history!r}")

        rows = []
        for instance in instances:
            active = active_assignment(instance.instance_id, history.get(instance.instance_id))
            rows.append({
                **instance.to_dict(),
                "assignedTo": active.competition_id if active else None,
                "assignedAt": active.assigned_at if active else None,
                "available": active is None and instance.state not in UNASSIGNABLE_STATES,
            })
        assigned = sum(1 for r in rows if r["assignedTo"])
        return {
            "instances": rows,
            "total": len(rows),
            "availableCount": sum(1 for r in rows if r["available"]),
            "assignedCount": assigned,
        }

    @returns_outcome
    async def assign(self, competition_id: str, instance_id: str | None = None) -> dict[str, Any]:
        """Lease an instance to a competition; without instance_id, pick one."""
        _check_competition_id(competition_id)
        if instance_id is not None:
            _check_instance_id(instance_id)

        async with self._locked(competition_id, instance_id):
            if instance_id is not None:
                result, instance = await self._assign_locked(competition_id, instance_id)
            else:
                holder = await self._held_by(competition_id)
                if holder is not None:
                    return await self._refresh_vm_address(holder)
                result, instance = await self._pick_instance(competition_id)

        if instance is not None:
            await self._start_if_stopped(instance, result)
        return result

    @returns_outcome
    async def release(self, instance_id: str) -> dict[str, Any]:
        _check_instance_id(instance_id)
        active = await self._active(instance_id)
        async with self._locked(active.competition_id if active else None, instance_id):
            # re-read under the locks
            current = await self._active(instance_id)
            if current is None:
                raise AssignmentError(f"Instance {instance_id} has no active assignment")
            if active is None or current.assignment_id != active.assignment_id:
                raise AssignmentError(f"Assignment of {instance_id} changed concurrently, retry the release")
            return await self._release_locked(current)

    @returns_outcome
    async def release_competition(self, competition_id: str) -> dict[str, Any]:
        """Release whatever instance the competition holds; holding none is not an error."""
        _check_competition_id(competition_id)
        async with self._locked(competition_id):
            holder = await self._held_by(competition_id)
            if holder is None:
                return {
                    "success": True, "competitionId": competition_id, "instanceId": None,
                    "message": "No instance was assigned to this competition",
                }
            async with self._locked(instance_id=holder.instance_id):
                current = await self._active(holder.instance_id)
                if current is None or current.assignment_id != holder.assignment_id:
                    raise AssignmentError(f"Assignment of {holder.instance_id} changed concurrently, retry the release")
                return await self._release_locked(current)

    @returns_outcome
    async def lookup(self, competition_id: str) -> dict[str, Any]:
        """Which instance a competition holds, with its state and address."""
        _check_competition_id(competition_id)
        holder = await self._held_by(competition_id)
        if holder is None:
            return {"competitionId": competition_id, "assigned": False}
        instance = (await self.compute.describe_instance(holder.instance_id)).unwrap()
        return {
            "assigned": True,
            **holder.to_dict(),
            "state": instance.state,
            "publicIp": instance.public_ip,
            "vmAddress": self._vm_address(instance),
        }

    @returns_outcome
    async def reassign(self, instance_id: str, competition_id: str) -> dict[str, Any]:
        """Release then assign as one step; the instance is never seen unassigned."""
        _check_competition_id(competition_id)
        _check_instance_id(instance_id)
        async with self._locked(competition_id, instance_id):
            active = await self._active(instance_id)
            if active is None:
                raise AssignmentError(f"Instance {instance_id} has no active assignment")
            if active.competition_id == competition_id:
                return await self._refresh_vm_address(active)
            self._check_competition_free(competition_id, instance_id, await self._held_by(competition_id))
            instance = await self._assignable_instance(instance_id)
            assignment = self._new_assignment(competition_id, instance_id)
            updates = self._release_updates(active, assignment.assigned_at)
            updates.update(self._assign_updates(assignment, instance))
            (await self.store.update_many(self.project, updates)).unwrap()
            logger.info(f"pool: reassigned {instance_id} from {active.competition_id} to {competition_id}")

        result = self._assigned_result(assignment, instance, already=False)
        result["previousCompetitionId"] = active.competition_id
        await self._start_if_stopped(instance, result)
        return result
