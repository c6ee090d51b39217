"""Shared fixtures: a fleet config in tmp_path and in-memory backends."""
import asyncio
import copy
import sys
import threading
from pathlib import Path
from types import MappingProxyType

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from fleet_compute import Instance
from fleet_config import FleetConfig, StoreProject
from fleet_errors import ExternalAPIError, returns_outcome
from fleet_store import StateStore


# ---------------------------------------------------------------------------
# In-memory stand-in for one Firebase Realtime Database
# ---------------------------------------------------------------------------

def _split(path):
    return [p for p in path.strip("/").split("/") if p]


class FakeDatabase:
    def __init__(self):
        self.root = {}
        self.closed = False
        self.update_calls = []
        self._lock = threading.Lock()

    def reference(self, path):
        return FakeReference(self, _split(path))

    def close(self):
        self.closed = True

    def read(self, parts):
        with self._lock:
            node = self.root
            for part in parts:
                if not isinstance(node, dict) or part not in node:
                    return None
                node = node[part]
            return copy.deepcopy(node)

    def write(self, parts, value):
        with self._lock:
            self._write(parts, value)

    def write_many(self, base, updates):
        with self._lock:
            for key, value in updates.items():
                self._write(base + _split(key), value)

    def remove(self, parts):
        with self._lock:
            self._remove(parts)

    def _write(self, parts, value):
        if value is None:
            self._remove(parts)
            return
        if not parts:
            self.root = copy.deepcopy(value)
            return
        node = self.root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[parts[-1]] = copy.deepcopy(value)

    def _remove(self, parts):
        if not parts:
            self.root = {}
            return
        chain = [self.root]
        node = self.root
        for part in parts[:-1]:
            node = node.get(part) if isinstance(node, dict) else None
            if not isinstance(node, dict):
                return
            chain.append(node)
        chain[-1].pop(parts[-1], None)
        # Firebase does not keep empty objects around
        for i in range(len(parts) - 1, 0, -1):
            if chain[i]:
                break
            chain[i - 1].pop(parts[i - 1], None)


class FakeReference:
    def __init__(self, database, parts):
        self.database = database
        self.parts = parts

    def get(self, shallow=False):
        value = self.database.read(self.parts)
        if value is None or value == {}:
            return None
        if shallow and isinstance(value, dict):
            return {key: True for key in value}
        return value

    def set(self, value):
        if value is None:
            raise ValueError("Value must not be None.")
        self.database.write(self.parts, value)

    def update(self, value):
        if not value or not isinstance(value, dict):
            raise ValueError("Value argument must be a non-empty dictionary.")
        self.database.update_calls.append(dict(value))
        self.database.write_many(self.parts, value)

    def delete(self):
        self.database.remove(self.parts)


# ---------------------------------------------------------------------------
# In-memory compute backend for pool tests
# ---------------------------------------------------------------------------

def make_instance(instance_id, state="running", public_ip="203.0.113.20", name="graphics-vm"):
    return Instance(
        instance_id=instance_id,
        name=name,
        state=state,
        public_ip=public_ip if state == "running" else None,
        private_ip="10.0.0.5",
        instance_type="c5.xlarge",
        launch_time="2025-01-10T12:00:00+00:00",
    )


class FakeCompute:
    def __init__(self, instances):
        self.instances = {i.instance_id: i for i in instances}
        self.started = []
        self.fail_start = False

    @returns_outcome
    async def list_instances(self, tag_filter=None, state_filter=None):
        await asyncio.sleep(0)
        return [i for i in self.instances.values() if state_filter in (None, i.state)]

    @returns_outcome
    async def describe_instance(self, instance_id):
        await asyncio.sleep(0)
        if instance_id not in self.instances:
            raise ExternalAPIError(
                f"describe_instances failed (InvalidInstanceID.NotFound): "
                f"The instance ID '{instance_id}' does not exist"
            )
        return self.instances[instance_id]

    @returns_outcome
    async def start_instance(self, instance_id):
        if self.fail_start:
            raise ExternalAPIError("start_instances failed (IncorrectInstanceState): not stopped")
        self.started.append(instance_id)
        return {
            "instanceId": instance_id,
            "previousState": "stopped",
            "currentState": "pending",
            "message": f"Instance {instance_id} is starting.",
        }


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config(tmp_path):
    key = tmp_path / "fleet-key.pem"
    key.write_text("not a real key\n")
    projects = {}
    for name in ("dev", "prod"):
        sa = tmp_path / f"{name}-sa.json"
        sa.write_text("{}")
        projects[name] = StoreProject(
            name=name,
            database_url=f"https://{name}.example.firebaseio.com",
            credentials_path=sa,
        )
    return FleetConfig(
        ssh_key_path=key,
        connect_timeout=2,
        command_timeout=5,
        target_aliases=MappingProxyType({"coordinator": "203.0.113.10"}),
        pool_project="dev",
        store_projects=MappingProxyType(projects),
    )


@pytest.fixture
def databases():
    return {"dev": FakeDatabase(), "prod": FakeDatabase()}


@pytest.fixture
def connector(databases):
    def connect(project):
        return databases[project.name]
    return connect


@pytest.fixture
def store(config, connector):
    return StateStore(config, connector=connector)
