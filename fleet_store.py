"""
fleet_store.py — project-scoped access to the Firebase Realtime Database.

One database per project (dev, prod). Handles are opened on first use and
kept until aclose(); a project whose service-account file is missing fails
on its own without taking the other project down.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

import firebase_admin
from firebase_admin import credentials, db
from firebase_admin.exceptions import FirebaseError

from fleet_config import FleetConfig, StoreProject
from fleet_errors import ConfigurationError, ExternalAPIError, ValidationError, returns_outcome

logger = logging.getLogger("fleet.store")


class StoreHandle(Protocol):
    def reference(self, path: str) -> Any: ...

    def close(self) -> None: ...


class FirebaseHandle:
    """A named firebase_admin app bound to one project's database."""

    def __init__(self, app: firebase_admin.App):
        self.app = app

    def reference(self, path: str) -> db.Reference:
        return db.reference(path, app=self.app)

    def close(self) -> None:
        firebase_admin.delete_app(self.app)


def connect_firebase(project: StoreProject) -> FirebaseHandle:
    try:
        cred = credentials.Certificate(str(project.credentials_path))
    except (ValueError, OSError) as e:
        raise ConfigurationError(f"Invalid service account {project.credentials_path}: {e}")
    app = firebase_admin.initialize_app(
        cred,
        {"databaseURL": project.database_url},
        name=f"fleet-{project.name}",
    )
    return FirebaseHandle(app)


def _normalize_path(path: str) -> str:
    stripped = path.strip().strip("/")
    return stripped or "/"


class StateStore:
    """get/set/update/delete and friends against dev or prod."""

    def __init__(
        self,
        config: FleetConfig,
        connector: Callable[[StoreProject], StoreHandle] = connect_firebase,
    ):
        self.config = config
        self._connect = connector
        self._handles: dict[str, StoreHandle] = {}
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "StateStore":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # -----------------------------------------------------------------------
    # Handles
    # -----------------------------------------------------------------------

    def _project(self, project: str) -> StoreProject:
        if project not in self.config.store_projects:
            valid = " or ".join(f"'{name}'" for name in sorted(self.config.store_projects))
            raise ConfigurationError(f"Invalid project: '{project}'. Must be {valid}.")
        return self.config.store_projects[project]

    async def _handle(self, project: str) -> StoreHandle:
        settings = self._project(project)
        async with self._lock:
            handle = self._handles.get(project)
            if handle is not None:
                return handle
            if not settings.credentials_path.exists():
                raise ConfigurationError(f"Service account not found: {settings.credentials_path}")
            try:
                handle = await asyncio.to_thread(self._connect, settings)
            except (FirebaseError, ValueError) as e:
                raise ConfigurationError(f"Could not open {project} database: {e}")
            self._handles[project] = handle
            logger.info(f"store: opened {project} database {settings.database_url}")
            return handle

    async def aclose(self) -> None:
        async with self._lock:
            handles, self._handles = self._handles, {}
        for project, handle in handles.items():
            try:
                await asyncio.to_thread(handle.close)
            except (FirebaseError, ValueError) as e:
                logger.warning(f"store: error closing {project}: {e}")

    async def _run(self, project: str, path: str, action: str, op: Callable[[Any], Any]) -> Any:
        handle = await self._handle(project)
        try:
            ref = handle.reference(_normalize_path(path))
            return await asyncio.to_thread(op, ref)
        except (FirebaseError, ValueError) as e:
            logger.warning(f"store: {action} {project}:{path} failed: {e}")
            raise ExternalAPIError(f"{action} {project}:{path} failed: {e}") from e

    # -----------------------------------------------------------------------
    # Operations
    # -----------------------------------------------------------------------

    @returns_outcome
    async def get(self, project: str, path: str) -> dict[str, Any]:
        data = await self._run(project, path, "get", lambda ref: ref.get())
        return {"project": project, "path": path, "exists": data is not None, "data": data}

    @returns_outcome
    async def set(self, project: str, path: str, data: Any) -> dict[str, Any]:
        if data is None:
            raise ValidationError("data must not be null; use store_delete to remove a path")
        await self._run(project, path, "set", lambda ref: ref.set(data))
        return {
            "success": True, "project": project, "path": path,
            "message": f"Data written to {path}",
        }

    @returns_outcome
    async def update(self, project: str, path: str, data: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(data, dict) or not data:
            raise ValidationError("update data must be a non-empty object")
        await self._run(project, path, "update", lambda ref: ref.update(data))
        return {
            "success": True, "project": project, "path": path,
            "message": f"Data updated at {path}",
        }

    @returns_outcome
    async def update_many(self, project: str, updates: dict[str, Any]) -> dict[str, Any]:
        """Atomic multi-path write from the root; a None value deletes its path."""
        if not updates:
            raise ValidationError("update_many needs at least one path")
        await self._run(project, "/", "update_many", lambda ref: ref.update(updates))
        return {"success": True, "project": project, "paths": sorted(updates)}

    @returns_outcome
    async def delete(self, project: str, path: str) -> dict[str, Any]:
        await self._run(project, path, "delete", lambda ref: ref.delete())
        return {
            "success": True, "project": project, "path": path,
            "message": f"Data deleted at {project}:{path}",
        }

    @returns_outcome
    async def list_paths(self, project: str, path: str = "/") -> dict[str, Any]:
        shallow = await self._run(project, path, "list_paths", lambda ref: ref.get(shallow=True))
        children = sorted(shallow) if isinstance(shallow, dict) else []
        return {
            "project": project, "path": path,
            "exists": shallow is not None,
            "children": children,
            "childCount": len(children),
        }

    @returns_outcome
    async def export(self, project: str, path: str = "/") -> dict[str, Any]:
        data = await self._run(project, path, "export", lambda ref: ref.get())
        return {
            "project": project, "path": path,
            "exportedAt": datetime.now(timezone.utc).isoformat(),
            "data": data,
        }
