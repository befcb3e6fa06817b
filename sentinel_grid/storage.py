"""
Snapshot persistence for simulation state.

Snapshots are plain JSON-safe dicts produced by the orchestrator. The
in-memory store keeps them for the life of the process; the HTTP store
pushes them to a remote service with bearer-token authentication.
Neither store is required for the simulation to run.
"""

import copy
import json
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import httpx

from .common import logger
from .exceptions import NotFoundError, SentinelGridError


class SnapshotError(SentinelGridError):
    """A snapshot could not be stored or fetched."""


@runtime_checkable
class SnapshotStore(Protocol):
    """Interface for snapshot persistence."""

    def insert(self, snapshot_id: str, payload: Dict[str, Any]):
        ...

    def get(self, snapshot_id: str) -> Dict[str, Any]:
        ...

    def list_ids(self) -> List[str]:
        ...


class InMemorySnapshotStore(SnapshotStore):
    def __init__(self, max_snapshots: Optional[int] = None):
        self._snapshots: Dict[str, Dict[str, Any]] = {}
        self.max_snapshots = max_snapshots

    def insert(self, snapshot_id: str, payload: Dict[str, Any]):
        self._snapshots[snapshot_id] = copy.deepcopy(payload)
        if self.max_snapshots is not None:
            while len(self._snapshots) > self.max_snapshots:
                self._snapshots.pop(next(iter(self._snapshots)))

    def get(self, snapshot_id: str) -> Dict[str, Any]:
        if snapshot_id not in self._snapshots:
            raise NotFoundError(f"Snapshot {snapshot_id} not found")
        return copy.deepcopy(self._snapshots[snapshot_id])

    def list_ids(self) -> List[str]:
        return list(self._snapshots)


class HttpSnapshotStore(SnapshotStore):
    """
    Stores snapshots on a remote service.

    Endpoints:
        PUT  {base_url}/snapshots/{id}  - store a snapshot
        GET  {base_url}/snapshots/{id}  - fetch a snapshot
        GET  {base_url}/snapshots       - list snapshot ids
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 10.0,
                 transport: Optional[httpx.BaseTransport] = None):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.base_url = base_url.rstrip("/")
        self._http = httpx.Client(base_url=self.base_url, headers=headers,
                                  timeout=timeout, transport=transport)

    def insert(self, snapshot_id: str, payload: Dict[str, Any]):
        try:
            response = self._http.put(f"/snapshots/{snapshot_id}", content=json.dumps(payload))
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise SnapshotError(f"Failed to store snapshot {snapshot_id}: {e}") from e
        logger.debug(f"Stored snapshot {snapshot_id} at {self.base_url}")

    def get(self, snapshot_id: str) -> Dict[str, Any]:
        try:
            response = self._http.get(f"/snapshots/{snapshot_id}")
            if response.status_code == 404:
                raise NotFoundError(f"Snapshot {snapshot_id} not found")
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise SnapshotError(f"Failed to fetch snapshot {snapshot_id}: {e}") from e

    def list_ids(self) -> List[str]:
        try:
            response = self._http.get("/snapshots")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise SnapshotError(f"Failed to list snapshots: {e}") from e
        return list(response.json().get("ids", []))

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
