"""HTTP client for agent processes talking to the Agent Bridge broker."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from agentbridge.schemas import (
    BridgeEvent,
    ContractPriority,
    Message,
    ResourceLock,
    TaskContract,
)

logger = logging.getLogger(__name__)

BRIDGE_URL_ENV = "AGENT_BRIDGE_URL"
DEFAULT_BRIDGE_URL = "http://localhost:3000"
DEFAULT_TIMEOUT = 10.0
DEFAULT_LOCK_TTL = 120.0

_PRIORITIES = {priority.value for priority in ContractPriority}
_UPDATE_FIELDS = {
    "status": "status",
    "owner": "owner",
    "note": "note",
    "metadata": "metadata",
    "tags": "tags",
    "files": "files",
    "due_at": "dueAt",
}


def default_bridge_url() -> str:
    return os.environ.get(BRIDGE_URL_ENV, DEFAULT_BRIDGE_URL)


class BridgeClientError(Exception):
    """Raised when the broker answers with an error status."""

    def __init__(self, status_code: int, detail: str, error_code: str | None = None):
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail
        self.error_code = error_code


@dataclass
class LockResult:
    """Outcome of a lock attempt that does not raise on conflict."""

    success: bool
    lock: ResourceLock | None = None
    status_code: int | None = None
    error: str | None = None
    holder: str | None = None


@dataclass
class LockBatch:
    """Outcome of locking several resources."""

    acquired: list[str] = field(default_factory=list)
    failures: list[dict[str, str]] = field(default_factory=list)


def normalise_priority(priority: str | None) -> str:
    """Map free-form priority input onto a known priority, defaulting to medium."""
    if not priority:
        return ContractPriority.MEDIUM.value
    value = str(priority).lower()
    return value if value in _PRIORITIES else ContractPriority.MEDIUM.value


def parse_sse(lines: Iterable[str]) -> Iterator[BridgeEvent]:
    """Parse text/event-stream lines into events.

    Comment lines (heartbeats) are ignored; a blank line ends a frame.
    Frames whose data is not a bridge event are skipped.
    """
    data_lines: list[str] = []
    for line in lines:
        line = line.rstrip("\r\n")
        if not line:
            if data_lines:
                payload = "\n".join(data_lines)
                data_lines = []
                try:
                    yield BridgeEvent.model_validate(json.loads(payload))
                except ValueError as e:
                    logger.warning(f"Skipping malformed event frame: {e}")
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if name == "data":
            data_lines.append(value[1:] if value.startswith(" ") else value)


class BridgeClient:
    """Synchronous client for the broker's HTTP API."""

    def __init__(
        self,
        base_url: str | None = None,
        agent_name: str = "agent",
        timeout: float = DEFAULT_TIMEOUT,
        http: httpx.Client | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Broker URL (defaults to $AGENT_BRIDGE_URL or localhost:3000)
            agent_name: Name used as sender, initiator, actor and lock holder
            timeout: Request timeout in seconds
            http: Preconfigured httpx client (e.g. a test client) to use instead
        """
        self.base_url = (base_url or default_bridge_url()).rstrip("/")
        self.agent_name = agent_name
        self._http = http or httpx.Client(base_url=self.base_url, timeout=timeout)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> BridgeClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = self._http.request(method, path, **kwargs)
        if response.is_success:
            return response.json()

        try:
            body = response.json()
        except ValueError:
            body = {}
        raise BridgeClientError(
            response.status_code,
            body.get("detail", response.text),
            body.get("errorCode"),
        )

    # --- Messages ---

    def publish_message(
        self,
        recipient: str,
        content: str | dict[str, Any],
        contract_id: str | None = None,
        contract: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Publish a message; dict content is serialized to JSON.

        Returns:
            Broker response with messageId and, when linked, contractId
        """
        payload: dict[str, Any] = {
            "recipient": recipient,
            "content": content if isinstance(content, str) else json.dumps(content),
            "sender": self.agent_name,
        }
        if contract_id is not None:
            payload["contractId"] = contract_id
        if contract is not None:
            payload["contract"] = {"initiator": self.agent_name, **contract}
        return self._request("POST", "/publish_message", json=payload)

    def fetch_messages(self, recipient: str | None = None) -> list[Message]:
        body = self._request("GET", f"/fetch_messages/{recipient or self.agent_name}")
        return [Message.model_validate(item) for item in body["messages"]]

    def ack_messages(self, ids: Iterable[str]) -> int:
        body = self._request("POST", "/ack_message", json={"ids": list(ids)})
        return body["acknowledgedCount"]

    # --- Contracts ---

    def create_contract(
        self,
        title: str,
        description: str | None = None,
        owner: str | None = None,
        priority: str | None = None,
        tags: list[str] | None = None,
        files: list[str] | None = None,
        due_at: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TaskContract:
        payload: dict[str, Any] = {
            "title": title,
            "initiator": self.agent_name,
            "priority": normalise_priority(priority),
            "tags": tags or [],
            "files": files or [],
        }
        optional = {"description": description, "owner": owner, "dueAt": due_at, "metadata": metadata}
        payload.update({key: value for key, value in optional.items() if value is not None})

        body = self._request("POST", "/contracts", json=payload)
        return TaskContract.model_validate(body["contract"])

    def get_contract(self, contract_id: str) -> TaskContract:
        body = self._request("GET", f"/contracts/{contract_id}")
        return TaskContract.model_validate(body["contract"])

    def list_contracts(self, status: str | None = None) -> list[TaskContract]:
        params = {"status": status} if status else None
        body = self._request("GET", "/contracts", params=params)
        return [TaskContract.model_validate(item) for item in body["contracts"]]

    def update_contract(self, contract_id: str, actor: str | None = None, **changes: Any) -> TaskContract:
        """Update a contract. Pass ``owner=None`` or ``due_at=None`` to clear them.

        Accepted changes: status, owner, note, metadata, tags, files, due_at.
        """
        unknown = set(changes) - set(_UPDATE_FIELDS)
        if unknown:
            raise TypeError(f"Unexpected contract fields: {sorted(unknown)}")

        payload: dict[str, Any] = {"actor": actor or self.agent_name}
        for key, value in changes.items():
            if value is not None or key in ("owner", "due_at"):
                payload[_UPDATE_FIELDS[key]] = value

        body = self._request("PATCH", f"/contracts/{contract_id}/status", json=payload)
        return TaskContract.model_validate(body["contract"])

    # --- Locks ---

    def lock_resource(self, resource: str, ttl: float = DEFAULT_LOCK_TTL) -> LockResult:
        """Try to lock a resource for this agent without raising on conflict."""
        response = self._http.post(
            "/lock_resource",
            json={"resource": resource, "holder": self.agent_name, "ttl": ttl},
        )
        body = response.json()
        if response.is_success:
            return LockResult(success=True, lock=ResourceLock.model_validate(body["lock"]))
        return LockResult(
            success=False,
            status_code=response.status_code,
            error=body.get("detail"),
            holder=body.get("holder"),
        )

    def renew_lock(self, resource: str, ttl: float = DEFAULT_LOCK_TTL) -> ResourceLock:
        body = self._request("POST", "/renew_lock", json={"resource": resource, "ttl": ttl})
        return ResourceLock.model_validate(body["lock"])

    def unlock_resource(self, resource: str) -> bool:
        """Release a lock; returns False if there was nothing to release."""
        try:
            self._request("DELETE", f"/unlock_resource/{resource}")
        except BridgeClientError as e:
            if e.status_code == 404:
                return False
            raise
        return True

    def lock_resources(self, resources: Iterable[str], ttl: float = DEFAULT_LOCK_TTL) -> LockBatch:
        batch = LockBatch()
        for resource in resources:
            result = self.lock_resource(resource, ttl=ttl)
            if result.success:
                batch.acquired.append(resource)
            elif result.status_code == 409:
                batch.failures.append({"resource": resource, "reason": "locked"})
            else:
                batch.failures.append({"resource": resource, "reason": result.error or "unknown"})
        return batch

    def release_resources(self, resources: Iterable[str]) -> None:
        for resource in resources:
            self.unlock_resource(resource)

    # --- Events ---

    def iter_events(self, last_event_id: str | None = None) -> Iterator[BridgeEvent]:
        """Stream events from the broker until the connection closes."""
        headers = {"Last-Event-ID": last_event_id} if last_event_id else {}
        with self._http.stream(
            "GET",
            "/events",
            headers=headers,
            timeout=httpx.Timeout(DEFAULT_TIMEOUT, read=None),
        ) as response:
            response.raise_for_status()
            yield from parse_sse(response.iter_lines())
