"""Task contract store with status history and debounced JSON persistence."""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from agentbridge.schemas import (
    ContractCreate,
    ContractHistoryEntry,
    ContractStatus,
    ContractUpdate,
    TaskContract,
)

logger = logging.getLogger(__name__)

DATA_DIR_ENV = "AGENT_BRIDGE_DATA_DIR"
DEFAULT_DATA_DIR = Path.home() / ".agentbridge"
CONTRACTS_FILENAME = "contracts.json"

PERSIST_DEBOUNCE_SECONDS = 1.0
PERSIST_RETRY_SECONDS = 5.0


class ContractNotFoundError(Exception):
    """Raised when a contract id is unknown."""

    def __init__(self, contract_id: str):
        super().__init__(f"Contract not found: {contract_id}")
        self.contract_id = contract_id


def default_contracts_path() -> Path:
    """Resolve the contracts file, honouring AGENT_BRIDGE_DATA_DIR."""
    data_dir = os.environ.get(DATA_DIR_ENV)
    base = Path(data_dir).expanduser() if data_dir else DEFAULT_DATA_DIR
    return base / CONTRACTS_FILENAME


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


class DebouncedWriter:
    """Coalesce bursts of write requests into a single deferred write.

    Each ``schedule()`` (re)arms a one-shot timer. When it fires the write
    callback runs; on failure the error is logged and the write is retried
    after ``retry_delay``. ``flush()`` performs any pending write
    immediately on the calling thread.
    """

    def __init__(
        self,
        write: Callable[[], None],
        delay: float = PERSIST_DEBOUNCE_SECONDS,
        retry_delay: float = PERSIST_RETRY_SECONDS,
    ):
        self._write = write
        self.delay = delay
        self.retry_delay = retry_delay
        self._timer: threading.Timer | None = None
        self._pending = False
        self._state_lock = threading.Lock()
        self._write_lock = threading.Lock()

    @property
    def pending(self) -> bool:
        return self._pending

    def schedule(self) -> None:
        with self._state_lock:
            self._pending = True
            self._arm(self.delay)

    def flush(self) -> bool:
        """Write now if anything is pending.

        Returns:
            False if the write failed (a retry is then scheduled), else True
        """
        with self._state_lock:
            self._cancel()
            if not self._pending:
                return True
        return self._run()

    def cancel(self) -> None:
        """Drop any pending write without performing it."""
        with self._state_lock:
            self._cancel()
            self._pending = False

    def _fire(self) -> None:
        with self._state_lock:
            self._timer = None
            if not self._pending:
                return
        self._run()

    def _run(self) -> bool:
        with self._write_lock:
            with self._state_lock:
                self._pending = False
            try:
                self._write()
            except Exception:
                logger.exception(f"Persistence write failed, retrying in {self.retry_delay}s")
                with self._state_lock:
                    self._pending = True
                    if self._timer is None:
                        self._arm(self.retry_delay)
                return False
        return True

    def _arm(self, delay: float) -> None:
        # Caller holds self._state_lock.
        self._cancel()
        self._timer = threading.Timer(delay, self._fire)
        self._timer.daemon = True
        self._timer.start()

    def _cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class ContractStore:
    """In-memory contract map backed by a single JSON snapshot file.

    Every mutation updates memory synchronously and schedules a debounced
    rewrite of the whole snapshot. In-memory state is authoritative; a
    failed write never rolls a mutation back.
    """

    def __init__(
        self,
        path: Path | str | None = None,
        debounce_seconds: float = PERSIST_DEBOUNCE_SECONDS,
        retry_seconds: float = PERSIST_RETRY_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
        autoload: bool = True,
    ):
        """Initialize the store.

        Args:
            path: Snapshot file (defaults to $AGENT_BRIDGE_DATA_DIR/contracts.json)
            debounce_seconds: Coalescing window for writes
            retry_seconds: Delay before retrying a failed write
            clock: Source of timestamps
            autoload: Load the existing snapshot immediately
        """
        self.path = Path(path) if path else default_contracts_path()
        self._clock = clock
        self._contracts: dict[str, TaskContract] = {}
        self._lock = threading.RLock()
        self._writer = DebouncedWriter(
            self._write_snapshot,
            delay=debounce_seconds,
            retry_delay=retry_seconds,
        )

        if autoload:
            self.load()

    def __len__(self) -> int:
        return len(self._contracts)

    # --- Persistence ---

    def load(self) -> int:
        """Replace in-memory contracts with the on-disk snapshot.

        Returns:
            Number of contracts loaded
        """
        if not self.path.exists():
            return 0

        try:
            raw = self.path.read_text(encoding="utf-8")
            records = json.loads(raw) if raw.strip() else []
            contracts = [TaskContract.model_validate(record) for record in records]
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"Failed to load contracts from {self.path}: {e}")
            return 0

        with self._lock:
            self._contracts = {contract.id: contract for contract in contracts}

        logger.info(f"Loaded {len(contracts)} contracts from {self.path}")
        return len(contracts)

    def snapshot(self) -> list[dict[str, Any]]:
        """Serialize every contract to its persisted (camelCase, ISO-8601) form."""
        with self._lock:
            return [contract.to_wire() for contract in self._contracts.values()]

    def flush(self) -> bool:
        """Write any pending changes synchronously."""
        return self._writer.flush()

    def close(self) -> None:
        self.flush()

    @property
    def persist_pending(self) -> bool:
        return self._writer.pending

    def _write_snapshot(self) -> None:
        records = self.snapshot()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(json.dumps(records, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)
        logger.debug(f"Persisted {len(records)} contracts to {self.path}")

    # --- Operations ---

    def create(self, data: ContractCreate | dict[str, Any]) -> TaskContract:
        """Create a contract and record its initial history entry.

        Raises:
            pydantic.ValidationError: If ``data`` is a dict that fails validation
        """
        if not isinstance(data, ContractCreate):
            data = ContractCreate.model_validate(data)

        now = self._clock()
        contract = TaskContract(
            id=f"ctr-{_new_id()}",
            title=data.title,
            description=data.description,
            initiator=data.initiator,
            owner=data.owner,
            status=data.status,
            priority=data.priority,
            tags=list(data.tags),
            files=list(data.files),
            created_at=now,
            updated_at=now,
            due_at=data.due_at,
            metadata=dict(data.metadata) if data.metadata is not None else None,
            related_message_id=data.related_message_id,
            history=[
                ContractHistoryEntry(
                    id=f"hist-{_new_id()}",
                    timestamp=now,
                    actor=data.initiator,
                    status=data.status,
                    note="Contract created",
                )
            ],
        )

        with self._lock:
            self._contracts[contract.id] = contract
        self._writer.schedule()

        logger.info(f"Created contract {contract.id}: {contract.title!r}")
        return contract

    def get(self, contract_id: str) -> TaskContract | None:
        with self._lock:
            return self._contracts.get(contract_id)

    def list_contracts(self, status: ContractStatus | None = None) -> list[TaskContract]:
        """Return contracts in creation order, optionally filtered by status."""
        with self._lock:
            contracts = list(self._contracts.values())
        if status is not None:
            contracts = [contract for contract in contracts if contract.status == status]
        return contracts

    def update(self, contract_id: str, update: ContractUpdate | dict[str, Any]) -> TaskContract:
        """Apply an update, appending history only for a status change or a note.

        Raises:
            ContractNotFoundError: If the contract does not exist
            pydantic.ValidationError: If ``update`` is a dict that fails validation
        """
        if not isinstance(update, ContractUpdate):
            update = ContractUpdate.model_validate(update)
        given = update.model_fields_set

        with self._lock:
            contract = self._contracts.get(contract_id)
            if contract is None:
                raise ContractNotFoundError(contract_id)

            now = self._clock()
            status_changed = update.status is not None and update.status != contract.status
            if status_changed:
                contract.status = update.status

            if "owner" in given:
                contract.owner = update.owner
            if update.tags is not None:
                contract.tags = list(update.tags)
            if update.files is not None:
                contract.files = list(update.files)
            if update.metadata is not None:
                contract.metadata = {**(contract.metadata or {}), **update.metadata}
            if "due_at" in given:
                contract.due_at = update.due_at

            contract.updated_at = now

            if status_changed or update.note:
                contract.history.append(
                    ContractHistoryEntry(
                        id=f"hist-{_new_id()}",
                        timestamp=now,
                        actor=update.actor,
                        status=contract.status,
                        note=update.note,
                    )
                )
        self._writer.schedule()

        logger.info(f"Updated contract {contract_id} by {update.actor} (status={contract.status.value})")
        return contract

    def link_message(self, contract_id: str, message_id: str) -> bool:
        """Attach a message to a contract unless one is already attached.

        Returns:
            True if the link was made
        """
        with self._lock:
            contract = self._contracts.get(contract_id)
            if contract is None or contract.related_message_id:
                return False
            contract.related_message_id = message_id
        self._writer.schedule()
        return True

    def clear(self) -> None:
        """Remove every contract. Intended for test isolation."""
        with self._lock:
            self._contracts.clear()
        self._writer.schedule()
