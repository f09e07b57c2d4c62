"""Tests for the contract store and its debounced persistence."""

import json
import threading
import time
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from agentbridge.contracts import (
    ContractNotFoundError,
    ContractStore,
    DebouncedWriter,
    default_contracts_path,
)
from agentbridge.schemas import (
    ContractCreate,
    ContractPriority,
    ContractStatus,
    ContractUpdate,
)


def wait_for(predicate, timeout: float = 2.0) -> bool:
    """Poll until predicate() is true or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestCreate:
    """Test contract creation."""

    def test_defaults_and_first_history_entry(self, contract_store, clock):
        contract = contract_store.create(
            ContractCreate(title="T", initiator="cursor", owner="codex")
        )

        assert contract.id.startswith("ctr-")
        assert contract.status == ContractStatus.PROPOSED
        assert contract.priority == ContractPriority.MEDIUM
        assert contract.tags == []
        assert contract.files == []
        assert contract.created_at == contract.updated_at == clock.now
        assert len(contract.history) == 1
        entry = contract.history[0]
        assert entry.actor == "cursor"
        assert entry.status == ContractStatus.PROPOSED
        assert entry.note == "Contract created"

    def test_create_accepts_camel_case_dict(self, contract_store):
        contract = contract_store.create({
            "title": "Refactor",
            "initiator": "cursor",
            "priority": "high",
            "files": ["src/index.ts"],
            "dueAt": "2026-02-01T00:00:00Z",
            "metadata": {"source": "test"},
        })

        assert contract.priority == ContractPriority.HIGH
        assert contract.files == ["src/index.ts"]
        assert contract.due_at == datetime(2026, 2, 1, tzinfo=timezone.utc)
        assert contract.metadata == {"source": "test"}

    @pytest.mark.parametrize("data", [
        {"title": "", "initiator": "cursor"},
        {"title": "T", "initiator": ""},
        {"title": "T"},
        {"title": "T", "initiator": "cursor", "unknown": 1},
        {"title": "T", "initiator": "cursor", "priority": "urgent"},
    ])
    def test_invalid_input_rejected(self, contract_store, data):
        with pytest.raises(ValidationError):
            contract_store.create(data)
        assert len(contract_store) == 0

    def test_list_contracts_filters_by_status(self, contract_store):
        first = contract_store.create(ContractCreate(title="A", initiator="x"))
        second = contract_store.create(ContractCreate(title="B", initiator="x", status="accepted"))

        assert contract_store.list_contracts() == [first, second]
        assert contract_store.list_contracts(status=ContractStatus.ACCEPTED) == [second]


class TestUpdate:
    """Test update semantics and history gating."""

    @pytest.fixture
    def contract(self, contract_store):
        return contract_store.create(ContractCreate(title="T", initiator="cursor"))

    def test_status_change_appends_history(self, contract_store, contract, clock):
        clock.advance(5)
        updated = contract_store.update(
            contract.id, ContractUpdate(actor="codex", status="in_progress")
        )

        assert updated.status == ContractStatus.IN_PROGRESS
        assert len(updated.history) == 2
        assert updated.history[-1].actor == "codex"
        assert updated.history[-1].status == ContractStatus.IN_PROGRESS
        assert updated.history[-1].timestamp == clock.now
        assert updated.updated_at == clock.now

    def test_same_status_without_note_adds_nothing(self, contract_store, contract):
        updated = contract_store.update(contract.id, ContractUpdate(actor="codex", status="proposed"))
        assert len(updated.history) == 1

    def test_note_alone_appends_history(self, contract_store, contract):
        updated = contract_store.update(contract.id, ContractUpdate(actor="codex", note="Looking"))

        assert len(updated.history) == 2
        assert updated.history[-1].note == "Looking"
        assert updated.history[-1].status == ContractStatus.PROPOSED

    def test_field_only_updates_refresh_timestamp_only(self, contract_store, contract, clock):
        """Owner/tags/files/metadata changes do not grow history."""
        clock.advance(30)
        updated = contract_store.update(
            contract.id,
            ContractUpdate(actor="codex", owner="codex", tags=["api"], files=["a.py"], metadata={"k": 1}),
        )

        assert updated.owner == "codex"
        assert updated.tags == ["api"]
        assert updated.files == ["a.py"]
        assert len(updated.history) == 1
        assert updated.updated_at == clock.now
        assert updated.created_at < updated.updated_at

    def test_history_grows_by_one_per_qualifying_update(self, contract_store, contract):
        updates = [
            ({"status": "accepted"}, 1),
            ({"status": "accepted"}, 0),
            ({"note": "progress"}, 1),
            ({"status": "in_progress", "note": "started"}, 1),
            ({"tags": ["x"]}, 0),
            ({"note": ""}, 0),
            ({"status": "completed"}, 1),
        ]
        for fields, growth in updates:
            before = len(contract_store.get(contract.id).history)
            contract_store.update(contract.id, ContractUpdate(actor="codex", **fields))
            assert len(contract_store.get(contract.id).history) == before + growth

    def test_metadata_shallow_merge(self, contract_store):
        contract = contract_store.create(
            ContractCreate(title="T", initiator="x", metadata={"a": 1, "b": {"nested": True}})
        )

        updated = contract_store.update(
            contract.id, ContractUpdate(actor="x", metadata={"b": 2, "c": 3})
        )

        assert updated.metadata == {"a": 1, "b": 2, "c": 3}

    def test_explicit_null_clears_owner_and_due_date(self, contract_store):
        contract = contract_store.create(
            ContractCreate(title="T", initiator="x", owner="codex", due_at="2026-03-01T00:00:00Z")
        )

        updated = contract_store.update(contract.id, {"actor": "x", "owner": None, "dueAt": None})

        assert updated.owner is None
        assert updated.due_at is None

    def test_omitted_fields_untouched(self, contract_store):
        contract = contract_store.create(ContractCreate(title="T", initiator="x", owner="codex"))

        updated = contract_store.update(contract.id, ContractUpdate(actor="x", note="hi"))

        assert updated.owner == "codex"

    def test_update_requires_a_field(self):
        with pytest.raises(ValidationError):
            ContractUpdate(actor="codex")

    @pytest.mark.parametrize("field", ["status", "note", "metadata", "tags", "files"])
    def test_update_null_only_clears_owner_and_due_date(self, field):
        with pytest.raises(ValidationError):
            ContractUpdate.model_validate({"actor": "codex", field: None})

    def test_update_unknown_contract(self, contract_store):
        with pytest.raises(ContractNotFoundError):
            contract_store.update("ctr-missing", ContractUpdate(actor="x", note="n"))


class TestLinkMessage:
    """Test first-writer-wins message linkage."""

    def test_first_writer_wins(self, contract_store):
        contract = contract_store.create(ContractCreate(title="T", initiator="x"))

        assert contract_store.link_message(contract.id, "msg-1") is True
        assert contract_store.link_message(contract.id, "msg-2") is False
        assert contract_store.get(contract.id).related_message_id == "msg-1"

    def test_preset_related_message_kept(self, contract_store):
        contract = contract_store.create(
            ContractCreate(title="T", initiator="x", related_message_id="msg-0")
        )

        assert contract_store.link_message(contract.id, "msg-1") is False
        assert contract_store.get(contract.id).related_message_id == "msg-0"

    def test_missing_contract_is_noop(self, contract_store):
        assert contract_store.link_message("ctr-missing", "msg-1") is False


class TestPersistence:
    """Test snapshot persistence and reload."""

    def test_flush_writes_snapshot(self, contract_store, contracts_path):
        contract = contract_store.create(ContractCreate(title="T", initiator="x", tags=["a"]))
        assert contract_store.persist_pending

        assert contract_store.flush() is True
        assert not contract_store.persist_pending

        records = json.loads(contracts_path.read_text())
        assert len(records) == 1
        record = records[0]
        assert record["id"] == contract.id
        assert isinstance(record["createdAt"], str)
        assert isinstance(record["history"][0]["timestamp"], str)
        assert record["relatedMessageId"] is None

    def test_reload_restores_contracts(self, contract_store, contracts_path):
        contract = contract_store.create(
            ContractCreate(title="T", initiator="x", due_at="2026-03-01T09:30:00+00:00")
        )
        contract_store.update(contract.id, ContractUpdate(actor="y", status="accepted", note="ok"))
        contract_store.flush()

        reloaded = ContractStore(path=contracts_path, debounce_seconds=60.0)
        restored = reloaded.get(contract.id)

        assert restored is not None
        assert restored.to_wire() == contract_store.get(contract.id).to_wire()
        assert isinstance(restored.created_at, datetime)
        assert isinstance(restored.history[1].timestamp, datetime)
        assert restored.status == ContractStatus.ACCEPTED
        assert [entry.note for entry in restored.history] == ["Contract created", "ok"]

    def test_snapshot_overwritten_wholesale(self, contract_store, contracts_path):
        contract_store.create(ContractCreate(title="A", initiator="x"))
        contract_store.flush()
        contract_store.clear()
        contract_store.create(ContractCreate(title="B", initiator="x"))
        contract_store.flush()

        records = json.loads(contracts_path.read_text())
        assert [record["title"] for record in records] == ["B"]

    def test_missing_or_empty_file_loads_nothing(self, contracts_path):
        assert len(ContractStore(path=contracts_path)) == 0

        contracts_path.parent.mkdir(parents=True)
        contracts_path.write_text("   ")
        assert len(ContractStore(path=contracts_path)) == 0

    def test_corrupt_file_starts_empty(self, contracts_path):
        contracts_path.parent.mkdir(parents=True)
        contracts_path.write_text("{not json")

        store = ContractStore(path=contracts_path)

        assert len(store) == 0

    def test_debounced_write_happens_once(self, contracts_path):
        """A burst of mutations produces a single deferred write."""
        store = ContractStore(path=contracts_path, debounce_seconds=0.05)
        writes = []
        write_snapshot = store._write_snapshot

        def counting_write():
            writes.append(1)
            write_snapshot()

        store._writer._write = counting_write

        for i in range(20):
            store.create(ContractCreate(title=f"Contract {i}", initiator="bench"))

        assert wait_for(lambda: contracts_path.exists() and not store.persist_pending)
        assert len(writes) == 1
        assert len(json.loads(contracts_path.read_text())) == 20

    def test_default_path_honours_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("AGENT_BRIDGE_DATA_DIR", str(tmp_path / "bridge"))
        assert default_contracts_path() == tmp_path / "bridge" / "contracts.json"


class TestDebouncedWriter:
    """Test the debounce scheduler on its own."""

    def test_schedule_coalesces(self):
        calls = []
        writer = DebouncedWriter(lambda: calls.append(1), delay=0.05)

        for _ in range(10):
            writer.schedule()

        assert wait_for(lambda: len(calls) == 1)
        time.sleep(0.1)
        assert calls == [1]
        assert not writer.pending

    def test_flush_writes_immediately_and_cancels_timer(self):
        calls = []
        writer = DebouncedWriter(lambda: calls.append(1), delay=60.0)

        writer.schedule()
        assert writer.flush() is True

        assert calls == [1]
        assert not writer.pending
        assert writer.flush() is True
        assert calls == [1]

    def test_failed_write_is_retried(self):
        attempts = []
        done = threading.Event()

        def flaky_write():
            attempts.append(1)
            if len(attempts) == 1:
                raise OSError("disk full")
            done.set()

        writer = DebouncedWriter(flaky_write, delay=0.01, retry_delay=0.05)
        writer.schedule()

        assert done.wait(timeout=2.0)
        assert len(attempts) == 2
        assert wait_for(lambda: not writer.pending)

    def test_failed_flush_reports_and_retries(self):
        attempts = []

        def flaky_write():
            attempts.append(1)
            if len(attempts) == 1:
                raise OSError("read-only")

        writer = DebouncedWriter(flaky_write, delay=60.0, retry_delay=0.05)
        writer.schedule()

        assert writer.flush() is False
        assert writer.pending
        assert wait_for(lambda: len(attempts) == 2 and not writer.pending)

    def test_failed_write_keeps_memory_state(self, tmp_path):
        """A persistence failure never rolls back the mutation."""
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        store = ContractStore(path=blocker / "contracts.json", debounce_seconds=60.0, retry_seconds=60.0)

        contract = store.create(ContractCreate(title="T", initiator="x"))

        assert store.flush() is False
        assert store.get(contract.id) is contract
        store._writer.cancel()
