"""Coordination façade composing the message, contract, lock and event stores."""

from __future__ import annotations

import atexit
import logging
from collections.abc import Iterable

from agentbridge.contracts import ContractNotFoundError, ContractStore
from agentbridge.events import EventBroadcaster
from agentbridge.locks import LockRegistry
from agentbridge.messages import MessageStore
from agentbridge.schemas import (
    ContractCreate,
    ContractStatus,
    ContractUpdate,
    Message,
    PublishMessageRequest,
    ResourceLock,
    TaskContract,
)

logger = logging.getLogger(__name__)


class Bridge:
    """Coordination operations over injected stores.

    Inputs arrive as validated schema objects, so a failing request never
    reaches a store. Events are emitted only after the state change they
    describe has been applied.
    """

    def __init__(
        self,
        contracts: ContractStore,
        messages: MessageStore | None = None,
        locks: LockRegistry | None = None,
        events: EventBroadcaster | None = None,
    ):
        self.events = events or EventBroadcaster()
        self.contracts = contracts
        self.messages = messages or MessageStore(events=self.events)
        self.locks = locks or LockRegistry(events=self.events)

    # --- Messages ---

    def publish_message(self, request: PublishMessageRequest) -> tuple[Message, TaskContract | None]:
        """Publish a message, creating or linking its contract first.

        Raises:
            ContractNotFoundError: If ``contract_id`` names no contract
        """
        contract: TaskContract | None = None
        if request.contract is not None:
            contract = self.create_contract(request.contract)
        elif request.contract_id is not None:
            contract = self.contracts.get(request.contract_id)
            if contract is None:
                raise ContractNotFoundError(request.contract_id)

        message = self.messages.publish(
            recipient=request.recipient,
            content=request.content,
            sender=request.sender,
            contract_id=contract.id if contract else None,
        )

        if contract is not None and self.contracts.link_message(contract.id, message.id):
            self.events.publish(
                "contract.message_linked",
                {"contractId": contract.id, "messageId": message.id},
            )

        self.events.publish("message.published", {"message": message.to_wire()})
        logger.info(f"Message {message.id} published to {message.recipient}")
        return message, contract

    def fetch_messages(self, recipient: str) -> list[Message]:
        return self.messages.fetch_pending(recipient)

    def get_message(self, message_id: str) -> Message:
        return self.messages.get(message_id)

    def acknowledge(self, ids: Iterable[str]) -> int:
        return self.messages.acknowledge(ids)

    # --- Contracts ---

    def create_contract(self, data: ContractCreate) -> TaskContract:
        contract = self.contracts.create(data)
        self.events.publish(
            "contract.created",
            {"contract": contract.to_wire(), "actor": contract.initiator},
        )
        return contract

    def get_contract(self, contract_id: str) -> TaskContract:
        """Raises ContractNotFoundError if the contract does not exist."""
        contract = self.contracts.get(contract_id)
        if contract is None:
            raise ContractNotFoundError(contract_id)
        return contract

    def list_contracts(self, status: ContractStatus | None = None) -> list[TaskContract]:
        return self.contracts.list_contracts(status=status)

    def update_contract(self, contract_id: str, update: ContractUpdate) -> TaskContract:
        contract = self.contracts.update(contract_id, update)
        self.events.publish(
            "contract.updated",
            {"contract": contract.to_wire(), "actor": update.actor, "note": update.note},
        )
        return contract

    # --- Locks (the registry emits its own events) ---

    def lock_resource(self, resource: str, holder: str, ttl: float) -> ResourceLock:
        return self.locks.acquire(resource, holder, ttl)

    def renew_lock(self, resource: str, ttl: float) -> ResourceLock:
        return self.locks.renew(resource, ttl)

    def unlock_resource(self, resource: str) -> ResourceLock:
        return self.locks.release(resource)

    def list_locks(self) -> list[ResourceLock]:
        return self.locks.list_locks()

    # --- Lifecycle ---

    def reset(self) -> None:
        """Clear every store and the event history."""
        self.messages.clear()
        self.locks.clear()
        self.contracts.clear()
        self.events.clear()

    def close(self) -> None:
        """Flush pending contract writes."""
        self.contracts.flush()
        logger.info("Bridge closed")


_bridge_instance: Bridge | None = None


def get_bridge() -> Bridge:
    """Get or create the process-wide bridge backed by the default data dir."""
    global _bridge_instance
    if _bridge_instance is None:
        _bridge_instance = Bridge(contracts=ContractStore())
        atexit.register(_bridge_instance.close)
    return _bridge_instance
