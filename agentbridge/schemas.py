"""Pydantic schemas for Agent Bridge records and request/response contracts."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import (
    AwareDatetime,
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


class BridgeModel(BaseModel):
    """Base model: snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the JSON-ready camelCase form used on the wire and on disk."""
        return self.model_dump(mode="json", by_alias=True)


class ContractStatus(str, Enum):
    """Lifecycle states of a task contract."""

    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ContractPriority(str, Enum):
    """Task contract priorities."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


NonEmptyStr = Annotated[str, Field(min_length=1)]


# --- Records ---


class Message(BridgeModel):
    """One unit of mailbox content."""

    id: str
    recipient: str
    sender: str | None = None
    content: str
    timestamp: datetime
    acknowledged: bool = False
    contract_id: str | None = None


class ResourceLock(BridgeModel):
    """TTL lock held on a named resource."""

    resource: str
    holder: str
    ttl: float
    created_at: datetime

    @computed_field(alias="expiresAt")  # type: ignore[prop-decorator]
    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(seconds=self.ttl)

    def is_expired(self, now: datetime) -> bool:
        """A lock is expired once the clock has moved strictly past expires_at."""
        return now > self.expires_at


class ContractHistoryEntry(BridgeModel):
    """Audit trail entry for a contract."""

    id: str
    timestamp: datetime
    actor: str
    status: ContractStatus
    note: str | None = None


class TaskContract(BridgeModel):
    """Unit of coordinated work with its full status history."""

    id: str
    title: str
    description: str | None = None
    initiator: str
    owner: str | None = None
    status: ContractStatus
    priority: ContractPriority
    tags: list[str] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    due_at: datetime | None = None
    metadata: dict[str, Any] | None = None
    related_message_id: str | None = None
    history: list[ContractHistoryEntry] = Field(default_factory=list)


class BridgeEvent(BridgeModel):
    """Notification of a state change, as broadcast to subscribers."""

    id: str
    type: str
    timestamp: datetime
    data: dict[str, Any] = Field(default_factory=dict)


# --- Request Schemas ---


class ContractCreate(BridgeModel):
    """Input for creating a contract, standalone or inline with a message."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    title: str = Field(..., min_length=1)
    description: str | None = Field(default=None, max_length=4000)
    initiator: str = Field(..., min_length=1)
    owner: str | None = Field(default=None, min_length=1)
    status: ContractStatus = ContractStatus.PROPOSED
    priority: ContractPriority = ContractPriority.MEDIUM
    tags: list[NonEmptyStr] = Field(default_factory=list)
    files: list[NonEmptyStr] = Field(default_factory=list)
    due_at: AwareDatetime | None = None
    metadata: dict[str, Any] | None = None
    related_message_id: str | None = None


class ContractUpdate(BridgeModel):
    """Status/field update applied to an existing contract.

    ``owner`` and ``due_at`` distinguish "not given" from an explicit
    null: an explicit null clears the stored value.
    """

    actor: str = Field(..., min_length=1)
    status: ContractStatus | None = None
    owner: str | None = Field(default=None, min_length=1)
    note: str | None = Field(default=None, max_length=4000)
    metadata: dict[str, Any] | None = None
    tags: list[NonEmptyStr] | None = None
    files: list[NonEmptyStr] | None = None
    due_at: AwareDatetime | None = None

    @field_validator("status", "note", "metadata", "tags", "files", mode="before")
    @classmethod
    def _reject_null(cls, value: Any) -> Any:
        # Only owner and due_at can be cleared with null.
        if value is None:
            raise ValueError("Field may be omitted but not null")
        return value

    @model_validator(mode="after")
    def _require_update_field(self) -> ContractUpdate:
        if not self.model_fields_set - {"actor"}:
            raise ValueError("No fields provided for update")
        return self


class PublishMessageRequest(BridgeModel):
    """Request to publish a message, optionally tied to a contract."""

    recipient: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    sender: str | None = Field(default=None, min_length=1)
    contract_id: str | None = Field(default=None, min_length=1)
    contract: ContractCreate | None = None

    @model_validator(mode="after")
    def _single_contract_reference(self) -> PublishMessageRequest:
        if self.contract_id is not None and self.contract is not None:
            raise ValueError("Provide either contractId or an inline contract, not both")
        if self.contract is not None and self.contract.related_message_id is not None:
            raise ValueError("An inline contract is linked to the message being published")
        return self


class AckMessageRequest(BridgeModel):
    """Request to acknowledge messages by id."""

    ids: list[str]


class LockResourceRequest(BridgeModel):
    """Request to lock a resource."""

    resource: str = Field(..., min_length=1)
    holder: str = Field(..., min_length=1)
    ttl: float = Field(..., gt=0, description="Lock lifetime in seconds")


class RenewLockRequest(BridgeModel):
    """Request to extend a held lock."""

    resource: str = Field(..., min_length=1)
    ttl: float = Field(..., gt=0)


# --- Response Schemas ---


class PublishMessageResponse(BridgeModel):
    success: bool = True
    message_id: str
    contract_id: str | None = None
    contract: TaskContract | None = None


class MessagesResponse(BridgeModel):
    success: bool = True
    messages: list[Message]


class MessageResponse(BridgeModel):
    success: bool = True
    message: Message


class AckMessageResponse(BridgeModel):
    success: bool = True
    acknowledged_count: int


class ContractResponse(BridgeModel):
    success: bool = True
    contract: TaskContract


class ContractsResponse(BridgeModel):
    success: bool = True
    contracts: list[TaskContract]


class LockResponse(BridgeModel):
    success: bool = True
    lock: ResourceLock


class LocksResponse(BridgeModel):
    success: bool = True
    locks: list[ResourceLock]


class UnlockResponse(BridgeModel):
    success: bool = True
    resource: str


class ErrorResponse(BridgeModel):
    """Error response for failed requests."""

    success: bool = False
    detail: str
    error_code: str | None = None
    errors: list[dict[str, Any]] | None = None
    holder: str | None = None


class HealthResponse(BridgeModel):
    """Health check response."""

    success: bool = True
    status: Literal["healthy", "unhealthy"] = "healthy"
    subscribers: int = 0
    contracts: int = 0
    locks: int = 0
