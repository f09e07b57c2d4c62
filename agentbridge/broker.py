"""HTTP broker exposing the Agent Bridge coordination API."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from agentbridge import __version__
from agentbridge.bridge import Bridge, get_bridge
from agentbridge.contracts import ContractNotFoundError
from agentbridge.events import stream_events
from agentbridge.locks import LockConflictError, LockExpiredError, LockNotFoundError
from agentbridge.messages import MessageNotFoundError
from agentbridge.schemas import (
    AckMessageRequest,
    AckMessageResponse,
    ContractCreate,
    ContractResponse,
    ContractsResponse,
    ContractStatus,
    ContractUpdate,
    ErrorResponse,
    HealthResponse,
    LockResourceRequest,
    LockResponse,
    LocksResponse,
    MessageResponse,
    MessagesResponse,
    PublishMessageRequest,
    PublishMessageResponse,
    RenewLockRequest,
    UnlockResponse,
)

logger = logging.getLogger(__name__)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _error(status_code: int, detail: str, error_code: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(detail=detail, error_code=error_code, **extra).model_dump(
            by_alias=True, exclude_none=True
        ),
    )


def create_app(bridge: Bridge | None = None) -> FastAPI:
    """Create the broker application.

    Args:
        bridge: Bridge to serve; the process-wide bridge is used when omitted

    Returns:
        Configured FastAPI app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        if app.state.bridge is not None:
            app.state.bridge.close()

    app = FastAPI(
        title="Agent Bridge",
        description="Message, contract and lock coordination between agent processes",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.bridge = bridge

    def current_bridge() -> Bridge:
        if app.state.bridge is None:
            app.state.bridge = get_bridge()
        return app.state.bridge

    # --- Messages ---

    @app.post("/publish_message", status_code=201, response_model=PublishMessageResponse)
    async def publish_message(request: PublishMessageRequest) -> PublishMessageResponse:
        """Publish a message, optionally creating or referencing a contract."""
        message, contract = current_bridge().publish_message(request)
        return PublishMessageResponse(
            message_id=message.id,
            contract_id=contract.id if contract else None,
            contract=contract,
        )

    @app.get("/fetch_messages/{recipient}", response_model=MessagesResponse)
    async def fetch_messages(recipient: str) -> MessagesResponse:
        """Return the recipient's unacknowledged messages."""
        return MessagesResponse(messages=current_bridge().fetch_messages(recipient))

    @app.get("/messages/{message_id}", response_model=MessageResponse)
    async def get_message(message_id: str) -> MessageResponse:
        return MessageResponse(message=current_bridge().get_message(message_id))

    @app.post("/ack_message", response_model=AckMessageResponse)
    async def ack_message(request: AckMessageRequest) -> AckMessageResponse:
        """Acknowledge messages; unknown or already acknowledged ids are not counted."""
        count = current_bridge().acknowledge(request.ids)
        return AckMessageResponse(acknowledged_count=count)

    # --- Contracts ---

    @app.post("/contracts", status_code=201, response_model=ContractResponse)
    async def create_contract(request: ContractCreate) -> ContractResponse:
        return ContractResponse(contract=current_bridge().create_contract(request))

    @app.get("/contracts", response_model=ContractsResponse)
    async def list_contracts(status: ContractStatus | None = None) -> ContractsResponse:
        return ContractsResponse(contracts=current_bridge().list_contracts(status=status))

    @app.get("/contracts/{contract_id}", response_model=ContractResponse)
    async def get_contract(contract_id: str) -> ContractResponse:
        return ContractResponse(contract=current_bridge().get_contract(contract_id))

    @app.patch("/contracts/{contract_id}/status", response_model=ContractResponse)
    async def update_contract(contract_id: str, request: ContractUpdate) -> ContractResponse:
        """Update a contract's status and fields."""
        return ContractResponse(contract=current_bridge().update_contract(contract_id, request))

    # --- Locks ---

    @app.post("/lock_resource", status_code=201, response_model=LockResponse)
    async def lock_resource(request: LockResourceRequest) -> LockResponse:
        lock = current_bridge().lock_resource(request.resource, request.holder, request.ttl)
        return LockResponse(lock=lock)

    @app.post("/renew_lock", response_model=LockResponse)
    async def renew_lock(request: RenewLockRequest) -> LockResponse:
        return LockResponse(lock=current_bridge().renew_lock(request.resource, request.ttl))

    @app.delete("/unlock_resource/{resource:path}", response_model=UnlockResponse)
    async def unlock_resource(resource: str) -> UnlockResponse:
        current_bridge().unlock_resource(resource)
        return UnlockResponse(resource=resource)

    @app.get("/locks", response_model=LocksResponse)
    async def list_locks() -> LocksResponse:
        return LocksResponse(locks=current_bridge().list_locks())

    # --- Events ---

    @app.get("/events")
    async def events(
        request: Request,
        last_event_id: str | None = Header(default=None),
        last_event_id_query: str | None = Query(default=None, alias="lastEventId"),
    ) -> StreamingResponse:
        """Stream coordination events: recent history first, then live."""
        return StreamingResponse(
            stream_events(
                current_bridge().events,
                last_event_id=last_event_id or last_event_id_query,
                is_disconnected=request.is_disconnected,
            ),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        bridge = current_bridge()
        return HealthResponse(
            subscribers=bridge.events.subscriber_count,
            contracts=len(bridge.contracts),
            locks=len(bridge.list_locks()),
        )

    # --- Error handling ---

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"loc": list(error["loc"]), "msg": error["msg"], "type": error["type"]}
            for error in exc.errors()
        ]
        return _error(400, "Invalid request data", "INVALID_REQUEST", errors=errors)

    @app.exception_handler(ContractNotFoundError)
    async def contract_not_found_handler(request, exc: ContractNotFoundError) -> JSONResponse:
        return _error(404, str(exc), "CONTRACT_NOT_FOUND")

    @app.exception_handler(MessageNotFoundError)
    async def message_not_found_handler(request, exc: MessageNotFoundError) -> JSONResponse:
        return _error(404, str(exc), "MESSAGE_NOT_FOUND")

    @app.exception_handler(LockNotFoundError)
    async def lock_not_found_handler(request, exc: LockNotFoundError) -> JSONResponse:
        return _error(404, str(exc), "LOCK_NOT_FOUND")

    @app.exception_handler(LockConflictError)
    async def lock_conflict_handler(request, exc: LockConflictError) -> JSONResponse:
        return _error(409, str(exc), "RESOURCE_LOCKED", holder=exc.lock.holder)

    @app.exception_handler(LockExpiredError)
    async def lock_expired_handler(request, exc: LockExpiredError) -> JSONResponse:
        return _error(410, str(exc), "LOCK_EXPIRED")

    @app.exception_handler(Exception)
    async def generic_exception_handler(request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return _error(500, str(exc), "INTERNAL_ERROR")

    return app


app = create_app()
