"""MCP server exposing Agent Bridge coordination tools."""

from mcp.server.fastmcp import FastMCP
import httpx

from agentbridge.client import default_bridge_url

mcp = FastMCP("agentbridge")
BROKER = default_bridge_url()


@mcp.tool()
async def publish_message(
    recipient: str,
    content: str,
    sender: str | None = None,
    contract_id: str | None = None,
) -> dict:
    """Send a message to another agent's mailbox, optionally tied to a contract."""
    payload = {"recipient": recipient, "content": content}
    if sender:
        payload["sender"] = sender
    if contract_id:
        payload["contractId"] = contract_id
    async with httpx.AsyncClient(timeout=10.0) as client:
        r = await client.post(f"{BROKER}/publish_message", json=payload)
        return r.json()


@mcp.tool()
async def fetch_messages(recipient: str) -> dict:
    """List unacknowledged messages for a recipient."""
    async with httpx.AsyncClient(timeout=10.0) as client:
        r = await client.get(f"{BROKER}/fetch_messages/{recipient}")
        return r.json()


@mcp.tool()
async def ack_messages(ids: list[str]) -> dict:
    """Acknowledge messages so they are no longer returned as pending."""
    async with httpx.AsyncClient(timeout=10.0) as client:
        r = await client.post(f"{BROKER}/ack_message", json={"ids": ids})
        return r.json()


@mcp.tool()
async def create_contract(
    title: str,
    initiator: str,
    description: str | None = None,
    owner: str | None = None,
    priority: str = "medium",
    files: list[str] | None = None,
) -> dict:
    """Create a task contract (status starts as 'proposed')."""
    payload = {
        "title": title,
        "initiator": initiator,
        "priority": priority,
        "files": files or [],
    }
    if description:
        payload["description"] = description
    if owner:
        payload["owner"] = owner
    async with httpx.AsyncClient(timeout=10.0) as client:
        r = await client.post(f"{BROKER}/contracts", json=payload)
        return r.json()


@mcp.tool()
async def update_contract(
    contract_id: str,
    actor: str,
    status: str | None = None,
    note: str | None = None,
) -> dict:
    """Move a contract to a new status and/or add a history note.

    Status is one of: proposed, accepted, in_progress, completed, failed, cancelled.
    """
    payload = {"actor": actor}
    if status:
        payload["status"] = status
    if note:
        payload["note"] = note
    async with httpx.AsyncClient(timeout=10.0) as client:
        r = await client.patch(f"{BROKER}/contracts/{contract_id}/status", json=payload)
        return r.json()


@mcp.tool()
async def lock_resource(resource: str, holder: str, ttl: float = 120.0) -> dict:
    """Take a TTL lock on a resource such as a file path. Fails with 409 if held."""
    async with httpx.AsyncClient(timeout=10.0) as client:
        r = await client.post(
            f"{BROKER}/lock_resource",
            json={"resource": resource, "holder": holder, "ttl": ttl},
        )
        return r.json()


@mcp.tool()
async def unlock_resource(resource: str) -> dict:
    """Release a resource lock."""
    async with httpx.AsyncClient(timeout=10.0) as client:
        r = await client.delete(f"{BROKER}/unlock_resource/{resource}")
        return r.json()


if __name__ == "__main__":
    mcp.run()
