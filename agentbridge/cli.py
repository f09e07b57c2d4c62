"""CLI for Agent Bridge - broker server, contract inspection and MCP server."""

from __future__ import annotations

import json
import os
import sys
from datetime import datetime
from pathlib import Path

import click

from agentbridge import __version__
from agentbridge.contracts import DATA_DIR_ENV, ContractStore, default_contracts_path
from agentbridge.schemas import TaskContract


@click.group()
@click.version_option(version=__version__, prog_name="agentbridge")
def main() -> None:
    """Agent Bridge - coordination broker for cooperating agents.

    Exchange messages, task contracts, resource locks and live events
    between agent processes.
    """
    pass


@main.command()
@click.option("--port", default=3000, help="Port to run the broker on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
@click.option(
    "--data-dir",
    default=None,
    type=click.Path(file_okay=False, dir_okay=True, resolve_path=True),
    help=f"Directory for contracts.json (defaults to ${DATA_DIR_ENV} or ~/.agentbridge)",
)
def serve(port: int, host: str, reload: bool, data_dir: str | None) -> None:
    """Start the Agent Bridge HTTP broker."""
    import uvicorn

    if data_dir:
        os.environ[DATA_DIR_ENV] = data_dir

    click.echo(f"Starting Agent Bridge broker on {host}:{port}")
    uvicorn.run(
        "agentbridge.broker:app",
        host=host,
        port=port,
        reload=reload,
    )


def _load_contracts(file: str | None) -> list[TaskContract]:
    path = Path(file) if file else default_contracts_path()
    if not path.exists():
        return []
    store = ContractStore(path=path)
    return store.list_contracts()


def _find_contract(file: str | None, contract_id: str) -> TaskContract:
    for contract in _load_contracts(file):
        if contract.id == contract_id:
            return contract
    click.echo(f"Contract not found: {contract_id}", err=True)
    sys.exit(1)


def _format_date(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


file_option = click.option(
    "--file", "-f",
    default=None,
    type=click.Path(dir_okay=False),
    help="Contracts file (defaults to the broker's data directory)",
)


@main.group()
def contracts() -> None:
    """Inspect persisted task contracts."""
    pass


@contracts.command("list")
@file_option
@click.option("--status", "-s", default=None, help="Only show contracts with this status")
def list_contracts(file: str | None, status: str | None) -> None:
    """List persisted contracts."""
    items = _load_contracts(file)
    if status:
        items = [contract for contract in items if contract.status.value == status]

    if not items:
        click.echo("No contracts found.")
        return

    click.echo(f"Found {len(items)} contracts:")
    for contract in items:
        click.echo(f"{contract.id}")
        click.echo(f"  Title:     {contract.title}")
        click.echo(f"  Status:    {contract.status.value}")
        click.echo(f"  Priority:  {contract.priority.value}")
        click.echo(f"  Owner:     {contract.owner or '-'}")
        click.echo(f"  Created:   {_format_date(contract.created_at)}")


@contracts.command("show")
@click.argument("contract_id")
@file_option
def show_contract(contract_id: str, file: str | None) -> None:
    """Print a contract as JSON."""
    contract = _find_contract(file, contract_id)
    click.echo(json.dumps(contract.to_wire(), indent=2))


@contracts.command("history")
@click.argument("contract_id")
@file_option
def contract_history(contract_id: str, file: str | None) -> None:
    """Show a contract's status history."""
    contract = _find_contract(file, contract_id)
    click.echo(f"History for {contract.title} ({contract.id})")
    for entry in contract.history:
        line = f"  {_format_date(entry.timestamp)}  {entry.status.value:<12} {entry.actor}"
        if entry.note:
            line += f" - {entry.note}"
        click.echo(line)


@main.command()
def mcp() -> None:
    """Run the MCP server exposing bridge tools.

    \b
    Configure in .mcp.json:
        {
            "mcpServers": {
                "agentbridge": {
                    "command": "agentbridge",
                    "args": ["mcp"]
                }
            }
        }
    """
    from mcp_agentbridge.server import mcp as mcp_server
    mcp_server.run()


if __name__ == "__main__":
    main()
