"""CLI for the wallet broker - run the relay and inspect broker state."""

from __future__ import annotations

import asyncio
import logging
import secrets
from datetime import datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from wallet_broker.config import default_config_path, load_config

app = typer.Typer(
    name="wallet-broker",
    help="Request broker and approval gate between web pages and your wallet.",
    no_args_is_help=True,
)
console = Console()

_config_path: Path | None = None


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        console.print(f"wallet-broker {version('wallet-broker')}")
        raise typer.Exit()


@app.callback()
def main(
    config: Path = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config.yaml",
        envvar="WALLET_BROKER_CONFIG",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """Request broker and approval gate between web pages and your wallet."""
    global _config_path
    _config_path = config
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run(coro):
    """Run an async function synchronously."""
    return asyncio.run(coro)


def _path() -> Path:
    return _config_path or default_config_path()


async def _open_broker():
    from wallet_broker.core.broker import Broker

    return await Broker.create(load_config(_path()))


# ------------------------------------------------------------------
# Setup and serving
# ------------------------------------------------------------------


@app.command()
def init(
    name: str = typer.Option("wallet-broker", "--name", "-n", help="Broker name"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config"),
):
    """Write a default config file and create the data directory."""
    from wallet_broker.core.broker import Broker

    path = _path()
    if path.exists() and not force:
        console.print(f"[yellow]Config already exists at {path}.[/yellow] Use --force to overwrite.")
        raise typer.Exit(1)
    config = Broker.init(path, name=name)
    console.print(Panel(
        f"[bold green]Broker initialized![/bold green]\n\n"
        f"Config: [cyan]{path}[/cyan]\n"
        f"Data:   [cyan]{config.resolved_data_dir()}[/cyan]\n\n"
        f"[dim]Next: 'wallet-broker wallet create', then 'wallet-broker serve'.[/dim]",
        title="wallet-broker",
    ))


@app.command()
def serve(
    host: str = typer.Option(None, "--host", help="Bind address"),
    port: int = typer.Option(None, "--port", "-p", help="Port"),
    open_browser: bool = typer.Option(None, "--open-browser/--no-open-browser", help="Open approvals in a browser"),
):
    """Run the HTTP/WebSocket relay."""
    from wallet_broker.server.app import run_server

    config = load_config(_path())
    if host:
        config.server.host = host
    if port:
        config.server.port = port
    if open_browser is not None:
        config.server.open_browser = open_browser
    if not config.server.ui_token:
        config.server.ui_token = secrets.token_urlsafe(32)
    console.print(
        f"[bold]Serving '{config.name}'[/bold] on [cyan]{config.server.base_url()}[/cyan]"
    )
    console.print(
        f"Approval UI: [cyan]{config.server.base_url()}/#token={config.server.ui_token}[/cyan]"
    )
    run_server(config)


@app.command()
def status():
    """Show wallet, connection and replay-ledger status."""

    async def _status():
        broker = await _open_broker()
        try:
            return {
                "name": broker.config.name,
                "wallet": broker.keychain.get_active_address(),
                "chain": broker.keychain.get_chain().name,
                "connections": len(broker.connections.list_connections()),
                "replay": broker.replay.get_stats(),
            }
        finally:
            await broker.shutdown()

    info = _run(_status())
    table = Table(title=f"{info['name']} - Status")
    table.add_column("Item", style="cyan")
    table.add_column("Value")
    table.add_row("Wallet", info["wallet"] or "[yellow]none[/yellow]")
    table.add_row("Chain", info["chain"])
    table.add_row("Connections", str(info["connections"]))
    table.add_row("Broadcast records", str(info["replay"]["broadcasted"]))
    table.add_row("Pending records", str(info["replay"]["pending"]))
    console.print(table)


# ------------------------------------------------------------------
# Connections
# ------------------------------------------------------------------

connections_app = typer.Typer(
    name="connections",
    help="Manage origins allowed to talk to the wallet.",
    no_args_is_help=True,
)
app.add_typer(connections_app, name="connections")


@connections_app.command("list")
def connections_list():
    """List connected origins."""

    async def _list():
        broker = await _open_broker()
        try:
            return broker.connections.list_connections()
        finally:
            await broker.shutdown()

    grants = _run(_list())
    if not grants:
        console.print("[yellow]No connected origins.[/yellow]")
        return

    table = Table(title="Connected Origins")
    table.add_column("Origin", style="cyan")
    table.add_column("Address")
    table.add_column("Granted", style="dim")
    for grant in grants:
        granted = datetime.fromtimestamp(grant.granted_at).strftime("%Y-%m-%d %H:%M")
        table.add_row(grant.origin, grant.address or "-", granted)
    console.print(table)


@connections_app.command("revoke")
def connections_revoke(
    origin: str = typer.Argument(None, help="Origin to revoke"),
    all_origins: bool = typer.Option(False, "--all", help="Revoke every origin"),
):
    """Revoke an origin's connection."""
    if not origin and not all_origins:
        console.print("[red]Give an origin or --all.[/red]")
        raise typer.Exit(1)

    async def _revoke():
        broker = await _open_broker()
        try:
            if all_origins:
                return await broker.connections.disconnect_all()
            return int(await broker.connections.disconnect(origin))
        finally:
            await broker.shutdown()

    count = _run(_revoke())
    if count:
        console.print(f"[bold red]Revoked {count} connection(s).[/bold red]")
    else:
        console.print(f"[yellow]{origin} was not connected.[/yellow]")


# ------------------------------------------------------------------
# Replay ledger
# ------------------------------------------------------------------

ledger_app = typer.Typer(
    name="ledger",
    help="Inspect the replay-prevention ledger.",
    no_args_is_help=True,
)
app.add_typer(ledger_app, name="ledger")


@ledger_app.command("stats")
def ledger_stats():
    """Show replay ledger counters."""

    async def _stats():
        broker = await _open_broker()
        try:
            return broker.replay.get_stats()
        finally:
            await broker.shutdown()

    stats = _run(_stats())
    table = Table(title="Replay Ledger")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right")
    for key, value in stats.items():
        table.add_row(key, str(value))
    console.print(table)


@ledger_app.command("prune")
def ledger_prune():
    """Evict stale pending records and expired handoff records."""

    async def _prune():
        broker = await _open_broker()
        try:
            return await broker.run_cleanup()
        finally:
            await broker.shutdown()

    result = _run(_prune())
    console.print(
        f"Pruned [bold]{result['replay']}[/bold] replay record(s), "
        f"[bold]{result['handoff']}[/bold] handoff record(s), "
        f"[bold]{result['connections']}[/bold] expired connection(s)."
    )


# ------------------------------------------------------------------
# Wallet
# ------------------------------------------------------------------

wallet_app = typer.Typer(
    name="wallet",
    help="Manage the broker's encrypted keystore.",
    no_args_is_help=True,
)
app.add_typer(wallet_app, name="wallet")


@wallet_app.command("create")
def wallet_create():
    """Generate a new Ethereum wallet with encrypted keystore."""
    from wallet_broker.wallet.keychain import KeystoreKeychain

    config = load_config(_path())
    keychain = KeystoreKeychain(config.wallet_dir(), chain=config.network.chain)
    if keychain.has_wallets():
        console.print("[yellow]Wallet already exists.[/yellow]")
        console.print(f"Wallet address: [cyan]{keychain.get_active_address()}[/cyan]")
        return

    password = console.input("[bold]Set wallet password: [/bold]", password=True)
    confirm = console.input("[bold]Confirm password: [/bold]", password=True)
    if password != confirm:
        console.print("[red]Passwords do not match.[/red]")
        raise typer.Exit(1)

    addr = keychain.create(password)
    console.print(Panel(
        f"[bold green]Wallet created![/bold green]\n\n"
        f"Address: [cyan]{addr}[/cyan]\n\n"
        f"[dim]Your keystore is encrypted with your password.\n"
        f"Unlock it from the approval UI before connecting a site.[/dim]",
        title="Wallet",
    ))


@wallet_app.command("address")
def wallet_address():
    """Show the active wallet address."""
    from wallet_broker.wallet.keystore import read_address

    addr = read_address(load_config(_path()).wallet_dir())
    if addr is None:
        console.print("[yellow]No wallet found.[/yellow] Run 'wallet-broker wallet create'.")
        raise typer.Exit(1)
    console.print(f"Wallet address: [cyan]{addr}[/cyan]")


if __name__ == "__main__":
    app()
