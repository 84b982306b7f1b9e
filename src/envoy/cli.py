"""
Envoy CLI: inspect and revoke delegations and sub-agents.

Commands:
    envoy root status       Show the stored root delegation
    envoy root revoke       Delete the local root delegation
    envoy agent list        List sub-agents
    envoy agent status ID   Show one sub-agent (with on-chain counters if an RPC is set)
    envoy agent revoke ID   Stop a sub-agent
    envoy agent trades ID   Show a sub-agent's trade log
    envoy audit             View the audit trail

The CLI never signs anything.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Optional

import click

from . import __version__
from .agents import AgentManager
from .audit import AuditTrail, EventType
from .config import EnvoyConfig, load_config
from .errors import EnvoyError
from .keyring import AgentKeyring
from .rpc import ChainClient
from .state import AgentStatus, now_ms
from .store import DelegationStore, format_time_remaining
from .units import format_ether


def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


def _emit(ctx: click.Context, payload) -> bool:
    """Print ``payload`` as JSON when --json is set; return whether it did."""
    if ctx.obj["json"]:
        click.echo(json.dumps(payload, indent=2))
        return True
    return False


def _config(ctx: click.Context) -> EnvoyConfig:
    return ctx.obj["config"]


def _store(ctx: click.Context) -> DelegationStore:
    return DelegationStore(_config(ctx).home_dir)


def _audit(ctx: click.Context) -> AuditTrail:
    return AuditTrail(path=_config(ctx).audit_path)


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
@click.option("--home", type=click.Path(path_type=Path), default=None, help="Envoy home directory")
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx: click.Context, home: Optional[Path], as_json: bool, verbose: bool):
    """Envoy: scoped delegations for autonomous trading agents."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    env = dict(os.environ)
    if home is not None:
        env["ENVOY_HOME"] = str(home)
    try:
        config = load_config(env=env)
    except EnvoyError as e:
        _fail(str(e))
    ctx.ensure_object(dict)
    ctx.obj.update(config=config, json=as_json)


# ── Root delegation ───────────────────────────────────────────────

@main.group("root")
def root_group():
    """Root delegation (user to session key)."""


@root_group.command("status")
@click.pass_context
def root_status(ctx: click.Context):
    """Show the stored root delegation."""
    try:
        status = _store(ctx).root_delegation_status()
    except EnvoyError as e:
        _fail(str(e))
    if _emit(ctx, status):
        return
    if not status["exists"]:
        click.echo("No root delegation stored.")
        return
    marker = "✅" if status["valid"] else "⌛"
    click.echo(f"{marker} Root delegation {status['delegationHash']}")
    click.echo(f"   Delegator:   {status['delegator']}")
    click.echo(f"   Session key: {status['sessionKey']}")
    click.echo(f"   Expires in:  {status['expiresIn']}")
    click.echo(f"   Max calls:   {status['maxCalls']}")
    click.echo(f"   Budget:      ~{status['approximateBudget']}")


@root_group.command("revoke")
@click.option("--yes", is_flag=True, help="Skip confirmation")
@click.pass_context
def root_revoke(ctx: click.Context, yes: bool):
    """Delete the local root delegation."""
    if not yes:
        click.confirm("Remove the local root delegation?", abort=True)
    manager = AgentManager(_config(ctx), _store(ctx), AgentKeyring(), audit=_audit(ctx))
    removed = manager.revoke_root_delegation()
    if _emit(ctx, {"revoked": removed}):
        return
    if not removed:
        click.echo("No root delegation stored.")
        return
    click.echo("🗑  Local root delegation removed.")
    click.echo("   It stays redeemable on-chain until it expires or its call limit is reached.")


# ── Sub-agents ────────────────────────────────────────────────────

@main.group("agent")
def agent_group():
    """Sub-agents and their delegations."""


@agent_group.command("list")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in AgentStatus]),
    default=None,
    help="Only agents with this status",
)
@click.pass_context
def agent_list(ctx: click.Context, status_filter: Optional[str]):
    """List sub-agents."""
    status = AgentStatus(status_filter) if status_filter else None
    states = _store(ctx).list_agent_states(status)
    if _emit(ctx, [s.to_dict() for s in states]):
        return
    if not states:
        click.echo("No agents found.")
        return
    for state in states:
        remaining = format_time_remaining(state.expires_at - now_ms())
        click.echo(
            f"{state.agent_id}  {state.status.value:<9} {state.archetype.value:<8} "
            f"{state.executed}/{state.max_allowed} trades  expires in {remaining}"
        )


@agent_group.command("status")
@click.argument("agent_id")
@click.pass_context
def agent_status(ctx: click.Context, agent_id: str):
    """Show one sub-agent."""
    config = _config(ctx)
    store = _store(ctx)
    try:
        state = store.require_agent_state(agent_id)
        if config.rpc_url:
            status = asyncio.run(_onchain_status(config, store, agent_id))
        else:
            status = asyncio.run(AgentManager(config, store, AgentKeyring()).delegation_status(agent_id))
    except EnvoyError as e:
        _fail(str(e))
    if _emit(ctx, {"state": state.to_dict(), "delegation": status}):
        return
    native = state.native_remaining
    click.echo(f"🤖 {state.agent_id} ({state.archetype.value})")
    click.echo(f"   Status:    {state.status.value}")
    click.echo(f"   Wallet:    {state.wallet_address}")
    click.echo(f"   Trades:    {state.executed} of {state.max_allowed}")
    if native is not None:
        click.echo(f"   Remaining: {format_ether(native)} native")
    click.echo(f"   Expires:   in {format_time_remaining(state.expires_at - now_ms())}")
    if status.get("delegationHash"):
        click.echo(f"   Delegation: {status['delegationHash']}")
    if "onChainCalls" in status:
        click.echo(f"   On-chain calls: {status['onChainCalls']}")
    for error in state.errors[-3:]:
        click.echo(f"   ⚠️  {error.message}")


async def _onchain_status(config: EnvoyConfig, store: DelegationStore, agent_id: str) -> dict:
    async with ChainClient(config.require_rpc(), retry=config.retry) as chain:
        manager = AgentManager(config, store, AgentKeyring(), chain=chain)
        return await manager.delegation_status(agent_id)


@agent_group.command("revoke")
@click.argument("agent_id")
@click.option("--reason", default="revoked by user", help="Recorded in the audit trail")
@click.pass_context
def agent_revoke(ctx: click.Context, agent_id: str, reason: str):
    """Stop a sub-agent. Its delegation stays valid on-chain until expiry."""
    manager = AgentManager(_config(ctx), _store(ctx), AgentKeyring(), audit=_audit(ctx))
    try:
        state = manager.revoke_sub_agent(agent_id, reason=reason)
    except EnvoyError as e:
        _fail(str(e))
    if _emit(ctx, state.to_dict()):
        return
    click.echo(f"🛑 Agent {agent_id} revoked.")


@agent_group.command("trades")
@click.argument("agent_id")
@click.option("--limit", type=int, default=20, help="Number of trades")
@click.pass_context
def agent_trades(ctx: click.Context, agent_id: str, limit: int):
    """Show a sub-agent's trade log."""
    try:
        trades = _store(ctx).load_trades(agent_id, limit=limit)
    except EnvoyError as e:
        _fail(str(e))
    if _emit(ctx, [t.to_dict() for t in trades]):
        return
    if not trades:
        click.echo("No trades recorded.")
        return
    for trade in trades:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(trade.timestamp / 1000))
        marker = "✅" if trade.success else "❌"
        click.echo(f"  {ts} {marker} {trade.action} via {trade.protocol} {trade.tx_hash}")


# ── Audit ─────────────────────────────────────────────────────────

@main.command()
@click.option("--agent", "agent_id", default=None, help="Filter by agent ID")
@click.option(
    "--event",
    "event_type",
    type=click.Choice([e.value for e in EventType]),
    default=None,
    help="Filter by event type",
)
@click.option("--limit", type=int, default=20, help="Number of events")
@click.pass_context
def audit(ctx: click.Context, agent_id: Optional[str], event_type: Optional[str], limit: int):
    """View the audit trail. Fails if the hash chain is broken."""
    try:
        events = _audit(ctx).read_events(
            agent_id=agent_id,
            event_type=EventType(event_type) if event_type else None,
            limit=limit,
        )
    except EnvoyError as e:
        _fail(str(e))
    if _emit(ctx, [json.loads(e.to_json()) for e in events]):
        return
    if not events:
        click.echo("No audit events found.")
        return
    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        marker = "✅" if event.success else "❌"
        agent = f" [{event.agent_id}]" if event.agent_id else ""
        amount = f" {format_ether(int(event.amount_wei))}" if event.amount_wei else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {marker} {event.event_type}{agent}{amount}{reason}")


if __name__ == "__main__":
    main()
