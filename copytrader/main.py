"""
Settlement & Copy-Trading Engine - Main Entry Point

Usage:
    copytrader run                  # Start the engine (bet feeds + settlement polling)
    copytrader markets              # Show normalized markets per platform
    copytrader score                # Score a trader history
    copytrader follow ADDRESS       # Mirror a trader
    copytrader traders              # List follows
    copytrader deposit OWNER AMOUNT # Fund a portfolio
    copytrader portfolio OWNER      # Show a portfolio
    copytrader cancel POSITION_ID   # Cancel a pending position
    copytrader settle               # Run one resolution tick
"""

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import click
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import Settings, get_settings
from .copy_strategy import Tier, TraderFollowConfig
from .engine import EngineContext
from .repository import SqlRepository
from .scoring import TraderHistory, score_breakdown, trust_percent

console = Console()


def configure_logging(settings: Settings):
    """Coloured stderr sink plus an optional rotating file sink"""
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=settings.log_level,
    )
    if settings.log_file:
        logger.add(settings.log_file, rotation="10 MB", retention="7 days", level=settings.log_level)


def _engine(settings: Settings) -> EngineContext:
    return EngineContext(settings=settings, repository=SqlRepository(settings.database_url))


def _short(address: str) -> str:
    return f"{address[:10]}...{address[-6:]}" if len(address) > 20 else address


# CLI Commands
@click.group()
@click.pass_context
def cli(ctx):
    """Settlement & Copy-Trading Engine"""
    settings = get_settings()
    configure_logging(settings)
    ctx.obj = settings


@cli.command()
@click.option('--no-feed', is_flag=True, help='Do not subscribe to live bet feeds')
@click.option('--no-settle', is_flag=True, help='Do not poll for resolutions')
@click.pass_obj
def run(settings: Settings, no_feed: bool, no_settle: bool):
    """Start the engine"""
    async def _run():
        engine = _engine(settings)
        await engine.start(subscribe=not no_feed, poll=not no_settle)

        console.print(Panel(
            f"[bold]Copy Trading Engine Started[/bold]\n"
            f"Platforms: [yellow]{', '.join(engine.adapters)}[/yellow]\n"
            f"Following: {len(engine.decisions.follows())} trader/follower pairs\n"
            f"Settlement poll: every {settings.poll_interval:.0f}s\n"
            f"Press Ctrl+C to stop",
            title="Status"
        ))

        try:
            await asyncio.Event().wait()
        finally:
            await engine.stop()
            console.print("[green]Engine stopped successfully[/green]")

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


@cli.command()
@click.option('--platform', '-p', multiple=True, help='Only these platforms')
@click.option('--limit', '-n', default=10, help='Markets per platform')
@click.pass_obj
def markets(settings: Settings, platform: Tuple[str, ...], limit: int):
    """Show normalized markets"""
    async def _markets():
        engine = _engine(settings)
        if platform:
            engine.adapters = {k: v for k, v in engine.adapters.items() if k in platform}
        try:
            results = await engine.fetch_markets()
        finally:
            for adapter in engine.adapters.values():
                await adapter.close()

        for name, items in results.items():
            table = Table(title=f"{name} ({len(items)} markets)")
            table.add_column("Market", max_width=50)
            table.add_column("Status")
            table.add_column("Outcomes (odds / prob)")
            table.add_column("Volume", justify="right")

            for m in items[:limit]:
                outcomes = ", ".join(f"{o.name} {o.odds:.2f}/{o.implied_probability:.0%}" for o in m.outcomes)
                table.add_row(m.title[:50], m.status.value, outcomes, f"${m.volume:,.0f}")
            console.print(table)

    asyncio.run(_markets())


@cli.command()
@click.option('--platform', '-p', required=True, help='Platform the history comes from')
@click.option('--wins', type=int, default=0)
@click.option('--total', type=int, default=0, help='Decided bets / trades')
@click.option('--pnl', type=float, default=0.0)
@click.option('--volume', type=float, default=0.0)
@click.option('--days-since-last', type=int, default=None, help='Days since the last trade')
@click.pass_obj
def score(settings: Settings, platform: str, wins: int, total: int, pnl: float, volume: float,
          days_since_last: Optional[int]):
    """Compute a trust score"""
    last_trade = None
    if days_since_last is not None:
        last_trade = datetime.now(timezone.utc) - timedelta(days=days_since_last)

    history = TraderHistory(
        address="cli",
        platform=platform,
        wins=wins,
        total_bets=total,
        total_volume=volume,
        total_pnl=pnl,
        last_trade_time=last_trade,
    )
    result = EngineContext(settings=settings, adapters={}).score_trader(history)
    breakdown = score_breakdown(result)

    table = Table(title=f"Trust Score ({result.market_type})")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Score", f"{result.score} / 1000")
    table.add_row("Total (with recency)", f"{result.total_score} ({result.tier})")
    table.add_row("Trust", f"{trust_percent(result):.1f}")
    table.add_row("Eligible", "Yes" if result.eligible else f"[red]No[/red] - {result.reason}")
    for key in ("skill", "confidence", "recency"):
        table.add_row(key.capitalize(), breakdown[key])
    console.print(table)


@cli.command()
@click.argument('address')
@click.option('--follower', '-f', required=True, help='Portfolio that mirrors the trader')
@click.option('--platform', '-p', multiple=True, required=True, help='Platforms to copy on')
@click.option('--trust', type=float, required=True, help='Trust score 0-100')
@click.option('--tier', type=click.Choice([t.value for t in Tier], case_sensitive=False), default="GOLD")
@click.option('--multiplier', type=float, default=None, help='Override the tier multiplier')
@click.option('--max-copy-size', type=float, default=None)
@click.option('--max-exposure', type=float, default=None)
@click.pass_obj
def follow(settings: Settings, address: str, follower: str, platform: Tuple[str, ...], trust: float, tier: str,
           multiplier: Optional[float], max_copy_size: Optional[float], max_exposure: Optional[float]):
    """Follow a trader"""
    async def _follow():
        engine = _engine(settings)
        await engine.start(subscribe=False, poll=False)
        try:
            config = TraderFollowConfig(
                address=address,
                follower=follower,
                platforms=list(platform),
                max_copy_size=max_copy_size if max_copy_size is not None else settings.max_copy_size,
                copy_multiplier=multiplier,
                trust_score=trust,
                tier=Tier(tier.upper()),
                max_exposure=max_exposure,
            )
            if await engine.follow(config):
                console.print(f"[green]✓ {follower} now follows {_short(config.address)}[/green]")
            else:
                console.print(f"[red]✗ Trust {trust:.0f} below minimum {settings.min_trust_score:.0f}[/red]")
        finally:
            await engine.stop()

    asyncio.run(_follow())


@cli.command()
@click.argument('address')
@click.option('--follower', '-f', default=None)
@click.pass_obj
def unfollow(settings: Settings, address: str, follower: Optional[str]):
    """Stop following a trader"""
    async def _unfollow():
        engine = _engine(settings)
        await engine.start(subscribe=False, poll=False)
        try:
            removed = await engine.unfollow(address, follower)
            console.print(f"[green]Removed {removed} follow(s) of {_short(address)}[/green]")
        finally:
            await engine.stop()

    asyncio.run(_unfollow())


@cli.command('traders')
@click.pass_obj
def list_traders(settings: Settings):
    """List followed traders"""
    async def _list():
        repository = SqlRepository(settings.database_url)
        try:
            follows = await repository.load_followed_traders()
        finally:
            await repository.close()

        if not follows:
            console.print("[yellow]No traders being followed[/yellow]")
            return

        table = Table(title="Followed Traders")
        table.add_column("Trader", style="cyan")
        table.add_column("Follower")
        table.add_column("Platforms")
        table.add_column("Trust", justify="right")
        table.add_column("Multiplier", justify="right")
        table.add_column("Max Copy", justify="right")
        table.add_column("Status", justify="center")

        for c in follows:
            status = "[green]Enabled[/green]" if c.enabled else "[red]Disabled[/red]"
            table.add_row(
                _short(c.address),
                c.follower,
                ", ".join(c.platforms),
                f"{c.trust_score:.0f}",
                f"x{c.multiplier(settings):.2f} ({c.tier.value})",
                f"${c.max_copy_size:,.2f}",
                status,
            )
        console.print(table)

    asyncio.run(_list())


@cli.command()
@click.argument('owner')
@click.argument('amount', type=float)
@click.pass_obj
def deposit(settings: Settings, owner: str, amount: float):
    """Deposit into a portfolio"""
    async def _deposit():
        engine = _engine(settings)
        await engine.start(subscribe=False, poll=False)
        try:
            snapshot = await engine.deposit(owner, amount)
            console.print(f"[green]Balance of {owner}: ${snapshot.balance:,.2f}[/green]")
        finally:
            await engine.stop()

    asyncio.run(_deposit())


@cli.command()
@click.argument('owner')
@click.pass_obj
def portfolio(settings: Settings, owner: str):
    """Show a portfolio"""
    async def _portfolio():
        engine = _engine(settings)
        await engine.start(subscribe=False, poll=False)
        try:
            snap = engine.snapshot(owner)
        finally:
            await engine.stop()

        stats = snap.stats
        pnl_color = "green" if stats.pnl >= 0 else "red"
        console.print(Panel(
            f"Balance: ${snap.balance:,.2f} (deposited ${snap.total_deposited:,.2f})\n"
            f"Record: {stats.wins}W / {stats.losses}L / {stats.refunds} refunded\n"
            f"Win rate: {stats.win_rate:.1%}\n"
            f"Wagered: ${stats.total_wagered:,.2f}  Won: ${stats.total_won:,.2f}\n"
            f"P&L: [{pnl_color}]${stats.pnl:,.2f}[/{pnl_color}] (ROI {stats.roi:.1%})",
            title=f"Portfolio: {owner}"
        ))

        if snap.open_positions:
            table = Table(title="Open Positions")
            table.add_column("ID", style="dim")
            table.add_column("Platform")
            table.add_column("Market", max_width=30)
            table.add_column("Outcome")
            table.add_column("Stake", justify="right")
            table.add_column("Odds", justify="right")
            table.add_column("To Win", justify="right")
            table.add_column("Copied From")

            for p in snap.open_positions.values():
                table.add_row(
                    p.id,
                    p.platform,
                    p.market_id[:30],
                    p.outcome_id,
                    f"${p.stake:,.2f}",
                    f"{p.odds:.3f}",
                    f"${p.potential_payout:,.2f}",
                    _short(p.copied_from) if p.copied_from else "-",
                )
            console.print(table)

    asyncio.run(_portfolio())


@cli.command()
@click.argument('position_id')
@click.pass_obj
def cancel(settings: Settings, position_id: str):
    """Cancel a pending position and return its stake"""
    async def _cancel():
        engine = _engine(settings)
        await engine.start(subscribe=False, poll=False)
        try:
            position = await engine.cancel_position(position_id)
            if position is None:
                console.print(f"[red]No pending position {position_id}[/red]")
                return
            snapshot = engine.snapshot(position.owner)
            console.print(
                f"[green]Cancelled {position_id}: ${position.stake:,.2f} returned, "
                f"balance of {position.owner} ${snapshot.balance:,.2f}[/green]"
            )
        finally:
            await engine.stop()

    asyncio.run(_cancel())


@cli.command()
@click.pass_obj
def settle(settings: Settings):
    """Run one resolution tick"""
    async def _settle():
        engine = _engine(settings)
        await engine.start(subscribe=False, poll=False)
        try:
            reports = await engine.settle_now()
        finally:
            await engine.stop()

        if not reports:
            console.print("[yellow]No pending positions[/yellow]")
            return

        table = Table(title="Settlement")
        table.add_column("Platform", style="cyan")
        table.add_column("Won", justify="right")
        table.add_column("Lost", justify="right")
        table.add_column("Refunded", justify="right")
        table.add_column("Pending", justify="right")
        table.add_column("Errors", justify="right")
        for r in reports.values():
            table.add_row(r.platform, str(r.won), str(r.lost), str(r.refunded), str(r.still_pending),
                          f"[red]{len(r.errors)}[/red]" if r.errors else "0")
        console.print(table)

    asyncio.run(_settle())


if __name__ == "__main__":
    cli()
