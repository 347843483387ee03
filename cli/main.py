import asyncio
import datetime
import logging
import uuid
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from domain.clock import round_clock
from domain.errors import BettingError
from domain.services import BettingService, SettlementService, WalletService
from infra.db import AsyncSessionLocal, create_schema
from infra.settings import settings

app = typer.Typer(help="Colour trading CLI")
console = Console()


def _run(operation):
    """Run ``operation(wallets, betting, settlement)`` in one session"""
    async def runner():
        async with AsyncSessionLocal() as db:
            wallets = WalletService(db)
            betting = BettingService(db, wallets)
            settlement = SettlementService(db, wallets)
            return await operation(wallets, betting, settlement)

    try:
        return asyncio.run(runner())
    except BettingError as e:
        typer.echo(f"✗ {e.message}", err=True)
        raise typer.Exit(1)


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")):
    logging.basicConfig(level=logging.DEBUG if verbose else settings.log_level)


@app.command()
def init_db():
    """Create database tables"""
    try:
        create_schema()
    except Exception as e:
        typer.echo(f"✗ Schema creation failed: {e}", err=True)
        raise typer.Exit(1)
    typer.echo("✓ Database schema created")


@app.command()
def register(
    email: str = typer.Option(..., help="User email"),
    name: Optional[str] = typer.Option(None, help="Display name"),
):
    """Register a user with an empty wallet"""
    user = _run(lambda wallets, *_: wallets.register_user(email, name))
    typer.echo(f"✓ Registered {user.email} (ID: {user.id})")


@app.command()
def wallet(user: uuid.UUID = typer.Option(..., help="User ID")):
    """Show wallet balance"""
    wallet_obj = _run(lambda wallets, *_: wallets.get_wallet(user))
    blocked = " (blocked)" if wallet_obj.is_blocked else ""
    typer.echo(f"Wallet {wallet_obj.id}: balance {wallet_obj.balance}{blocked}")


@app.command()
def deposit(
    user: uuid.UUID = typer.Option(..., help="User ID"),
    amount: int = typer.Option(..., help="Amount in the smallest currency unit"),
):
    """Deposit funds into a wallet"""
    _run(lambda wallets, *_: wallets.deposit(user, amount))
    typer.echo(f"✓ {amount} deposited successfully")


@app.command()
def withdraw(
    user: uuid.UUID = typer.Option(..., help="User ID"),
    amount: int = typer.Option(..., help="Amount in the smallest currency unit"),
):
    """Withdraw funds to the linked bank account"""
    withdrawal = _run(lambda wallets, *_: wallets.withdraw(user, amount))
    typer.echo(f"✓ Withdrawal {withdrawal.id} {withdrawal.status.value}")


@app.command()
def block_wallet(
    wallet_id: uuid.UUID = typer.Option(..., help="Wallet ID"),
    unblock: bool = typer.Option(False, help="Unblock instead of block"),
):
    """Block or unblock a wallet"""
    wallet_obj = _run(lambda wallets, *_: wallets.set_blocked(wallet_id, not unblock))
    state = "blocked" if wallet_obj.is_blocked else "unblocked"
    typer.echo(f"✓ Wallet {wallet_obj.id} {state}")


@app.command()
def bet(
    user: uuid.UUID = typer.Option(..., help="User ID"),
    color: str = typer.Option(..., help="red, violet or green"),
    number: int = typer.Option(..., help="Number 0-9"),
    amount: int = typer.Option(..., help="Stake in the smallest currency unit"),
):
    """Place a bet on the current round"""
    bet_obj = _run(lambda _, betting, __: betting.place_bet(user, color, number, amount))
    typer.echo(f"✓ Bet {bet_obj.id} placed on {bet_obj.color.value} {bet_obj.number} in round {bet_obj.round_id}")


@app.command()
def settle(
    at: Optional[datetime.datetime] = typer.Option(None, help="Instant inside the round to settle (UTC)"),
    previous: bool = typer.Option(False, help="Settle the round that just closed"),
):
    """Settle a round window"""
    if previous:
        window = round_clock.previous_window()
        report = _run(lambda _, __, settlement: settlement.settle_window(window))
    else:
        report = _run(lambda _, __, settlement: settlement.settle_round(at))

    if report.outcome is None:
        typer.echo(f"Round {report.round_id}: nothing to process")
        return

    table = Table(title=f"Round {report.round_id}: {report.outcome.color.value} {report.outcome.number}")
    table.add_column("User", style="cyan")
    table.add_column("Stake", justify="right")
    table.add_column("Result", style="magenta")
    table.add_column("Payout", justify="right", style="green")
    table.add_column("Balance", justify="right")
    for trade in report.trades:
        table.add_row(
            str(trade.user_id),
            str(trade.bet_amount),
            "WIN" if trade.is_winner else "LOSS",
            str(trade.win_amount),
            str(trade.new_balance),
        )
    console.print(table)


@app.command()
def history(
    user: uuid.UUID = typer.Option(..., help="User ID"),
    limit: int = typer.Option(20, help="Number of bets to show"),
):
    """Show a user's recent bets"""
    bets = _run(lambda _, betting, __: betting.user_bets(user, limit=limit))
    if not bets:
        console.print("No bets yet.", style="yellow")
        return

    table = Table(title="Recent Bets")
    table.add_column("Placed", style="dim")
    table.add_column("Round", style="cyan")
    table.add_column("Colour", style="magenta")
    table.add_column("Number")
    table.add_column("Stake", justify="right")
    table.add_column("Result", style="green")
    for bet_obj in bets:
        table.add_row(
            f"{bet_obj.created_at:%Y-%m-%d %H:%M:%S}",
            str(bet_obj.round_id),
            bet_obj.color.value,
            str(bet_obj.number),
            str(bet_obj.amount),
            bet_obj.result.value,
        )
    console.print(table)


@app.command()
def clock():
    """Show the current round window and phase"""
    phase = round_clock.current_phase()
    typer.echo(
        f"Round {phase.round_id} [{phase.window_start:%H:%M:%S} - {phase.window_end:%H:%M:%S}] "
        f"{phase.phase}, {phase.seconds_remaining}s remaining"
    )


@app.command()
def scheduler():
    """Run the settlement scheduler until interrupted"""
    from infra.scheduler import SchedulerService

    async def run():
        service = SchedulerService()
        await service.start()
        try:
            await asyncio.Event().wait()
        finally:
            await service.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        typer.echo("Scheduler stopped")


@app.command()
def watch():
    """Print round results as the scheduler publishes them"""
    from infra.redis import pub_sub

    async def run():
        async for result in pub_sub.round_results():
            outcome = result["outcome"]
            winners = sum(1 for trade in result["trades"] if trade["is_winner"])
            typer.echo(
                f"Round {result['round_id']}: {outcome['color']} {outcome['number']} "
                f"({len(result['trades'])} trades, {winners} winners)"
            )

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        typer.echo("Stopped watching")


if __name__ == "__main__":
    app()
