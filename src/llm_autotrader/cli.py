from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from llm_autotrader import __version__
from llm_autotrader.core.config import load_settings
from llm_autotrader.engine import App, build_app

app = typer.Typer(help="LLM Autotrader CLI", add_completion=False)
console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to settings.yaml"),
):
    load_dotenv()
    ctx.obj = {"config": config}


def _build(ctx: typer.Context) -> App:
    settings = load_settings((ctx.obj or {}).get("config"))
    return build_app(settings)


def _fmt(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:.4f}".rstrip("0").rstrip(".")
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def _ok_mark(ok: Any) -> str:
    return "[green]OK[/green]" if ok else "[red]FAIL[/red]"


def _print_result(result: Dict[str, Any]) -> None:
    if result.get("ok"):
        console.print(f"[green]OK[/green] {_fmt({k: v for k, v in result.items() if k != 'ok'})}")
    else:
        console.print(f"[red]FAILED[/red] {result.get('error') or result.get('reason') or result}")
        raise typer.Exit(code=1)


def _rows_table(title: str, rows: List[Dict[str, Any]], columns: List[str]) -> Table:
    table = Table(title=title)
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*(_fmt(row.get(col)) for col in columns))
    return table


@app.command(help="Run one bot tick")
def tick(ctx: typer.Context):
    bot = _build(ctx)
    try:
        result = bot.tick.run()
    finally:
        bot.close()

    if result.get("blocked"):
        console.print(f"[red]Blocked:[/red] {result.get('reason')} {result.get('message', '')}")
        raise typer.Exit(code=1)
    if result.get("skipped"):
        console.print(f"[yellow]Skipped:[/yellow] {result.get('message')}")
        return
    if not result.get("ok"):
        console.print(f"[red]Tick failed:[/red] {result.get('error')}")
        raise typer.Exit(code=1)

    console.print(Panel(result["summary"], title="Bot tick"))
    if result["managed"]:
        console.print(
            _rows_table(
                "Managed",
                result["managed"],
                ["symbol", "side", "action", "ok", "skip_reason", "error", "confidence", "reason"],
            )
        )
    if result["opened"]:
        console.print(
            _rows_table(
                "Opened",
                result["opened"],
                ["symbol", "side", "position_size_usdt", "leverage", "confidence", "ok", "error"],
            )
        )


@app.command(help="Show open positions with the last bot decision")
def positions(ctx: typer.Context):
    bot = _build(ctx)
    try:
        rows = bot.exchange.get_positions()
        why = bot.metrics.last_decision_per_position()
        locks = bot.locks.locks()
    finally:
        bot.close()

    table = Table(title="Open positions")
    for col in ("Symbol", "Side", "Size", "Entry", "Mark", "PnL", "Lev", "Locked", "Last decision"):
        table.add_column(col)
    for p in rows:
        key = f"{p.symbol}|{p.side}"
        last = why.get(key) or {}
        pnl_style = "green" if p.unrealized_pnl >= 0 else "red"
        table.add_row(
            p.symbol,
            p.side,
            _fmt(p.size),
            _fmt(p.entry_price),
            _fmt(p.mark_price),
            f"[{pnl_style}]{p.unrealized_pnl:.2f}[/{pnl_style}]",
            f"{p.leverage:g}x",
            "yes" if locks.get(key) else "",
            f"{last.get('action', '')} {last.get('reason', '')}".strip(),
        )
    console.print(table)


@app.command(help="Show risk guard status")
def risk(ctx: typer.Context):
    bot = _build(ctx)
    try:
        status = bot.guard.risk_status(bot.exchange.get_positions(), bot.events.recent_events())
    finally:
        bot.close()

    table = Table(title="Risk status")
    table.add_column("Check", style="cyan")
    table.add_column("Value", style="magenta")
    for key in (
        "trading_enabled",
        "can_trade",
        "can_open_new",
        "strict_mode",
        "daily_loss_limit_usdt",
        "max_total_exposure_usdt",
        "action_cooldown_minutes",
    ):
        table.add_row(key, _fmt(status[key]))
    table.add_row("daily_pnl", _fmt(status["daily_loss_check"].get("value")))
    table.add_row("exposure", _fmt(status["exposure_check"].get("value")))
    console.print(table)
    for alert in status["alerts"]:
        console.print(f"[red]! {alert}[/red]")


@app.command(help="List strict-mode actions waiting for confirmation")
def pending(ctx: typer.Context):
    bot = _build(ctx)
    try:
        items = bot.pending.all()
    finally:
        bot.close()
    if not items:
        console.print("[green]No pending actions.[/green]")
        return
    console.print(
        _rows_table(
            "Pending actions",
            items,
            ["id", "symbol", "side", "action", "pnl_at_decision", "created_at", "reason"],
        )
    )


@app.command(help="Confirm (or reject) a pending action")
def confirm(
    ctx: typer.Context,
    pending_id: str = typer.Argument(..., help="Pending action id"),
    reject: bool = typer.Option(False, "--reject", help="Reject instead of executing"),
):
    bot = _build(ctx)
    try:
        result = bot.actions.confirm_pending(pending_id, confirm=not reject)
    finally:
        bot.close()
    _print_result(result)


@app.command(help="Lock or unlock a position against bot actions")
def lock(
    ctx: typer.Context,
    symbol: str = typer.Argument(...),
    side: str = typer.Argument(..., help="Buy or Sell"),
    unlock: bool = typer.Option(False, "--unlock", help="Remove the lock"),
):
    bot = _build(ctx)
    try:
        result = bot.actions.set_position_lock(symbol.upper(), side, locked=not unlock)
    finally:
        bot.close()
    _print_result(result)


@app.command(name="open", help="Open a position manually")
def open_cmd(
    ctx: typer.Context,
    symbol: str = typer.Argument(...),
    side: str = typer.Argument(..., help="Buy or Sell"),
    usdt: float = typer.Option(10.0, "--usdt", help="Position size in USDT"),
    leverage: int = typer.Option(1, "--leverage", help="Leverage"),
):
    bot = _build(ctx)
    try:
        result = bot.actions.open_position(symbol.upper(), side, usdt, leverage)
    finally:
        bot.close()
    _print_result(result)


@app.command(help="Close a position fully at market")
def close(
    ctx: typer.Context,
    symbol: str = typer.Argument(...),
    side: str = typer.Argument(..., help="Buy or Sell"),
):
    bot = _build(ctx)
    try:
        result = bot.actions.close_position(symbol.upper(), side)
    finally:
        bot.close()
    _print_result(result)


@app.command(help="Show recent bot events")
def history(
    ctx: typer.Context,
    days: int = typer.Option(7, help="Look-back window in days"),
    limit: int = typer.Option(50, help="Max rows"),
):
    bot = _build(ctx)
    try:
        events = bot.events.recent_events(days)
        summary = bot.events.weekly_summary_text()
    finally:
        bot.close()
    rows = list(reversed(events))[:limit]
    console.print(
        _rows_table(
            f"Events, last {days} days",
            rows,
            ["timestamp", "type", "symbol", "side", "action", "ok", "skip_reason", "realized_pnl_estimate"],
        )
    )
    console.print(Panel(summary, title="Per-symbol summary"))


@app.command(help="Decision metrics")
def metrics(
    ctx: typer.Context,
    days: int = typer.Option(30, help="Look-back window in days"),
):
    bot = _build(ctx)
    try:
        m = bot.metrics.metrics(days)
    finally:
        bot.close()

    table = Table(title=f"Bot metrics ({m['period_days']}d)")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta")
    for key in (
        "tick_count",
        "llm_failures",
        "invalid_responses",
        "proposed",
        "executed",
        "skipped",
        "failed",
        "execution_rate_pct",
    ):
        table.add_row(key, _fmt(m[key]))
    console.print(table)

    if m["by_action"]:
        rows = [{"action": action, **stats} for action, stats in m["by_action"].items()]
        console.print(
            _rows_table(
                "By action",
                rows,
                ["action", "proposed", "executed", "skipped", "failed", "wins", "losses", "total_pnl", "win_rate"],
            )
        )
    if m["skip_reasons"]:
        console.print(
            _rows_table(
                "Skip reasons",
                [{"reason": k, "count": v} for k, v in m["skip_reasons"].items()],
                ["reason", "count"],
            )
        )


@app.command(help="Top markets by 24h turnover")
def markets(
    ctx: typer.Context,
    limit: int = typer.Option(25, help="Number of markets"),
):
    bot = _build(ctx)
    try:
        rows = bot.exchange.get_top_markets(limit)
    finally:
        bot.close()
    console.print(
        _rows_table("Top markets", rows, ["symbol", "lastPrice", "price24hPcnt", "volume24h", "turnover24h"])
    )


@app.command(help="Wallet balance (USDT)")
def balance(ctx: typer.Context):
    bot = _build(ctx)
    try:
        bal = bot.exchange.get_balance()
    finally:
        bot.close()
    table = Table(title="Balance")
    table.add_column("Field", style="cyan")
    table.add_column("USDT", style="magenta")
    for key, value in bal.items():
        table.add_row(key, _fmt(value))
    console.print(table)


@app.command(help="Recent executions, or closed trades with --closed")
def trades(
    ctx: typer.Context,
    limit: int = typer.Option(20, help="Max rows"),
    closed: bool = typer.Option(False, "--closed", help="Only executions with realized PnL"),
):
    bot = _build(ctx)
    try:
        rows = bot.exchange.get_closed_trades(limit) if closed else bot.exchange.get_trades(limit)
    finally:
        bot.close()
    console.print(
        _rows_table(
            "Closed trades" if closed else "Trades",
            rows,
            ["opened_at", "symbol", "side", "price", "quantity", "closed_pnl", "status"],
        )
    )


@app.command(help="Open (unfilled) orders")
def orders(
    ctx: typer.Context,
    symbol: str = typer.Option("", help="Filter by symbol"),
):
    bot = _build(ctx)
    try:
        rows = bot.exchange.get_open_orders(symbol.upper())
    finally:
        bot.close()
    if not rows:
        console.print("[green]No open orders.[/green]")
        return
    console.print(
        _rows_table(
            "Open orders",
            rows,
            ["created_time", "symbol", "side", "order_type", "price", "trigger_price", "qty", "status"],
        )
    )


@app.command(help="Trading statistics over recent closed trades")
def stats(ctx: typer.Context):
    bot = _build(ctx)
    try:
        s = bot.exchange.get_statistics()
    finally:
        bot.close()
    table = Table(title="Statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta")
    for key, value in s.items():
        table.add_row(key, _fmt(value))
    console.print(table)


@app.command(help="Single-symbol model analysis and the action it implies (no orders)")
def analyze(
    ctx: typer.Context,
    symbol: str = typer.Argument(..., help="e.g. BTCUSDT"),
):
    bot = _build(ctx)
    try:
        decision = bot.decider.make_trading_decision(symbol.upper(), positions=bot.exchange.get_positions())
    finally:
        bot.close()
    analysis = decision["analysis"]
    console.print(
        Panel(
            f"{analysis['signal']} ({decision['confidence']}%) -> {decision['action']}\n"
            f"size {_fmt(decision['position_size_usdt'])} USDT, leverage {decision['leverage']}x\n"
            f"{decision['reason']}",
            title=f"Analysis {decision['symbol']}",
        )
    )


@app.command(help="Ask the model for new trade ideas (no orders)")
def proposals(ctx: typer.Context):
    bot = _build(ctx)
    try:
        ideas = bot.decider.proposals()
    finally:
        bot.close()
    if not ideas:
        console.print("[yellow]No proposals.[/yellow]")
        return
    console.print(
        _rows_table(
            "Proposals",
            [p.model_dump() for p in ideas],
            ["symbol", "signal", "confidence", "position_size_usdt", "leverage", "reason"],
        )
    )


@app.command(help="Check configuration and connectivity")
def doctor(ctx: typer.Context):
    console.print(f"[bold blue]LLM Autotrader Doctor[/bold blue] v{__version__}\n")
    bot = _build(ctx)
    settings = bot.settings
    try:
        checks = [
            ("Python Version", sys.version.split()[0], True),
            ("Workspace", str(settings.workspace_dir), settings.workspace_dir.exists()),
            ("Exchange", settings.exchange.base_url, True),
            ("Exchange keys", "set" if settings.exchange.has_credentials else "MISSING", settings.exchange.has_credentials),
            ("LLM providers", ", ".join(p.name for p in bot.chain.usable) or "none", bot.chain.any_usable),
            ("Alerts", "configured" if bot.alerts.configured else "log only", True),
            ("Kill switch", "OFF" if settings.trading.trading_enabled else "ACTIVE", settings.trading.trading_enabled),
            ("Tick lock", "held" if bot.tick.tick_lock.status.get("running") else "free", True),
        ]

        with console.status("[bold green]Testing exchange..."):
            exchange_status = bot.exchange.test_connection()
        checks.append(
            (
                "Exchange API",
                exchange_status.get("message") or exchange_status.get("reason") or exchange_status.get("error") or exchange_status.get("ret_msg"),
                exchange_status.get("ok", False),
            )
        )
        with console.status("[bold green]Testing LLM providers..."):
            llm_status = bot.decider.test_connection()
        checks.append(("LLM API", llm_status.get("message"), llm_status.get("ok", False)))
    finally:
        bot.close()

    table = Table(show_header=True, header_style="bold")
    table.add_column("Check")
    table.add_column("Value")
    table.add_column("Result")
    for label, value, ok in checks:
        table.add_row(label, _fmt(value), _ok_mark(ok))
    console.print(table)
    for provider in llm_status.get("providers", []):
        if not provider["ok"]:
            console.print(f"[red]{provider['name']}: {provider['error']}[/red]")


@app.command(name="alert-test", help="Send a test alert to the configured destinations")
def alert_test(ctx: typer.Context):
    bot = _build(ctx)
    try:
        delivered = bot.alerts.send("INFO", "Test alert from LLM Autotrader")
    finally:
        bot.close()
    if delivered:
        console.print("[green]Alert delivered.[/green]")
    else:
        console.print("[yellow]Alert not delivered (no destination configured or send failed).[/yellow]")


if __name__ == "__main__":
    app()
