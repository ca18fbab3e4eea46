"""Wire every component from one immutable Settings object."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from llm_autotrader.alerts import AlertNotifier
from llm_autotrader.constants import (
    EVENT_LOG_FILE,
    LOGS_DIRNAME,
    PENDING_ACTIONS_FILE,
    POSITION_LOCKS_FILE,
    TICK_LOCK_FILE,
)
from llm_autotrader.core.config import Settings
from llm_autotrader.core.lock_manager import TickLock
from llm_autotrader.core.logger import attach_json_file, logger
from llm_autotrader.exchange import BybitClient
from llm_autotrader.llm import ChatProvider, DecisionProvider, ProviderChain
from llm_autotrader.reporting import MetricsAggregator
from llm_autotrader.risk import PendingActionStore, RiskGuard
from llm_autotrader.storage import EventLog, PositionLockStore

from .actions import ManualActions
from .tick import TickOrchestrator


@dataclass
class App:
    settings: Settings
    exchange: BybitClient
    events: EventLog
    pending: PendingActionStore
    locks: PositionLockStore
    guard: RiskGuard
    alerts: AlertNotifier
    chain: ProviderChain
    decider: DecisionProvider
    tick: TickOrchestrator
    actions: ManualActions
    metrics: MetricsAggregator

    def close(self) -> None:
        self.exchange.close()


def build_app(
    settings: Settings,
    *,
    exchange_http: Optional[httpx.Client] = None,
    llm_http: Optional[httpx.Client] = None,
    alert_http: Optional[httpx.Client] = None,
    json_logs: bool = True,
) -> App:
    workspace = settings.workspace_dir
    workspace.mkdir(parents=True, exist_ok=True)
    if json_logs:
        attach_json_file(logger, str(workspace / LOGS_DIRNAME))

    exchange = BybitClient(settings.exchange, settings.trading, workspace, http=exchange_http)
    events = EventLog(workspace / EVENT_LOG_FILE)
    pending = PendingActionStore(workspace / PENDING_ACTIONS_FILE)
    locks = PositionLockStore(workspace / POSITION_LOCKS_FILE)
    guard = RiskGuard(settings.trading)
    alerts = AlertNotifier(settings.alerts, http=alert_http)
    chain = ProviderChain([ChatProvider(p, http=llm_http) for p in settings.providers])
    decider = DecisionProvider(settings, chain, exchange, events, alerts)

    tick = TickOrchestrator(
        settings,
        exchange,
        decider,
        events,
        pending,
        locks,
        guard,
        alerts,
        TickLock(workspace / TICK_LOCK_FILE),
    )
    actions = ManualActions(exchange, events, pending, locks, guard)

    if not settings.exchange.has_credentials:
        logger.warning("Exchange API keys not configured; using mock positions and no orders")
    if not chain.any_usable:
        logger.warning("No LLM provider enabled; the bot will not make decisions")

    return App(
        settings=settings,
        exchange=exchange,
        events=events,
        pending=pending,
        locks=locks,
        guard=guard,
        alerts=alerts,
        chain=chain,
        decider=decider,
        tick=tick,
        actions=actions,
        metrics=MetricsAggregator(events),
    )
