"""Engine runner — wires components from config and runs until interrupted."""

from __future__ import annotations

import asyncio

import structlog

from autotrade.aggregation import SignalAggregator
from autotrade.api.app import create_app
from autotrade.api.runner import serve
from autotrade.config.loader import load_config
from autotrade.config.schema import AppConfig
from autotrade.db.engine import create_tables, init_engine, session_factory
from autotrade.engine.orchestrator import AutomatedTradingEngine
from autotrade.execution import ExecutionGateway, ExecutionQueue, HttpGateway, PaperGateway
from autotrade.feed import WebSocketSignalFeed
from autotrade.logging.setup import setup_logging
from autotrade.notify import CompositeSink, JournalSink, LogSink, NotificationSink, WebhookSink
from autotrade.tracker import LiveTradingManager

log = structlog.get_logger("runner")


def build_gateway(config: AppConfig) -> ExecutionGateway:
    gw = config.gateway
    if gw.kind == "http":
        return HttpGateway(gw.base_url, api_key=gw.api_key, timeout_s=gw.timeout_s)
    return PaperGateway(initial_balance=gw.paper_initial_balance)


def build_sink(config: AppConfig) -> NotificationSink:
    notify = config.notifications
    sinks: list[NotificationSink] = []
    if notify.log:
        sinks.append(LogSink())
    if notify.webhook_url:
        sinks.append(WebhookSink(notify.webhook_url))
    if notify.journal_url:
        create_tables(init_engine(notify.journal_url))
        sinks.append(JournalSink(session_factory()))
    return CompositeSink(sinks)


def build_engine(config: AppConfig, gateway: ExecutionGateway | None = None) -> AutomatedTradingEngine:
    """Assemble aggregator, queue, tracker and engine from *config*."""
    gateway = gateway or build_gateway(config)
    queue = ExecutionQueue(
        gateway,
        max_concurrent=config.execution.max_concurrent,
        max_retries=config.execution.max_retries,
        retry_delay_s=config.execution.retry_delay_s,
        critical_patterns=config.trading.critical_error_patterns,
        history_size=config.execution.history_size,
    )
    tracker = LiveTradingManager(gateway, queue, config=config.trading, limits=config.risk)
    return AutomatedTradingEngine(
        SignalAggregator(config.aggregation),
        tracker,
        sink=build_sink(config),
        config=config.engine,
    )


async def run_loop(config: AppConfig) -> None:
    """Start the engine plus optional feed and API; run until cancelled."""
    engine = build_engine(config)
    await engine.start()
    log.info(
        "runner_started",
        gateway=config.gateway.kind,
        feed=config.feed.ws_url,
        api=config.api.enabled,
    )

    tasks: list[asyncio.Task] = []
    feed: WebSocketSignalFeed | None = None
    if config.feed.ws_url:
        feed = WebSocketSignalFeed(config.feed.ws_url, reconnect_delay_s=config.feed.reconnect_delay_s)
        tasks.append(asyncio.create_task(feed.run(engine.on_signal), name="signal-feed"))
    if config.api.enabled:
        app = create_app(engine)
        tasks.append(asyncio.create_task(serve(app, config.api.host, config.api.port), name="api"))

    try:
        if tasks:
            await asyncio.gather(*tasks)
        else:
            await asyncio.Event().wait()
    finally:
        if feed is not None:
            feed.stop()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await engine.stop()
        gateway = engine.tracker.gateway
        if isinstance(gateway, HttpGateway):
            await gateway.close_client()
        sink = engine.sink
        for s in getattr(sink, "sinks", [sink]):
            if isinstance(s, WebhookSink):
                await s.close()
        log.info("runner_stopped")


def main(config_path: str | None = None) -> None:
    """Entry point — load config, set up logging, run the async loop."""
    config = load_config(config_path)
    setup_logging(
        level=config.logging.level,
        log_format=config.logging.format,
        service=config.logging.service,
    )
    try:
        asyncio.run(run_loop(config))
    except KeyboardInterrupt:
        log.info("runner_interrupted")
