"""Composition root: builds, opens and closes the engine's clients.

Nothing in the package creates connections at import time. A host process
builds one ``Runtime`` from ``Settings``, opens it at startup and closes it
at shutdown::

    runtime = Runtime.from_settings(get_settings())
    await runtime.open()
    try:
        await runtime.settlement().decide(tid, caller, TournamentDecision.START)
    finally:
        await runtime.close()
"""

import logging
from datetime import timedelta

import redis.asyncio as redis

from tourney.config import Settings
from tourney.logging_config import configure_logging
from tourney.services.settlement import TournamentSettlement
from tourney.tournament.event_bus import DomainEventBus
from tourney.utils.db import Database

logger = logging.getLogger(__name__)


class Runtime:
    """Owns the Database, the event bus and the optional Redis client."""

    def __init__(self, settings: Settings, database: Database, event_bus: DomainEventBus):
        self.settings = settings
        self.database = database
        self.event_bus = event_bus

    @classmethod
    def from_settings(cls, settings: Settings, *, configure_logs: bool = True) -> "Runtime":
        if configure_logs:
            configure_logging(settings.log_level, settings.json_logs, settings.app_env)

        redis_client = None
        if settings.redis_url:
            redis_client = redis.Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                retry_on_timeout=True,
            )
        event_bus = DomainEventBus(
            redis_client,
            stream_key=settings.event_stream_key,
            stream_max_len=settings.event_stream_max_len,
        )
        return cls(settings, Database(settings, event_bus=event_bus), event_bus)

    @property
    def dispute_window(self) -> timedelta:
        return timedelta(hours=self.settings.dispute_window_hours)

    async def open(self) -> None:
        logger.info("Opening database connection...")
        await self.database.open()
        logger.info("Opening event bus...")
        await self.event_bus.open()
        logger.info("Tournament engine ready")

    async def close(self) -> None:
        await self.event_bus.close()
        await self.database.close()
        logger.info("Tournament engine closed")

    def settlement(self) -> TournamentSettlement:
        return TournamentSettlement(self.database, dispute_window=self.dispute_window)
