"""
Service wiring — builds the object graph once per application.

    ┌──────────────┐   ┌───────────────────┐   ┌──────────────────┐
    │ ActivityStore│   │ SenderRepository  │   │ SettingsProvider │
    └──────┬───────┘   └────────┬──────────┘   └────────┬─────────┘
           │                    └──────────┬────────────┘
           │                     SenderFailoverPool
           │                               │
           │             SmsChannel    EmailChannel
           │                   └─────┬─────┘
           │                  AlarmDispatcher
           │                         │
           └────────── ActivityService ──── DeadlineScheduler

STORAGE_BACKEND=memory keeps everything in process (development, tests).
STORAGE_BACKEND=sql uses the SQLAlchemy session factory from core.database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.activity.scheduler import DeadlineScheduler
from backend.app.activity.state_machine import ActivityService
from backend.app.activity.store import ActivityStore, InMemoryActivityStore
from backend.app.alerts.channels.email_alert import EmailChannel
from backend.app.alerts.channels.sms_gateway import SmsChannel
from backend.app.alerts.credentials import (
    InMemorySenderRepository,
    InMemorySettingsProvider,
    SenderRepository,
    SettingsProvider,
    SqlSenderRepository,
    SqlSettingsProvider,
)
from backend.app.alerts.dispatcher import AlarmDispatcher
from backend.app.alerts.sender_pool import MailTransport, SenderFailoverPool
from backend.app.core.config import settings

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    backend: str
    store: ActivityStore
    sender_repository: SenderRepository
    settings_provider: SettingsProvider
    pool: SenderFailoverPool
    dispatcher: AlarmDispatcher
    scheduler: DeadlineScheduler
    activities: ActivityService

    async def startup(self, *, create_tables: bool = True) -> None:
        """Prepare storage, start the scheduler and re-arm stored deadlines."""
        if self.backend == "sql":
            from backend.app.core.database import init_db

            if create_tables:
                await init_db()
            if isinstance(self.settings_provider, SqlSettingsProvider):
                await self.settings_provider.seed_defaults()
        self.scheduler.start()
        await self.activities.rearm_pending_checks()

    async def shutdown(self) -> None:
        self.scheduler.shutdown()
        if self.backend == "sql":
            from backend.app.core.database import close_db

            await close_db()


def build_container(
    backend: Optional[str] = None,
    *,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    transport: Optional[MailTransport] = None,
    scheduler: Optional[DeadlineScheduler] = None,
    sms: Optional[SmsChannel] = None,
) -> ServiceContainer:
    """Assemble the services for ``backend`` (``memory`` or ``sql``)."""
    backend = backend or settings.STORAGE_BACKEND

    if backend == "sql":
        from backend.app.activity.orm import SqlActivityStore
        from backend.app.core.database import get_session_factory

        session_factory = session_factory or get_session_factory()
        store: ActivityStore = SqlActivityStore(session_factory)
        sender_repository: SenderRepository = SqlSenderRepository(session_factory)
        settings_provider: SettingsProvider = SqlSettingsProvider(session_factory)
    elif backend == "memory":
        store = InMemoryActivityStore()
        sender_repository = InMemorySenderRepository()
        settings_provider = InMemorySettingsProvider()
    else:
        raise ValueError(f"Unknown STORAGE_BACKEND: {backend!r}")

    pool = SenderFailoverPool(sender_repository, settings_provider, transport)
    dispatcher = AlarmDispatcher(
        sms or SmsChannel(),
        EmailChannel(pool),
        offset_hours=settings.DISPLAY_UTC_OFFSET_HOURS,
    )
    scheduler = scheduler or DeadlineScheduler()
    activities = ActivityService(store, scheduler, dispatcher, pool=pool)
    scheduler.on_fire(activities.handle_deferred_check)

    logger.info("Services built (storage=%s, jobstore=%s)", backend, settings.SCHEDULER_JOBSTORE)
    return ServiceContainer(
        backend=backend,
        store=store,
        sender_repository=sender_repository,
        settings_provider=settings_provider,
        pool=pool,
        dispatcher=dispatcher,
        scheduler=scheduler,
        activities=activities,
    )
