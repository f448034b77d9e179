"""
credentials.py — Sender accounts and legacy key/value settings.

Two small repositories back the email sender pool:

    SenderRepository    list / add / toggle / delete SMTP accounts and record
                        per-account success and failure counts
    SettingsProvider    key/value settings edited by administrators; the
                        legacy ``EMAIL_*`` keys describe the single account
                        used before the pool existed

Counter updates are single atomic increments (``count = count + 1`` in SQL,
no await between read and write in memory) so concurrent sends never lose
bookkeeping.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import Boolean, DateTime, Integer, String, Text, func, select, update, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.alerts.models import SenderCredential
from backend.app.core.config import Settings, settings as app_settings
from backend.app.core.database import Base
from backend.app.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


# Legacy keys seeded on first start: key -> description
LEGACY_SETTING_KEYS: Dict[str, str] = {
    "EMAIL_HOST": "SMTP server host",
    "EMAIL_PORT": "SMTP server port",
    "EMAIL_SECURE": "Use SSL/TLS (true/false)",
    "EMAIL_USER": "Sender account",
    "EMAIL_PASS": "Sender password / authorization code",
    "SMS_ACCESS_KEY_ID": "Aliyun AccessKey ID",
    "SMS_ACCESS_KEY_SECRET": "Aliyun AccessKey Secret",
    "SMS_SIGN_NAME": "Aliyun SMS sign name",
    "SMS_TEMPLATE_CODE": "Aliyun SMS template code",
}

SECRET_SETTING_KEYS = frozenset({"EMAIL_PASS", "SMS_ACCESS_KEY_SECRET"})


def default_setting_values(config: Optional[Settings] = None) -> Dict[str, str]:
    """Initial values for the legacy keys, taken from the environment."""
    config = config or app_settings
    return {
        "EMAIL_HOST": config.EMAIL_HOST,
        "EMAIL_PORT": str(config.EMAIL_PORT),
        "EMAIL_SECURE": "true" if config.EMAIL_SECURE else "false",
        "EMAIL_USER": config.EMAIL_USER,
        "EMAIL_PASS": config.EMAIL_PASS,
        "SMS_ACCESS_KEY_ID": config.SMS_ACCESS_KEY_ID,
        "SMS_ACCESS_KEY_SECRET": config.SMS_ACCESS_KEY_SECRET,
        "SMS_SIGN_NAME": config.SMS_SIGN_NAME,
        "SMS_TEMPLATE_CODE": config.SMS_TEMPLATE_CODE,
    }


# ═══════════════════════════════════════════════════════════════════════════
# Contracts
# ═══════════════════════════════════════════════════════════════════════════

class SenderRepository(abc.ABC):

    @abc.abstractmethod
    async def list_active(self) -> List[SenderCredential]:
        """Active credentials in stable (id) order."""

    @abc.abstractmethod
    async def list_all(self) -> List[SenderCredential]:
        ...

    @abc.abstractmethod
    async def count(self) -> int:
        ...

    @abc.abstractmethod
    async def add(self, credential: SenderCredential) -> SenderCredential:
        ...

    @abc.abstractmethod
    async def set_active(self, credential_id: int, is_active: bool) -> bool:
        ...

    @abc.abstractmethod
    async def delete(self, credential_id: int) -> bool:
        ...

    @abc.abstractmethod
    async def record_outcome(self, credential_id: int, success: bool) -> None:
        ...


class SettingsProvider(abc.ABC):

    @abc.abstractmethod
    async def get_setting(self, key: str) -> str:
        """Value for ``key``, or ``""`` when unset."""

    @abc.abstractmethod
    async def all_settings(self) -> Dict[str, str]:
        ...

    @abc.abstractmethod
    async def update_settings(self, values: Dict[str, str]) -> None:
        """Update existing keys only; unknown keys are ignored."""


# ═══════════════════════════════════════════════════════════════════════════
# In-memory implementations
# ═══════════════════════════════════════════════════════════════════════════

class InMemorySenderRepository(SenderRepository):

    def __init__(self, credentials: Optional[List[SenderCredential]] = None) -> None:
        self._items: Dict[int, SenderCredential] = {}
        self._next_id = 1
        for cred in credentials or []:
            self._insert(cred)

    def _insert(self, credential: SenderCredential) -> SenderCredential:
        stored = replace(credential, id=self._next_id)
        self._items[stored.id] = stored
        self._next_id += 1
        return replace(stored)

    async def list_active(self) -> List[SenderCredential]:
        return [replace(c) for _, c in sorted(self._items.items()) if c.is_active]

    async def list_all(self) -> List[SenderCredential]:
        return [replace(c) for _, c in sorted(self._items.items())]

    async def count(self) -> int:
        return len(self._items)

    async def add(self, credential: SenderCredential) -> SenderCredential:
        return self._insert(credential)

    async def set_active(self, credential_id: int, is_active: bool) -> bool:
        cred = self._items.get(credential_id)
        if cred is None:
            return False
        cred.is_active = is_active
        return True

    async def delete(self, credential_id: int) -> bool:
        return self._items.pop(credential_id, None) is not None

    async def record_outcome(self, credential_id: int, success: bool) -> None:
        cred = self._items.get(credential_id)
        if cred is None:
            return
        if success:
            cred.success_count += 1
        else:
            cred.fail_count += 1

    def get(self, credential_id: int) -> Optional[SenderCredential]:
        cred = self._items.get(credential_id)
        return replace(cred) if cred else None


class InMemorySettingsProvider(SettingsProvider):

    def __init__(self, values: Optional[Dict[str, str]] = None) -> None:
        self._values = dict(default_setting_values() if values is None else values)

    async def get_setting(self, key: str) -> str:
        return self._values.get(key) or ""

    async def all_settings(self) -> Dict[str, str]:
        return dict(self._values)

    async def update_settings(self, values: Dict[str, str]) -> None:
        for key, value in values.items():
            if key in self._values:
                self._values[key] = value


# ═══════════════════════════════════════════════════════════════════════════
# SQL implementations
# ═══════════════════════════════════════════════════════════════════════════

class EmailSenderRow(Base):
    __tablename__ = "email_senders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    host: Mapped[str] = mapped_column(String(255))
    port: Mapped[int] = mapped_column(Integer)
    secure: Mapped[bool] = mapped_column(Boolean, default=True)
    user: Mapped[str] = mapped_column(String(255))
    password: Mapped[str] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    fail_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, server_default=func.now())

    def to_domain(self) -> SenderCredential:
        cred = SenderCredential(
            id=self.id,
            host=self.host,
            port=self.port,
            secure=self.secure,
            user=self.user,
            password=self.password,
            is_active=self.is_active,
            success_count=self.success_count or 0,
            fail_count=self.fail_count or 0,
        )
        if self.created_at is not None:
            created = self.created_at
            cred.created_at = created if created.tzinfo else created.replace(tzinfo=timezone.utc)
        return cred


class SettingRow(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class SqlSenderRepository(SenderRepository):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def list_active(self) -> List[SenderCredential]:
        try:
            async with self._session_factory() as session:
                rows = await session.scalars(
                    select(EmailSenderRow)
                    .where(EmailSenderRow.is_active.is_(True))
                    .order_by(EmailSenderRow.id)
                )
                return [r.to_domain() for r in rows]
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("list_active_senders", str(exc)) from exc

    async def list_all(self) -> List[SenderCredential]:
        try:
            async with self._session_factory() as session:
                rows = await session.scalars(
                    select(EmailSenderRow).order_by(EmailSenderRow.id.desc())
                )
                return [r.to_domain() for r in rows]
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("list_senders", str(exc)) from exc

    async def count(self) -> int:
        try:
            async with self._session_factory() as session:
                return await session.scalar(
                    select(func.count()).select_from(EmailSenderRow)
                ) or 0
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("count_senders", str(exc)) from exc

    async def add(self, credential: SenderCredential) -> SenderCredential:
        row = EmailSenderRow(
            host=credential.host,
            port=credential.port,
            secure=credential.secure,
            user=credential.user,
            password=credential.password,
            is_active=credential.is_active,
            success_count=credential.success_count,
            fail_count=credential.fail_count,
        )
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
                await session.refresh(row)
                return row.to_domain()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("add_sender", str(exc)) from exc

    async def set_active(self, credential_id: int, is_active: bool) -> bool:
        return await self._execute(
            "toggle_sender",
            update(EmailSenderRow)
            .where(EmailSenderRow.id == credential_id)
            .values(is_active=is_active),
        )

    async def delete(self, credential_id: int) -> bool:
        return await self._execute(
            "delete_sender",
            delete(EmailSenderRow).where(EmailSenderRow.id == credential_id),
        )

    async def record_outcome(self, credential_id: int, success: bool) -> None:
        column = EmailSenderRow.success_count if success else EmailSenderRow.fail_count
        await self._execute(
            "record_sender_outcome",
            update(EmailSenderRow)
            .where(EmailSenderRow.id == credential_id)
            .values({column: column + 1}),
        )

    async def _execute(self, operation: str, statement) -> bool:
        try:
            async with self._session_factory() as session:
                result = await session.execute(statement)
                await session.commit()
                return (result.rowcount or 0) > 0
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(operation, str(exc)) from exc


class SqlSettingsProvider(SettingsProvider):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def seed_defaults(self, values: Optional[Dict[str, str]] = None) -> None:
        """Insert legacy keys that do not exist yet; existing values win."""
        values = default_setting_values() if values is None else values
        try:
            async with self._session_factory() as session:
                existing = set(await session.scalars(select(SettingRow.key)))
                for key, description in LEGACY_SETTING_KEYS.items():
                    if key not in existing:
                        session.add(SettingRow(
                            key=key, value=values.get(key, ""), description=description,
                        ))
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("seed_settings", str(exc)) from exc

    async def get_setting(self, key: str) -> str:
        try:
            async with self._session_factory() as session:
                row = await session.get(SettingRow, key)
                return (row.value if row else None) or ""
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("get_setting", str(exc)) from exc

    async def all_settings(self) -> Dict[str, str]:
        try:
            async with self._session_factory() as session:
                rows = await session.scalars(select(SettingRow).order_by(SettingRow.key))
                return {r.key: r.value or "" for r in rows}
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("list_settings", str(exc)) from exc

    async def update_settings(self, values: Dict[str, str]) -> None:
        try:
            async with self._session_factory() as session:
                for key, value in values.items():
                    await session.execute(
                        update(SettingRow).where(SettingRow.key == key).values(value=value)
                    )
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("update_settings", str(exc)) from exc
