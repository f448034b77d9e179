"""
orm.py — SQL persistence for activities, check-ins and user profiles.

Tables:
    users       registered participants and their defaults
    activities  one row per monitored session
    check_ins   append-only location samples (FK → activities)

Timestamps are stored as naive UTC and re-tagged as UTC on read, so the
deadline equality used by compare_and_set_status behaves the same on
PostgreSQL and SQLite.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Collection, List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    select,
    text,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.activity.models import (
    Activity,
    ActivityStatus,
    CheckIn,
    UserProfile,
    utc_now,
)
from backend.app.activity.store import HEARTBEAT_FIELDS, ActivityStore
from backend.app.core.database import Base
from backend.app.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


def _to_db(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None:
        return None
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.replace(tzinfo=None)


def _from_db(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None:
        return None
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Rows
# ═══════════════════════════════════════════════════════════════════════════

class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    phone_number: Mapped[str] = mapped_column(String(32), unique=True)
    default_contact_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    default_contact_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    default_interval_minutes: Mapped[int] = mapped_column(Integer, default=30)
    default_warning_minutes: Mapped[int] = mapped_column(Integer, default=5)
    created_at: Mapped[datetime] = mapped_column(DateTime)

    def to_domain(self) -> UserProfile:
        return UserProfile(
            id=self.id,
            phone_number=self.phone_number,
            default_contact_phone=self.default_contact_phone,
            default_contact_email=self.default_contact_email,
            default_interval_minutes=self.default_interval_minutes,
            default_warning_minutes=self.default_warning_minutes,
            created_at=_from_db(self.created_at),
        )


class ActivityRow(Base):
    __tablename__ = "activities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    phone_number: Mapped[str] = mapped_column(String(32), index=True)
    user_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    language: Mapped[str] = mapped_column(String(8), default="zh")
    activity_name: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    emergency_instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    emergency_contact_phone: Mapped[str] = mapped_column(String(32))
    emergency_contact_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    secondary_contact_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    secondary_contact_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    check_in_interval_minutes: Mapped[int] = mapped_column(Integer)
    tolerance_minutes: Mapped[int] = mapped_column(Integer, default=0)
    warning_minutes: Mapped[int] = mapped_column(Integer, default=5)
    is_warned: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(16), default=ActivityStatus.ACTIVE.value, index=True)
    next_check_in_deadline: Mapped[datetime] = mapped_column(DateTime)
    last_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    battery_level: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime)

    @classmethod
    def from_domain(cls, activity: Activity) -> "ActivityRow":
        return cls(
            id=activity.id,
            phone_number=activity.phone_number,
            user_name=activity.user_name,
            language=activity.language,
            activity_name=activity.activity_name,
            description=activity.description,
            emergency_instructions=activity.emergency_instructions,
            emergency_contact_phone=activity.emergency_contact_phone,
            emergency_contact_email=activity.emergency_contact_email,
            secondary_contact_phone=activity.secondary_contact_phone,
            secondary_contact_email=activity.secondary_contact_email,
            check_in_interval_minutes=activity.check_in_interval_minutes,
            tolerance_minutes=activity.tolerance_minutes,
            warning_minutes=activity.warning_minutes,
            is_warned=activity.is_warned,
            status=activity.status.value,
            next_check_in_deadline=_to_db(activity.next_check_in_deadline),
            last_latitude=activity.last_latitude,
            last_longitude=activity.last_longitude,
            battery_level=activity.battery_level,
            user_id=activity.user_id,
            created_at=_to_db(activity.created_at),
            updated_at=_to_db(activity.updated_at),
        )

    def to_domain(self) -> Activity:
        return Activity(
            id=self.id,
            phone_number=self.phone_number,
            user_name=self.user_name,
            language=self.language,
            activity_name=self.activity_name,
            description=self.description,
            emergency_instructions=self.emergency_instructions,
            emergency_contact_phone=self.emergency_contact_phone,
            emergency_contact_email=self.emergency_contact_email,
            secondary_contact_phone=self.secondary_contact_phone,
            secondary_contact_email=self.secondary_contact_email,
            check_in_interval_minutes=self.check_in_interval_minutes,
            tolerance_minutes=self.tolerance_minutes,
            warning_minutes=self.warning_minutes,
            is_warned=self.is_warned,
            status=ActivityStatus(self.status),
            next_check_in_deadline=_from_db(self.next_check_in_deadline),
            last_latitude=self.last_latitude,
            last_longitude=self.last_longitude,
            battery_level=self.battery_level,
            user_id=self.user_id,
            created_at=_from_db(self.created_at),
            updated_at=_from_db(self.updated_at),
        )


class CheckInRow(Base):
    __tablename__ = "check_ins"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    activity_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("activities.id", ondelete="CASCADE"), index=True,
    )
    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime)

    def to_domain(self) -> CheckIn:
        return CheckIn(
            id=self.id,
            activity_id=self.activity_id,
            latitude=self.latitude,
            longitude=self.longitude,
            created_at=_from_db(self.created_at),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════════════════

class SqlActivityStore(ActivityStore):
    """
    SQLAlchemy-backed ActivityStore.

    Each method uses its own short session. Any SQLAlchemyError surfaces as
    StoreUnavailableError.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def ping(self) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("ping", str(exc)) from exc

    async def get(self, activity_id: str) -> Optional[Activity]:
        try:
            async with self._session_factory() as session:
                row = await session.get(ActivityRow, activity_id)
                return row.to_domain() if row else None
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("get_activity", str(exc)) from exc

    async def get_active_by_phone(self, phone_number: str) -> Optional[Activity]:
        return await self._latest("get_active_activity", phone_number, ActivityStatus.ACTIVE)

    async def get_latest_by_phone(self, phone_number: str) -> Optional[Activity]:
        return await self._latest("get_latest_activity", phone_number, None)

    async def _latest(
        self,
        operation: str,
        phone_number: str,
        status: Optional[ActivityStatus],
    ) -> Optional[Activity]:
        query = select(ActivityRow).where(ActivityRow.phone_number == phone_number)
        if status is not None:
            query = query.where(ActivityRow.status == status.value)
        query = query.order_by(ActivityRow.created_at.desc()).limit(1)
        try:
            async with self._session_factory() as session:
                row = await session.scalar(query)
                return row.to_domain() if row else None
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(operation, str(exc)) from exc

    async def save(self, activity: Activity) -> Activity:
        if activity.id is None:
            activity.id = str(uuid.uuid4())
        activity.updated_at = utc_now()
        try:
            async with self._session_factory() as session:
                await session.merge(ActivityRow.from_domain(activity))
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("save_activity", str(exc)) from exc
        return activity

    async def save_if_status(
        self, activity: Activity, expected: Collection[ActivityStatus],
    ) -> bool:
        activity.updated_at = utc_now()
        row = ActivityRow.from_domain(activity)
        statement = (
            update(ActivityRow)
            .where(
                ActivityRow.id == activity.id,
                ActivityRow.status.in_([s.value for s in expected]),
            )
            .values({name: getattr(row, name) for name in HEARTBEAT_FIELDS})
        )
        return await self._update_one("heartbeat_activity", statement)

    async def set_status(self, activity_id: str, new_status: ActivityStatus) -> bool:
        statement = (
            update(ActivityRow)
            .where(ActivityRow.id == activity_id)
            .values(status=new_status.value, updated_at=_to_db(utc_now()))
        )
        return await self._update_one("set_activity_status", statement)

    async def list_active(self) -> List[Activity]:
        try:
            async with self._session_factory() as session:
                rows = await session.scalars(
                    select(ActivityRow)
                    .where(ActivityRow.status == ActivityStatus.ACTIVE.value)
                    .order_by(ActivityRow.next_check_in_deadline)
                )
                return [r.to_domain() for r in rows]
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("list_active_activities", str(exc)) from exc

    async def _update_one(self, operation: str, statement) -> bool:
        try:
            async with self._session_factory() as session:
                result = await session.execute(statement)
                await session.commit()
                return (result.rowcount or 0) == 1
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(operation, str(exc)) from exc

    async def compare_and_set_status(
        self,
        activity_id: str,
        expected_status: ActivityStatus,
        expected_deadline: datetime,
        new_status: ActivityStatus,
    ) -> bool:
        statement = (
            update(ActivityRow)
            .where(
                ActivityRow.id == activity_id,
                ActivityRow.status == expected_status.value,
                ActivityRow.next_check_in_deadline == _to_db(expected_deadline),
            )
            .values(status=new_status.value, updated_at=_to_db(utc_now()))
        )
        return await self._update_one("transition_activity", statement)

    async def add_check_in(self, check_in: CheckIn) -> CheckIn:
        row = CheckInRow(
            activity_id=check_in.activity_id,
            latitude=check_in.latitude,
            longitude=check_in.longitude,
            created_at=_to_db(check_in.created_at),
        )
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
                await session.refresh(row)
                return row.to_domain()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("add_check_in", str(exc)) from exc

    async def list_check_ins(self, activity_id: str) -> List[CheckIn]:
        try:
            async with self._session_factory() as session:
                rows = await session.scalars(
                    select(CheckInRow)
                    .where(CheckInRow.activity_id == activity_id)
                    .order_by(CheckInRow.created_at, CheckInRow.id)
                )
                return [r.to_domain() for r in rows]
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("list_check_ins", str(exc)) from exc

    async def get_user_by_phone(self, phone_number: str) -> Optional[UserProfile]:
        try:
            async with self._session_factory() as session:
                row = await session.scalar(
                    select(UserRow).where(UserRow.phone_number == phone_number)
                )
                return row.to_domain() if row else None
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("get_user", str(exc)) from exc

    async def save_user(self, profile: UserProfile) -> UserProfile:
        if profile.id is None:
            profile.id = str(uuid.uuid4())
        row = UserRow(
            id=profile.id,
            phone_number=profile.phone_number,
            default_contact_phone=profile.default_contact_phone,
            default_contact_email=profile.default_contact_email,
            default_interval_minutes=profile.default_interval_minutes,
            default_warning_minutes=profile.default_warning_minutes,
            created_at=_to_db(profile.created_at),
        )
        try:
            async with self._session_factory() as session:
                await session.merge(row)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("save_user", str(exc)) from exc
        return profile
