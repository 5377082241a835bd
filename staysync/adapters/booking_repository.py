"""
Persistence of bookings: an in-memory repository and a SQLAlchemy one.

Both repositories implement the same small protocol used by the
scheduling store. ``commit`` is all-or-nothing, and every update is
checked against the version it was derived from.
"""

from __future__ import annotations

import threading
from datetime import UTC, date, datetime
from typing import Dict, List, Optional, Protocol, Sequence

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    create_engine,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from ..domain.exceptions import DuplicateOriginError, StaleVersionError
from ..domain.models import LOCAL_SOURCE_ID, Booking, BookingStatus, DateRange, Origin


class BookingRepository(Protocol):
    """Protocol describing the persistence behaviour needed by the store."""

    def get(self, booking_id: str) -> Optional[Booking]:
        """Return a booking by id, cancelled ones included."""

    def list_for_resource(
        self,
        resource_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[Booking]:
        """Return a resource's bookings, optionally those overlapping a window."""

    def list_for_source(self, source_id: str) -> List[Booking]:
        """Return every booking imported from a feed."""

    def list_by_status(self, status: BookingStatus) -> List[Booking]:
        """Return every booking in a status."""

    def commit(self, inserts: Sequence[Booking], updates: Sequence[Booking]) -> None:
        """Persist new and changed bookings in one transaction."""

    def record_sync(self, source_id: str, resource_id: str, synced_at: datetime) -> None:
        """Remember when a feed was last merged successfully."""

    def last_synced(self) -> Dict[str, datetime]:
        """Return the last successful sync time per source id."""


def _sort_key(booking: Booking):
    return (booking.resource_id, booking.start_date, booking.id)


class InMemoryBookingRepository:
    """
    Dictionary-backed repository.

    Used by the tests and by short-lived CLI sessions that do not need a
    database file.
    """

    def __init__(self, bookings: Optional[Sequence[Booking]] = None):
        self._bookings: Dict[str, Booking] = {b.id: b for b in bookings or []}
        self._synced_at: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def get(self, booking_id: str) -> Optional[Booking]:
        return self._bookings.get(booking_id)

    def list_for_resource(
        self,
        resource_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[Booking]:
        found = [
            b for b in self._bookings.values()
            if b.resource_id == resource_id
            and (start is None or b.end_date > start)
            and (end is None or b.start_date < end)
        ]
        return sorted(found, key=_sort_key)

    def list_for_source(self, source_id: str) -> List[Booking]:
        found = [b for b in self._bookings.values() if b.origin.source_id == source_id]
        return sorted(found, key=_sort_key)

    def list_by_status(self, status: BookingStatus) -> List[Booking]:
        found = [b for b in self._bookings.values() if b.status is status]
        return sorted(found, key=_sort_key)

    def commit(self, inserts: Sequence[Booking], updates: Sequence[Booking]) -> None:
        with self._lock:
            staged = dict(self._bookings)

            for booking in inserts:
                if booking.id in staged:
                    raise StaleVersionError(
                        f"Booking {booking.id} already exists", current=staged[booking.id]
                    )
                staged[booking.id] = booking

            for booking in updates:
                current = staged.get(booking.id)
                if current is None or current.version != booking.version - 1:
                    raise StaleVersionError(
                        f"Booking {booking.id} changed before it could be written",
                        current=current,
                    )
                staged[booking.id] = booking

            self._check_synced_origins(staged, [*inserts, *updates])
            self._bookings = staged

    def record_sync(self, source_id: str, resource_id: str, synced_at: datetime) -> None:
        with self._lock:
            self._synced_at[source_id] = synced_at

    def last_synced(self) -> Dict[str, datetime]:
        return dict(self._synced_at)

    @staticmethod
    def _check_synced_origins(staged: Dict[str, Booking], written: Sequence[Booking]) -> None:
        """Mirror the partial unique index of the SQL schema."""
        for booking in written:
            if not booking.is_active or booking.origin.is_local:
                continue
            for other in staged.values():
                if (
                    other.id != booking.id
                    and other.is_active
                    and other.origin.key == booking.origin.key
                ):
                    raise DuplicateOriginError(
                        f"Feed event {booking.origin} is already stored as {other.id}; "
                        f"only one active booking may exist per source and uid",
                        current=other,
                    )


def _utc_now() -> datetime:
    """Get current UTC datetime for SQLAlchemy defaults."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class BookingRow(Base):
    """Durable form of a ``Booking``; the origin is flattened to two columns."""

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    resource_id: Mapped[str] = mapped_column(String(100), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    source_id: Mapped[str] = mapped_column(String(100), nullable=False, default=LOCAL_SOURCE_ID)
    external_uid: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    summary: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    pinned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=_utc_now, onupdate=_utc_now
    )

    __table_args__ = (
        Index("idx_booking_resource_dates", "resource_id", "start_date", "end_date"),
        Index("idx_booking_status", "status"),
        Index(
            "uq_booking_synced_origin",
            "source_id",
            "external_uid",
            unique=True,
            sqlite_where=text("status != 'cancelled' AND external_uid IS NOT NULL"),
            postgresql_where=text("status != 'cancelled' AND external_uid IS NOT NULL"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<BookingRow(id={self.id}, resource={self.resource_id}, "
            f"status={self.status}, version={self.version})>"
        )


class FeedStateRow(Base):
    """Last successful merge of each feed."""

    __tablename__ = "feed_states"

    source_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    resource_id: Mapped[str] = mapped_column(String(100), nullable=False)
    last_synced_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


def _row_values(booking: Booking) -> dict:
    return {
        "resource_id": booking.resource_id,
        "start_date": booking.start_date,
        "end_date": booking.end_date,
        "source_id": booking.origin.source_id,
        "external_uid": booking.origin.external_uid,
        "status": booking.status.value,
        "version": booking.version,
        "summary": booking.summary,
        "pinned": booking.pinned,
    }


def _to_domain(row: BookingRow) -> Booking:
    if row.source_id == LOCAL_SOURCE_ID:
        origin = Origin.local()
    else:
        origin = Origin.synced(row.source_id, row.external_uid or "")
    return Booking(
        id=row.id,
        resource_id=row.resource_id,
        range=DateRange(start=row.start_date, end=row.end_date),
        origin=origin,
        status=BookingStatus(row.status),
        version=row.version,
        summary=row.summary,
        pinned=row.pinned,
    )


def _is_origin_violation(exc: IntegrityError) -> bool:
    message = str(exc.orig)
    return "uq_booking_synced_origin" in message or "bookings.external_uid" in message


def create_booking_engine(database_url: str) -> Engine:
    """
    Create an engine for ``database_url``.

    In-memory SQLite gets a single shared connection so every session sees
    the same database.
    """
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url)


class SqlBookingRepository:
    """
    SQLAlchemy-backed repository.

    Updates are written with ``WHERE version = <expected>``, so two processes
    sharing the database cannot overwrite each other's changes either.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str, create_schema: bool = True) -> "SqlBookingRepository":
        repository = cls(create_booking_engine(database_url))
        if create_schema:
            repository.create_schema()
        return repository

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def get(self, booking_id: str) -> Optional[Booking]:
        with self._session_factory() as session:
            row = session.get(BookingRow, booking_id)
            return _to_domain(row) if row is not None else None

    def list_for_resource(
        self,
        resource_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[Booking]:
        stmt = select(BookingRow).where(BookingRow.resource_id == resource_id)
        if start is not None:
            stmt = stmt.where(BookingRow.end_date > start)
        if end is not None:
            stmt = stmt.where(BookingRow.start_date < end)
        stmt = stmt.order_by(BookingRow.start_date, BookingRow.id)
        return self._fetch(stmt)

    def list_for_source(self, source_id: str) -> List[Booking]:
        stmt = (
            select(BookingRow)
            .where(BookingRow.source_id == source_id)
            .order_by(BookingRow.resource_id, BookingRow.start_date, BookingRow.id)
        )
        return self._fetch(stmt)

    def list_by_status(self, status: BookingStatus) -> List[Booking]:
        stmt = (
            select(BookingRow)
            .where(BookingRow.status == status.value)
            .order_by(BookingRow.resource_id, BookingRow.start_date, BookingRow.id)
        )
        return self._fetch(stmt)

    def commit(self, inserts: Sequence[Booking], updates: Sequence[Booking]) -> None:
        try:
            with self._session_factory.begin() as session:
                for booking in inserts:
                    session.add(BookingRow(id=booking.id, **_row_values(booking)))
                session.flush()

                for booking in updates:
                    result = session.execute(
                        update(BookingRow)
                        .where(
                            BookingRow.id == booking.id,
                            BookingRow.version == booking.version - 1,
                        )
                        .values(updated_at=_utc_now(), **_row_values(booking))
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        row = session.get(BookingRow, booking.id)
                        raise StaleVersionError(
                            f"Booking {booking.id} changed before it could be written",
                            current=_to_domain(row) if row is not None else None,
                        )
        except IntegrityError as exc:
            if _is_origin_violation(exc):
                raise DuplicateOriginError(
                    "A feed event is already stored; only one active booking may exist "
                    f"per source and uid: {exc.orig}"
                ) from exc
            raise StaleVersionError(f"Concurrent write rejected by the database: {exc.orig}") from exc

    def record_sync(self, source_id: str, resource_id: str, synced_at: datetime) -> None:
        # Stored as naive UTC
        stamp = synced_at.astimezone(UTC).replace(tzinfo=None)
        with self._session_factory.begin() as session:
            session.merge(
                FeedStateRow(source_id=source_id, resource_id=resource_id, last_synced_at=stamp)
            )

    def last_synced(self) -> Dict[str, datetime]:
        with self._session_factory() as session:
            return {
                row.source_id: row.last_synced_at.replace(tzinfo=UTC)
                for row in session.scalars(select(FeedStateRow))
            }

    def _fetch(self, stmt) -> List[Booking]:
        with self._session_factory() as session:
            return [_to_domain(row) for row in session.scalars(stmt)]
