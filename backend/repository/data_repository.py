"""Repository layer responsible for all database access."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from backend.domain.models import (
    AllocationMethod,
    AllotmentEvent,
    Channel,
    ChannelAllotment,
    ChannelRestrictions,
    ChannelType,
    DailyAllotment,
    EventType,
    GlobalDefaults,
    RoomTypeAllotment,
)
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class BookingRecord:
    """Booking history projection used for demand velocity."""

    room_type_id: str
    channel_name: str
    stay_date: str
    rooms: int
    booked_at: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _utc_iso(value: datetime) -> str:
    """Normalize to UTC so stored timestamps compare correctly as text."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class DataRepository:
    """Encapsulates SQLite access so allocation logic stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        connection = sqlite3.connect(self._db_path, timeout=30.0)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        try:
            yield connection
            connection.commit()
        except Exception:
            connection.rollback()
            raise
        finally:
            connection.close()

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS GlobalSettings (
                        id INTEGER PRIMARY KEY CHECK (id = 1),
                        total_inventory INTEGER NOT NULL,
                        default_allocation_method TEXT NOT NULL,
                        overbooking_allowed INTEGER NOT NULL,
                        overbooking_limit INTEGER NOT NULL,
                        release_window INTEGER NOT NULL,
                        auto_release INTEGER NOT NULL,
                        block_period INTEGER NOT NULL DEFAULT 0,
                        currency TEXT NOT NULL,
                        timezone TEXT NOT NULL,
                        check_in_hour INTEGER NOT NULL DEFAULT 14,
                        version INTEGER NOT NULL DEFAULT 1,
                        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS RoomTypeAllotments (
                        room_type_id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        allocation_method TEXT NOT NULL,
                        total_inventory INTEGER,
                        overbooking_allowed INTEGER,
                        overbooking_limit INTEGER,
                        last_updated DATETIME
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Channels (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        room_type_id TEXT NOT NULL,
                        position INTEGER NOT NULL,
                        name TEXT NOT NULL,
                        type TEXT NOT NULL,
                        allocation INTEGER NOT NULL CHECK (allocation >= 0),
                        priority INTEGER NOT NULL,
                        commission REAL NOT NULL DEFAULT 0,
                        rate REAL NOT NULL DEFAULT 0,
                        overbooking_permitted INTEGER NOT NULL DEFAULT 0,
                        is_active INTEGER NOT NULL DEFAULT 1,
                        min_stay INTEGER NOT NULL DEFAULT 1,
                        max_stay INTEGER NOT NULL DEFAULT 0,
                        closed_to_arrival INTEGER NOT NULL DEFAULT 0,
                        closed_to_departure INTEGER NOT NULL DEFAULT 0,
                        stop_sell INTEGER NOT NULL DEFAULT 0,
                        UNIQUE (room_type_id, name),
                        FOREIGN KEY (room_type_id) REFERENCES RoomTypeAllotments(room_type_id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS DailyAllotments (
                        room_type_id TEXT NOT NULL,
                        date TEXT NOT NULL,
                        total_inventory INTEGER NOT NULL CHECK (total_inventory >= 0),
                        occupancy_rate REAL NOT NULL DEFAULT 0,
                        revenue REAL NOT NULL DEFAULT 0,
                        warnings TEXT NOT NULL DEFAULT '[]',
                        version INTEGER NOT NULL DEFAULT 1,
                        updated_at DATETIME,
                        PRIMARY KEY (room_type_id, date),
                        FOREIGN KEY (room_type_id) REFERENCES RoomTypeAllotments(room_type_id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS ChannelAllotments (
                        room_type_id TEXT NOT NULL,
                        date TEXT NOT NULL,
                        position INTEGER NOT NULL,
                        channel_name TEXT NOT NULL,
                        allocated INTEGER NOT NULL CHECK (allocated >= 0),
                        booked INTEGER NOT NULL DEFAULT 0 CHECK (booked >= 0),
                        held INTEGER NOT NULL DEFAULT 0 CHECK (held >= 0),
                        released_at DATETIME,
                        PRIMARY KEY (room_type_id, date, channel_name),
                        FOREIGN KEY (room_type_id, date)
                            REFERENCES DailyAllotments(room_type_id, date)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS AllotmentEvents (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        event_type TEXT NOT NULL,
                        room_type_id TEXT NOT NULL,
                        date TEXT NOT NULL,
                        channel_name TEXT,
                        amount INTEGER NOT NULL DEFAULT 0,
                        detail TEXT NOT NULL DEFAULT '',
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS BookingHistory (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        room_type_id TEXT NOT NULL,
                        channel_name TEXT NOT NULL,
                        stay_date TEXT NOT NULL,
                        rooms INTEGER NOT NULL,
                        booked_at DATETIME NOT NULL
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_daily_allotments_date
                    ON DailyAllotments(date);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_events_room_type_date
                    ON AllotmentEvents(room_type_id, date);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_booking_history_room_type_booked_at
                    ON BookingHistory(room_type_id, booked_at);
                    """
                )
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    # ---- Global settings -------------------------------------------------

    def get_global_defaults(self) -> Optional[GlobalDefaults]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM GlobalSettings WHERE id = 1;")
            row = cursor.fetchone()
            if row is None:
                return None
            return GlobalDefaults(
                total_inventory=int(row["total_inventory"]),
                default_allocation_method=AllocationMethod(row["default_allocation_method"]),
                overbooking_allowed=bool(row["overbooking_allowed"]),
                overbooking_limit=int(row["overbooking_limit"]),
                release_window=int(row["release_window"]),
                auto_release=bool(row["auto_release"]),
                block_period=int(row["block_period"]),
                currency=str(row["currency"]),
                timezone=str(row["timezone"]),
                check_in_hour=int(row["check_in_hour"]),
                version=int(row["version"]),
            )

    def save_global_defaults(
        self,
        defaults: GlobalDefaults,
        expected_version: Optional[int],
    ) -> bool:
        """Insert the first record or compare-and-swap on ``expected_version``."""
        values = (
            defaults.total_inventory,
            defaults.default_allocation_method.value,
            int(defaults.overbooking_allowed),
            defaults.overbooking_limit,
            defaults.release_window,
            int(defaults.auto_release),
            defaults.block_period,
            defaults.currency,
            defaults.timezone,
            defaults.check_in_hour,
            defaults.version,
            _format_datetime(_utc_now()),
        )
        with self._connect() as conn:
            cursor = conn.cursor()
            if expected_version is None:
                cursor.execute(
                    """
                    INSERT OR IGNORE INTO GlobalSettings (
                        id, total_inventory, default_allocation_method,
                        overbooking_allowed, overbooking_limit, release_window,
                        auto_release, block_period, currency, timezone,
                        check_in_hour, version, updated_at
                    )
                    VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    values,
                )
            else:
                cursor.execute(
                    """
                    UPDATE GlobalSettings
                    SET total_inventory = ?, default_allocation_method = ?,
                        overbooking_allowed = ?, overbooking_limit = ?,
                        release_window = ?, auto_release = ?, block_period = ?,
                        currency = ?, timezone = ?, check_in_hour = ?,
                        version = ?, updated_at = ?
                    WHERE id = 1 AND version = ?;
                    """,
                    values + (expected_version,),
                )
            return cursor.rowcount == 1

    # ---- Room type allotments --------------------------------------------

    def upsert_room_type_allotment(self, allotment: RoomTypeAllotment) -> None:
        """Persist the aggregate's configuration and replace its channel list."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO RoomTypeAllotments (
                    room_type_id, name, allocation_method, total_inventory,
                    overbooking_allowed, overbooking_limit, last_updated
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(room_type_id) DO UPDATE SET
                    name = excluded.name,
                    allocation_method = excluded.allocation_method,
                    total_inventory = excluded.total_inventory,
                    overbooking_allowed = excluded.overbooking_allowed,
                    overbooking_limit = excluded.overbooking_limit,
                    last_updated = excluded.last_updated;
                """,
                (
                    allotment.room_type_id,
                    allotment.name,
                    allotment.allocation_method.value,
                    allotment.total_inventory,
                    (
                        None
                        if allotment.overbooking_allowed is None
                        else int(allotment.overbooking_allowed)
                    ),
                    allotment.overbooking_limit,
                    _format_datetime(allotment.last_updated or _utc_now()),
                ),
            )
            cursor.execute(
                "DELETE FROM Channels WHERE room_type_id = ?;",
                (allotment.room_type_id,),
            )
            cursor.executemany(
                """
                INSERT INTO Channels (
                    room_type_id, position, name, type, allocation, priority,
                    commission, rate, overbooking_permitted, is_active,
                    min_stay, max_stay, closed_to_arrival, closed_to_departure,
                    stop_sell
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                [
                    (
                        allotment.room_type_id,
                        position,
                        channel.name,
                        channel.type.value,
                        channel.allocation,
                        channel.priority,
                        channel.commission,
                        channel.rate,
                        int(channel.overbooking_permitted),
                        int(channel.is_active),
                        channel.restrictions.min_stay,
                        channel.restrictions.max_stay,
                        int(channel.restrictions.closed_to_arrival),
                        int(channel.restrictions.closed_to_departure),
                        int(channel.restrictions.stop_sell),
                    )
                    for position, channel in enumerate(allotment.channels)
                ],
            )

    def get_room_type_allotment(self, room_type_id: str) -> Optional[RoomTypeAllotment]:
        """Load the aggregate's configuration; daily records are loaded separately."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM RoomTypeAllotments WHERE room_type_id = ?;",
                (room_type_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            cursor.execute(
                """
                SELECT * FROM Channels
                WHERE room_type_id = ?
                ORDER BY position ASC;
                """,
                (room_type_id,),
            )
            channels = tuple(
                Channel(
                    name=str(channel_row["name"]),
                    type=ChannelType(channel_row["type"]),
                    allocation=int(channel_row["allocation"]),
                    priority=int(channel_row["priority"]),
                    commission=float(channel_row["commission"]),
                    restrictions=ChannelRestrictions(
                        min_stay=int(channel_row["min_stay"]),
                        max_stay=int(channel_row["max_stay"]),
                        closed_to_arrival=bool(channel_row["closed_to_arrival"]),
                        closed_to_departure=bool(channel_row["closed_to_departure"]),
                        stop_sell=bool(channel_row["stop_sell"]),
                    ),
                    overbooking_permitted=bool(channel_row["overbooking_permitted"]),
                    rate=float(channel_row["rate"]),
                    is_active=bool(channel_row["is_active"]),
                )
                for channel_row in cursor.fetchall()
            )
            return RoomTypeAllotment(
                room_type_id=str(row["room_type_id"]),
                name=str(row["name"]),
                channels=channels,
                allocation_method=AllocationMethod(row["allocation_method"]),
                total_inventory=(
                    int(row["total_inventory"]) if row["total_inventory"] is not None else None
                ),
                overbooking_allowed=(
                    bool(row["overbooking_allowed"])
                    if row["overbooking_allowed"] is not None
                    else None
                ),
                overbooking_limit=(
                    int(row["overbooking_limit"]) if row["overbooking_limit"] is not None else None
                ),
                last_updated=_parse_datetime(row["last_updated"]),
            )

    def list_room_type_ids(self) -> list[str]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT room_type_id FROM RoomTypeAllotments ORDER BY room_type_id ASC;")
            return [str(row["room_type_id"]) for row in cursor.fetchall()]

    # ---- Daily allotments ------------------------------------------------

    def _load_channel_entries(
        self,
        cursor: sqlite3.Cursor,
        room_type_id: str,
        day: str,
    ) -> tuple[ChannelAllotment, ...]:
        cursor.execute(
            """
            SELECT channel_name, allocated, booked, held, released_at
            FROM ChannelAllotments
            WHERE room_type_id = ? AND date = ?
            ORDER BY position ASC;
            """,
            (room_type_id, day),
        )
        return tuple(
            ChannelAllotment(
                channel_name=str(row["channel_name"]),
                allocated=int(row["allocated"]),
                booked=int(row["booked"]),
                held=int(row["held"]),
                released_at=_parse_datetime(row["released_at"]),
            )
            for row in cursor.fetchall()
        )

    def _row_to_daily(self, cursor: sqlite3.Cursor, row: sqlite3.Row) -> DailyAllotment:
        room_type_id = str(row["room_type_id"])
        day = str(row["date"])
        return DailyAllotment(
            room_type_id=room_type_id,
            date=date.fromisoformat(day),
            total_inventory=int(row["total_inventory"]),
            channels=self._load_channel_entries(cursor, room_type_id, day),
            warnings=tuple(json.loads(row["warnings"])),
            occupancy_rate=float(row["occupancy_rate"]),
            revenue=float(row["revenue"]),
            version=int(row["version"]),
            updated_at=_parse_datetime(row["updated_at"]),
        )

    def get_daily_allotment(self, room_type_id: str, day: date) -> Optional[DailyAllotment]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM DailyAllotments WHERE room_type_id = ? AND date = ?;",
                (room_type_id, day.isoformat()),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_daily(cursor, row)

    def list_daily_allotments(
        self,
        room_type_id: str,
        start_date: date,
        end_date: date,
    ) -> List[DailyAllotment]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT * FROM DailyAllotments
                WHERE room_type_id = ? AND date >= ? AND date <= ?
                ORDER BY date ASC;
                """,
                (room_type_id, start_date.isoformat(), end_date.isoformat()),
            )
            rows = cursor.fetchall()
            return [self._row_to_daily(cursor, row) for row in rows]

    def list_daily_keys_between(self, start_date: date, end_date: date) -> list[tuple[str, date]]:
        """Return (room_type_id, date) keys of materialized records in a window."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT room_type_id, date FROM DailyAllotments
                WHERE date >= ? AND date <= ?
                ORDER BY date ASC, room_type_id ASC;
                """,
                (start_date.isoformat(), end_date.isoformat()),
            )
            return [
                (str(row["room_type_id"]), date.fromisoformat(str(row["date"])))
                for row in cursor.fetchall()
            ]

    def _write_channel_entries(self, cursor: sqlite3.Cursor, daily: DailyAllotment) -> None:
        cursor.execute(
            "DELETE FROM ChannelAllotments WHERE room_type_id = ? AND date = ?;",
            (daily.room_type_id, daily.date.isoformat()),
        )
        cursor.executemany(
            """
            INSERT INTO ChannelAllotments (
                room_type_id, date, position, channel_name,
                allocated, booked, held, released_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                (
                    daily.room_type_id,
                    daily.date.isoformat(),
                    position,
                    entry.channel_name,
                    entry.allocated,
                    entry.booked,
                    entry.held,
                    _format_datetime(entry.released_at),
                )
                for position, entry in enumerate(daily.channels)
            ],
        )

    def insert_daily_allotment(self, daily: DailyAllotment) -> bool:
        """Insert a freshly materialized record; False when one already exists."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    """
                    INSERT OR IGNORE INTO DailyAllotments (
                        room_type_id, date, total_inventory, occupancy_rate,
                        revenue, warnings, version, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        daily.room_type_id,
                        daily.date.isoformat(),
                        daily.total_inventory,
                        daily.occupancy_rate,
                        daily.revenue,
                        json.dumps(list(daily.warnings)),
                        daily.version,
                        _format_datetime(daily.updated_at or _utc_now()),
                    ),
                )
                if cursor.rowcount != 1:
                    return False
                self._write_channel_entries(cursor, daily)
                return True
        except sqlite3.Error as exc:
            raise RuntimeError(f"Daily allotment insert failed: {exc}") from exc

    def save_daily_allotment(self, daily: DailyAllotment, expected_version: int) -> bool:
        """Compare-and-swap write; False when the stored version moved on."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    """
                    UPDATE DailyAllotments
                    SET total_inventory = ?, occupancy_rate = ?, revenue = ?,
                        warnings = ?, version = ?, updated_at = ?
                    WHERE room_type_id = ? AND date = ? AND version = ?;
                    """,
                    (
                        daily.total_inventory,
                        daily.occupancy_rate,
                        daily.revenue,
                        json.dumps(list(daily.warnings)),
                        daily.version,
                        _format_datetime(daily.updated_at or _utc_now()),
                        daily.room_type_id,
                        daily.date.isoformat(),
                        expected_version,
                    ),
                )
                if cursor.rowcount != 1:
                    return False
                self._write_channel_entries(cursor, daily)
                return True
        except sqlite3.Error as exc:
            raise RuntimeError(f"Daily allotment save failed: {exc}") from exc

    # ---- Events and booking history --------------------------------------

    def save_events(self, events: Iterable[AllotmentEvent]) -> None:
        """Persist outbound events for the notification subsystem."""
        rows = [
            (
                event.event_type.value,
                event.room_type_id,
                event.date.isoformat(),
                event.channel_name,
                event.amount,
                event.detail,
                _format_datetime(event.created_at or _utc_now()),
            )
            for event in events
        ]
        if not rows:
            return
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.executemany(
                """
                INSERT INTO AllotmentEvents (
                    event_type, room_type_id, date, channel_name, amount, detail, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?);
                """,
                rows,
            )

    def list_events(
        self,
        room_type_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AllotmentEvent]:
        clauses: list[str] = []
        params: list[object] = []
        if room_type_id is not None:
            clauses.append("room_type_id = ?")
            params.append(room_type_id)
        if event_type is not None:
            clauses.append("event_type = ?")
            params.append(event_type.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT event_type, room_type_id, date, channel_name, amount, detail, created_at
                FROM AllotmentEvents
                {where}
                ORDER BY id DESC
                LIMIT ?;
                """,
                (*params, limit),
            )
            return [
                AllotmentEvent(
                    event_type=EventType(row["event_type"]),
                    room_type_id=str(row["room_type_id"]),
                    date=date.fromisoformat(str(row["date"])),
                    channel_name=row["channel_name"],
                    amount=int(row["amount"]),
                    detail=str(row["detail"]),
                    created_at=_parse_datetime(row["created_at"]),
                )
                for row in cursor.fetchall()
            ]

    def count_events(self, event_type: Optional[EventType] = None) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            if event_type is None:
                cursor.execute("SELECT COUNT(*) AS count FROM AllotmentEvents;")
            else:
                cursor.execute(
                    "SELECT COUNT(*) AS count FROM AllotmentEvents WHERE event_type = ?;",
                    (event_type.value,),
                )
            return int(cursor.fetchone()["count"])

    def record_booking_history(
        self,
        room_type_id: str,
        channel_name: str,
        stay_date: date,
        rooms: int,
        booked_at: Optional[datetime] = None,
    ) -> None:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO BookingHistory (room_type_id, channel_name, stay_date, rooms, booked_at)
                VALUES (?, ?, ?, ?, ?);
                """,
                (
                    room_type_id,
                    channel_name,
                    stay_date.isoformat(),
                    rooms,
                    _utc_iso(booked_at or _utc_now()),
                ),
            )

    def get_booking_history(self, room_type_id: str, since: datetime) -> list[BookingRecord]:
        """Return bookings (negative rooms for cancellations) recorded at or after ``since``."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT room_type_id, channel_name, stay_date, rooms, booked_at
                FROM BookingHistory
                WHERE room_type_id = ? AND booked_at >= ?
                ORDER BY booked_at ASC, id ASC;
                """,
                (room_type_id, _utc_iso(since)),
            )
            return [
                BookingRecord(
                    room_type_id=str(row["room_type_id"]),
                    channel_name=str(row["channel_name"]),
                    stay_date=str(row["stay_date"]),
                    rooms=int(row["rooms"]),
                    booked_at=str(row["booked_at"]),
                )
                for row in cursor.fetchall()
            ]
