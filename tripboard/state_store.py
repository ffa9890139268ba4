from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator

from tripboard.errors import ConflictError, NotFoundError
from tripboard.models import (
    ENTRY_CONFIRMED,
    Invite,
    Proposal,
    Rank,
    ScheduleEntry,
    payload_from_dict,
)
from tripboard.timeutils import parse_instant, serialize_datetime, utc_now


def _utc_now() -> str:
    return utc_now().isoformat()


def _dt(value: datetime | None) -> str | None:
    return serialize_datetime(value)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS proposals (
    id TEXT PRIMARY KEY,
    trip_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    proposed_by TEXT NOT NULL,
    status TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    voting_deadline TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    terminal_at TEXT,
    terminal_by TEXT NOT NULL DEFAULT '',
    schedule_entry_id TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_proposals_scope ON proposals(trip_id, kind, status);

CREATE TABLE IF NOT EXISTS ranks (
    proposal_id TEXT NOT NULL,
    voter_id TEXT NOT NULL,
    rank_value INTEGER NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (proposal_id, voter_id)
);

CREATE TABLE IF NOT EXISTS invites (
    item_id TEXT NOT NULL,
    item_kind TEXT NOT NULL,
    user_id TEXT NOT NULL,
    status TEXT NOT NULL,
    responded_at TEXT,
    created_at TEXT NOT NULL,
    waitlisted_at TEXT,
    PRIMARY KEY (item_id, user_id)
);

CREATE TABLE IF NOT EXISTS schedule_entries (
    id TEXT PRIMARY KEY,
    trip_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    created_by TEXT NOT NULL,
    title TEXT NOT NULL,
    start_at TEXT,
    end_at TEXT,
    time_label TEXT NOT NULL DEFAULT '',
    location TEXT NOT NULL DEFAULT '',
    capacity INTEGER,
    status TEXT NOT NULL,
    source_proposal_id TEXT NOT NULL DEFAULT '',
    payload_json TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_schedule_entries_trip ON schedule_entries(trip_id, status);

CREATE TABLE IF NOT EXISTS audit_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    actor_id TEXT NOT NULL,
    action TEXT NOT NULL,
    details_json TEXT NOT NULL
);
"""


def _proposal_from_row(row: sqlite3.Row) -> Proposal:
    return Proposal(
        id=row["id"],
        trip_id=row["trip_id"],
        kind=row["kind"],
        proposed_by=row["proposed_by"],
        payload=payload_from_dict(row["kind"], json.loads(row["payload_json"] or "{}")),
        status=row["status"],
        voting_deadline=parse_instant(row["voting_deadline"]),
        version=int(row["version"]),
        created_at=parse_instant(row["created_at"]),
        updated_at=parse_instant(row["updated_at"]),
        terminal_at=parse_instant(row["terminal_at"]),
        terminal_by=row["terminal_by"] or "",
        schedule_entry_id=row["schedule_entry_id"] or "",
    )


def _rank_from_row(row: sqlite3.Row) -> Rank:
    return Rank(
        proposal_id=row["proposal_id"],
        voter_id=row["voter_id"],
        rank_value=int(row["rank_value"]),
        updated_at=parse_instant(row["updated_at"]),
    )


def _invite_from_row(row: sqlite3.Row) -> Invite:
    return Invite(
        item_id=row["item_id"],
        item_kind=row["item_kind"],
        user_id=row["user_id"],
        status=row["status"],
        responded_at=parse_instant(row["responded_at"]),
        created_at=parse_instant(row["created_at"]),
        waitlisted_at=parse_instant(row["waitlisted_at"]),
    )


def _entry_from_row(row: sqlite3.Row, invites: list[Invite]) -> ScheduleEntry:
    return ScheduleEntry(
        id=row["id"],
        trip_id=row["trip_id"],
        kind=row["kind"],
        created_by=row["created_by"],
        title=row["title"],
        start=parse_instant(row["start_at"]),
        end=parse_instant(row["end_at"]),
        time_label=row["time_label"] or "",
        location=row["location"] or "",
        capacity=int(row["capacity"]) if row["capacity"] is not None else None,
        status=row["status"],
        source_proposal_id=row["source_proposal_id"] or "",
        payload=json.loads(row["payload_json"] or "{}"),
        invites=invites,
        created_at=parse_instant(row["created_at"]),
    )


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.executescript(SCHEMA_SQL)
            finally:
                conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction; everything inside commits or nothing does."""
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            finally:
                conn.close()

    @contextmanager
    def _use(self, conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with self.transaction() as own:
            yield own

    # proposals

    def insert_proposal(self, proposal: Proposal, conn: sqlite3.Connection | None = None) -> Proposal:
        with self._use(conn) as db:
            db.execute(
                """
                INSERT INTO proposals(
                    id, trip_id, kind, proposed_by, status, payload_json, voting_deadline,
                    version, created_at, updated_at, terminal_at, terminal_by, schedule_entry_id
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    proposal.id,
                    proposal.trip_id,
                    proposal.kind,
                    proposal.proposed_by,
                    proposal.status,
                    json.dumps(proposal.payload.to_dict(), ensure_ascii=False),
                    _dt(proposal.voting_deadline),
                    proposal.version,
                    _dt(proposal.created_at),
                    _dt(proposal.updated_at),
                    _dt(proposal.terminal_at),
                    proposal.terminal_by,
                    proposal.schedule_entry_id,
                ),
            )
        return proposal

    def get_proposal(self, proposal_id: str, conn: sqlite3.Connection | None = None) -> Proposal | None:
        with self._use(conn) as db:
            row = db.execute("SELECT * FROM proposals WHERE id = ?", (str(proposal_id),)).fetchone()
        return _proposal_from_row(row) if row else None

    def list_proposals(
        self,
        trip_id: str,
        kind: str | None = None,
        status: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> list[Proposal]:
        query = "SELECT * FROM proposals WHERE trip_id = ?"
        params: list[Any] = [str(trip_id)]
        if kind:
            query += " AND kind = ?"
            params.append(kind)
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at, id"
        with self._use(conn) as db:
            rows = db.execute(query, params).fetchall()
        return [_proposal_from_row(row) for row in rows]

    def update_proposal_status(
        self,
        conn: sqlite3.Connection,
        proposal_id: str,
        *,
        expected_status: str,
        expected_version: int,
        new_status: str,
        terminal_by: str,
        schedule_entry_id: str = "",
        now: datetime | None = None,
    ) -> Proposal:
        """Compare-and-set on ``(status, version)``; raises ``ConflictError`` when the row moved."""
        stamp = _dt(now or utc_now())
        cursor = conn.execute(
            """
            UPDATE proposals
            SET status = ?, version = version + 1, updated_at = ?, terminal_at = ?,
                terminal_by = ?, schedule_entry_id = ?
            WHERE id = ? AND status = ? AND version = ?
            """,
            (
                new_status,
                stamp,
                stamp,
                terminal_by,
                schedule_entry_id,
                str(proposal_id),
                expected_status,
                int(expected_version),
            ),
        )
        if cursor.rowcount != 1:
            raise ConflictError(f"proposal {proposal_id} changed before it could become {new_status}")
        updated = self.get_proposal(proposal_id, conn=conn)
        if updated is None:
            raise NotFoundError(f"proposal {proposal_id} not found")
        return updated

    # ranks

    def list_ranks(self, proposal_ids: Iterable[str], conn: sqlite3.Connection | None = None) -> list[Rank]:
        ids = [str(pid) for pid in proposal_ids]
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with self._use(conn) as db:
            rows = db.execute(
                f"SELECT * FROM ranks WHERE proposal_id IN ({placeholders}) ORDER BY proposal_id, voter_id",  # nosec B608
                ids,
            ).fetchall()
        return [_rank_from_row(row) for row in rows]

    def upsert_rank(self, conn: sqlite3.Connection, rank: Rank) -> None:
        conn.execute(
            """
            INSERT INTO ranks(proposal_id, voter_id, rank_value, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(proposal_id, voter_id) DO UPDATE SET
                rank_value = excluded.rank_value,
                updated_at = excluded.updated_at
            """,
            (rank.proposal_id, rank.voter_id, int(rank.rank_value), _dt(rank.updated_at)),
        )

    def delete_rank(self, conn: sqlite3.Connection, proposal_id: str, voter_id: str) -> None:
        conn.execute("DELETE FROM ranks WHERE proposal_id = ? AND voter_id = ?", (proposal_id, voter_id))

    def delete_ranks_for_proposal(self, conn: sqlite3.Connection, proposal_id: str) -> list[Rank]:
        removed = self.list_ranks([proposal_id], conn=conn)
        conn.execute("DELETE FROM ranks WHERE proposal_id = ?", (proposal_id,))
        return removed

    # invites

    def list_invites(self, item_id: str, conn: sqlite3.Connection | None = None) -> list[Invite]:
        with self._use(conn) as db:
            rows = db.execute(
                "SELECT * FROM invites WHERE item_id = ? ORDER BY created_at, user_id",
                (str(item_id),),
            ).fetchall()
        return [_invite_from_row(row) for row in rows]

    def replace_invites(self, conn: sqlite3.Connection, item_id: str, invites: Iterable[Invite]) -> None:
        conn.execute("DELETE FROM invites WHERE item_id = ?", (str(item_id),))
        for invite in invites:
            conn.execute(
                """
                INSERT INTO invites(item_id, item_kind, user_id, status, responded_at, created_at, waitlisted_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    invite.item_id,
                    invite.item_kind,
                    invite.user_id,
                    invite.status,
                    _dt(invite.responded_at),
                    _dt(invite.created_at),
                    _dt(invite.waitlisted_at),
                ),
            )

    def delete_invites(self, conn: sqlite3.Connection, item_id: str) -> list[Invite]:
        removed = self.list_invites(item_id, conn=conn)
        conn.execute("DELETE FROM invites WHERE item_id = ?", (str(item_id),))
        return removed

    # schedule entries

    def insert_entry(self, entry: ScheduleEntry, conn: sqlite3.Connection | None = None) -> ScheduleEntry:
        with self._use(conn) as db:
            db.execute(
                """
                INSERT INTO schedule_entries(
                    id, trip_id, kind, created_by, title, start_at, end_at, time_label, location,
                    capacity, status, source_proposal_id, payload_json, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.trip_id,
                    entry.kind,
                    entry.created_by,
                    entry.title,
                    _dt(entry.start),
                    _dt(entry.end),
                    entry.time_label,
                    entry.location,
                    entry.capacity,
                    entry.status,
                    entry.source_proposal_id,
                    json.dumps(entry.payload, ensure_ascii=False),
                    _dt(entry.created_at),
                ),
            )
            self.replace_invites(db, entry.id, entry.invites)
        return entry

    def get_entry(self, entry_id: str, conn: sqlite3.Connection | None = None) -> ScheduleEntry | None:
        with self._use(conn) as db:
            row = db.execute("SELECT * FROM schedule_entries WHERE id = ?", (str(entry_id),)).fetchone()
            if row is None:
                return None
            invites = self.list_invites(entry_id, conn=db)
        return _entry_from_row(row, invites)

    def list_entries(
        self,
        trip_id: str,
        include_canceled: bool = False,
        conn: sqlite3.Connection | None = None,
    ) -> list[ScheduleEntry]:
        query = "SELECT * FROM schedule_entries WHERE trip_id = ?"
        params: list[Any] = [str(trip_id)]
        if not include_canceled:
            query += " AND status = ?"
            params.append(ENTRY_CONFIRMED)
        query += " ORDER BY start_at IS NULL, start_at, id"
        with self._use(conn) as db:
            rows = db.execute(query, params).fetchall()
            return [_entry_from_row(row, self.list_invites(row["id"], conn=db)) for row in rows]

    def update_entry_status(
        self,
        conn: sqlite3.Connection,
        entry_id: str,
        *,
        expected_status: str,
        new_status: str,
    ) -> None:
        cursor = conn.execute(
            "UPDATE schedule_entries SET status = ? WHERE id = ? AND status = ?",
            (new_status, str(entry_id), expected_status),
        )
        if cursor.rowcount != 1:
            raise ConflictError(f"schedule entry {entry_id} changed before it could become {new_status}")

    # audit trail

    def record_audit_event(
        self,
        *,
        entity_id: str,
        actor_id: str,
        action: str,
        details: dict[str, Any],
        conn: sqlite3.Connection | None = None,
    ) -> None:
        with self._use(conn) as db:
            db.execute(
                """
                INSERT INTO audit_events(created_at, entity_id, actor_id, action, details_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (_utc_now(), str(entity_id), str(actor_id), action, json.dumps(details, ensure_ascii=False)),
            )

    def recent_audit_events(
        self,
        limit: int = 100,
        entity_id: str | None = None,
        action: str | None = None,
    ) -> list[dict[str, Any]]:
        query = "SELECT id, created_at, entity_id, actor_id, action, details_json FROM audit_events WHERE 1 = 1"
        params: list[Any] = []
        if entity_id is not None:
            query += " AND entity_id = ?"
            params.append(str(entity_id))
        if action is not None:
            query += " AND action = ?"
            params.append(action)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, limit))
        with self._use(None) as db:
            rows = db.execute(query, params).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
