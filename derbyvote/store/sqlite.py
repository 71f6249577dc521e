"""Entity store backed by a SQLite database file."""

import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from derbyvote.errors import ConflictError, InternalError, NotFoundError
from derbyvote.models import (
    DEFAULT_VOTER_TYPE,
    Car,
    Category,
    CategoryGroup,
    DerbyNetWinner,
    Voter,
    VoteTally,
)
from derbyvote.store import register_store
from derbyvote.store.base import EntityStore

log = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS cars (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        derbynet_racer_id INTEGER UNIQUE,
        car_number TEXT NOT NULL,
        racer_name TEXT NOT NULL DEFAULT '',
        car_name TEXT NOT NULL DEFAULT '',
        photo_url TEXT NOT NULL DEFAULT '',
        rank TEXT NOT NULL DEFAULT '',
        eligible INTEGER NOT NULL DEFAULT 1,
        active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS voters (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        qr_code TEXT UNIQUE NOT NULL,
        car_id INTEGER REFERENCES cars(id) ON DELETE SET NULL,
        name TEXT NOT NULL DEFAULT '',
        voter_type TEXT NOT NULL DEFAULT 'general',
        rank TEXT NOT NULL DEFAULT '',
        last_voted_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS category_groups (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        exclusivity_pool_id INTEGER,
        max_wins_per_car INTEGER,
        display_order INTEGER NOT NULL DEFAULT 0,
        active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS categories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        display_order INTEGER NOT NULL DEFAULT 0,
        group_id INTEGER REFERENCES category_groups(id) ON DELETE SET NULL,
        derbynet_award_id INTEGER,
        allowed_voter_types TEXT,
        allowed_ranks TEXT,
        override_winner_car_id INTEGER,
        override_reason TEXT NOT NULL DEFAULT '',
        overridden_at TEXT,
        active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS votes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        voter_id INTEGER NOT NULL REFERENCES voters(id) ON DELETE CASCADE,
        category_id INTEGER NOT NULL REFERENCES categories(id),
        car_id INTEGER NOT NULL REFERENCES cars(id),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(voter_id, category_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_votes_voter_car ON votes(voter_id, car_id)",
    "CREATE INDEX IF NOT EXISTS idx_votes_category ON votes(category_id)",
    "CREATE INDEX IF NOT EXISTS idx_votes_car ON votes(car_id)",
    "INSERT OR IGNORE INTO settings (key, value) VALUES ('voting_open', 'true')",
]

CATEGORY_SELECT = """
    SELECT c.*, g.name AS group_name, g.exclusivity_pool_id
    FROM categories c
    LEFT JOIN category_groups g ON c.group_id = g.id
"""


def _dump_list(values: list[str]) -> str | None:
    return json.dumps(values) if values else None


def _load_list(raw: str | None) -> list[str]:
    return json.loads(raw) if raw else []


def _parse_time(raw: str | None) -> datetime | None:
    return datetime.fromisoformat(raw) if raw else None


@register_store
class SQLiteStore(EntityStore):
    """SQLite backend.

    One connection in autocommit mode is shared between threads behind a
    lock, so every method runs as a single atomic statement (or a short
    sequence of them) with no long-lived transaction.
    """

    def __init__(self, path: str | Path):
        self._path = str(path)
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            self._path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        for statement in SCHEMA:
            self._conn.execute(statement)
        log.debug("Opened SQLite store at %s", self._path)

    @classmethod
    def can_open(cls, url: str) -> bool:
        return url.startswith("sqlite://") or url.endswith(".db")

    @classmethod
    def from_url(cls, url: str) -> "SQLiteStore":
        if url.startswith("sqlite:///"):
            path = url[len("sqlite:///"):]
        elif url.startswith("sqlite://"):
            path = url[len("sqlite://"):] or ":memory:"
        else:
            path = url
        return cls(path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            with self._lock:
                return self._conn.execute(sql, params)
        except sqlite3.IntegrityError as e:
            raise ConflictError(str(e)) from e
        except sqlite3.Error as e:
            log.error("SQLite error: %s", e)
            raise InternalError("database error") from e

    def _one(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._execute(sql, params).fetchone()

    def _all(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._execute(sql, params).fetchall()

    @staticmethod
    def _voter(row: sqlite3.Row) -> Voter:
        return Voter(
            id=row["id"],
            qr_code=row["qr_code"],
            car_id=row["car_id"],
            name=row["name"],
            voter_type=row["voter_type"],
            rank=row["rank"],
            last_voted_at=_parse_time(row["last_voted_at"]),
        )

    @staticmethod
    def _car(row: sqlite3.Row) -> Car:
        return Car(
            id=row["id"],
            car_number=row["car_number"],
            racer_name=row["racer_name"],
            car_name=row["car_name"],
            photo_url=row["photo_url"],
            rank=row["rank"],
            eligible=bool(row["eligible"]),
            active=bool(row["active"]),
            derbynet_racer_id=row["derbynet_racer_id"],
        )

    @staticmethod
    def _category(row: sqlite3.Row) -> Category:
        return Category(
            id=row["id"],
            name=row["name"],
            display_order=row["display_order"],
            group_id=row["group_id"],
            derbynet_award_id=row["derbynet_award_id"],
            allowed_voter_types=_load_list(row["allowed_voter_types"]),
            allowed_ranks=_load_list(row["allowed_ranks"]),
            override_car_id=row["override_winner_car_id"],
            override_reason=row["override_reason"],
            overridden_at=_parse_time(row["overridden_at"]),
            active=bool(row["active"]),
            group_name=row["group_name"] or "",
            exclusivity_pool_id=row["exclusivity_pool_id"],
        )

    @staticmethod
    def _group(row: sqlite3.Row) -> CategoryGroup:
        return CategoryGroup(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            exclusivity_pool_id=row["exclusivity_pool_id"],
            max_wins_per_car=row["max_wins_per_car"],
            display_order=row["display_order"],
            active=bool(row["active"]),
        )

    # --- voters ---

    def get_voter_by_qr(self, qr_code: str) -> Voter | None:
        row = self._one("SELECT * FROM voters WHERE qr_code = ?", (qr_code,))
        return self._voter(row) if row else None

    def get_voter(self, voter_id: int) -> Voter | None:
        row = self._one("SELECT * FROM voters WHERE id = ?", (voter_id,))
        return self._voter(row) if row else None

    def create_voter(
        self,
        qr_code: str,
        *,
        car_id: int | None = None,
        name: str = "",
        voter_type: str = DEFAULT_VOTER_TYPE,
        rank: str = "",
    ) -> Voter:
        cursor = self._execute(
            "INSERT INTO voters (qr_code, car_id, name, voter_type, rank) VALUES (?, ?, ?, ?, ?)",
            (qr_code, car_id, name, voter_type or DEFAULT_VOTER_TYPE, rank),
        )
        return self.get_voter(cursor.lastrowid)

    def update_voter(self, voter: Voter) -> None:
        cursor = self._execute(
            "UPDATE voters SET car_id = ?, name = ?, voter_type = ?, rank = ? WHERE id = ?",
            (voter.car_id, voter.name, voter.voter_type, voter.rank, voter.id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"voter {voter.id} not found")

    def delete_voter(self, voter_id: int) -> None:
        self._execute("DELETE FROM votes WHERE voter_id = ?", (voter_id,))
        self._execute("DELETE FROM voters WHERE id = ?", (voter_id,))

    def list_voters(self) -> list[Voter]:
        return [self._voter(r) for r in self._all("SELECT * FROM voters ORDER BY id")]

    # --- cars ---

    def get_car(self, car_id: int) -> Car | None:
        row = self._one("SELECT * FROM cars WHERE id = ?", (car_id,))
        return self._car(row) if row else None

    def get_car_by_derbynet_id(self, racer_id: int) -> Car | None:
        row = self._one("SELECT * FROM cars WHERE derbynet_racer_id = ?", (racer_id,))
        return self._car(row) if row else None

    def list_cars(self) -> list[Car]:
        rows = self._all(
            "SELECT * FROM cars WHERE active = 1 ORDER BY CAST(car_number AS INTEGER), car_number"
        )
        return [self._car(r) for r in rows]

    def list_eligible_cars(self) -> list[Car]:
        rows = self._all(
            "SELECT * FROM cars WHERE active = 1 AND eligible = 1 "
            "ORDER BY CAST(car_number AS INTEGER), car_number"
        )
        return [self._car(r) for r in rows]

    def create_car(
        self,
        car_number: str,
        racer_name: str = "",
        car_name: str = "",
        photo_url: str = "",
        rank: str = "",
    ) -> Car:
        cursor = self._execute(
            "INSERT INTO cars (car_number, racer_name, car_name, photo_url, rank) VALUES (?, ?, ?, ?, ?)",
            (car_number, racer_name, car_name, photo_url, rank),
        )
        return self.get_car(cursor.lastrowid)

    def update_car(self, car: Car) -> None:
        cursor = self._execute(
            """
            UPDATE cars SET car_number = ?, racer_name = ?, car_name = ?, photo_url = ?,
                rank = ?, eligible = ?, active = ?, derbynet_racer_id = ?
            WHERE id = ?
            """,
            (car.car_number, car.racer_name, car.car_name, car.photo_url, car.rank,
             int(car.eligible), int(car.active), car.derbynet_racer_id, car.id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"car {car.id} not found")

    def set_car_eligibility(self, car_id: int, eligible: bool) -> None:
        cursor = self._execute(
            "UPDATE cars SET eligible = ? WHERE id = ?", (int(eligible), car_id)
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"car {car_id} not found")

    def delete_car(self, car_id: int) -> None:
        self._execute("UPDATE cars SET active = 0 WHERE id = ?", (car_id,))

    def upsert_car_from_derbynet(
        self,
        racer_id: int,
        car_number: str,
        racer_name: str,
        car_name: str,
        photo_url: str,
        rank: str,
    ) -> bool:
        with self._lock:
            existed = self.get_car_by_derbynet_id(racer_id) is not None
            self._execute(
                """
                INSERT INTO cars (derbynet_racer_id, car_number, racer_name, car_name, photo_url, rank)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(derbynet_racer_id) DO UPDATE SET
                    car_number = excluded.car_number,
                    racer_name = excluded.racer_name,
                    car_name = excluded.car_name,
                    photo_url = excluded.photo_url,
                    rank = excluded.rank,
                    active = 1
                """,
                (racer_id, car_number, racer_name, car_name, photo_url, rank),
            )
        return not existed

    def count_votes_for_car(self, car_id: int) -> int:
        return self._one("SELECT COUNT(*) FROM votes WHERE car_id = ?", (car_id,))[0]

    # --- categories and groups ---

    def get_category(self, category_id: int) -> Category | None:
        row = self._one(CATEGORY_SELECT + " WHERE c.id = ?", (category_id,))
        return self._category(row) if row else None

    def list_categories(self) -> list[Category]:
        rows = self._all(CATEGORY_SELECT + " WHERE c.active = 1 ORDER BY c.display_order, c.id")
        return [self._category(r) for r in rows]

    def create_category(
        self,
        name: str,
        display_order: int = 0,
        group_id: int | None = None,
        allowed_voter_types: list[str] | None = None,
        allowed_ranks: list[str] | None = None,
    ) -> Category:
        cursor = self._execute(
            """
            INSERT INTO categories (name, display_order, group_id, allowed_voter_types, allowed_ranks)
            VALUES (?, ?, ?, ?, ?)
            """,
            (name, display_order, group_id,
             _dump_list(allowed_voter_types or []), _dump_list(allowed_ranks or [])),
        )
        return self.get_category(cursor.lastrowid)

    def update_category(self, category: Category) -> None:
        cursor = self._execute(
            """
            UPDATE categories SET name = ?, display_order = ?, group_id = ?, derbynet_award_id = ?,
                allowed_voter_types = ?, allowed_ranks = ?, active = ?
            WHERE id = ?
            """,
            (category.name, category.display_order, category.group_id,
             category.derbynet_award_id, _dump_list(category.allowed_voter_types),
             _dump_list(category.allowed_ranks), int(category.active), category.id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"category {category.id} not found")

    def delete_category(self, category_id: int) -> None:
        self._execute("UPDATE categories SET active = 0 WHERE id = ?", (category_id,))

    def upsert_category_from_derbynet(
        self, name: str, display_order: int, award_id: int
    ) -> bool:
        with self._lock:
            cursor = self._execute(
                "UPDATE categories SET name = ?, active = 1 WHERE derbynet_award_id = ?",
                (name, award_id),
            )
            if cursor.rowcount:
                return False
            cursor = self._execute(
                "UPDATE categories SET derbynet_award_id = ?, active = 1 WHERE name = ?",
                (award_id, name),
            )
            if cursor.rowcount:
                return False
            self._execute(
                "INSERT INTO categories (name, display_order, derbynet_award_id) VALUES (?, ?, ?)",
                (name, display_order, award_id),
            )
            return True

    def set_override(
        self, category_id: int, car_id: int, reason: str, when: datetime
    ) -> None:
        cursor = self._execute(
            """
            UPDATE categories SET override_winner_car_id = ?, override_reason = ?, overridden_at = ?
            WHERE id = ?
            """,
            (car_id, reason, when.isoformat(), category_id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"category {category_id} not found")

    def clear_override(self, category_id: int) -> None:
        cursor = self._execute(
            """
            UPDATE categories SET override_winner_car_id = NULL, override_reason = '', overridden_at = NULL
            WHERE id = ?
            """,
            (category_id,),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"category {category_id} not found")

    def get_group(self, group_id: int) -> CategoryGroup | None:
        row = self._one("SELECT * FROM category_groups WHERE id = ?", (group_id,))
        return self._group(row) if row else None

    def list_groups(self) -> list[CategoryGroup]:
        rows = self._all(
            "SELECT * FROM category_groups WHERE active = 1 ORDER BY display_order, id"
        )
        return [self._group(r) for r in rows]

    def create_group(
        self,
        name: str,
        description: str = "",
        exclusivity_pool_id: int | None = None,
        max_wins_per_car: int | None = None,
        display_order: int = 0,
    ) -> CategoryGroup:
        cursor = self._execute(
            """
            INSERT INTO category_groups (name, description, exclusivity_pool_id, max_wins_per_car, display_order)
            VALUES (?, ?, ?, ?, ?)
            """,
            (name, description, exclusivity_pool_id, max_wins_per_car, display_order),
        )
        return self.get_group(cursor.lastrowid)

    def update_group(self, group: CategoryGroup) -> None:
        cursor = self._execute(
            """
            UPDATE category_groups SET name = ?, description = ?, exclusivity_pool_id = ?,
                max_wins_per_car = ?, display_order = ?, active = ?
            WHERE id = ?
            """,
            (group.name, group.description, group.exclusivity_pool_id,
             group.max_wins_per_car, group.display_order, int(group.active), group.id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"group {group.id} not found")

    def delete_group(self, group_id: int) -> None:
        self._execute("UPDATE categories SET group_id = NULL WHERE group_id = ?", (group_id,))
        self._execute("DELETE FROM category_groups WHERE id = ?", (group_id,))

    # --- votes ---

    def get_voter_votes(self, voter_id: int) -> dict[int, int]:
        rows = self._all("SELECT category_id, car_id FROM votes WHERE voter_id = ?", (voter_id,))
        return {row["category_id"]: row["car_id"] for row in rows}

    def save_vote(
        self, voter_id: int, category_id: int, car_id: int, when: datetime
    ) -> None:
        stamp = when.isoformat()
        self._execute(
            """
            INSERT INTO votes (voter_id, category_id, car_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(voter_id, category_id) DO UPDATE SET
                car_id = excluded.car_id,
                updated_at = excluded.updated_at
            """,
            (voter_id, category_id, car_id, stamp, stamp),
        )
        self._execute("UPDATE voters SET last_voted_at = ? WHERE id = ?", (stamp, voter_id))

    def delete_vote(self, voter_id: int, category_id: int) -> None:
        self._execute(
            "DELETE FROM votes WHERE voter_id = ? AND category_id = ?", (voter_id, category_id)
        )

    def get_exclusivity_pool_id(self, category_id: int) -> int | None:
        row = self._one(
            """
            SELECT g.exclusivity_pool_id
            FROM categories c
            LEFT JOIN category_groups g ON c.group_id = g.id
            WHERE c.id = ?
            """,
            (category_id,),
        )
        return row[0] if row else None

    def find_conflicting_vote(
        self, voter_id: int, car_id: int, category_id: int, pool_id: int
    ) -> tuple[int, str] | None:
        row = self._one(
            """
            SELECT v.category_id, c.name
            FROM votes v
            JOIN categories c ON v.category_id = c.id
            JOIN category_groups g ON c.group_id = g.id
            WHERE v.voter_id = ? AND v.car_id = ? AND v.category_id != ?
              AND g.exclusivity_pool_id = ?
            ORDER BY v.category_id
            LIMIT 1
            """,
            (voter_id, car_id, category_id, pool_id),
        )
        return (row[0], row[1]) if row else None

    def clear_conflicting_vote(
        self, voter_id: int, category_id: int, car_id: int
    ) -> None:
        self._execute(
            "DELETE FROM votes WHERE voter_id = ? AND category_id = ? AND car_id = ?",
            (voter_id, category_id, car_id),
        )

    def get_vote_results(self) -> list[VoteTally]:
        rows = self._all(
            """
            SELECT category_id, car_id, COUNT(*) AS vote_count
            FROM votes
            GROUP BY category_id, car_id
            ORDER BY category_id, vote_count DESC, car_id
            """
        )
        return [VoteTally(r["category_id"], r["car_id"], r["vote_count"]) for r in rows]

    def get_winners_for_derbynet(self) -> list[DerbyNetWinner]:
        rows = self._all(
            """
            WITH tallies AS (
                SELECT category_id, car_id, COUNT(*) AS vote_count
                FROM votes
                GROUP BY category_id, car_id
            ),
            ranked AS (
                SELECT category_id, car_id, vote_count,
                    ROW_NUMBER() OVER (
                        PARTITION BY category_id ORDER BY vote_count DESC, car_id
                    ) AS rn,
                    COUNT(*) OVER (PARTITION BY category_id, vote_count) AS sharing
                FROM tallies
            )
            SELECT
                c.id AS category_id,
                c.name AS category_name,
                c.derbynet_award_id,
                COALESCE(c.override_winner_car_id, r.car_id) AS car_id,
                cars.derbynet_racer_id,
                CASE WHEN c.override_winner_car_id IS NULL THEN r.vote_count
                     ELSE COALESCE(ov.vote_count, 0) END AS vote_count,
                c.override_winner_car_id IS NOT NULL AS is_override,
                c.override_winner_car_id IS NULL AND r.sharing > 1 AS tied
            FROM categories c
            LEFT JOIN ranked r ON r.category_id = c.id AND r.rn = 1
            LEFT JOIN tallies ov ON ov.category_id = c.id AND ov.car_id = c.override_winner_car_id
            LEFT JOIN cars ON cars.id = COALESCE(c.override_winner_car_id, r.car_id)
            WHERE c.active = 1
              AND (c.override_winner_car_id IS NOT NULL OR r.car_id IS NOT NULL)
            ORDER BY c.display_order, c.id
            """
        )
        return [
            DerbyNetWinner(
                category_id=r["category_id"],
                category_name=r["category_name"],
                derbynet_award_id=r["derbynet_award_id"],
                car_id=r["car_id"],
                derbynet_racer_id=r["derbynet_racer_id"],
                vote_count=r["vote_count"],
                is_override=bool(r["is_override"]),
                tied=bool(r["tied"]),
            )
            for r in rows
        ]

    def count_votes_for_category(self, category_id: int) -> int:
        return self._one(
            "SELECT COUNT(*) FROM votes WHERE category_id = ?", (category_id,)
        )[0]

    # --- settings ---

    def get_setting(self, key: str) -> str:
        row = self._one("SELECT value FROM settings WHERE key = ?", (key,))
        if row is None:
            raise NotFoundError(f"setting {key!r} not found")
        return row[0]

    def set_setting(self, key: str, value: str) -> None:
        self._execute("INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)", (key, value))

    def get_voting_stats(self) -> dict[str, Any]:
        queries = {
            "total_voters": "SELECT COUNT(*) FROM voters",
            "voters_who_voted": "SELECT COUNT(DISTINCT voter_id) FROM votes",
            "total_votes": "SELECT COUNT(*) FROM votes",
            "total_categories": "SELECT COUNT(*) FROM categories WHERE active = 1",
            "total_cars": "SELECT COUNT(*) FROM cars WHERE active = 1",
        }
        return {name: self._one(sql)[0] for name, sql in queries.items()}
