"""SQLite database layer for trainee-rank."""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from loguru import logger

from trainee_rank.levels import DEFAULT_CATALOG, LevelCatalog
from trainee_rank.redemption import RedemptionEngine, RedemptionResult
from trainee_rank.rewards import (
    RedemptionRecord,
    Reward,
    RewardCatalog,
    RewardStatus,
    RewardType,
)
from trainee_rank.trainees import CheckIn, Flag, Trainee, TraineeRegistry


DEFAULT_DB_PATH = Path.home() / ".trainee-rank" / "data.db"


class StaleWriteError(RuntimeError):
    """Raised when a targeted write finds the stored row no longer matches."""


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Database:
    """SQLite database manager with WAL mode."""

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path or DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.init_db()

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS trainees (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                serial_number TEXT UNIQUE NOT NULL,
                points INTEGER NOT NULL DEFAULT 0 CHECK (points >= 0),
                status TEXT DEFAULT 'active',
                registered_at TEXT NOT NULL,
                last_check_in TEXT,
                details TEXT DEFAULT '{}'
            );

            CREATE TABLE IF NOT EXISTS flags (
                id TEXT PRIMARY KEY,
                trainee_id TEXT NOT NULL,
                reason TEXT,
                timestamp TEXT NOT NULL,
                points_deducted INTEGER DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS check_ins (
                id TEXT PRIMARY KEY,
                trainee_id TEXT NOT NULL,
                serial_number TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                points INTEGER DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS rewards (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT,
                points_required INTEGER NOT NULL,
                available_quantity INTEGER NOT NULL,
                total_redeemed INTEGER NOT NULL DEFAULT 0,
                limit_per_person INTEGER NOT NULL DEFAULT 1,
                expiry_date TEXT,
                status TEXT NOT NULL DEFAULT 'active',
                targeted_trainees TEXT DEFAULT '[]',
                type TEXT DEFAULT 'gift',
                category TEXT DEFAULT 'General',
                terms TEXT DEFAULT '',
                created_at TEXT,
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS redemptions (
                id TEXT PRIMARY KEY,
                reward_id TEXT NOT NULL,
                trainee_id TEXT NOT NULL,
                points_deducted INTEGER NOT NULL,
                redeemed_at TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'completed'
            );
        """)
        self.conn.commit()

    @contextmanager
    def transaction(self):
        """Hold the database write lock for a load-modify-save cycle.

        Uses BEGIN IMMEDIATE so a second process blocks until this one commits
        and then loads the committed state. Nested calls join the outer
        transaction.
        """
        if self.conn.in_transaction:
            yield self.conn
            return
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield self.conn
        except BaseException:
            self.conn.rollback()
            raise
        self.conn.commit()

    # ── Trainees ──────────────────────────────────────────────────────────────

    def load_registry(self, catalog: LevelCatalog = DEFAULT_CATALOG) -> TraineeRegistry:
        """Build a TraineeRegistry from stored trainees, flags and check-ins."""
        registry = TraineeRegistry(catalog=catalog)
        flags: dict[str, list[Flag]] = {}
        for row in self.conn.execute("SELECT * FROM flags ORDER BY timestamp").fetchall():
            flags.setdefault(row["trainee_id"], []).append(
                Flag(
                    id=row["id"],
                    reason=row["reason"] or "",
                    timestamp=_parse(row["timestamp"]),
                    points_deducted=row["points_deducted"],
                )
            )
        for row in self.conn.execute("SELECT * FROM trainees ORDER BY registered_at").fetchall():
            registry.restore(
                Trainee(
                    id=row["id"],
                    name=row["name"],
                    serial_number=row["serial_number"],
                    registered_at=_parse(row["registered_at"]),
                    points=row["points"],
                    status=row["status"] or "active",
                    flags=flags.get(row["id"], []),
                    last_check_in=_parse(row["last_check_in"]),
                    details=json.loads(row["details"] or "{}"),
                )
            )
        for row in self.conn.execute("SELECT * FROM check_ins ORDER BY timestamp").fetchall():
            registry.restore_check_in(
                CheckIn(
                    id=row["id"],
                    trainee_id=row["trainee_id"],
                    serial_number=row["serial_number"],
                    timestamp=_parse(row["timestamp"]),
                    points=row["points"],
                )
            )
        logger.debug("Loaded trainees", count=len(registry.all()))
        return registry

    def save_registry(self, registry: TraineeRegistry) -> None:
        """Replace stored trainee state with the registry's contents."""
        with self.transaction():
            self._write_registry(registry)

    def save_catalog(self, catalog: RewardCatalog) -> None:
        """Replace stored rewards and redemptions with the catalog's contents."""
        with self.transaction():
            self._write_catalog(catalog)

    def save(self, registry: TraineeRegistry, catalog: RewardCatalog) -> None:
        """Write trainees and rewards in one transaction."""
        with self.transaction():
            self._write_registry(registry)
            self._write_catalog(catalog)

    def _write_registry(self, registry: TraineeRegistry) -> None:
        trainees = registry.all()
        self.conn.execute("DELETE FROM trainees")
        self.conn.execute("DELETE FROM flags")
        self.conn.execute("DELETE FROM check_ins")
        self.conn.executemany(
            "INSERT INTO trainees (id, name, serial_number, points, status, registered_at, "
            "last_check_in, details) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    t.id, t.name, t.serial_number, t.points, t.status,
                    _iso(t.registered_at), _iso(t.last_check_in),
                    json.dumps(t.details, default=str),
                )
                for t in trainees
            ],
        )
        self.conn.executemany(
            "INSERT INTO flags (id, trainee_id, reason, timestamp, points_deducted) "
            "VALUES (?, ?, ?, ?, ?)",
            [
                (f.id, t.id, f.reason, _iso(f.timestamp), f.points_deducted)
                for t in trainees
                for f in t.flags
            ],
        )
        self.conn.executemany(
            "INSERT INTO check_ins (id, trainee_id, serial_number, timestamp, points) "
            "VALUES (?, ?, ?, ?, ?)",
            [
                (c.id, c.trainee_id, c.serial_number, _iso(c.timestamp), c.points)
                for c in registry.check_ins()
            ],
        )

    # ── Rewards ───────────────────────────────────────────────────────────────

    def load_catalog(self) -> RewardCatalog:
        """Build a RewardCatalog from stored rewards and redemptions."""
        catalog = RewardCatalog()
        for row in self.conn.execute("SELECT * FROM rewards ORDER BY created_at").fetchall():
            catalog.restore(
                Reward(
                    id=row["id"],
                    title=row["title"],
                    description=row["description"] or "",
                    points_required=row["points_required"],
                    available_quantity=row["available_quantity"],
                    total_redeemed=row["total_redeemed"],
                    limit_per_person=row["limit_per_person"],
                    expiry_date=_parse(row["expiry_date"]),
                    status=RewardStatus(row["status"]),
                    targeted_trainees=tuple(json.loads(row["targeted_trainees"] or "[]")),
                    type=RewardType(row["type"] or RewardType.GIFT.value),
                    category=row["category"] or "General",
                    terms=row["terms"] or "",
                    created_at=_parse(row["created_at"]),
                    updated_at=_parse(row["updated_at"]),
                )
            )
        for row in self.conn.execute("SELECT * FROM redemptions ORDER BY redeemed_at").fetchall():
            catalog.restore_redemption(
                RedemptionRecord(
                    id=row["id"],
                    reward_id=row["reward_id"],
                    trainee_id=row["trainee_id"],
                    points_deducted=row["points_deducted"],
                    redeemed_at=_parse(row["redeemed_at"]),
                    status=row["status"],
                )
            )
        logger.debug("Loaded rewards", count=len(catalog.all()))
        return catalog

    def _write_catalog(self, catalog: RewardCatalog) -> None:
        self.conn.execute("DELETE FROM rewards")
        self.conn.execute("DELETE FROM redemptions")
        self.conn.executemany(
            "INSERT INTO rewards (id, title, description, points_required, available_quantity, "
            "total_redeemed, limit_per_person, expiry_date, status, targeted_trainees, type, "
            "category, terms, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    r.id, r.title, r.description, r.points_required, r.available_quantity,
                    r.total_redeemed, r.limit_per_person, _iso(r.expiry_date), r.status.value,
                    json.dumps(list(r.targeted_trainees)), r.type.value, r.category, r.terms,
                    _iso(r.created_at), _iso(r.updated_at),
                )
                for r in catalog.all()
            ],
        )
        self.conn.executemany(
            "INSERT INTO redemptions (id, reward_id, trainee_id, points_deducted, redeemed_at, status) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            [
                (r.id, r.reward_id, r.trainee_id, r.points_deducted, _iso(r.redeemed_at), r.status)
                for r in catalog.redemptions()
            ],
        )

    # ── Redemption ────────────────────────────────────────────────────────────

    def redeem(
        self,
        reward_id: str,
        trainee_id: str,
        levels: LevelCatalog = DEFAULT_CATALOG,
        now: datetime | None = None,
    ) -> RedemptionResult:
        """Redeem against the stored state, safe across processes.

        Loads, validates and writes inside one write transaction, and only
        touches the reward row, the new ledger row and the trainee row.
        """
        with self.transaction():
            registry = self.load_registry(levels)
            catalog = self.load_catalog()
            outcome = RedemptionEngine(catalog, registry).redeem(reward_id, trainee_id, now=now)
            if outcome.ok:
                self.write_redemption(outcome.record)
        return outcome

    def write_redemption(self, record: RedemptionRecord) -> None:
        """Take one unit of stock, append the ledger row and debit the trainee.

        Each statement is conditional on the stored row; a mismatch raises
        StaleWriteError and the surrounding transaction rolls back.
        """
        with self.transaction():
            cur = self.conn.execute(
                "UPDATE rewards SET total_redeemed = total_redeemed + 1 "
                "WHERE id = ? AND status = 'active' AND total_redeemed < available_quantity",
                (record.reward_id,),
            )
            if cur.rowcount != 1:
                raise StaleWriteError(f"Reward {record.reward_id} has no stock left")
            cur = self.conn.execute(
                "UPDATE trainees SET points = points - ? WHERE id = ? AND points >= ?",
                (record.points_deducted, record.trainee_id, record.points_deducted),
            )
            if cur.rowcount != 1:
                raise StaleWriteError(
                    f"Trainee {record.trainee_id} cannot cover {record.points_deducted} points"
                )
            self.conn.execute(
                "INSERT INTO redemptions (id, reward_id, trainee_id, points_deducted, redeemed_at, status) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    record.id, record.reward_id, record.trainee_id, record.points_deducted,
                    _iso(record.redeemed_at), record.status,
                ),
            )
        logger.debug("Stored redemption", redemption_id=record.id, reward_id=record.reward_id)

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()
