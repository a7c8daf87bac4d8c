"""Arena state management and persistence."""
from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .models import (
    BossStatus,
    CombatantState,
    CombatInstance,
    InstanceStatus,
    MonthlyBossFight,
    NarrativeRecord,
    Quest,
    Recurrence,
    ScoringOutcome,
    SidequestEvent,
    StatusEffect,
    Submission,
    User,
    WeeklyTournamentResult,
)

logger = logging.getLogger(__name__)

_DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS quests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL,
    recurrence TEXT NOT NULL DEFAULT 'daily',
    quest_type TEXT NOT NULL DEFAULT 'attack',
    difficulty TEXT NOT NULL DEFAULT 'medium',
    categories TEXT NOT NULL DEFAULT '[]',
    base_damage INTEGER,
    base_xp INTEGER,
    target_value REAL,
    comparison TEXT NOT NULL DEFAULT '>=',
    emoji TEXT NOT NULL DEFAULT '',
    is_active INTEGER NOT NULL DEFAULT 1,
    event_id INTEGER
);
CREATE INDEX IF NOT EXISTS idx_quests_owner ON quests (owner_id, is_active);
CREATE TABLE IF NOT EXISTS combat_instances (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    player1_id TEXT NOT NULL,
    player2_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    started_on TEXT NOT NULL,
    last_settled_date TEXT,
    completed_at TEXT
);
CREATE TABLE IF NOT EXISTS combatant_stats (
    instance_id INTEGER NOT NULL,
    user_id TEXT NOT NULL,
    hp INTEGER NOT NULL,
    max_hp INTEGER NOT NULL,
    xp INTEGER NOT NULL DEFAULT 0,
    streak INTEGER NOT NULL DEFAULT 0,
    status_effects TEXT NOT NULL DEFAULT '[]',
    total_damage_dealt INTEGER NOT NULL DEFAULT 0,
    weekly_wins INTEGER NOT NULL DEFAULT 0,
    last_action_date TEXT,
    PRIMARY KEY (instance_id, user_id),
    FOREIGN KEY (instance_id) REFERENCES combat_instances (id)
);
CREATE TABLE IF NOT EXISTS submissions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    instance_id INTEGER NOT NULL,
    user_id TEXT NOT NULL,
    quest_id INTEGER NOT NULL,
    submitted_on TEXT NOT NULL,
    completed INTEGER NOT NULL,
    value REAL,
    sequence INTEGER NOT NULL,
    period_key TEXT NOT NULL,
    created_at TEXT NOT NULL,
    settled_at TEXT,
    quality TEXT,
    damage_dealt INTEGER NOT NULL DEFAULT 0,
    xp_gained INTEGER NOT NULL DEFAULT 0,
    is_critical INTEGER NOT NULL DEFAULT 0,
    multiplier REAL NOT NULL DEFAULT 1.0,
    effects_produced TEXT NOT NULL DEFAULT '[]',
    UNIQUE (instance_id, user_id, quest_id, period_key)
);
CREATE INDEX IF NOT EXISTS idx_submissions_pending
    ON submissions (submitted_on, settled_at);
CREATE INDEX IF NOT EXISTS idx_submissions_instance_date
    ON submissions (instance_id, submitted_on, user_id, sequence);
CREATE TABLE IF NOT EXISTS narratives (
    instance_id INTEGER NOT NULL,
    narrated_on TEXT NOT NULL,
    text TEXT NOT NULL,
    source TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (instance_id, narrated_on)
);
CREATE TABLE IF NOT EXISTS weekly_tournaments (
    instance_id INTEGER NOT NULL,
    week_start TEXT NOT NULL,
    week_end TEXT NOT NULL,
    winner_id TEXT NOT NULL,
    loser_id TEXT NOT NULL,
    winner_reward TEXT NOT NULL,
    loser_penalty TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (instance_id, week_start)
);
CREATE TABLE IF NOT EXISTS boss_fights (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    month TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    max_hp INTEGER NOT NULL,
    hp INTEGER NOT NULL,
    abilities TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL DEFAULT 'active',
    participating TEXT NOT NULL DEFAULT '[]',
    victory_rewards TEXT NOT NULL DEFAULT '{}',
    completed_at TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS boss_rewards (
    boss_id INTEGER NOT NULL,
    user_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    distributed_at TEXT NOT NULL,
    PRIMARY KEY (boss_id, user_id)
);
CREATE TABLE IF NOT EXISTS sidequest_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    instance_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    emoji TEXT NOT NULL DEFAULT '',
    difficulty TEXT NOT NULL,
    quest_type TEXT NOT NULL,
    valid_from TEXT NOT NULL,
    expires_on TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sidequest_events_instance
    ON sidequest_events (instance_id, expires_on);
CREATE TABLE IF NOT EXISTS scoring_cache (
    cache_key TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    cached_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS run_locks (
    name TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    acquired_at TEXT NOT NULL
);
"""


class ConcurrentSettlementError(RuntimeError):
    """Raised when a submission was settled by someone else mid-transaction."""


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class ArenaState:
    """High level interface for working with persistent state."""

    def __init__(
        self, db_path: Path, *, starting_hp: int = 100, max_hp: int = 100, xp_per_level: int = 100
    ) -> None:
        self._db_path = db_path
        self._starting_hp = starting_hp
        self._max_hp = max_hp
        self._xp_per_level = xp_per_level
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with closing(self._connect()) as conn:
            conn.executescript(_DB_SCHEMA)
            conn.commit()

    def ping(self) -> None:
        """Raise :class:`sqlite3.Error` when the store cannot be reached."""

        with closing(self._connect()) as conn:
            conn.execute("SELECT 1").fetchone()

    # User management ---------------------------------------------------
    def upsert_user(self, user: User) -> None:
        with closing(self._connect()) as conn:
            conn.execute("REPLACE INTO users (id, name) VALUES (?, ?)", (user.id, user.name))
            conn.commit()

    def get_user(self, user_id: str) -> Optional[User]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT id, name FROM users WHERE id = ?", (user_id,)).fetchone()
        if not row:
            return None
        return User(id=row["id"], name=row["name"])

    def display_name(self, user_id: str) -> str:
        user = self.get_user(user_id)
        return user.name if user else "Unknown Warrior"

    # Quest management --------------------------------------------------
    def add_quest(self, quest: Quest) -> Quest:
        with closing(self._connect()) as conn:
            cursor = conn.execute(
                """
                INSERT INTO quests (
                    owner_id, name, recurrence, quest_type, difficulty, categories,
                    base_damage, base_xp, target_value, comparison, emoji, is_active, event_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    quest.owner_id,
                    quest.name,
                    quest.recurrence.value,
                    quest.quest_type,
                    quest.difficulty,
                    json.dumps(quest.categories),
                    quest.base_damage,
                    quest.base_xp,
                    quest.target_value,
                    quest.comparison,
                    quest.emoji,
                    int(quest.is_active),
                    quest.event_id,
                ),
            )
            conn.commit()
            quest.id = int(cursor.lastrowid)
        return quest

    def get_quest(self, quest_id: int) -> Optional[Quest]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM quests WHERE id = ?", (quest_id,)).fetchone()
        return self._quest_from_row(row) if row else None

    def list_quests(self, owner_id: str, *, active_only: bool = True) -> List[Quest]:
        query = "SELECT * FROM quests WHERE owner_id = ?"
        if active_only:
            query += " AND is_active = 1"
        with closing(self._connect()) as conn:
            rows = conn.execute(query + " ORDER BY id", (owner_id,)).fetchall()
        return [self._quest_from_row(row) for row in rows]

    @staticmethod
    def _quest_from_row(row: sqlite3.Row) -> Quest:
        return Quest(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            recurrence=Recurrence.parse(row["recurrence"]),
            quest_type=row["quest_type"],
            difficulty=row["difficulty"],
            categories=json.loads(row["categories"] or "[]"),
            base_damage=row["base_damage"],
            base_xp=row["base_xp"],
            target_value=row["target_value"],
            comparison=row["comparison"],
            emoji=row["emoji"],
            is_active=bool(row["is_active"]),
            event_id=row["event_id"],
        )

    # Combat instances --------------------------------------------------
    def create_instance(self, player1_id: str, player2_id: str, started_on: date) -> CombatInstance:
        if player1_id == player2_id:
            raise ValueError("A combat instance needs two distinct participants")
        with closing(self._connect()) as conn:
            cursor = conn.execute(
                "INSERT INTO combat_instances (player1_id, player2_id, status, started_on) "
                "VALUES (?, ?, 'active', ?)",
                (player1_id, player2_id, started_on.isoformat()),
            )
            instance_id = int(cursor.lastrowid)
            for user_id in (player1_id, player2_id):
                conn.execute(
                    "INSERT INTO combatant_stats (instance_id, user_id, hp, max_hp) VALUES (?, ?, ?, ?)",
                    (instance_id, user_id, self._starting_hp, self._max_hp),
                )
            conn.commit()
        return CombatInstance(
            id=instance_id,
            player1_id=player1_id,
            player2_id=player2_id,
            started_on=started_on,
        )

    def get_instance(self, instance_id: int) -> Optional[CombatInstance]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT * FROM combat_instances WHERE id = ?", (instance_id,)
            ).fetchone()
        return self._instance_from_row(row) if row else None

    def list_instances(self, status: Optional[InstanceStatus] = None) -> List[CombatInstance]:
        query = "SELECT * FROM combat_instances"
        params: Tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        with closing(self._connect()) as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [self._instance_from_row(row) for row in rows]

    @staticmethod
    def _instance_from_row(row: sqlite3.Row) -> CombatInstance:
        return CombatInstance(
            id=row["id"],
            player1_id=row["player1_id"],
            player2_id=row["player2_id"],
            status=InstanceStatus(row["status"]),
            started_on=_parse_date(row["started_on"]),
            last_settled_date=_parse_date(row["last_settled_date"]),
        )

    def mark_instance_completed(self, instance_id: int, at: datetime) -> bool:
        """Transition an instance to completed; returns False if it already was."""

        with closing(self._connect()) as conn:
            cursor = conn.execute(
                "UPDATE combat_instances SET status = 'completed', completed_at = ? "
                "WHERE id = ? AND status = 'active'",
                (at.isoformat(), instance_id),
            )
            conn.commit()
            return cursor.rowcount == 1

    def set_last_settled(self, instance_id: int, settled_on: date) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                "UPDATE combat_instances SET last_settled_date = ? WHERE id = ? "
                "AND (last_settled_date IS NULL OR last_settled_date < ?)",
                (settled_on.isoformat(), instance_id, settled_on.isoformat()),
            )
            conn.commit()

    # Combatant state ---------------------------------------------------
    def get_combatant(self, instance_id: int, user_id: str) -> Optional[CombatantState]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT * FROM combatant_stats WHERE instance_id = ? AND user_id = ?",
                (instance_id, user_id),
            ).fetchone()
        return self._combatant_from_row(row) if row else None

    def list_combatants(self, instance_id: Optional[int] = None) -> List[CombatantState]:
        query = "SELECT * FROM combatant_stats"
        params: Tuple[Any, ...] = ()
        if instance_id is not None:
            query += " WHERE instance_id = ?"
            params = (instance_id,)
        with closing(self._connect()) as conn:
            rows = conn.execute(query, params).fetchall()
        combatants = []
        for row in rows:
            try:
                combatants.append(self._combatant_from_row(row))
            except (json.JSONDecodeError, KeyError, ValueError):
                logger.warning(
                    "Skipping combatant %s/%s with malformed effects",
                    row["instance_id"],
                    row["user_id"],
                )
        return combatants

    def _combatant_from_row(self, row: sqlite3.Row) -> CombatantState:
        effects = [StatusEffect.from_dict(item) for item in json.loads(row["status_effects"] or "[]")]
        return CombatantState(
            instance_id=row["instance_id"],
            user_id=row["user_id"],
            hp=row["hp"],
            max_hp=row["max_hp"],
            xp=row["xp"],
            streak=row["streak"],
            status_effects=effects,
            total_damage_dealt=row["total_damage_dealt"],
            weekly_wins=row["weekly_wins"],
            last_action_date=_parse_date(row["last_action_date"]),
            xp_per_level=self._xp_per_level,
        )

    def save_effects(self, instance_id: int, user_id: str, effects: Sequence[StatusEffect]) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                "UPDATE combatant_stats SET status_effects = ? WHERE instance_id = ? AND user_id = ?",
                (json.dumps([effect.to_dict() for effect in effects]), instance_id, user_id),
            )
            conn.commit()

    # Submissions -------------------------------------------------------
    def find_period_submission(
        self, instance_id: int, user_id: str, quest_id: int, period_key: str
    ) -> Optional[Submission]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT * FROM submissions WHERE instance_id = ? AND user_id = ? "
                "AND quest_id = ? AND period_key = ?",
                (instance_id, user_id, quest_id, period_key),
            ).fetchone()
        return self._submission_from_row(row) if row else None

    def record_submissions(
        self,
        instance_id: int,
        user_id: str,
        submitted_on: date,
        entries: Sequence[Tuple[int, bool, Optional[float], str]],
        *,
        now: Optional[datetime] = None,
    ) -> List[Submission]:
        """Append raw submissions sharing the next per-day sequence number.

        ``entries`` holds ``(quest_id, completed, value, period_key)`` tuples.
        Rows that collide with an existing period submission are skipped.
        """

        if not entries:
            return []
        now = now or datetime.now(timezone.utc)
        recorded: List[Submission] = []
        with closing(self._connect()) as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT COALESCE(MAX(sequence), 0) FROM submissions "
                    "WHERE instance_id = ? AND user_id = ? AND submitted_on = ?",
                    (instance_id, user_id, submitted_on.isoformat()),
                ).fetchone()
                sequence = int(row[0]) + 1
                for quest_id, completed, value, key in entries:
                    cursor = conn.execute(
                        """
                        INSERT OR IGNORE INTO submissions (
                            instance_id, user_id, quest_id, submitted_on, completed,
                            value, sequence, period_key, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            instance_id,
                            user_id,
                            quest_id,
                            submitted_on.isoformat(),
                            int(completed),
                            value,
                            sequence,
                            key,
                            now.isoformat(),
                        ),
                    )
                    if cursor.rowcount != 1:
                        continue
                    recorded.append(
                        Submission(
                            id=int(cursor.lastrowid),
                            instance_id=instance_id,
                            user_id=user_id,
                            quest_id=quest_id,
                            submitted_on=submitted_on,
                            completed=completed,
                            value=value,
                            sequence=sequence,
                            period_key=key,
                            created_at=now,
                        )
                    )
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
        return recorded

    def submissions_for(
        self,
        instance_id: int,
        submitted_on: date,
        *,
        user_id: Optional[str] = None,
        pending_only: bool = False,
    ) -> List[Submission]:
        query = "SELECT * FROM submissions WHERE instance_id = ? AND submitted_on = ?"
        params: List[Any] = [instance_id, submitted_on.isoformat()]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        if pending_only:
            query += " AND settled_at IS NULL"
        query += " ORDER BY user_id, sequence, id"
        with closing(self._connect()) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._submission_from_row(row) for row in rows]

    def instances_with_activity(self, submitted_on: date) -> List[int]:
        """Instances with pending submissions, or submissions but no narrative, on a date."""

        with closing(self._connect()) as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT s.instance_id FROM submissions s
                WHERE s.submitted_on = ?
                AND (
                    s.settled_at IS NULL
                    OR NOT EXISTS (
                        SELECT 1 FROM narratives n
                        WHERE n.instance_id = s.instance_id AND n.narrated_on = s.submitted_on
                    )
                )
                ORDER BY s.instance_id
                """,
                (submitted_on.isoformat(),),
            ).fetchall()
        return [int(row[0]) for row in rows]

    @staticmethod
    def _submission_from_row(row: sqlite3.Row) -> Submission:
        return Submission(
            id=row["id"],
            instance_id=row["instance_id"],
            user_id=row["user_id"],
            quest_id=row["quest_id"],
            submitted_on=date.fromisoformat(row["submitted_on"]),
            completed=bool(row["completed"]),
            value=row["value"],
            sequence=row["sequence"],
            period_key=row["period_key"],
            created_at=datetime.fromisoformat(row["created_at"]),
            settled_at=_parse_datetime(row["settled_at"]),
            quality=row["quality"],
            damage_dealt=row["damage_dealt"],
            xp_gained=row["xp_gained"],
            is_critical=bool(row["is_critical"]),
            multiplier=row["multiplier"],
            effects_produced=json.loads(row["effects_produced"] or "[]"),
        )

    def apply_user_settlement(
        self,
        *,
        instance_id: int,
        user_id: str,
        opponent_id: str,
        outcomes: Sequence[Tuple[int, ScoringOutcome]],
        xp_gained: int,
        damage_dealt: int,
        streak: int,
        effects: Sequence[StatusEffect],
        settled_on: date,
        settled_at: datetime,
    ) -> int:
        """Settle one user's submissions and apply the results in a single transaction.

        Every submission update is guarded by ``settled_at IS NULL``; if any
        of them has already been settled the whole transaction is rolled back
        and :class:`ConcurrentSettlementError` is raised, so a submission can
        never be marked settled without its damage being applied, nor applied
        twice.
        """

        with closing(self._connect()) as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                for submission_id, outcome in outcomes:
                    cursor = conn.execute(
                        """
                        UPDATE submissions SET
                            settled_at = ?, quality = ?, damage_dealt = ?, xp_gained = ?,
                            is_critical = ?, multiplier = ?, effects_produced = ?
                        WHERE id = ? AND settled_at IS NULL
                        """,
                        (
                            settled_at.isoformat(),
                            outcome.quality.value,
                            int(outcome.damage_dealt),
                            int(outcome.xp_gained),
                            int(outcome.is_critical),
                            float(outcome.multiplier),
                            json.dumps(list(outcome.effects_produced)),
                            submission_id,
                        ),
                    )
                    if cursor.rowcount != 1:
                        raise ConcurrentSettlementError(
                            f"Submission {submission_id} was already settled"
                        )
                conn.execute(
                    """
                    UPDATE combatant_stats SET
                        xp = xp + ?, streak = ?, status_effects = ?,
                        total_damage_dealt = total_damage_dealt + ?, last_action_date = ?
                    WHERE instance_id = ? AND user_id = ?
                    """,
                    (
                        xp_gained,
                        streak,
                        json.dumps([effect.to_dict() for effect in effects]),
                        damage_dealt,
                        settled_on.isoformat(),
                        instance_id,
                        user_id,
                    ),
                )
                conn.execute(
                    "UPDATE combatant_stats SET hp = MAX(0, hp - ?) WHERE instance_id = ? AND user_id = ?",
                    (max(0, damage_dealt), instance_id, opponent_id),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return len(outcomes)

    def settlement_counts(self, instance_id: int, submitted_on: date) -> Dict[str, Any]:
        with closing(self._connect()) as conn:
            totals = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       SUM(CASE WHEN settled_at IS NOT NULL THEN 1 ELSE 0 END) AS settled,
                       MIN(created_at) AS first_submission,
                       MAX(settled_at) AS last_settled
                FROM submissions WHERE instance_id = ? AND submitted_on = ?
                """,
                (instance_id, submitted_on.isoformat()),
            ).fetchone()
            per_user = conn.execute(
                """
                SELECT user_id, COUNT(*) AS total,
                       SUM(CASE WHEN settled_at IS NOT NULL THEN 1 ELSE 0 END) AS settled
                FROM submissions WHERE instance_id = ? AND submitted_on = ?
                GROUP BY user_id
                """,
                (instance_id, submitted_on.isoformat()),
            ).fetchall()
        total = int(totals["total"] or 0)
        settled = int(totals["settled"] or 0)
        return {
            "total": total,
            "settled": settled,
            "pending": total - settled,
            "first_submission": totals["first_submission"],
            "last_settled": totals["last_settled"],
            "per_user": {
                row["user_id"]: {"total": int(row["total"]), "settled": int(row["settled"] or 0)}
                for row in per_user
            },
        }

    def damage_by_instance(self, start: date, end: date) -> Dict[int, int]:
        """Completed-quest damage per instance for instances started on or before ``end``."""

        with closing(self._connect()) as conn:
            rows = conn.execute(
                """
                SELECT ci.id AS instance_id, COALESCE(SUM(s.damage_dealt), 0) AS damage
                FROM combat_instances ci
                LEFT JOIN submissions s
                    ON s.instance_id = ci.id
                    AND s.submitted_on >= ? AND s.submitted_on <= ?
                    AND s.completed = 1 AND s.settled_at IS NOT NULL
                WHERE ci.started_on <= ?
                GROUP BY ci.id
                ORDER BY ci.id
                """,
                (start.isoformat(), end.isoformat(), end.isoformat()),
            ).fetchall()
        return {int(row["instance_id"]): int(row["damage"]) for row in rows}

    # Narratives --------------------------------------------------------
    def get_narrative(self, instance_id: int, narrated_on: date) -> Optional[NarrativeRecord]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT * FROM narratives WHERE instance_id = ? AND narrated_on = ?",
                (instance_id, narrated_on.isoformat()),
            ).fetchone()
        if not row:
            return None
        return NarrativeRecord(
            instance_id=row["instance_id"],
            narrated_on=date.fromisoformat(row["narrated_on"]),
            text=row["text"],
            source=row["source"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def add_narrative(self, record: NarrativeRecord) -> bool:
        """Persist a narrative; returns False if one already existed for the date."""

        with closing(self._connect()) as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO narratives (instance_id, narrated_on, text, source, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    record.instance_id,
                    record.narrated_on.isoformat(),
                    record.text,
                    record.source,
                    record.created_at.isoformat(),
                ),
            )
            conn.commit()
            return cursor.rowcount == 1

    def first_narrative_date(self, instance_id: int) -> Optional[date]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT MIN(narrated_on) FROM narratives WHERE instance_id = ?", (instance_id,)
            ).fetchone()
        return _parse_date(row[0]) if row else None

    # Weekly tournaments ------------------------------------------------
    def get_tournament(self, instance_id: int, week_start: date) -> Optional[WeeklyTournamentResult]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT * FROM weekly_tournaments WHERE instance_id = ? AND week_start = ?",
                (instance_id, week_start.isoformat()),
            ).fetchone()
        return self._tournament_from_row(row) if row else None

    def list_tournaments(self, instance_id: int) -> List[WeeklyTournamentResult]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT * FROM weekly_tournaments WHERE instance_id = ? ORDER BY week_start DESC",
                (instance_id,),
            ).fetchall()
        return [self._tournament_from_row(row) for row in rows]

    @staticmethod
    def _tournament_from_row(row: sqlite3.Row) -> WeeklyTournamentResult:
        return WeeklyTournamentResult(
            instance_id=row["instance_id"],
            week_start=date.fromisoformat(row["week_start"]),
            week_end=date.fromisoformat(row["week_end"]),
            winner_id=row["winner_id"],
            loser_id=row["loser_id"],
            winner_reward=json.loads(row["winner_reward"]),
            loser_penalty=json.loads(row["loser_penalty"]),
        )

    def record_tournament(
        self,
        result: WeeklyTournamentResult,
        *,
        winner_xp_bonus: int,
        loser_xp_reduction: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """Store a tournament result and apply its rewards once per (instance, week)."""

        now = now or datetime.now(timezone.utc)
        with closing(self._connect()) as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO weekly_tournaments (
                        instance_id, week_start, week_end, winner_id, loser_id,
                        winner_reward, loser_penalty, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        result.instance_id,
                        result.week_start.isoformat(),
                        result.week_end.isoformat(),
                        result.winner_id,
                        result.loser_id,
                        json.dumps(result.winner_reward),
                        json.dumps(result.loser_penalty),
                        now.isoformat(),
                    ),
                )
                if cursor.rowcount != 1:
                    conn.rollback()
                    return False
                conn.execute(
                    "UPDATE combatant_stats SET weekly_wins = weekly_wins + 1, xp = xp + ? "
                    "WHERE instance_id = ? AND user_id = ?",
                    (max(0, winner_xp_bonus), result.instance_id, result.winner_id),
                )
                conn.execute(
                    "UPDATE combatant_stats SET xp = MAX(0, xp - ?) WHERE instance_id = ? AND user_id = ?",
                    (max(0, loser_xp_reduction), result.instance_id, result.loser_id),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return True

    # Monthly boss ------------------------------------------------------
    def get_boss(self, month: str) -> Optional[MonthlyBossFight]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM boss_fights WHERE month = ?", (month,)).fetchone()
        return self._boss_from_row(row) if row else None

    def create_boss(
        self, month: str, name: str, max_hp: int, abilities: Sequence[str], *, now: Optional[datetime] = None
    ) -> MonthlyBossFight:
        """Create the month's boss unless one already exists, returning the stored row."""

        now = now or datetime.now(timezone.utc)
        with closing(self._connect()) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO boss_fights (month, name, max_hp, hp, abilities, status, created_at) "
                "VALUES (?, ?, ?, ?, ?, 'active', ?)",
                (month, name, max_hp, max_hp, json.dumps(list(abilities)), now.isoformat()),
            )
            conn.commit()
        boss = self.get_boss(month)
        assert boss is not None
        return boss

    def update_boss_progress(self, boss_id: int, hp: int, participating: List[Dict[str, Any]]) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                "UPDATE boss_fights SET hp = ?, participating = ? WHERE id = ? AND status = 'active'",
                (hp, json.dumps(participating), boss_id),
            )
            conn.commit()

    def complete_boss(
        self,
        boss_id: int,
        rewards: Dict[str, Any],
        recipients: Sequence[Tuple[int, str]],
        xp_reward: int,
        at: datetime,
    ) -> bool:
        """Mark a boss defeated and hand out rewards, once, in one transaction.

        The status guard (not the HP value) decides whether rewards are
        distributed, so recomputing a defeated boss never pays out twice.
        """

        with closing(self._connect()) as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                cursor = conn.execute(
                    "UPDATE boss_fights SET status = 'completed', hp = 0, completed_at = ?, "
                    "victory_rewards = ? WHERE id = ? AND status = 'active'",
                    (at.isoformat(), json.dumps(rewards), boss_id),
                )
                if cursor.rowcount != 1:
                    conn.rollback()
                    return False
                payload = json.dumps(rewards)
                rewarded_users = set()
                for instance_id, user_id in recipients:
                    conn.execute(
                        "UPDATE combatant_stats SET xp = xp + ? WHERE instance_id = ? AND user_id = ?",
                        (xp_reward, instance_id, user_id),
                    )
                    if user_id in rewarded_users:
                        continue
                    rewarded_users.add(user_id)
                    conn.execute(
                        "INSERT OR IGNORE INTO boss_rewards (boss_id, user_id, payload, distributed_at) "
                        "VALUES (?, ?, ?, ?)",
                        (boss_id, user_id, payload, at.isoformat()),
                    )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return True

    def boss_rewards(self, boss_id: int) -> List[Dict[str, Any]]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT user_id, payload, distributed_at FROM boss_rewards WHERE boss_id = ? ORDER BY user_id",
                (boss_id,),
            ).fetchall()
        return [
            {
                "user_id": row["user_id"],
                "payload": json.loads(row["payload"]),
                "distributed_at": row["distributed_at"],
            }
            for row in rows
        ]

    def completed_bosses(self, limit: int = 12) -> List[MonthlyBossFight]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT * FROM boss_fights WHERE status = 'completed' ORDER BY completed_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._boss_from_row(row) for row in rows]

    @staticmethod
    def _boss_from_row(row: sqlite3.Row) -> MonthlyBossFight:
        return MonthlyBossFight(
            id=row["id"],
            month=row["month"],
            name=row["name"],
            max_hp=row["max_hp"],
            hp=row["hp"],
            abilities=json.loads(row["abilities"] or "[]"),
            status=BossStatus(row["status"]),
            participating=json.loads(row["participating"] or "[]"),
            victory_rewards=json.loads(row["victory_rewards"] or "{}"),
            completed_at=_parse_datetime(row["completed_at"]),
        )

    # Sidequests --------------------------------------------------------
    def add_sidequest_event(
        self,
        instance_id: int,
        template: Dict[str, Any],
        valid_from: date,
        expires_on: date,
        *,
        now: Optional[datetime] = None,
    ) -> SidequestEvent:
        now = now or datetime.now(timezone.utc)
        with closing(self._connect()) as conn:
            cursor = conn.execute(
                """
                INSERT INTO sidequest_events (
                    instance_id, name, description, emoji, difficulty, quest_type,
                    valid_from, expires_on, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    instance_id,
                    template["name"],
                    template.get("description", ""),
                    template.get("emoji", ""),
                    template.get("difficulty", "medium"),
                    template.get("quest_type", "attack"),
                    valid_from.isoformat(),
                    expires_on.isoformat(),
                    now.isoformat(),
                ),
            )
            conn.commit()
            event_id = int(cursor.lastrowid)
        return SidequestEvent(
            id=event_id,
            instance_id=instance_id,
            name=template["name"],
            difficulty=template.get("difficulty", "medium"),
            quest_type=template.get("quest_type", "attack"),
            valid_from=valid_from,
            expires_on=expires_on,
            description=template.get("description", ""),
            emoji=template.get("emoji", ""),
        )

    def get_sidequest_event(self, event_id: int) -> Optional[SidequestEvent]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM sidequest_events WHERE id = ?", (event_id,)).fetchone()
        if not row:
            return None
        return SidequestEvent(
            id=row["id"],
            instance_id=row["instance_id"],
            name=row["name"],
            difficulty=row["difficulty"],
            quest_type=row["quest_type"],
            valid_from=date.fromisoformat(row["valid_from"]),
            expires_on=date.fromisoformat(row["expires_on"]),
            description=row["description"],
            emoji=row["emoji"],
        )

    def has_sidequest_from(self, instance_id: int, valid_from: date) -> bool:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT 1 FROM sidequest_events WHERE instance_id = ? AND valid_from = ? LIMIT 1",
                (instance_id, valid_from.isoformat()),
            ).fetchone()
        return row is not None

    # Scoring cache -----------------------------------------------------
    def get_cached_score(self, cache_key: str) -> Optional[Dict[str, Any]]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT payload FROM scoring_cache WHERE cache_key = ?", (cache_key,)
            ).fetchone()
        if not row:
            return None
        try:
            return json.loads(row["payload"])
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed scoring cache entry %s", cache_key)
            return None

    def put_cached_score(self, cache_key: str, payload: Dict[str, Any]) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO scoring_cache (cache_key, payload, cached_at) VALUES (?, ?, ?)",
                (cache_key, json.dumps(payload), datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()

    # Run locks ---------------------------------------------------------
    def acquire_lock(self, name: str, owner: str, now: datetime, stale_after: timedelta) -> bool:
        """Take a named run lock, reclaiming it if the holder looks dead."""

        with closing(self._connect()) as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT owner, acquired_at FROM run_locks WHERE name = ?", (name,)
                ).fetchone()
                if row is not None:
                    acquired_at = datetime.fromisoformat(row["acquired_at"])
                    if now - acquired_at < stale_after:
                        conn.rollback()
                        return False
                    logger.warning(
                        "Reclaiming stale lock %s held by %s since %s",
                        name,
                        row["owner"],
                        row["acquired_at"],
                    )
                conn.execute(
                    "REPLACE INTO run_locks (name, owner, acquired_at) VALUES (?, ?, ?)",
                    (name, owner, now.isoformat()),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return True

    def release_lock(self, name: str, owner: str) -> None:
        with closing(self._connect()) as conn:
            conn.execute("DELETE FROM run_locks WHERE name = ? AND owner = ?", (name, owner))
            conn.commit()

    # Administration ----------------------------------------------------
    def reset_instance(self, instance_id: int, started_on: date) -> Dict[str, int]:
        """Wipe an instance's history and restore both combatants to starting state."""

        deleted: Dict[str, int] = {}
        with closing(self._connect()) as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                for table in ("submissions", "narratives", "weekly_tournaments", "sidequest_events"):
                    cursor = conn.execute(f"DELETE FROM {table} WHERE instance_id = ?", (instance_id,))
                    deleted[table] = cursor.rowcount
                conn.execute(
                    "UPDATE combatant_stats SET hp = ?, max_hp = ?, xp = 0, streak = 0, "
                    "status_effects = '[]', total_damage_dealt = 0, weekly_wins = 0, "
                    "last_action_date = NULL WHERE instance_id = ?",
                    (self._starting_hp, self._max_hp, instance_id),
                )
                conn.execute(
                    "UPDATE combat_instances SET status = 'active', started_on = ?, "
                    "last_settled_date = NULL, completed_at = NULL WHERE id = ?",
                    (started_on.isoformat(), instance_id),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return deleted


__all__ = ["ArenaState", "ConcurrentSettlementError"]
