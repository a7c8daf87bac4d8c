"""Tests for weekly tournaments, the monthly boss and sidequests."""
import sqlite3
from contextlib import closing
from dataclasses import replace
from datetime import date

import pytest

from winter_arc.ledger import SubmissionLedger
from winter_arc.models import (
    BossStatus,
    CombatantState,
    CombatInstance,
    Quest,
    Recurrence,
    SubmissionRequest,
    User,
)
from winter_arc.periodic import (
    MonthlyBossResolver,
    SidequestScheduler,
    WeeklyTournamentResolver,
    pick_tournament_winner,
)
from winter_arc.scoring import ScoringEngine
from winter_arc.settlement import SettlementEngine


SUNDAY = date(2024, 11, 10)
ROSTER = [{"name": "Frost Titan", "hp": 1000, "abilities": ["Ice Smash"]}]


def _set_stats(state, instance_id, user_id, **values):
    assignments = ", ".join(f"{column} = ?" for column in values)
    with closing(sqlite3.connect(state.db_path)) as conn:
        conn.execute(
            f"UPDATE combatant_stats SET {assignments} WHERE instance_id = ? AND user_id = ?",
            (*values.values(), instance_id, user_id),
        )
        conn.commit()


def _combatant(user_id, hp, damage):
    return CombatantState(instance_id=1, user_id=user_id, hp=hp, max_hp=100, total_damage_dealt=damage)


class TestPickTournamentWinner:
    instance = CombatInstance(id=1, player1_id="a", player2_id="b")

    def test_higher_hp_wins(self):
        assert pick_tournament_winner(self.instance, _combatant("a", 60, 300), _combatant("b", 80, 0)) == ("b", "a")

    def test_hp_tie_broken_by_damage(self):
        assert pick_tournament_winner(self.instance, _combatant("a", 80, 200), _combatant("b", 80, 150)) == ("a", "b")
        assert pick_tournament_winner(self.instance, _combatant("a", 80, 100), _combatant("b", 80, 150)) == ("b", "a")

    def test_full_tie_goes_to_player_one(self):
        assert pick_tournament_winner(self.instance, _combatant("b", 80, 100), _combatant("a", 80, 100)) == ("a", "b")


def test_weekly_tournament_scenario(arena):
    _set_stats(arena.state, arena.instance.id, "alice", hp=80, total_damage_dealt=200, xp=40)
    _set_stats(arena.state, arena.instance.id, "bob", hp=80, total_damage_dealt=150, xp=40)
    resolver = WeeklyTournamentResolver(arena.state)

    results = resolver.resolve(SUNDAY)

    assert len(results) == 1
    result = results[0]
    assert (result.winner_id, result.loser_id) == ("alice", "bob")
    assert result.week_start == date(2024, 11, 4)
    assert result.week_end == SUNDAY
    assert result.winner_reward["trophy"] == "Weekly Champion"

    alice = arena.state.get_combatant(arena.instance.id, "alice")
    assert alice.weekly_wins == 1
    assert alice.xp == 90
    assert arena.state.get_combatant(arena.instance.id, "bob").xp == 40


def test_weekly_tournament_once_per_week(arena):
    resolver = WeeklyTournamentResolver(arena.state)

    assert resolver.resolve(SUNDAY)
    assert resolver.resolve(SUNDAY) == []
    assert len(arena.state.list_tournaments(arena.instance.id)) == 1
    assert arena.state.get_combatant(arena.instance.id, "alice").weekly_wins == 1


def test_weekly_tournament_waits_for_sunday(arena):
    resolver = WeeklyTournamentResolver(arena.state)

    assert resolver.resolve(date(2024, 11, 9)) == []
    assert len(resolver.resolve(date(2024, 11, 9), force=True)) == 1


def _deal_damage(state, instance, user_id, quest_name, on, make_scorer, damage):
    quest = state.add_quest(Quest(id=0, owner_id=user_id, name=quest_name))
    SubmissionLedger(state).submit(instance.id, user_id, on, [SubmissionRequest(quest.id, True)])
    engine = SettlementEngine(state, ScoringEngine(scorer=make_scorer(damage=damage, xp=5)))
    engine.run(on)


@pytest.fixture
def two_battles(arena):
    arena.state.upsert_user(User(id="carol", name="Carol"))
    arena.state.upsert_user(User(id="dave", name="Dave"))
    other = arena.state.create_instance("carol", "dave", date(2024, 11, 1))
    return arena, other


def test_boss_hp_is_derived_from_month_damage(two_battles, make_scorer, settings):
    arena, other = two_battles
    _deal_damage(arena.state, arena.instance, "alice", "Run", date(2024, 11, 4), make_scorer, 30)
    resolver = MonthlyBossResolver(arena.state, settings=settings, roster=ROSTER)

    status = resolver.status(date(2024, 11, 4))

    assert status["name"] == "Frost Titan"
    assert status["hp"] == 970
    assert status["status"] == "active"
    assert status["progress_percent"] == 3.0
    assert status["contributions"] == [
        {"instance_id": arena.instance.id, "damage": 30, "users": ["alice", "bob"]}
    ]
    # Recomputing does not drift.
    assert resolver.refresh(date(2024, 11, 4)).hp == 970


def test_boss_defeat_rewards_once(two_battles, make_scorer, settings):
    arena, other = two_battles
    on = date(2024, 11, 4)
    _deal_damage(arena.state, arena.instance, "alice", "Run", on, make_scorer, 500)
    _deal_damage(arena.state, other, "carol", "Swim", on, make_scorer, 500)
    resolver = MonthlyBossResolver(arena.state, settings=settings, roster=ROSTER)

    first = resolver.status(on)
    second = resolver.status(on)

    assert first["hp"] == second["hp"] == 0
    assert first["status"] == second["status"] == "completed"
    assert first["victory_rewards"]["xp_reward"] == 200
    boss = arena.state.get_boss("2024-11")
    rewards = arena.state.boss_rewards(boss.id)
    assert sorted(item["user_id"] for item in rewards) == ["alice", "bob", "carol", "dave"]
    assert arena.state.get_combatant(arena.instance.id, "alice").xp == 205
    assert arena.state.get_combatant(other.id, "dave").xp == 200


def test_completed_boss_is_frozen(two_battles, make_scorer, settings):
    arena, other = two_battles
    on = date(2024, 11, 4)
    _deal_damage(arena.state, arena.instance, "alice", "Run", on, make_scorer, 1000)
    resolver = MonthlyBossResolver(arena.state, settings=settings, roster=ROSTER)
    assert resolver.refresh(on).status is BossStatus.COMPLETED

    _deal_damage(arena.state, other, "carol", "Swim", date(2024, 11, 5), make_scorer, 10)
    boss = resolver.refresh(date(2024, 11, 5))

    assert boss.hp == 0
    assert [entry["instance_id"] for entry in boss.participating] == [arena.instance.id]
    history = resolver.history()
    assert [item["month"] for item in history] == ["2024-11"]
    assert len(history[0]["rewards"]) == 2


def test_new_month_gets_a_new_boss(arena, settings):
    resolver = MonthlyBossResolver(arena.state, settings=settings, roster=ROSTER)

    november = resolver.ensure_boss(date(2024, 11, 30))
    december = resolver.ensure_boss(date(2024, 12, 1))

    assert november.month == "2024-11"
    assert december.month == "2024-12"
    assert november.id != december.id
    assert resolver.ensure_boss(date(2024, 12, 15)).id == december.id


def test_sidequest_spawns_for_both_players(arena, settings):
    templates = [{"name": "Ice Bath Challenge", "difficulty": "heavy", "quest_type": "defense"}]
    scheduler = SidequestScheduler(arena.state, replace(settings, sidequest_chance=1.0), templates)

    events = scheduler.maybe_spawn(date(2024, 11, 8))
    again = scheduler.maybe_spawn(date(2024, 11, 8))

    assert len(events) == 1
    assert again == []
    event = events[0]
    assert event.valid_from == event.expires_on == date(2024, 11, 9)
    for user_id in ("alice", "bob"):
        quests = [q for q in arena.state.list_quests(user_id) if q.recurrence is Recurrence.SIDEQUEST]
        assert [(q.name, q.event_id, q.base_damage) for q in quests] == [("Ice Bath Challenge", event.id, 25)]


def test_sidequest_chance_zero_never_spawns(arena, settings):
    scheduler = SidequestScheduler(arena.state, replace(settings, sidequest_chance=0.0))

    assert scheduler.maybe_spawn(date(2024, 11, 8)) == []
