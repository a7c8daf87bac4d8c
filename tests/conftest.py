"""Shared fixtures for Winter Arc tests."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from pathlib import Path

import pytest

from winter_arc import telemetry as telemetry_module
from winter_arc.config import get_settings
from winter_arc.models import CombatInstance, Quest, Recurrence, ScoringOutcome, QualityTier, User
from winter_arc.state import ArenaState

START = date(2024, 11, 1)  # a Friday


@pytest.fixture(autouse=True)
def isolated_telemetry(tmp_path, monkeypatch):
    """Keep the telemetry singleton out of the working directory."""
    monkeypatch.setenv("WINTER_ARC_TELEMETRY_DB", str(tmp_path / "telemetry.db"))
    monkeypatch.setattr(telemetry_module, "_telemetry", None)
    yield


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def state(tmp_path: Path) -> ArenaState:
    return ArenaState(tmp_path / "arena.db")


@dataclass
class Arena:
    state: ArenaState
    instance: CombatInstance

    def quest(self, owner: str, name: str, **kwargs) -> Quest:
        kwargs.setdefault("recurrence", Recurrence.DAILY)
        return self.state.add_quest(Quest(id=0, owner_id=owner, name=name, **kwargs))


@pytest.fixture
def arena(state: ArenaState) -> Arena:
    state.upsert_user(User(id="alice", name="Alice"))
    state.upsert_user(User(id="bob", name="Bob"))
    instance = state.create_instance("alice", "bob", START)
    return Arena(state=state, instance=instance)


class StubScorer:
    """Returns a fixed outcome for every completed submission."""

    def __init__(self, quality: QualityTier = QualityTier.GOOD, damage: int = 10, xp: int = 5) -> None:
        self.quality = quality
        self.damage = damage
        self.xp = xp
        self.calls = 0
        self.contexts = []

    def score(self, quest, submission, context):
        self.calls += 1
        self.contexts.append(dict(context))
        return ScoringOutcome(quality=self.quality, damage_dealt=self.damage, xp_gained=self.xp, source="llm")


class BrokenScorer:
    """Simulates an unreachable scoring service."""

    def __init__(self) -> None:
        self.calls = 0

    def score(self, quest, submission, context):
        self.calls += 1
        raise ConnectionError("scoring service unreachable")


@pytest.fixture
def stub_scorer() -> StubScorer:
    return StubScorer()


@pytest.fixture
def make_scorer():
    return StubScorer


@pytest.fixture
def broken_scorer() -> BrokenScorer:
    return BrokenScorer()
