"""Tests for combo multipliers and status effect handling."""
from datetime import date

import pytest

from winter_arc.models import QualityTier, Quest, StatusEffect
from winter_arc.modifiers import EffectCatalog, ModifierResolver


TODAY = date(2024, 11, 4)


@pytest.fixture
def resolver() -> ModifierResolver:
    return ModifierResolver()


def _effect(resolver: ModifierResolver, name: str, today: date = TODAY) -> StatusEffect:
    return resolver.apply_effects([], [name], today)[0]


@pytest.mark.parametrize("count, expected", [(0, 1.0), (1, 1.0), (2, 1.2), (3, 1.5), (5, 1.5)])
def test_combo_multiplier_thresholds(resolver, count, expected):
    assert resolver.combo_multiplier(count) == expected


def test_combo_bonus_is_floored_extra():
    assert ModifierResolver.combo_bonus(30, 1.5) == 15
    assert ModifierResolver.combo_bonus(30, 1.2) == 6
    assert ModifierResolver.combo_bonus(25, 1.2) == 5
    assert ModifierResolver.combo_bonus(10, 1.0) == 0


def test_three_quests_of_ten_become_forty_five(resolver):
    multiplier = resolver.combo_multiplier(3)
    assert 30 + resolver.combo_bonus(30, multiplier) == 45


def test_frozen_blocks_combo(resolver):
    frozen = _effect(resolver, "Frozen")
    assert frozen.blocks_combo
    assert resolver.combo_multiplier(3, [frozen]) == 1.0


def test_apply_effects_sets_expiry_and_replaces_same_name(resolver):
    first = resolver.apply_effects([], ["Slowed"], TODAY)
    assert first[0].expires_at == date(2024, 11, 5)

    again = resolver.apply_effects(first, ["Slowed", "Burning"], date(2024, 11, 5))
    assert sorted(effect.name for effect in again) == ["Burning", "Slowed"]
    assert all(effect.expires_at == date(2024, 11, 6) for effect in again)


def test_prune_expired_keeps_effects_through_expiry_day(resolver):
    effects = resolver.apply_effects([], ["Frozen", "Blessed"], TODAY)

    kept, removed = resolver.prune_expired(effects, date(2024, 11, 5))
    assert removed == 0
    assert len(kept) == 2

    kept, removed = resolver.prune_expired(effects, date(2024, 11, 6))
    assert removed == 2
    assert kept == []


def test_outgoing_and_incoming_adjustments(resolver):
    slowed = _effect(resolver, "Slowed")
    blessed = _effect(resolver, "Blessed")
    shielded = _effect(resolver, "Shielded")
    burning = _effect(resolver, "Burning")

    assert resolver.adjust_outgoing(20, 10, [slowed]) == (16, 10)
    assert resolver.adjust_outgoing(20, 10, [blessed]) == (24, 13)
    assert resolver.adjust_incoming(20, [shielded]) == 14
    assert resolver.adjust_incoming(20, [burning]) == 30
    assert resolver.adjust_incoming(20, []) == 20


def test_crit_bonus_from_energized(resolver):
    assert resolver.crit_bonus([_effect(resolver, "Energized")]) == pytest.approx(0.1)
    assert resolver.crit_bonus([]) == 0


def test_failure_effects_match_keywords(resolver):
    gym = Quest(id=1, owner_id="alice", name="Morning Gym Session")
    sleep = Quest(id=2, owner_id="alice", name="Lights out", categories=["sleep"])
    reading = Quest(id=3, owner_id="alice", name="Read 20 pages")

    assert resolver.failure_effects(gym) == ["Frozen"]
    assert resolver.failure_effects(sleep) == ["Slowed"]
    assert resolver.failure_effects(reading) == []


def test_success_effects_only_for_excellent(resolver):
    shield = Quest(id=1, owner_id="alice", name="Meal prep", quest_type="defense")
    meditate = Quest(id=2, owner_id="alice", name="Meditation", categories=["mindfulness"])

    assert resolver.success_effects(shield, QualityTier.GOOD) == []
    assert resolver.success_effects(shield, QualityTier.EXCELLENT) == ["Shielded"]
    assert resolver.success_effects(meditate, QualityTier.EXCELLENT) == ["Blessed"]


def test_unknown_effect_raises(resolver):
    with pytest.raises(KeyError):
        resolver.apply_effects([], ["Petrified"], TODAY)


def test_catalog_from_custom_data():
    catalog = EffectCatalog({
        "status_effects": [
            {
                "name": "Dazed",
                "polarity": "debuff",
                "duration_days": 2,
                "modifiers": [{"kind": "combo_block"}],
            }
        ],
        "failure_triggers": {"Dazed": ["Reading"]},
    })
    resolver = ModifierResolver(catalog=catalog)

    dazed = resolver.apply_effects([], ["Dazed"], TODAY)[0]
    assert dazed.expires_at == date(2024, 11, 6)
    assert dazed.blocks_combo
    assert resolver.failure_effects(Quest(id=1, owner_id="a", name="Reading hour")) == ["Dazed"]
