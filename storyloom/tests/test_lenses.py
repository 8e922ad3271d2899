"""
Unit tests for the Lens Assignment Engine.

Tests cover:
- Selector hash determinism
- Non-empty, non-shared assignments over fuzzed inputs
- Anti-repetition filtering and forced repetition
- Single-lens archetype rows and the universe fallback
- Validation fallback and rejection
- Behavioural queries (resistance, reveal gating, cost, pacing, meta updates)
- The story-creation service and its history writes
"""

import logging
import random
from datetime import timezone
from unittest.mock import patch

import pytest

from storyloom.core.lenses import (
    ARCHETYPE_MAPPING,
    MORAL_FRICTION_ENGINE,
    UNEXPECTED_COMPETENCE,
    VOLATILE_MIRROR,
    WITHHELD_CORE,
    AssignmentInvariantViolation,
    BeatType,
    Compatibility,
    LensAssignmentEngine,
    LensAssignmentService,
    ProtagonistState,
    is_reveal_gated,
    pacing_modifiers,
    requires_cost_after_victory,
    resistance,
    selector_hash,
    update_meta,
    validate_before_generation,
    validate_lens_state,
)
from storyloom.models import AssignmentResult, CharacterLenses, LensAssignmentRequest, LensMeta
from storyloom.services.lens_history import InMemoryLensHistoryStore, LensHistory

N, C, F = Compatibility.NATURAL, Compatibility.CONDITIONAL, Compatibility.FORBIDDEN

GENRES = ["fantasy", "noir", "regency", "space opera", ""]
TONES = ["wry", "earnest", "dark", ""]


def _assign(engine, protagonist, love_interest, genre="fantasy", tone="wry", history=None, **kwargs):
    return engine.assign_lenses(protagonist, love_interest, genre, tone, history=history, **kwargs)


class TestSelectorHash:
    """Tests for the deterministic selector."""

    def test_known_value(self):
        """The rolling hash of a short key matches a hand-computed value."""
        assert selector_hash("a", "b", "c", 0) == 1941331816

    def test_deterministic(self):
        """Identical inputs always produce identical selectors."""
        assert selector_hash("ROGUE", "noir", "dark", 3) == selector_hash("ROGUE", "noir", "dark", 3)

    def test_history_length_changes_selector(self):
        """History length is part of the key."""
        assert selector_hash("ROGUE", "noir", "dark", 3) != selector_hash("ROGUE", "noir", "dark", 4)

    def test_non_negative_and_word_sized(self):
        """Selectors are absolute values of a signed 32-bit integer."""
        for archetype in list(ARCHETYPE_MAPPING) + ["A" * 500]:
            value = selector_hash(archetype, "genre", "tone", 7)
            assert 0 <= value <= 2 ** 31


class TestAssignment:
    """Tests for assignLenses invariants."""

    def test_fuzzed_assignments_are_valid(self):
        """Every fuzzed assignment gives both characters a lens and shares nothing forbidden."""
        fuzz = random.Random(1234)
        archetypes = list(ARCHETYPE_MAPPING) + ["UNKNOWN", "", "  rogue  ", "Wanderer"]
        store_entries = []
        engine = LensAssignmentEngine(rng=random.Random(1))

        for _ in range(400):
            history = LensHistory(store_entries)
            result = _assign(
                engine,
                fuzz.choice(archetypes),
                fuzz.choice(archetypes),
                genre=fuzz.choice(GENRES),
                tone=fuzz.choice(TONES),
                history=history,
                story_length=fuzz.randint(0, 6),
                complexity_flag=fuzz.random() < 0.5,
            )

            assert result.protagonist.lenses
            assert result.love_interest.lenses
            assert engine.validate_assignment(result) == []
            for lens_id in result.protagonist.lenses:
                if lens_id != VOLATILE_MIRROR:
                    assert lens_id not in result.love_interest.lenses
            if WITHHELD_CORE in result.protagonist.lenses:
                assert VOLATILE_MIRROR not in result.love_interest.lenses
            store_entries = (store_entries + engine.combos_for(result))[-10:]

    def test_same_inputs_same_selection(self):
        """Identical inputs and history length give the same selector and lenses."""
        first = _assign(LensAssignmentEngine(rng=random.Random(1)), "ROGUE", "GUARDIAN")
        second = _assign(LensAssignmentEngine(rng=random.Random(99)), "ROGUE", "GUARDIAN")

        assert first.selector == second.selector
        assert first.protagonist.lenses == second.protagonist.lenses
        assert first.love_interest.lenses == second.love_interest.lenses

    def test_single_lens_row_always_selected(self):
        """An archetype with exactly one non-forbidden lens always receives it."""
        table = {
            "SOLO": {WITHHELD_CORE: N, MORAL_FRICTION_ENGINE: F, UNEXPECTED_COMPETENCE: F, VOLATILE_MIRROR: F},
            "OPEN": {WITHHELD_CORE: C, MORAL_FRICTION_ENGINE: N, UNEXPECTED_COMPETENCE: N, VOLATILE_MIRROR: C},
        }
        engine = LensAssignmentEngine(
            compatibility_table=table,
            archetype_mapping={"SOLO": "SOLO", "OPEN": "OPEN"},
            rng=random.Random(3),
        )

        for genre in GENRES:
            for tone in TONES:
                for length in range(4):
                    history = LensHistory(["SOLO:WITHHELD_CORE"] * length)
                    result = _assign(engine, "SOLO", "OPEN", genre=genre, tone=tone, history=history)
                    assert result.protagonist.lenses == [WITHHELD_CORE]

    def test_love_interest_respects_pair_exclusion_via_universe(self, caplog):
        """When every compatible love-interest lens is excluded the universe tier is used and logged."""
        table = {
            "SOLO": {WITHHELD_CORE: N, MORAL_FRICTION_ENGINE: F, UNEXPECTED_COMPETENCE: F, VOLATILE_MIRROR: F},
            "ECHO": {WITHHELD_CORE: F, MORAL_FRICTION_ENGINE: F, UNEXPECTED_COMPETENCE: F, VOLATILE_MIRROR: N},
        }
        engine = LensAssignmentEngine(
            compatibility_table=table,
            archetype_mapping={"SOLO": "SOLO", "ECHO": "ECHO"},
        )

        with caplog.at_level(logging.CRITICAL, logger="storyloom.lenses"):
            result = _assign(engine, "SOLO", "ECHO")

        assert result.love_interest.lenses[0] in (MORAL_FRICTION_ENGINE, UNEXPECTED_COMPETENCE)
        assert any(w.code == "UNIVERSE_FALLBACK" for w in result.warnings)
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)

    def test_complexity_adds_second_protagonist_lens(self):
        """Complex stories of three or more chapters give the protagonist two lenses."""
        engine = LensAssignmentEngine()

        result = _assign(engine, "ROGUE", "GUARDIAN", story_length=3, complexity_flag=True)

        assert sorted(result.protagonist.lenses) == sorted([WITHHELD_CORE, UNEXPECTED_COMPETENCE])
        assert result.love_interest.lenses == [MORAL_FRICTION_ENGINE]

    def test_short_story_keeps_single_lens(self):
        """The complexity flag has no effect under three chapters."""
        result = _assign(LensAssignmentEngine(), "ROGUE", "GUARDIAN", story_length=2, complexity_flag=True)

        assert len(result.protagonist.lenses) == 1

    def test_override_unlocks_forbidden_lens(self):
        """A per-role override adds a forbidden lens to the available pool."""
        engine = LensAssignmentEngine()

        pool = engine.available_pool("GUARDIAN", [VOLATILE_MIRROR])

        assert VOLATILE_MIRROR in pool
        assert VOLATILE_MIRROR not in engine.available_pool("GUARDIAN")

    def test_archetype_canonicalization(self):
        """Archetypes map many-to-one; unknown names fall back to the default row."""
        engine = LensAssignmentEngine()

        assert engine.canonical_archetype("dangerous") == "GUARDIAN_PROTECTOR"
        assert engine.canonical_archetype("Wanderer") == "INNOCENT_SEEKER"


class TestAntiRepetition:
    """Tests for history-aware selection."""

    def test_blocked_combo_not_reselected(self):
        """A combo in the recent window is skipped while an alternative exists."""
        engine = LensAssignmentEngine()

        for genre in GENRES:
            for tone in TONES:
                history = LensHistory(["ROGUE:WITHHELD_CORE"])
                result = _assign(engine, "ROGUE", "GUARDIAN", genre=genre, tone=tone, history=history)
                assert result.protagonist.lenses == [UNEXPECTED_COMPETENCE]
                assert result.protagonist.meta[UNEXPECTED_COMPETENCE].pacing_variation == 0.0

    def test_forced_repetition_records_penalty(self):
        """The only natural combo filling the window repeats with a 0.15 pacing variation."""
        engine = LensAssignmentEngine()
        history = LensHistory(["GUARDIAN:MORAL_FRICTION_ENGINE"] * 5)

        result = _assign(engine, "GUARDIAN", "ROGUE", history=history)

        assert result.protagonist.lenses == [MORAL_FRICTION_ENGINE]
        assert result.protagonist.meta[MORAL_FRICTION_ENGINE].pacing_variation == pytest.approx(0.15)
        assert any(w.code == "RECENT_REPETITION" for w in result.warnings)

    def test_combo_outside_window_is_not_blocked(self):
        """Only the last five entries block a combo."""
        history = LensHistory(["GUARDIAN:MORAL_FRICTION_ENGINE"] + ["X:Y"] * 5)

        assert not history.is_combo_blocked("GUARDIAN", MORAL_FRICTION_ENGINE)


class TestValidation:
    """Tests for validateAssignment and the relaxed fallback."""

    def test_shared_lens_is_invalid(self):
        """Two characters carrying the same non-exempt lens fails validation."""
        engine = LensAssignmentEngine()
        result = _assign(engine, "ROGUE", "GUARDIAN")
        result.love_interest.lenses = list(result.protagonist.lenses)

        errors = engine.validate_assignment(result)

        assert any(e.startswith("SHARED_LENS") for e in errors)

    def test_empty_assignment_is_invalid(self):
        """An empty lens list fails validation."""
        engine = LensAssignmentEngine()
        result = _assign(engine, "ROGUE", "GUARDIAN")
        result.protagonist.lenses = []

        assert any(e.startswith("EMPTY_ASSIGNMENT") for e in engine.validate_assignment(result))

    def test_volatile_mirror_may_be_shared(self):
        """The exempt lens may appear on both characters."""
        engine = LensAssignmentEngine()
        result = _assign(engine, "ROGUE", "GUARDIAN")
        result.protagonist.lenses = [VOLATILE_MIRROR]
        result.love_interest.lenses = [VOLATILE_MIRROR]

        assert engine.validate_assignment(result) == []

    def test_one_relaxed_fallback(self):
        """A failed first validation triggers exactly one relaxed re-assignment."""
        engine = LensAssignmentEngine()

        with patch.object(engine, "validate_assignment", side_effect=[["SHARED_LENS: x"], []]) as validate:
            result = _assign(engine, "ROGUE", "GUARDIAN")

        assert result.used_fallback is True
        assert validate.call_count == 2

    def test_rejected_when_fallback_invalid(self):
        """If the relaxed re-assignment is also invalid the assignment is rejected."""
        engine = LensAssignmentEngine()

        with patch.object(engine, "validate_assignment", side_effect=[["first"], ["second"]]):
            with pytest.raises(AssignmentInvariantViolation) as exc_info:
                _assign(engine, "ROGUE", "GUARDIAN")

        assert exc_info.value.errors == ["first", "second"]


class TestLensMeta:
    """Tests for per-lens metadata at assignment."""

    def test_assignment_time_is_utc(self):
        """Assignment timestamps are timezone-aware UTC."""
        meta = LensMeta(lens_id=WITHHELD_CORE)

        assert meta.assigned_at.tzinfo == timezone.utc

    def test_reveal_target_within_window(self):
        """Lenses with a scheduled reveal draw a target inside their window."""
        engine = LensAssignmentEngine(rng=random.Random(5))

        for _ in range(50):
            meta = engine.create_lens_meta(WITHHELD_CORE, "ROGUE")
            assert meta.reveal_scheduled is True
            assert 0.60 <= meta.reveal_progress <= 0.80
            assert meta.resistance == pytest.approx(0.8)

    def test_no_reveal_for_unscheduled_lens(self):
        """Lenses without a required reveal have no target."""
        meta = LensAssignmentEngine().create_lens_meta(MORAL_FRICTION_ENGINE, "GUARDIAN")

        assert meta.reveal_scheduled is False
        assert meta.reveal_progress is None

    def test_conditional_requirement_attached(self):
        """A conditional archetype/lens pair carries its requirement note."""
        meta = LensAssignmentEngine().create_lens_meta(WITHHELD_CORE, "GUARDIAN")

        assert meta.conditional_requirement is not None
        assert meta.conditional_requirement.condition == "protective_secret"


class TestBehaviouralQueries:
    """Tests for resistance, gating, cost and meta updates."""

    def test_linear_resistance(self):
        """Withheld core decays linearly from 0.8 to 0.3 by 75% progress."""
        assert resistance(WITHHELD_CORE, None, 0.0) == pytest.approx(0.8)
        assert resistance(WITHHELD_CORE, None, 0.375) == pytest.approx(0.55)
        assert resistance(WITHHELD_CORE, None, 0.75) == pytest.approx(0.3)
        assert resistance(WITHHELD_CORE, None, 1.0) == pytest.approx(0.3)

    def test_oscillating_resistance(self):
        """Moral friction resistance follows the alignment flag."""
        assert resistance(MORAL_FRICTION_ENGINE, None, 0.5) == pytest.approx(0.3)
        state = ProtagonistState(morally_aligned=False)
        assert resistance(MORAL_FRICTION_ENGINE, None, 0.5, state) == pytest.approx(0.7)

    def test_mirrored_resistance(self):
        """Volatile mirror resistance is the complement of openness."""
        assert resistance(VOLATILE_MIRROR, None, 0.5) == pytest.approx(0.5)
        state = ProtagonistState(emotional_openness=0.2)
        assert resistance(VOLATILE_MIRROR, None, 0.5, state) == pytest.approx(0.8)

    def test_discrete_resistance(self):
        """Unexpected competence drops sharply once revealed."""
        meta = LensMeta(lens_id=UNEXPECTED_COMPETENCE)
        assert resistance(UNEXPECTED_COMPETENCE, meta, 0.5) == pytest.approx(0.9)

        revealed = update_meta(meta, UNEXPECTED_COMPETENCE, BeatType.COMPETENCE_REVEAL, 0.5)
        assert revealed.resistance == pytest.approx(0.2)
        assert meta.competence_revealed is False

    def test_reveal_gating(self):
        """Reveals are gated by progress and, for competence, by setup beats."""
        assert is_reveal_gated(WITHHELD_CORE, None, 0.5)
        assert not is_reveal_gated(WITHHELD_CORE, None, 0.6)

        meta = LensMeta(lens_id=UNEXPECTED_COMPETENCE)
        assert is_reveal_gated(UNEXPECTED_COMPETENCE, meta, 0.5)
        meta = update_meta(meta, UNEXPECTED_COMPETENCE, BeatType.FAILURE, 0.3)
        assert not is_reveal_gated(UNEXPECTED_COMPETENCE, meta, 0.5)
        assert is_reveal_gated(UNEXPECTED_COMPETENCE, meta, 0.1)

    def test_cost_after_victory(self):
        """Two cost-free victories demand a cost; a cost beat resets the streak."""
        meta = LensMeta(lens_id=MORAL_FRICTION_ENGINE)
        meta = update_meta(meta, MORAL_FRICTION_ENGINE, BeatType.VICTORY, 0.2)
        assert not requires_cost_after_victory(MORAL_FRICTION_ENGINE, meta)

        meta = update_meta(meta, MORAL_FRICTION_ENGINE, BeatType.VICTORY, 0.3)
        assert requires_cost_after_victory(MORAL_FRICTION_ENGINE, meta)

        meta = update_meta(meta, MORAL_FRICTION_ENGINE, BeatType.COST, 0.4)
        assert meta.cost_free_streak == 0

    def test_pacing_modifiers_include_variation(self):
        """Forced-repetition variation shifts the minimum reveal point."""
        meta = LensMeta(lens_id=WITHHELD_CORE, pacing_variation=0.15)

        modifiers = pacing_modifiers(WITHHELD_CORE, meta)

        assert modifiers["delay_revelation"] is True
        assert modifiers["min_reveal_progress"] == pytest.approx(0.75)

    def test_core_reveal_records_progress(self):
        """A core reveal beat marks the reveal complete at the current progress."""
        meta = update_meta(LensMeta(lens_id=WITHHELD_CORE), WITHHELD_CORE, BeatType.CORE_REVEAL, 0.7)

        assert meta.reveal_completed is True
        assert meta.reveal_completed_at == pytest.approx(0.7)
        assert validate_lens_state(WITHHELD_CORE, meta, 0.9) == []

    def test_lens_state_warnings(self):
        """Runtime checks flag missed reveals, early competence and missing baselines."""
        assert validate_lens_state(WITHHELD_CORE, LensMeta(lens_id=WITHHELD_CORE), 0.9)[0].code == "WITHHELD_CORE_NO_REVEAL"

        early = LensMeta(lens_id=UNEXPECTED_COMPETENCE, competence_revealed=True)
        assert validate_lens_state(UNEXPECTED_COMPETENCE, early, 0.1)[0].code == "UNEXPECTED_COMPETENCE_EARLY"

        mirror = LensMeta(lens_id=VOLATILE_MIRROR)
        assert validate_lens_state(VOLATILE_MIRROR, mirror, 0.3)[0].code == "VOLATILE_MIRROR_NO_BASELINE"
        mirror = update_meta(mirror, VOLATILE_MIRROR, BeatType.BASELINE_ESTABLISHED, 0.3)
        assert validate_lens_state(VOLATILE_MIRROR, mirror, 0.3) == []

    def test_generation_blocked_without_lenses(self):
        """A long story where neither character has a lens cannot generate."""
        result = AssignmentResult(
            protagonist=CharacterLenses(archetype="ROGUE", canonical_archetype="ROGUE_TRICKSTER"),
            love_interest=CharacterLenses(archetype="GUARDIAN", canonical_archetype="GUARDIAN_PROTECTOR"),
            selector=0,
            story_length=3,
        )

        check = validate_before_generation(result, 0.1)

        assert check.can_generate is False
        assert check.fallback_required is True


class TestLensAssignmentService:
    """Tests for the story-creation boundary."""

    @pytest.mark.asyncio
    async def test_assign_appends_history(self):
        """A finalized assignment appends its combos to the history."""
        store = InMemoryLensHistoryStore()
        service = LensAssignmentService(LensAssignmentEngine(), store)

        result = await service.assign(LensAssignmentRequest(
            protagonist_archetype="rogue",
            love_interest_archetype="guardian",
            genre="noir",
            tone="dark",
        ))

        history = await store.load()
        assert history.to_list() == service.engine.combos_for(result)
        assert history.to_list()[0].startswith("ROGUE:")

    @pytest.mark.asyncio
    async def test_rejected_assignment_leaves_history_untouched(self):
        """No combos are written when the assignment is rejected."""
        store = InMemoryLensHistoryStore()
        engine = LensAssignmentEngine()
        service = LensAssignmentService(engine, store)

        with patch.object(engine, "validate_assignment", side_effect=[["bad"], ["bad"]]):
            with pytest.raises(AssignmentInvariantViolation):
                await service.assign(LensAssignmentRequest(
                    protagonist_archetype="rogue",
                    love_interest_archetype="guardian",
                ))

        assert len(await store.load()) == 0

    @pytest.mark.asyncio
    async def test_history_steers_next_assignment(self):
        """Repeated creations with the same inputs rotate away from recent combos."""
        store = InMemoryLensHistoryStore()
        service = LensAssignmentService(LensAssignmentEngine(), store)
        request = LensAssignmentRequest(protagonist_archetype="rogue", love_interest_archetype="guardian")

        first = await service.assign(request)
        second = await service.assign(request)

        assert first.protagonist.lenses != second.protagonist.lenses
