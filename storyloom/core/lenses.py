"""
Character Drive Lenses

Lenses are structural forces assigned to the protagonist and love interest at
story creation. They bias pacing, resistance and reveal timing and are never
shown to the reader by name.

Assignment is deterministic for a given (archetype, genre, tone, history
length); only the reveal target inside a lens's reveal window is drawn at
random.
"""

import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from ..config import LensSettings
from ..models import (
    AssignmentResult,
    AssignmentWarning,
    CharacterLenses,
    ConditionalRequirement,
    LensAssignmentRequest,
    LensMeta,
)
from ..services.lens_history import LensHistory, LensHistoryStore, combo_key

logger = logging.getLogger("storyloom.lenses")


class AssignmentInvariantViolation(Exception):
    """Raised when no valid lens assignment could be produced."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class Compatibility(str, Enum):
    NATURAL = "NATURAL"
    CONDITIONAL = "CONDITIONAL"
    FORBIDDEN = "FORBIDDEN"


class ResistanceDecay(str, Enum):
    LINEAR = "linear"
    OSCILLATING = "oscillating"
    MIRRORED = "mirrored"
    DISCRETE = "discrete"


class BeatType(str, Enum):
    VICTORY = "victory"
    COST = "cost"
    FAILURE = "failure"
    COMPETENCE_REVEAL = "competence_reveal"
    CORE_REVEAL = "core_reveal"
    BASELINE_ESTABLISHED = "baseline_established"


WITHHELD_CORE = "WITHHELD_CORE"
MORAL_FRICTION_ENGINE = "MORAL_FRICTION_ENGINE"
UNEXPECTED_COMPETENCE = "UNEXPECTED_COMPETENCE"
VOLATILE_MIRROR = "VOLATILE_MIRROR"


# ============================================================================
# Lens Definitions
# ============================================================================

@dataclass(frozen=True)
class ResistanceProfile:
    decay: ResistanceDecay
    initial: float
    floor: Optional[float] = None
    floor_at_progress: Optional[float] = None
    aligned: Optional[float] = None
    misaligned: Optional[float] = None
    after_reveal: Optional[float] = None


@dataclass(frozen=True)
class RevealScheduling:
    required: bool = False
    min_progress: Optional[float] = None
    max_progress: Optional[float] = None
    deadline_progress: Optional[float] = None


@dataclass(frozen=True)
class LensDefinition:
    lens_id: str
    tension: str
    failure_mode: str
    pacing_bias: Dict[str, Any]
    resistance: ResistanceProfile
    reveal: RevealScheduling
    requires_baseline: bool = False


LENS_DEFINITIONS: Dict[str, LensDefinition] = {
    WITHHELD_CORE: LensDefinition(
        lens_id=WITHHELD_CORE,
        tension="anticipation_around_revelation",
        failure_mode="indefinite_withholding_without_progression",
        pacing_bias={
            "delay_major_revelation": True,
            "min_reveal_progress": 0.60,
            "max_reveal_progress": 0.80,
            "hint_frequency": 0.15,
        },
        resistance=ResistanceProfile(
            decay=ResistanceDecay.LINEAR,
            initial=0.8,
            floor=0.3,
            floor_at_progress=0.75,
        ),
        reveal=RevealScheduling(
            required=True,
            min_progress=0.60,
            max_progress=0.80,
            deadline_progress=0.85,
        ),
    ),
    MORAL_FRICTION_ENGINE: LensDefinition(
        lens_id=MORAL_FRICTION_ENGINE,
        tension="ethical_cost_on_choices",
        failure_mode="pure_villain_or_pure_martyr",
        pacing_bias={
            "cost_after_victory": True,
            "max_cost_free_beats": 2,
            "cost_variation_required": True,
        },
        resistance=ResistanceProfile(
            decay=ResistanceDecay.OSCILLATING,
            initial=0.5,
            aligned=0.3,
            misaligned=0.7,
        ),
        reveal=RevealScheduling(required=False),
    ),
    UNEXPECTED_COMPETENCE: LensDefinition(
        lens_id=UNEXPECTED_COMPETENCE,
        tension="subverted_power_dynamics",
        failure_mode="secretly_good_at_everything",
        pacing_bias={
            "require_setup_before_reveal": True,
            "min_failure_before_competence": 1,
            "competence_must_be_bounded": True,
            "early_deployment_threshold": 0.20,
        },
        resistance=ResistanceProfile(
            decay=ResistanceDecay.DISCRETE,
            initial=0.9,
            after_reveal=0.2,
        ),
        reveal=RevealScheduling(
            required=True,
            min_progress=0.20,
            max_progress=0.80,
        ),
    ),
    VOLATILE_MIRROR: LensDefinition(
        lens_id=VOLATILE_MIRROR,
        tension="emotional_feedback_loops",
        failure_mode="purely_reactive_without_baseline",
        pacing_bias={
            "sync_with_protagonist": True,
            "max_sync_delay": 1,
            "variation_required": True,
        },
        resistance=ResistanceProfile(
            decay=ResistanceDecay.MIRRORED,
            initial=0.5,
        ),
        reveal=RevealScheduling(required=False),
        requires_baseline=True,
    ),
}

LENS_UNIVERSE: List[str] = list(LENS_DEFINITIONS)


# ============================================================================
# Archetype x Lens Compatibility
# ============================================================================

ARCHETYPE_MAPPING: Dict[str, str] = {
    "GUARDIAN": "GUARDIAN_PROTECTOR",
    "ROGUE": "ROGUE_TRICKSTER",
    "STRATEGIST": "STRATEGIST_ARCHITECT",
    "ROMANTIC": "INNOCENT_SEEKER",
    "CLOISTERED": "MYSTIC_ORACLE",
    "DANGEROUS": "GUARDIAN_PROTECTOR",
    "SOVEREIGN": "STRATEGIST_ARCHITECT",
    "ENCHANTING": "ROGUE_TRICKSTER",
    "DEVOTED": "GUARDIAN_PROTECTOR",
    "BEAUTIFUL_RUIN": "REBEL_FIREBRAND",
    "ANTI_HERO": "REBEL_FIREBRAND",
}

DEFAULT_CANONICAL_ARCHETYPE = "INNOCENT_SEEKER"

_N, _C, _F = Compatibility.NATURAL, Compatibility.CONDITIONAL, Compatibility.FORBIDDEN

COMPATIBILITY_TABLE: Dict[str, Dict[str, Compatibility]] = {
    "GUARDIAN_PROTECTOR": {
        WITHHELD_CORE: _C, MORAL_FRICTION_ENGINE: _N, UNEXPECTED_COMPETENCE: _C, VOLATILE_MIRROR: _F,
    },
    "ROGUE_TRICKSTER": {
        WITHHELD_CORE: _N, MORAL_FRICTION_ENGINE: _C, UNEXPECTED_COMPETENCE: _N, VOLATILE_MIRROR: _C,
    },
    "STRATEGIST_ARCHITECT": {
        WITHHELD_CORE: _N, MORAL_FRICTION_ENGINE: _N, UNEXPECTED_COMPETENCE: _F, VOLATILE_MIRROR: _C,
    },
    "REBEL_FIREBRAND": {
        WITHHELD_CORE: _F, MORAL_FRICTION_ENGINE: _N, UNEXPECTED_COMPETENCE: _C, VOLATILE_MIRROR: _N,
    },
    "INNOCENT_SEEKER": {
        WITHHELD_CORE: _F, MORAL_FRICTION_ENGINE: _C, UNEXPECTED_COMPETENCE: _N, VOLATILE_MIRROR: _C,
    },
    "MYSTIC_ORACLE": {
        WITHHELD_CORE: _N, MORAL_FRICTION_ENGINE: _F, UNEXPECTED_COMPETENCE: _F, VOLATILE_MIRROR: _C,
    },
}

CONDITIONAL_REQUIREMENTS: Dict[str, ConditionalRequirement] = {
    "ROGUE_TRICKSTER:VOLATILE_MIRROR": ConditionalRequirement(
        condition="mirror_must_invert",
        description="Mirror behavior must invert protagonist state, not echo it",
    ),
    "STRATEGIST_ARCHITECT:VOLATILE_MIRROR": ConditionalRequirement(
        condition="destabilization_arc",
        description="Strategist must be shown losing control before mirroring",
    ),
    "GUARDIAN_PROTECTOR:WITHHELD_CORE": ConditionalRequirement(
        condition="protective_secret",
        description="Secret must be withheld for protection, not from it",
    ),
    "GUARDIAN_PROTECTOR:UNEXPECTED_COMPETENCE": ConditionalRequirement(
        condition="non_combat_domain",
        description="Competence must be outside the expected protective domain",
    ),
    "REBEL_FIREBRAND:UNEXPECTED_COMPETENCE": ConditionalRequirement(
        condition="establishment_skill",
        description="Competence must be in a domain the rebel ostensibly rejects",
    ),
    "INNOCENT_SEEKER:MORAL_FRICTION_ENGINE": ConditionalRequirement(
        condition="gradual_corruption",
        description="Friction must build gradually without destroying innocence instantly",
    ),
    "INNOCENT_SEEKER:VOLATILE_MIRROR": ConditionalRequirement(
        condition="preserve_identity",
        description="Mirroring must not subsume independent identity",
    ),
    "MYSTIC_ORACLE:VOLATILE_MIRROR": ConditionalRequirement(
        condition="reflect_truth",
        description="Mirror must reflect uncomfortable truths, not emotions",
    ),
}

# Lenses the two characters may both carry
SHARING_EXEMPT_LENSES: Set[str] = {VOLATILE_MIRROR}

# Protagonist lens -> lenses the love interest may not carry
LENS_PAIR_EXCLUSIONS: Dict[str, Set[str]] = {
    WITHHELD_CORE: {VOLATILE_MIRROR},
}

MAX_LENSES_PER_CHARACTER = 2
COMPLEXITY_MIN_CHAPTERS = 3
MIN_CHAPTERS_FOR_LENS_REQUIREMENT = 3

PROTAGONIST = "protagonist"
LOVE_INTEREST = "love_interest"


def normalize_archetype(archetype: str) -> str:
    return (archetype or "").strip().upper()


def selector_hash(archetype: str, genre: str, tone: str, history_length: int) -> int:
    """
    Deterministic selector for lens indexing.

    Rolling polynomial hash (h * 31 + code point) over
    "archetype:genre:tone:history_length", wrapped to a signed 32-bit integer
    after every step; the absolute value is returned.
    """
    text = f"{archetype}:{genre}:{tone}:{history_length}"
    value = 0
    for char in text:
        value = ((value << 5) - value + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return abs(value)


# ============================================================================
# Behavioural Queries
# ============================================================================

@dataclass
class ProtagonistState:
    """External inputs for the oscillating and mirrored resistance modes."""
    morally_aligned: Optional[bool] = None
    emotional_openness: Optional[float] = None


def resistance(
    lens_id: str,
    meta: Optional[LensMeta],
    story_progress: float,
    protagonist_state: Optional[ProtagonistState] = None,
) -> float:
    """Current resistance for a lens at the given story progress (0..1)."""
    definition = LENS_DEFINITIONS.get(lens_id)
    if definition is None:
        return 0.5
    profile = definition.resistance
    state = protagonist_state or ProtagonistState()

    if profile.decay == ResistanceDecay.OSCILLATING:
        return profile.aligned if state.morally_aligned is not False else profile.misaligned

    if profile.decay == ResistanceDecay.MIRRORED:
        openness = 0.5 if state.emotional_openness is None else state.emotional_openness
        return 1 - openness

    if profile.decay == ResistanceDecay.LINEAR:
        floor_at = profile.floor_at_progress or 1.0
        progress = min(max(story_progress, 0.0), floor_at)
        return profile.initial - (profile.initial - profile.floor) * (progress / floor_at)

    if meta is not None and meta.competence_revealed:
        return profile.after_reveal
    return profile.initial


def is_reveal_gated(lens_id: str, meta: Optional[LensMeta], story_progress: float) -> bool:
    """True while the lens's reveal must still be held back."""
    definition = LENS_DEFINITIONS.get(lens_id)
    if definition is None:
        return False

    if lens_id == WITHHELD_CORE:
        return story_progress < definition.pacing_bias["min_reveal_progress"]

    if lens_id == UNEXPECTED_COMPETENCE:
        if story_progress < definition.pacing_bias["early_deployment_threshold"]:
            return True
        setup_beats = meta.setup_beats_completed if meta else 0
        return setup_beats < definition.pacing_bias["min_failure_before_competence"]

    return False


def requires_cost_after_victory(lens_id: str, meta: Optional[LensMeta]) -> bool:
    if lens_id != MORAL_FRICTION_ENGINE:
        return False
    streak = meta.cost_free_streak if meta else 0
    return streak >= LENS_DEFINITIONS[lens_id].pacing_bias["max_cost_free_beats"]


def pacing_modifiers(lens_id: str, meta: Optional[LensMeta]) -> Dict[str, Any]:
    """Raw pacing parameters for a lens, shifted by any forced-repetition penalty."""
    definition = LENS_DEFINITIONS.get(lens_id)
    if definition is None:
        return {}

    bias = definition.pacing_bias
    variation = meta.pacing_variation if meta else 0.0
    modifiers: Dict[str, Any] = {"pacing_variation": variation}

    if bias.get("delay_major_revelation"):
        modifiers["delay_revelation"] = True
        modifiers["min_reveal_progress"] = bias["min_reveal_progress"] + variation
    if bias.get("cost_after_victory"):
        modifiers["enforce_cost_after_victory"] = True
        modifiers["max_cost_free_beats"] = bias["max_cost_free_beats"]
    if bias.get("require_setup_before_reveal"):
        modifiers["require_setup"] = True
        modifiers["min_setup_beats"] = bias["min_failure_before_competence"]
    if bias.get("sync_with_protagonist"):
        modifiers["sync_emotional_beats"] = True
        modifiers["max_sync_delay"] = bias["max_sync_delay"]

    return modifiers


def update_meta(
    meta: LensMeta,
    lens_id: str,
    beat_type: BeatType,
    story_progress: float,
    protagonist_state: Optional[ProtagonistState] = None,
) -> LensMeta:
    """Return a copy of meta with the beat applied and resistance recomputed."""
    beat_type = BeatType(beat_type)
    updates: Dict[str, Any] = {}

    if beat_type == BeatType.VICTORY and lens_id == MORAL_FRICTION_ENGINE:
        updates["cost_free_streak"] = meta.cost_free_streak + 1
    elif beat_type == BeatType.COST and lens_id == MORAL_FRICTION_ENGINE:
        updates["cost_free_streak"] = 0
    elif beat_type == BeatType.FAILURE and lens_id == UNEXPECTED_COMPETENCE:
        updates["setup_beats_completed"] = meta.setup_beats_completed + 1
    elif beat_type == BeatType.COMPETENCE_REVEAL and lens_id == UNEXPECTED_COMPETENCE:
        updates["competence_revealed"] = True
    elif beat_type == BeatType.CORE_REVEAL and lens_id == WITHHELD_CORE:
        updates["reveal_completed"] = True
        updates["reveal_completed_at"] = story_progress
    elif beat_type == BeatType.BASELINE_ESTABLISHED and lens_id == VOLATILE_MIRROR:
        updates["baseline_established"] = True

    updated = meta.model_copy(update=updates)
    updated.resistance = resistance(lens_id, updated, story_progress, protagonist_state)
    return updated


def validate_lens_state(lens_id: str, meta: Optional[LensMeta], story_progress: float) -> List[AssignmentWarning]:
    """Soft checks on a lens's runtime state."""
    warnings: List[AssignmentWarning] = []
    definition = LENS_DEFINITIONS.get(lens_id)
    if definition is None:
        return warnings

    if lens_id == WITHHELD_CORE:
        deadline = definition.reveal.deadline_progress
        if story_progress >= deadline and not (meta and meta.reveal_completed):
            warnings.append(AssignmentWarning(
                code="WITHHELD_CORE_NO_REVEAL",
                message=f"Withheld Core has not revealed by {deadline:.0%} progress",
            ))

    elif lens_id == UNEXPECTED_COMPETENCE:
        threshold = definition.pacing_bias["early_deployment_threshold"]
        if story_progress < threshold and meta and meta.competence_revealed:
            warnings.append(AssignmentWarning(
                code="UNEXPECTED_COMPETENCE_EARLY",
                message=f"Unexpected Competence deployed before {threshold:.0%} progress",
            ))

    elif lens_id == MORAL_FRICTION_ENGINE:
        if requires_cost_after_victory(lens_id, meta):
            warnings.append(AssignmentWarning(
                code="MORAL_FRICTION_COSTLESS",
                message=f"Moral Friction Engine has {meta.cost_free_streak} cost-free beats",
            ))

    elif lens_id == VOLATILE_MIRROR and definition.requires_baseline:
        if not (meta and meta.baseline_established):
            warnings.append(AssignmentWarning(
                code="VOLATILE_MIRROR_NO_BASELINE",
                message="Volatile Mirror has no established independent baseline motivation",
            ))

    return warnings


@dataclass
class GenerationCheck:
    can_generate: bool = True
    fallback_required: bool = False
    errors: List[str] = field(default_factory=list)
    warnings: List[AssignmentWarning] = field(default_factory=list)


def validate_before_generation(result: AssignmentResult, story_progress: float) -> GenerationCheck:
    """Gate a generation step on the persisted assignment."""
    check = GenerationCheck()

    if (
        not result.protagonist.lenses
        and not result.love_interest.lenses
        and result.story_length >= MIN_CHAPTERS_FOR_LENS_REQUIREMENT
    ):
        check.can_generate = False
        check.fallback_required = True
        check.errors.append("NO_LENSES: both characters have zero lenses in a story with 3+ chapters")

    for character in (result.protagonist, result.love_interest):
        for lens_id in character.lenses:
            check.warnings.extend(validate_lens_state(lens_id, character.meta.get(lens_id), story_progress))

    return check


# ============================================================================
# Assignment Engine
# ============================================================================

class LensAssignmentEngine:
    """
    Deterministic lens assignment for a protagonist and love interest.

    Tables and the random source can be injected; defaults are the canonical
    tables above and a fresh random.Random.
    """

    def __init__(
        self,
        compatibility_table: Optional[Dict[str, Dict[str, Compatibility]]] = None,
        archetype_mapping: Optional[Dict[str, str]] = None,
        rng: Optional[random.Random] = None,
        settings: Optional[LensSettings] = None,
    ):
        self.compatibility_table = compatibility_table or COMPATIBILITY_TABLE
        self.archetype_mapping = archetype_mapping or ARCHETYPE_MAPPING
        self.rng = rng or random.Random()
        self.settings = settings or LensSettings()

    # ------------------------------------------------------------------
    # Pools
    # ------------------------------------------------------------------

    def canonical_archetype(self, archetype: str) -> str:
        return self.archetype_mapping.get(normalize_archetype(archetype), DEFAULT_CANONICAL_ARCHETYPE)

    def compatibility(self, archetype: str, lens_id: str) -> Compatibility:
        row = self.compatibility_table.get(self.canonical_archetype(archetype), {})
        return row.get(lens_id, Compatibility.FORBIDDEN)

    def natural_pool(self, archetype: str) -> List[str]:
        return [
            lens_id for lens_id in LENS_UNIVERSE
            if self.compatibility(archetype, lens_id) == Compatibility.NATURAL
        ]

    def available_pool(self, archetype: str, allowed_forbidden: Sequence[str] = ()) -> List[str]:
        return [
            lens_id for lens_id in LENS_UNIVERSE
            if self.compatibility(archetype, lens_id) != Compatibility.FORBIDDEN
            or lens_id in allowed_forbidden
        ]

    def _candidate_tiers(
        self,
        archetype: str,
        excluded: Set[str],
        allowed_forbidden: Sequence[str],
        relaxed: bool,
    ) -> List[Tuple[str, List[str]]]:
        natural = [] if relaxed else [l for l in self.natural_pool(archetype) if l not in excluded]
        available = [l for l in self.available_pool(archetype, allowed_forbidden) if l not in excluded]
        universe = [l for l in LENS_UNIVERSE if l not in excluded]
        return [("natural", natural), ("available", available), ("universe", universe)]

    def _pick(
        self,
        role: str,
        archetype: str,
        tiers: List[Tuple[str, List[str]]],
        index: int,
        history: Optional[LensHistory],
        warnings: List[AssignmentWarning],
    ) -> Tuple[str, bool]:
        """Pick a lens from the first non-empty tier. Returns (lens_id, forced_repetition)."""
        for tier_name, pool in tiers:
            if not pool:
                continue
            if tier_name == "universe":
                logger.critical(
                    f"[assign_lenses] {role} archetype {archetype} has no compatible lens; "
                    f"drawing from the full lens universe"
                )
                warnings.append(AssignmentWarning(
                    code="UNIVERSE_FALLBACK",
                    character=role,
                    message="No compatible lens in natural or available pools",
                ))

            candidates = pool
            if history is not None:
                unblocked = [l for l in pool if not history.is_combo_blocked(archetype, l)]
                # Every candidate blocked: keep the full pool and accept the repeat
                candidates = unblocked or pool

            lens_id = candidates[index % len(candidates)]
            forced = history is not None and history.is_combo_blocked(archetype, lens_id)
            return lens_id, forced

        raise AssignmentInvariantViolation([f"No candidate lens available for {role}"])

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def create_lens_meta(
        self,
        lens_id: str,
        archetype: str,
        story_progress: float = 0.0,
        forced_repetition: bool = False,
    ) -> LensMeta:
        definition = LENS_DEFINITIONS[lens_id]
        meta = LensMeta(
            lens_id=lens_id,
            story_progress_at_assignment=story_progress,
            resistance=definition.resistance.initial,
        )

        if definition.reveal.required:
            meta.reveal_scheduled = True
            meta.reveal_progress = self.rng.uniform(
                definition.reveal.min_progress,
                definition.reveal.max_progress,
            )

        if forced_repetition:
            meta.pacing_variation = self.settings.pacing_variation_penalty

        if self.compatibility(archetype, lens_id) == Compatibility.CONDITIONAL:
            key = f"{self.canonical_archetype(archetype)}:{lens_id}"
            meta.conditional_requirement = CONDITIONAL_REQUIREMENTS.get(key)

        return meta

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def _build(
        self,
        protagonist_archetype: str,
        love_interest_archetype: str,
        genre: str,
        tone: str,
        story_length: int,
        complexity_flag: bool,
        overrides: Dict[str, List[str]],
        history: Optional[LensHistory],
        relaxed: bool,
    ) -> AssignmentResult:
        p_archetype = normalize_archetype(protagonist_archetype)
        l_archetype = normalize_archetype(love_interest_archetype)
        history_length = len(history) if history is not None else 0
        selector = selector_hash(p_archetype, genre, tone, history_length)

        # Relaxed re-assignment ignores history and overrides
        active_history = None if relaxed else history
        p_overrides = [] if relaxed else overrides.get(PROTAGONIST, [])
        l_overrides = [] if relaxed else overrides.get(LOVE_INTEREST, [])

        warnings: List[AssignmentWarning] = []
        protagonist = CharacterLenses(
            archetype=p_archetype,
            canonical_archetype=self.canonical_archetype(p_archetype),
        )
        love_interest = CharacterLenses(
            archetype=l_archetype,
            canonical_archetype=self.canonical_archetype(l_archetype),
        )

        picks: List[Tuple[CharacterLenses, str, int, Optional[Set[str]], Sequence[str]]] = [
            (protagonist, PROTAGONIST, selector, set(), p_overrides),
        ]
        if not relaxed and complexity_flag and story_length >= COMPLEXITY_MIN_CHAPTERS:
            picks.append((protagonist, PROTAGONIST, selector >> 8, None, p_overrides))
        picks.append((love_interest, LOVE_INTEREST, selector >> 4, None, l_overrides))

        for character, role, index, excluded, allowed_forbidden in picks:
            if excluded is None:
                excluded = self._exclusions(role, protagonist, character)
            tiers = self._candidate_tiers(character.archetype, excluded, allowed_forbidden, relaxed)
            if role == PROTAGONIST and character.lenses and not any(pool for _, pool in tiers[:2]):
                # No compatible second lens: keep a single lens
                continue
            lens_id, forced = self._pick(role, character.archetype, tiers, index, active_history, warnings)
            character.lenses.append(lens_id)
            character.meta[lens_id] = self.create_lens_meta(lens_id, character.archetype, forced_repetition=forced)
            if forced:
                logger.warning(f"[assign_lenses] Forced repetition of {character.archetype}:{lens_id}")
                warnings.append(AssignmentWarning(
                    code="RECENT_REPETITION",
                    character=role,
                    message=(
                        f"{character.archetype}:{lens_id} used in the last "
                        f"{self.settings.recent_window} assignments; pacing variation applied"
                    ),
                ))

        return AssignmentResult(
            protagonist=protagonist,
            love_interest=love_interest,
            selector=selector,
            story_length=story_length,
            used_fallback=relaxed,
            warnings=warnings,
        )

    @staticmethod
    def _exclusions(role: str, protagonist: CharacterLenses, character: CharacterLenses) -> Set[str]:
        excluded = set(character.lenses)
        if role == LOVE_INTEREST:
            for lens_id in protagonist.lenses:
                if lens_id not in SHARING_EXEMPT_LENSES:
                    excluded.add(lens_id)
                excluded |= LENS_PAIR_EXCLUSIONS.get(lens_id, set())
        return excluded

    def assign_lenses(
        self,
        protagonist_archetype: str,
        love_interest_archetype: str,
        genre: str = "",
        tone: str = "",
        story_length: int = 1,
        complexity_flag: bool = False,
        overrides: Optional[Dict[str, List[str]]] = None,
        history: Optional[LensHistory] = None,
    ) -> AssignmentResult:
        """
        Assign lenses to both characters.

        The result is validated; on violation exactly one relaxed re-assignment
        is attempted. If that is also invalid AssignmentInvariantViolation is
        raised and no assignment is returned.
        """
        args = (
            protagonist_archetype,
            love_interest_archetype,
            genre,
            tone,
            story_length,
            complexity_flag,
            overrides or {},
            history,
        )
        result = self._build(*args, relaxed=False)
        errors = self.validate_assignment(result)
        if not errors:
            return result

        logger.error(f"[assign_lenses] Assignment invalid, attempting relaxed fallback: {errors}")
        fallback = self._build(*args, relaxed=True)
        fallback_errors = self.validate_assignment(fallback)
        if fallback_errors:
            logger.critical(f"[assign_lenses] Relaxed fallback also invalid: {fallback_errors}")
            raise AssignmentInvariantViolation(errors + fallback_errors)
        return fallback

    def validate_assignment(self, result: AssignmentResult) -> List[str]:
        """Return invariant violations; an empty list means the assignment is valid."""
        errors: List[str] = []
        p_lenses = result.protagonist.lenses
        l_lenses = result.love_interest.lenses

        if not p_lenses:
            errors.append("EMPTY_ASSIGNMENT: protagonist has no lens")
        if not l_lenses:
            errors.append("EMPTY_ASSIGNMENT: love interest has no lens")

        for role, lenses in ((PROTAGONIST, p_lenses), (LOVE_INTEREST, l_lenses)):
            if len(lenses) > MAX_LENSES_PER_CHARACTER:
                errors.append(f"TOO_MANY_LENSES: {role} has {len(lenses)} lenses")
            for lens_id in lenses:
                if lens_id not in LENS_DEFINITIONS:
                    errors.append(f"UNKNOWN_LENS: {role} has unknown lens {lens_id}")

        for lens_id in p_lenses:
            if lens_id in l_lenses and lens_id not in SHARING_EXEMPT_LENSES:
                errors.append(f"SHARED_LENS: protagonist and love interest cannot share {lens_id}")
            for blocked in LENS_PAIR_EXCLUSIONS.get(lens_id, set()):
                if blocked in l_lenses:
                    errors.append(f"EXCLUDED_PAIR: protagonist {lens_id} forbids love interest {blocked}")

        return errors

    @staticmethod
    def combos_for(result: AssignmentResult) -> List[str]:
        return [
            combo_key(character.archetype, lens_id)
            for character in (result.protagonist, result.love_interest)
            for lens_id in character.lenses
        ]


class LensAssignmentService:
    """Story-creation boundary: loads history, assigns, then appends the finalized combos."""

    def __init__(self, engine: LensAssignmentEngine, store: LensHistoryStore):
        self.engine = engine
        self.store = store

    async def assign(self, request: LensAssignmentRequest) -> AssignmentResult:
        history = await self.store.load()
        result = self.engine.assign_lenses(
            protagonist_archetype=request.protagonist_archetype,
            love_interest_archetype=request.love_interest_archetype,
            genre=request.genre,
            tone=request.tone,
            story_length=request.story_length,
            complexity_flag=request.complexity_flag,
            overrides=request.overrides,
            history=history,
        )
        # History is only written once the assignment passed validation
        await self.store.append(self.engine.combos_for(result))
        logger.info(
            f"[assign] {result.protagonist.archetype}={result.protagonist.lenses} "
            f"{result.love_interest.archetype}={result.love_interest.lenses}"
        )
        return result
