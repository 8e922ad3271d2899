"""
Preference Inference Engine

Session-scoped aggregation of reader behaviour into an advisory bias block
for the author prompt. Never consulted for gating or safety decisions.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from ..models import HIGH_INTENSITY
from .gates import parse_intensity


class PreferenceSignal(str, Enum):
    FATE_CARD_SELECTED = "FATE_CARD_SELECTED"
    TURN_COMPLETED = "TURN_COMPLETED"
    ESCALATION_OCCURRED = "ESCALATION_OCCURRED"
    INTERRUPTION_ENCOUNTERED = "INTERRUPTION_ENCOUNTERED"
    STORY_ABANDONED_AFTER_INTERRUPT = "STORY_ABANDONED_AFTER_INTERRUPT"
    ARCHETYPE_SELECTED = "ARCHETYPE_SELECTED"


CARD_CATEGORIES = ("power", "confession", "temptation", "boundary", "silence")

MIN_TOTAL_TURNS = 2
CARD_SELECTION_MIN = 2
INTENSITY_SUSTAIN_TURNS = 3
ESCALATION_EARLY_TURN = 3
INTERRUPTION_TOLERANCE = 2

MAX_BIAS_PHRASES = 3


@dataclass
class ReaderPreferences:
    """Tri-state summary: None means not enough evidence yet."""
    prefers_dominance: Optional[bool] = None
    prefers_slow_burn: Optional[bool] = None
    dislikes_interruptions: Optional[bool] = None
    seeks_confession: Optional[bool] = None
    escalates_early: Optional[bool] = None
    sustains_high_intensity: Optional[bool] = None

    def to_dict(self) -> Dict[str, Optional[bool]]:
        return asdict(self)

    def has_any(self) -> bool:
        return any(value is not None for value in self.to_dict().values())


@dataclass
class PreferenceCounters:
    card_selections: Dict[str, int] = field(default_factory=lambda: {c: 0 for c in CARD_CATEGORIES})
    intensity_history: List[str] = field(default_factory=list)
    interruptions_encountered: int = 0
    abandoned_after_interrupt: int = 0
    escalation_turns: List[int] = field(default_factory=list)
    archetypes_selected: Dict[str, int] = field(default_factory=dict)
    total_turns: int = 0


class PreferenceInferenceEngine:
    """Single-writer, session-local counters and the inferences drawn from them."""

    def __init__(self):
        self.counters = PreferenceCounters()

    def reset(self) -> None:
        self.counters = PreferenceCounters()

    def record_signal(
        self,
        signal: Union[PreferenceSignal, str],
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Update counters for one behavioural signal. Unknown payload keys are ignored."""
        signal = PreferenceSignal(signal)
        data = data or {}
        counters = self.counters

        if signal == PreferenceSignal.FATE_CARD_SELECTED:
            card = data.get("card_id")
            if card in counters.card_selections:
                counters.card_selections[card] += 1

        elif signal == PreferenceSignal.TURN_COMPLETED:
            counters.total_turns += 1
            intensity = parse_intensity(data.get("intensity"))
            if intensity is not None:
                counters.intensity_history.append(intensity.value)

        elif signal == PreferenceSignal.ESCALATION_OCCURRED:
            counters.escalation_turns.append(int(data.get("turn_number") or counters.total_turns))

        elif signal == PreferenceSignal.INTERRUPTION_ENCOUNTERED:
            counters.interruptions_encountered += 1

        elif signal == PreferenceSignal.STORY_ABANDONED_AFTER_INTERRUPT:
            counters.abandoned_after_interrupt += 1

        elif signal == PreferenceSignal.ARCHETYPE_SELECTED:
            archetype = data.get("archetype_id")
            if archetype:
                counters.archetypes_selected[archetype] = counters.archetypes_selected.get(archetype, 0) + 1

    def infer_preferences(self) -> ReaderPreferences:
        """Pure read of the counters."""
        data = self.counters
        prefs = ReaderPreferences()

        if data.total_turns < MIN_TOTAL_TURNS:
            return prefs

        cards = data.card_selections
        total_cards = sum(cards.values())

        if total_cards >= CARD_SELECTION_MIN * 2:
            power_ratio = cards["power"] / total_cards
            if power_ratio > 0.35:
                prefs.prefers_dominance = True
            elif power_ratio < 0.1 and cards["silence"] >= CARD_SELECTION_MIN:
                prefs.prefers_dominance = False

            slow = cards["silence"] + cards["boundary"]
            fast = cards["temptation"] + cards["power"]
            if slow > fast and slow >= CARD_SELECTION_MIN:
                prefs.prefers_slow_burn = True
            elif fast > slow * 2 and fast >= CARD_SELECTION_MIN:
                prefs.prefers_slow_burn = False

        if data.interruptions_encountered >= INTERRUPTION_TOLERANCE:
            abandon_rate = data.abandoned_after_interrupt / data.interruptions_encountered
            if abandon_rate > 0.5:
                prefs.dislikes_interruptions = True

        if cards["confession"] >= CARD_SELECTION_MIN:
            if cards["confession"] / total_cards > 0.25:
                prefs.seeks_confession = True

        if data.escalation_turns:
            early = [t for t in data.escalation_turns if t <= ESCALATION_EARLY_TURN]
            if len(early) >= 2:
                prefs.escalates_early = True
            elif all(t > ESCALATION_EARLY_TURN * 2 for t in data.escalation_turns):
                prefs.escalates_early = False

        recent = data.intensity_history[-INTENSITY_SUSTAIN_TURNS:]
        high = {level.value for level in HIGH_INTENSITY}
        if len(recent) >= INTENSITY_SUSTAIN_TURNS and all(level in high for level in recent):
            prefs.sustains_high_intensity = True

        return prefs

    def build_bias_block(self) -> str:
        """Render the inferred preferences as at most three advisory sentences."""
        prefs = self.infer_preferences()
        if not prefs.has_any():
            return ""

        biases = []
        if prefs.prefers_dominance is True:
            biases.append("assertive dynamics and power-aware framing")
        elif prefs.prefers_dominance is False:
            biases.append("gentler approaches and shared vulnerability")

        if prefs.prefers_slow_burn is True:
            biases.append("sustained tension over rapid escalation")
        elif prefs.prefers_slow_burn is False:
            biases.append("momentum when chemistry permits")

        if prefs.seeks_confession is True:
            biases.append("emotional revelation beats")

        if prefs.sustains_high_intensity is True:
            biases.append("sustained intensity when appropriate")

        biases = biases[:MAX_BIAS_PHRASES]

        if not biases:
            if prefs.dislikes_interruptions is True:
                return "\n[READER TENDENCY: Fewer narrative interruptions are preferred unless dramatically necessary.]"
            return ""

        block = f"\n[READER TENDENCY: The narrative may lean toward {' and '.join(biases[:2])}."
        if len(biases) > 2:
            third = biases[2]
            block += f" {third[0].upper()}{third[1:]} may also resonate."
        if prefs.dislikes_interruptions is True:
            block += " Avoid unnecessary interruptions."
        return block + "]"
