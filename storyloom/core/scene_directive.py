"""
Scene Directive parsing, validation and output scrubbing.

The directive travels between the author and renderer roles inside tagged
blocks:

    [CONSTRAINTS] ... [/CONSTRAINTS]   emitted by the primary author
    [SD] ... [/SD]                     emitted by the directive author

Both blocks are "key: value" lines. Keys are matched case-insensitively with
spaces and underscores ignored, so "emotionalCore", "emotional_core" and
"Emotional Core" are the same key.
"""

import re
from typing import Dict, List, Optional

from ..models import AuthoredConstraints, GateRecord, SceneDirective
from .gates import parse_intensity
from .lenses import LENS_UNIVERSE


class SDValidationFailure(Exception):
    """A scene directive is missing a field the renderer depends on."""
    kind = "sd_validation_failure"

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


DEFAULT_SD_HARD_STOPS = ["consent_withdrawal", "scene_boundary"]
COMPLETION_FORBIDDEN_STOP = "tier_gate_completion_forbidden"

INTERRUPTION_LINE = (
    "The moment shattered. Something pulled them back to reality, "
    "a sound, a hesitation, the world refusing to wait."
)

_EMBODIED_SENTENCE = re.compile(
    r"\b(kiss(?:ed|ing)?|touch(?:ed|ing)?|hands?\s+(?:on|moved?|slid?)"
    r"|breath(?:ed|ing)?.*(?:neck|ear|skin)|pull(?:ed|ing)?\s+close|bodies?\s+press)",
    re.IGNORECASE,
)
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")

_STRUCTURAL_BLOCKS = [
    re.compile(r"\[SD\][\s\S]*?\[/SD\]", re.IGNORECASE),
    re.compile(r"\[CONSTRAINTS\][\s\S]*?\[/CONSTRAINTS\]", re.IGNORECASE),
]
_BRACKETED_TAG = re.compile(r"\[/?[A-Z][A-Z _:-]*\]")
# Framework vocabulary only counts as leakage in label form ("Lens: ...")
_FRAMEWORK_LABELS = re.compile(
    r"\b(scene directive|hard stops?|intimacy stage|emotional core|physical bounds"
    r"|sensory focus|completion allowed|fate card|lens(?:es)?)\s*:",
    re.IGNORECASE,
)
_LENS_IDS = re.compile(r"\b(" + "|".join(LENS_UNIVERSE) + r")\b")
_TRUE_VALUES = ("true", "yes")


def _normalize_key(key: str) -> str:
    return re.sub(r"[\s_]+", "", key.strip().lower())


def _parse_lines(text: str) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    for line in text.strip().splitlines():
        key, sep, value = line.partition(":")
        value = value.strip()
        if sep and key.strip() and value:
            fields[_normalize_key(key)] = value
    return fields


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def extract_block(text: str, tag: str) -> Optional[str]:
    """Return the body of the first [tag]...[/tag] block, or None."""
    match = re.search(rf"\[{tag}\]([\s\S]*?)\[/{tag}\]", text or "", re.IGNORECASE)
    return match.group(1) if match else None


def parse_constraints(text: str) -> AuthoredConstraints:
    fields = _parse_lines(text)
    constraints = AuthoredConstraints()

    if "intimacyoccurs" in fields:
        constraints.intimacy_occurs = fields["intimacyoccurs"].lower() in _TRUE_VALUES
    constraints.emotional_core = fields.get("emotionalcore")
    constraints.physical_bounds = fields.get("physicalbounds")
    constraints.scene_setup = fields.get("scenesetup")
    if "hardstops" in fields:
        hard_stops = _split_list(fields["hardstops"])
        if hard_stops:
            constraints.hard_stops = hard_stops
    return constraints


def parse_scene_directive(
    text: str,
    gate: GateRecord,
    authored_by: Optional[str] = None,
) -> SceneDirective:
    """
    Parse an [SD] block body against the turn's gate.

    The gate's completion rule always wins: when completion is forbidden the
    directive cannot re-enable it, and a hard stop recording that is added.
    """
    fields = _parse_lines(text)
    sd = SceneDirective(
        intimacy_stage=gate.effective_intensity,
        completion_allowed=gate.completion_allowed,
        hard_stops=list(DEFAULT_SD_HARD_STOPS),
        authored_by=authored_by,
    )

    if "intimacystage" in fields:
        sd.intimacy_stage = parse_intensity(fields["intimacystage"])
    if "completionallowed" in fields:
        sd.completion_allowed = fields["completionallowed"].lower() in _TRUE_VALUES
    sd.emotional_core = fields.get("emotionalcore")
    sd.physical_bounds = fields.get("physicalbounds")
    sd.sensory_focus = fields.get("sensoryfocus")
    sd.rhythm = fields.get("rhythm")
    if "hardstops" in fields:
        for stop in _split_list(fields["hardstops"]):
            if stop not in sd.hard_stops:
                sd.hard_stops.append(stop)

    if not gate.completion_allowed:
        sd.completion_allowed = False
        if COMPLETION_FORBIDDEN_STOP not in sd.hard_stops:
            sd.hard_stops.append(COMPLETION_FORBIDDEN_STOP)

    return sd


def validate_scene_directive(sd: Optional[SceneDirective]) -> SceneDirective:
    """Return the directive unchanged or raise SDValidationFailure."""
    if sd is None:
        raise SDValidationFailure(["scene directive missing"])

    errors = []
    if sd.completion_allowed is None:
        errors.append("completion_allowed must be set")
    if not sd.hard_stops:
        errors.append("hard_stops must be non-empty")
    if sd.intimacy_stage is None:
        errors.append("intimacy_stage must be set")
    if errors:
        raise SDValidationFailure(errors)
    return sd


def strip_structural_blocks(text: str) -> str:
    for pattern in _STRUCTURAL_BLOCKS:
        text = pattern.sub("", text)
    return text.strip()


def scrub_cascade_output(text: str) -> str:
    """Remove structural leakage from a renderer continuation and collapse whitespace."""
    text = strip_structural_blocks(text or "")
    text = _BRACKETED_TAG.sub("", text)
    text = _FRAMEWORK_LABELS.sub("", text)
    text = _LENS_IDS.sub("", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def deterministic_cut_away(text: str) -> str:
    """
    Truncate before the first embodied sentence and close with the fixed
    interruption line. The scene is denied, never softened.
    """
    sentences = [s for s in _SENTENCE_SPLIT.split(text.strip()) if s]
    kept = []
    for sentence in sentences:
        if _EMBODIED_SENTENCE.search(sentence):
            break
        kept.append(sentence)

    if kept:
        truncated = " ".join(kept)
    elif sentences:
        truncated = sentences[0]
    else:
        truncated = text[:150]
    return f"{truncated.strip()}\n\n{INTERRUPTION_LINE}".strip()


def last_words(text: str, count: int) -> str:
    words = text.split()
    return " ".join(words[-count:])
