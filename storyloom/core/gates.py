"""
Gate enforcement: pure mapping from access tier to turn constraints.
"""

import logging
from typing import Any, Dict, Optional, Union

from ..models import (
    INTENSITY_ORDER,
    AccessTier,
    GateRecord,
    IntensityLevel,
    LengthLimit,
)

logger = logging.getLogger("storyloom.gates")

GATE_TABLE: Dict[AccessTier, Dict[str, Any]] = {
    AccessTier.FREE: {
        "gate_code": "TEASE",
        "gate_name": "Tease",
        "allowed_intensities": [IntensityLevel.CLEAN, IntensityLevel.NAUGHTY],
        "completion_allowed": False,
        "cliffhanger_required": True,
        "length_limit": LengthLimit.TASTE,
    },
    AccessTier.PASS: {
        "gate_code": "STORY_PASS",
        "gate_name": "Story Pass",
        "allowed_intensities": [IntensityLevel.CLEAN, IntensityLevel.NAUGHTY, IntensityLevel.STEAMY],
        "completion_allowed": True,
        "cliffhanger_required": False,
        "length_limit": LengthLimit.FLING,
    },
    AccessTier.SUB: {
        "gate_code": "SUBSCRIPTION",
        "gate_name": "Subscription",
        "allowed_intensities": list(INTENSITY_ORDER),
        "completion_allowed": True,
        "cliffhanger_required": False,
        "length_limit": LengthLimit.SOULMATES,
    },
}

# Unknown tiers resolve here
MOST_RESTRICTIVE_TIER = AccessTier.FREE


def resolve_tier(tier: Union[str, AccessTier, None]) -> AccessTier:
    if isinstance(tier, AccessTier):
        return tier
    try:
        return AccessTier((tier or "").strip().lower())
    except ValueError:
        return MOST_RESTRICTIVE_TIER


def parse_intensity(value: Union[str, IntensityLevel, None]) -> Optional[IntensityLevel]:
    """Parse an intensity name case-insensitively; unknown names are the lowest level."""
    if value is None or isinstance(value, IntensityLevel):
        return value
    for level in INTENSITY_ORDER:
        if level.value.lower() == value.strip().lower():
            return level
    return IntensityLevel.CLEAN


def enforce_gates(
    tier: Union[str, AccessTier, None],
    requested_intensity: Union[str, IntensityLevel, None] = None,
) -> GateRecord:
    """
    Map an access tier to its gate record.

    A requested intensity above the tier ceiling is downgraded to the highest
    allowed level at or below the request. Without a request the tier ceiling
    is used.
    """
    resolved = resolve_tier(tier)
    gate = GATE_TABLE[resolved]
    allowed = gate["allowed_intensities"]
    requested = parse_intensity(requested_intensity)

    if requested is None:
        effective = allowed[-1]
    elif requested in allowed:
        effective = requested
    else:
        ceiling = INTENSITY_ORDER.index(requested)
        effective = [level for level in allowed if INTENSITY_ORDER.index(level) <= ceiling][-1]

    was_downgraded = requested is not None and effective != requested
    if was_downgraded:
        logger.info(f"[enforce_gates] Intensity downgraded for {resolved.value}: {requested.value} -> {effective.value}")

    return GateRecord(
        tier=resolved,
        gate_code=gate["gate_code"],
        gate_name=gate["gate_name"],
        completion_allowed=gate["completion_allowed"],
        cliffhanger_required=gate["cliffhanger_required"],
        length_limit=gate["length_limit"],
        allowed_intensities=list(allowed),
        requested_intensity=requested,
        effective_intensity=effective,
        was_downgraded=was_downgraded,
    )


def is_intensity_entitled(gate: GateRecord, intensity: Optional[IntensityLevel]) -> bool:
    return intensity is not None and intensity in gate.allowed_intensities
