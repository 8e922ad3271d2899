"""
Storyloom Data Models Module
Pydantic schemas for turns, gates and lens assignment.
"""

from .schemas import (
    HIGH_INTENSITY,
    INTENSITY_ORDER,
    AccessTier,
    AssignmentResult,
    AssignmentWarning,
    AuthoredConstraints,
    CharacterLenses,
    ConditionalRequirement,
    ErrorRecord,
    GateRecord,
    IntensityLevel,
    LengthLimit,
    LensAssignmentRequest,
    LensMeta,
    NarrativeTrigger,
    SceneDirective,
    TurnRequest,
    TurnResult,
)

__all__ = [
    "HIGH_INTENSITY",
    "INTENSITY_ORDER",
    "AccessTier",
    "AssignmentResult",
    "AssignmentWarning",
    "AuthoredConstraints",
    "CharacterLenses",
    "ConditionalRequirement",
    "ErrorRecord",
    "GateRecord",
    "IntensityLevel",
    "LengthLimit",
    "LensAssignmentRequest",
    "LensMeta",
    "NarrativeTrigger",
    "SceneDirective",
    "TurnRequest",
    "TurnResult",
]
