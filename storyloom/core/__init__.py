"""
Storyloom Core Module
Gate enforcement, preference inference, lens assignment and turn orchestration.
"""

from .gates import GATE_TABLE, enforce_gates, is_intensity_entitled, parse_intensity, resolve_tier
from .lenses import (
    COMPATIBILITY_TABLE,
    LENS_DEFINITIONS,
    LENS_UNIVERSE,
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
from .orchestration import (
    CascadeContinuity,
    OrchestrationController,
    OrchestrationPhase,
    OrchestrationState,
    StorySession,
    TurnAborted,
)
from .preferences import PreferenceInferenceEngine, PreferenceSignal, ReaderPreferences
from .scene_directive import SDValidationFailure, parse_scene_directive, validate_scene_directive

__all__ = [
    "GATE_TABLE",
    "enforce_gates",
    "is_intensity_entitled",
    "parse_intensity",
    "resolve_tier",
    "COMPATIBILITY_TABLE",
    "LENS_DEFINITIONS",
    "LENS_UNIVERSE",
    "AssignmentInvariantViolation",
    "BeatType",
    "Compatibility",
    "LensAssignmentEngine",
    "LensAssignmentService",
    "ProtagonistState",
    "is_reveal_gated",
    "pacing_modifiers",
    "requires_cost_after_victory",
    "resistance",
    "selector_hash",
    "update_meta",
    "validate_before_generation",
    "validate_lens_state",
    "CascadeContinuity",
    "OrchestrationController",
    "OrchestrationPhase",
    "OrchestrationState",
    "StorySession",
    "TurnAborted",
    "PreferenceInferenceEngine",
    "PreferenceSignal",
    "ReaderPreferences",
    "SDValidationFailure",
    "parse_scene_directive",
    "validate_scene_directive",
]
