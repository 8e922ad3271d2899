"""
Pydantic data models for Storyloom.
Gate records, scene directives, turn boundary records and lens assignment state.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AccessTier(str, Enum):
    """Access tiers, ordered from most to least restrictive."""
    FREE = "free"
    PASS = "pass"
    SUB = "sub"


class IntensityLevel(str, Enum):
    """Scene intensity levels, lowest first."""
    CLEAN = "Clean"
    NAUGHTY = "Naughty"
    STEAMY = "Steamy"
    PASSIONATE = "Passionate"


INTENSITY_ORDER: List[IntensityLevel] = [
    IntensityLevel.CLEAN,
    IntensityLevel.NAUGHTY,
    IntensityLevel.STEAMY,
    IntensityLevel.PASSIONATE,
]

# Levels that call for split authoring and the specialist renderer
HIGH_INTENSITY: List[IntensityLevel] = [IntensityLevel.STEAMY, IntensityLevel.PASSIONATE]


class LengthLimit(str, Enum):
    """Story length allowance per tier."""
    TASTE = "taste"
    FLING = "fling"
    SOULMATES = "soulmates"


# ============================================================================
# Gate Models
# ============================================================================

class GateRecord(BaseModel):
    """Tier-derived constraints for a turn."""
    model_config = ConfigDict(frozen=True)

    tier: AccessTier
    gate_code: str
    gate_name: str
    completion_allowed: bool
    cliffhanger_required: bool
    length_limit: LengthLimit
    allowed_intensities: List[IntensityLevel]
    requested_intensity: Optional[IntensityLevel] = None
    effective_intensity: IntensityLevel
    was_downgraded: bool = False


# ============================================================================
# Scene Directive Models
# ============================================================================

class AuthoredConstraints(BaseModel):
    """Constraints block emitted by the primary author for split authoring."""
    intimacy_occurs: bool = False
    emotional_core: Optional[str] = None
    physical_bounds: Optional[str] = None
    scene_setup: Optional[str] = None
    hard_stops: List[str] = Field(default_factory=lambda: ["consent_withdrawal"])


class SceneDirective(BaseModel):
    """
    Structured handoff that authorizes and bounds a specialist render.
    A directive is only usable once validated: completion_allowed must be set
    and hard_stops must be non-empty.
    """
    intimacy_stage: Optional[IntensityLevel] = None
    completion_allowed: Optional[bool] = None
    emotional_core: Optional[str] = None
    physical_bounds: Optional[str] = None
    sensory_focus: Optional[str] = None
    rhythm: Optional[str] = None
    hard_stops: List[str] = Field(default_factory=list)
    authored_by: Optional[str] = None


# ============================================================================
# Turn Boundary Models
# ============================================================================

class ErrorRecord(BaseModel):
    """One phase-level failure recorded in the orchestration trace."""
    phase: str
    kind: str
    message: str
    role: Optional[str] = None
    status: Optional[int] = None


class NarrativeTrigger(BaseModel):
    """A narrative trigger (fate card) selected by the player for this turn."""
    trigger_id: str
    title: str
    description: str = ""
    category: Optional[str] = None


class TurnRequest(BaseModel):
    """Input for one narrative turn."""
    access_tier: str = AccessTier.FREE.value
    story_context: str = ""
    player_action: str = ""
    player_dialogue: str = ""
    selected_trigger: Optional[NarrativeTrigger] = None
    system_prompt: str = ""
    requested_intensity: Optional[str] = None
    pending_petition: bool = False
    explicit_invocation: bool = False
    cascade_cap: Optional[int] = Field(default=None, ge=1)


class TurnResult(BaseModel):
    """Output of one narrative turn."""
    success: bool
    final_output: str
    orchestration_state: Dict[str, Any]
    gate_enforcement: GateRecord
    renderer_used: bool = False
    fate_stumbled: bool = False
    forced_interruption: bool = False
    used_fallback_author: bool = False
    cascade_used: bool = False
    errors: List[ErrorRecord] = Field(default_factory=list)
    timing: Dict[str, float] = Field(default_factory=dict)


# ============================================================================
# Lens Models
# ============================================================================

class LensAssignmentRequest(BaseModel):
    """Story-creation input for lens assignment."""
    protagonist_archetype: str
    love_interest_archetype: str
    genre: str = ""
    tone: str = ""
    story_length: int = Field(default=1, ge=0)
    complexity_flag: bool = False
    # role ("protagonist" / "love_interest") -> FORBIDDEN lens ids explicitly allowed
    overrides: Dict[str, List[str]] = Field(default_factory=dict)


class ConditionalRequirement(BaseModel):
    """Justification needed when a CONDITIONAL lens is assigned."""
    condition: str
    description: str


class LensMeta(BaseModel):
    """Per-lens runtime state for one character."""
    lens_id: str
    assigned_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    story_progress_at_assignment: float = 0.0
    resistance: float = 0.5
    reveal_scheduled: bool = False
    reveal_progress: Optional[float] = None
    reveal_completed: bool = False
    reveal_completed_at: Optional[float] = None
    cost_free_streak: int = 0
    competence_revealed: bool = False
    setup_beats_completed: int = 0
    baseline_established: bool = False
    pacing_variation: float = 0.0
    conditional_requirement: Optional[ConditionalRequirement] = None


class CharacterLenses(BaseModel):
    """Lens assignment for one character."""
    archetype: str
    canonical_archetype: str
    lenses: List[str] = Field(default_factory=list)
    meta: Dict[str, LensMeta] = Field(default_factory=dict)


class AssignmentWarning(BaseModel):
    code: str
    character: Optional[str] = None
    message: str


class AssignmentResult(BaseModel):
    """Persisted lens assignment for a story."""
    protagonist: CharacterLenses
    love_interest: CharacterLenses
    selector: int
    story_length: int = 1
    used_fallback: bool = False
    warnings: List[AssignmentWarning] = Field(default_factory=list)
