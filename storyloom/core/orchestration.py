"""
Orchestration Controller for Storyloom

Sequences one narrative turn across the generation roles:

    GATE_CHECK -> AUTHOR_PASS -> [SD_AUTHOR] -> [RENDER_PASS] -> INTEGRATION_PASS -> COMPLETE

or, while an intimate sequence is underway, the cascade fast path:

    GATE_CHECK -> RENDER_PASS -> COMPLETE

Each phase gets at most one fallback call. Only an author pass failure aborts
the turn; specialist failures degrade into a narrated interruption. Session
state (preferences, cascade continuity) is written once, after the turn
completes.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..config import OrchestrationSettings, ServiceRole
from ..models import (
    HIGH_INTENSITY,
    AuthoredConstraints,
    ErrorRecord,
    GateRecord,
    SceneDirective,
    TurnRequest,
    TurnResult,
)
from ..prompts import (
    AUTHOR_SYSTEM_PROMPT,
    AUTHOR_USER_PROMPT_TEMPLATE,
    CASCADE_SYSTEM_SUFFIX,
    CASCADE_USER_PROMPT_TEMPLATE,
    CLIFFHANGER_DIRECTIVE,
    COMPLETION_FORBIDDEN_DIRECTIVE,
    COMPLETION_GUARD,
    DIRECT_DIRECTIVE_PROTOCOL,
    INTEGRATION_SYSTEM_PROMPT,
    INTEGRATION_USER_PROMPT_TEMPLATE,
    INTERRUPTION_DIRECTIVE,
    NO_RENDERED_CONTENT,
    RENDERER_SYSTEM_PROMPT,
    RENDERER_USER_PROMPT_TEMPLATE,
    SD_AUTHOR_SYSTEM_PROMPT,
    SD_AUTHOR_USER_PROMPT_TEMPLATE,
    SPLIT_AUTHORING_PROTOCOL,
    TRIGGER_CONTEXT_TEMPLATE,
)
from ..services.model_client import MalformedResponse, ModelInvocationError, ModelResponse
from ..services.tracing import TracingService
from .gates import enforce_gates, is_intensity_entitled
from .preferences import PreferenceInferenceEngine, PreferenceSignal
from .scene_directive import (
    DEFAULT_SD_HARD_STOPS,
    COMPLETION_FORBIDDEN_STOP,
    SDValidationFailure,
    deterministic_cut_away,
    extract_block,
    last_words,
    parse_constraints,
    parse_scene_directive,
    scrub_cascade_output,
    strip_structural_blocks,
    validate_scene_directive,
)

logger = logging.getLogger("storyloom.orchestration")


class OrchestrationPhase(str, Enum):
    INIT = "INIT"
    GATE_CHECK = "GATE_CHECK"
    AUTHOR_PASS = "AUTHOR_PASS"
    SD_AUTHOR = "SD_AUTHOR"
    RENDER_PASS = "RENDER_PASS"
    INTEGRATION_PASS = "INTEGRATION_PASS"
    COMPLETE = "COMPLETE"


PHASE_ORDER: List[OrchestrationPhase] = list(OrchestrationPhase)

PhaseCallback = Callable[[OrchestrationPhase, Optional[Dict[str, Any]]], None]


class PhaseOrderError(RuntimeError):
    """A phase transition tried to move backwards."""


# ============================================================================
# Per-turn and per-session state
# ============================================================================

@dataclass
class OrchestrationState:
    """Audit record for one turn. Discarded when the turn ends."""
    turn_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    phase: OrchestrationPhase = OrchestrationPhase.INIT
    phase_history: List[str] = field(default_factory=lambda: [OrchestrationPhase.INIT.value])

    author_output: Optional[str] = None
    constraints: Optional[AuthoredConstraints] = None
    scene_directive: Optional[SceneDirective] = None
    renderer_output: Optional[str] = None
    integration_output: Optional[str] = None

    renderer_called: bool = False
    renderer_failed: bool = False
    fate_stumbled: bool = False
    forced_interruption: bool = False
    used_fallback_author: bool = False
    sd_authored_by_primary_renderer: bool = False
    sd_authored_by_fallback_renderer: bool = False

    cascade_used: bool = False
    cascade_fallthrough: bool = False
    cascade_beat: int = 0

    errors: List[ErrorRecord] = field(default_factory=list)
    timing: Dict[str, float] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)

    def advance(self, phase: OrchestrationPhase) -> None:
        """Move to a later phase. Phases may be skipped but never revisited."""
        if PHASE_ORDER.index(phase) <= PHASE_ORDER.index(self.phase):
            raise PhaseOrderError(f"Cannot move from {self.phase.value} to {phase.value}")
        self.phase = phase
        self.phase_history.append(phase.value)

    def record_error(
        self,
        phase: OrchestrationPhase,
        error: Exception,
        role: Optional[ServiceRole] = None,
    ) -> ErrorRecord:
        record = ErrorRecord(
            phase=phase.value,
            kind=getattr(error, "kind", type(error).__name__),
            message=str(error),
            role=role.value if role else None,
            status=getattr(error, "status", None),
        )
        self.errors.append(record)
        return record

    def fall_through(self) -> "OrchestrationState":
        """Fresh state for full orchestration after a failed cascade beat, keeping the audit trail."""
        return OrchestrationState(
            turn_id=self.turn_id,
            cascade_fallthrough=True,
            errors=list(self.errors),
            timing=dict(self.timing),
            started_at=self.started_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "phase": self.phase.value,
            "phase_history": list(self.phase_history),
            "author_output": self.author_output,
            "constraints": self.constraints.model_dump() if self.constraints else None,
            "scene_directive": self.scene_directive.model_dump(mode="json") if self.scene_directive else None,
            "renderer_output": self.renderer_output,
            "integration_output": self.integration_output,
            "renderer_called": self.renderer_called,
            "renderer_failed": self.renderer_failed,
            "fate_stumbled": self.fate_stumbled,
            "forced_interruption": self.forced_interruption,
            "used_fallback_author": self.used_fallback_author,
            "sd_authored_by_primary_renderer": self.sd_authored_by_primary_renderer,
            "sd_authored_by_fallback_renderer": self.sd_authored_by_fallback_renderer,
            "cascade_used": self.cascade_used,
            "cascade_fallthrough": self.cascade_fallthrough,
            "cascade_beat": self.cascade_beat,
            "errors": [error.model_dump() for error in self.errors],
            "timing": dict(self.timing),
        }


@dataclass
class CascadeContinuity:
    """What the fast path needs from the previous beat."""
    active: bool = False
    scene_directive: Optional[SceneDirective] = None
    excerpt: str = ""
    beat_count: int = 0

    def reset(self) -> None:
        self.active = False
        self.scene_directive = None
        self.excerpt = ""
        self.beat_count = 0


@dataclass
class StorySession:
    """Explicit per-session context passed into every turn."""
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    preferences: PreferenceInferenceEngine = field(default_factory=PreferenceInferenceEngine)
    cascade: CascadeContinuity = field(default_factory=CascadeContinuity)


class TurnAborted(Exception):
    """Both author calls failed. The session was not modified."""

    def __init__(self, state: OrchestrationState):
        self.state = state
        messages = "; ".join(f"{e.role}: {e.message}" for e in state.errors)
        super().__init__(f"Author pass failed: {messages}")


def _yes_no(flag: bool) -> str:
    return "YES" if flag else "NO"


def _elapsed_ms(start: float) -> float:
    return (time.time() - start) * 1000


# ============================================================================
# Controller
# ============================================================================

class OrchestrationController:
    """
    Runs turns against a model client.

    The model client only needs an async invoke(role, messages, temperature=,
    max_tokens=) returning a ModelResponse or raising ModelInvocationError.
    """

    def __init__(
        self,
        model_client: Any,
        tracing: TracingService,
        settings: Optional[OrchestrationSettings] = None,
    ):
        self.model_client = model_client
        self.settings = settings or OrchestrationSettings()
        self.tracing = tracing

    async def run_turn(
        self,
        request: TurnRequest,
        session: StorySession,
        on_phase_change: Optional[PhaseCallback] = None,
    ) -> TurnResult:
        """
        Run one turn.

        Raises:
            TurnAborted: primary and fallback author both failed
        """
        state = OrchestrationState()
        self.tracing.start_trace(
            turn_id=state.turn_id,
            name="turn",
            metadata={"access_tier": request.access_tier},
            session_id=session.session_id,
        )
        result: Optional[TurnResult] = None
        try:
            gate = self._gate_check(state, request, on_phase_change)

            if self._cascade_eligible(request, session, gate):
                result = await self._run_cascade(state, request, session, gate, on_phase_change)
                if result is not None:
                    return result
                self.tracing.log_event(
                    state.turn_id,
                    "cascade_fallthrough",
                    level="WARNING",
                    metadata={"beat": session.cascade.beat_count + 1},
                )
                state = state.fall_through()
                gate = self._gate_check(state, request, on_phase_change)

            result = await self._run_full(state, request, session, gate, on_phase_change)
            return result
        finally:
            self.tracing.end_trace(
                state.turn_id,
                output={"final_output": result.final_output} if result else None,
                metadata={"phase": state.phase.value, "errors": len(state.errors)},
            )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _enter(
        self,
        state: OrchestrationState,
        phase: OrchestrationPhase,
        on_phase_change: Optional[PhaseCallback],
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        state.advance(phase)
        logger.debug(f"[{phase.value.lower()}] turn={state.turn_id}")
        if on_phase_change:
            on_phase_change(phase, payload)

    def _gate_check(
        self,
        state: OrchestrationState,
        request: TurnRequest,
        on_phase_change: Optional[PhaseCallback],
    ) -> GateRecord:
        gate = enforce_gates(request.access_tier, request.requested_intensity)
        self._enter(state, OrchestrationPhase.GATE_CHECK, on_phase_change, gate.model_dump(mode="json"))
        return gate

    async def _run_full(
        self,
        state: OrchestrationState,
        request: TurnRequest,
        session: StorySession,
        gate: GateRecord,
        on_phase_change: Optional[PhaseCallback],
    ) -> TurnResult:
        specialist_path = self._specialist_path(gate)
        split_authoring = specialist_path and self.settings.sd_authoring_enabled

        # AUTHOR_PASS
        self._enter(state, OrchestrationPhase.AUTHOR_PASS, on_phase_change)
        start = time.time()
        messages = self._author_messages(request, session, gate, specialist_path, split_authoring)
        async with self.tracing.span(state.turn_id, OrchestrationPhase.AUTHOR_PASS.value):
            state.author_output = await self._author_pass(state, messages)
        state.timing["author_pass_ms"] = _elapsed_ms(start)

        # SD_AUTHOR, or a directive written by the author itself
        if split_authoring and not state.used_fallback_author:
            block = extract_block(state.author_output, "CONSTRAINTS")
            if block is not None:
                state.constraints = parse_constraints(block)
            if state.constraints is not None and state.constraints.intimacy_occurs:
                self._enter(state, OrchestrationPhase.SD_AUTHOR, on_phase_change)
                start = time.time()
                async with self.tracing.span(state.turn_id, OrchestrationPhase.SD_AUTHOR.value):
                    await self._sd_author_pass(state, gate)
                state.timing["sd_author_ms"] = _elapsed_ms(start)
        elif specialist_path and not split_authoring:
            block = extract_block(state.author_output, "SD")
            if block is not None:
                state.scene_directive = parse_scene_directive(
                    block, gate, authored_by=ServiceRole.PRIMARY_AUTHOR.value
                )

        # RENDER_PASS
        if state.scene_directive is not None and self.settings.specialist_renderer_enabled:
            try:
                self._check_render_guard(state.scene_directive, gate)
            except SDValidationFailure as e:
                logger.warning(f"[render_pass] Scene directive rejected: {e.errors}")
                state.record_error(OrchestrationPhase.RENDER_PASS, e)
                state.forced_interruption = True
            else:
                self._enter(state, OrchestrationPhase.RENDER_PASS, on_phase_change)
                start = time.time()
                async with self.tracing.span(state.turn_id, OrchestrationPhase.RENDER_PASS.value):
                    await self._render_pass(state)
                state.timing["render_pass_ms"] = _elapsed_ms(start)

        # INTEGRATION_PASS
        self._enter(state, OrchestrationPhase.INTEGRATION_PASS, on_phase_change)
        start = time.time()
        async with self.tracing.span(state.turn_id, OrchestrationPhase.INTEGRATION_PASS.value):
            state.integration_output = await self._integration_pass(state, gate)
        state.timing["integration_pass_ms"] = _elapsed_ms(start)

        self._enter(state, OrchestrationPhase.COMPLETE, on_phase_change)
        self._commit(state, request, session, gate)
        return self._result(state, gate)

    async def _author_pass(self, state: OrchestrationState, messages: List[Dict[str, str]]) -> str:
        """Primary author, then exactly one fallback author call."""
        try:
            response = await self._invoke(state, ServiceRole.PRIMARY_AUTHOR, messages)
            return response.content
        except ModelInvocationError as e:
            logger.error(f"[author_pass] Primary author failed ({e.kind}), attempting fallback author: {e}")
            state.record_error(OrchestrationPhase.AUTHOR_PASS, e, ServiceRole.PRIMARY_AUTHOR)

        try:
            response = await self._invoke(state, ServiceRole.FALLBACK_AUTHOR, messages)
        except ModelInvocationError as e:
            logger.error(f"[author_pass] Fallback author also failed ({e.kind}), aborting turn: {e}")
            state.record_error(OrchestrationPhase.AUTHOR_PASS, e, ServiceRole.FALLBACK_AUTHOR)
            raise TurnAborted(state) from e

        state.used_fallback_author = True
        logger.info("[author_pass] Fallback author succeeded")
        return response.content

    async def _sd_author_pass(self, state: OrchestrationState, gate: GateRecord) -> None:
        """Scene renderer authors the directive; one fallback renderer attempt."""
        messages = self._sd_author_messages(state.constraints, gate)

        for role in (ServiceRole.SCENE_RENDERER, ServiceRole.FALLBACK_RENDERER):
            try:
                response = await self._invoke(
                    state,
                    role,
                    messages,
                    temperature=self.settings.sd_temperature,
                    max_tokens=self.settings.sd_max_tokens,
                )
                block = extract_block(response.content, "SD")
                if block is None:
                    raise MalformedResponse("response carried no [SD] block", provider=response.provider, model=response.model)
            except ModelInvocationError as e:
                logger.warning(f"[sd_author] {role.value} failed to author a directive ({e.kind}): {e}")
                state.record_error(OrchestrationPhase.SD_AUTHOR, e, role)
                continue

            state.scene_directive = parse_scene_directive(block, gate, authored_by=role.value)
            if role == ServiceRole.SCENE_RENDERER:
                state.sd_authored_by_primary_renderer = True
            else:
                state.sd_authored_by_fallback_renderer = True
            return

        # Scene is denied, not softened
        logger.warning("[sd_author] All directive authors failed, forcing interruption")
        state.fate_stumbled = True
        state.forced_interruption = True

    @staticmethod
    def _specialist_path(gate: GateRecord) -> bool:
        """High intensity turns go to the renderer unless the gate had to downgrade the request."""
        if gate.effective_intensity not in HIGH_INTENSITY:
            return False
        if gate.was_downgraded:
            logger.info(
                f"[gate_check] Request downgraded to {gate.effective_intensity.value}, "
                f"author writes the scene without the renderer"
            )
            return False
        return True

    def _check_render_guard(self, sd: SceneDirective, gate: GateRecord) -> None:
        """A renderer is only called with a validated directive at an entitled high intensity."""
        validate_scene_directive(sd)
        if sd.intimacy_stage not in HIGH_INTENSITY:
            raise SDValidationFailure([f"intimacy_stage {sd.intimacy_stage.value} does not call for a renderer"])
        if not is_intensity_entitled(gate, sd.intimacy_stage):
            raise SDValidationFailure([f"intimacy_stage {sd.intimacy_stage.value} not entitled by {gate.gate_code}"])
        if gate.was_downgraded:
            raise SDValidationFailure([f"request downgraded to {gate.effective_intensity.value}"])

    async def _render_pass(self, state: OrchestrationState) -> None:
        """Specialist render from the directive alone; one fallback renderer attempt."""
        messages = self._renderer_messages(state.scene_directive)
        state.renderer_called = True

        for role in (ServiceRole.SCENE_RENDERER, ServiceRole.FALLBACK_RENDERER):
            try:
                response = await self._invoke(state, role, messages)
            except ModelInvocationError as e:
                logger.warning(f"[render_pass] {role.value} failed ({e.kind}): {e}")
                state.record_error(OrchestrationPhase.RENDER_PASS, e, role)
                continue
            state.renderer_output = response.content
            return

        logger.warning("[render_pass] All renderers failed, forcing interruption")
        state.renderer_failed = True
        state.fate_stumbled = True
        state.forced_interruption = True

    async def _integration_pass(self, state: OrchestrationState, gate: GateRecord) -> str:
        """
        Primary author produces the final text; one fallback author attempt.
        If neither answers, the cleaned author output is used, cut away before
        any embodied content when an interruption was forced.
        """
        clean_author = strip_structural_blocks(state.author_output or "")
        messages = self._integration_messages(state, gate, clean_author)

        for role in (ServiceRole.PRIMARY_AUTHOR, ServiceRole.FALLBACK_AUTHOR):
            try:
                response = await self._invoke(state, role, messages)
            except ModelInvocationError as e:
                logger.warning(f"[integration_pass] {role.value} failed ({e.kind}): {e}")
                state.record_error(OrchestrationPhase.INTEGRATION_PASS, e, role)
                continue
            output = strip_structural_blocks(response.content)
            if output:
                return output
            state.record_error(
                OrchestrationPhase.INTEGRATION_PASS,
                MalformedResponse("integration output was only structural blocks"),
                role,
            )

        logger.error("[integration_pass] No model produced the final text, using author output")
        if state.forced_interruption:
            return deterministic_cut_away(clean_author)
        return clean_author

    # ------------------------------------------------------------------
    # Cascade fast path
    # ------------------------------------------------------------------

    def cascade_cap(self, request: TurnRequest) -> int:
        return request.cascade_cap or self.settings.default_cascade_cap

    def _cascade_eligible(self, request: TurnRequest, session: StorySession, gate: GateRecord) -> bool:
        cascade = session.cascade
        if not cascade.active or cascade.scene_directive is None:
            return False
        if request.selected_trigger is not None or request.pending_petition or request.explicit_invocation:
            logger.info("[cascade] Interrupted by explicit player choice")
            return False
        if cascade.beat_count >= self.cascade_cap(request):
            logger.info(f"[cascade] Cap of {self.cascade_cap(request)} beats reached")
            return False
        return (
            gate.effective_intensity in HIGH_INTENSITY
            and not gate.was_downgraded
            and is_intensity_entitled(gate, cascade.scene_directive.intimacy_stage)
        )

    async def _run_cascade(
        self,
        state: OrchestrationState,
        request: TurnRequest,
        session: StorySession,
        gate: GateRecord,
        on_phase_change: Optional[PhaseCallback],
    ) -> Optional[TurnResult]:
        """One renderer beat from the stored directive. Returns None to fall through."""
        cascade = session.cascade
        self._enter(state, OrchestrationPhase.RENDER_PASS, on_phase_change, {"cascade_beat": cascade.beat_count + 1})
        start = time.time()
        messages = self._cascade_messages(request, cascade)

        try:
            validate_scene_directive(cascade.scene_directive)
            async with self.tracing.span(state.turn_id, "cascade", metadata={"beat": cascade.beat_count + 1}):
                response = await self._invoke(state, ServiceRole.SCENE_RENDERER, messages)
            output = scrub_cascade_output(response.content)
            if len(output) < self.settings.cascade_min_output_chars:
                raise MalformedResponse(
                    f"cascade output too short ({len(output)} chars)",
                    provider=response.provider,
                    model=response.model,
                )
        except (ModelInvocationError, SDValidationFailure) as e:
            logger.warning(f"[cascade] Beat failed, falling through to full orchestration: {e}")
            state.record_error(OrchestrationPhase.RENDER_PASS, e, ServiceRole.SCENE_RENDERER)
            state.timing["cascade_ms"] = _elapsed_ms(start)
            return None

        state.timing["cascade_ms"] = _elapsed_ms(start)
        state.renderer_called = True
        state.cascade_used = True
        state.cascade_beat = cascade.beat_count + 1
        state.scene_directive = cascade.scene_directive
        state.renderer_output = output
        state.integration_output = output

        self._enter(state, OrchestrationPhase.COMPLETE, on_phase_change)
        self._commit(state, request, session, gate)
        return self._result(state, gate)

    # ------------------------------------------------------------------
    # Session commit and result
    # ------------------------------------------------------------------

    def _commit(
        self,
        state: OrchestrationState,
        request: TurnRequest,
        session: StorySession,
        gate: GateRecord,
    ) -> None:
        preferences = session.preferences
        preferences.record_signal(
            PreferenceSignal.TURN_COMPLETED,
            {"intensity": gate.effective_intensity.value},
        )
        if state.forced_interruption:
            preferences.record_signal(PreferenceSignal.INTERRUPTION_ENCOUNTERED)
            self.tracing.log_event(
                state.turn_id,
                "forced_interruption",
                level="WARNING",
                metadata={"fate_stumbled": state.fate_stumbled, "renderer_failed": state.renderer_failed},
            )
        trigger = request.selected_trigger
        if trigger is not None and trigger.category:
            preferences.record_signal(PreferenceSignal.FATE_CARD_SELECTED, {"card_id": trigger.category})

        cascade = session.cascade
        if state.cascade_used:
            cascade.beat_count += 1
            cascade.excerpt = last_words(state.integration_output, self.settings.continuity_excerpt_words)
        elif self._renderer_used(state):
            cascade.active = True
            cascade.scene_directive = state.scene_directive
            cascade.excerpt = last_words(state.integration_output, self.settings.continuity_excerpt_words)
            cascade.beat_count = 0
        else:
            cascade.reset()

    @staticmethod
    def _renderer_used(state: OrchestrationState) -> bool:
        return state.renderer_called and not state.renderer_failed

    def _result(self, state: OrchestrationState, gate: GateRecord) -> TurnResult:
        state.timing["total_ms"] = _elapsed_ms(state.started_at)
        logger.info(
            f"[run_turn] turn={state.turn_id} phases={'>'.join(state.phase_history)} "
            f"errors={len(state.errors)} total={state.timing['total_ms']:.0f}ms"
        )
        return TurnResult(
            success=not state.errors,
            final_output=state.integration_output or "",
            orchestration_state=state.to_dict(),
            gate_enforcement=gate,
            renderer_used=self._renderer_used(state),
            fate_stumbled=state.fate_stumbled,
            forced_interruption=state.forced_interruption,
            used_fallback_author=state.used_fallback_author,
            cascade_used=state.cascade_used,
            errors=list(state.errors),
            timing=dict(state.timing),
        )

    # ------------------------------------------------------------------
    # Model calls and prompts
    # ------------------------------------------------------------------

    async def _invoke(
        self,
        state: OrchestrationState,
        role: ServiceRole,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> ModelResponse:
        try:
            response = await self.model_client.invoke(
                role,
                messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except ModelInvocationError as e:
            self.tracing.log_error(state.turn_id, str(e), phase=state.phase.value, role=role.value)
            raise

        self.tracing.log_generation(
            turn_id=state.turn_id,
            name=f"{state.phase.value.lower()}_{role.value}",
            model=response.model,
            provider=getattr(response.provider, "value", str(response.provider)),
            input_messages=messages,
            output=response.content,
            usage=response.usage,
            latency_ms=response.latency_ms,
        )
        return response

    def _author_messages(
        self,
        request: TurnRequest,
        session: StorySession,
        gate: GateRecord,
        specialist_path: bool,
        split_authoring: bool,
    ) -> List[Dict[str, str]]:
        intensity = gate.effective_intensity.value
        protocol = ""
        if specialist_path:
            template = SPLIT_AUTHORING_PROTOCOL if split_authoring else DIRECT_DIRECTIVE_PROTOCOL
            protocol = template.format(
                intensity=intensity,
                completion_flag=str(gate.completion_allowed).lower(),
            )

        system_prompt = AUTHOR_SYSTEM_PROMPT.format(
            system_prompt=request.system_prompt,
            gate_name=gate.gate_name,
            intensity=intensity,
            completion_allowed=_yes_no(gate.completion_allowed),
            cliffhanger_required=_yes_no(gate.cliffhanger_required),
            intimacy_protocol=protocol,
            bias_block=session.preferences.build_bias_block(),
        )

        trigger_context = ""
        if request.selected_trigger is not None:
            trigger_context = TRIGGER_CONTEXT_TEMPLATE.format(
                title=request.selected_trigger.title,
                description=request.selected_trigger.description,
            )
        user_prompt = AUTHOR_USER_PROMPT_TEMPLATE.format(
            story_context=request.story_context,
            player_action=request.player_action,
            player_dialogue=request.player_dialogue,
            trigger_context=trigger_context,
        )
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]

    def _sd_author_messages(self, constraints: AuthoredConstraints, gate: GateRecord) -> List[Dict[str, str]]:
        default_stops = list(DEFAULT_SD_HARD_STOPS)
        if not gate.completion_allowed:
            default_stops.append(COMPLETION_FORBIDDEN_STOP)

        system_prompt = SD_AUTHOR_SYSTEM_PROMPT.format(
            intensity=gate.effective_intensity.value,
            completion_allowed=_yes_no(gate.completion_allowed),
            completion_flag=str(gate.completion_allowed).lower(),
            emotional_core=constraints.emotional_core or "connection and desire",
            physical_bounds=constraints.physical_bounds or "as established by story",
            hard_stops=", ".join(constraints.hard_stops),
            completion_guard="" if gate.completion_allowed else COMPLETION_GUARD,
            default_hard_stops=", ".join(default_stops),
        )
        user_prompt = SD_AUTHOR_USER_PROMPT_TEMPLATE.format(
            scene_setup=constraints.scene_setup or "An intimate encounter unfolds.",
        )
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]

    def _renderer_system_prompt(self, sd: SceneDirective) -> str:
        return RENDERER_SYSTEM_PROMPT.format(
            intensity=sd.intimacy_stage.value,
            completion_allowed="YES" if sd.completion_allowed else "NO - you must NOT write completion",
            emotional_core=sd.emotional_core or "connection",
            physical_bounds=sd.physical_bounds or "as established",
            sensory_focus=sd.sensory_focus or "touch and breath",
            rhythm=sd.rhythm or "building",
            hard_stops="\n".join(f"- {stop}" for stop in sd.hard_stops),
            completion_guard="" if sd.completion_allowed else COMPLETION_GUARD,
        )

    def _renderer_messages(self, sd: SceneDirective) -> List[Dict[str, str]]:
        user_prompt = RENDERER_USER_PROMPT_TEMPLATE.format(
            emotional_core=sd.emotional_core or "The moment pulses with unspoken need.",
            physical_context=f"Physical context: {sd.physical_bounds}" if sd.physical_bounds else "",
        )
        return [
            {"role": "system", "content": self._renderer_system_prompt(sd)},
            {"role": "user", "content": user_prompt.strip()},
        ]

    def _cascade_messages(self, request: TurnRequest, cascade: CascadeContinuity) -> List[Dict[str, str]]:
        player_input = "\n".join(
            line for line in (
                f"Player Action: {request.player_action}" if request.player_action else "",
                f'Player Dialogue: "{request.player_dialogue}"' if request.player_dialogue else "",
            ) if line
        )
        user_prompt = CASCADE_USER_PROMPT_TEMPLATE.format(
            beat_number=cascade.beat_count + 1,
            excerpt=cascade.excerpt,
            player_input=player_input,
        )
        return [
            {"role": "system", "content": self._renderer_system_prompt(cascade.scene_directive) + CASCADE_SYSTEM_SUFFIX},
            {"role": "user", "content": user_prompt.strip()},
        ]

    def _integration_messages(
        self,
        state: OrchestrationState,
        gate: GateRecord,
        clean_author: str,
    ) -> List[Dict[str, str]]:
        directives = []
        if gate.cliffhanger_required:
            directives.append(CLIFFHANGER_DIRECTIVE)
        if not gate.completion_allowed:
            directives.append(COMPLETION_FORBIDDEN_DIRECTIVE)
        if state.forced_interruption:
            directives.append(INTERRUPTION_DIRECTIVE)

        system_prompt = INTEGRATION_SYSTEM_PROMPT.format(
            cliffhanger_required=_yes_no(gate.cliffhanger_required),
            completion_allowed=_yes_no(gate.completion_allowed),
            directives="\n".join(directives) + "\n" if directives else "",
        )
        rendered = state.renderer_output if self._renderer_used(state) else NO_RENDERED_CONTENT
        user_prompt = INTEGRATION_USER_PROMPT_TEMPLATE.format(
            author_output=clean_author,
            rendered_content=rendered,
        )
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
