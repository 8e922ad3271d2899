"""
Storyloom HTTP service.
Exposes the turn boundary and the story-creation (lens assignment) boundary.
"""

import logging
import os
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .config import create_default_config_from_env
from .core import (
    AssignmentInvariantViolation,
    LensAssignmentEngine,
    LensAssignmentService,
    OrchestrationController,
    PreferenceSignal,
    StorySession,
    TurnAborted,
)
from .models import AssignmentResult, LensAssignmentRequest, TurnRequest, TurnResult
from .services import (
    InMemoryLensHistoryStore,
    LensHistoryStore,
    RedisLensHistoryStore,
    UnifiedModelClient,
    TracingService,
)

load_dotenv()

logger = logging.getLogger("storyloom")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    ))
    logger.addHandler(handler)

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ALLOWED_ORIGINS",
        "http://localhost:5173,http://localhost:3000,http://127.0.0.1:5173,http://127.0.0.1:3000",
    ).split(",")
    if origin.strip()
]

MAX_SESSIONS = int(os.getenv("STORYLOOM_MAX_SESSIONS", "1000"))


class SessionRegistry:
    """
    In-process story sessions keyed by session id.

    Bounded: once max_sessions is reached the least recently used session
    is evicted.
    """

    def __init__(self, max_sessions: int = MAX_SESSIONS):
        self.max_sessions = max_sessions
        self._sessions: "OrderedDict[str, StorySession]" = OrderedDict()

    def get_or_create(self, session_id: str) -> StorySession:
        session = self._sessions.get(session_id)
        if session is None:
            session = StorySession(session_id=session_id)
            self._sessions[session_id] = session
            while len(self._sessions) > self.max_sessions:
                evicted, _ = self._sessions.popitem(last=False)
                logger.info(f"[sessions] Evicted least recently used session {evicted}")
        else:
            self._sessions.move_to_end(session_id)
        return session

    def get(self, session_id: str) -> Optional[StorySession]:
        return self._sessions.get(session_id)

    def drop(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def __len__(self) -> int:
        return len(self._sessions)


class StoryloomService:
    """
    Owns the long-lived instances: model client, controller, lens history
    store and session registry.
    """

    def __init__(self):
        self.config = create_default_config_from_env()
        self.model_client = UnifiedModelClient(self.config)
        self.tracing = TracingService()
        self.controller = OrchestrationController(
            self.model_client,
            tracing=self.tracing,
            settings=self.config.orchestration,
        )
        self.history_store: Optional[LensHistoryStore] = None
        self.lens_service: Optional[LensAssignmentService] = None
        self.sessions = SessionRegistry()

    async def initialize(self) -> None:
        """Connect the lens history store and tracing."""
        lens_settings = self.config.lenses
        if self.config.redis_url:
            store = RedisLensHistoryStore(
                self.config.redis_url,
                cap=lens_settings.history_cap,
                window=lens_settings.recent_window,
            )
            await store.connect()
            self.history_store = store
        else:
            logger.info("[initialize] REDIS_URL not set, lens history kept in memory")
            self.history_store = InMemoryLensHistoryStore(
                cap=lens_settings.history_cap,
                window=lens_settings.recent_window,
            )

        self.lens_service = LensAssignmentService(
            LensAssignmentEngine(settings=lens_settings),
            self.history_store,
        )
        self.tracing.initialize()

        for error in self.config.validate_role_models():
            logger.warning(f"[initialize] {error}")
        logger.info(f"[initialize] Enabled providers: {[p.value for p in self.config.get_enabled_providers()]}")

    async def shutdown(self) -> None:
        if isinstance(self.history_store, RedisLensHistoryStore):
            await self.history_store.disconnect()
        self.tracing.shutdown()


app = FastAPI(title="Storyloom Orchestrator")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

service: Optional[StoryloomService] = None


class TurnPayload(TurnRequest):
    session_id: str = Field(..., min_length=1, max_length=200)


class SignalPayload(BaseModel):
    signal: PreferenceSignal
    data: Dict[str, Any] = Field(default_factory=dict)


class SignalResponse(BaseModel):
    session_id: str
    preferences: Dict[str, Optional[bool]]
    bias_block: str


class ErrorDetail(BaseModel):
    message: str
    errors: List[Any] = Field(default_factory=list)


@app.on_event("startup")
async def startup():
    global service
    service = StoryloomService()
    await service.initialize()


@app.on_event("shutdown")
async def shutdown():
    global service
    if service:
        await service.shutdown()


def _require_service() -> StoryloomService:
    if not service:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return service


@app.get("/health")
async def health():
    return {"status": "ok", "service": "storyloom-orchestrator"}


@app.post("/turns", response_model=TurnResult)
async def run_turn(payload: TurnPayload):
    """Run one narrative turn for a session."""
    svc = _require_service()
    session = svc.sessions.get_or_create(payload.session_id)
    request = TurnRequest(**payload.model_dump(exclude={"session_id"}))

    try:
        return await svc.controller.run_turn(request, session)
    except TurnAborted as e:
        logger.error(f"[run_turn] session={payload.session_id} aborted: {e}")
        raise HTTPException(
            status_code=502,
            detail=ErrorDetail(
                message=str(e),
                errors=[error.model_dump() for error in e.state.errors],
            ).model_dump(),
        )


@app.post("/stories/lenses", response_model=AssignmentResult)
async def assign_lenses(request: LensAssignmentRequest):
    """Assign character drive lenses at story creation."""
    svc = _require_service()
    try:
        return await svc.lens_service.assign(request)
    except AssignmentInvariantViolation as e:
        logger.critical(f"[assign_lenses] Assignment rejected: {e.errors}")
        raise HTTPException(
            status_code=422,
            detail=ErrorDetail(message="Lens assignment invalid", errors=e.errors).model_dump(),
        )


@app.post("/sessions/{session_id}/signals", response_model=SignalResponse)
async def record_signal(session_id: str, payload: SignalPayload):
    """Record a reader behaviour signal for a session."""
    svc = _require_service()
    session = svc.sessions.get_or_create(session_id)
    session.preferences.record_signal(payload.signal, payload.data)
    return SignalResponse(
        session_id=session_id,
        preferences=session.preferences.infer_preferences().to_dict(),
        bias_block=session.preferences.build_bias_block(),
    )


@app.delete("/sessions/{session_id}")
async def end_session(session_id: str):
    """Discard a session's preferences and cascade state."""
    svc = _require_service()
    if not svc.sessions.drop(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    logger.info(f"[end_session] session={session_id} ended, {len(svc.sessions)} active")
    return {"status": "ended", "session_id": session_id}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "storyloom.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )
