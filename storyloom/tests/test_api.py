"""
HTTP boundary tests.

The startup hook is not run; each test installs its own service object.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from storyloom import main
from storyloom.config import ServiceRole
from storyloom.core import AssignmentInvariantViolation, LensAssignmentEngine, LensAssignmentService
from storyloom.services import InMemoryLensHistoryStore, ModelHTTPError, ModelTimeout


@pytest.fixture
def api():
    return TestClient(main.app)


@pytest.fixture
def install_service(monkeypatch, scripted_client, make_controller):
    """Install a service backed by a scripted model client and in-memory history."""
    def _install(client=None, lens_service=None):
        svc = SimpleNamespace(
            controller=make_controller(client or scripted_client()),
            sessions=main.SessionRegistry(),
            lens_service=lens_service or LensAssignmentService(
                LensAssignmentEngine(),
                InMemoryLensHistoryStore(),
            ),
        )
        monkeypatch.setattr(main, "service", svc)
        return svc
    return _install


class TestHealth:
    """Tests for the health endpoint."""

    def test_health(self, api):
        """Health answers without an initialized service."""
        response = api.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "storyloom-orchestrator"}

    def test_uninitialized_service(self, api, monkeypatch):
        """Work endpoints answer 503 before startup."""
        monkeypatch.setattr(main, "service", None)

        response = api.post("/turns", json={"session_id": "s1"})

        assert response.status_code == 503


class TestTurns:
    """Tests for the turn endpoint."""

    def test_run_turn(self, api, install_service):
        """A turn returns the final text and gate record."""
        svc = install_service()

        response = api.post("/turns", json={"session_id": "s1", "access_tier": "free", "player_action": "I wait."})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["final_output"]
        assert body["gate_enforcement"]["gate_code"] == "TEASE"
        assert svc.sessions.get("s1").preferences.counters.total_turns == 1

    def test_aborted_turn(self, api, install_service, scripted_client):
        """A turn whose author pass fails twice answers 502 with the error trail."""
        client = scripted_client({
            ServiceRole.PRIMARY_AUTHOR: [ModelTimeout("slow")],
            ServiceRole.FALLBACK_AUTHOR: [ModelHTTPError(status=500, body="error")],
        })
        install_service(client)

        response = api.post("/turns", json={"session_id": "s1"})

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert [error["kind"] for error in detail["errors"]] == ["timeout", "http_error"]

    def test_session_id_required(self, api, install_service):
        """Requests without a session id are rejected."""
        install_service()

        response = api.post("/turns", json={"access_tier": "free"})

        assert response.status_code == 422


class TestLensAssignment:
    """Tests for the story-creation endpoint."""

    def test_assign_lenses(self, api, install_service):
        """A valid request returns lenses for both characters."""
        install_service()

        response = api.post(
            "/stories/lenses",
            json={"protagonist_archetype": "ROGUE", "love_interest_archetype": "GUARDIAN", "story_length": 5},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["protagonist"]["lenses"]
        assert body["love_interest"]["lenses"]

    def test_invariant_violation(self, api, install_service):
        """An assignment that cannot be made valid answers 422."""
        lens_service = SimpleNamespace(
            assign=AsyncMock(side_effect=AssignmentInvariantViolation(["EMPTY_ASSIGNMENT: protagonist has no lens"]))
        )
        install_service(lens_service=lens_service)

        response = api.post(
            "/stories/lenses",
            json={"protagonist_archetype": "ROGUE", "love_interest_archetype": "GUARDIAN"},
        )

        assert response.status_code == 422
        assert response.json()["detail"]["errors"] == ["EMPTY_ASSIGNMENT: protagonist has no lens"]


class TestSignals:
    """Tests for the reader signal endpoint."""

    def test_record_signal(self, api, install_service):
        """Signals update the session counters and return current inferences."""
        svc = install_service()

        response = api.post(
            "/sessions/s2/signals",
            json={"signal": "TURN_COMPLETED", "data": {"intensity": "Steamy"}},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["session_id"] == "s2"
        assert isinstance(body["bias_block"], str)
        assert svc.sessions.get("s2").preferences.counters.intensity_history == ["Steamy"]

    def test_unknown_signal_rejected(self, api, install_service):
        """Unknown signal names fail validation."""
        install_service()

        response = api.post("/sessions/s2/signals", json={"signal": "NOT_A_SIGNAL"})

        assert response.status_code == 422


class TestSessions:
    """Tests for session lifetime."""

    def test_registry_evicts_least_recently_used(self):
        """The registry never holds more than max_sessions sessions."""
        registry = main.SessionRegistry(max_sessions=2)
        registry.get_or_create("a")
        registry.get_or_create("b")
        registry.get_or_create("a")
        registry.get_or_create("c")

        assert len(registry) == 2
        assert registry.get("b") is None
        assert registry.get("a") is not None
        assert registry.get("c") is not None

    def test_end_session(self, api, install_service):
        """Ending a session removes its state."""
        svc = install_service()
        api.post("/sessions/s3/signals", json={"signal": "TURN_COMPLETED"})

        response = api.delete("/sessions/s3")

        assert response.status_code == 200
        assert response.json() == {"status": "ended", "session_id": "s3"}
        assert svc.sessions.get("s3") is None
        assert len(svc.sessions) == 0

    def test_end_unknown_session(self, api, install_service):
        """Ending a session that does not exist answers 404."""
        install_service()

        response = api.delete("/sessions/missing")

        assert response.status_code == 404
