"""
Pytest configuration and fixtures for storyloom tests.

This module provides:
- Network blocking fixture to prevent accidental API calls in CI
- A scripted model client standing in for the generation services
- Fresh sessions and controllers
"""

import socket
from typing import Any, Callable, Dict, List, Union
from unittest.mock import AsyncMock, patch

import pytest

from storyloom.config import LLMProvider, OrchestrationSettings, ServiceRole
from storyloom.core import OrchestrationController, StorySession
from storyloom.services import ModelResponse, TracingService


class NetworkBlockedError(Exception):
    """Raised when a test attempts to make a network connection."""
    pass


def _block_socket_connect(*args, **kwargs):
    """Block all socket connections to prevent accidental API calls."""
    raise NetworkBlockedError(
        "Network access is blocked in unit tests. "
        "If you need to test network functionality, use mocks."
    )


@pytest.fixture(autouse=True)
def block_network():
    """
    Automatically block all network connections in tests.

    Generation services, Redis and Langfuse are always mocked; a real
    connection attempt fails the test.
    """
    with patch.object(socket.socket, 'connect', _block_socket_connect):
        with patch.object(socket, 'create_connection', _block_socket_connect):
            yield


def make_response(content: str, role: ServiceRole = ServiceRole.PRIMARY_AUTHOR) -> ModelResponse:
    return ModelResponse(content=content, model=f"{role.value}-model", provider=LLMProvider.OPENAI)


# A script entry is either text to return, an exception to raise, or a
# callable taking the messages and returning either of those.
ScriptEntry = Union[str, Exception, Callable[[List[Dict[str, str]]], Any]]


class ScriptedModelClient:
    """
    Fake model client. Each role pops its next scripted outcome; a role with
    an exhausted script returns its default text.
    """

    def __init__(self, script: Dict[ServiceRole, List[ScriptEntry]] = None, defaults: Dict[ServiceRole, str] = None):
        self.script = {role: list(entries) for role, entries in (script or {}).items()}
        self.defaults = {
            ServiceRole.PRIMARY_AUTHOR: "The rain kept falling on the harbour as she waited by the door.",
            ServiceRole.FALLBACK_AUTHOR: "The harbour lights blurred in the rain while she waited.",
            ServiceRole.SCENE_RENDERER: "Warmth gathered slowly between them, every breath measured and unhurried.",
            ServiceRole.FALLBACK_RENDERER: "A slow warmth settled over the room, breath and heartbeat in time.",
        }
        self.defaults.update(defaults or {})
        self.calls: List[ServiceRole] = []
        self.messages: List[List[Dict[str, str]]] = []
        self.invoke = AsyncMock(side_effect=self._invoke)

    async def _invoke(self, role, messages, temperature=None, max_tokens=None, structured=False):
        self.calls.append(role)
        self.messages.append(messages)
        entries = self.script.get(role)
        outcome = entries.pop(0) if entries else self.defaults[role]
        if callable(outcome) and not isinstance(outcome, Exception):
            outcome = outcome(messages)
        if isinstance(outcome, Exception):
            raise outcome
        return make_response(outcome, role)

    def count(self, role: ServiceRole) -> int:
        return self.calls.count(role)


@pytest.fixture
def scripted_client():
    """Factory for scripted model clients."""
    return ScriptedModelClient


@pytest.fixture
def session():
    """Create a fresh StorySession for testing."""
    return StorySession(session_id="test-session")


@pytest.fixture
def settings():
    return OrchestrationSettings()


@pytest.fixture
def make_controller(settings):
    """Build a controller around a model client with tracing disabled."""
    def _make(client, **overrides):
        return OrchestrationController(
            client,
            settings=settings.model_copy(update=overrides),
            tracing=TracingService(),
        )
    return _make
