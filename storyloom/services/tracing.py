"""
Langfuse Tracing Service for Storyloom
One trace per turn, a span per orchestration phase, a generation per model call.
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from langfuse import Langfuse

logger = logging.getLogger("storyloom.tracing")


class TracingService:
    """
    Service for tracing orchestration turns using Langfuse.

    Provides:
    - A trace per turn keyed by turn id
    - Phase spans with latency
    - Model generation logs and error events

    Falls back to no-op if Langfuse keys are not configured.
    """

    def __init__(self):
        self._client: Optional[Langfuse] = None
        self._enabled = False
        self._traces: Dict[str, Any] = {}  # turn_id -> trace

    def initialize(
        self,
        public_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        host: Optional[str] = None,
    ) -> bool:
        """
        Initialize Langfuse client.

        Args:
            public_key: Langfuse public key (or LANGFUSE_PUBLIC_KEY env var)
            secret_key: Langfuse secret key (or LANGFUSE_SECRET_KEY env var)
            host: Langfuse host URL (or LANGFUSE_HOST env var)

        Returns:
            True if initialization successful, False otherwise
        """
        public_key = public_key or os.getenv("LANGFUSE_PUBLIC_KEY")
        secret_key = secret_key or os.getenv("LANGFUSE_SECRET_KEY")
        host = host or os.getenv("LANGFUSE_HOST", "https://cloud.langfuse.com")

        if not public_key or not secret_key:
            logger.info("Langfuse keys not configured. Tracing disabled.")
            return False

        self._client = Langfuse(
            public_key=public_key,
            secret_key=secret_key,
            host=host,
        )
        self._enabled = True
        logger.info(f"Langfuse tracing initialized. Host: {host}")
        return True

    @property
    def enabled(self) -> bool:
        """Check if tracing is enabled."""
        return self._enabled and self._client is not None

    def start_trace(
        self,
        turn_id: str,
        name: str = "turn",
        metadata: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> Optional[Any]:
        """Start a new trace for a turn. Returns None if tracing is disabled."""
        if not self.enabled:
            return None

        try:
            trace = self._client.trace(
                id=turn_id,
                name=name,
                metadata=metadata or {},
                session_id=session_id,
            )
        except Exception as e:
            logger.warning(f"Failed to start trace: {e}")
            return None
        self._traces[turn_id] = trace
        return trace

    def end_trace(
        self,
        turn_id: str,
        output: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """End a trace and flush to Langfuse."""
        if not self.enabled:
            return

        trace = self._traces.pop(turn_id, None)
        if trace:
            try:
                trace.update(output=output, metadata=metadata)
                self._client.flush()
            except Exception as e:
                logger.warning(f"Failed to end trace: {e}")

    @asynccontextmanager
    async def span(
        self,
        turn_id: str,
        name: str,
        input_data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        """Context manager for a phase span within a turn trace."""
        trace = self._traces.get(turn_id) if self.enabled else None
        if not trace:
            yield None
            return

        start_time = time.time()
        span = trace.span(
            name=name,
            input=input_data,
            metadata=metadata or {},
        )
        try:
            yield span
        except BaseException as e:
            span.update(level="ERROR", status_message=str(e))
            raise
        finally:
            span.end(metadata={**(metadata or {}), "latency_ms": (time.time() - start_time) * 1000})

    def log_generation(
        self,
        turn_id: str,
        name: str,
        model: str,
        provider: str,
        input_messages: List[Dict[str, str]],
        output: str,
        usage: Optional[Dict[str, int]] = None,
        latency_ms: float = 0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log one model call."""
        trace = self._traces.get(turn_id) if self.enabled else None
        if not trace:
            return

        usage = usage or {}
        try:
            trace.generation(
                name=name,
                model=model,
                input=input_messages,
                output=output,
                usage={
                    "input": usage.get("prompt_tokens", 0),
                    "output": usage.get("completion_tokens", 0),
                    "total": usage.get("total_tokens", 0),
                },
                metadata={
                    "provider": provider,
                    "latency_ms": latency_ms,
                    **(metadata or {}),
                },
            )
        except Exception as e:
            logger.warning(f"Failed to log generation: {e}")

    def log_event(
        self,
        turn_id: str,
        name: str,
        level: str = "DEFAULT",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log an event within a trace (DEFAULT, DEBUG, WARNING, ERROR)."""
        trace = self._traces.get(turn_id) if self.enabled else None
        if not trace:
            return

        try:
            trace.event(name=name, level=level, metadata=metadata or {})
        except Exception as e:
            logger.warning(f"Failed to log event: {e}")

    def log_error(
        self,
        turn_id: str,
        error: str,
        phase: Optional[str] = None,
        role: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.log_event(
            turn_id=turn_id,
            name=f"error_{phase or 'unknown'}_{role or 'unknown'}",
            level="ERROR",
            metadata={
                "error": error,
                "phase": phase,
                "role": role,
                **(metadata or {}),
            },
        )

    def flush(self) -> None:
        """Flush all pending traces to Langfuse."""
        if self.enabled:
            try:
                self._client.flush()
            except Exception as e:
                logger.warning(f"Failed to flush traces: {e}")

    def shutdown(self) -> None:
        """Shutdown the tracing service."""
        self.flush()
        if self._client:
            self._client.shutdown()
        self._client = None
        self._enabled = False
        self._traces.clear()

