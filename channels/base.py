"""
Messaging channel — base infrastructure for the customer-facing channel.

Provides:
- ChannelError: structured error hierarchy
- CircuitBreaker: failure-counting breaker with a half-open trial call
- MessageDeduplicator: TTL seen-set so webhook redeliveries are ignored
- InputSanitizer: strips control characters from inbound text
- typing_duration: how long to show "typing…" before a reply
- MessagingChannel: abstract base wrapping every send with the breaker
"""
from __future__ import annotations

import abc
import time
import structlog
from typing import Any, Optional

from models.schemas import InboundMessage

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class ChannelNotReadyError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Channel {channel} is not ready", channel, retryable=True)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0

    @property
    def state(self) -> str:
        if self._state == "open" and time.monotonic() - self._opened_at >= self.recovery_timeout:
            return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._state = "open"
            self._opened_at = time.monotonic()
            logger.warning("circuit_opened", failures=self._failure_count)

    def record_success(self):
        self._state = "closed"
        self._failure_count = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {"state": self.state, "failure_count": self._failure_count}


# ══════════════════════════════════════════════════════════════
#  MESSAGE DEDUPLICATOR
# ══════════════════════════════════════════════════════════════

class MessageDeduplicator:
    """TTL-based seen-set keyed by the channel's message id."""

    def __init__(self, ttl_seconds: float = 300.0):
        self.ttl = ttl_seconds
        self._seen: dict[str, float] = {}

    def is_duplicate(self, key: str) -> bool:
        self._prune()
        if key in self._seen:
            return True
        self._seen[key] = time.monotonic()
        return False

    def _prune(self):
        cutoff = time.monotonic() - self.ttl
        for k in [k for k, t in self._seen.items() if t < cutoff]:
            del self._seen[k]


# ══════════════════════════════════════════════════════════════
#  INPUT SANITIZER
# ══════════════════════════════════════════════════════════════

class InputSanitizer:
    def __init__(self, max_length: int = 4096):
        self.max_length = max_length

    def sanitize(self, content: str) -> str:
        if not content:
            return ""
        content = "".join(
            c for c in content if c in ("\n", "\t", "\r") or (ord(c) >= 32)
        )
        if len(content) > self.max_length:
            content = content[: self.max_length]
        return content.strip()


# ══════════════════════════════════════════════════════════════
#  TYPING HINT
# ══════════════════════════════════════════════════════════════

TYPING_SECONDS_PER_CHAR = 0.05
TYPING_MIN_SECONDS = 1.5
TYPING_MAX_SECONDS = 7.0


def typing_duration(text: str) -> float:
    """50 ms per character, clamped to 1.5–7 s."""
    return min(max(len(text) * TYPING_SECONDS_PER_CHAR, TYPING_MIN_SECONDS), TYPING_MAX_SECONDS)


# ══════════════════════════════════════════════════════════════
#  MESSAGING CHANNEL — Abstract Base
# ══════════════════════════════════════════════════════════════

class MessagingChannel(abc.ABC):
    """
    Base class for the customer messaging channel.

    Subclasses implement _do_send, _do_send_typing and _parse_inbound. The
    base class checks readiness and the circuit breaker around every send
    and deduplicates and sanitizes inbound records.
    """

    name: str = "channel"

    def __init__(self):
        self._ready = False
        self._breaker = CircuitBreaker()
        self._deduplicator = MessageDeduplicator()
        self._sanitizer = InputSanitizer()

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send(self, contact_id: str, text: str) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def _do_send_typing(self, contact_id: str, seconds: float) -> None:
        ...

    @abc.abstractmethod
    def _parse_inbound(self, payload: dict[str, Any]) -> list[InboundMessage]:
        ...

    # ── Readiness ─────────────────────────────────────────────

    @property
    def is_ready(self) -> bool:
        return self._ready

    def set_ready(self, ready: bool) -> None:
        if ready != self._ready:
            logger.info("channel_readiness_changed", channel=self.name, ready=ready)
        self._ready = ready

    # ── Outbound ──────────────────────────────────────────────

    async def send(self, contact_id: str, text: str) -> dict[str, Any]:
        if not self._ready:
            raise ChannelNotReadyError(self.name)
        if self._breaker.is_open:
            raise CircuitOpenError(self.name)
        try:
            result = await self._do_send(contact_id, text)
        except ChannelError:
            self._breaker.record_failure()
            raise
        except Exception as e:
            self._breaker.record_failure()
            raise ChannelError(str(e), self.name) from e
        self._breaker.record_success()
        logger.debug("message_sent", channel=self.name, contact_id=contact_id)
        return result

    async def send_typing(self, contact_id: str, seconds: float) -> None:
        """Best effort: a failed typing indicator never blocks the reply."""
        if not self._ready:
            return
        try:
            await self._do_send_typing(contact_id, seconds)
        except Exception as e:
            logger.warning("typing_indicator_failed",
                           channel=self.name, contact_id=contact_id, error=str(e))

    # ── Inbound ───────────────────────────────────────────────

    def parse_inbound(self, payload: dict[str, Any]) -> list[InboundMessage]:
        accepted = []
        for msg in self._parse_inbound(payload):
            if msg.channel_message_id and self._deduplicator.is_duplicate(msg.channel_message_id):
                logger.info("inbound_duplicate_ignored",
                            channel=self.name, message_id=msg.channel_message_id)
                continue
            msg.text = self._sanitizer.sanitize(msg.text)
            accepted.append(msg)
        return accepted

    # ── Lifecycle ─────────────────────────────────────────────

    async def initialize(self) -> None:
        self.set_ready(True)

    async def shutdown(self) -> None:
        self.set_ready(False)

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.name,
            "ready": self._ready,
            "circuit_breaker": self._breaker.stats,
        }


def normalize_contact_id(raw: Optional[str]) -> str:
    """Phone number without any @domain suffix and without non-digits."""
    local = (raw or "").split("@", 1)[0]
    return "".join(ch for ch in local if ch.isdigit())
