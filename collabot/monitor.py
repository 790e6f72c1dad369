"""Loop and failure detection for running dispatches.

Pure functions over a window of recent tool calls. The caller owns the
window (see :class:`CallWindow`) and resets it when a dispatch starts.
"""

import re
from collections import deque
from dataclasses import dataclass
from typing import Deque, Literal, Optional, Sequence

# Error categories that never get better by retrying the same call
NON_RETRYABLE_PATTERNS = {
    "permission_denied": re.compile(r"permission denied|eacces|operation not permitted", re.I),
    "not_found": re.compile(r"no such file|not found|does not exist|enoent", re.I),
    "auth": re.compile(r"unauthori[sz]ed|authentication failed|invalid api key|forbidden", re.I),
    "invalid_input": re.compile(r"invalid schema|validation error|invalid argument", re.I),
    "stale_read": re.compile(r"file has been modified since read", re.I),
}


@dataclass(frozen=True)
class ToolCall:
    tool: str
    target: str = ""
    timestamp: float = 0.0

    @property
    def key(self) -> str:
        return f"{self.tool}::{self.target}" if self.target else self.tool


@dataclass(frozen=True)
class ErrorTriplet:
    tool: str
    target: str
    error_snippet: str  # first 200 chars, whitespace-normalized
    timestamp: float = 0.0
    category: Optional[str] = None


@dataclass(frozen=True)
class LoopThresholds:
    """Detection thresholds. 0 disables a check."""

    repeat_warn: int = 3
    repeat_kill: int = 5
    ping_pong_warn: int = 3
    ping_pong_kill: int = 4


@dataclass(frozen=True)
class LoopDetection:
    type: Literal["generic_repeat", "ping_pong"]
    pattern: str
    count: int
    severity: Literal["warning", "kill"]


@dataclass(frozen=True)
class NonRetryableDetection:
    tool: str
    target: str
    error_snippet: str
    count: int


DEFAULT_THRESHOLDS = LoopThresholds()


class CallWindow:
    """Bounded sliding window of recent items, oldest first."""

    def __init__(self, size: int = 10):
        self.size = size
        self._items: Deque = deque(maxlen=size)

    def push(self, item) -> None:
        self._items.append(item)

    def reset(self) -> None:
        self._items.clear()

    def items(self) -> list:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)


def detect_error_loop(
    recent_calls: Sequence[ToolCall],
    thresholds: Optional[LoopThresholds] = None,
) -> Optional[LoopDetection]:
    """Detect whether an agent is stuck in a tool-call loop.

    Two patterns are checked:

    1. Generic repeat: the same ``tool::target`` key appears N+ times in the
       window.
    2. Ping-pong: the tail of the window alternates between exactly two keys
       (A, B, A, B, ...). Needs at least six calls.

    A kill detection is returned as soon as one is found. Otherwise the first
    warning is returned, or None.
    """
    if not recent_calls:
        return None

    t = thresholds or DEFAULT_THRESHOLDS
    best: Optional[LoopDetection] = None

    counts: dict[str, int] = {}
    for call in recent_calls:
        counts[call.key] = counts.get(call.key, 0) + 1

    if t.repeat_kill > 0:
        for pattern, count in counts.items():
            if count >= t.repeat_kill:
                return LoopDetection("generic_repeat", pattern, count, "kill")

    if t.repeat_warn > 0:
        for pattern, count in counts.items():
            if count >= t.repeat_warn:
                best = LoopDetection("generic_repeat", pattern, count, "warning")
                break

    ping_pong_enabled = t.ping_pong_warn > 0 or t.ping_pong_kill > 0
    if ping_pong_enabled and len(recent_calls) >= 6:
        key_a = recent_calls[-1].key
        key_b = recent_calls[-2].key

        if key_a != key_b:
            # Count occurrences of A walking back while the tail keeps alternating
            alternations = 0
            expect_a = True
            for call in reversed(recent_calls):
                if call.key != (key_a if expect_a else key_b):
                    break
                if expect_a:
                    alternations += 1
                expect_a = not expect_a

            pattern = f"{key_b} <-> {key_a}"
            if t.ping_pong_kill > 0 and alternations >= t.ping_pong_kill:
                return LoopDetection("ping_pong", pattern, alternations, "kill")
            if (
                t.ping_pong_warn > 0
                and alternations >= t.ping_pong_warn
                and best is None
            ):
                best = LoopDetection("ping_pong", pattern, alternations, "warning")

    return best


def normalize_error_snippet(text: str, limit: int = 200) -> str:
    return re.sub(r"\s+", " ", text).strip()[:limit]


def detect_non_retryable(
    recent_errors: Sequence[ErrorTriplet],
) -> Optional[NonRetryableDetection]:
    """Detect the same (tool, target, error) failing twice."""
    if len(recent_errors) < 2:
        return None

    counts: dict[tuple[str, str, str], int] = {}
    for triplet in recent_errors:
        key = (triplet.tool, triplet.target, triplet.error_snippet)
        counts[key] = counts.get(key, 0) + 1

    for (tool, target, snippet), count in counts.items():
        if count >= 2:
            return NonRetryableDetection(tool, target, snippet, count)
    return None


def classify_error(text: str) -> Optional[str]:
    """Return the non-retryable category an error message falls into, if any."""
    for category, pattern in NON_RETRYABLE_PATTERNS.items():
        if pattern.search(text):
            return category
    return None


def detect_flagged_retry(
    call: ToolCall, recent_errors: Sequence[ErrorTriplet]
) -> Optional[NonRetryableDetection]:
    """Detect a call repeating one that already failed with a classified error.

    Errors in :data:`NON_RETRYABLE_PATTERNS` categories are not worth a
    single retry, so the repeat itself is the signal.
    """
    failures = [
        triplet
        for triplet in recent_errors
        if triplet.category and (triplet.tool, triplet.target) == (call.tool, call.target)
    ]
    if not failures:
        return None
    last = failures[-1]
    return NonRetryableDetection(last.tool, last.target, last.error_snippet, len(failures) + 1)
