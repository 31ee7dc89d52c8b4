"""
Persistent circuit breaker shared by every helper invocation.

Each invocation is a separate short-lived process, so the breaker keeps its
state in a JSON file and re-reads it on every decision. Transitions are
applied under an exclusive file lock spanning load, mutate and persist.
"""

import json
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from authguard.shared.errors import BreakerStateError
from authguard.shared.file_lock import locked_read, locked_write, read_modify_write
from authguard.shared.logging import get_logger

HALF_OPEN_PROBE_INTERVAL = timedelta(seconds=5)
SUCCESSES_TO_CLOSE = 2


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "Closed"        # Normal operation
    OPEN = "Open"            # Failing, requests blocked
    HALF_OPEN = "HalfOpen"   # Testing if endpoint recovered


def format_timestamp(value: datetime) -> str:
    """RFC3339 text in UTC."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _optional_timestamp(value: Optional[str]) -> Optional[datetime]:
    return parse_timestamp(value) if value is not None else None


@dataclass(frozen=True)
class BreakerRecord:
    """Persisted breaker state."""
    state: CircuitBreakerState = CircuitBreakerState.CLOSED
    opened_at: Optional[datetime] = None
    attempt_count: int = 0
    last_attempt: Optional[datetime] = None
    failure_count: int = 0
    last_failure: Optional[datetime] = None
    consecutive_successes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        if self.state is CircuitBreakerState.OPEN:
            state: Any = {"Open": {"opened_at": format_timestamp(self.opened_at)}}
        elif self.state is CircuitBreakerState.HALF_OPEN:
            state = {"HalfOpen": {
                "attempt_count": self.attempt_count,
                "last_attempt": format_timestamp(self.last_attempt),
            }}
        else:
            state = "Closed"
        return {
            "state": state,
            "failure_count": self.failure_count,
            "last_failure": format_timestamp(self.last_failure) if self.last_failure else None,
            "consecutive_successes": self.consecutive_successes,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, data: str) -> "BreakerRecord":
        """Parse the state file. Raises ValueError on malformed content."""
        try:
            raw = json.loads(data)
            state = raw["state"]
            common = {
                "failure_count": int(raw.get("failure_count", 0)),
                "last_failure": _optional_timestamp(raw.get("last_failure")),
                "consecutive_successes": int(raw.get("consecutive_successes", 0)),
            }
            if state == "Closed":
                return cls(state=CircuitBreakerState.CLOSED, **common)
            if isinstance(state, dict) and "Open" in state:
                return cls(
                    state=CircuitBreakerState.OPEN,
                    opened_at=parse_timestamp(state["Open"]["opened_at"]),
                    **common
                )
            if isinstance(state, dict) and "HalfOpen" in state:
                half_open = state["HalfOpen"]
                return cls(
                    state=CircuitBreakerState.HALF_OPEN,
                    attempt_count=int(half_open["attempt_count"]),
                    last_attempt=parse_timestamp(half_open["last_attempt"]),
                    **common
                )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed circuit breaker state: {e}") from e
        raise ValueError(f"Unknown circuit breaker state: {state!r}")


class CircuitBreaker:
    """File-backed circuit breaker."""

    def __init__(self,
                 state_path: Union[str, Path],
                 failure_threshold: int = 3,
                 recovery_timeout: Union[float, timedelta] = 60.0,
                 name: str = "credentials",
                 clock: Optional[Callable[[], datetime]] = None):
        self.state_path = Path(state_path)
        self.failure_threshold = failure_threshold
        if not isinstance(recovery_timeout, timedelta):
            recovery_timeout = timedelta(seconds=recovery_timeout)
        self.recovery_timeout = recovery_timeout
        self.name = name
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger(f"circuit_breaker.{name}")

    def _decode(self, data: Optional[bytes]) -> BreakerRecord:
        """Absent or unreadable state is treated as a fresh closed breaker."""
        if data is None:
            return BreakerRecord()
        try:
            return BreakerRecord.from_json(data.decode("utf-8"))
        except ValueError as e:
            self.logger.warning(
                "Discarding unreadable circuit breaker state",
                path=str(self.state_path),
                error=str(e)
            )
            return BreakerRecord()

    def load(self) -> BreakerRecord:
        """Read the current state under a shared lock."""
        try:
            return self._decode(locked_read(self.state_path))
        except OSError as e:
            raise BreakerStateError(
                f"Failed to read circuit breaker state: {e}",
                details={"path": str(self.state_path)}
            ) from e

    def _update(self, transition: Callable[[BreakerRecord, datetime], BreakerRecord]) -> BreakerRecord:
        now = self.clock()
        updated: Dict[str, BreakerRecord] = {}

        def _transform(data: Optional[bytes]) -> str:
            record = transition(self._decode(data), now)
            updated["record"] = record
            return record.to_json()

        try:
            read_modify_write(self.state_path, _transform)
        except OSError as e:
            raise BreakerStateError(
                f"Failed to persist circuit breaker state: {e}",
                details={"path": str(self.state_path)}
            ) from e
        return updated["record"]

    def should_allow_request(self) -> bool:
        """Decide whether a network attempt may be made now."""
        record = self.load()
        now = self.clock()

        if record.state is CircuitBreakerState.CLOSED:
            return True
        if record.state is CircuitBreakerState.OPEN:
            elapsed = now - record.opened_at
            if elapsed >= self.recovery_timeout:
                self.logger.info("Circuit breaker cool-down elapsed, admitting probe")
                return True
            self.logger.warning(
                "Circuit breaker is open",
                seconds_since_open=int(elapsed.total_seconds()),
                cool_down=self.recovery_timeout.total_seconds()
            )
            return False
        # Half-open: at most one probe per interval.
        return now - record.last_attempt >= HALF_OPEN_PROBE_INTERVAL

    def _on_failure(self, record: BreakerRecord, now: datetime) -> BreakerRecord:
        record = replace(
            record,
            failure_count=record.failure_count + 1,
            consecutive_successes=0,
            last_failure=now,
        )

        if record.state is CircuitBreakerState.CLOSED and record.failure_count >= self.failure_threshold:
            self.logger.warning(
                "Circuit breaker opened due to failures",
                failure_count=record.failure_count,
                threshold=self.failure_threshold
            )
            return replace(record, state=CircuitBreakerState.OPEN, opened_at=now)

        if record.state is CircuitBreakerState.HALF_OPEN:
            self.logger.warning("Circuit breaker probe failed, reopening")
            return replace(record, state=CircuitBreakerState.OPEN, opened_at=now,
                           attempt_count=0, last_attempt=None)

        if record.state is CircuitBreakerState.OPEN and now - record.opened_at >= self.recovery_timeout:
            # The admitted probe failed; start a new cool-down.
            self.logger.warning("Circuit breaker probe failed, restarting cool-down")
            return replace(record, opened_at=now)

        return record

    def _on_success(self, record: BreakerRecord, now: datetime) -> BreakerRecord:
        record = replace(record, consecutive_successes=record.consecutive_successes + 1)

        if record.state is CircuitBreakerState.OPEN:
            self.logger.info("Circuit breaker transitioning to half-open")
            return replace(record, state=CircuitBreakerState.HALF_OPEN, opened_at=None,
                           attempt_count=0, last_attempt=now)

        if record.state is CircuitBreakerState.HALF_OPEN:
            if record.consecutive_successes >= SUCCESSES_TO_CLOSE:
                self.logger.info("Circuit breaker reset to CLOSED after successful probes")
                return replace(record, state=CircuitBreakerState.CLOSED, failure_count=0,
                               attempt_count=0, last_attempt=None)
            return replace(record, attempt_count=record.attempt_count + 1, last_attempt=now)

        # Closed: failures are counted since the last success.
        return replace(record, failure_count=0)

    def record_failure(self) -> BreakerRecord:
        """Record a failed attempt and persist the resulting state."""
        return self._update(self._on_failure)

    def record_success(self) -> BreakerRecord:
        """Record a successful attempt and persist the resulting state."""
        return self._update(self._on_success)

    def reset(self) -> BreakerRecord:
        """Force the breaker closed."""
        record = BreakerRecord()
        try:
            locked_write(self.state_path, record.to_json())
        except OSError as e:
            raise BreakerStateError(
                f"Failed to persist circuit breaker state: {e}",
                details={"path": str(self.state_path)}
            ) from e
        self.logger.info("Circuit breaker reset")
        return record

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        record = self.load()
        return {
            "name": self.name,
            "path": str(self.state_path),
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout.total_seconds(),
            "allows_requests": self.should_allow_request(),
            **record.to_dict(),
        }
