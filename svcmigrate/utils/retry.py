"""
HOMESERVER Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
Bounded retry policy shared by the migration controller, the storage
monitor and the validation harness.

Every "try N times, sleep between attempts" loop goes through RetryPolicy
so the budget is explicit, configurable and identical everywhere.

Usage:
    policy = RetryPolicy(max_attempts=30, interval=10, timeout=5)
    ok, attempts = policy.run(lambda: prober.probe(url, timeout=policy.timeout),
                              label="sonarr readiness")
"""

import time
from dataclasses import dataclass, asdict, field, replace
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from .index import log_message


@dataclass(frozen=True)
class RetryPolicy:
    """Named budget for a retried operation."""
    max_attempts: int = 3
    interval: float = 10.0
    timeout: float = 5.0
    backoff: float = 1.0
    max_interval: Optional[float] = None
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.interval < 0 or self.timeout <= 0:
            raise ValueError("interval must be >= 0 and timeout > 0")
        if self.backoff < 1.0:
            raise ValueError("backoff must be >= 1.0")

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default: 'RetryPolicy') -> 'RetryPolicy':
        """Build a policy from a config section, falling back to default per key."""
        if not data:
            return default
        known = {k: data[k] for k in ("max_attempts", "interval", "timeout", "backoff", "max_interval") if k in data}
        return replace(default, **known)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("sleep", None)
        return data

    def with_sleep(self, sleep: Callable[[float], None]) -> 'RetryPolicy':
        return replace(self, sleep=sleep)

    def delays(self) -> Iterator[float]:
        """Delay before each attempt after the first."""
        delay = self.interval
        for _ in range(self.max_attempts - 1):
            yield delay
            delay = delay * self.backoff
            if self.max_interval is not None:
                delay = min(delay, self.max_interval)

    def run(self, attempt: Callable[[], bool], label: str = "operation",
            should_stop: Optional[Callable[[], bool]] = None) -> Tuple[bool, int]:
        """
        Call attempt() until it returns True or the budget is exhausted.

        Exceptions raised by attempt() count as a failed attempt.

        Returns:
            (succeeded, attempts_used)
        """
        delays = self.delays()
        for number in range(1, self.max_attempts + 1):
            try:
                if attempt():
                    return True, number
            except Exception as e:
                log_message(f"{label}: attempt {number} raised {e}", "DEBUG")
            if number == self.max_attempts:
                break
            if should_stop is not None and should_stop():
                log_message(f"{label}: stopped after {number} attempt(s)", "WARNING")
                return False, number
            log_message(f"  Waiting for {label}... ({number}/{self.max_attempts})")
            self.sleep(next(delays))
        return False, self.max_attempts
