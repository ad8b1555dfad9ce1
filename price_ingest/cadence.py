"""
Run cadence parsing.

Accepted forms:
    900, "900"          seconds
    "30s", "15m", "1h"  interval with unit suffix
    "*/15 * * * *"      minute-step cron, fires on wall-clock minute boundaries
    "* * * * *"         every minute

Intervals are bounded to [1s, 7 days].

General cron expressions are not evaluated here; anything else is a
ConfigError.
"""

import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Union

from price_ingest.exceptions import ConfigError

_INTERVAL_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$", re.IGNORECASE)
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600}

MIN_INTERVAL_SECONDS = 1.0
MAX_INTERVAL_SECONDS = 7 * 24 * 3600.0


@dataclass(frozen=True)
class Cadence:
    """A validated run cadence."""
    expression: str
    interval_seconds: float
    minute_step: int = 0  # >0 for cron forms aligned to the clock

    @property
    def aligned(self) -> bool:
        return self.minute_step > 0

    def next_fire(self, after: datetime) -> datetime:
        """First fire time strictly after `after` (timezone-aware UTC)."""
        if after.tzinfo is None:
            after = after.replace(tzinfo=timezone.utc)

        if not self.aligned:
            return after + timedelta(seconds=self.interval_seconds)

        base = after.replace(second=0, microsecond=0)
        for minute in range(0, 60, self.minute_step):
            candidate = base.replace(minute=minute)
            if candidate > after:
                return candidate
        return base.replace(minute=0) + timedelta(hours=1)


def parse_cadence(value: Union[str, int, float, Cadence]) -> Cadence:
    """
    Validate a cadence expression.

    Raises:
        ConfigError: If the expression is empty, malformed, or out of range
    """
    if isinstance(value, Cadence):
        return value

    if isinstance(value, bool):
        raise ConfigError(f"Invalid cadence: {value!r}")

    if isinstance(value, (int, float)):
        return _interval(str(value), float(value))

    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Invalid cadence: {value!r}")

    expression = value.strip()
    fields = expression.split()

    if len(fields) == 5:
        return _minute_step_cron(expression, fields)

    match = _INTERVAL_RE.match(expression)
    if not match:
        raise ConfigError(f"Invalid cadence: {expression!r}")

    amount, unit = match.groups()
    return _interval(expression, float(amount) * _UNIT_SECONDS[unit.lower()])


def _interval(expression: str, seconds: float) -> Cadence:
    if not math.isfinite(seconds):
        raise ConfigError(f"Cadence {expression!r} is not a finite interval")
    if seconds < MIN_INTERVAL_SECONDS:
        raise ConfigError(
            f"Cadence {expression!r} is shorter than {MIN_INTERVAL_SECONDS}s"
        )
    if seconds > MAX_INTERVAL_SECONDS:
        raise ConfigError(
            f"Cadence {expression!r} is longer than {MAX_INTERVAL_SECONDS:.0f}s"
        )
    return Cadence(expression=expression, interval_seconds=seconds)


def _minute_step_cron(expression: str, fields: list) -> Cadence:
    minute, *rest = fields
    if any(f != "*" for f in rest):
        raise ConfigError(
            f"Unsupported cron expression {expression!r}: only minute steps are evaluated"
        )

    if minute == "*":
        step = 1
    else:
        m = re.fullmatch(r"\*/(\d+)", minute)
        if not m:
            raise ConfigError(f"Invalid cron minute field in {expression!r}")
        step = int(m.group(1))

    if not 1 <= step <= 59:
        raise ConfigError(f"Cron minute step out of range in {expression!r}")

    return Cadence(expression=expression, interval_seconds=step * 60.0, minute_step=step)
