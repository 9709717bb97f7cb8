"""Temporal special functions for condition expressions.

Supports ``date_diff`` and ``time_diff`` descriptors of the form
``name,attr1,attr2[,unit]``. Magnitudes use fixed unit lengths, not calendar
arithmetic: a year is 365 days and a month 30 days.
"""

import logging
import math
from datetime import date, datetime, time
from typing import Any, Dict, Optional

from decisionhub.core.config import EngineConfig
from decisionhub.core.context import EvaluationContext
from decisionhub.core.graph import SpecialFunction

logger = logging.getLogger(__name__)

CURRENT_DATE = "current_date"
CURRENT_TIME = "current_time"

DAY_SECONDS = 86400

UNIT_SECONDS: Dict[str, Dict[str, int]] = {
    "date_diff": {
        "years": 365 * DAY_SECONDS,
        "months": 30 * DAY_SECONDS,
        "days": DAY_SECONDS,
    },
    "time_diff": {
        "hours": 3600,
        "minutes": 60,
        "seconds": 1,
    },
}

UNIT_ALIASES = {
    "year": "years",
    "month": "months",
    "day": "days",
    "hour": "hours",
    "minute": "minutes",
    "second": "seconds",
}


class TemporalResolver:
    """Resolves temporal special functions to integer magnitudes.

    Never raises on bad input: unknown functions resolve to 0, and invalid
    units or unparseable dates resolve to None. Each fallback is recorded as
    a diagnostic on the evaluation context.

    Examples:
        >>> resolver = TemporalResolver()
        >>> fn = SpecialFunction.parse("date_diff,current_date,date_of_birth,years")
        >>> ctx = EvaluationContext({"date_of_birth": "2000-01-01"}, now=datetime(2020, 6, 1))
        >>> resolver.resolve(fn, ctx)
        20
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        self._default_units = {
            "date_diff": self.config.default_date_unit,
            "time_diff": self.config.default_time_unit,
        }

    def resolve(self, function: SpecialFunction, context: EvaluationContext) -> Optional[int]:
        """Compute ``floor(|t1 - t2| / unit_length)`` for a descriptor.

        Args:
            function: Parsed special function.
            context: Evaluation context supplying the record and clock.

        Returns:
            The magnitude, 0 for unknown functions, or None when the unit is
            invalid or either operand is not a date/time.
        """
        units = UNIT_SECONDS.get(function.name)
        if units is None:
            context.add_diagnostic(
                "unknown_special_function",
                f"Unknown special function {function.name!r}, using magnitude 0",
            )
            return 0

        unit = (function.unit or self._default_units[function.name]).strip().lower()
        unit = UNIT_ALIASES.get(unit, unit)
        if unit not in units:
            context.add_diagnostic(
                "invalid_unit",
                f"Invalid unit {function.unit!r} for {function.name}. Must be one of {list(units)}",
            )
            return None

        if len(function.args) < 2:
            context.add_diagnostic(
                "invalid_descriptor",
                f"{function.name} needs two operands, got {list(function.args)}",
            )
            return None

        first = self.resolve_operand(function.args[0], context)
        second = self.resolve_operand(function.args[1], context)
        if first is None or second is None:
            return None

        seconds = abs((first - second).total_seconds())
        magnitude = math.floor(seconds / units[unit])
        logger.debug(
            "Resolved special function",
            extra={"function": function.to_descriptor(), "magnitude": magnitude},
        )
        return magnitude

    def resolve_operand(self, token: str, context: EvaluationContext) -> Optional[datetime]:
        """Resolve one operand token to a naive datetime."""
        if token == CURRENT_DATE:
            return datetime.combine(context.now.date(), time.min)
        if token == CURRENT_TIME:
            return context.now

        value = context.lookup(token)
        if value is None:
            return None

        moment = self.to_datetime(value, context.now)
        if moment is None:
            context.add_diagnostic("invalid_date", f"Value of {token!r} is not a date or time: {value!r}")
        return moment

    def to_datetime(self, value: Any, now: datetime) -> Optional[datetime]:
        """Coerce a record value to a naive datetime, or None.

        Accepts datetime, date, time (placed on ``now``'s date), epoch
        seconds, ISO-8601 strings and the configured strptime formats.
        """
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                return value.astimezone().replace(tzinfo=None)
            return value
        if isinstance(value, date):
            return datetime.combine(value, time.min)
        if isinstance(value, time):
            return datetime.combine(now.date(), value.replace(tzinfo=None))
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            try:
                return datetime.fromtimestamp(value)
            except (OverflowError, OSError, ValueError):
                return None
        if isinstance(value, str):
            return self._parse_text(value.strip(), now)
        return None

    def _parse_text(self, text: str, now: datetime) -> Optional[datetime]:
        if not text:
            return None
        try:
            return self.to_datetime(datetime.fromisoformat(text), now)
        except ValueError:
            pass

        for fmt in self.config.date_formats:
            try:
                return datetime.strptime(text, fmt)
            except ValueError:
                continue

        for fmt in self.config.time_formats:
            try:
                parsed = datetime.strptime(text, fmt)
            except ValueError:
                continue
            return datetime.combine(now.date(), parsed.time())

        return None
