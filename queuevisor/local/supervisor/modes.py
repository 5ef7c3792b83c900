from enum import Enum
from typing import Union


class InvalidModeError(ValueError):
    """Raised for a supervisor mode outside schedule/work/all."""


class Mode(str, Enum):
    """Which runner roles the supervisor starts."""

    SCHEDULE = "schedule"
    WORK = "work"
    ALL = "all"

    @classmethod
    def parse(cls, value: Union["Mode", str]) -> "Mode":
        """
        Accepts a Mode or its name, case-insensitively and with an optional
        `-only`/`_only` suffix ("schedule-only", "WORK_ONLY").

        :raises InvalidModeError: For any other value.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            for suffix in ("-only", "_only"):
                if normalized.endswith(suffix):
                    normalized = normalized[: -len(suffix)]
            for mode in cls:
                if mode.value == normalized:
                    return mode
        raise InvalidModeError(f"Invalid mode {value}")
