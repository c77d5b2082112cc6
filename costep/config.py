"""
Runtime configuration.

Values default to a single cooperative worker on wall-clock time. Every field
can be overridden from the environment via :meth:`RuntimeConfig.from_env`:

- ``COSTEP_WORKERS``: number of step workers (``1`` = purely cooperative)
- ``COSTEP_CLOCK``: ``monotonic`` or ``virtual``
- ``COSTEP_DEBUG``: ``1``/``true``/``yes`` records label traces and logs each step
- ``COSTEP_FAULT_LOG_LIMIT``: how many protocol faults the scheduler keeps
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal

ClockKind = Literal["monotonic", "virtual"]

_CLOCKS: tuple[str, ...] = ("monotonic", "virtual")
_TRUTHY = ("1", "true", "yes")


@dataclass(frozen=True)
class RuntimeConfig:
    workers: int = 1
    clock: ClockKind = "monotonic"
    debug: bool = False
    fault_log_limit: int = 1000

    def __post_init__(self) -> None:
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")
        if self.clock not in _CLOCKS:
            raise ValueError(f"clock must be one of {_CLOCKS}, got {self.clock!r}")
        if self.fault_log_limit < 1:
            raise ValueError(f"fault_log_limit must be >= 1, got {self.fault_log_limit}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RuntimeConfig:
        """Build a config from ``COSTEP_*`` variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            workers=int(env.get("COSTEP_WORKERS", defaults.workers)),
            clock=env.get("COSTEP_CLOCK", defaults.clock).lower(),  # type: ignore[arg-type]
            debug=env.get("COSTEP_DEBUG", "").lower() in _TRUTHY,
            fault_log_limit=int(env.get("COSTEP_FAULT_LOG_LIMIT", defaults.fault_log_limit)),
        )


__all__ = ["ClockKind", "RuntimeConfig"]
