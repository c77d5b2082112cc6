"""
Identity and bag types shared by the runtime.

This module contains:
- TaskId: Unique identifier for tasks
- ScopeId: Unique identifier for scopes
- Context: Immutable ambient mapping passed explicitly to tasks and steps
- Locals: Mutable per-task captured-locals bag
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, TypeAlias
from uuid import UUID, uuid4

from costep._vendor import FrozenDict


# ============================================
# Identity Types
# ============================================

@dataclass(frozen=True, order=True)
class TaskId:
    """Unique identifier for a task.

    A task is the unit of cooperative execution. Each task owns its own
    label and locals; tasks never share step state.
    """

    _id: UUID = field(default_factory=uuid4, compare=True)

    @classmethod
    def new(cls) -> TaskId:
        """Create a new unique TaskId."""
        return cls()

    def __str__(self) -> str:
        return f"task-{self._id.hex[:8]}"

    def __repr__(self) -> str:
        return f"TaskId({self._id.hex[:8]})"


@dataclass(frozen=True, order=True)
class ScopeId:
    """Unique identifier for a structured-concurrency scope."""

    _id: UUID = field(default_factory=uuid4, compare=True)

    @classmethod
    def new(cls) -> ScopeId:
        """Create a new unique ScopeId."""
        return cls()

    def __str__(self) -> str:
        return f"scope-{self._id.hex[:8]}"

    def __repr__(self) -> str:
        return f"ScopeId({self._id.hex[:8]})"


# ============================================
# Bags
# ============================================

# Ambient values (dispatcher hints, request ids, deadlines...) handed to
# every step explicitly. Immutable; children merge overrides into a copy.
Context: TypeAlias = FrozenDict[str, Any]

# Captured locals of one task, threaded by hand between labels.
Locals: TypeAlias = dict[str, Any]

# Reserved locals key holding the Result delivered by the last resumption.
RESUME_SLOT = "__resumed__"


def empty_context() -> Context:
    """Create an empty Context."""
    return FrozenDict()


def merge_context(base: Context, overrides: dict[str, Any] | Context | None) -> Context:
    """Return ``base`` with ``overrides`` applied on top."""
    if not overrides:
        return base
    return FrozenDict({**base, **overrides})


__all__ = [
    "RESUME_SLOT",
    "Context",
    "Locals",
    "ScopeId",
    "TaskId",
    "empty_context",
    "merge_context",
]
