"""
Vendored minimal result types.
These types are kept local to avoid pulling a monad library into the runtime core.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, NoReturn, TypeVar, cast

from frozendict import frozendict

# =========================================================
# Type Vars
# =========================================================
T = TypeVar("T")
T_co = TypeVar("T_co", covariant=True)
U = TypeVar("U")


class Result(Generic[T_co]):
    """Sum type representing either a successful value or an error."""

    __slots__ = ()

    def is_ok(self) -> bool:
        """Return ``True`` when the result is successful."""

        return isinstance(self, Ok)

    def is_err(self) -> bool:
        """Return ``True`` when the result represents a failure."""

        return isinstance(self, Err)

    def ok(self) -> T_co | None:
        """Return the contained value, or ``None`` if this is an error."""

        if isinstance(self, Ok):
            return self.value
        return None

    def err(self) -> BaseException | None:
        """Return the contained error, or ``None`` if this is a success."""

        if isinstance(self, Err):
            return self.error
        return None

    def unwrap(self) -> T_co:
        """Return the value or raise the stored error."""

        if isinstance(self, Ok):
            return self.value
        raise cast(Err, self).error

    def unwrap_or(self, default: U) -> T_co | U:
        """Return the contained value, or ``default`` if this is an error."""

        if isinstance(self, Ok):
            return self.value
        return default

    def map(self, f: Callable[[T_co], U]) -> Result[U]:
        """Apply ``f`` to the contained value if this is a success."""

        if isinstance(self, Ok):
            return Ok(f(self.value))
        return cast(Result[U], self)

    def __bool__(self) -> bool:
        """Truthiness matches :meth:`is_ok`."""

        return self.is_ok()


@dataclass(frozen=True)
class Ok(Result[T], Generic[T]):
    """Success result."""
    value: T


@dataclass(frozen=True)
class Err(Result[NoReturn]):
    """Error result."""
    error: BaseException


# =========================================================
# Frozen Dict
# =========================================================
FrozenDict = frozendict

__all__ = [
    "Err",
    "FrozenDict",
    "Ok",
    "Result",
]
