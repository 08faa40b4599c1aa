"""
Shared contracts and type definitions.
Result wrappers and the root error type used across buryscope modules.
"""

from dataclasses import dataclass
from datetime import date
from typing import Generic, TypeVar, Union


T = TypeVar('T')
E = TypeVar('E')


@dataclass(frozen=True)
class Success(Generic[T]):
    """Success result wrapper."""
    value: T


@dataclass(frozen=True)
class Failure(Generic[E]):
    """Failure result wrapper."""
    error: E


Result = Union[Success[T], Failure[E]]


class BuryscopeError(Exception):
    """Base class for all buryscope errors."""
    pass


@dataclass(frozen=True)
class DateRange:
    """Inclusive range of calendar days."""
    start: date
    end: date
