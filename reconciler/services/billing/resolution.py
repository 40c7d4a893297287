"""Ordered fallback chains of resolver strategies.

A strategy returns a value or None ("no opinion"). The chain returns the
first value any strategy produces, together with that strategy's name.
"""

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Strategy(Generic[T]):
    name: str
    resolve: Callable[[], Awaitable[T | None]]


@dataclass(frozen=True)
class ChainResult(Generic[T]):
    value: T | None
    strategy: str | None
    tried: tuple[str, ...]


async def first_resolved(strategies: Sequence[Strategy[T]]) -> ChainResult[T]:
    """Run strategies in order and stop at the first one that resolves."""
    tried: list[str] = []
    for strategy in strategies:
        tried.append(strategy.name)
        value = await strategy.resolve()
        if value is not None:
            return ChainResult(value=value, strategy=strategy.name, tried=tuple(tried))
    return ChainResult(value=None, strategy=None, tried=tuple(tried))
