"""Bounded, order-preserving concurrent map over a thread pool.

Used by batch categorization: each transaction is independent, and the model
call is the only blocking step, so threads are enough.

- ``concurrency`` caps the number of mapper calls in flight; the input is
  consumed lazily, one item per completed call.
- Output order follows input order; items whose mapper returned
  ``p_map_skip`` are omitted.
- Mapper calls see the caller's ``contextvars`` (logging job context).
- ``stop_on_error=True`` re-raises the first failure and cancels work not yet
  started; ``False`` waits for everything and raises an ``ExceptionGroup``.
"""

from __future__ import annotations

import contextvars
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import TypeVar

InT = TypeVar("InT")
OutT = TypeVar("OutT")


class _Skip:
    __slots__ = ()

    def __repr__(self) -> str:  # pragma: no cover - trivial
        return "p_map_skip"


p_map_skip: object = _Skip()


def p_map(
    iterable: Iterable[InT],
    mapper: Callable[[InT], OutT | object],
    *,
    concurrency: int,
    stop_on_error: bool = True,
) -> list[OutT]:
    if not isinstance(concurrency, int) or concurrency < 1:
        raise ValueError("concurrency must be a positive integer")

    source: Iterator[tuple[int, InT]] = enumerate(iterable)
    slots: dict[int, OutT | object] = {}
    failures: list[Exception] = []
    pending: dict[Future, int] = {}
    total = 0

    with ThreadPoolExecutor(max_workers=concurrency) as pool:

        def _feed(n: int) -> None:
            nonlocal total
            for _ in range(n):
                nxt = next(source, None)
                if nxt is None:
                    return
                idx, item = nxt
                # Each call runs in a copy of the caller's context (job logging fields).
                pending[pool.submit(contextvars.copy_context().run, mapper, item)] = idx
                total += 1

        _feed(concurrency)
        while pending:
            done, _ = wait(pending, return_when=FIRST_COMPLETED)
            for fut in done:
                idx = pending.pop(fut)
                exc = fut.exception()
                if exc is None:
                    slots[idx] = fut.result()
                    continue
                if stop_on_error:
                    pool.shutdown(wait=False, cancel_futures=True)
                    raise exc
                if isinstance(exc, Exception):
                    failures.append(exc)
                else:
                    raise exc
            _feed(len(done))

    if failures:
        raise ExceptionGroup("p_map: one or more mapper calls failed", failures)

    return [slots[i] for i in range(total) if slots.get(i, p_map_skip) is not p_map_skip]  # type: ignore[misc]


__all__ = ["p_map", "p_map_skip"]
