from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from typing import Any

from app.services.monitor_models import DispatchResult


async def dispatch_all_settled(
    targets: Sequence[tuple[str, Callable[[], Any]]],
    *,
    timeout_seconds: float,
) -> list[DispatchResult]:
    """
    Runs every blocking call in a worker thread, concurrently, and waits for
    all of them. A failure or timeout in one target never affects the others.
    """
    if not targets:
        return []

    outcomes = await asyncio.gather(
        *(
            asyncio.wait_for(asyncio.to_thread(call), timeout=timeout_seconds)
            for _, call in targets
        ),
        return_exceptions=True,
    )

    results: list[DispatchResult] = []
    for (target_name, _), outcome in zip(targets, outcomes, strict=True):
        if isinstance(outcome, TimeoutError):
            results.append(
                DispatchResult(
                    target=target_name,
                    ok=False,
                    error=f"Timed out after {timeout_seconds:g}s.",
                ),
            )
            continue
        if isinstance(outcome, BaseException):
            results.append(
                DispatchResult(
                    target=target_name,
                    ok=False,
                    error=str(outcome) or outcome.__class__.__name__,
                ),
            )
            continue
        results.append(DispatchResult(target=target_name, ok=True))
    return results
