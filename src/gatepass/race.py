"""First-settled-wins races between awaited browser observations.

After submitting a form the login flow needs to know which of several things
happens first: a CAPTCHA frame appears, an MFA input appears, or the page
finishes navigating. ``first_completed`` runs the observations concurrently,
returns the winner and cancels the rest, so a losing observation can never
resolve later and act on a page that has moved on.
"""

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any

from gatepass.logging import get_logger

LOG = get_logger(__name__)


@dataclass(frozen=True)
class RaceResult:
    """Outcome of a race.

    Attributes:
        label: Keyword the winning observation was passed under.
        value: What the winning observation returned.
    """

    label: str
    value: Any


async def first_completed(**observations: Awaitable[Any]) -> RaceResult:
    """Await several observations and return the first one to settle.

    If the first observation to settle raised, its exception propagates.
    Every other observation is cancelled and awaited before this returns or
    raises.

    Args:
        **observations: Awaitables keyed by a label used in the result.

    Returns:
        RaceResult for the winner.

    Raises:
        ValueError: If no observations were given.

    Example:
        >>> result = await first_completed(
        ...     captcha=page.wait_for_selector("iframe[src*='hcaptcha']"),
        ...     navigation=page.wait_for_navigation(),
        ... )
        >>> result.label
        'navigation'
    """
    if not observations:
        raise ValueError("first_completed() needs at least one observation")

    tasks: dict[asyncio.Future[Any], str] = {
        asyncio.ensure_future(awaitable): label for label, awaitable in observations.items()
    }
    try:
        done, _pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        # Several tasks may finish in the same loop iteration; prefer the
        # earliest-declared one so results are deterministic.
        winner = next(task for task in tasks if task in done)
        label = tasks[winner]
        LOG.debug("race_settled", winner=label, contenders=list(observations))
        return RaceResult(label=label, value=winner.result())
    finally:
        await _cancel_all(tasks)


async def gather_or_cancel(*awaitables: Awaitable[Any]) -> list[Any]:
    """Run awaitables concurrently and wait for all of them.

    Like ``asyncio.gather`` except that when one fails the others are
    cancelled and awaited before the error propagates, so a click can't still
    be in flight after the page it targets has been torn down.

    Returns:
        Results in argument order.
    """
    tasks: dict[asyncio.Future[Any], str] = {
        asyncio.ensure_future(awaitable): str(index) for index, awaitable in enumerate(awaitables)
    }
    try:
        return list(await asyncio.gather(*tasks))
    finally:
        await _cancel_all(tasks)


async def _cancel_all(tasks: dict[asyncio.Future[Any], str]) -> None:
    """Cancel unfinished tasks and wait until they have actually stopped."""
    pending = [task for task in tasks if not task.done()]
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
    # Retrieve exceptions from losers that failed on their own so asyncio
    # doesn't report them as never retrieved.
    for task in tasks:
        if task.done() and not task.cancelled():
            task.exception()
