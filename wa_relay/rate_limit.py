"""Randomised pacing between consecutive connector sends."""

import asyncio
import random
from typing import Optional


class SendPacer:
    """Pick a random pause in ``[min_delay, max_delay]`` seconds after each send.

    Evenly spaced bursts look automated to the downstream channel, so the gap
    between two messages is jittered.
    """

    def __init__(self, min_delay: float = 1.0, max_delay: float = 8.0, rng: Optional[random.Random] = None):
        """Store the delay bounds; ``max_delay`` below ``min_delay`` is clamped."""
        self.min_delay = max(0.0, float(min_delay))
        self.max_delay = max(self.min_delay, float(max_delay))
        self._rng = rng or random.Random()

    def next_delay(self) -> float:
        """Return the pause, in seconds, to apply before the next send."""
        return self._rng.uniform(self.min_delay, self.max_delay)

    async def pause(self, stop: Optional[asyncio.Event] = None) -> float:
        """Sleep for :meth:`next_delay` seconds, waking early when ``stop`` is set."""
        delay = self.next_delay()
        if delay <= 0:
            await asyncio.sleep(0)
            return 0.0
        if stop is None:
            await asyncio.sleep(delay)
            return delay
        try:
            async with asyncio.timeout(delay):
                await stop.wait()
        except TimeoutError:
            pass
        return delay
