"""Interruptible viewport transitions on an asyncio loop."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from .models import ViewportTransform


_LOGGER = logging.getLogger("drillmap.transitions")


def ease_cubic_in_out(t: float) -> float:
    t *= 2.0
    if t <= 1.0:
        return t * t * t / 2.0
    t -= 2.0
    return (t * t * t + 2.0) / 2.0


def ease_linear(t: float) -> float:
    return t


class TransitionController:
    """Render target that animates toward each requested transform.

    A new `zoom_to` cancels whatever transition is running and starts from
    the transform most recently applied. Outside a running event loop, or
    with a zero duration, the target is applied at once.
    """

    def __init__(
        self,
        apply: Callable[[ViewportTransform], None],
        *,
        duration_s: float = 0.75,
        frame_interval_s: float = 1.0 / 60.0,
        ease: Callable[[float], float] = ease_cubic_in_out,
        initial: ViewportTransform | None = None,
    ) -> None:
        if duration_s < 0:
            raise ValueError("duration_s must be >= 0")
        if frame_interval_s <= 0:
            raise ValueError("frame_interval_s must be > 0")
        self._apply = apply
        self.duration_s = duration_s
        self.frame_interval_s = frame_interval_s
        self._ease = ease
        self._current = initial or ViewportTransform.identity()
        self._target = self._current
        self._task: asyncio.Task[None] | None = None

    @property
    def current(self) -> ViewportTransform:
        return self._current

    @property
    def target(self) -> ViewportTransform:
        return self._target

    @property
    def animating(self) -> bool:
        return self._task is not None and not self._task.done()

    def zoom_to(self, transform: ViewportTransform) -> None:
        if self.animating:
            _LOGGER.debug("Superseding in-flight transition toward %s", self._target.to_svg())
        self.cancel()
        self._target = transform
        if self.duration_s == 0:
            self._set(transform)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._set(transform)
            return
        self._task = loop.create_task(self._run(self._current, transform))

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def wait(self) -> None:
        """Wait until the running transition, if any, finishes or is cancelled."""
        task = self._task
        if task is not None:
            await asyncio.wait({task})

    async def _run(self, start: ViewportTransform, target: ViewportTransform) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        while True:
            t = min((loop.time() - started) / self.duration_s, 1.0)
            if t >= 1.0:
                self._set(target)
                return
            self._set(start.interpolate(target, self._ease(t)))
            await asyncio.sleep(self.frame_interval_s)

    def _set(self, transform: ViewportTransform) -> None:
        self._current = transform
        self._apply(transform)
