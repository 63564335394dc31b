"""Cancellable polling for on-device key approval.

The device owner approves a new SSH key on the Move's own screen, and nothing
in the HTTP API reports when that happens.  The only signal is that SSH starts
working, so :class:`TrustPoller` probes every few seconds until it does.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class TrustPoller:
    """Repeats *probe* every *interval* seconds until it returns True.

    Usage::

        poller = TrustPoller(executor.probe_connectivity).start()
        ...
        poller.cancel()          # user backed out
        trusted = await poller.wait()
    """

    def __init__(
        self,
        probe: Callable[[], Awaitable[bool]],
        interval: float = 2.0,
        on_trusted: Callable[[], None] | None = None,
    ) -> None:
        self._probe = probe
        self.interval = interval
        self._on_trusted = on_trusted
        self._task: asyncio.Task | None = None
        self.attempts = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def trusted(self) -> bool:
        return (
            self._task is not None
            and self._task.done()
            and not self._task.cancelled()
            and self._task.result() is True
        )

    def start(self) -> TrustPoller:
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            logger.debug("Trust polling cancelled after %d attempt(s)", self.attempts)
            self._task.cancel()

    async def wait(self) -> bool:
        """True once trusted; False if the poller was cancelled."""
        if self._task is None:
            return False
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if self._task.cancelled():
                return False
            raise

    async def _run(self) -> bool:
        while True:
            self.attempts += 1
            try:
                connected = await self._probe()
            except Exception:
                logger.exception("Trust probe attempt %d failed", self.attempts)
                connected = False
            if connected:
                logger.info("Device trust confirmed after %d attempt(s)", self.attempts)
                if self._on_trusted is not None:
                    try:
                        self._on_trusted()
                    except Exception:
                        logger.exception("Error in trust callback")
                return True
            await asyncio.sleep(self.interval)
