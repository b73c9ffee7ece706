# repertoire_builder/utils/signal_manager.py
"""
Turns Ctrl+C and SIGTERM into a cooperative cancellation request.

Tree builds and batch runs stop at their next checkpoint when their cancel
event is set; they keep whatever they have already produced. Wrapping a run in
`CancelOnSignal` makes the first signal set that event instead of killing the
process mid-write.
"""

import asyncio
import signal
from typing import Tuple

import structlog

logger = structlog.get_logger(__name__)

_SIGNALS: Tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)


class CancelOnSignal:
    """
    An async context manager that sets `cancel_event` when a shutdown signal arrives.

    Usage:
        cancel_event = asyncio.Event()
        async with CancelOnSignal(cancel_event):
            await builder.run(tree, (), config, cancel_event)
    """

    def __init__(self, cancel_event: asyncio.Event):
        self._cancel_event = cancel_event
        self._registered: list = []

    def _on_signal(self, sig: signal.Signals) -> None:
        if self._cancel_event.is_set():
            logger.info("Already cancelling.", signal_name=sig.name)
            return
        logger.warning("Signal received; cancelling after the current step.", signal_name=sig.name)
        self._cancel_event.set()

    async def __aenter__(self) -> "CancelOnSignal":
        loop = asyncio.get_running_loop()
        for sig in _SIGNALS:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, ValueError, RuntimeError) as e:
                # Windows event loops do not support signal handlers.
                logger.debug("Signal handler unavailable.", signal_name=sig.name, error=str(e))
                continue
            self._registered.append(sig)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._registered:
            loop.remove_signal_handler(sig)
        self._registered.clear()
