"""Routing of inbound configuration documents to the user handler."""

from __future__ import annotations

import inspect
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pyiotcore.config import ConfigHandler, LeveledLogger
    from pyiotcore.thing import Thing


class ConfigDispatcher:
    """Subscription handler for the config topic.

    Every message is handed to the handler as ``(thing, payload)``. There is
    no deduplication: a redelivered message is dispatched again.
    """

    def __init__(self, thing: Thing, handler: ConfigHandler | None, logger: LeveledLogger) -> None:
        self._thing = thing
        self._handler = handler
        self._logger = logger

    async def __call__(self, topic: str, payload: bytes) -> None:
        self._logger.debug("Config received topic=%s length=%d", topic, len(payload))
        if self._handler is None:
            return
        try:
            result = self._handler(self._thing, bytes(payload))
            if inspect.isawaitable(result):
                await result
        except Exception:
            self._logger.error("Config handler failed for topic=%s", topic, exc_info=True)
