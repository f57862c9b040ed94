"""On-disk queue of publishes that have not been acknowledged yet."""

from __future__ import annotations

import base64
import itertools
import logging
import os
import threading
import time
from collections.abc import Iterator
from pathlib import Path

from pydantic import BaseModel, ConfigDict, ValidationError

from pyiotcore.exceptions import IotTransportError

_logger = logging.getLogger(__name__)

_SUFFIX = ".msg"


class StoredMessage(BaseModel):
    """One queued publish as written to disk."""

    model_config = ConfigDict(frozen=True)

    topic: str
    qos: int
    retain: bool
    payload_b64: str

    @property
    def payload(self) -> bytes:
        return base64.b64decode(self.payload_b64)

    @classmethod
    def build(cls, topic: str, qos: int, retain: bool, payload: bytes) -> StoredMessage:
        return cls(
            topic=topic,
            qos=qos,
            retain=retain,
            payload_b64=base64.b64encode(payload).decode("ascii"),
        )


class FileStore:
    """One file per message, named so that lexical order is publish order.

    Files are written to a temporary name and renamed into place, so a
    crash never leaves a partially written message behind.
    """

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self._directory = Path(directory)
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise IotTransportError(f"Could not create queue directory {self._directory}: {exc}") from exc
        self._lock = threading.Lock()
        self._counter = itertools.count()

    @property
    def directory(self) -> Path:
        return self._directory

    def put(self, message: StoredMessage) -> str:
        """Persist *message* and return its key."""
        with self._lock:
            key = f"{time.time_ns():020d}-{next(self._counter):06d}"
        path = self._directory / f"{key}{_SUFFIX}"
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(message.model_dump_json(), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            raise IotTransportError(f"Could not persist message for {message.topic}: {exc}") from exc
        return key

    def delete(self, key: str) -> None:
        try:
            (self._directory / f"{key}{_SUFFIX}").unlink(missing_ok=True)
        except OSError:
            _logger.warning("Could not remove queued message %s", key, exc_info=True)

    def keys(self) -> list[str]:
        return sorted(path.stem for path in self._directory.glob(f"*{_SUFFIX}"))

    def items(self) -> Iterator[tuple[str, StoredMessage]]:
        """Yield ``(key, message)`` pairs in publish order.

        Unreadable files are logged and skipped.
        """
        for key in self.keys():
            path = self._directory / f"{key}{_SUFFIX}"
            try:
                message = StoredMessage.model_validate_json(path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                continue
            except (OSError, ValidationError):
                _logger.warning("Skipping unreadable queued message %s", path, exc_info=True)
                continue
            yield key, message
