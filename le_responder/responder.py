"""HTTP-01 challenge responder.

The responder keeps the challenge values published by in-flight ACME orders
and serves them on the plain HTTP listener the CA validates against.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse, RedirectResponse

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """Many readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0

    @contextmanager
    def reading(self) -> Iterator[None]:
        with self._cond:
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def writing(self) -> Iterator[None]:
        with self._cond:
            while self._readers:
                self._cond.wait()
            yield


class ChallengeResponder:
    """Map of URL path to challenge response body."""

    def __init__(self):
        self._lock = ReadWriteLock()
        self._values: Dict[str, bytes] = {}

    def set_challenge_value(self, path: str, value: bytes) -> None:
        with self._lock.writing():
            self._values[path] = value
        logger.debug(f"Published challenge response at {path}")

    def clear_challenge_value(self, path: str) -> None:
        with self._lock.writing():
            self._values.pop(path, None)
        logger.debug(f"Cleared challenge response at {path}")

    def get_challenge_value(self, path: str) -> Optional[bytes]:
        with self._lock.reading():
            return self._values.get(path)

    @contextmanager
    def published(self, path: str, value: bytes) -> Iterator[None]:
        """Publish a value for the duration of the block."""
        self.set_challenge_value(path, value)
        try:
            yield
        finally:
            self.clear_challenge_value(path)

    def __len__(self) -> int:
        with self._lock.reading():
            return len(self._values)


def create_responder_app(responder: ChallengeResponder, admin_url: str) -> FastAPI:
    """Create the plain HTTP app that answers ACME HTTP-01 challenges."""
    app = FastAPI(title="le-responder challenge responder", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/")
    async def root():
        # Convenience for admins who accidentally drop the https
        return RedirectResponse(admin_url, status_code=301)

    @app.get("/{path:path}")
    async def challenge(path: str):
        value = responder.get_challenge_value("/" + path)
        if value is None:
            logger.info(f"404 /{path}")
            raise HTTPException(status_code=404, detail="Challenge not found")
        return PlainTextResponse(value)

    return app
