# storage/session_store.py
"""Durable single-record storage for the generation session."""

from __future__ import annotations

import asyncio
import os
import tempfile

import structlog
from config import settings
from pydantic import ValidationError

from models import GenerationSession

logger = structlog.get_logger(__name__)


class SessionStore:
    """Keeps one JSON snapshot of the session under a fixed key.

    Writes go to a temporary file in the same directory and are moved into
    place with ``os.replace`` so a reader never sees a partial snapshot.
    """

    def __init__(
        self,
        directory: str = settings.SESSION_DIR,
        key: str = settings.SESSION_KEY,
    ) -> None:
        self.directory = directory
        self.key = key
        self.path = os.path.join(directory, f"{key}.json")
        self._lock = asyncio.Lock()

    def exists(self) -> bool:
        return os.path.exists(self.path)

    async def save(self, session: GenerationSession) -> None:
        payload = session.model_dump_json(indent=2)
        loop = asyncio.get_running_loop()
        async with self._lock:
            await loop.run_in_executor(None, self._write_sync, payload)
        logger.debug(
            "Session checkpoint written.",
            phase=session.current_phase.value,
            path=self.path,
        )

    def _write_sync(self, payload: str) -> None:
        os.makedirs(self.directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self.directory, prefix=f".{self.key}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    async def load(self) -> GenerationSession | None:
        """Return the stored session, or ``None`` when absent or unreadable."""
        loop = asyncio.get_running_loop()
        async with self._lock:
            raw = await loop.run_in_executor(None, self._read_sync)
        if raw is None:
            return None
        try:
            return GenerationSession.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning(
                "Stored session is unreadable; starting fresh.",
                path=self.path,
                error_count=exc.error_count(),
            )
            return None

    def _read_sync(self) -> str | None:
        try:
            with open(self.path, encoding="utf-8") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Could not read stored session.", path=self.path, error=str(exc))
            return None

    async def clear(self) -> None:
        loop = asyncio.get_running_loop()
        async with self._lock:
            await loop.run_in_executor(None, self._clear_sync)
        logger.info("Session store cleared.", path=self.path)

    def _clear_sync(self) -> None:
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
