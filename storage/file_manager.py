# storage/file_manager.py
"""Utility class for asynchronous book output operations."""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any

from config import settings

from models import BookArtifact


class BookFileManager:
    """Handle writing the compiled book and its metadata."""

    def __init__(
        self,
        output_dir: str = settings.BASE_OUTPUT_DIR,
        book_file: str = settings.BOOK_FILE,
        metadata_file: str = settings.BOOK_METADATA_FILE,
    ) -> None:
        self.output_dir = output_dir
        self.book_path = os.path.join(output_dir, book_file)
        self.metadata_path = os.path.join(output_dir, metadata_file)

    async def save_book(self, book: BookArtifact) -> tuple[str, str]:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None, self._save_book_sync, book.text, book.metadata
        )
        return self.book_path, self.metadata_path

    def _save_book_sync(self, text: str, metadata: dict[str, Any]) -> None:
        os.makedirs(self.output_dir, exist_ok=True)
        with open(self.book_path, "w", encoding="utf-8") as f:
            f.write(text)
        with open(self.metadata_path, "w", encoding="utf-8") as f:
            json.dump(metadata, f, indent=2, ensure_ascii=False, default=str)

