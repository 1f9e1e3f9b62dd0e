"""JSON file persistence for collections of pydantic models."""

import asyncio
import os
import tempfile
import threading
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

from lumi.utils.logging import get_logger

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


class JsonCollectionStore(Generic[M]):
    """A list of models stored as one JSON array, keyed by `id`.

    Writes go to a temporary file in the same directory and are moved into
    place with `os.replace`, so a crash never leaves a half-written file.
    Each save is serialized where it is called and numbered; a write that
    lands after a newer one is dropped, so the file always holds the latest
    snapshot even when writes finish out of order on worker threads.
    """

    def __init__(self, directory: Path, file_name: str, model: type[M]):
        self.path = Path(directory) / file_name
        self.model = model
        self._adapter = TypeAdapter(list[model])  # type: ignore[valid-type]
        self._lock = threading.Lock()
        self._issued = 0
        self._written = 0

    def load(self) -> list[M]:
        if not self.path.exists():
            return []
        try:
            return self._adapter.validate_json(self.path.read_bytes())
        except ValidationError as e:
            logger.error(f"Could not read {self.path}: {e}")
            raise

    def save(self, items: list[M]) -> None:
        self._write(*self._snapshot(items))

    async def save_async(self, items: list[M]) -> None:
        """Serialize now, then write the file on a worker thread."""
        await asyncio.to_thread(self._write, *self._snapshot(items))

    def _snapshot(self, items: list[M]) -> tuple[int, bytes, int]:
        with self._lock:
            self._issued += 1
            return self._issued, self._adapter.dump_json(items, indent=2), len(items)

    def _write(self, sequence: int, data: bytes, count: int) -> None:
        with self._lock:
            if sequence < self._written:
                logger.debug(f"Skipping stale write {sequence} to {self.path}")
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as tmp:
                    tmp.write(data)
                os.replace(tmp_name, self.path)
            except OSError:
                Path(tmp_name).unlink(missing_ok=True)
                raise
            self._written = sequence
        logger.debug(f"Saved {count} items to {self.path}")

    def get(self, item_id: str) -> M | None:
        return next((item for item in self.load() if item.id == item_id), None)  # type: ignore[attr-defined]

    def upsert(self, item: M) -> None:
        """Replace the item with the same id in place, or append it."""
        items = self.load()
        for index, existing in enumerate(items):
            if existing.id == item.id:  # type: ignore[attr-defined]
                items[index] = item
                break
        else:
            items.append(item)
        self.save(items)

    def delete(self, item_id: str) -> bool:
        items = self.load()
        remaining = [item for item in items if item.id != item_id]  # type: ignore[attr-defined]
        if len(remaining) == len(items):
            return False
        self.save(remaining)
        return True
