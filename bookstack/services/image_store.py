"""
Cover image storage

ImageStore.save(filename, content) -> reference stored on the record.
LocalImageStore writes under <root>/images with a unique prefix so two
batches uploading "1.jpg" never collide.
"""
import asyncio
import logging
import os
import re
from abc import ABC, abstractmethod

from bookstack.core.exceptions import PersistenceError
from bookstack.core.utils import new_id

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def safe_filename(filename: str) -> str:
    name = _UNSAFE_CHARS.sub("_", os.path.basename(filename or "")).lstrip(".")
    return name or "image"


class ImageStore(ABC):
    @abstractmethod
    async def save(self, filename: str, content: bytes) -> str:
        ...

    @abstractmethod
    async def delete(self, reference: str) -> None:
        """Remove a stored image; a missing one is not an error."""


class LocalImageStore(ImageStore):
    def __init__(self, root: str):
        self.directory = os.path.join(root, "images")

    def _write(self, path: str, content: bytes) -> None:
        os.makedirs(self.directory, exist_ok=True)
        with open(path, "wb") as fh:
            fh.write(content)

    async def save(self, filename: str, content: bytes) -> str:
        stored = f"{new_id()[:8]}-{safe_filename(filename)}"
        path = os.path.join(self.directory, stored)
        try:
            await asyncio.to_thread(self._write, path, content)
        except OSError as e:
            raise PersistenceError(f"Could not store image {filename}", details={"error": str(e)}) from e
        logger.debug(f"[ImageStore] Saved {filename} as {path}")
        return path

    async def delete(self, reference: str) -> None:
        try:
            await asyncio.to_thread(os.remove, reference)
        except FileNotFoundError:
            return
        except OSError as e:
            raise PersistenceError(f"Could not delete image {reference}", details={"error": str(e)}) from e
        logger.debug(f"[ImageStore] Deleted {reference}")
