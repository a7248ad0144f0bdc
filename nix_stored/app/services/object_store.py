import os
import re
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Union

import aiofiles
import aiofiles.os

from nix_stored.app.errors import InvalidObjectKey, ObjectNotFound, StoreIOError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
NAR_DIR = "nar"

_COMPONENT_PATTERN = re.compile(r"^[a-zA-Z0-9._+-]+$")


def validate_component(component: str, value: str) -> str:
    """Reject key parts that would not map to a single file name."""
    if not value or value in (".", "..") or not _COMPONENT_PATTERN.match(value):
        raise InvalidObjectKey(component, value)
    return value


@dataclass(frozen=True)
class NarKey:
    file_hash: str
    compression: str

    def __post_init__(self):
        validate_component("file hash", self.file_hash)
        validate_component("compression", self.compression)

    def relative_path(self) -> Path:
        return Path(NAR_DIR) / f"{self.file_hash}.nar.{self.compression}"


@dataclass(frozen=True)
class NarInfoKey:
    store_path_hash: str

    def __post_init__(self):
        validate_component("store path hash", self.store_path_hash)

    def relative_path(self) -> Path:
        return Path(f"{self.store_path_hash}.narinfo")


ObjectKey = Union[NarKey, NarInfoKey]


class ObjectReader:
    """An open stored object. Must be closed once streaming ends."""

    def __init__(self, path: Path, handle, length: int):
        self.path = path
        self.length = length
        self._handle = handle
        self._closed = False

    async def chunks(self, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        while chunk := await self._handle.read(chunk_size):
            yield chunk

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._handle.close()


class ObjectStore:
    """Maps object keys to files below a root directory.

    Writes go straight to the final path and are not serialized per key: an
    interrupted upload leaves a partial file, and concurrent writers to the
    same key race at the filesystem level.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    async def initialize(self):
        """Create the store directories if they don't exist."""
        nar_dir = self.root / NAR_DIR
        nar_dir.mkdir(mode=0o770, parents=True, exist_ok=True)
        logger.info(f"Object store ready at {self.root}")

    def path_for(self, key: ObjectKey) -> Path:
        return self.root / key.relative_path()

    async def exists(self, key: ObjectKey) -> bool:
        path = self.path_for(key)
        try:
            await aiofiles.os.stat(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error(f"Couldn't stat {path}: {e}")
            raise StoreIOError(path, e) from e
        return True

    async def open_read(self, key: ObjectKey) -> ObjectReader:
        """Open an object for streaming.

        Raises:
            ObjectNotFound: nothing is stored under the key
            StoreIOError: the file exists but could not be opened or stat'ed
        """
        path = self.path_for(key)
        try:
            handle = await aiofiles.open(path, "rb")
        except FileNotFoundError as e:
            raise ObjectNotFound(path) from e
        except OSError as e:
            logger.error(f"Couldn't open {path}: {e}")
            raise StoreIOError(path, e) from e

        try:
            length = os.fstat(handle.fileno()).st_size
        except OSError as e:
            await handle.close()
            logger.error(f"Couldn't get file info for {path}: {e}")
            raise StoreIOError(path, e) from e
        return ObjectReader(path, handle, length)

    async def write(self, key: ObjectKey, chunks: AsyncIterable[bytes]) -> int:
        """Create or truncate the object file and copy the body into it.

        The file is only opened once the body has started arriving, so a body
        that fails before its first chunk leaves an existing object intact.
        Returns the number of bytes written.
        """
        path = self.path_for(key)
        body = chunks.__aiter__()
        first = await anext(body, b"")
        written = len(first)
        try:
            async with aiofiles.open(path, "wb") as f:
                await f.write(first)
                async for chunk in body:
                    await f.write(chunk)
                    written += len(chunk)
        except OSError as e:
            logger.error(f"Couldn't write {path}: {e}")
            raise StoreIOError(path, e) from e
        logger.debug(f"Stored {written} bytes at {path}")
        return written
