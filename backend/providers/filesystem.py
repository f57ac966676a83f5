"""Filesystem save backend."""

import hashlib
import logging
from pathlib import Path

import aiofiles

from pipeline.errors import SaveError
from pipeline.payloads import ImageBlob, SaveResult

from .base import BaseSaveProvider
from .schema import SaveProviderSchema

logger = logging.getLogger(__name__)


class FilesystemSaveProvider(BaseSaveProvider):
    """
    Writes images to local disk.

    Relative destinations resolve against `base_dir`. A destination ending
    in "/" is treated as a directory and gets a content-addressed file name.
    The reported location is the destination as given.
    """

    name = "fs"
    aliases = ("file", "filesystem")
    schema = SaveProviderSchema(
        name="fs",
        description="Save to the local filesystem",
        protocols=["fs://", "file://", "./", "/", "../"],
    )

    def __init__(self, base_dir: Path | str = "."):
        self.base_dir = Path(base_dir)

    def resolve(self, destination: str, image: ImageBlob) -> tuple[Path, str]:
        """Return (absolute target path, reported location)."""
        location = destination
        if destination.endswith("/"):
            digest = hashlib.sha256(image.data).hexdigest()[:16]
            location = f"{destination}{digest}.{image.extension}"
        path = Path(location).expanduser()
        if not path.is_absolute():
            path = self.base_dir / path
        return path, location

    async def save(self, image: ImageBlob, destination: str) -> SaveResult:
        if not destination:
            raise SaveError("Empty destination", provider=self.name, retryable=False)

        path, location = self.resolve(destination, image)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, "wb") as f:
                await f.write(image.data)
        except OSError as e:
            raise SaveError(
                f"Failed to write {path}: {e}",
                provider=self.name,
                retryable=False,
                cause=e,
            )

        logger.debug(f"Saved {image.size} bytes to {path}")
        return SaveResult(
            provider=self.name,
            location=location,
            size=image.size,
            mime=image.mime,
            metadata={"path": str(path)},
        )
