"""
Asset store for generated illustrations.

Writes image bytes to ``<root>/images/<filename>.<ext>`` and hands back the
public URL the file is served under.
"""

import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from menu_image_guard.core.errors import StorageError
from menu_image_guard.core.normalizer import title_to_filename

logger = logging.getLogger(__name__)

IMAGES_DIR = "images"


def extension_for(mime_type: str) -> str:
    """File extension for a generated image: jpg for JPEG, png otherwise."""
    lowered = (mime_type or "").lower()
    if "jpeg" in lowered or "jpg" in lowered:
        return "jpg"
    return "png"


def asset_path(key: str, mime_type: str) -> str:
    """Relative storage path for the image of a normalized title."""
    return f"{IMAGES_DIR}/{title_to_filename(key)}.{extension_for(mime_type)}"


@contextmanager
def _staging_file(directory: Path) -> Iterator[Path]:
    """Yield a temp file in ``directory`` that is always removed afterwards."""
    fd, name = tempfile.mkstemp(dir=str(directory), prefix=".staging-", suffix=".part")
    os.close(fd)
    staging = Path(name)
    try:
        yield staging
    finally:
        try:
            staging.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to clean up staging file %s: %s", staging, e)


class LocalAssetStore:
    """Asset store on the local filesystem behind a static URL prefix.

    Writes go through a staging file that is renamed into place, so
    readers never see a partially written image. Concurrent writers of
    the same key simply overwrite each other.
    """

    def __init__(self, root: str, public_base_url: str):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def store(self, key: str, payload: bytes, mime_type: str) -> str:
        """Persist ``payload`` for ``key`` and return its public URL.

        Args:
            key: Normalized menu title
            payload: Raw image bytes
            mime_type: MIME type reported by the generation service

        Returns:
            Publicly resolvable URL of the stored image

        Raises:
            StorageError: If the image could not be written
        """
        relative = asset_path(key, mime_type)
        target = self.root / relative
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with _staging_file(target.parent) as staging:
                staging.write_bytes(payload)
                os.replace(staging, target)
        except OSError as e:
            logger.error("Error uploading image to storage: %s", e)
            raise StorageError(f"Failed to store image at {relative}: {e}") from e

        url = f"{self.public_base_url}/{relative}"
        logger.info("Upload complete: %s", url)
        return url
