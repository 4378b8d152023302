"""
Media Store

Saves downloaded media to disk for forwarding, converts WhatsApp stickers
to PNG and cleans up old files.
"""

import logging
import mimetypes
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from PIL import Image

from .messages import MediaPayload
from .security import is_within_directory

logger = logging.getLogger(__name__)

MEDIA_SUBDIRS = ("incoming", "outgoing", "temp")

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]")


def safe_filename(name: Optional[str]) -> str:
    cleaned = _UNSAFE_FILENAME.sub("_", name or "unnamed").lstrip(".")
    return cleaned[:200] or "unnamed"


def media_type_for(mimetype: Optional[str]) -> str:
    """Telegram media type for a MIME type"""
    if not mimetype:
        return "document"
    if mimetype.startswith("image/"):
        if mimetype == "image/webp":
            return "sticker"
        if mimetype == "image/gif":
            return "animation"
        return "photo"
    if mimetype.startswith("video/"):
        return "video"
    if mimetype.startswith("audio/"):
        if mimetype.startswith("audio/ogg") and "opus" in mimetype:
            return "voice"
        return "audio"
    return "document"


def extension_for(mimetype: Optional[str]) -> str:
    base = (mimetype or "").split(";", 1)[0].strip()
    if base == "audio/ogg":
        return "ogg"
    ext = mimetypes.guess_extension(base) if base else None
    return ext.lstrip(".") if ext else "bin"


@dataclass
class SavedMedia:
    file_path: str
    filename: str
    mimetype: str
    size: int

    @property
    def size_mb(self) -> float:
        return self.size / (1024 * 1024)


class MediaStore:
    """Media files under one root directory"""

    def __init__(self, media_dir: str = "media", max_media_size_mb: int = 50):
        self.root = Path(media_dir)
        self.max_media_size_mb = max_media_size_mb
        self.ensure_directories()

    def ensure_directories(self):
        for sub in MEDIA_SUBDIRS:
            (self.root / sub).mkdir(parents=True, exist_ok=True)

    def save(self, media: MediaPayload, message_id: str,
             direction: str = "incoming") -> Optional[SavedMedia]:
        """Write media bytes to disk. None if too large or the write fails."""
        size = len(media.data)
        size_mb = size / (1024 * 1024)
        if size_mb > self.max_media_size_mb:
            logger.warning(f"⚠️  Media too large: {size_mb:.2f}MB")
            return None

        filename = safe_filename(f"{message_id}_{int(time.time() * 1000)}.{extension_for(media.mimetype)}")
        path = self.root / direction / filename
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(media.data)
        except OSError as e:
            logger.error(f"❌ Error saving media: {e}")
            return None

        logger.info(f"Media saved: {filename} ({size_mb:.2f}MB)")
        return SavedMedia(file_path=str(path), filename=filename,
                          mimetype=media.mimetype, size=size)

    def convert_sticker_to_png(self, sticker_path: str) -> str:
        """Convert a webp sticker to PNG; returns the original path on failure"""
        output = Path(sticker_path).with_suffix(".png")
        try:
            with Image.open(sticker_path) as img:
                img.save(output, format="PNG")
        except (OSError, ValueError) as e:
            logger.error(f"❌ Error converting sticker: {e}")
            return sticker_path
        return str(output)

    def cleanup_file(self, file_path: Optional[str]):
        if not file_path:
            return
        if not is_within_directory(file_path, self.root):
            logger.warning(f"⚠️  Refusing to delete file outside media dir: {file_path}")
            return
        try:
            Path(file_path).unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"❌ Error cleaning up file: {e}")

    def cleanup_old_files(self, max_age_days: int = 7) -> int:
        """Delete files older than max_age_days. Returns how many were removed."""
        cutoff = time.time() - max_age_days * 86400
        cleaned = 0
        for sub in MEDIA_SUBDIRS:
            directory = self.root / sub
            if not directory.exists():
                continue
            for path in directory.iterdir():
                try:
                    if path.is_file() and path.stat().st_mtime < cutoff:
                        path.unlink()
                        cleaned += 1
                except OSError as e:
                    logger.warning(f"⚠️  Could not remove {path.name}: {e}")
        if cleaned:
            logger.info(f"Cleaned up {cleaned} old media files")
        return cleaned
