"""
Blob Storage
Supabase Storage wrapper plus the file helpers every media pipeline uses.

Storage layout: {tenant_id}/{category}/{YYYY}/{MM}/{sanitized name}.{ext}
The year/month come from the record's own timestamp, so re-running a
sync always targets the same path.
"""
import logging
import posixpath
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import httpx
from storage3.utils import StorageException

from backup_sync.core.errors import DestinationWriteError

logger = logging.getLogger(__name__)


# ============================================================================
# FILE TYPE HELPERS
# ============================================================================

IMAGE_EXTS = {"jpg", "jpeg", "png", "gif", "webp", "bmp", "heic"}
VIDEO_EXTS = {"mp4", "mov", "avi", "webm", "mkv", "m4v"}
AUDIO_EXTS = {"wav", "mp3", "ogg", "m4a", "wma", "aac"}

MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "bmp": "image/bmp",
    "heic": "image/heic",
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "avi": "video/x-msvideo",
    "webm": "video/webm",
    "mkv": "video/x-matroska",
    "m4v": "video/x-m4v",
    "wav": "audio/wav",
    "mp3": "audio/mpeg",
    "ogg": "audio/ogg",
    "m4a": "audio/mp4",
    "wma": "audio/x-ms-wma",
    "aac": "audio/aac",
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "tiff": "image/tiff",
    "tif": "image/tiff",
}


@dataclass
class FileTypeInfo:
    file_type: str  # image / video / audio / document
    mime_type: str
    extension: str


def sanitize_filename(filename: str) -> str:
    """Make a filename safe for Supabase Storage keys."""
    cleaned = filename.replace("[", "(").replace("]", ")")
    cleaned = re.sub(r"[#%&{}\\<>*?/$!'\":@+`|=\s]", "_", cleaned)
    cleaned = re.sub(r"_+", "_", cleaned)
    return cleaned.strip("_") or "file"


def get_file_info(filename: str) -> FileTypeInfo:
    """File type from the extension."""
    ext = posixpath.splitext(filename)[1].lower().lstrip(".")
    if ext in IMAGE_EXTS:
        file_type = "image"
    elif ext in VIDEO_EXTS:
        file_type = "video"
    elif ext in AUDIO_EXTS:
        file_type = "audio"
    else:
        file_type = "document"
    return FileTypeInfo(file_type, MIME_TYPES.get(ext, "application/octet-stream"), ext or "bin")


def detect_file_type(data: bytes) -> FileTypeInfo:
    """File type from magic bytes."""
    header = data[:12]

    if header[:3] == b"\xff\xd8\xff":
        return FileTypeInfo("image", "image/jpeg", "jpg")
    if header[:4] == b"\x89PNG":
        return FileTypeInfo("image", "image/png", "png")
    if header[:4] == b"GIF8":
        return FileTypeInfo("image", "image/gif", "gif")
    if header[:4] == b"RIFF" and header[8:12] == b"WEBP":
        return FileTypeInfo("image", "image/webp", "webp")
    if header[4:8] == b"ftyp":
        return FileTypeInfo("video", "video/mp4", "mp4")
    if header[:4] == b"RIFF" and header[8:12] == b"WAVE":
        return FileTypeInfo("audio", "audio/wav", "wav")
    if header[:3] == b"ID3" or (len(header) > 1 and header[0] == 0xFF and (header[1] & 0xE0) == 0xE0):
        return FileTypeInfo("audio", "audio/mpeg", "mp3")
    if header[:4] == b"%PDF":
        return FileTypeInfo("document", "application/pdf", "pdf")
    if header[:4] in (b"II*\x00", b"MM\x00*"):
        return FileTypeInfo("document", "image/tiff", "tiff")

    return FileTypeInfo("document", "application/octet-stream", "bin")


def resolve_file_info(filename: str, head: Optional[bytes] = None) -> FileTypeInfo:
    """Extension first; magic bytes when the name tells us nothing."""
    info = get_file_info(filename)
    if info.mime_type == "application/octet-stream" and head:
        detected = detect_file_type(head)
        if detected.mime_type != "application/octet-stream":
            return detected
    return info


def generate_storage_path(
    tenant_id: str,
    category: str,
    filename: str,
    when: datetime,
    extension: Optional[str] = None,
) -> str:
    base, ext = posixpath.splitext(posixpath.basename(filename))
    ext = (extension or ext.lstrip(".") or "bin").lower()
    return f"{tenant_id}/{category}/{when.year:04d}/{when.month:02d}/{sanitize_filename(base)}.{ext}"


# ============================================================================
# BLOB STORE
# ============================================================================

class BlobStore:
    """put / exists / head over one Supabase Storage bucket."""

    def __init__(self, client, bucket: str):
        self._client = client
        self.bucket = bucket

    def _bucket(self):
        return self._client.storage.from_(self.bucket)

    async def head(self, path: str) -> Optional[Dict[str, Any]]:
        """Object metadata, or None when it does not exist."""
        folder, name = posixpath.split(path)
        try:
            entries = await self._bucket().list(folder, {"search": name})
        except (StorageException, httpx.HTTPError) as e:
            raise DestinationWriteError(f"Cannot stat {path}: {e}", {"path": path})
        for entry in entries or []:
            if entry.get("name") == name:
                metadata = entry.get("metadata") or {}
                return {"path": path, "size": metadata.get("size"), "mime_type": metadata.get("mimetype")}
        return None

    async def exists(self, path: str) -> bool:
        return await self.head(path) is not None

    async def put_bytes(self, path: str, data: bytes, content_type: str) -> int:
        try:
            await self._bucket().upload(
                path,
                data,
                file_options={"content-type": content_type, "upsert": "true"},
            )
        except (StorageException, httpx.HTTPError) as e:
            raise DestinationWriteError(f"Upload to {path} failed: {e}", {"path": path})
        logger.debug(f"Uploaded {len(data)} bytes to {path}")
        return len(data)

    async def put_file(self, path: str, local_path: str, content_type: str) -> int:
        """Upload from a local file without loading it into memory ourselves."""
        try:
            with open(local_path, "rb") as handle:
                await self._bucket().upload(
                    path,
                    handle,
                    file_options={"content-type": content_type, "upsert": "true"},
                )
                size = handle.seek(0, 2)
        except (StorageException, httpx.HTTPError) as e:
            raise DestinationWriteError(f"Upload to {path} failed: {e}", {"path": path})
        logger.debug(f"Uploaded {size} bytes to {path} from {local_path}")
        return size
