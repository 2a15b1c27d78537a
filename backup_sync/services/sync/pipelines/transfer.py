"""
Binary Transfer
Moves one remote file into blob storage using a size-based strategy:

- above the hard ceiling: FileTooLargeError (counted as too_large)
- above the buffer threshold: streamed through a temp file, uploaded as-is
- otherwise: buffered, transcoded, uploaded (original kept if transcoding fails)
"""
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from backup_sync.core.errors import FileTooLargeError, TranscodeError
from backup_sync.services.source.files import RemoteFile
from backup_sync.services.sync.storage import generate_storage_path, resolve_file_info

logger = logging.getLogger(__name__)


@dataclass
class TransferResult:
    storage_path: str
    size: int
    original_size: int
    mime_type: str
    file_type: str
    compressed: bool
    streamed: bool = False


def storage_name(remote: RemoteFile) -> str:
    """Relative folders folded into the object name so 101/msg0001.wav and 102/msg0001.wav stay apart."""
    parts = [p for p in remote.relative_path.split("/") if p and p not in (".", "..")]
    if not parts or remote.relative_path.startswith(".."):
        return remote.filename
    return "_".join(parts)


async def transfer_file(
    ctx,
    remote: RemoteFile,
    category: str,
    when: Optional[datetime] = None,
) -> TransferResult:
    """Copy `remote` to {tenant}/{category}/{YYYY}/{MM}/... and return what was stored."""
    if remote.size > ctx.max_file_size_bytes:
        raise FileTooLargeError(
            f"{remote.path} is {remote.size} bytes (limit {ctx.max_file_size_bytes})",
            {"path": remote.path, "size": remote.size},
        )

    files = await ctx.remote_files()
    stamp = when or remote.modified_at

    if remote.size > ctx.buffer_threshold_bytes:
        return await _stream(ctx, files, remote, category, stamp)

    data = await files.download(remote.path)
    info = resolve_file_info(remote.filename, data[:12])

    try:
        compressed = await ctx.transcoder.compress(data, info)
    except TranscodeError as e:
        logger.warning(f"⚠️  Compression failed for {remote.filename}, uploading original: {e}")
        compressed = ctx.transcoder.passthrough(data, info)

    storage_path = generate_storage_path(ctx.tenant_id, category, storage_name(remote), stamp, compressed.extension)
    await ctx.blobs.put_bytes(storage_path, compressed.data, compressed.mime_type)
    return TransferResult(
        storage_path=storage_path,
        size=compressed.size,
        original_size=len(data),
        mime_type=compressed.mime_type,
        file_type=info.file_type,
        compressed=compressed.compressed,
    )


async def _stream(ctx, files, remote: RemoteFile, category: str, stamp: datetime) -> TransferResult:
    info = resolve_file_info(remote.filename)
    storage_path = generate_storage_path(ctx.tenant_id, category, storage_name(remote), stamp, info.extension)
    logger.info(f"📦 Streaming large file {remote.filename} ({remote.size} bytes)")

    handle = tempfile.NamedTemporaryFile(prefix="backup-", delete=False)
    try:
        with handle:
            written = await files.stream_to(remote.path, handle)
        size = await ctx.blobs.put_file(storage_path, handle.name, info.mime_type)
    finally:
        os.unlink(handle.name)

    return TransferResult(
        storage_path=storage_path,
        size=size or written,
        original_size=written,
        mime_type=info.mime_type,
        file_type=info.file_type,
        compressed=False,
        streamed=True,
    )
