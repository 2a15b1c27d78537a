"""
Remote Files (SFTP)
Listing and download of PBX media over the tenant's SSH session.
"""
import logging
import posixpath
import stat
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import IO, Iterable, List, Optional, Tuple

import asyncssh

from backup_sync.core.errors import ForwardingError, RemoteFileError

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 256 * 1024


@dataclass
class RemoteFile:
    path: str
    relative_path: str
    filename: str
    size: int
    modified_at: datetime

    @property
    def extension(self) -> str:
        return posixpath.splitext(self.filename)[1].lower()


def _is_session_error(error: Exception) -> bool:
    return isinstance(error, (asyncssh.ConnectionLost, asyncssh.DisconnectError, ConnectionError))


class RemoteFiles:
    """Thin wrapper over an asyncssh SFTP client."""

    def __init__(self, sftp, tenant_slug: str = ""):
        self._sftp = sftp
        self.tenant_slug = tenant_slug

    @classmethod
    async def open(cls, tunnel, tenant_slug: str = "") -> "RemoteFiles":
        try:
            sftp = await tunnel.open_sftp()
        except (asyncssh.Error, OSError) as e:
            raise ForwardingError(f"Cannot start SFTP for {tenant_slug}: {e}")
        return cls(sftp, tenant_slug)

    async def list_recursive(
        self,
        root: str,
        extensions: Optional[Iterable[str]] = None,
    ) -> List[RemoteFile]:
        """
        Every file under `root`, ordered by (modified time, path).

        A missing root yields an empty list.
        """
        wanted = {e.lower() for e in extensions} if extensions else None
        files: List[RemoteFile] = []
        await self._walk(root, root, wanted, files)
        files.sort(key=lambda f: (f.modified_at, f.path))
        return files

    async def _walk(self, root: str, directory: str, wanted, files: List[RemoteFile]):
        try:
            entries = await self._sftp.readdir(directory)
        except asyncssh.SFTPNoSuchFile:
            logger.debug(f"Remote directory missing: {directory}")
            return
        except asyncssh.SFTPError as e:
            logger.warning(f"⚠️  Cannot list {directory} on {self.tenant_slug}: {e}")
            return
        except (asyncssh.Error, OSError) as e:
            if _is_session_error(e):
                raise ForwardingError(f"SSH session lost while listing {directory}: {e}")
            raise

        for entry in entries:
            if entry.filename in (".", ".."):
                continue
            full_path = posixpath.join(directory, entry.filename)
            mode = entry.attrs.permissions or 0
            if stat.S_ISDIR(mode):
                await self._walk(root, full_path, wanted, files)
                continue

            if wanted is not None and posixpath.splitext(entry.filename)[1].lower() not in wanted:
                continue

            mtime = entry.attrs.mtime or 0
            files.append(RemoteFile(
                path=full_path,
                relative_path=posixpath.relpath(full_path, root),
                filename=entry.filename,
                size=entry.attrs.size or 0,
                modified_at=datetime.fromtimestamp(mtime, tz=timezone.utc),
            ))

    async def discover(
        self,
        candidates: List[str],
        extensions: Optional[Iterable[str]] = None,
    ) -> Tuple[Optional[str], List[RemoteFile]]:
        """First candidate directory that contains files wins."""
        for path in candidates:
            files = await self.list_recursive(path, extensions)
            if files:
                logger.info(f"📁 Found {len(files)} files in {path} ({self.tenant_slug})")
                return path, files
        return None, []

    async def stat(self, path: str, root: str = "/") -> RemoteFile:
        try:
            attrs = await self._sftp.stat(path)
        except asyncssh.SFTPError as e:
            raise RemoteFileError(f"Cannot stat {path}: {e}", {"path": path})
        except (asyncssh.Error, OSError) as e:
            if _is_session_error(e):
                raise ForwardingError(f"SSH session lost while reading {path}: {e}")
            raise RemoteFileError(f"Cannot stat {path}: {e}", {"path": path})
        return RemoteFile(
            path=path,
            relative_path=posixpath.relpath(path, root),
            filename=posixpath.basename(path),
            size=attrs.size or 0,
            modified_at=datetime.fromtimestamp(attrs.mtime or 0, tz=timezone.utc),
        )

    async def download(self, path: str) -> bytes:
        try:
            async with self._sftp.open(path, "rb") as remote:
                return await remote.read()
        except asyncssh.SFTPError as e:
            raise RemoteFileError(f"Cannot read {path}: {e}", {"path": path})
        except (asyncssh.Error, OSError) as e:
            if _is_session_error(e):
                raise ForwardingError(f"SSH session lost while reading {path}: {e}")
            raise RemoteFileError(f"Cannot read {path}: {e}", {"path": path})

    async def stream_to(self, path: str, target: IO[bytes], chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> int:
        """Copy a remote file into a local file object chunk by chunk."""
        written = 0
        try:
            async with self._sftp.open(path, "rb") as remote:
                while True:
                    chunk = await remote.read(chunk_size)
                    if not chunk:
                        break
                    target.write(chunk)
                    written += len(chunk)
        except asyncssh.SFTPError as e:
            raise RemoteFileError(f"Cannot stream {path}: {e}", {"path": path})
        except (asyncssh.Error, OSError) as e:
            if _is_session_error(e):
                raise ForwardingError(f"SSH session lost while streaming {path}: {e}")
            raise RemoteFileError(f"Cannot stream {path}: {e}", {"path": path})
        return written

    def close(self):
        try:
            self._sftp.exit()
        except (asyncssh.Error, OSError) as e:
            logger.debug(f"SFTP close failed for {self.tenant_slug}: {e}")
