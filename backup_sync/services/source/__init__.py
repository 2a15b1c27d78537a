"""
PBX Source Access
Database pools, paged queries and SFTP file access, all through the tenant tunnel
"""
from backup_sync.services.source.files import RemoteFile, RemoteFiles
from backup_sync.services.source.pools import SourcePoolRegistry
from backup_sync.services.source.queries import SourceDatabase, build_since_clause

__all__ = [
    "RemoteFile",
    "RemoteFiles",
    "SourcePoolRegistry",
    "SourceDatabase",
    "build_since_clause",
]
