"""
Tenant Schemas
One row of the tenants table, as the sync engine sees it (read-only)
"""
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel

from backup_sync.core.errors import ConfigurationError


class Tenant(BaseModel):
    """
    A customer PBX to back up.

    The PBX database is never exposed publicly: the SSH host is `sftp_host`
    (falling back to `threecx_host`) and the database is reached at
    127.0.0.1:`threecx_port` on the far side of the tunnel.
    """
    id: str
    name: str
    slug: str
    is_active: bool = True
    sync_enabled: bool = True

    # Remote host / database (reached through the tunnel)
    threecx_host: Optional[str] = None
    threecx_port: Optional[int] = None
    threecx_database: Optional[str] = None
    threecx_user: Optional[str] = None
    threecx_password: Optional[str] = None

    # SSH / SFTP credentials
    sftp_host: Optional[str] = None
    sftp_port: Optional[int] = None
    sftp_user: Optional[str] = None
    sftp_password: Optional[str] = None

    # Custom remote paths per media category
    threecx_chat_files_path: Optional[str] = None
    threecx_recordings_path: Optional[str] = None
    threecx_voicemail_path: Optional[str] = None
    threecx_fax_path: Optional[str] = None
    threecx_meetings_path: Optional[str] = None

    # Backup toggles
    backup_chats: bool = True
    backup_chat_media: bool = True
    backup_recordings: bool = True
    backup_voicemails: bool = True
    backup_faxes: bool = True
    backup_cdr: bool = True
    backup_meetings: bool = True

    last_user_activity_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None

    class Config:
        extra = "ignore"

    # ------------------------------------------------------------------------
    # Connection details
    # ------------------------------------------------------------------------

    @property
    def ssh_host(self) -> Optional[str]:
        return self.sftp_host or self.threecx_host

    @property
    def ssh_port(self) -> int:
        return self.sftp_port or 22

    @property
    def db_port(self) -> int:
        return self.threecx_port or 5432

    @property
    def db_name(self) -> str:
        return self.threecx_database or "database_single"

    @property
    def db_user(self) -> str:
        return self.threecx_user or "phonesystem"

    def require_tunnel_credentials(self):
        """Raise ConfigurationError when the tunnel cannot possibly be opened."""
        missing = []
        if not self.ssh_host:
            missing.append("sftp_host/threecx_host")
        if not self.sftp_user:
            missing.append("sftp_user")
        if not self.sftp_password:
            missing.append("sftp_password")
        if missing:
            raise ConfigurationError(
                f"Tenant {self.slug} missing tunnel credentials: {', '.join(missing)}",
                {"tenant_id": self.id, "missing": missing},
            )

    def require_database_credentials(self):
        if not self.threecx_password:
            raise ConfigurationError(
                f"Tenant {self.slug} missing database password",
                {"tenant_id": self.id},
            )

    def custom_paths(self) -> Dict[str, Optional[str]]:
        return {
            "chat_media": self.threecx_chat_files_path,
            "recordings": self.threecx_recordings_path,
            "voicemails": self.threecx_voicemail_path,
            "faxes": self.threecx_fax_path,
            "meetings": self.threecx_meetings_path,
        }

    def enabled_entity_types(self) -> List[str]:
        """Entity types this tenant wants backed up, in run order."""
        toggles = [
            ("extensions", True),
            ("messages", self.backup_chats),
            ("cdr", self.backup_cdr),
            ("chat_media", self.backup_chat_media),
            ("voicemails", self.backup_voicemails),
            ("recordings", self.backup_recordings),
            ("faxes", self.backup_faxes),
            ("meetings", self.backup_meetings),
        ]
        return [name for name, enabled in toggles if enabled]
