"""
SSH Tunnels
Per-tenant SSH sessions with a local forwarding endpoint
"""
from backup_sync.services.tunnel.manager import Tunnel, TunnelManager
from backup_sync.services.tunnel.splice import pipe_streams

__all__ = [
    "Tunnel",
    "TunnelManager",
    "pipe_streams",
]
