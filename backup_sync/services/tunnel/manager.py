"""
SSH Tunnel Manager
One SSH session per tenant, exposed as a local 127.0.0.1 listener.

ACQUISITION (each stage has its own timeout and error type):
1. Cached live tunnel -> returned as-is
2. DNS resolution          -> DnsResolutionError
3. TCP preflight           -> TcpUnreachableError (no handshake attempted)
4. SSH handshake (retried) -> SshHandshakeError
5. Local listener bind     -> ForwardingError

Every inbound local connection gets its own forwarded channel to the
tenant's database port; the same SSH session also carries SFTP.

When a session closes or errors, the tunnel is dropped and every
subscriber is told, so pools built on it can be discarded.
"""
import asyncio
import itertools
import logging
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import asyncssh

from backup_sync.core.circuit_breakers import with_fixed_retry
from backup_sync.core.errors import (
    DnsResolutionError,
    ForwardingError,
    SshHandshakeError,
    TcpUnreachableError,
)
from backup_sync.models.schemas.tenant import Tenant
from backup_sync.services.tunnel.splice import pipe_streams

logger = logging.getLogger(__name__)

TunnelClosedCallback = Callable[[str], None]

_session_ids = itertools.count(1)


# ============================================================================
# TUNNEL
# ============================================================================

@dataclass
class Tunnel:
    tenant_id: str
    local_port: int
    connection: Any
    server: Any
    session_id: int
    target_host: str = "127.0.0.1"
    target_port: int = 5432
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    closed: bool = False

    @property
    def is_alive(self) -> bool:
        return not self.closed

    async def open_sftp(self):
        """Start an SFTP client on the tunnel's SSH session."""
        return await self.connection.start_sftp_client()

    async def close(self):
        self.closed = True
        try:
            self.server.close()
        except OSError as e:
            logger.debug(f"Listener close failed for {self.tenant_id}: {e}")
        self.connection.close()
        try:
            await asyncio.wait_for(self.connection.wait_closed(), timeout=5)
        except (asyncio.TimeoutError, asyncssh.Error, OSError) as e:
            logger.debug(f"SSH session close incomplete for {self.tenant_id}: {e}")


class _TunnelClient(asyncssh.SSHClient):
    """Reports session loss back to the manager."""

    def __init__(self, on_lost: Callable[[Optional[Exception]], None]):
        self._on_lost = on_lost

    def connection_lost(self, exc: Optional[Exception]):
        self._on_lost(exc)


# ============================================================================
# DEFAULT NETWORK STAGES
# ============================================================================

async def _default_resolve(host: str, port: int) -> str:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    if not infos:
        raise socket.gaierror(f"No addresses for {host}")
    return infos[0][4][0]


async def _default_tcp_probe(host: str, port: int):
    _, writer = await asyncio.open_connection(host, port)
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError):
        pass


class TunnelManager:
    """
    Registry of live tunnels keyed by tenant id.

    The network stages are injectable so tests can drive each failure mode
    without a real SSH server.
    """

    def __init__(
        self,
        dns_timeout: float = 10.0,
        tcp_timeout: float = 15.0,
        handshake_timeout: float = 60.0,
        handshake_attempts: int = 3,
        retry_delay: float = 5.0,
        keepalive_interval: float = 10.0,
        resolver: Callable[[str, int], Awaitable[str]] = _default_resolve,
        tcp_probe: Callable[[str, int], Awaitable[Any]] = _default_tcp_probe,
        ssh_connect: Callable[..., Awaitable[Any]] = asyncssh.connect,
    ):
        self.dns_timeout = dns_timeout
        self.tcp_timeout = tcp_timeout
        self.handshake_timeout = handshake_timeout
        self.handshake_attempts = handshake_attempts
        self.retry_delay = retry_delay
        self.keepalive_interval = keepalive_interval
        self._resolver = resolver
        self._tcp_probe = tcp_probe
        self._ssh_connect = ssh_connect

        self._tunnels: Dict[str, Tunnel] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._subscribers: List[TunnelClosedCallback] = []

    # ------------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------------

    def subscribe(self, callback: TunnelClosedCallback) -> Callable[[], None]:
        """Register for tunnel-closed events. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify_closed(self, tenant_id: str):
        for callback in list(self._subscribers):
            try:
                callback(tenant_id)
            except Exception as e:
                logger.error(f"Tunnel-closed subscriber failed for {tenant_id}: {e}", exc_info=True)

    # ------------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------------

    def get(self, tenant_id: str) -> Optional[Tunnel]:
        tunnel = self._tunnels.get(tenant_id)
        if tunnel and tunnel.is_alive:
            return tunnel
        return None

    async def acquire(self, tenant: Tenant) -> Tunnel:
        """Return the tenant's live tunnel, opening one if needed."""
        existing = self.get(tenant.id)
        if existing:
            return existing

        lock = self._locks.setdefault(tenant.id, asyncio.Lock())
        async with lock:
            # Another caller may have finished opening it while we waited
            existing = self.get(tenant.id)
            if existing:
                logger.debug(f"Using existing SSH tunnel for {tenant.slug}")
                return existing

            tenant.require_tunnel_credentials()
            tunnel = await self._open(tenant)
            self._tunnels[tenant.id] = tunnel
            logger.info(f"✅ SSH tunnel ready for {tenant.slug} on 127.0.0.1:{tunnel.local_port}")
            return tunnel

    async def _open(self, tenant: Tenant) -> Tunnel:
        host, port = tenant.ssh_host, tenant.ssh_port
        logger.info(f"🔐 Opening SSH tunnel for {tenant.slug} ({host}:{port})")

        address = await self._resolve(host, port)
        await self._check_tcp(address, port, host)

        session_id = next(_session_ids)
        connection = await self._handshake(tenant, address, session_id)

        try:
            server, local_port = await self._bind_forwarder(tenant, connection)
        except ForwardingError:
            connection.close()
            raise

        return Tunnel(
            tenant_id=tenant.id,
            local_port=local_port,
            connection=connection,
            server=server,
            session_id=session_id,
            target_host="127.0.0.1",
            target_port=tenant.db_port,
        )

    async def _resolve(self, host: str, port: int) -> str:
        try:
            return await asyncio.wait_for(self._resolver(host, port), timeout=self.dns_timeout)
        except asyncio.TimeoutError:
            raise DnsResolutionError(f"DNS lookup for {host} timed out after {self.dns_timeout}s", {"host": host})
        except (socket.gaierror, OSError) as e:
            raise DnsResolutionError(f"Cannot resolve {host}: {e}", {"host": host})

    async def _check_tcp(self, address: str, port: int, host: str):
        try:
            await asyncio.wait_for(self._tcp_probe(address, port), timeout=self.tcp_timeout)
        except asyncio.TimeoutError:
            raise TcpUnreachableError(
                f"{host}:{port} did not accept a TCP connection within {self.tcp_timeout}s",
                {"host": host, "port": port},
            )
        except OSError as e:
            raise TcpUnreachableError(f"{host}:{port} unreachable: {e}", {"host": host, "port": port})

    async def _handshake(self, tenant: Tenant, address: str, session_id: int):
        def client_factory():
            return _TunnelClient(lambda exc: self._connection_lost(tenant.id, session_id, exc))

        async def connect():
            return await asyncio.wait_for(
                self._ssh_connect(
                    address,
                    port=tenant.ssh_port,
                    username=tenant.sftp_user,
                    password=tenant.sftp_password,
                    known_hosts=None,
                    client_factory=client_factory,
                    login_timeout=self.handshake_timeout,
                    keepalive_interval=self.keepalive_interval,
                ),
                timeout=self.handshake_timeout,
            )

        try:
            return await with_fixed_retry(
                connect,
                attempts=self.handshake_attempts,
                delay=self.retry_delay,
                retry_on=(asyncssh.Error, OSError, asyncio.TimeoutError),
                label=f"SSH handshake for {tenant.slug}",
            )
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            raise SshHandshakeError(
                f"SSH handshake with {tenant.ssh_host} failed after {self.handshake_attempts} attempts: {e}",
                {"host": tenant.ssh_host, "attempts": self.handshake_attempts},
            )

    async def _bind_forwarder(self, tenant: Tenant, connection):
        target_port = tenant.db_port

        async def handle(reader, writer):
            try:
                channel_reader, channel_writer = await connection.open_connection("127.0.0.1", target_port)
            except (asyncssh.Error, OSError) as e:
                logger.error(f"❌ SSH forward to port {target_port} failed for {tenant.slug}: {e}")
                writer.close()
                return
            await pipe_streams(reader, writer, channel_reader, channel_writer)

        try:
            server = await asyncio.start_server(handle, "127.0.0.1", 0)
        except OSError as e:
            raise ForwardingError(f"Cannot bind local tunnel endpoint for {tenant.slug}: {e}")

        local_port = server.sockets[0].getsockname()[1]
        return server, local_port

    def _connection_lost(self, tenant_id: str, session_id: int, exc: Optional[Exception]):
        tunnel = self._tunnels.get(tenant_id)
        if not tunnel or tunnel.session_id != session_id:
            return
        if exc:
            logger.warning(f"⚠️  SSH session lost for tenant {tenant_id}: {exc}")
        else:
            logger.warning(f"⚠️  SSH session closed for tenant {tenant_id}")

        del self._tunnels[tenant_id]
        tunnel.closed = True
        try:
            tunnel.server.close()
        except OSError as e:
            logger.debug(f"Listener close failed for {tenant_id}: {e}")
        self._notify_closed(tenant_id)

    async def release(self, tenant_id: str):
        tunnel = self._tunnels.pop(tenant_id, None)
        if not tunnel:
            return
        await tunnel.close()
        logger.info(f"🔒 SSH tunnel closed for tenant {tenant_id}")
        self._notify_closed(tenant_id)

    async def release_all(self):
        for tenant_id in list(self._tunnels):
            try:
                await self.release(tenant_id)
            except Exception as e:
                logger.error(f"Error closing tunnel for {tenant_id}: {e}")
        self._tunnels.clear()

    def active_tenants(self) -> List[str]:
        return [tenant_id for tenant_id, tunnel in self._tunnels.items() if tunnel.is_alive]
