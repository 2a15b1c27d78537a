"""
Source Connection Pools
One psycopg pool per tenant, built on top of that tenant's SSH tunnel.

A pool never outlives its tunnel: when the tunnel manager reports a
closed session the pool is discarded, and the next request rebuilds it
on a fresh tunnel.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Set

from psycopg.conninfo import make_conninfo
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from backup_sync.core.errors import ForwardingError
from backup_sync.models.schemas.tenant import Tenant
from backup_sync.services.tunnel.manager import TunnelManager

logger = logging.getLogger(__name__)


def _default_pool_factory(conninfo: str, min_size: int, max_size: int):
    return AsyncConnectionPool(
        conninfo,
        min_size=min_size,
        max_size=max_size,
        open=False,
        kwargs={"row_factory": dict_row, "autocommit": True},
    )


@dataclass
class _PoolEntry:
    pool: Any
    session_id: int


class SourcePoolRegistry:
    """Per-tenant source database pools keyed by tenant id."""

    def __init__(
        self,
        tunnels: TunnelManager,
        min_size: int = 1,
        max_size: int = 3,
        connect_timeout: float = 15.0,
        pool_factory: Callable[[str, int, int], Any] = _default_pool_factory,
    ):
        self._tunnels = tunnels
        self.min_size = min_size
        self.max_size = max_size
        self.connect_timeout = connect_timeout
        self._pool_factory = pool_factory
        self._pools: Dict[str, _PoolEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._closing: Set[asyncio.Task] = set()
        self._unsubscribe = tunnels.subscribe(self._on_tunnel_closed)

    async def get_pool(self, tenant: Tenant):
        """Return a pool bound to the tenant's current tunnel."""
        tenant.require_database_credentials()
        tunnel = await self._tunnels.acquire(tenant)

        lock = self._locks.setdefault(tenant.id, asyncio.Lock())
        async with lock:
            entry = self._pools.get(tenant.id)
            if entry and entry.session_id == tunnel.session_id:
                return entry.pool

            if entry:
                # Built on a tunnel that has since been replaced
                logger.info(f"🔄 Rebuilding source pool for {tenant.slug} on new tunnel")
                self._pools.pop(tenant.id, None)
                await self._close_pool(tenant.id, entry.pool)

            conninfo = make_conninfo(
                host="127.0.0.1",
                port=tunnel.local_port,
                dbname=tenant.db_name,
                user=tenant.db_user,
                password=tenant.threecx_password,
                connect_timeout=int(self.connect_timeout),
                sslmode="disable",
            )
            pool = self._pool_factory(conninfo, self.min_size, self.max_size)
            try:
                await pool.open(wait=True, timeout=self.connect_timeout)
            except (PoolTimeout, OSError) as e:
                await self._close_pool(tenant.id, pool)
                raise ForwardingError(
                    f"Source database unreachable through tunnel for {tenant.slug}: {e}",
                    {"tenant_id": tenant.id, "local_port": tunnel.local_port},
                )

            self._pools[tenant.id] = _PoolEntry(pool=pool, session_id=tunnel.session_id)
            logger.info(f"✅ Source pool ready for {tenant.slug} (max {self.max_size} connections)")
            return pool

    def _on_tunnel_closed(self, tenant_id: str):
        entry = self._pools.pop(tenant_id, None)
        if not entry:
            return
        logger.info(f"Discarding source pool for tenant {tenant_id} (tunnel closed)")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._close_pool(tenant_id, entry.pool))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close_pool(self, tenant_id: str, pool):
        try:
            await pool.close()
        except Exception as e:
            logger.warning(f"⚠️  Error closing source pool for {tenant_id}: {e}")

    def has_pool(self, tenant_id: str) -> bool:
        return tenant_id in self._pools

    async def close(self, tenant_id: str):
        entry = self._pools.pop(tenant_id, None)
        if entry:
            await self._close_pool(tenant_id, entry.pool)

    async def close_all(self):
        for tenant_id in list(self._pools):
            await self.close(tenant_id)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        self._unsubscribe()
