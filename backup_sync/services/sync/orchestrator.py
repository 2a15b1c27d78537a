"""
Sync Orchestrator
Runs one tenant end to end.

FLOW:
1. Circuit breaker gate (open circuit = skipped, no connection attempt)
2. Source pool through the tenant's tunnel
3. Enabled pipelines in fixed order, light types first
4. Maintenance pass
5. Breaker bookkeeping, sync_logs row, tenants.last_sync_at

A failing pipeline does not stop the others; the run is reported as
partial. A connectivity failure does stop the run, since nothing after it
can reach the PBX either. The whole run has a wall-clock budget.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from backup_sync.core.circuit_breakers import CircuitBreakerRegistry
from backup_sync.core.errors import (
    ConfigurationError,
    DestinationWriteError,
    DnsResolutionError,
    ForwardingError,
    SshHandshakeError,
    SyncError,
    TcpUnreachableError,
    TenantTimeoutError,
    is_tenant_failure,
)
from backup_sync.models.schemas.sync import (
    ENTITY_RUN_ORDER,
    ConnectionTestResponse,
    EntityResult,
    EntityType,
    SyncOptions,
    TenantSyncResult,
)
from backup_sync.models.schemas.tenant import Tenant
from backup_sync.services.source.files import RemoteFiles
from backup_sync.services.source.queries import SourceDatabase
from backup_sync.services.sync.pipelines import PIPELINES, Maintenance, PipelineContext

logger = logging.getLogger(__name__)

CONNECTION_STAGES = ["dns", "tcp", "ssh", "forwarding", "database"]

_STAGE_BY_ERROR = {
    DnsResolutionError: "dns",
    TcpUnreachableError: "tcp",
    SshHandshakeError: "ssh",
    ForwardingError: "forwarding",
}


class SyncOrchestrator:
    def __init__(
        self,
        tunnels,
        pools,
        breakers: CircuitBreakerRegistry,
        checkpoints,
        metadata,
        blobs=None,
        transcoder=None,
        batch_size: int = 100,
        run_timeout_seconds: float = 600,
        error_limit: int = 5,
        buffer_threshold_bytes: int = 25 * 1024 * 1024,
        max_file_size_bytes: int = 500 * 1024 * 1024,
        pipelines: Optional[Dict[EntityType, Callable[[], Any]]] = None,
        source_factory: Callable[[Any, str], Any] = SourceDatabase,
        files_factory: Optional[Callable[[Tenant], Any]] = None,
    ):
        self.tunnels = tunnels
        self.pools = pools
        self.breakers = breakers
        self.checkpoints = checkpoints
        self.metadata = metadata
        self.blobs = blobs
        self.transcoder = transcoder
        self.batch_size = batch_size
        self.run_timeout_seconds = run_timeout_seconds
        self.error_limit = error_limit
        self.buffer_threshold_bytes = buffer_threshold_bytes
        self.max_file_size_bytes = max_file_size_bytes
        self.pipelines = pipelines or PIPELINES
        self._source_factory = source_factory
        self._files_factory = files_factory or self._open_remote_files

    async def _open_remote_files(self, tenant: Tenant) -> RemoteFiles:
        tunnel = await self.tunnels.acquire(tenant)
        return await RemoteFiles.open(tunnel, tenant.slug)

    @staticmethod
    def entity_types_for(tenant: Tenant, options: SyncOptions) -> List[EntityType]:
        enabled = set(tenant.enabled_entity_types())
        wanted = set(options.entity_types) if options.entity_types is not None else None
        return [
            t for t in ENTITY_RUN_ORDER
            if t.value in enabled and (wanted is None or t in wanted)
        ]

    # ========================================================================
    # RUN ONE TENANT
    # ========================================================================

    async def run_tenant(self, tenant: Tenant, options: Optional[SyncOptions] = None) -> TenantSyncResult:
        options = options or SyncOptions()
        result = TenantSyncResult(tenant_id=tenant.id, started_at=datetime.now(timezone.utc))
        entity_types = self.entity_types_for(tenant, options)

        decision = self.breakers.can_execute(tenant.id)
        if not decision.allowed:
            result.skipped_by_circuit = True
            result.error = decision.reason
            result.finished_at = datetime.now(timezone.utc)
            logger.warning(
                f"⏸️  Skipping {tenant.slug}: {decision.reason} "
                f"(retry in {int(decision.retry_in_seconds or 0)}s)"
            )
            for entity_type in entity_types:
                try:
                    await self.checkpoints.mark_skipped(tenant.id, entity_type.value, decision.reason)
                except DestinationWriteError as e:
                    logger.warning(f"⚠️  Could not mark {entity_type.value} skipped for {tenant.slug}: {e}")
            return result

        logger.info(f"🚀 Sync for {tenant.slug} ({options.reason}): {', '.join(t.value for t in entity_types)}")

        try:
            await asyncio.wait_for(
                self._run_pipelines(tenant, options, entity_types, result),
                timeout=self.run_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = TenantTimeoutError(
                f"Sync for {tenant.slug} exceeded {self.run_timeout_seconds}s budget",
                {"tenant_id": tenant.id},
            )
            result.timed_out = True
            result.error = error.message
            self.breakers.record_failure(tenant.id, error.message)
            logger.error(f"❌ {error.message}")
        except SyncError as e:
            if not is_tenant_failure(e):
                raise
            result.error = e.message
            self.breakers.record_failure(tenant.id, f"{e.code}: {e.message}")
            logger.error(f"❌ Sync for {tenant.slug} aborted ({e.code}): {e.message}")
        else:
            self.breakers.record_success(tenant.id)

        result.finished_at = datetime.now(timezone.utc)
        await self._record_run(tenant, options, result)
        return result

    async def _run_pipelines(
        self,
        tenant: Tenant,
        options: SyncOptions,
        entity_types: List[EntityType],
        result: TenantSyncResult,
    ):
        pool = await self.pools.get_pool(tenant)
        ctx = PipelineContext(
            tenant=tenant,
            checkpoints=self.checkpoints,
            metadata=self.metadata,
            blobs=self.blobs,
            transcoder=self.transcoder,
            source=self._source_factory(pool, tenant.slug),
            files_opener=lambda: self._files_factory(tenant),
            batch_size=self.batch_size,
            error_limit=self.error_limit,
            buffer_threshold_bytes=self.buffer_threshold_bytes,
            max_file_size_bytes=self.max_file_size_bytes,
        )

        try:
            for entity_type in entity_types:
                pipeline = self.pipelines[entity_type]()
                try:
                    result.entities[entity_type.value] = await pipeline.run(ctx)
                except Exception as e:
                    entity = pipeline.result or EntityResult(entity_type=entity_type)
                    entity.failed = True
                    entity.failure = entity.failure or str(e)
                    result.entities[entity_type.value] = entity
                    if is_tenant_failure(e):
                        raise
                    logger.error(f"❌ {entity_type.value} failed for {tenant.slug}, continuing: {e}")
                finally:
                    result.new_media_messages = ctx.new_media_messages

            if options.run_maintenance and EntityType.MESSAGES in entity_types:
                result.maintenance = await Maintenance(self.metadata).run(tenant)
        finally:
            ctx.close()

    async def _record_run(self, tenant: Tenant, options: SyncOptions, result: TenantSyncResult):
        totals = result.totals()
        if result.success:
            status = "success"
        elif result.error or result.timed_out:
            status = "error"
        else:
            status = "partial"

        errors: Dict[str, Any] = {
            name: entity.failure or [e.model_dump() for e in entity.errors[:self.error_limit]]
            for name, entity in result.entities.items()
            if not entity.ok
        }
        if result.error:
            errors["tenant"] = result.error

        try:
            await self.metadata.record_sync_log({
                "tenant_id": tenant.id,
                "sync_type": options.reason,
                "started_at": result.started_at.isoformat(),
                "completed_at": result.finished_at.isoformat(),
                "status": status,
                "records_synced": totals["synced"],
                "errors_count": totals["errors"] + sum(1 for e in result.entities.values() if e.failed),
                "error_details": errors or None,
            })
            await self.metadata.touch_tenant_last_sync(tenant.id, result.finished_at)
        except DestinationWriteError as e:
            logger.warning(f"⚠️  Could not record sync log for {tenant.slug}: {e}")

        icon = "✅" if status == "success" else "⚠️ "
        logger.info(
            f"{icon} Sync for {tenant.slug} {status} in {result.duration_seconds:.1f}s: "
            f"{totals['synced']} synced, {totals['skipped']} skipped, {totals['errors']} item errors"
        )

    # ========================================================================
    # MANY TENANTS
    # ========================================================================

    async def run_many(self, tenants: List[Tenant], options: Optional[SyncOptions] = None) -> List[TenantSyncResult]:
        """Tenants one after another; one tenant's failure never affects the next."""
        results = []
        for tenant in tenants:
            try:
                results.append(await self.run_tenant(tenant, options))
            except Exception as e:
                logger.error(f"❌ Unexpected error syncing {tenant.slug}: {e}", exc_info=True)
        return results

    # ========================================================================
    # CONNECTION TEST
    # ========================================================================

    async def test_connection(self, tenant: Tenant) -> ConnectionTestResponse:
        """
        Probe a tenant stage by stage: tunnel (DNS, TCP, SSH, forwarding)
        then SELECT 1 through a fresh pool.
        """
        stages = {name: False for name in CONNECTION_STAGES}
        try:
            await self.tunnels.acquire(tenant)
            pool = await self.pools.get_pool(tenant)
            await self._source_factory(pool, tenant.slug).ping()
        except SyncError as e:
            failed = _STAGE_BY_ERROR.get(type(e))
            if failed is None:
                failed = "configuration" if isinstance(e, ConfigurationError) else "database"
            if failed in stages:
                for name in CONNECTION_STAGES[:CONNECTION_STAGES.index(failed)]:
                    stages[name] = True
            logger.warning(f"⚠️  Connection test for {tenant.slug} failed at {failed}: {e.message}")
            return ConnectionTestResponse(
                tenant_id=tenant.id,
                success=False,
                stages=stages,
                failed_stage=failed,
                error=e.message,
                error_code=e.code,
            )

        stages = {name: True for name in CONNECTION_STAGES}
        logger.info(f"✅ Connection test for {tenant.slug} passed")
        return ConnectionTestResponse(tenant_id=tenant.id, success=True, stages=stages)
