"""
Per-tenant orchestration: partial runs, connectivity aborts, circuit skips,
run budget, sync logs and the staged connection test.
"""
import asyncio

import pytest

from backup_sync.core.circuit_breakers import CircuitBreakerRegistry, CircuitState
from backup_sync.core.errors import (
    ConfigurationError,
    ForwardingError,
    SshHandshakeError,
    TcpUnreachableError,
)
from backup_sync.models.schemas.sync import EntityResult, EntityType, SyncOptions
from backup_sync.services.sync.orchestrator import SyncOrchestrator
from backup_sync.services.sync.pipelines import PIPELINES

from conftest import make_messages, make_tenant


class FakeTunnels:
    def __init__(self):
        self.error = None
        self.acquired = 0

    async def acquire(self, tenant):
        self.acquired += 1
        if self.error:
            raise self.error
        return object()


class FakePools:
    def __init__(self):
        self.error = None
        self.calls = 0

    async def get_pool(self, tenant):
        self.calls += 1
        if self.error:
            raise self.error
        return "pool"


class StubPipeline:
    """Records that it ran; optionally raises or stalls."""

    ran = []

    def __init__(self, entity_type, error=None, delay=0):
        self.entity_type = entity_type
        self.error = error
        self.delay = delay
        self.result = None

    async def run(self, ctx):
        StubPipeline.ran.append(self.entity_type)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        self.result = EntityResult(entity_type=self.entity_type, synced=1)
        return self.result


def stubs(**overrides):
    StubPipeline.ran = []
    factories = {}
    for entity_type in EntityType:
        error, delay = overrides.get(entity_type.value, (None, 0))
        factories[entity_type] = (lambda et=entity_type, err=error, d=delay: StubPipeline(et, err, d))
    return factories


@pytest.fixture
def tunnels():
    return FakeTunnels()


@pytest.fixture
def pools():
    return FakePools()


@pytest.fixture
def breakers():
    return CircuitBreakerRegistry(failure_threshold=3, cooldown_seconds=300)


@pytest.fixture
def make_orchestrator(tunnels, pools, breakers, checkpoints, metadata, blobs, transcoder, source, remote_files):
    def build(**overrides):
        async def open_files(tenant):
            return remote_files

        options = dict(
            tunnels=tunnels,
            pools=pools,
            breakers=breakers,
            checkpoints=checkpoints,
            metadata=metadata,
            blobs=blobs,
            transcoder=transcoder,
            batch_size=100,
            run_timeout_seconds=5,
            buffer_threshold_bytes=1024,
            max_file_size_bytes=4096,
            source_factory=lambda pool, slug: source,
            files_factory=open_files,
        )
        options.update(overrides)
        return SyncOrchestrator(**options)

    return build


def test_entity_types_follow_tenant_toggles_and_options():
    tenant = make_tenant(backup_faxes=False, backup_meetings=False)

    all_types = SyncOrchestrator.entity_types_for(tenant, SyncOptions())
    chat_only = SyncOrchestrator.entity_types_for(tenant, SyncOptions(entity_types=[EntityType.MESSAGES, EntityType.FAXES]))

    assert all_types == [
        EntityType.EXTENSIONS,
        EntityType.MESSAGES,
        EntityType.CDR,
        EntityType.CHAT_MEDIA,
        EntityType.VOICEMAILS,
        EntityType.RECORDINGS,
    ]
    assert chat_only == [EntityType.MESSAGES]


async def test_full_run_with_real_pipelines(make_orchestrator, source, metadata, breakers, remote_files):
    source.messages = make_messages(30)
    source.messages[4]["message"] = "photo.jpg"
    source.extensions = [{"extension_number": "101", "firstname": "Front", "lastname": "Desk"}]
    orchestrator = make_orchestrator(pipelines=PIPELINES)

    result = await orchestrator.run_tenant(make_tenant())

    assert result.success
    assert result.entities["messages"].synced == 30
    assert result.entities["extensions"].synced == 1
    assert result.new_media_messages == 1
    assert set(result.maintenance) == {"names_updated", "conversations_merged", "messages_moved", "media_linked"}
    assert remote_files.closed
    assert breakers.get_state("tenant-1").state == CircuitState.CLOSED

    log = metadata.sync_logs[-1]
    assert log["status"] == "success"
    assert log["records_synced"] == 31
    assert log["sync_type"] == "scheduled"
    assert metadata.last_sync["tenant-1"] is not None


async def test_failing_pipeline_does_not_stop_the_others(make_orchestrator, source, metadata, checkpoints, breakers):
    source.fail_on["fetch_messages"] = 1
    source.call_records = [{"call_id": 1, "call_started_at": make_messages(1)[0]["time_sent"]}]
    orchestrator = make_orchestrator(pipelines=PIPELINES)

    result = await orchestrator.run_tenant(make_tenant())

    assert result.partial
    assert result.entities["messages"].failed
    assert result.entities["cdr"].synced == 1
    assert checkpoints.status("tenant-1", "messages")["status"] == "error"
    assert checkpoints.status("tenant-1", "cdr")["status"] == "success"
    assert metadata.sync_logs[-1]["status"] == "partial"
    assert "messages" in metadata.sync_logs[-1]["error_details"]
    assert breakers.get_state("tenant-1").failures == 0


async def test_connectivity_failure_aborts_and_counts(make_orchestrator, pools, metadata, breakers):
    pools.error = TcpUnreachableError("pbx.acme.test:22 unreachable: Connection refused")
    orchestrator = make_orchestrator(pipelines=stubs())

    result = await orchestrator.run_tenant(make_tenant())

    assert StubPipeline.ran == []
    assert "unreachable" in result.error
    assert metadata.sync_logs[-1]["status"] == "error"
    assert metadata.sync_logs[-1]["error_details"]["tenant"] == result.error
    assert breakers.get_state("tenant-1").failures == 1


async def test_tunnel_loss_mid_run_stops_remaining_pipelines(make_orchestrator, breakers):
    orchestrator = make_orchestrator(pipelines=stubs(messages=(ForwardingError("channel open failed"), 0)))

    result = await orchestrator.run_tenant(make_tenant())

    assert StubPipeline.ran == [EntityType.EXTENSIONS, EntityType.MESSAGES]
    assert result.entities["messages"].failed
    assert result.error == "channel open failed"
    assert breakers.get_state("tenant-1").failures == 1


async def test_open_circuit_skips_without_connecting(make_orchestrator, pools, metadata, checkpoints, breakers):
    pools.error = SshHandshakeError("SSH handshake failed after 3 attempts")
    orchestrator = make_orchestrator(pipelines=stubs())
    tenant = make_tenant()

    for _ in range(3):
        await orchestrator.run_tenant(tenant)
    assert breakers.get_state(tenant.id).state == CircuitState.OPEN
    calls, logs = pools.calls, len(metadata.sync_logs)

    result = await orchestrator.run_tenant(tenant)

    assert result.skipped_by_circuit
    assert pools.calls == calls
    assert len(metadata.sync_logs) == logs
    assert checkpoints.status(tenant.id, "messages")["notes"].startswith("Skipped: circuit open after 3 failures")


async def test_configuration_error_counts_against_circuit(make_orchestrator, pools, breakers):
    pools.error = ConfigurationError("Tenant acme missing database password")
    orchestrator = make_orchestrator(pipelines=stubs())

    result = await orchestrator.run_tenant(make_tenant())

    assert result.error == "Tenant acme missing database password"
    assert breakers.get_state("tenant-1").failures == 1


async def test_run_budget_exceeded(make_orchestrator, metadata, breakers):
    orchestrator = make_orchestrator(pipelines=stubs(cdr=(None, 10)), run_timeout_seconds=0.05)

    result = await orchestrator.run_tenant(make_tenant())

    assert result.timed_out
    assert "exceeded" in result.error
    assert metadata.sync_logs[-1]["status"] == "error"
    assert breakers.get_state("tenant-1").failures == 1


async def test_maintenance_only_with_messages(make_orchestrator):
    orchestrator = make_orchestrator(pipelines=stubs())

    result = await orchestrator.run_tenant(make_tenant(), SyncOptions(entity_types=[EntityType.CDR], reason="cdr"))

    assert StubPipeline.ran == [EntityType.CDR]
    assert result.maintenance == {}


async def test_success_closes_half_open_circuit(make_orchestrator, breakers):
    breakers.cooldown_seconds = 0
    for _ in range(3):
        breakers.record_failure("tenant-1", "down")
    orchestrator = make_orchestrator(pipelines=stubs())

    await orchestrator.run_tenant(make_tenant())
    await orchestrator.run_tenant(make_tenant())

    assert breakers.get_state("tenant-1").state == CircuitState.CLOSED


async def test_run_many_isolates_tenants(make_orchestrator, pools):
    orchestrator = make_orchestrator(pipelines=stubs())
    calls = []

    async def get_pool(tenant):
        calls.append(tenant.id)
        if tenant.id == "bad":
            raise RuntimeError("unexpected")
        return "pool"

    pools.get_pool = get_pool

    results = await orchestrator.run_many([make_tenant(id="bad", slug="bad"), make_tenant(id="good", slug="good")])

    assert calls == ["bad", "good"]
    assert [r.tenant_id for r in results] == ["good"]


# ============================================================================
# CONNECTION TEST
# ============================================================================

async def test_connection_test_success(make_orchestrator, source):
    result = await make_orchestrator().test_connection(make_tenant())

    assert result.success
    assert all(result.stages.values())
    assert source.calls["ping"] == 1


async def test_connection_test_reports_failed_stage(make_orchestrator, tunnels):
    tunnels.error = SshHandshakeError("SSH handshake with pbx.acme.test failed after 3 attempts")

    result = await make_orchestrator().test_connection(make_tenant())

    assert not result.success
    assert result.failed_stage == "ssh"
    assert result.error_code == "SSH_HANDSHAKE_FAILED"
    assert result.stages == {"dns": True, "tcp": True, "ssh": False, "forwarding": False, "database": False}


async def test_connection_test_database_stage(make_orchestrator, source):
    source.fail_on["ping"] = 1

    result = await make_orchestrator().test_connection(make_tenant())

    assert result.failed_stage == "database"
    assert result.stages == {"dns": True, "tcp": True, "ssh": True, "forwarding": True, "database": False}


async def test_connection_test_forwarding_stage(make_orchestrator, pools):
    pools.error = ForwardingError("Source database unreachable through tunnel for acme")

    result = await make_orchestrator().test_connection(make_tenant())

    assert result.failed_stage == "forwarding"
    assert result.stages["ssh"] is True
    assert result.stages["forwarding"] is False


async def test_connection_test_configuration(make_orchestrator, tunnels):
    tunnels.error = ConfigurationError("Tenant acme missing tunnel credentials: sftp_password")

    result = await make_orchestrator().test_connection(make_tenant())

    assert result.failed_stage == "configuration"
    assert not any(result.stages.values())
