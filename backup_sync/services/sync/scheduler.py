"""
Sync Scheduler
Independent cadences on one APScheduler AsyncIOScheduler.

CADENCES:
- chat (~20s): messages for recently active tenants, plus manual triggers
- cdr (5 min), media + voicemails (5 min), recordings/meetings/faxes (15 min),
  extensions (60 min): every active tenant
- background (30 min): lightweight types for tenants nobody is watching

A cadence never overlaps itself: a tick that fires while the previous run
of the same cadence is still going does nothing. Different cadences may
work on the same tenant at the same time.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from backup_sync.models.schemas.sync import EntityType, SyncOptions
from backup_sync.models.schemas.tenant import Tenant

logger = logging.getLogger(__name__)

# Tenant audiences
RECENT = "recent"
ACTIVE = "active"
INACTIVE = "inactive"


@dataclass
class Cadence:
    name: str
    interval_seconds: float
    entity_types: List[EntityType]
    audience: str = ACTIVE
    run_maintenance: bool = False
    handles_triggers: bool = False
    follow_up: Optional[str] = None  # cadence to kick when new media messages arrive


def build_cadences(settings) -> List[Cadence]:
    """Cadence table from settings."""
    return [
        Cadence(
            name="chat",
            interval_seconds=settings.sync_interval_chat_seconds,
            entity_types=[EntityType.MESSAGES],
            audience=RECENT,
            run_maintenance=True,
            handles_triggers=True,
            follow_up="media",
        ),
        Cadence(
            name="cdr",
            interval_seconds=settings.sync_interval_cdr_minutes * 60,
            entity_types=[EntityType.CDR],
        ),
        Cadence(
            name="media",
            interval_seconds=settings.sync_interval_media_minutes * 60,
            entity_types=[EntityType.CHAT_MEDIA, EntityType.VOICEMAILS],
        ),
        Cadence(
            name="recordings",
            interval_seconds=settings.sync_interval_recordings_minutes * 60,
            entity_types=[EntityType.RECORDINGS, EntityType.MEETINGS, EntityType.FAXES],
        ),
        Cadence(
            name="extensions",
            interval_seconds=settings.sync_interval_extensions_minutes * 60,
            entity_types=[EntityType.EXTENSIONS],
        ),
        Cadence(
            name="background",
            interval_seconds=settings.sync_interval_background_minutes * 60,
            entity_types=[EntityType.EXTENSIONS, EntityType.MESSAGES, EntityType.CDR],
            audience=INACTIVE,
            run_maintenance=True,
        ),
    ]


class SyncScheduler:
    def __init__(
        self,
        orchestrator,
        tenants,
        checkpoints,
        cadences: List[Cadence],
        trigger_window_seconds: int = 120,
        activity_window_minutes: int = 30,
    ):
        self.orchestrator = orchestrator
        self.tenants = tenants
        self.checkpoints = checkpoints
        self.cadences: Dict[str, Cadence] = {c.name: c for c in cadences}
        self.trigger_window_seconds = trigger_window_seconds
        self.activity_window_minutes = activity_window_minutes

        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running: Set[str] = set()
        self._follow_ups: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def running_cadences(self) -> List[str]:
        return sorted(self._running)

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def start(self):
        if self.is_running:
            return
        self._scheduler = AsyncIOScheduler()
        for cadence in self.cadences.values():
            self._scheduler.add_job(
                self.run_cadence,
                trigger=IntervalTrigger(seconds=cadence.interval_seconds),
                args=[cadence.name],
                id=f"sync_{cadence.name}",
                name=f"{cadence.name} sync",
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
        self._scheduler.start()
        logger.info(
            "⏰ Scheduler started: "
            + ", ".join(f"{c.name} every {int(c.interval_seconds)}s" for c in self.cadences.values())
        )

    async def stop(self):
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        for task in list(self._follow_ups):
            task.cancel()
        if self._follow_ups:
            await asyncio.gather(*self._follow_ups, return_exceptions=True)
        logger.info("✅ Scheduler stopped")

    # ========================================================================
    # TICKS
    # ========================================================================

    async def run_cadence(self, name: str) -> bool:
        """
        Run one tick of a cadence.

        Returns False (and does nothing) when that cadence is already running.
        """
        cadence = self.cadences[name]
        if name in self._running:
            logger.debug(f"⏭️  {name} sync still running, skipping tick")
            return False

        self._running.add(name)
        try:
            new_media = await self._tick(cadence)
            if new_media and cadence.follow_up in self.cadences:
                logger.info(f"📎 {new_media} new media messages, starting {cadence.follow_up} sync")
                self._spawn_follow_up(cadence.follow_up)
        except Exception as e:
            logger.error(f"❌ {name} sync tick failed: {e}", exc_info=True)
        finally:
            self._running.discard(name)
        return True

    async def _tick(self, cadence: Cadence) -> int:
        triggered: List[str] = []
        new_media = 0

        if cadence.handles_triggers:
            for result in await self._run_triggered():
                triggered.append(result.tenant_id)
                new_media += result.new_media_messages

        tenants = [t for t in await self._audience(cadence) if t.id not in triggered]
        if not tenants:
            return new_media

        options = SyncOptions(
            entity_types=cadence.entity_types,
            run_maintenance=cadence.run_maintenance,
            reason=cadence.name,
        )
        for result in await self.orchestrator.run_many(tenants, options):
            new_media += result.new_media_messages
        return new_media

    async def _run_triggered(self):
        """Honour manual triggers: clear the marker, then run every enabled type."""
        results = []
        for tenant_id in await self.checkpoints.pending_triggers(self.trigger_window_seconds):
            await self.checkpoints.clear_trigger(tenant_id)
            tenant = await self.tenants.get(tenant_id)
            if tenant is None or not (tenant.is_active and tenant.sync_enabled):
                logger.warning(f"⚠️  Manual trigger for unknown or disabled tenant {tenant_id}, ignoring")
                continue
            logger.info(f"👆 Manual sync for {tenant.slug}")
            results.extend(await self.orchestrator.run_many([tenant], SyncOptions(reason="manual")))
        return results

    async def _audience(self, cadence: Cadence) -> List[Tenant]:
        if cadence.audience == RECENT:
            return await self.tenants.list_recently_active(self.activity_window_minutes)
        if cadence.audience == INACTIVE:
            return await self.tenants.list_inactive(self.activity_window_minutes)
        return await self.tenants.list_active()

    def _spawn_follow_up(self, name: str):
        task = asyncio.create_task(self.run_cadence(name))
        self._follow_ups.add(task)
        task.add_done_callback(self._follow_ups.discard)
