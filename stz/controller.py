"""
Hibernation Controller: the control loop that watches activity on the primary
instance and hibernates the cluster once it has been idle long enough.
"""

import asyncio
from enum import Enum
from typing import Callable, Optional, Tuple

from loguru import logger

from .activity import ActivityTracker, ActivityVerdict
from .cluster_client import DO_NOT_FORCE_REFRESH, FORCE_REFRESH, ClusterStore
from .errors import (
    ClusterNotFoundError,
    NotPrimaryError,
    ProbeError,
    ScaleToZeroError,
)
from .models import HIBERNATION_ANNOTATION, PostgresCluster, ScaleToZeroConfig, SidecarSettings
from .probe import ActivityProbe, PostgresProbe


class ControllerState(str, Enum):
    DISABLED = "disabled"  # not the primary, or scale to zero is off
    ACTIVE = "active"
    HIBERNATING = "hibernating"
    HIBERNATED = "hibernated"
    STOPPED = "stopped"  # demoted while hibernating, loop has exited


class HibernationOutcome(str, Enum):
    HIBERNATED = "hibernated"
    ALREADY_HIBERNATED = "already_hibernated"
    SKIPPED_UNHEALTHY = "skipped_unhealthy"


class HibernationController:
    """
    Periodically decides whether the cluster should be hibernated.

    Only the sidecar running next to the primary tracks activity. Each tick
    runs to completion before the next one starts, so the tracker and the
    probe are never shared between concurrent callers.
    """

    def __init__(
        self,
        settings: SidecarSettings,
        store: ClusterStore,
        probe_factory: Callable[[str], ActivityProbe] = PostgresProbe,
        tracker: Optional[ActivityTracker] = None,
    ):
        self.settings = settings
        self.store = store
        self.probe_factory = probe_factory
        self.tracker = tracker or ActivityTracker()
        self.probe: Optional[ActivityProbe] = None
        self.state = ControllerState.DISABLED
        self._log_prefix = f"[{settings.cluster}]"

    async def init_probe(self) -> None:
        """Build a new probe from freshly read credentials, discarding the current one."""
        await self._close_probe()
        credentials = await self.store.get_credentials()
        self.probe = self.probe_factory(credentials.conn_string())

    async def close(self) -> None:
        await self._close_probe()

    async def _close_probe(self) -> None:
        if self.probe is None:
            return
        probe, self.probe = self.probe, None
        try:
            await probe.close()
        except Exception as e:
            logger.warning(f"{self._log_prefix} Failed to close PostgreSQL probe: {e}")

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Run the control loop until ``stop_event`` is set or this pod turns out
        to have been demoted. Task cancellation propagates to the caller, which
        is responsible for calling ``close()``.
        """
        stop_event = stop_event or asyncio.Event()
        interval = self.settings.check_interval.total_seconds()
        logger.info(f"{self._log_prefix} Starting activity monitoring on pod {self.settings.pod_name} (every {interval:.0f}s)")

        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            keep_running = await self._tick_until_stopped(stop_event)
            if keep_running is None:
                logger.info(f"{self._log_prefix} Shutdown requested, abandoned the running check")
                break
            if not keep_running:
                logger.warning(f"{self._log_prefix} Stopping activity monitoring, pod {self.settings.pod_name} is no longer the primary")
                return

        logger.info(f"{self._log_prefix} Activity monitoring stopped")

    async def _tick_until_stopped(self, stop_event: asyncio.Event) -> Optional[bool]:
        """Run one tick, cancelling it if ``stop_event`` is set first. Returns None when cancelled."""
        tick_task = asyncio.ensure_future(self.tick())
        stop_task = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait({tick_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()
            if not tick_task.done():
                tick_task.cancel()
                await asyncio.wait({tick_task})

        if tick_task.cancelled():
            return None
        return tick_task.result()

    async def tick(self) -> bool:
        """
        Run one iteration of the loop.

        Returns:
            False if the loop must stop, True otherwise
        """
        try:
            cluster = await self.store.get_cluster(force_refresh=DO_NOT_FORCE_REFRESH)
        except ScaleToZeroError as e:
            logger.error(f"{self._log_prefix} Failed to get cluster: {e}")
            return True

        # Reset on every non-primary tick so a later promotion starts a clean window.
        if not self.is_primary(cluster):
            self.tracker.reset()
            self.state = ControllerState.DISABLED
            logger.info(f"{self._log_prefix} Running on non-primary pod, skipping activity monitoring (primary: {cluster.current_primary})")
            return True

        config = ScaleToZeroConfig.from_annotations(cluster.annotations)
        if not config.enabled:
            # Stale tracking must not fire as soon as the feature is re-enabled.
            self.tracker.reset()
            self.state = ControllerState.DISABLED
            logger.info(f"{self._log_prefix} Scale to zero is disabled, skipping check")
            return True

        try:
            verdict = await self.check_activity(config.inactivity_minutes)
        except (ScaleToZeroError, OSError) as e:
            logger.error(f"{self._log_prefix} Failed to check cluster activity: {e}")
            return True

        if verdict is ActivityVerdict.ACTIVE:
            self.state = ControllerState.ACTIVE
            return True

        self.state = ControllerState.HIBERNATING
        try:
            outcome = await self.hibernate()
        except NotPrimaryError as e:
            logger.error(f"{self._log_prefix} Hibernation failed: {e}")
            self.state = ControllerState.STOPPED
            return False
        except ScaleToZeroError as e:
            logger.error(f"{self._log_prefix} Hibernation failed: {e}")
            return True

        if outcome is HibernationOutcome.SKIPPED_UNHEALTHY:
            return True

        self.state = ControllerState.HIBERNATED
        await self.pause_scheduled_backup()
        return True

    def is_primary(self, cluster: PostgresCluster) -> bool:
        # currentPrimary is empty until the cluster finishes bootstrapping
        return cluster.current_primary in ("", self.settings.pod_name)

    async def check_activity(self, inactivity_minutes: int) -> ActivityVerdict:
        """Count open sessions and let the tracker decide, rebuilding the probe once on a refused connection."""
        count, error = await self._count_sessions()
        verdict = self.tracker.assess(count, inactivity_minutes, error=error)

        if verdict is ActivityVerdict.RETRY:
            logger.warning(f"{self._log_prefix} Connection refused ({error}), reinitializing probe with fresh credentials")
            await self.init_probe()
            count, error = await self._count_sessions()
            if error is not None:
                raise error
            verdict = self.tracker.assess(count, inactivity_minutes)

        logger.info(f"{self._log_prefix} Open connections: {count}, verdict: {verdict.value}")
        return verdict

    async def _count_sessions(self) -> Tuple[Optional[int], Optional[BaseException]]:
        if self.probe is None:
            await self.init_probe()
        try:
            return await self.probe.count_active_sessions(), None
        except (ProbeError, OSError) as e:
            return None, e

    async def hibernate(self) -> HibernationOutcome:
        """
        Annotate the cluster for hibernation.

        The cluster is re-read bypassing the cache. Unhealthy clusters are left
        alone and an existing marker is never written again.

        Raises:
            NotPrimaryError: The update was rejected because this pod was demoted
            ClusterStoreError: The read or the update failed
        """
        cluster = await self.store.get_cluster(force_refresh=FORCE_REFRESH)

        if not cluster.is_healthy:
            logger.info(f"{self._log_prefix} Cluster is not healthy, skipping hibernation (phase: {cluster.phase})")
            return HibernationOutcome.SKIPPED_UNHEALTHY

        if cluster.is_hibernated:
            logger.info(f"{self._log_prefix} Cluster is already hibernated")
            return HibernationOutcome.ALREADY_HIBERNATED

        cluster = cluster.model_copy(deep=True)
        cluster.annotations[HIBERNATION_ANNOTATION] = "on"
        logger.info(f"{self._log_prefix} Annotating cluster for hibernation from pod {self.settings.pod_name}")
        await self.store.update_cluster(cluster)
        return HibernationOutcome.HIBERNATED

    async def pause_scheduled_backup(self) -> None:
        """Suspend the cluster's scheduled backup. Failures are logged, never raised."""
        try:
            scheduled_backup = await self.store.get_scheduled_backup()
        except ClusterNotFoundError:
            logger.debug(f"{self._log_prefix} Scheduled backup not found, skipping pause")
            return
        except ScaleToZeroError as e:
            logger.error(f"{self._log_prefix} Failed to get scheduled backup: {e}")
            return

        if scheduled_backup.suspend:
            logger.debug(f"{self._log_prefix} Scheduled backup {scheduled_backup.name} is already suspended")
            return

        logger.info(f"{self._log_prefix} Pausing scheduled backup {scheduled_backup.name}")
        try:
            await self.store.update_scheduled_backup(scheduled_backup.model_copy(update={"suspend": True}))
        except ScaleToZeroError as e:
            logger.error(f"{self._log_prefix} Failed to update scheduled backup {scheduled_backup.name}: {e}")
