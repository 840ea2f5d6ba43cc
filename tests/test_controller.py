"""
Tests for the hibernation controller.
"""

import asyncio
import errno
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock, patch

import pytest

from stz.activity import ActivityTracker, ActivityVerdict
from stz.controller import ControllerState, HibernationController, HibernationOutcome
from stz.errors import (
    ClusterNotFoundError,
    ClusterStoreError,
    ConflictError,
    NotPrimaryError,
    ProbeConnectionRefusedError,
    ProbeError,
    ProbeQueryError,
)
from stz.models import (
    HEALTHY_CLUSTER_PHASE,
    HIBERNATION_ANNOTATION,
    INACTIVITY_MINUTES_ANNOTATION,
    SCALE_TO_ZERO_ENABLED_ANNOTATION,
    ClusterRef,
    Credentials,
    PostgresCluster,
    ScheduledBackup,
    SidecarSettings,
)

POD_NAME = "pg-1"


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_cluster(current_primary=POD_NAME, enabled=True, phase=HEALTHY_CLUSTER_PHASE, hibernated=False, minutes="30"):
    annotations = {INACTIVITY_MINUTES_ANNOTATION: minutes}
    if enabled:
        annotations[SCALE_TO_ZERO_ENABLED_ANNOTATION] = "true"
    if hibernated:
        annotations[HIBERNATION_ANNOTATION] = "on"
    return PostgresCluster(
        name="pg",
        namespace="db",
        current_primary=current_primary,
        phase=phase,
        annotations=annotations,
        resource_version="1",
    )


def make_probe(count=0, error=None):
    probe = Mock()
    probe.count_active_sessions = AsyncMock(return_value=count, side_effect=error)
    probe.close = AsyncMock()
    return probe


@pytest.fixture
def settings():
    return SidecarSettings(
        pod_name=POD_NAME,
        cluster=ClusterRef(namespace="db", name="pg"),
        check_interval=timedelta(milliseconds=10),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(clock):
    return ActivityTracker(clock=clock)


@pytest.fixture
def store():
    store = Mock()
    store.get_cluster = AsyncMock(return_value=make_cluster())
    store.update_cluster = AsyncMock(side_effect=lambda cluster: cluster)
    store.get_credentials = AsyncMock(return_value=Credentials(username="postgres", password="pw"))
    store.get_scheduled_backup = AsyncMock(return_value=ScheduledBackup(name="pg", namespace="db", schedule="0 0 0 * * *"))
    store.update_scheduled_backup = AsyncMock(side_effect=lambda backup: backup)
    return store


def make_controller(settings, store, tracker, probes):
    factory = Mock(side_effect=list(probes))
    controller = HibernationController(settings, store, probe_factory=factory, tracker=tracker)
    return controller, factory


def idle_for(tracker, clock, minutes):
    tracker.last_active = clock.now - timedelta(minutes=minutes)


class TestTick:
    """Test single iterations of the control loop."""

    @pytest.mark.asyncio
    async def test_idle_cluster_is_hibernated_and_backup_paused(self, settings, store, tracker, clock):
        controller, _ = make_controller(settings, store, tracker, [make_probe(count=0)])

        assert await controller.tick() is True
        assert controller.state is ControllerState.ACTIVE
        store.update_cluster.assert_not_called()

        clock.advance(minutes=31)
        assert await controller.tick() is True

        assert controller.state is ControllerState.HIBERNATED
        store.get_cluster.assert_any_await(force_refresh=True)
        written = store.update_cluster.call_args.args[0]
        assert written.annotations[HIBERNATION_ANNOTATION] == "on"
        assert written.annotations[SCALE_TO_ZERO_ENABLED_ANNOTATION] == "true"
        suspended = store.update_scheduled_backup.call_args.args[0]
        assert suspended.suspend is True

    @pytest.mark.asyncio
    async def test_hibernation_does_not_mutate_cached_cluster(self, settings, store, tracker, clock):
        cluster = make_cluster()
        store.get_cluster.return_value = cluster
        controller, _ = make_controller(settings, store, tracker, [make_probe(count=0)])
        idle_for(tracker, clock, 31)

        await controller.tick()

        assert HIBERNATION_ANNOTATION not in cluster.annotations

    @pytest.mark.asyncio
    async def test_open_sessions_keep_cluster_running(self, settings, store, tracker, clock):
        controller, _ = make_controller(settings, store, tracker, [make_probe(count=4)])
        idle_for(tracker, clock, 120)

        await controller.tick()

        assert controller.state is ControllerState.ACTIVE
        assert tracker.last_active == clock.now
        store.update_cluster.assert_not_called()

    @pytest.mark.asyncio
    async def test_refused_connection_refreshes_credentials(self, settings, store, tracker, clock):
        refused = make_probe(error=ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused"))
        healthy = make_probe(count=2)
        controller, factory = make_controller(settings, store, tracker, [refused, healthy])
        idle_for(tracker, clock, 120)

        assert await controller.tick() is True

        assert store.get_credentials.await_count == 2
        assert factory.call_count == 2
        refused.close.assert_awaited_once()
        assert controller.probe is healthy
        assert controller.state is ControllerState.ACTIVE
        assert tracker.last_active == clock.now
        store.update_cluster.assert_not_called()

    @pytest.mark.asyncio
    async def test_retry_failure_is_logged_and_loop_continues(self, settings, store, tracker):
        refused = make_probe(error=ProbeConnectionRefusedError("refused"))
        still_refused = make_probe(error=ProbeConnectionRefusedError("refused"))
        controller, _ = make_controller(settings, store, tracker, [refused, still_refused])

        assert await controller.tick() is True
        store.update_cluster.assert_not_called()

    @pytest.mark.asyncio
    async def test_query_error_is_not_retried(self, settings, store, tracker):
        controller, factory = make_controller(settings, store, tracker, [make_probe(error=ProbeQueryError("boom"))])

        assert await controller.tick() is True

        assert factory.call_count == 1
        assert store.get_credentials.await_count == 1

    @pytest.mark.asyncio
    async def test_non_primary_skips_probe_and_resets(self, settings, store, tracker, clock):
        store.get_cluster.return_value = make_cluster(current_primary="pg-2")
        controller, factory = make_controller(settings, store, tracker, [make_probe()])
        idle_for(tracker, clock, 120)

        assert await controller.tick() is True

        factory.assert_not_called()
        assert tracker.last_active is None
        assert controller.state is ControllerState.DISABLED
        store.update_cluster.assert_not_called()

    @pytest.mark.asyncio
    async def test_bootstrapping_cluster_counts_as_primary(self, settings, store, tracker):
        store.get_cluster.return_value = make_cluster(current_primary="")
        controller, factory = make_controller(settings, store, tracker, [make_probe(count=1)])

        await controller.tick()

        factory.assert_called_once()
        assert controller.state is ControllerState.ACTIVE

    @pytest.mark.asyncio
    async def test_disabled_feature_resets_tracking(self, settings, store, tracker, clock):
        store.get_cluster.return_value = make_cluster(enabled=False)
        controller, factory = make_controller(settings, store, tracker, [make_probe()])
        idle_for(tracker, clock, 120)

        await controller.tick()

        factory.assert_not_called()
        assert tracker.last_active is None
        assert controller.state is ControllerState.DISABLED

    @pytest.mark.asyncio
    async def test_cluster_read_failure_skips_tick(self, settings, store, tracker):
        store.get_cluster.side_effect = ClusterStoreError("api down", status=503)
        controller, factory = make_controller(settings, store, tracker, [make_probe()])

        assert await controller.tick() is True
        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_demotion_stops_loop_without_pausing_backup(self, settings, store, tracker, clock):
        store.update_cluster.side_effect = NotPrimaryError(POD_NAME, "pg-2")
        controller, _ = make_controller(settings, store, tracker, [make_probe(count=0)])
        idle_for(tracker, clock, 31)

        assert await controller.tick() is False

        assert controller.state is ControllerState.STOPPED
        store.get_scheduled_backup.assert_not_called()
        store.update_scheduled_backup.assert_not_called()

    @pytest.mark.asyncio
    async def test_conflict_is_retried_on_next_tick(self, settings, store, tracker, clock):
        store.update_cluster.side_effect = [ConflictError("Cluster", "pg"), make_cluster(hibernated=True)]
        controller, _ = make_controller(settings, store, tracker, [make_probe(count=0)])
        idle_for(tracker, clock, 31)

        assert await controller.tick() is True
        assert controller.state is ControllerState.HIBERNATING
        store.update_scheduled_backup.assert_not_called()

        assert await controller.tick() is True
        assert controller.state is ControllerState.HIBERNATED
        assert store.update_cluster.await_count == 2
        store.update_scheduled_backup.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_already_hibernated_writes_nothing(self, settings, store, tracker, clock):
        store.get_cluster.return_value = make_cluster(hibernated=True)
        store.get_scheduled_backup.return_value = ScheduledBackup(name="pg", namespace="db", suspend=True)
        controller, _ = make_controller(settings, store, tracker, [make_probe(count=0)])
        idle_for(tracker, clock, 31)

        await controller.tick()
        await controller.tick()

        store.update_cluster.assert_not_called()
        store.update_scheduled_backup.assert_not_called()
        assert controller.state is ControllerState.HIBERNATED

    @pytest.mark.asyncio
    async def test_unhealthy_cluster_is_left_alone(self, settings, store, tracker, clock):
        store.get_cluster.return_value = make_cluster(phase="Setting up primary")
        controller, _ = make_controller(settings, store, tracker, [make_probe(count=0)])
        idle_for(tracker, clock, 31)

        assert await controller.tick() is True

        store.update_cluster.assert_not_called()
        store.get_scheduled_backup.assert_not_called()

    @pytest.mark.asyncio
    async def test_custom_inactivity_window(self, settings, store, tracker, clock):
        store.get_cluster.return_value = make_cluster(minutes="5")
        controller, _ = make_controller(settings, store, tracker, [make_probe(count=0)])
        idle_for(tracker, clock, 10)

        assert await controller.tick() is True

        written = store.update_cluster.call_args.args[0]
        assert written.annotations[HIBERNATION_ANNOTATION] == "on"
        store.update_scheduled_backup.assert_awaited_once()
        assert store.update_scheduled_backup.call_args.args[0].suspend is True
        assert controller.state is ControllerState.HIBERNATED

    @pytest.mark.asyncio
    async def test_rotated_password_with_space(self, settings, store, tracker, clock):
        store.get_credentials.side_effect = [
            Credentials(username="postgres", password="pw"),
            Credentials(username="postgres", password="rotated pw"),
        ]
        pool = Mock()
        pool.fetchval = AsyncMock(return_value=2)
        pool.close = AsyncMock()
        create_pool = AsyncMock(side_effect=[ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused"), pool])
        controller = HibernationController(settings, store, tracker=tracker)
        idle_for(tracker, clock, 120)

        with patch("stz.probe.asyncpg.create_pool", new=create_pool):
            assert await controller.tick() is True

        assert create_pool.await_count == 2
        assert create_pool.call_args.kwargs["password"] == "rotated pw"
        assert controller.state is ControllerState.ACTIVE
        assert tracker.last_active == clock.now

    @pytest.mark.asyncio
    async def test_unusable_connection_string_skips_tick(self, settings, store, tracker):
        controller = HibernationController(settings, store, probe_factory=Mock(side_effect=ProbeError("invalid connection string")), tracker=tracker)

        assert await controller.tick() is True

        assert controller.probe is None
        store.update_cluster.assert_not_called()


class TestHibernate:
    @pytest.mark.asyncio
    async def test_outcomes(self, settings, store, tracker):
        controller, _ = make_controller(settings, store, tracker, [])

        assert await controller.hibernate() is HibernationOutcome.HIBERNATED

        store.get_cluster.return_value = make_cluster(hibernated=True)
        assert await controller.hibernate() is HibernationOutcome.ALREADY_HIBERNATED

        store.get_cluster.return_value = make_cluster(phase="Failing over")
        assert await controller.hibernate() is HibernationOutcome.SKIPPED_UNHEALTHY

        store.update_cluster.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_read_failure_propagates(self, settings, store, tracker):
        store.get_cluster.side_effect = ClusterStoreError("api down")
        controller, _ = make_controller(settings, store, tracker, [])

        with pytest.raises(ClusterStoreError):
            await controller.hibernate()


class TestPauseScheduledBackup:
    @pytest.mark.asyncio
    async def test_missing_scheduled_backup_is_ignored(self, settings, store, tracker):
        store.get_scheduled_backup.side_effect = ClusterNotFoundError("ScheduledBackup", "pg", "db")
        controller, _ = make_controller(settings, store, tracker, [])

        await controller.pause_scheduled_backup()

        store.update_scheduled_backup.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_failure_is_logged(self, settings, store, tracker):
        store.update_scheduled_backup.side_effect = ConflictError("ScheduledBackup", "pg")
        controller, _ = make_controller(settings, store, tracker, [])

        await controller.pause_scheduled_backup()

        store.update_scheduled_backup.assert_awaited_once()


class TestCheckActivity:
    @pytest.mark.asyncio
    async def test_probe_created_lazily(self, settings, store, tracker):
        controller, factory = make_controller(settings, store, tracker, [make_probe(count=1)])

        assert await controller.check_activity(30) is ActivityVerdict.ACTIVE

        factory.assert_called_once_with(
            "host=127.0.0.1 port=5432 user='postgres' password='pw' dbname='postgres' sslmode=require"
        )


class TestRun:
    """Test the control loop."""

    @pytest.mark.asyncio
    async def test_stops_when_event_is_set(self, settings, store, tracker):
        controller, _ = make_controller(settings, store, tracker, [make_probe(count=1)])
        stop_event = asyncio.Event()

        task = asyncio.create_task(controller.run(stop_event))
        await asyncio.sleep(0.05)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1)

        assert store.get_cluster.await_count >= 1

    @pytest.mark.asyncio
    async def test_stop_interrupts_blocked_tick(self, settings, store, tracker):
        async def slow_get_cluster(force_refresh=False):
            await asyncio.sleep(5)
            return make_cluster()

        store.get_cluster.side_effect = slow_get_cluster
        controller, _ = make_controller(settings, store, tracker, [make_probe(count=1)])
        stop_event = asyncio.Event()

        task = asyncio.create_task(controller.run(stop_event))
        await asyncio.sleep(0.05)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1)

        store.get_cluster.assert_awaited_once()
        store.update_cluster.assert_not_called()

    @pytest.mark.asyncio
    async def test_set_event_exits_before_first_tick(self, settings, store, tracker):
        controller, _ = make_controller(settings, store, tracker, [])
        stop_event = asyncio.Event()
        stop_event.set()

        await asyncio.wait_for(controller.run(stop_event), timeout=1)

        store.get_cluster.assert_not_called()

    @pytest.mark.asyncio
    async def test_demotion_ends_run(self, settings, store, tracker, clock):
        store.update_cluster.side_effect = NotPrimaryError(POD_NAME, "pg-2")
        controller, _ = make_controller(settings, store, tracker, [make_probe(count=0)])
        idle_for(tracker, clock, 31)

        await asyncio.wait_for(controller.run(asyncio.Event()), timeout=1)

        assert controller.state is ControllerState.STOPPED
        store.update_cluster.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_releases_probe(self, settings, store, tracker):
        probe = make_probe(count=1)
        controller, _ = make_controller(settings, store, tracker, [probe])
        await controller.init_probe()

        await controller.close()
        await controller.close()

        probe.close.assert_awaited_once()
        assert controller.probe is None
