"""
Cluster State Client: reads and writes the CloudNativePG cluster and its
dependent objects through the Kubernetes API.
"""

import asyncio
import time
from datetime import timedelta
from typing import Callable, List, Optional, Protocol

from kubernetes import client
from kubernetes.client.exceptions import ApiException
from loguru import logger

from .errors import (
    ClusterStoreError,
    CredentialsError,
    NotPrimaryError,
    from_api_exception,
)
from .models import (
    CNPG_GROUP,
    CNPG_VERSION,
    DEFAULT_REFRESH_INTERVAL,
    Backup,
    CachedClusterState,
    ClusterRef,
    Credentials,
    PostgresCluster,
    ScheduledBackup,
)

FORCE_REFRESH = True
DO_NOT_FORCE_REFRESH = False

# Status codes with which the API server (or an admission policy guarding the
# cluster object) rejects a write that raced with a switchover.
REJECTED_WRITE_STATUSES = (403, 409, 422)


class ClusterStore(Protocol):
    """Operations the hibernation controller needs from the backing cluster store."""

    async def get_cluster(self, force_refresh: bool = False) -> PostgresCluster: ...

    async def update_cluster(self, cluster: PostgresCluster) -> PostgresCluster: ...

    async def get_credentials(self) -> Credentials: ...

    async def get_scheduled_backup(self) -> ScheduledBackup: ...

    async def update_scheduled_backup(self, scheduled_backup: ScheduledBackup) -> ScheduledBackup: ...


class KubeClusterStore:
    """
    ClusterStore backed by the Kubernetes API.

    The cluster object is cached for ``refresh_interval`` to keep the per-tick
    API traffic low; callers that are about to write pass ``force_refresh``.
    """

    def __init__(
        self,
        custom_api: client.CustomObjectsApi,
        core_v1: client.CoreV1Api,
        cluster_ref: ClusterRef,
        pod_name: str,
        refresh_interval: Optional[timedelta] = None,
        group: str = CNPG_GROUP,
        version: str = CNPG_VERSION,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.custom_api = custom_api
        self.core_v1 = core_v1
        self.cluster_ref = cluster_ref
        self.pod_name = pod_name
        self.refresh_interval = refresh_interval or DEFAULT_REFRESH_INTERVAL
        self.group = group
        self.version = version
        self._clock = clock
        self._cached: Optional[CachedClusterState] = None

    @property
    def cached(self) -> Optional[CachedClusterState]:
        return self._cached

    async def get_cluster(self, force_refresh: bool = False) -> PostgresCluster:
        """Return the cluster, fetching it when the cache is stale or a refresh is forced."""
        now = self._clock()
        if not force_refresh and self._cached is not None and self._cached.is_fresh(self.refresh_interval, now):
            return self._cached.cluster

        item = await self._get_object("clusters", "Cluster", self.cluster_ref.name)
        cluster = PostgresCluster.from_resource(item)
        self._cached = CachedClusterState(cluster=cluster, fetched_at=self._clock())
        return cluster

    async def update_cluster(self, cluster: PostgresCluster) -> PostgresCluster:
        """Replace the cluster object, relying on its resourceVersion for optimistic concurrency."""
        try:
            item = await asyncio.to_thread(
                self.custom_api.replace_namespaced_custom_object,
                group=self.group,
                version=self.version,
                namespace=cluster.namespace or self.cluster_ref.namespace,
                plural="clusters",
                name=cluster.name or self.cluster_ref.name,
                body=cluster.to_resource(),
            )
        except ApiException as e:
            if e.status in REJECTED_WRITE_STATUSES:
                await self._raise_if_demoted()
            raise from_api_exception(e, "Cluster", cluster.name, cluster.namespace) from e

        updated = PostgresCluster.from_resource(item)
        self._cached = CachedClusterState(cluster=updated, fetched_at=self._clock())
        return updated

    async def _raise_if_demoted(self) -> None:
        """Raise NotPrimaryError when a fresh read shows another pod as the primary."""
        try:
            cluster = await self.get_cluster(force_refresh=True)
        except ClusterStoreError as e:
            logger.warning(f"[{self.cluster_ref}] Could not re-read cluster after rejected update: {e}")
            return

        if cluster.current_primary and cluster.current_primary != self.pod_name:
            raise NotPrimaryError(self.pod_name, cluster.current_primary)

    async def get_credentials(self) -> Credentials:
        """
        Read the superuser credentials.

        Superuser access is needed to see the sessions of every user in
        pg_stat_activity; the application user only sees its own.
        """
        secret_name = f"{self.cluster_ref.name}-superuser"
        try:
            secret = await asyncio.to_thread(
                self.core_v1.read_namespaced_secret,
                name=secret_name,
                namespace=self.cluster_ref.namespace,
            )
        except ApiException as e:
            raise from_api_exception(e, "Secret", secret_name, self.cluster_ref.namespace) from e

        try:
            credentials = Credentials.from_secret_data(secret.data or {})
        except (ValueError, UnicodeDecodeError) as e:
            raise CredentialsError(f"Secret {self.cluster_ref.namespace}/{secret_name} is malformed: {e}") from e

        if not credentials.username or not credentials.password:
            raise CredentialsError(f"Secret {self.cluster_ref.namespace}/{secret_name} has no username or password")

        logger.info(f"[{self.cluster_ref}] Retrieved PostgreSQL credentials from {secret_name}")
        return credentials

    async def get_scheduled_backup(self) -> ScheduledBackup:
        item = await self._get_object("scheduledbackups", "ScheduledBackup", self.cluster_ref.name)
        return ScheduledBackup.from_resource(item)

    async def update_scheduled_backup(self, scheduled_backup: ScheduledBackup) -> ScheduledBackup:
        try:
            item = await asyncio.to_thread(
                self.custom_api.replace_namespaced_custom_object,
                group=self.group,
                version=self.version,
                namespace=scheduled_backup.namespace or self.cluster_ref.namespace,
                plural="scheduledbackups",
                name=scheduled_backup.name,
                body=scheduled_backup.to_resource(),
            )
        except ApiException as e:
            raise from_api_exception(e, "ScheduledBackup", scheduled_backup.name, scheduled_backup.namespace) from e
        return ScheduledBackup.from_resource(item)

    async def get_cluster_backups(self) -> List[Backup]:
        """List the Backup objects labelled with this cluster's name."""
        try:
            result = await asyncio.to_thread(
                self.custom_api.list_namespaced_custom_object,
                group=self.group,
                version=self.version,
                namespace=self.cluster_ref.namespace,
                plural="backups",
                label_selector=f"cnpg.io/cluster={self.cluster_ref.name}",
            )
        except ApiException as e:
            raise from_api_exception(e, "Backup", self.cluster_ref.name, self.cluster_ref.namespace) from e
        return [Backup.from_resource(item) for item in result.get("items", [])]

    async def _get_object(self, plural: str, kind: str, name: str) -> dict:
        try:
            return await asyncio.to_thread(
                self.custom_api.get_namespaced_custom_object,
                group=self.group,
                version=self.version,
                namespace=self.cluster_ref.namespace,
                plural=plural,
                name=name,
            )
        except ApiException as e:
            raise from_api_exception(e, kind, name, self.cluster_ref.namespace) from e
