"""
Data models for the scale-to-zero sidecar.
"""

import base64
import copy
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

HEALTHY_CLUSTER_PHASE = "Cluster in healthy state"
HIBERNATION_ANNOTATION = "cnpg.io/hibernation"
SCALE_TO_ZERO_ENABLED_ANNOTATION = "xata.io/scale-to-zero-enabled"
INACTIVITY_MINUTES_ANNOTATION = "xata.io/scale-to-zero-inactivity-minutes"

DEFAULT_INACTIVITY_MINUTES = 30
DEFAULT_CHECK_INTERVAL = timedelta(minutes=1)
DEFAULT_REFRESH_INTERVAL = timedelta(seconds=30)
DEFAULT_DATABASE = "postgres"
DEFAULT_PORT = 5432
LOOPBACK_HOST = "127.0.0.1"
CNPG_GROUP = "postgresql.cnpg.io"
CNPG_VERSION = "v1"


class ClusterRef(BaseModel):
    """Namespace and name of the monitored cluster."""

    model_config = ConfigDict(frozen=True)

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class PostgresCluster(BaseModel):
    """Pydantic view of a CloudNativePG Cluster custom object."""

    name: str
    namespace: str
    current_primary: str = ""  # status.currentPrimary, empty while bootstrapping
    phase: str = ""
    annotations: Dict[str, str] = Field(default_factory=dict)
    resource_version: Optional[str] = None
    resource: Dict[str, Any] = Field(default_factory=dict, repr=False)

    @classmethod
    def from_resource(cls, item: Dict[str, Any]) -> "PostgresCluster":
        metadata = item.get("metadata") or {}
        status = item.get("status") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            current_primary=status.get("currentPrimary") or "",
            phase=status.get("phase") or "",
            annotations=dict(metadata.get("annotations") or {}),
            resource_version=metadata.get("resourceVersion"),
            resource=item,
        )

    def to_resource(self) -> Dict[str, Any]:
        """Render the full object for a replace call, carrying annotations and resourceVersion."""
        item = copy.deepcopy(self.resource)
        metadata = item.setdefault("metadata", {})
        metadata["name"] = self.name
        metadata["namespace"] = self.namespace
        metadata["annotations"] = dict(self.annotations)
        if self.resource_version is not None:
            metadata["resourceVersion"] = self.resource_version
        return item

    @property
    def is_healthy(self) -> bool:
        return self.phase == HEALTHY_CLUSTER_PHASE

    @property
    def is_hibernated(self) -> bool:
        return self.annotations.get(HIBERNATION_ANNOTATION) == "on"


class ScheduledBackup(BaseModel):
    """Pydantic view of a CloudNativePG ScheduledBackup custom object."""

    name: str
    namespace: str
    cluster_name: str = ""
    schedule: str = ""
    suspend: Optional[bool] = None
    resource_version: Optional[str] = None
    resource: Dict[str, Any] = Field(default_factory=dict, repr=False)

    @classmethod
    def from_resource(cls, item: Dict[str, Any]) -> "ScheduledBackup":
        metadata = item.get("metadata") or {}
        spec = item.get("spec") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            cluster_name=(spec.get("cluster") or {}).get("name", ""),
            schedule=spec.get("schedule", ""),
            suspend=spec.get("suspend"),
            resource_version=metadata.get("resourceVersion"),
            resource=item,
        )

    def to_resource(self) -> Dict[str, Any]:
        item = copy.deepcopy(self.resource)
        metadata = item.setdefault("metadata", {})
        metadata["name"] = self.name
        metadata["namespace"] = self.namespace
        if self.resource_version is not None:
            metadata["resourceVersion"] = self.resource_version
        spec = item.setdefault("spec", {})
        if self.suspend is not None:
            spec["suspend"] = self.suspend
        return item


class Backup(BaseModel):
    """A single CloudNativePG Backup belonging to the cluster."""

    name: str
    phase: str = "unknown"
    method: Optional[str] = None
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None

    @classmethod
    def from_resource(cls, item: Dict[str, Any]) -> "Backup":
        status = item.get("status") or {}
        return cls(
            name=(item.get("metadata") or {}).get("name", ""),
            phase=status.get("phase") or "unknown",
            method=status.get("method") or (item.get("spec") or {}).get("method"),
            started_at=status.get("startedAt"),
            stopped_at=status.get("stoppedAt"),
        )


def _quote(value: str) -> str:
    """Quote a libpq connection string value."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


class Credentials(BaseModel):
    """Connection information for the local PostgreSQL instance."""

    username: str
    password: str = Field(repr=False)
    database: str = DEFAULT_DATABASE
    host: str = LOOPBACK_HOST  # the sidecar shares the pod network namespace
    port: int = DEFAULT_PORT

    @classmethod
    def from_secret_data(cls, data: Dict[str, str]) -> "Credentials":
        """Build credentials from the base64 encoded ``data`` of the superuser secret."""
        decoded = {key: base64.b64decode(value).decode("utf-8") for key, value in (data or {}).items()}

        database = decoded.get("dbname", "")
        if database in ("", "*"):
            database = DEFAULT_DATABASE

        port = DEFAULT_PORT
        if decoded.get("port"):
            port = int(decoded["port"])

        return cls(
            username=decoded.get("username", ""),
            password=decoded.get("password", ""),
            database=database,
            port=port,
        )

    def conn_string(self) -> str:
        return (
            f"host={self.host} port={self.port} user={_quote(self.username)} "
            f"password={_quote(self.password)} dbname={_quote(self.database)} sslmode=require"
        )


class ScaleToZeroConfig(BaseModel):
    """Per-cluster feature configuration read from the cluster annotations."""

    enabled: bool = False
    inactivity_minutes: int = DEFAULT_INACTIVITY_MINUTES

    @classmethod
    def from_annotations(cls, annotations: Optional[Dict[str, str]]) -> "ScaleToZeroConfig":
        annotations = annotations or {}
        enabled = annotations.get(SCALE_TO_ZERO_ENABLED_ANNOTATION) == "true"

        inactivity_minutes = DEFAULT_INACTIVITY_MINUTES
        value = annotations.get(INACTIVITY_MINUTES_ANNOTATION)
        if value is not None:
            try:
                inactivity_minutes = int(value)
            except ValueError:
                logger.warning(
                    f"Invalid {INACTIVITY_MINUTES_ANNOTATION} annotation {value!r}, "
                    f"using default of {DEFAULT_INACTIVITY_MINUTES} minutes"
                )

        return cls(enabled=enabled, inactivity_minutes=inactivity_minutes)


class CachedClusterState(BaseModel):
    """Last fetched cluster and the monotonic time it was fetched at."""

    cluster: PostgresCluster
    fetched_at: float

    def is_fresh(self, refresh_interval: timedelta, now: float) -> bool:
        return now - self.fetched_at < refresh_interval.total_seconds()


class SidecarSettings(BaseModel):
    """Process-wide settings, resolved once at startup and passed down explicitly."""

    pod_name: str
    cluster: ClusterRef
    check_interval: timedelta = DEFAULT_CHECK_INTERVAL
    cluster_refresh_interval: timedelta = DEFAULT_REFRESH_INTERVAL
    cnpg_group: str = CNPG_GROUP
    cnpg_version: str = CNPG_VERSION
    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    log_level: str = "INFO"
