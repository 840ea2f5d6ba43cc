"""
Exceptions raised by the scale-to-zero sidecar.

Kubernetes API failures are translated into these types at the cluster client
boundary so the controller can branch on the failure class rather than on
status codes or message text.
"""

from typing import Optional

from kubernetes.client.exceptions import ApiException


class ScaleToZeroError(Exception):
    """Base class for all sidecar errors."""


class ClusterStoreError(ScaleToZeroError):
    """Raised when a read or write against the Kubernetes API fails."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class ClusterNotFoundError(ClusterStoreError):
    """Raised when the requested resource does not exist."""

    def __init__(self, kind: str, name: str, namespace: str):
        self.kind = kind
        self.name = name
        self.namespace = namespace
        super().__init__(f"{kind} {namespace}/{name} not found", status=404)


class ConflictError(ClusterStoreError):
    """Raised when an update lost an optimistic-concurrency race."""

    def __init__(self, kind: str, name: str, message: Optional[str] = None):
        self.kind = kind
        self.name = name
        super().__init__(message or f"{kind} {name} was modified concurrently", status=409)


class CredentialsError(ClusterStoreError):
    """Raised when the superuser secret is present but unusable."""


class NotPrimaryError(ScaleToZeroError):
    """
    Raised when a write is rejected because this pod is no longer the primary.

    This is the only condition that stops the control loop: a demoted instance
    must not keep writing the hibernation marker.
    """

    def __init__(self, pod_name: str, current_primary: Optional[str] = None):
        self.pod_name = pod_name
        self.current_primary = current_primary
        message = f"pod {pod_name} is not the primary instance"
        if current_primary:
            message += f" (current primary: {current_primary})"
        super().__init__(message)


class ProbeError(ScaleToZeroError):
    """Base class for connection probe failures."""


class ProbeConnectionRefusedError(ProbeError):
    """The database refused the connection or rejected the credentials."""


class ProbeQueryError(ProbeError):
    """The activity query failed for any other reason."""


def from_api_exception(e: ApiException, kind: str, name: str, namespace: str) -> ClusterStoreError:
    """Translate a Kubernetes ApiException into a sidecar error."""
    if e.status == 404:
        return ClusterNotFoundError(kind, name, namespace)
    if e.status == 409:
        return ConflictError(kind, name, f"{kind} {namespace}/{name} conflict: {e.reason}")
    if e.status == 401:
        return ClusterStoreError(
            f"Kubernetes authentication failed while accessing {kind} {namespace}/{name}",
            status=e.status,
        )
    return ClusterStoreError(f"Kubernetes API error on {kind} {namespace}/{name}: {e.status} {e.reason}", status=e.status)
