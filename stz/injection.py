"""
Pod mutation for the scale-to-zero sidecar.

The operator calls this when an instance pod is created: the primary pod gets
the sidecar container, every other pod is left untouched.
"""

import json
from typing import Any, Dict, List, Optional, Union

from kubernetes.utils import parse_quantity
from loguru import logger
from pydantic import BaseModel, Field, field_validator

SIDECAR_CONTAINER_NAME = "scale-to-zero"
DEFAULT_SIDECAR_IMAGE = "ghcr.io/xataio/cnpg-i-scale-to-zero-sidecar:main"
DEFAULT_LOG_LEVEL = "info"

DEFAULT_CPU_REQUEST = "50m"
DEFAULT_CPU_LIMIT = "100m"
DEFAULT_MEMORY_REQUEST = "32Mi"
DEFAULT_MEMORY_LIMIT = "64Mi"


def _quantity_or_default(value: Optional[str], default: str, field: str) -> str:
    if not value:
        return default
    try:
        parse_quantity(value)
    except ValueError:
        logger.warning(f"Invalid sidecar {field} {value!r}, using default {default}")
        return default
    return value


class ResourceConfig(BaseModel):
    """CPU and memory settings for the injected container."""

    cpu_request: Optional[str] = None
    cpu_limit: Optional[str] = None
    memory_request: Optional[str] = None
    memory_limit: Optional[str] = None

    def to_resource_requirements(self) -> Dict[str, Dict[str, str]]:
        return {
            "requests": {
                "cpu": _quantity_or_default(self.cpu_request, DEFAULT_CPU_REQUEST, "cpu request"),
                "memory": _quantity_or_default(self.memory_request, DEFAULT_MEMORY_REQUEST, "memory request"),
            },
            "limits": {
                "cpu": _quantity_or_default(self.cpu_limit, DEFAULT_CPU_LIMIT, "cpu limit"),
                "memory": _quantity_or_default(self.memory_limit, DEFAULT_MEMORY_LIMIT, "memory limit"),
            },
        }


class PluginConfig(BaseModel):
    """Settings of the injected sidecar."""

    sidecar_image: str = DEFAULT_SIDECAR_IMAGE
    log_level: str = DEFAULT_LOG_LEVEL
    resources: ResourceConfig = Field(default_factory=ResourceConfig)

    @field_validator("sidecar_image", mode="before")
    @classmethod
    def default_image(cls, v):
        return v or DEFAULT_SIDECAR_IMAGE

    @field_validator("log_level", mode="before")
    @classmethod
    def default_log_level(cls, v):
        return v or DEFAULT_LOG_LEVEL

    @field_validator("resources", mode="before")
    @classmethod
    def default_resources(cls, v):
        return v or ResourceConfig()


def get_kind(definition: Union[str, bytes, Dict[str, Any]]) -> str:
    """Return the kind of a Kubernetes object given as JSON or as a dict."""
    if isinstance(definition, (str, bytes)):
        definition = json.loads(definition)
    return definition.get("kind", "")


def build_sidecar_container(cluster: Dict[str, Any], pod: Dict[str, Any], config: PluginConfig) -> Dict[str, Any]:
    pod_metadata = pod.get("metadata") or {}
    return {
        "name": SIDECAR_CONTAINER_NAME,
        "image": config.sidecar_image,
        "args": ["sidecar"],
        "env": [
            {"name": "NAMESPACE", "value": pod_metadata.get("namespace", "")},
            {"name": "CLUSTER_NAME", "value": (cluster.get("metadata") or {}).get("name", "")},
            {"name": "POD_NAME", "value": pod_metadata.get("name", "")},
            {"name": "LOG_LEVEL", "value": config.log_level},
        ],
        "resources": config.resources.to_resource_requirements(),
    }


def reconcile_pod(cluster: Dict[str, Any], pod: Dict[str, Any], config: PluginConfig) -> List[Dict[str, Any]]:
    """
    Compute the JSON patch that injects the sidecar into ``pod``.

    Args:
        cluster: The CNPG Cluster object
        pod: The pod being created
        config: Sidecar settings

    Returns:
        A list of JSON patch operations, empty when nothing has to change
    """
    if get_kind(pod) != "Pod":
        return []

    pod_name = (pod.get("metadata") or {}).get("name", "")
    cluster_name = (cluster.get("metadata") or {}).get("name", "")
    current_primary = (cluster.get("status") or {}).get("currentPrimary") or ""

    if current_primary and pod_name != current_primary:
        logger.info(f"[{cluster_name}] Pod {pod_name} is not the current primary ({current_primary}), skipping sidecar injection")
        return []

    containers = (pod.get("spec") or {}).get("containers")
    if any(c.get("name") == SIDECAR_CONTAINER_NAME for c in containers or []):
        logger.debug(f"[{cluster_name}] Pod {pod_name} already has the sidecar")
        return []

    container = build_sidecar_container(cluster, pod, config)
    logger.info(f"[{cluster_name}] Injecting sidecar into pod {pod_name} (image: {config.sidecar_image})")

    if containers is None:
        return [{"op": "add", "path": "/spec/containers", "value": [container]}]
    return [{"op": "add", "path": "/spec/containers/-", "value": container}]
