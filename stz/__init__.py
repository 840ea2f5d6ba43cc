"""
Scale-to-zero sidecar for CloudNativePG clusters.

Watches client sessions on the primary PostgreSQL instance and hibernates the
cluster after a configurable period of inactivity, pausing its scheduled
backup. The CloudNativePG operator carries out the hibernation itself.
"""

__version__ = "0.1.0"
__author__ = "Xata"

# Package metadata
__title__ = "stz"
__plugin_name__ = "cnpg-i-scale-to-zero.xata.io"
__description__ = "Plugin to scale down a CNPG PostgreSQL cluster to zero"
__url__ = "https://github.com/xataio/cnpg-i-scale-to-zero"
__license__ = "Apache License 2.0"

# Export main components for easier imports
from .models import (
    ClusterRef,
    Credentials,
    PostgresCluster,
    ScaleToZeroConfig,
    SidecarSettings,
)

__all__ = [
    "ClusterRef",
    "Credentials",
    "PostgresCluster",
    "ScaleToZeroConfig",
    "SidecarSettings",
    "__version__",
]
