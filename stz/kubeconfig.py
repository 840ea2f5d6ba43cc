"""
Kubernetes client configuration loading.
"""

import os
from typing import Optional

from kubernetes import config
from loguru import logger


class KubeConfigHandler:
    """Loads Kubernetes client configuration from the pod or a kubeconfig file."""

    def __init__(self, kubeconfig: Optional[str] = None):
        self.kubeconfig = kubeconfig

    @staticmethod
    def running_in_cluster() -> bool:
        return bool(os.environ.get("KUBERNETES_SERVICE_HOST"))

    def load_context(self, context: Optional[str] = None) -> None:
        """
        Load client configuration.

        The in-cluster service account is used when running inside a pod and
        no kubeconfig or context was given explicitly. Otherwise the kubeconfig
        file (or the default location) is loaded with the requested context.
        """
        if self.kubeconfig is None and context is None and self.running_in_cluster():
            config.load_incluster_config()
            logger.debug("Loaded in-cluster Kubernetes configuration")
            return

        config.load_kube_config(config_file=self.kubeconfig, context=context)
        logger.debug(f"Loaded kubeconfig {self.kubeconfig or '~/.kube/config'} (context: {context or 'current'})")
