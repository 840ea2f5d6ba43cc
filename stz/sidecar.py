"""
Sidecar runtime: wires the Kubernetes client, the cluster store and the
hibernation controller together and runs the control loop until shutdown.
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Optional

from kubernetes import client
from loguru import logger

from . import __plugin_name__, __version__
from .cluster_client import KubeClusterStore
from .controller import HibernationController
from .kubeconfig import KubeConfigHandler
from .models import SidecarSettings


class SidecarManager:
    """Manager for the scale-to-zero sidecar lifecycle."""

    def __init__(self, settings: SidecarSettings):
        self.settings = settings
        self.kube_client: Optional[client.ApiClient] = None
        self.store: Optional[KubeClusterStore] = None
        self.controller: Optional[HibernationController] = None
        self.shutdown_event = asyncio.Event()

    def connect(self) -> None:
        """Load Kubernetes configuration and build the cluster store."""
        try:
            KubeConfigHandler(self.settings.kubeconfig).load_context(self.settings.context)
        except Exception as e:
            logger.error(f"Failed to initialize Kubernetes client: {e}")
            raise

        self.kube_client = client.ApiClient()
        self.store = KubeClusterStore(
            custom_api=client.CustomObjectsApi(self.kube_client),
            core_v1=client.CoreV1Api(self.kube_client),
            cluster_ref=self.settings.cluster,
            pod_name=self.settings.pod_name,
            refresh_interval=self.settings.cluster_refresh_interval,
            group=self.settings.cnpg_group,
            version=self.settings.cnpg_version,
        )
        logger.info(f"Using CNPG API {self.settings.cnpg_group}/{self.settings.cnpg_version}")

    async def create_controller(self) -> None:
        """Create the controller and its first database probe."""
        if not self.store:
            raise RuntimeError("Cluster store not created. Call connect() first.")

        self.controller = HibernationController(self.settings, self.store)
        try:
            await self.controller.init_probe()
        except Exception as e:
            logger.error(f"Failed to initialize PostgreSQL probe: {e}")
            raise

    def setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, initiating shutdown...")
            loop.call_soon_threadsafe(self.shutdown_event.set)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def run(self) -> None:
        """Run the control loop until shutdown is requested or the loop stops itself."""
        if not self.controller:
            raise RuntimeError("Controller not created. Call create_controller() first.")
        await self.controller.run(self.shutdown_event)

    async def shutdown(self) -> None:
        logger.info("Shutting down sidecar...")
        if self.controller:
            await self.controller.close()
            self.controller = None
        if self.kube_client:
            self.kube_client.close()
            self.kube_client = None
        logger.info("Sidecar shutdown complete")

    @asynccontextmanager
    async def managed_sidecar(self):
        """Context manager for the sidecar lifecycle."""
        try:
            self.connect()
            await self.create_controller()
            yield self
        finally:
            await self.shutdown()


async def run_sidecar(settings: SidecarSettings) -> None:
    """Run the sidecar for the pod and cluster described by ``settings``."""
    logger.info(
        f"Starting {__plugin_name__} sidecar {__version__} "
        f"(pod: {settings.pod_name}, cluster: {settings.cluster})"
    )

    manager = SidecarManager(settings)
    manager.setup_signal_handlers()

    async with manager.managed_sidecar() as sidecar:
        await sidecar.run()
