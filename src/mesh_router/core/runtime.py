"""
Router runtime.

Wires the configuration store, backend pool, forwarding client, health prober,
dispatcher and outcome stream together and owns their start/stop order.
"""

import logging
import time
from pathlib import Path
from typing import Callable, Optional

import httpx

from mesh_router.core.config import Settings, get_settings
from mesh_router.core.proxy import ForwardingClient
from mesh_router.dispatch import RequestDispatcher
from mesh_router.events import OutcomeStream, get_outcome_store
from mesh_router.health import HealthProber
from mesh_router.pool import BackendPool
from mesh_router.routing import RoutingConfigStore, RoutingSnapshot

logger = logging.getLogger(__name__)


class RouterRuntime:
    """All long-lived router components of one process."""

    def __init__(self,
                 settings: Optional[Settings] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.settings = settings or get_settings()
        self.config_store = RoutingConfigStore(
            config_path=Path(self.settings.ROUTING_CONFIG_FILE),
            default_service=self.settings.DEFAULT_SERVICE
        )
        self.pool = BackendPool(clock=clock)
        self.client = ForwardingClient(self.settings, transport=transport)
        self.stream = OutcomeStream(get_outcome_store())
        self.prober = HealthProber(
            self.pool,
            self.client,
            probe_config=lambda: self.config_store.current.config.probes
        )
        self.dispatcher = RequestDispatcher(
            self.config_store,
            self.pool,
            self.client,
            stream=self.stream
        )
        self.started_at: Optional[float] = None

        self.config_store.add_listener(self._on_config_published)

    def _on_config_published(self, snapshot: RoutingSnapshot) -> None:
        self.pool.sync_from_config(snapshot.config)
        self.dispatcher.balancers.prune(
            (name, version)
            for name, service in snapshot.config.services.items()
            for version in service.versions
        )

    async def start(self) -> None:
        """
        Load configuration and start background work.

        Raises:
            ConfigError: If the initial configuration is invalid
        """
        await self.client.start()
        snapshot = self.config_store.load()
        self.prober.start()
        self.config_store.start_watching(self.settings.CONFIG_WATCH_INTERVAL)
        self.started_at = time.time()

        logger.info(
            "Router runtime started",
            extra={
                "generation": snapshot.generation,
                "services": sorted(snapshot.services),
                "endpoints": len(self.pool.endpoint_ids()),
                "watch_interval": self.settings.CONFIG_WATCH_INTERVAL
            }
        )

    async def stop(self) -> None:
        await self.config_store.stop_watching()
        await self.prober.stop()
        await self.client.close()
        logger.info("Router runtime stopped")
