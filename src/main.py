"""
Main entry point for the device plugin operator.

This module wires configuration, the store, the kind registry, the
controller and the health/status API together and runs them until a
shutdown signal arrives.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from api import ApiServer
from config import Config
from controller import Controller
from events import EventBus
from kube import KubernetesStore
from plugins.registry import PluginRegistry, register_builtin_plugins
from store import OrchestrationStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the controller and API server."""

    def __init__(
        self,
        config: Optional[Config] = None,
        store: Optional[OrchestrationStore] = None,
    ):
        self.config = config or Config.from_env()
        self.store = store
        self.registry: Optional[PluginRegistry] = None
        self.controller: Optional[Controller] = None
        self.event_bus: Optional[EventBus] = None
        self.api_server: Optional[ApiServer] = None
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logging.getLogger().setLevel(self.config.api.log_level.upper())
        logger.info("Initializing device plugin operator")

        self.registry = PluginRegistry()
        register_builtin_plugins(self.registry, self.config.controller.enabled_kinds)
        if not self.registry.list_kinds():
            raise ValueError(
                f"No device plugin kinds enabled "
                f"(ENABLED_KINDS={','.join(self.config.controller.enabled_kinds)})"
            )

        if self.store is None:
            kube_store = KubernetesStore(self.config.store, self.registry)
            await kube_store.connect()
            self.store = kube_store

        self.event_bus = EventBus()
        self.controller = Controller(
            store=self.store,
            registry=self.registry,
            config=self.config.controller,
            event_bus=self.event_bus,
            namespace=self.config.store.namespace,
        )
        self.api_server = ApiServer(self.controller, self.event_bus, self.config.api)

        kinds = ", ".join(self.registry.list_kind_names())
        logger.info(f"All components initialized (kinds: {kinds})")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting device plugin operator")

        tasks: List[asyncio.Task] = [
            asyncio.create_task(self.controller.start()),
            asyncio.create_task(self.api_server.start()),
        ]

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping device plugin operator")
        self.running = False

        if self.controller:
            await self.controller.stop()

        if self.api_server:
            await self.api_server.stop()

        if self.store:
            await self.store.close()

        logger.info("Device plugin operator stopped")


async def main():
    """Main entry point."""
    app = Application()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
