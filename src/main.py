"""
Main entry point for the SopsSecret operator.

Wires the control plane client, decryptor, reconciler and work queue
together, then runs the kopf watchers, the health API and the session
keep-alive on one event loop until a shutdown signal arrives.
"""

import asyncio
import logging
import signal
from typing import List, Optional

import kopf

from api import HealthServer
from config import get_config
from controller import Controller
from decrypt import SopsDecryptor
from finalizers import FinalizerPolicy
from handlers import register_handlers
from keepalive import SessionKeeper
from kube import ControlPlane
from reconciler import Reconciler
from version import version_info

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def log_version() -> None:
    info = version_info()
    logger.info(f"Version: {info['version']}")
    logger.info(f"Python Version: {info['python_version']}")
    logger.info(f"OS/Arch: {info['platform']}")
    logger.info(f"Git Commit: {info['git_commit']}")
    logger.info(f"BuildDate: {info['build_date']}")


class Application:
    """Main application that orchestrates the operator components."""

    def __init__(self):
        self.config = get_config()
        self.control_plane: Optional[ControlPlane] = None
        self.controller: Optional[Controller] = None
        self.health: Optional[HealthServer] = None
        self.keeper: Optional[SessionKeeper] = None
        self.registry: Optional[kopf.OperatorRegistry] = None
        self.stop_flag = asyncio.Event()
        self.running = False
        self._tasks: List[asyncio.Task] = []

    def initialize(self):
        """Initialize all components."""
        logger.info("Initializing SopsSecret operator")

        self.control_plane = ControlPlane()
        self.control_plane.connect()

        policy = FinalizerPolicy(disabled=self.config.finalizers.disable_finalizers)
        if policy.globally_disabled:
            logger.warning("DISABLE_FINALIZERS is set, finalizers will be removed")

        reconciler = Reconciler(
            control_plane=self.control_plane,
            decryptor=SopsDecryptor(self.config.decrypt.sops_binary),
            finalizer_policy=policy,
        )
        self.controller = Controller(reconciler, self.config.controller)
        self.registry = register_handlers(self.controller)
        self.health = HealthServer(
            self.controller, host=self.config.api.host, port=self.config.api.port
        )
        self.keeper = SessionKeeper(self.config.decrypt)

        logger.info("All components initialized")

    def _operator_settings(self) -> kopf.OperatorSettings:
        settings = kopf.OperatorSettings()
        settings.posting.level = logging.WARNING
        return settings

    async def start(self):
        """Start the application."""
        if self.controller is None:
            self.initialize()

        self.running = True
        kube_config = self.config.kubernetes
        if kube_config.clusterwide:
            logger.info("Watching SopsSecrets in all namespaces")
        else:
            logger.info(
                f"Watching SopsSecrets in namespaces: {', '.join(kube_config.watch_namespaces)}"
            )

        operator = kopf.operator(
            registry=self.registry,
            settings=self._operator_settings(),
            clusterwide=kube_config.clusterwide,
            namespaces=kube_config.watch_namespaces,
            standalone=kube_config.standalone,
            peering_name=kube_config.peering_name,
            stop_flag=self.stop_flag,
        )
        self._tasks = [
            asyncio.create_task(self.controller.start(), name="controller"),
            asyncio.create_task(operator, name="operator"),
            asyncio.create_task(self.health.start(), name="health"),
        ]
        if self.config.decrypt.keepalive_enabled:
            self._tasks.append(asyncio.create_task(self.keeper.start(), name="keepalive"))

        try:
            # kopf and uvicorn take over SIGINT/SIGTERM once they run, so
            # whichever task ends first brings the rest down
            done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error(
                        f"Task {task.get_name()} failed: {task.exception()}",
                        exc_info=task.exception(),
                    )
                else:
                    logger.info(f"Task {task.get_name()} finished")
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")
        finally:
            await self.stop()
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def request_stop(self):
        """Ask the operator to exit; start() tears the rest down after it."""
        self.stop_flag.set()

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping SopsSecret operator")
        self.running = False
        self.stop_flag.set()

        if self.keeper:
            await self.keeper.stop()
        if self.health:
            await self.health.stop()
        if self.controller:
            await self.controller.stop()

        logger.info("SopsSecret operator stopped")


async def main():
    """Main entry point."""
    configure_logging(get_config().api.log_level)
    log_version()
    app = Application()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        app.request_stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
