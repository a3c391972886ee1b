"""
Entry point: ``python -m security_operator``.

Runs the two controllers and the report API in one event loop until
SIGINT/SIGTERM.
"""

import asyncio
import logging
import signal
import sys

import uvicorn
from kubernetes import client, config

from security_operator.cluster import KubernetesClusterClient
from security_operator.config import Settings, get_settings
from security_operator.database import close_db, get_session_factory, init_db
from security_operator.exceptions import ConfigurationException
from security_operator.logs import setup_logging
from security_operator.main import app
from security_operator.operator import Operator
from security_operator.resources import build_registry

logger = logging.getLogger("security_operator")


def load_kubernetes_config() -> client.ApiClient:
    """In-cluster service account first, local kubeconfig otherwise."""
    try:
        config.load_incluster_config()
        logger.info("Using in-cluster Kubernetes configuration")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Using local kubeconfig")
    return client.ApiClient()


async def run(settings: Settings) -> None:
    registry = build_registry()
    cluster = KubernetesClusterClient(
        load_kubernetes_config(),
        registry,
        component=settings.app_name,
    )
    operator = Operator.from_settings(settings, cluster, get_session_factory(), registry)

    await init_db()
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=settings.api_host,
            port=settings.api_port,
            log_level=settings.log_level.lower(),
        )
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await operator.start()
    api = asyncio.create_task(server.serve(), name="report-api")
    stopped = asyncio.create_task(stop.wait(), name="shutdown-signal")
    try:
        # uvicorn captures the signals itself while serving
        await asyncio.wait({api, stopped}, return_when=asyncio.FIRST_COMPLETED)
        logger.info("Shutdown signal received")
    finally:
        stopped.cancel()
        server.should_exit = True
        await operator.stop()
        await api
        await close_db()


def main() -> None:
    settings = get_settings()
    setup_logging(settings)
    try:
        asyncio.run(run(settings))
    except ConfigurationException as e:
        logger.critical(e.message)
        sys.exit(1)


if __name__ == "__main__":
    main()
