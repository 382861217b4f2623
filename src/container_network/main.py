"""
container-network daemon entry point.

Watches Docker or Podman containers attached to a network (optionally gated by
an enable label) and installs iptables DNAT/FORWARD/mark rules for them while
they run.
"""
from __future__ import annotations

import logging
import os
import queue
import signal
import subprocess
import sys
import threading
from typing import Callable, Optional

import click
import docker
from docker.errors import DockerException
from dotenv import load_dotenv
from requests.exceptions import RequestException

from . import APP_NAME, __version__
from .config import (
    DEFAULT_DNAT_PORTS_LABEL,
    DEFAULT_WATCH_CONTAINER_LABEL,
    DEFAULT_WATCH_NETWORK,
    EVENT_QUEUE_SIZE,
    Config,
    detect_default_socket,
)
from .handler import TransitionHandler
from .iptables import IptablesExecutor
from .warmup import ReversePathWarmer
from .watcher import ContainerWatcher

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO),
                        format="%(asctime)s - %(levelname)s - %(message)s")


def run_script(script: str) -> bool:
    """Run a shell script, relaying its output to the log. Returns True on exit status 0."""
    try:
        result = subprocess.run(["/bin/sh", "-c", script], capture_output=True, text=True)
    except OSError as e:
        logger.error(f"Could not run script {script!r}: {e}")
        return False
    for line in result.stdout.splitlines():
        logger.info(line)
    for line in result.stderr.splitlines():
        logger.error(line)
    return result.returncode == 0


def run(cfg: Config, client_factory: Callable[..., docker.DockerClient] = docker.DockerClient,
        stop_event: Optional[threading.Event] = None) -> int:
    """Run the daemon until ``stop_event`` is set or a signal arrives. Returns the exit status."""
    if cfg.startup_script:
        logger.info(f"Running startup script: {cfg.startup_script}")
        if not run_script(cfg.startup_script):
            logger.error("Startup script failed")
            return 1
        logger.info("Startup script completed successfully")

    stop_event = stop_event or threading.Event()

    logger.info(f"Connecting to container runtime at {cfg.runtime_api}")
    try:
        client = client_factory(base_url=cfg.base_url)
        client.ping()
    except (DockerException, RequestException) as e:
        logger.error(f"Failed to connect to container runtime: {e}")
        return 1
    logger.info("Successfully connected to container runtime")

    events: queue.Queue = queue.Queue(maxsize=EVENT_QUEUE_SIZE)
    executor = IptablesExecutor(mark=cfg.iptables_mangle_mark_published_ports, dry_run=cfg.dry_run)
    handler = TransitionHandler(
        events,
        executor,
        dnat_ports_label=cfg.iptables_dnat_ports_label,
        warmer=ReversePathWarmer(stop_event=stop_event),
        stop_event=stop_event,
    )
    watcher = ContainerWatcher(
        client,
        cfg.watch_network,
        enable_label=cfg.watch_container_label,
        events=events,
        stop_event=stop_event,
    )

    def shutdown(signum, frame):
        logger.info(f"Received signal {signal.Signals(signum).name}, shutting down...")
        watcher.stop()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGINT, shutdown)
        signal.signal(signal.SIGTERM, shutdown)

    handler_thread = threading.Thread(target=handler.run, name="transition-handler", daemon=True)
    handler_thread.start()

    if cfg.watch_container_label:
        logger.info(f"Starting container watcher (network={cfg.watch_network}, label={cfg.watch_container_label})")
    else:
        logger.info(f"Starting container watcher (network={cfg.watch_network})")
    try:
        watcher.start()
    except (DockerException, RequestException) as e:
        logger.error(f"Failed to discover existing containers: {e}")
        stop_event.set()
        handler_thread.join()
        return 1

    logger.info("Watching for container events. Press Ctrl+C to stop.")
    while not stop_event.wait(1):
        pass

    watcher.stop()
    if cfg.shutdown_script:
        logger.info(f"Running shutdown script: {cfg.shutdown_script}")
        if run_script(cfg.shutdown_script):
            logger.info("Shutdown script completed successfully")
        else:
            logger.error("Shutdown script failed")
    watcher.join(timeout=5)
    handler_thread.join(timeout=5)
    logger.info("Shutdown complete")
    return 0


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--runtime-api", envvar="RUNTIME_API", default=None,
              help="Path or URL of the Docker/Podman API socket (default: auto-detect)")
@click.option("--watch-network", envvar="WATCH_NETWORK", default=DEFAULT_WATCH_NETWORK, show_default=True,
              help="Network whose containers are watched")
@click.option("--watch-container-label", envvar="WATCH_CONTAINER_LABEL", default=DEFAULT_WATCH_CONTAINER_LABEL,
              show_default=True, help='Label that must be "true" for a container to be watched')
@click.option("--iptables-mangle-mark-published-ports", envvar="IPTABLES_MANGLE_MARK_PUBLISHED_PORTS", default="",
              help="Mark value set on packets from published ports (mark rules disabled if empty)")
@click.option("--iptables-dnat-ports-label", envvar="IPTABLES_DNAT_PORTS_LABEL", default=DEFAULT_DNAT_PORTS_LABEL,
              show_default=True, help="Label holding the port[/protocol] list to DNAT to the container")
@click.option("--startup-script", envvar="STARTUP_SCRIPT", default="",
              help="Script run before starting; a nonzero exit aborts startup")
@click.option("--shutdown-script", envvar="SHUTDOWN_SCRIPT", default="", help="Script run on shutdown")
@click.option("--dry-run", envvar="DRY_RUN", is_flag=True, default=False,
              help="Log iptables commands instead of running them")
@click.option("--log-level", envvar="LOG_LEVEL", default="INFO", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.version_option(__version__, prog_name=APP_NAME, message="%(prog)s %(version)s")
def cli(runtime_api, watch_network, watch_container_label, iptables_mangle_mark_published_ports,
        iptables_dnat_ports_label, startup_script, shutdown_script, dry_run, log_level):
    """
    Watch Docker/Podman containers on a network.

    When a matching container starts, install iptables DNAT/FORWARD rules for
    the ports listed in its DNAT label and mark its other published ports.
    When it stops, the rules are removed again.

    Examples:

        container-network --watch-network my-network --watch-container-label network.rp.enable

        WATCH_NETWORK=my-network container-network --runtime-api /run/podman/podman.sock
    """
    cfg = Config(
        runtime_api=runtime_api or detect_default_socket(),
        watch_network=watch_network,
        watch_container_label=watch_container_label,
        iptables_mangle_mark_published_ports=iptables_mangle_mark_published_ports,
        iptables_dnat_ports_label=iptables_dnat_ports_label,
        startup_script=startup_script,
        shutdown_script=shutdown_script,
        dry_run=dry_run,
        log_level=log_level.upper(),
    )
    setup_logging(cfg.log_level)
    sys.exit(run(cfg))


def main():
    load_dotenv(os.path.join(os.getcwd(), ".env"))
    cli()


if __name__ == "__main__":
    main()
