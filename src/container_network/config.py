"""
Configuration for container-network.

Values come from command-line flags, falling back to environment variables and
then to the defaults below (see main.py for the flag definitions).
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field

DEFAULT_DOCKER_SOCKET = "/var/run/docker.sock"
DEFAULT_PODMAN_SOCKET = "/run/podman/podman.sock"
DEFAULT_PODMAN_USER_SOCKET = "/run/user/{uid}/podman/podman.sock"

DEFAULT_WATCH_NETWORK = "bridge"
DEFAULT_WATCH_CONTAINER_LABEL = "network.enable"
DEFAULT_DNAT_PORTS_LABEL = "network.dnat.ports"

# Event pipeline
EVENT_QUEUE_SIZE = 200
RECONNECT_INTERVAL = 2.0  # seconds between event stream resubscriptions
WATCHED_ACTIONS = ["start", "stop", "die", "kill"]

# Reverse path warm-up
WARMUP_MAX_ATTEMPTS = 60
WARMUP_INTERVAL = 1.0
WARMUP_TIMEOUT = 1.0

# External tools
IPTABLES_BIN = "iptables"
PING_BIN = "ping"


def detect_default_socket() -> str:
    """Return the first container runtime socket found on this host."""
    candidates = [
        DEFAULT_DOCKER_SOCKET,
        DEFAULT_PODMAN_SOCKET,
        DEFAULT_PODMAN_USER_SOCKET.format(uid=os.getuid()),
    ]
    home = os.path.expanduser("~")
    if home and home != "~":
        # Docker Desktop on macOS
        candidates.append(os.path.join(home, ".docker", "run", "docker.sock"))

    for path in candidates:
        if os.path.exists(path):
            return path
    return DEFAULT_DOCKER_SOCKET


def runtime_base_url(runtime_api: str) -> str:
    """Turn a socket path or URL into a base_url the docker SDK accepts."""
    if runtime_api.startswith(("unix://", "tcp://", "http://", "https://", "npipe://")):
        return runtime_api
    return f"unix://{runtime_api}"


@dataclass
class Config:
    runtime_api: str = field(default_factory=detect_default_socket)
    watch_network: str = DEFAULT_WATCH_NETWORK
    watch_container_label: str = DEFAULT_WATCH_CONTAINER_LABEL
    iptables_mangle_mark_published_ports: str = ""
    iptables_dnat_ports_label: str = DEFAULT_DNAT_PORTS_LABEL
    startup_script: str = ""
    shutdown_script: str = ""
    dry_run: bool = False
    log_level: str = "INFO"

    @property
    def base_url(self) -> str:
        return runtime_base_url(self.runtime_api)
