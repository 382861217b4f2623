"""Watch containers on a Docker/Podman network and keep iptables rules in sync."""

__version__ = "0.1.0"
APP_NAME = "container-network"
