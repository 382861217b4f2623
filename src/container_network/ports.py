"""Derive DNAT and mark intents from container labels and published ports."""
from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Union

from .models import PortIntent, PortMapping

logger = logging.getLogger(__name__)

LoggerLike = Union[logging.Logger, logging.LoggerAdapter]


def parse_ports(value: str, log: Optional[LoggerLike] = None) -> List[PortIntent]:
    """
    Parse a comma-separated list of ``port[/protocol]`` tokens.

    The protocol defaults to tcp and is case-insensitive. Tokens that are not a
    valid port number are logged and skipped.

    Example: "80,443/tcp,53/udp" -> [80/tcp, 443/tcp, 53/udp]
    """
    log = log or logger
    intents: List[PortIntent] = []
    for token in value.split(","):
        token = token.strip()
        if not token:
            continue
        if "/" in token:
            port_part, proto = token.split("/", 1)
            proto = proto.strip().lower() or "tcp"
        else:
            port_part, proto = token, "tcp"
        port_part = port_part.strip()
        port = int(port_part) if port_part.isascii() and port_part.isdigit() else 0
        if not 0 < port <= 65535:
            log.warning(f"Invalid port number in DNAT ports label: {port_part!r}")
            continue
        intents.append(PortIntent(port, proto))
    return intents


def filter_published_ports(published: Iterable[PortMapping], dnat: Iterable[PortIntent]) -> List[PortIntent]:
    """Return published ports not covered by a DNAT intent (same port and protocol)."""
    dnat_set = set(dnat)
    filtered: List[PortIntent] = []
    for mapping in published:
        intent = PortIntent(mapping.host_port, mapping.protocol)
        if intent in dnat_set:
            continue
        filtered.append(intent)
    return filtered
