"""Value types passed between the watcher and the handler."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Tuple


@dataclass(frozen=True)
class PortMapping:
    host_port: int
    container_port: int
    protocol: str = "tcp"


@dataclass(frozen=True)
class PortIntent:
    """A (port, protocol) pair a firewall rule is keyed on."""
    port: int
    protocol: str = "tcp"

    def __str__(self) -> str:
        return f"{self.port}/{self.protocol}"


@dataclass(frozen=True)
class ContainerRecord:
    id: str
    name: str
    ip_address: str
    network_name: str
    ports: Tuple[PortMapping, ...] = ()
    labels: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)

    @property
    def short_id(self) -> str:
        return self.id[:12]


class TransitionKind(Enum):
    STARTED = "started"
    STOPPED = "stopped"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class NetworkTransition:
    kind: TransitionKind
    container: ContainerRecord
    timestamp: datetime = field(default_factory=datetime.now)
