"""
Reverse path warm-up.

With strict reverse path filtering the kernel drops the first packets towards
a freshly started container until it has routing and conntrack state for it.
Connecting to the container ahead of real traffic populates that state.
"""
from __future__ import annotations

import logging
import socket
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Optional, Union

from .config import PING_BIN, WARMUP_INTERVAL, WARMUP_MAX_ATTEMPTS, WARMUP_TIMEOUT

logger = logging.getLogger(__name__)

LoggerLike = Union[logging.Logger, logging.LoggerAdapter]


@dataclass(frozen=True)
class WarmupPolicy:
    max_attempts: int = WARMUP_MAX_ATTEMPTS
    interval: float = WARMUP_INTERVAL
    timeout: float = WARMUP_TIMEOUT


class ReversePathWarmer:
    def __init__(self, policy: Optional[WarmupPolicy] = None, stop_event: Optional[threading.Event] = None,
                 ping_binary: str = PING_BIN):
        self.policy = policy or WarmupPolicy()
        self.stop_event = stop_event
        self.ping_binary = ping_binary

    def warm_up(self, ip: str, port: int = 0, protocol: str = "tcp", log: Optional[LoggerLike] = None) -> bool:
        """
        Warm up the reverse path towards ``ip``.

        If a port is given, connect to it with its protocol first and fall back
        to ICMP echo once all attempts are exhausted. Without a port go straight
        to ICMP. Returns True once any attempt succeeded.
        """
        log = log or logger
        if port > 0:
            log.info(f"Warming up reverse path via {port}/{protocol}")
            if self._retry(log, lambda: self.dial(protocol, ip, port)):
                return True
            if self.stop_event is not None and self.stop_event.is_set():
                return False
            log.warning(f"Failed to warm up via {port}/{protocol}, falling back to ICMP")

        log.info("Warming up reverse path (ICMP)")
        return self._retry(log, lambda: self.ping(ip))

    def _retry(self, log: LoggerLike, attempt) -> bool:
        for i in range(self.policy.max_attempts):
            if attempt():
                log.info(f"Reverse path warmed up (attempt {i + 1})")
                return True
            if self.stop_event is None:
                time.sleep(self.policy.interval)
            elif self.stop_event.wait(self.policy.interval):
                log.info("Warm-up interrupted by shutdown")
                return False
        log.warning(f"Failed to warm up reverse path after {self.policy.max_attempts} attempts")
        return False

    def dial(self, protocol: str, ip: str, port: int) -> bool:
        """Single tcp/udp connection attempt."""
        try:
            if protocol == "udp":
                with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                    sock.settimeout(self.policy.timeout)
                    sock.connect((ip, port))
                    sock.send(b"")
            else:
                with socket.create_connection((ip, port), timeout=self.policy.timeout):
                    pass
        except OSError:
            return False
        return True

    def ping(self, ip: str) -> bool:
        """Single ICMP echo request."""
        wait = str(max(1, int(round(self.policy.timeout))))
        try:
            subprocess.run([self.ping_binary, "-c", "1", "-W", wait, ip], check=True, capture_output=True,
                           timeout=self.policy.timeout + 1)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError):
            return False
        return True
