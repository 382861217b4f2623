"""
iptables rule execution.

Each rule is installed (-A) or retracted (-D) with one iptables invocation.
Failures are logged per invocation and never raised, so one bad rule does not
keep the remaining rules of a container from being applied.
"""
from __future__ import annotations

import logging
import subprocess
from typing import List, Optional, Union

from .config import IPTABLES_BIN

logger = logging.getLogger(__name__)

LoggerLike = Union[logging.Logger, logging.LoggerAdapter]

INSTALL = "-A"
RETRACT = "-D"


class IptablesExecutor:
    """Runs the mark, DNAT and forward rules for container ports."""

    def __init__(self, mark: str = "", dry_run: bool = False, binary: str = IPTABLES_BIN):
        self.mark = mark
        self.dry_run = dry_run
        self.binary = binary

    def run(self, args: List[str], log: Optional[LoggerLike] = None) -> bool:
        """Run one iptables command. Returns True on success."""
        log = log or logger
        cmd = [self.binary, *args]
        if self.dry_run:
            log.info(f"[DRY-RUN] {' '.join(cmd)}")
            return True
        log.debug(f"Executing: {' '.join(cmd)}")
        try:
            subprocess.run(cmd, check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as e:
            log.error(f"iptables command failed: {' '.join(cmd)}: {(e.stderr or '').strip()}")
            return False
        except OSError as e:
            log.error(f"Could not execute {self.binary}: {e}")
            return False
        return True

    def mark_rule(self, action: str, protocol: str, port: int, log: Optional[LoggerLike] = None) -> bool:
        # iptables -t mangle -A PREROUTING -p <proto> --sport <port> -j MARK --set-mark <mark>
        args = [
            "-t", "mangle",
            action, "PREROUTING",
            "-p", protocol,
            "--sport", str(port),
            "-j", "MARK",
            "--set-mark", self.mark,
        ]
        return self.run(args, log)

    def dnat_rule(self, action: str, protocol: str, port: int, container_ip: str,
                  log: Optional[LoggerLike] = None) -> bool:
        # iptables -t nat -A PREROUTING -p <proto> --dport <port> -j DNAT --to-destination <ip>:<port>
        args = [
            "-t", "nat",
            action, "PREROUTING",
            "-p", protocol,
            "--dport", str(port),
            "-j", "DNAT",
            "--to-destination", f"{container_ip}:{port}",
        ]
        return self.run(args, log)

    def forward_rule(self, action: str, protocol: str, port: int, container_ip: str,
                     log: Optional[LoggerLike] = None) -> bool:
        # iptables -A FORWARD -p <proto> -d <ip> --dport <port> -j ACCEPT
        args = [
            action, "FORWARD",
            "-p", protocol,
            "-d", container_ip,
            "--dport", str(port),
            "-j", "ACCEPT",
        ]
        return self.run(args, log)
