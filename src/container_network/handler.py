"""
Transition handler.

Consumes Started/Stopped transitions from the watcher and applies or removes
the iptables rules for each container. Every transition is handled in its own
thread so a container stuck in reverse path warm-up does not delay others.

Transitions for the same container are queued in order, but a Stopped
transition may begin while the Started handling for that container is still
warming up. Nothing serializes the two.

Rules are appended without checking whether they already exist, so a repeated
Started transition for a container installs its rules a second time.
"""
from __future__ import annotations

import logging
import queue
import threading
from typing import List, Optional

from .iptables import INSTALL, RETRACT, IptablesExecutor
from .models import NetworkTransition, PortIntent, TransitionKind
from .ports import filter_published_ports, parse_ports
from .warmup import ReversePathWarmer

logger = logging.getLogger(__name__)

# Seconds a dequeue waits before re-checking for shutdown
GET_POLL_INTERVAL = 0.5


class TransitionHandler:
    def __init__(
        self,
        events: queue.Queue,
        executor: IptablesExecutor,
        dnat_ports_label: str = "",
        warmer: Optional[ReversePathWarmer] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self.events = events
        self.executor = executor
        self.dnat_ports_label = dnat_ports_label
        self.stop_event = stop_event or threading.Event()
        self.warmer = warmer or ReversePathWarmer(stop_event=self.stop_event)
        self._workers: List[threading.Thread] = []
        self._workers_lock = threading.Lock()

    @property
    def mark_enabled(self) -> bool:
        return bool(self.executor.mark)

    # ---------------- Dispatch -----------------
    def run(self) -> None:
        """Pull transitions off the queue until shutdown, handing each to a new thread."""
        logger.info("Event handler started, waiting for container events...")
        while not self.stop_event.is_set():
            try:
                transition = self.events.get(timeout=GET_POLL_INTERVAL)
            except queue.Empty:
                continue
            self.dispatch(transition)
        logger.info("Event handler stopped")

    def dispatch(self, transition: NetworkTransition) -> threading.Thread:
        if transition.kind is TransitionKind.STARTED:
            target = self.handle_started
        else:
            target = self.handle_stopped
        worker = threading.Thread(
            target=target,
            args=(transition,),
            name=f"{transition.kind}-{transition.container.short_id}",
            daemon=True,
        )
        with self._workers_lock:
            self._workers = [w for w in self._workers if w.is_alive()]
            self._workers.append(worker)
        worker.start()
        return worker

    def join_workers(self, timeout: Optional[float] = None) -> None:
        with self._workers_lock:
            workers = list(self._workers)
        for worker in workers:
            worker.join(timeout)

    # ---------------- Transitions -----------------
    def _logger(self, transition: NetworkTransition) -> logging.LoggerAdapter:
        c = transition.container
        ts = transition.timestamp.strftime("%Y-%m-%d %H:%M:%S")
        return ContainerLogger(logger, {"container": c.name, "id": c.short_id, "ip": c.ip_address, "ts": ts})

    def dnat_intents(self, transition: NetworkTransition, log: Optional[logging.LoggerAdapter] = None) -> List[PortIntent]:
        if not self.dnat_ports_label:
            return []
        value = transition.container.labels.get(self.dnat_ports_label)
        if value is None:
            return []
        return parse_ports(value, log)

    def handle_started(self, transition: NetworkTransition) -> None:
        c = transition.container
        log = self._logger(transition)
        log.info("Handling container started")
        if not c.ip_address:
            log.warning(f"Container has no IP address on network {c.network_name}, skipping")
            return

        port, protocol = 0, "tcp"
        if c.ports:
            port, protocol = c.ports[0].container_port, c.ports[0].protocol
        self.warmer.warm_up(c.ip_address, port, protocol, log)

        dnat = self.dnat_intents(transition, log)
        self.apply_dnat_rules(INSTALL, c.ip_address, dnat, log)
        if self.mark_enabled:
            self.apply_mark_rules(INSTALL, filter_published_ports(c.ports, dnat), log)

    def handle_stopped(self, transition: NetworkTransition) -> None:
        c = transition.container
        log = self._logger(transition)
        log.info("Handling container stopped")
        if not c.ip_address:
            log.warning(f"Container has no IP address on network {c.network_name}, skipping")
            return

        dnat = self.dnat_intents(transition, log)
        self.apply_dnat_rules(RETRACT, c.ip_address, dnat, log)
        if self.mark_enabled:
            self.apply_mark_rules(RETRACT, filter_published_ports(c.ports, dnat), log)

    # ---------------- Rules -----------------
    def apply_dnat_rules(self, action: str, container_ip: str, intents: List[PortIntent],
                         log: logging.LoggerAdapter) -> None:
        verb, done = ("add", "Added") if action == INSTALL else ("remove", "Removed")
        for intent in intents:
            if self.executor.dnat_rule(action, intent.protocol, intent.port, container_ip, log):
                log.info(f"{done} DNAT rule for {intent}")
            else:
                log.error(f"Failed to {verb} DNAT rule for {intent}")
            if self.executor.forward_rule(action, intent.protocol, intent.port, container_ip, log):
                log.info(f"{done} FORWARD rule for {intent}")
            else:
                log.error(f"Failed to {verb} FORWARD rule for {intent}")

    def apply_mark_rules(self, action: str, intents: List[PortIntent], log: logging.LoggerAdapter) -> None:
        verb, done = ("add", "Added") if action == INSTALL else ("remove", "Removed")
        for intent in intents:
            if self.executor.mark_rule(action, intent.protocol, intent.port, log):
                log.info(f"{done} mark rule for {intent}")
            else:
                log.error(f"Failed to {verb} mark rule for {intent}")


class ContainerLogger(logging.LoggerAdapter):
    """Prefixes every message with the container it concerns."""

    def process(self, msg, kwargs):
        extra = self.extra
        return f"[{extra['container']} {extra['id']} {extra['ip']} @{extra['ts']}] {msg}", kwargs
