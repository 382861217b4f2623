"""
Container watcher.

Turns the runtime's container lifecycle events into Started/Stopped
transitions for containers attached to the watched network. Transitions are
written to a bounded queue consumed by the handler.
"""
from __future__ import annotations

import codecs
import json
import logging
import queue
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from docker.errors import DockerException
from requests.exceptions import RequestException

from .config import EVENT_QUEUE_SIZE, RECONNECT_INTERVAL, WATCHED_ACTIONS
from .models import ContainerRecord, NetworkTransition, PortMapping, TransitionKind

logger = logging.getLogger(__name__)

# Seconds a blocked enqueue waits before re-checking for shutdown
PUT_POLL_INTERVAL = 0.5


def classify_action(action: str) -> Optional[TransitionKind]:
    """Map a runtime action to a transition kind, or None for actions we ignore."""
    if action.startswith("start"):
        return TransitionKind.STARTED
    if action.startswith(("stop", "die", "kill")):
        return TransitionKind.STOPPED
    return None


class ContainerDirectory:
    """Containers currently believed to be on the watched network, keyed by ID."""

    def __init__(self):
        self._lock = threading.Lock()
        self._containers: Dict[str, ContainerRecord] = {}

    def add(self, record: ContainerRecord) -> None:
        with self._lock:
            self._containers[record.id] = record

    def remove(self, container_id: str) -> Optional[ContainerRecord]:
        """Remove a container and return its record if it was known."""
        with self._lock:
            return self._containers.pop(container_id, None)

    def get(self, container_id: str) -> Optional[ContainerRecord]:
        with self._lock:
            return self._containers.get(container_id)

    def snapshot(self) -> Dict[str, ContainerRecord]:
        with self._lock:
            return dict(self._containers)

    def __contains__(self, container_id: str) -> bool:
        with self._lock:
            return container_id in self._containers

    def __len__(self) -> int:
        with self._lock:
            return len(self._containers)


class ContainerWatcher:
    def __init__(
        self,
        client,
        network_name: str,
        enable_label: str = "",
        events: Optional[queue.Queue] = None,
        stop_event: Optional[threading.Event] = None,
        reconnect_interval: float = RECONNECT_INTERVAL,
    ):
        self.client = client
        self.network_name = network_name
        self.enable_label = enable_label
        self.events: queue.Queue = events if events is not None else queue.Queue(maxsize=EVENT_QUEUE_SIZE)
        self.stop_event = stop_event or threading.Event()
        self.reconnect_interval = reconnect_interval
        self.directory = ContainerDirectory()
        self._stream = None
        self._thread: Optional[threading.Thread] = None

    # ---------------- Lifecycle -----------------
    def start(self) -> None:
        """Discover running containers, then watch events in a background thread.

        Discovery errors propagate: without an initial listing there is no
        consistent state to build on.
        """
        self.discover_existing_containers()
        self._thread = threading.Thread(target=self.watch_events, name="container-watcher", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self.stop_event.set()
        stream = self._stream
        if stream is not None:
            try:
                stream.close()
            except Exception as e:
                logger.debug(f"Error closing event stream: {e}")

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    # ---------------- Discovery -----------------
    def _filters(self) -> Dict[str, Any]:
        filters: Dict[str, Any] = {"network": [self.network_name]}
        if self.enable_label:
            filters["label"] = [self.enable_label]
        return filters

    def discover_existing_containers(self) -> int:
        """Emit a Started transition for every matching container already running."""
        containers = self.client.containers.list(filters=self._filters(), ignore_removed=True)
        count = 0
        for container in containers:
            if self.process_container(container):
                count += 1
        logger.info(f"Discovered {count} running container(s) on network {self.network_name}")
        return count

    def should_watch(self, container) -> bool:
        if self.enable_label:
            value = (container.labels or {}).get(self.enable_label)
            if value is None or value.strip().lower() != "true":
                return False
        networks = container.attrs.get("NetworkSettings", {}).get("Networks") or {}
        return self.network_name in networks

    def extract_record(self, container) -> ContainerRecord:
        attrs = container.attrs
        networks = attrs.get("NetworkSettings", {}).get("Networks") or {}
        ip_address = (networks.get(self.network_name) or {}).get("IPAddress") or ""
        return ContainerRecord(
            id=container.id,
            name=(container.name or "").lstrip("/"),
            ip_address=ip_address,
            network_name=self.network_name,
            ports=tuple(published_ports(attrs.get("NetworkSettings", {}).get("Ports") or {})),
            labels=dict(container.labels or {}),
        )

    def process_container(self, container, timestamp: Optional[datetime] = None) -> bool:
        """Record a matching container and emit Started for it. Returns False if it does not match."""
        if not self.should_watch(container):
            logger.debug(f"Ignoring container {container.id[:12]}: not watched")
            return False
        record = self.extract_record(container)
        self.directory.add(record)
        self.emit(NetworkTransition(TransitionKind.STARTED, record, timestamp or datetime.now()))
        return True

    # ---------------- Event stream -----------------
    def emit(self, transition: NetworkTransition) -> bool:
        """Block until the transition is queued or shutdown is requested."""
        while not self.stop_event.is_set():
            try:
                self.events.put(transition, timeout=PUT_POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def _event_filters(self) -> Dict[str, Any]:
        filters: Dict[str, Any] = {"type": ["container"], "event": list(WATCHED_ACTIONS)}
        if self.enable_label:
            filters["label"] = [self.enable_label]
        return filters

    def watch_events(self) -> None:
        """Subscribe to runtime events, resubscribing after every failure until shutdown."""
        while not self.stop_event.is_set():
            try:
                self._stream = self.client.events(filters=self._event_filters(), decode=False)
                logger.info("Listening for container events...")
                for event in decode_events(self._stream):
                    if self.stop_event.is_set():
                        break
                    self.handle_event(event)
                else:
                    if not self.stop_event.is_set():
                        logger.warning("Event stream ended, reconnecting...")
            except Exception as e:
                if self.stop_event.is_set():
                    break
                logger.error(f"Error watching events: {e}. Reconnecting in {self.reconnect_interval}s")
            finally:
                self._stream = None
            self.stop_event.wait(self.reconnect_interval)
        logger.info("Container watcher stopped")

    def handle_event(self, event: Dict[str, Any]) -> None:
        if event.get("Type", "container") != "container":
            return
        container_id = (event.get("Actor") or {}).get("ID") or event.get("id") or ""
        # Docker reports "Action", Podman "status"
        action = event.get("Action") or event.get("status") or ""
        kind = classify_action(action)
        if kind is None or not container_id:
            return

        if kind is TransitionKind.STOPPED:
            record = self.directory.remove(container_id)
            if record is None:
                logger.debug(f"Ignoring {action} for unknown container {container_id[:12]}")
                return
            self.emit(NetworkTransition(TransitionKind.STOPPED, record, event_time(event)))
            return

        try:
            containers = self.client.containers.list(filters={"id": container_id}, ignore_removed=True)
        except (DockerException, RequestException) as e:
            logger.error(f"Error retrieving container {container_id[:12]}: {e}")
            return
        for container in containers:
            self.process_container(container)


def published_ports(ports: Dict[str, Optional[List[Dict[str, str]]]]) -> List[PortMapping]:
    """
    Build port mappings from an inspect ``NetworkSettings.Ports`` payload.

    Only ports bound to a nonzero host port count. A binding reported once per
    address family yields a single mapping.
    """
    mappings: List[PortMapping] = []
    for port_proto, bindings in ports.items():
        if not bindings:
            continue
        port_str, _, proto = port_proto.partition("/")
        try:
            container_port = int(port_str)
        except ValueError:
            logger.warning(f"Skipping unparsable port {port_proto!r}")
            continue
        for binding in bindings:
            try:
                host_port = int(binding.get("HostPort") or 0)
            except ValueError:
                continue
            if host_port <= 0:
                continue
            mapping = PortMapping(host_port, container_port, (proto or "tcp").lower())
            if mapping not in mappings:
                mappings.append(mapping)
    return mappings


def _load(text: str) -> Optional[Dict[str, Any]]:
    try:
        event = json.loads(text)
    except json.JSONDecodeError:
        return None
    return event if isinstance(event, dict) else None


def decode_events(stream: Iterable[Any]) -> Iterable[Dict[str, Any]]:
    """
    Decode raw event stream chunks into event dicts.

    An event may be split across chunks, so text that does not parse yet is
    carried over into the next chunk. Complete lines that are not valid JSON
    are logged and skipped, as is buffered text that a fresh event replaces.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    for chunk in stream:
        if isinstance(chunk, dict):
            yield chunk
            continue
        if isinstance(chunk, bytes):
            chunk = decoder.decode(chunk)
        if pending.strip() and _load(chunk.split("\n", 1)[0].strip()) is not None:
            logger.warning(f"Skipping undecodable event payload: {pending.strip()[:200]!r}")
            pending = ""

        *lines, pending = (pending + chunk).split("\n")
        for line in lines:
            line = line.strip()
            if not line:
                continue
            event = _load(line)
            if event is None:
                logger.warning(f"Skipping undecodable event payload: {line[:200]!r}")
                continue
            yield event

        if pending.strip():
            event = _load(pending.strip())
            if event is not None:
                pending = ""
                yield event

    if pending.strip():
        logger.warning(f"Skipping incomplete event payload: {pending.strip()[:200]!r}")


def event_time(event: Dict[str, Any]) -> datetime:
    ts = event.get("time")
    if isinstance(ts, (int, float)) and ts > 0:
        return datetime.fromtimestamp(ts)
    return datetime.now()
