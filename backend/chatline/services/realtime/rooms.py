# backend/chatline/services/realtime/rooms.py
"""
Room router and per-connection outbound queues.

Each live connection owns a bounded outbound queue drained by its own writer
task, the same reader/queue split the SSE stream uses. Broadcasting only
enqueues, so a slow or broken socket delays nobody else: its queue fills and
further frames for it are dropped and counted, and a send error closes only
that connection's writer.

Frames are serialized once per broadcast, then enqueued to each target.
"""

import asyncio
import logging
import threading
from typing import Any, Dict, Iterable, Optional, Protocol, Set

from ...core.ulid_helper import generate_ulid
from ...monitoring.prometheus_metrics import prometheus_metrics
from .events import encode_frame

logger = logging.getLogger(__name__)


class FrameSink(Protocol):
    """Anything that can push a text frame to a client (e.g. a FastAPI WebSocket)."""

    async def send_text(self, data: str) -> None: ...


class Connection:
    """A live authenticated connection and its outbound writer."""

    def __init__(
        self,
        user_id: str,
        sink: FrameSink,
        queue_size: int = 256,
        connection_id: Optional[str] = None,
    ):
        self.id = connection_id or generate_ulid()
        self.user_id = user_id
        self.sink = sink
        self.closed = False
        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=queue_size)
        self._writer: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"<Connection(id={self.id}, user={self.user_id})>"

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop(), name=f"ws-writer-{self.id}")

    def enqueue(self, frame: str) -> bool:
        """Queue a frame without waiting. False if the frame was dropped."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning(
                f"[ROOMS] Outbound queue full for connection {self.id}; dropping frame",
                extra={"user_id": self.user_id, "connection_id": self.id},
            )
            prometheus_metrics.record_dropped_frame()
            return False
        return True

    async def _write_loop(self) -> None:
        while True:
            frame = await self._queue.get()
            try:
                if frame is None:
                    return
                await self.sink.send_text(frame)
            except Exception as exc:
                logger.warning(
                    f"[ROOMS] Send failed on connection {self.id}: {exc}",
                    extra={"user_id": self.user_id, "connection_id": self.id},
                )
                self.closed = True
                self._discard_pending()
                return
            finally:
                self._queue.task_done()

    def _discard_pending(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued frame has been written (or discarded)."""
        if self._writer is not None and not self._writer.done():
            await self._queue.join()

    async def close(self, flush: bool = False) -> None:
        """
        Stop the writer. With ``flush`` queued frames are written first;
        otherwise they are discarded.
        """
        self.closed = True
        writer = self._writer
        if writer is None or writer.done():
            return
        if flush:
            try:
                self._queue.put_nowait(None)
                await writer
                return
            except asyncio.QueueFull:
                pass
        writer.cancel()
        try:
            await writer
        except asyncio.CancelledError:
            pass


class RoomRouter:
    """
    Tracks live connections and the rooms each has joined.

    All state is guarded by one lock; it is never held while awaiting.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: Dict[str, Connection] = {}
        self._members: Dict[str, Set[str]] = {}
        self._rooms: Dict[str, Set[str]] = {}

    # Connection table

    def add_connection(self, connection: Connection) -> None:
        with self._lock:
            self._connections[connection.id] = connection
            self._rooms.setdefault(connection.id, set())

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(connection_id)

    def remove_connection(self, connection_id: str) -> Set[str]:
        """Drop a connection from every room. Returns the rooms it was in."""
        with self._lock:
            self._connections.pop(connection_id, None)
            rooms = self._rooms.pop(connection_id, set())
            for room_id in rooms:
                members = self._members.get(room_id)
                if members is not None:
                    members.discard(connection_id)
                    if not members:
                        del self._members[room_id]
        return rooms

    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    # Rooms

    def join(self, connection_id: str, room_id: str) -> bool:
        """Add a connection to a room. False if the connection is unknown."""
        with self._lock:
            if connection_id not in self._connections:
                return False
            self._rooms[connection_id].add(room_id)
            self._members.setdefault(room_id, set()).add(connection_id)
        return True

    def leave(self, connection_id: str, room_id: str) -> None:
        with self._lock:
            rooms = self._rooms.get(connection_id)
            if rooms is not None:
                rooms.discard(room_id)
            members = self._members.get(room_id)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self._members[room_id]

    def rooms_of(self, connection_id: str) -> Set[str]:
        with self._lock:
            return set(self._rooms.get(connection_id, ()))

    def members_of(self, room_id: str) -> Set[str]:
        with self._lock:
            return set(self._members.get(room_id, ()))

    # Delivery

    def _deliver(self, targets: Iterable[Connection], event: str, payload: Any) -> int:
        frame = encode_frame(event, payload)
        delivered = failed = 0
        for connection in targets:
            if connection.enqueue(frame):
                delivered += 1
            else:
                failed += 1
        prometheus_metrics.record_fanout("broadcast", "ok", delivered)
        if failed:
            prometheus_metrics.record_fanout("broadcast", "failed", failed)
            logger.warning(f"[ROOMS] {event}: {failed} connection(s) did not accept the frame")
        return delivered

    def broadcast(
        self,
        room_id: str,
        event: str,
        payload: Any,
        exclude_connection_id: Optional[str] = None,
    ) -> int:
        """Send to every connection in the room. Returns how many accepted the frame."""
        with self._lock:
            targets = [
                self._connections[cid]
                for cid in self._members.get(room_id, ())
                if cid != exclude_connection_id and cid in self._connections
            ]
        return self._deliver(targets, event, payload)

    def broadcast_all(self, event: str, payload: Any) -> int:
        with self._lock:
            targets = list(self._connections.values())
        return self._deliver(targets, event, payload)

    def send_to_connections(self, connection_ids: Iterable[str], event: str, payload: Any) -> int:
        with self._lock:
            targets = [self._connections[cid] for cid in connection_ids if cid in self._connections]
        return self._deliver(targets, event, payload)
