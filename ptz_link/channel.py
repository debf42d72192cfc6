"""Best-effort duplex message channels.

A Channel carries wire messages between the operator and the actuator node.
Delivery is in order when it happens, but messages may be lost; nothing here
retries. Listeners receive decoded messages; malformed frames are logged and
dropped at this boundary.

Implementations:
- LoopbackChannel: in-memory pair driven by a Scheduler, with injectable
  latency and loss. Used by tests and offline simulation.
- WebSocketChannel: one side of a websockets connection.
"""

import asyncio
import logging
from typing import Any, Callable, List, Optional, Set, Tuple

import websockets

from . import messages
from .errors import ChannelClosedError, ProtocolError
from .messages import Message
from .scheduler import Scheduler

log = logging.getLogger(__name__)

MessageListener = Callable[[Message], None]
LifecycleListener = Callable[[], None]


class Channel:
    """Base class holding listener registration and open/closed lifecycle."""

    def __init__(self, label: str = "ptz") -> None:
        self.label = label
        self._listeners: List[MessageListener] = []
        self._open_listeners: List[LifecycleListener] = []
        self._close_listeners: List[LifecycleListener] = []
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def add_listener(self, listener: MessageListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: MessageListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def on_open(self, listener: LifecycleListener) -> None:
        self._open_listeners.append(listener)

    def on_close(self, listener: LifecycleListener) -> None:
        self._close_listeners.append(listener)

    def send(self, message: Message) -> None:
        """Encode and transmit a message.

        Raises:
            ChannelClosedError: If the channel is not open.
        """
        if not self._open:
            raise ChannelClosedError(f"Channel '{self.label}' is not open")
        self._transmit(messages.encode(message))

    def _transmit(self, raw: str) -> None:
        raise NotImplementedError

    def _deliver(self, raw: Any) -> None:
        """Decode a received frame and fan it out to listeners."""
        if not self._open:
            return
        try:
            message = messages.decode(raw)
        except ProtocolError as e:
            log.warning(f"[{self.label}] Dropping malformed message: {e}")
            return
        # Copy so listeners may unregister themselves while handling
        for listener in list(self._listeners):
            listener(message)

    def _set_open(self) -> None:
        if self._open:
            return
        self._open = True
        log.debug(f"[{self.label}] Channel open")
        for listener in list(self._open_listeners):
            listener()

    def _set_closed(self) -> None:
        if not self._open:
            return
        self._open = False
        log.debug(f"[{self.label}] Channel closed")
        for listener in list(self._close_listeners):
            listener()


class LoopbackChannel(Channel):
    """One end of an in-memory channel pair.

    Frames are delivered to the peer after ``latency_ms`` through the
    scheduler. ``drop`` decides per frame whether it is lost.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        latency_ms: float = 0.0,
        drop: Optional[Callable[[str], bool]] = None,
        label: str = "loopback",
    ) -> None:
        super().__init__(label=label)
        self.scheduler = scheduler
        self.latency_ms = latency_ms
        self.drop = drop
        self.peer: Optional["LoopbackChannel"] = None
        self.sent: List[str] = []

    @classmethod
    def pair(
        cls,
        scheduler: Scheduler,
        latency_ms: float = 0.0,
        drop: Optional[Callable[[str], bool]] = None,
    ) -> Tuple["LoopbackChannel", "LoopbackChannel"]:
        """Create two connected, not yet open, channel ends."""
        a = cls(scheduler, latency_ms, drop, label="operator")
        b = cls(scheduler, latency_ms, drop, label="actuator")
        a.peer, b.peer = b, a
        return a, b

    def open(self) -> None:
        """Open both ends, notifying the peer first as a remote accept would."""
        if self.peer is not None:
            self.peer._set_open()
        self._set_open()

    def close(self) -> None:
        self._set_closed()
        if self.peer is not None:
            self.peer._set_closed()

    def _transmit(self, raw: str) -> None:
        self.sent.append(raw)
        if self.drop is not None and self.drop(raw):
            return
        if self.peer is not None:
            self.scheduler.call_later(self.latency_ms, self.peer._deliver, raw)


class WebSocketChannel(Channel):
    """Channel over an established websockets connection.

    ``run()`` pumps incoming frames until the connection closes. Sends are
    queued as tasks on the running loop so callers never block.
    """

    def __init__(self, websocket: Any, label: str = "ptz") -> None:
        super().__init__(label=label)
        self.websocket = websocket
        self._send_tasks: Set[asyncio.Task] = set()

    def _transmit(self, raw: str) -> None:
        task = asyncio.get_running_loop().create_task(self._send(raw))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    async def _send(self, raw: str) -> None:
        try:
            await self.websocket.send(raw)
        except websockets.exceptions.ConnectionClosed:
            log.warning(f"[{self.label}] Send failed: connection closed")
            self._set_closed()

    async def run(self) -> None:
        """Receive frames until the peer disconnects."""
        self._set_open()
        try:
            async for raw in self.websocket:
                self._deliver(raw)
        except websockets.exceptions.ConnectionClosed:
            log.warning(f"[{self.label}] Connection closed by peer")
        finally:
            self._set_closed()

    async def close(self) -> None:
        await self.websocket.close()
        self._set_closed()
