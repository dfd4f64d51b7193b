"""agent_panel.transport

Event transport between the chat panel and its backend.

The engine only sees the small `Transport` surface (`emit` / `on`), so tests
inject a fake and the app injects either the Socket.IO client below or the
in-process `LocalBackend`.

Socket.IO delivers events on its own background thread. `SocketIOTransport`
re-emits them through a Qt signal owned by a QObject on the UI thread, so
handlers always run where the engine lives.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Protocol

from PySide6 import QtCore

from .protocol import SERVER_EVENTS


_LOG = logging.getLogger("agent_panel.transport")

Handler = Callable[[Any], None]


class Transport(Protocol):
    """Minimal surface for dependency injection / faking."""

    def emit(self, event: str, payload: Any = None) -> None:
        """Send one event to the backend."""

    def on(self, event: str, handler: Handler) -> None:
        """Register `handler(payload)` for an incoming event."""


class TransportError(RuntimeError):
    pass


class HandlerRegistry:
    """Fan-out of incoming events to registered handlers.

    A failing handler is logged and does not stop the others.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}

    def on(self, event: str, handler: Handler) -> None:
        self._handlers.setdefault(str(event), []).append(handler)

    def dispatch(self, event: str, payload: Any = None) -> None:
        handlers = list(self._handlers.get(event, ()))
        if not handlers:
            _LOG.debug("event_unhandled event=%s", event)
            return
        for h in handlers:
            try:
                h(payload)
            except Exception:
                _LOG.exception("handler_failed event=%s", event)


class _Bridge(QtCore.QObject):
    incoming = QtCore.Signal(str, object)

    def __init__(self, registry: HandlerRegistry) -> None:
        super().__init__()
        self._registry = registry
        # Receiver is this QObject (UI thread): cross-thread emits are queued.
        self.incoming.connect(self._deliver)

    @QtCore.Slot(str, object)
    def _deliver(self, event: str, payload: Any) -> None:
        self._registry.dispatch(event, payload)


class SocketIOTransport:
    """Adapter over the `python-socketio` client.

    Create it on the Qt thread; it must outlive the event loop.
    """

    def __init__(self, url: str, *, client: Any = None, marshal_to_qt: bool = True) -> None:
        if client is None:
            import socketio  # imported lazily

            client = socketio.Client(reconnection=True)
        self._url = str(url)
        self._sio = client
        self._registry = HandlerRegistry()
        self._bridge: Optional[_Bridge] = _Bridge(self._registry) if marshal_to_qt else None

        for ev in sorted(SERVER_EVENTS):
            self._sio.on(ev, handler=self._make_relay(ev))
        self._sio.on("connect", handler=lambda: _LOG.info("socket_connected url=%s", self._url))
        self._sio.on("disconnect", handler=lambda *_: _LOG.warning("socket_disconnected url=%s", self._url))

    def _make_relay(self, event: str) -> Callable[..., None]:
        def relay(*args: Any) -> None:
            payload = args[0] if args else None
            if self._bridge is not None:
                self._bridge.incoming.emit(event, payload)
            else:
                self._registry.dispatch(event, payload)

        return relay

    def connect(self, *, wait_timeout_s: float = 5.0) -> None:
        try:
            self._sio.connect(self._url, transports=["websocket", "polling"], wait_timeout=wait_timeout_s)
        except Exception as e:
            raise TransportError(f"cannot connect to {self._url}: {e}") from e

    def disconnect(self) -> None:
        try:
            self._sio.disconnect()
        except Exception:
            _LOG.exception("socket_disconnect_failed url=%s", self._url)

    @property
    def connected(self) -> bool:
        return bool(getattr(self._sio, "connected", False))

    def emit(self, event: str, payload: Any = None) -> None:
        _LOG.debug("emit event=%s", event)
        self._sio.emit(event, payload)

    def on(self, event: str, handler: Handler) -> None:
        self._registry.on(event, handler)
