"""Signaling channel abstraction and its WebSocket implementation.

A SignalingChannel is a bidirectional message transport to the room relay.
The SessionConnectionManager creates a fresh channel for every join attempt
and subscribes to it through Subscription handles, so tearing a channel down
releases every listener registered on it exactly once.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from http import HTTPStatus
from typing import Any, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus, InvalidURI

from cotog_rtc.exceptions import AuthenticationError, TransportDropError
from cotog_rtc.protocol import format_message, parse_message

logger = logging.getLogger(__name__)

# Handler signatures
MessageHandler = Callable[[str, Dict[str, Any]], None]
CloseHandler = Callable[[bool], None]


class Subscription:
    """Handle for one listener registered on a channel.

    ``close()`` removes the listener and is idempotent.
    """

    def __init__(self, registry: List[Any], handler: Any):
        self._registry = registry
        self._handler = handler
        self.active = True
        registry.append(handler)

    def close(self) -> None:
        """Remove the listener from its channel."""
        if not self.active:
            return
        self.active = False
        try:
            self._registry.remove(self._handler)
        except ValueError:
            pass


class SignalingChannel(ABC):
    """Transport used to exchange messages with the room relay.

    Subclasses implement ``open``, ``send`` and ``close``, and call
    ``_dispatch_message`` / ``_dispatch_close`` as traffic arrives.
    """

    def __init__(self):
        self._message_handlers: List[MessageHandler] = []
        self._close_handlers: List[CloseHandler] = []
        self._subscriptions: List[Subscription] = []

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the transport can currently send."""

    @abstractmethod
    async def open(self, url: str, token: Optional[str] = None) -> None:
        """Open the transport.

        Raises:
            AuthenticationError: If the relay refuses the token.
            TransportDropError: If the transport cannot be established.
        """

    @abstractmethod
    async def send(self, msg_type: str, **fields: Any) -> None:
        """Send a message to the relay.

        Raises:
            TransportDropError: If the transport is not open.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the transport intentionally and release all subscriptions."""

    def subscribe(self, handler: MessageHandler) -> Subscription:
        """Register ``handler(msg_type, fields)`` for inbound messages."""
        subscription = Subscription(self._message_handlers, handler)
        self._subscriptions.append(subscription)
        return subscription

    def on_close(self, handler: CloseHandler) -> Subscription:
        """Register ``handler(intentional)`` for transport closure."""
        subscription = Subscription(self._close_handlers, handler)
        self._subscriptions.append(subscription)
        return subscription

    def release_subscriptions(self) -> None:
        """Release every subscription registered on this channel."""
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.close()

    def _dispatch_message(self, msg_type: str, fields: Dict[str, Any]) -> None:
        for handler in list(self._message_handlers):
            try:
                handler(msg_type, fields)
            except Exception as e:
                logger.error(f"Error handling {msg_type} message: {e}")

    def _dispatch_close(self, intentional: bool) -> None:
        for handler in list(self._close_handlers):
            try:
                handler(intentional)
            except Exception as e:
                logger.error(f"Error in channel close handler: {e}")


class WebSocketSignalingChannel(SignalingChannel):
    """SignalingChannel over a ``websockets`` client connection.

    The bearer token is sent in the Authorization header of the upgrade
    request. A 401/403 response maps to AuthenticationError.
    """

    def __init__(self):
        super().__init__()
        self.websocket = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self.websocket is not None and not self._closing

    async def open(self, url: str, token: Optional[str] = None) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            # Timeout is enforced by the caller.
            self.websocket = await websockets.connect(
                url, additional_headers=headers, open_timeout=None
            )
        except InvalidStatus as e:
            status = e.response.status_code
            if status in (HTTPStatus.UNAUTHORIZED, HTTPStatus.FORBIDDEN):
                raise AuthenticationError(f"Relay refused credentials ({status})") from e
            raise TransportDropError(f"Relay rejected connection ({status})") from e
        except InvalidURI as e:
            raise TransportDropError(f"Invalid signaling URL: {url}") from e
        except (InvalidHandshake, OSError) as e:
            raise TransportDropError(f"Failed to connect to {url}: {e}") from e

        logger.info(f"Signaling channel open: {url}")
        self._reader_task = asyncio.create_task(self._read_loop())

    async def _read_loop(self):
        """Read frames until the connection closes, then report closure."""
        try:
            async for message in self.websocket:
                try:
                    msg_type, fields = parse_message(message)
                except ValueError as e:
                    logger.error(f"Invalid message received: {e}")
                    continue
                logger.debug(f"Received message: {msg_type}")
                self._dispatch_message(msg_type, fields)
        except ConnectionClosed as e:
            logger.info(f"Signaling connection closed: {e}")
        except asyncio.CancelledError:
            return

        intentional = self._closing
        self.websocket = None
        self._dispatch_close(intentional)

    async def send(self, msg_type: str, **fields: Any) -> None:
        if not self.is_open:
            raise TransportDropError(f"Cannot send {msg_type}: channel is not open")
        try:
            await self.websocket.send(format_message(msg_type, **fields))
        except ConnectionClosed as e:
            raise TransportDropError(f"Connection lost while sending {msg_type}") from e
        logger.debug(f"Sent message: {msg_type}")

    async def close(self) -> None:
        self._closing = True
        self.release_subscriptions()
        websocket, self.websocket = self.websocket, None
        if websocket is not None:
            try:
                await websocket.close()
            except ConnectionClosed:
                pass
        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
        self._reader_task = None
        logger.info("Signaling channel closed")
