"""
WebSocket consumer for the live map.

Every connected client receives pushed snapshots of all trails and of
everyone's presence. Signed-in clients also publish: the browser forwards
its raw geolocation fixes, and the server-side session filters them,
writes them to the store and keeps the user's presence alive.
"""
import json
import logging
from collections.abc import Mapping
from typing import Any

from channels.generic.websocket import AsyncWebsocketConsumer

from live_trails import STARTUP_TIMESTAMP
from live_trails.store import DjangoStore
from live_trails.sync.aggregator import Trails
from live_trails.sync.presence import PresenceStatus
from live_trails.sync.publisher import Fix, GeolocationError, PushGeolocationSource
from live_trails.sync.session import SessionContext
from live_trails.utils import (get_sync_settings, identity_for_user,
                               serialize_presence, serialize_trails,
                               session_registry)

logger = logging.getLogger(__name__)


class LiveMapConsumer(AsyncWebsocketConsumer):
    """
    WebSocket consumer for live trails and presence.

    Inbound messages:
        {"type": "fix", "latitude": ..., "longitude": ..., "accuracy": ...}
        {"type": "geolocation_error", "code": "PERMISSION_DENIED", "message": "..."}

    Outbound messages: ``welcome``, ``trails``, ``presence``, ``status``
    (blocking sensor/auth problems) and ``error``.
    """

    session: SessionContext | None = None
    store: DjangoStore | None = None
    source: PushGeolocationSource | None = None

    def get_client_ip(self) -> str:
        """Extract client IP address from WebSocket scope."""
        # Check for X-Forwarded-For header (if behind proxy)
        headers = dict(self.scope.get('headers', []))
        x_forwarded_for = headers.get(b'x-forwarded-for')
        if x_forwarded_for:
            return x_forwarded_for.decode().split(',')[0].strip()

        client = self.scope.get('client')
        if client:
            return client[0]
        return 'unknown'

    async def connect(self) -> None:
        """Accept the connection and open the client's session."""
        await self.accept()
        client_ip = self.get_client_ip()

        # Clients use the startup timestamp to detect backend restarts
        await self.send_json({'type': 'welcome', 'server_startup': STARTUP_TIMESTAMP})

        identity = identity_for_user(self.scope.get('user'))
        self.store = DjangoStore(self.channel_layer)
        self.source = PushGeolocationSource()
        self.session = SessionContext(
            self.store,
            source=self.source,
            identity=identity,
            settings=get_sync_settings(),
            registry=session_registry,
        )
        self.session.on_trails(self._send_trails)
        self.session.on_presence(self._send_presence)
        self.session.on_error(self._send_publish_error)

        try:
            await self.session.open()
        except GeolocationError as exc:
            await self._send_status(exc.code, exc.message)

        logger.info(
            "Live map client connected from %s as %s",
            client_ip, identity.user_id if identity else 'anonymous',
            extra={"channel": self.channel_name, "client_address": client_ip},
        )

    async def disconnect(self, close_code: int) -> None:
        """Tear down the session and run disconnect cleanups."""
        if self.session is not None:
            await self.session.close()
        if self.store is not None:
            await self.store.disconnect()
        logger.info(
            "Live map client disconnected from %s",
            self.get_client_ip(),
            extra={"channel": self.channel_name, "close_code": close_code},
        )

    async def receive(self, text_data: str | None = None, bytes_data: bytes | None = None) -> None:
        """Handle a message from the browser."""
        try:
            message = json.loads(text_data or '')
        except json.JSONDecodeError:
            logger.warning("Ignoring non-JSON WebSocket message from %s", self.get_client_ip())
            return
        if not isinstance(message, dict):
            logger.warning("Ignoring WebSocket message that is not a JSON object")
            return

        msg_type = message.get('type')
        if msg_type == 'fix':
            await self._handle_fix(message)
        elif msg_type == 'geolocation_error':
            await self._handle_geolocation_error(message)
        else:
            logger.debug("Unhandled WebSocket message type: %s", msg_type)

    async def _handle_fix(self, message: dict[str, Any]) -> None:
        if self.session is None or self.session.publisher is None or self.source is None:
            await self.send_json({'type': 'error', 'error': 'Sign in to publish your location'})
            return
        await self.source.push_fix(Fix(
            latitude=message.get('latitude'),
            longitude=message.get('longitude'),
            accuracy=message.get('accuracy'),
        ))

    async def _handle_geolocation_error(self, message: dict[str, Any]) -> None:
        if self.source is None:
            return
        code = str(message.get('code') or GeolocationError.POSITION_UNAVAILABLE)
        await self.source.push_error(GeolocationError(code, str(message.get('message') or '')))

    async def _send_trails(self, trails: Trails) -> None:
        await self.send_json({'type': 'trails', 'data': serialize_trails(trails)})

    async def _send_presence(self, statuses: Mapping[str, PresenceStatus]) -> None:
        await self.send_json({'type': 'presence', 'data': serialize_presence(statuses)})

    async def _send_publish_error(self, error: Exception) -> None:
        # Only sensor errors are shown to the user; the rest stay in the log
        if isinstance(error, GeolocationError):
            await self._send_status(error.code, error.message)

    async def _send_status(self, code: str, message: str) -> None:
        await self.send_json({'type': 'status', 'code': code, 'message': message})

    async def send_json(self, content: dict[str, Any]) -> None:
        await self.send(text_data=json.dumps(content))
