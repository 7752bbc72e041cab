"""
MQTT plugin running a publishing session per OwnTracks user.

Each MQTT user gets the same server-side session a signed-in browser gets:
its fixes go through the distance/time filter into the shared store, and
its presence is kept alive by the heartbeat. The session closes when the
user's last MQTT client disconnects, or when its last device's Last Will
arrives.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from amqtt.broker import BrokerContext
from amqtt.plugins.base import BasePlugin
from amqtt.session import ApplicationMessage, Session

from live_trails.mqtt.handlers import (OwnTracksMessageHandler,
                                       parse_owntracks_topic)
from live_trails.store import DjangoStore
from live_trails.sync.publisher import Fix, PushGeolocationSource
from live_trails.sync.session import Identity, SessionContext
from live_trails.utils import get_sync_settings, session_registry

logger = logging.getLogger(__name__)


@dataclass
class DeviceSession:
    """Session state of one MQTT user."""

    store: DjangoStore
    source: PushGeolocationSource
    session: SessionContext
    devices: set[str] = field(default_factory=set)
    clients: set[str] = field(default_factory=set)
    # Set once session.open() has finished
    ready: asyncio.Event = field(default_factory=asyncio.Event)


class OwnTracksPlugin(BasePlugin[BrokerContext]):
    """
    MQTT Plugin that feeds OwnTracks messages into live trail sessions.

    Only messages the broker accepted for broadcast are ingested, and only
    when the topic user is the publishing client's authenticated username.
    """

    def __init__(self, context: BrokerContext) -> None:
        """Initialize the OwnTracks plugin."""
        super().__init__(context)
        self._handler = OwnTracksMessageHandler()
        self._handler.on_fix(self._handle_fix)
        self._handler.on_lwt(self._handle_lwt)
        self._sessions: dict[str, DeviceSession] = {}
        # client id -> authenticated username (None for anonymous clients)
        self._client_users: dict[str, str | None] = {}
        logger.info("OwnTracksPlugin initialized")

    @property
    def sessions(self) -> dict[str, DeviceSession]:
        """Open sessions keyed by MQTT user."""
        return self._sessions

    async def _open_session(self, user: str) -> DeviceSession:
        existing = self._sessions.get(user)
        if existing is not None:
            await existing.ready.wait()
            return existing

        store = DjangoStore()
        source = PushGeolocationSource()
        session = SessionContext(
            store,
            source=source,
            identity=Identity(user_id=user, display_name=user),
            observe=False,
            settings=get_sync_settings(),
            registry=session_registry,
        )
        device_session = DeviceSession(store=store, source=source, session=session)
        # Registered before opening so concurrent fixes wait for this session
        self._sessions[user] = device_session
        try:
            await session.open()
        finally:
            device_session.ready.set()
        logger.info("Opened OwnTracks session for %s", user)
        return device_session

    async def _close_session(self, user: str) -> None:
        device_session = self._sessions.pop(user, None)
        if device_session is None:
            return
        await device_session.ready.wait()
        await device_session.session.close()
        await device_session.store.disconnect()
        logger.info("Closed OwnTracks session for %s", user)

    async def _handle_fix(self, fix_data: dict[str, Any]) -> None:
        """Push a device fix into its user's session."""
        device_session = await self._open_session(fix_data["user"])
        device_session.devices.add(fix_data["device"])
        if "client_id" in fix_data:
            device_session.clients.add(fix_data["client_id"])
        await device_session.source.push_fix(Fix(
            latitude=fix_data["latitude"],
            longitude=fix_data["longitude"],
            accuracy=fix_data.get("accuracy"),
        ))

    async def _handle_lwt(self, lwt_data: dict[str, Any]) -> None:
        """
        Handle a device's Last Will.

        The user's session is closed once its last known device is gone.
        """
        user = lwt_data["user"]
        device_session = self._sessions.get(user)
        if device_session is None:
            logger.debug("LWT for %s without an open session", user)
            return

        device_session.devices.discard(lwt_data["device"])
        if device_session.devices:
            return
        logger.info("OwnTracks device of %s went offline", user)
        await self._close_session(user)

    async def close_all(self) -> None:
        """Close every open session (broker shutdown)."""
        for user in list(self._sessions):
            await self._close_session(user)

    async def on_broker_client_connected(self, *, client_id: str, client_session: Session) -> None:
        """Remember which user a client authenticated as."""
        self._client_users[client_id] = client_session.username

    async def on_broker_client_disconnected(
        self,
        *,
        client_id: str,
        client_session: Session | None = None,
    ) -> None:
        """
        Close the sessions fed only by this client.

        A clean MQTT DISCONNECT publishes no Last Will, so this is the
        usual way an OwnTracks user goes offline.
        """
        self._client_users.pop(client_id, None)
        for user, device_session in list(self._sessions.items()):
            if client_id not in device_session.clients:
                continue
            device_session.clients.discard(client_id)
            if not device_session.clients:
                logger.info("Last MQTT client of %s disconnected", user)
                await self._close_session(user)

    async def on_broker_message_broadcast(
        self,
        *,
        client_id: str,
        message: ApplicationMessage,
    ) -> None:
        """
        Process a message the broker accepted for delivery.

        Messages rejected by topic filtering never reach this hook.
        """
        topic = message.topic
        topic_info = parse_owntracks_topic(topic)
        if topic_info is None:
            return

        username = self._client_users.get(client_id)
        if username != topic_info["user"]:
            logger.warning(
                "Ignoring %s from client %s authenticated as %s",
                topic, client_id, username,
            )
            return

        logger.debug(
            "MQTT message received: client=%s, topic=%s, size=%d",
            client_id,
            topic,
            len(message.data) if message.data else 0,
        )

        payload = bytes(message.data) if isinstance(message.data, bytearray) else message.data
        await self._handler.handle_message(topic, payload, client_id=client_id)

    async def on_broker_pre_shutdown(self) -> None:
        """Release sessions before the broker stops."""
        await self.close_all()
