"""
MQTT message handlers for OwnTracks devices.

OwnTracks phones are a second geolocation source next to browsers: their
location messages become raw fixes for the topic user's session, and the
broker-published Last Will (``lwt``) message signals that the device
dropped its connection.
"""

import inspect
import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)


def parse_owntracks_message(payload: bytes) -> dict[str, Any] | None:
    """
    Parse an OwnTracks MQTT message payload.

    Args:
        payload: Raw bytes from MQTT message

    Returns:
        Parsed JSON dictionary, or None if parsing fails
    """
    try:
        data = json.loads(payload.decode("utf-8"))
        if not isinstance(data, dict):
            logger.warning("OwnTracks message is not a JSON object: %s", type(data))
            return None
        return data
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("Failed to parse OwnTracks message: %s", e)
        return None


def parse_owntracks_topic(topic: str) -> dict[str, str] | None:
    """
    Parse an OwnTracks MQTT topic to extract user and device.

    OwnTracks topics follow the pattern: owntracks/{user}/{device}[/{subtopic}]

    Returns:
        Dictionary with 'user', 'device', and optional 'subtopic' keys,
        or None if the topic doesn't match OwnTracks format
    """
    parts = topic.split("/")

    if len(parts) < 3 or parts[0] != "owntracks" or not parts[1] or not parts[2]:
        return None

    result = {
        "user": parts[1],
        "device": parts[2],
    }

    if len(parts) > 3:
        result["subtopic"] = "/".join(parts[3:])

    return result


def extract_fix_data(
    message: dict[str, Any],
    topic_info: dict[str, str],
) -> dict[str, Any] | None:
    """
    Extract a raw fix from an OwnTracks location message.

    Coordinates are passed through unvalidated; the publisher owns
    validation and reports bad fixes on its error channel.

    Returns:
        Dictionary with user, device, latitude, longitude and optional
        accuracy, or None if the message is not a location message or
        lacks coordinates
    """
    if message.get("_type") != "location":
        return None

    lat = message.get("lat")
    lon = message.get("lon")
    if lat is None or lon is None:
        logger.warning("Location message missing coordinates: lat=%s, lon=%s", lat, lon)
        return None

    fix_data: dict[str, Any] = {
        "user": topic_info["user"],
        "device": topic_info["device"],
        "latitude": lat,
        "longitude": lon,
    }
    if "acc" in message:
        fix_data["accuracy"] = message["acc"]
    return fix_data


def extract_lwt_data(
    message: dict[str, Any],
    topic_info: dict[str, str],
) -> dict[str, Any] | None:
    """
    Extract Last Will and Testament data from an OwnTracks LWT message.

    LWT messages are published by the broker when a device disconnects
    without saying goodbye.

    Returns:
        Dictionary with the disconnected user/device,
        or None if the message is not a valid LWT message
    """
    if message.get("_type") != "lwt":
        return None

    # tst in LWT is when the device first connected
    tst = message.get("tst")
    connected_at = None
    if tst:
        try:
            connected_at = datetime.fromtimestamp(int(tst), tz=UTC)
        except (ValueError, TypeError, OSError):
            connected_at = None

    return {
        "user": topic_info["user"],
        "device": topic_info["device"],
        "event": "offline",
        "connected_at": connected_at,
        "disconnected_at": datetime.now(tz=UTC),
    }


# Type alias for callbacks that can be sync or async
MessageCallback = Callable[[dict[str, Any]], Any]


class OwnTracksMessageHandler:
    """
    Routes OwnTracks MQTT messages to fix and disconnect callbacks.
    """

    def __init__(self) -> None:
        """Initialize the message handler."""
        self._fix_callbacks: list[MessageCallback] = []
        self._lwt_callbacks: list[MessageCallback] = []

    def on_fix(self, callback: MessageCallback) -> None:
        """Register a callback for location fixes."""
        self._fix_callbacks.append(callback)

    def on_lwt(self, callback: MessageCallback) -> None:
        """Register a callback for LWT (disconnect) messages."""
        self._lwt_callbacks.append(callback)

    async def handle_message(self, topic: str, payload: bytes, client_id: str | None = None) -> None:
        """
        Handle an incoming MQTT message.

        Args:
            topic: MQTT topic
            payload: Message payload bytes
            client_id: MQTT client that published the message, passed on
                to callbacks as ``client_id``
        """
        topic_info = parse_owntracks_topic(topic)
        if not topic_info:
            logger.debug("Ignoring non-OwnTracks topic: %s", topic)
            return

        message = parse_owntracks_message(payload)
        if not message:
            return

        msg_type = message.get("_type")
        logger.debug("Received OwnTracks %s message from %s", msg_type, topic)

        if msg_type == "location":
            await self._dispatch(self._fix_callbacks, extract_fix_data(message, topic_info), "fix", client_id)
        elif msg_type == "lwt":
            await self._dispatch(self._lwt_callbacks, extract_lwt_data(message, topic_info), "LWT", client_id)
        else:
            logger.debug("Unhandled OwnTracks message type: %s", msg_type)

    async def _dispatch(
        self,
        callbacks: list[MessageCallback],
        data: dict[str, Any] | None,
        kind: str,
        client_id: str | None,
    ) -> None:
        if not data:
            return
        if client_id is not None:
            data["client_id"] = client_id
        for callback in callbacks:
            try:
                result = callback(data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Error in %s callback", kind)
