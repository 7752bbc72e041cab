"""
Embedded MQTT broker for OwnTracks devices.

The amqtt broker runs in the ASGI server's event loop. Clients log in with
their Django credentials, may publish only under their own
``owntracks/{user}/`` topics, and their location messages feed live trail
sessions through ``OwnTracksPlugin``.
"""

import logging
from dataclasses import dataclass
from typing import Any

from amqtt.broker import Broker

from live_trails.utils import get_live_trails_setting

logger = logging.getLogger(__name__)

SYS_PLUGIN = "amqtt.plugins.sys.broker.BrokerSysPlugin"
AUTH_PLUGIN = "live_trails.mqtt.auth.DjangoAuthPlugin"
TOPIC_PLUGIN = "live_trails.mqtt.auth.OwnTracksTopicPlugin"
OWNTRACKS_PLUGIN = "live_trails.mqtt.plugin.OwnTracksPlugin"

SYS_INTERVAL_SECONDS = 30


@dataclass(frozen=True)
class BrokerOptions:
    """
    Broker tunables.

    Attributes:
        mqtt_port: TCP port; negative disables the broker
        mqtt_ws_port: Port for MQTT over WebSocket
        allow_anonymous: Let clients without credentials connect (they
            still cannot publish)
        ingest: Feed OwnTracks fixes into live trail sessions
    """

    mqtt_port: int = 1883
    mqtt_ws_port: int = 8083
    allow_anonymous: bool = False
    ingest: bool = True

    @property
    def enabled(self) -> bool:
        return self.mqtt_port >= 0

    @classmethod
    def from_settings(cls) -> "BrokerOptions":
        """Read the ``MQTT_*`` entries of the ``LIVE_TRAILS`` settings."""
        return cls(
            mqtt_port=int(get_live_trails_setting('MQTT_PORT', -1)),
            mqtt_ws_port=int(get_live_trails_setting('MQTT_WS_PORT', 8083)),
            allow_anonymous=bool(get_live_trails_setting('MQTT_ALLOW_ANONYMOUS', False)),
        )


def broker_config(options: BrokerOptions) -> dict[str, Any]:
    """
    Build the amqtt configuration.

    amqtt takes authentication and topic checks from the plugin list, so
    the Django auth and topic plugins are always listed.
    """
    plugins: dict[str, dict[str, Any]] = {
        SYS_PLUGIN: {"sys_interval": SYS_INTERVAL_SECONDS},
        AUTH_PLUGIN: {"allow_anonymous": options.allow_anonymous},
        TOPIC_PLUGIN: {},
    }
    if options.ingest:
        plugins[OWNTRACKS_PLUGIN] = {}

    return {
        "listeners": {
            "default": {
                "type": "tcp",
                "bind": f"0.0.0.0:{options.mqtt_port}",
                "max_connections": 100,
            },
            "ws-mqtt": {
                "type": "ws",
                "bind": f"0.0.0.0:{options.mqtt_ws_port}",
                "max_connections": 50,
            },
        },
        "plugins": plugins,
    }


class MQTTBroker:
    """
    Start/stop handle around an amqtt ``Broker``.

    Example:
        broker = MQTTBroker(BrokerOptions.from_settings())
        await broker.start()
        ...
        await broker.stop()
    """

    def __init__(self, options: BrokerOptions | None = None) -> None:
        self.options = options or BrokerOptions()
        self.config = broker_config(self.options)
        self._broker: Broker | None = None

    @property
    def is_running(self) -> bool:
        return self._broker is not None

    async def start(self) -> None:
        """
        Start accepting MQTT clients.

        Raises:
            RuntimeError: If the broker is already running
        """
        if self._broker is not None:
            raise RuntimeError("MQTT broker is already running")

        broker = Broker(self.config)
        await broker.start()
        self._broker = broker
        logger.info(
            "MQTT broker listening on %d (TCP) and %d (WebSocket), anonymous=%s",
            self.options.mqtt_port,
            self.options.mqtt_ws_port,
            self.options.allow_anonymous,
        )

    async def stop(self) -> None:
        """
        Shut the broker down, closing every OwnTracks session first.

        Raises:
            RuntimeError: If the broker is not running
        """
        if self._broker is None:
            raise RuntimeError("MQTT broker is not running")

        broker, self._broker = self._broker, None
        await broker.shutdown()
        logger.info("MQTT broker stopped")
