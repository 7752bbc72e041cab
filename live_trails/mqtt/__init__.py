"""MQTT ingestion of OwnTracks devices."""

from live_trails.mqtt.broker import BrokerOptions, MQTTBroker, broker_config
from live_trails.mqtt.handlers import (OwnTracksMessageHandler,
                                       extract_fix_data, extract_lwt_data,
                                       parse_owntracks_message,
                                       parse_owntracks_topic)

__all__ = [
    "BrokerOptions",
    "MQTTBroker",
    "OwnTracksMessageHandler",
    "broker_config",
    "extract_fix_data",
    "extract_lwt_data",
    "parse_owntracks_message",
    "parse_owntracks_topic",
]
