"""
MQTT authentication and topic access for OwnTracks devices.

Devices log in with their Django username and password. The user in an
OwnTracks topic (``owntracks/{user}/{device}``) names the stream the
message is written to, so a client may only publish under its own
username; nobody, superusers included, writes another user's stream.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from amqtt.contexts import Action, BaseContext
from amqtt.plugins.base import BaseAuthPlugin, BaseTopicPlugin
from amqtt.session import Session
from asgiref.sync import sync_to_async
from django.contrib.auth import get_user_model

logger = logging.getLogger(__name__)

# owntracks/{user}/{device}[/{subtopic}]
OWNTRACKS_TOPIC_PATTERN = re.compile(r"^owntracks/([^/]+)/([^/]+)(/.*)?$")


def get_django_user(username: str) -> Any:
    """
    Get a Django user by username.

    Returns:
        Django User object or None if not found
    """
    User = get_user_model()
    try:
        return User.objects.get(username=username)
    except User.DoesNotExist:
        return None


def authenticate_user(username: str, password: str) -> bool:
    """
    Check MQTT credentials against Django's users.

    Returns:
        True for an active user with a matching password
    """
    user = get_django_user(username)
    if user is None:
        logger.debug("MQTT auth failed: user '%s' not found", username)
        return False

    if not user.is_active:
        logger.debug("MQTT auth failed: user '%s' is inactive", username)
        return False

    if not user.check_password(password):
        logger.debug("MQTT auth failed: invalid password for user '%s'", username)
        return False

    logger.info("MQTT auth successful for user '%s'", username)
    return True


def check_topic_access(username: str | None, topic: str, action: str) -> bool:
    """
    Decide whether a client may use a topic.

    Rules:
    - publishing is allowed only under ``owntracks/{username}/``
    - subscribing and receiving are allowed under the client's own
      OwnTracks topics, and under everyone's for superusers
    - ``$SYS`` topics may be read by any authenticated client
    - everything else is denied

    Args:
        username: Authenticated username, None for anonymous clients
        topic: The MQTT topic or topic filter
        action: ``publish``, ``subscribe`` or ``receive``
    """
    if username is None:
        logger.debug("MQTT access denied: anonymous client on '%s'", topic)
        return False

    if topic.startswith("$SYS/"):
        return action != Action.PUBLISH

    match = OWNTRACKS_TOPIC_PATTERN.match(topic)
    if not match:
        logger.debug("MQTT access denied: topic '%s' is not an OwnTracks topic", topic)
        return False

    topic_user = match.group(1)
    if topic_user == username:
        return True

    if action != Action.PUBLISH:
        user = get_django_user(username)
        if user is not None and user.is_superuser:
            return True

    logger.info(
        "MQTT access denied: user '%s' cannot %s topic of user '%s'",
        username,
        action,
        topic_user,
    )
    return False


class DjangoAuthPlugin(BaseAuthPlugin):
    """
    Authenticates MQTT clients against Django's users.

    Anonymous clients connect only with ``allow_anonymous``; they still
    cannot publish, since no OwnTracks topic belongs to them.
    """

    @dataclass
    class Config:
        allow_anonymous: bool = field(default=False)

    def __init__(self, context: BaseContext) -> None:
        super().__init__(context)
        self._allow_anonymous = bool(self._get_config_option("allow-anonymous", False))
        logger.info("DjangoAuthPlugin initialized (allow_anonymous=%s)", self._allow_anonymous)

    async def authenticate(self, *, session: Session) -> bool | None:
        username = session.username
        password = session.password
        if username is None or password is None:
            if self._allow_anonymous:
                session.is_anonymous = True
                return True
            logger.debug("MQTT auth failed: missing username or password")
            return False

        if isinstance(password, bytes):
            password = password.decode("utf-8", errors="replace")
        return await sync_to_async(authenticate_user)(username, password)


class OwnTracksTopicPlugin(BaseTopicPlugin):
    """Applies ``check_topic_access`` to every publish, subscribe and delivery."""

    async def topic_filtering(
        self,
        *,
        session: Session | None = None,
        topic: str | None = None,
        action: Action | None = None,
    ) -> bool | None:
        if session is None or topic is None or action is None:
            return False
        return await sync_to_async(check_topic_access)(session.username, topic, action)
