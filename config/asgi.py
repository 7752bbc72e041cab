"""
ASGI config for the live-trails project.

It exposes the ASGI callable as a module-level variable named ``application``.

For more information on this file, see
https://docs.djangoproject.com/en/5.0/howto/deployment/asgi/
"""

import asyncio
import logging
import os
from typing import Any, Callable, cast

from channels.auth import AuthMiddlewareStack
from channels.routing import ProtocolTypeRouter, URLRouter
from django.core.asgi import get_asgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

# Initialize Django ASGI application early to ensure the AppRegistry
# is populated before importing code that may import ORM models.
django_asgi_app = get_asgi_application()

from live_trails.mqtt.broker import BrokerOptions, MQTTBroker  # noqa: E402
from live_trails.routing import websocket_urlpatterns  # noqa: E402

logger = logging.getLogger(__name__)


class _BrokerState:
    """Holder for the MQTT broker started by the lifespan handler."""

    def __init__(self) -> None:
        self.broker: MQTTBroker | None = None


_state = _BrokerState()


async def lifespan_handler(scope: dict[str, Any], receive: Any, send: Any) -> None:
    """
    Handle ASGI lifespan events to start/stop the MQTT broker.

    Called by ASGI servers that implement the lifespan protocol.
    """
    while True:
        message = await receive()
        if message['type'] == 'lifespan.startup':
            try:
                options = BrokerOptions.from_settings()
                if options.enabled:
                    logger.info("Starting MQTT broker on port %d", options.mqtt_port)
                    _state.broker = MQTTBroker(options)
                    await _state.broker.start()
                else:
                    logger.info("MQTT broker disabled (port=%d)", options.mqtt_port)
                await send({'type': 'lifespan.startup.complete'})
            except Exception as e:
                logger.exception("Failed to start MQTT broker: %s", e)
                await send({'type': 'lifespan.startup.failed', 'message': str(e)})
        elif message['type'] == 'lifespan.shutdown':
            try:
                if _state.broker is not None and _state.broker.is_running:
                    logger.info("Stopping MQTT broker...")
                    await _state.broker.stop()
                    logger.info("MQTT broker stopped")
            except Exception as e:
                logger.exception("Error stopping MQTT broker: %s", e)
            await send({'type': 'lifespan.shutdown.complete'})
            return


class ClientDisconnectMiddleware:
    """ASGI middleware that handles client disconnections gracefully.

    When a client disconnects mid-request (e.g., browser tab closed, network
    drop), the ASGI server cancels the async task. This propagates through
    asgiref's sync_to_async as a CancelledError on a shielded future, which
    asyncio's default exception handler logs at ERROR with a full traceback.

    This middleware catches the CancelledError at the application boundary
    so it never reaches the event loop's exception handler.
    """

    def __init__(self, app: Callable[..., Any]) -> None:
        self.app = app

    async def __call__(
        self,
        scope: dict[str, Any],
        receive: Callable[..., Any],
        send: Callable[..., Any],
    ) -> None:
        try:
            await self.app(scope, receive, send)
        except asyncio.CancelledError:
            method = scope.get('method', '')
            path = scope.get('path', '')
            logger.debug("Client disconnected during %s %s", method, path)


application = ProtocolTypeRouter({
    "http": ClientDisconnectMiddleware(django_asgi_app),
    "websocket": AuthMiddlewareStack(
        URLRouter(
            cast(list, websocket_urlpatterns)  # type: ignore[arg-type]
        )
    ),
    "lifespan": lifespan_handler,
})
