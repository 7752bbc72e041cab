"""
WebSocket URL routing for the live_trails app.

Defines WebSocket URL patterns for the live map.
"""
from django.urls import path

from . import consumers

websocket_urlpatterns = [
    path('ws/live/', consumers.LiveMapConsumer.as_asgi()),
]
