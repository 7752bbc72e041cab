"""App configuration for live_trails application."""
from django.apps import AppConfig


class LiveTrailsConfig(AppConfig):
    """Configuration for the live_trails app."""

    default_auto_field: str = 'django.db.models.BigAutoField'
    name: str = 'live_trails'
    verbose_name: str = 'Live Trails'
