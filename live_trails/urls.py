"""URL routing for live_trails app."""

from django.urls import include, path
from django.urls.resolvers import URLPattern, URLResolver
from rest_framework.routers import DefaultRouter

from .views import (LocationSampleViewSet, PresenceViewSet, TrailViewSet,
                    health)


class OptionalSlashRouter(DefaultRouter):
    """Router that accepts URLs both with and without trailing slashes."""

    def __init__(self, *args: object, **kwargs: object) -> None:
        super().__init__(*args, **kwargs)
        self.trailing_slash = "/?"


router = OptionalSlashRouter()
router.register(r'locations', LocationSampleViewSet, basename='location')
router.register(r'trails', TrailViewSet, basename='trail')
router.register(r'presence', PresenceViewSet, basename='presence')

urlpatterns: list[URLPattern | URLResolver] = [
    path('health/', health, name='health'),
    path('', include(router.urls)),
]
