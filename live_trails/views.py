"""
API views for live trails.

This module provides read-only REST endpoints over the shared store:
raw location samples, per-user trails and presence. Writes go through the
WebSocket and MQTT sessions only.
"""
import logging
from typing import Any

from django.db.models import QuerySet
from django.http import HttpRequest, JsonResponse
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.request import Request
from rest_framework.response import Response

from live_trails import STARTUP_TIMESTAMP
from live_trails.models import LocationSample, PresenceRecord
from live_trails.serializers import (LocationSampleSerializer,
                                     PresenceRecordSerializer)
from live_trails.sync.aggregator import build_trails
from live_trails.sync.publisher import LocationSample as SyncLocationSample
from live_trails.utils import now_ms, serialize_trails

logger = logging.getLogger(__name__)


class TimeRangeError(ValueError):
    """Raised when a time range query parameter is not an integer."""


def filter_samples(queryset: QuerySet, params: Any) -> QuerySet:
    """
    Apply ``user``, ``start_time`` and ``end_time`` query parameters.

    Times are integer milliseconds since the epoch, inclusive.

    Raises:
        TimeRangeError: If a time parameter is not an integer
    """
    user_id = params.get('user')
    if user_id:
        queryset = queryset.filter(user_id=user_id)

    for name, lookup in (('start_time', 'timestamp__gte'), ('end_time', 'timestamp__lte')):
        value = params.get(name)
        if value is None:
            continue
        try:
            queryset = queryset.filter(**{lookup: int(value)})
        except ValueError as e:
            raise TimeRangeError(f"Expected integer ms timestamp for {name}, got '{value}'") from e
    return queryset


class LocationSampleViewSet(viewsets.ReadOnlyModelViewSet):
    """
    ViewSet for raw location samples.

    Provides endpoints for:
    - GET /locations/: List samples, filterable by user and time range
    - GET /locations/{id}/: Get one sample
    """

    queryset = LocationSample.objects.all()
    serializer_class = LocationSampleSerializer

    def list(self, request: Request, *args: Any, **kwargs: Any) -> Response:
        """
        List location samples with optional filtering.

        Query parameters:
        - user: Filter by user ID
        - start_time: Earliest timestamp (ms since the epoch)
        - end_time: Latest timestamp (ms since the epoch)
        """
        try:
            queryset = filter_samples(self.get_queryset(), request.query_params)
        except TimeRangeError as e:
            return Response({'error': str(e)}, status=status.HTTP_400_BAD_REQUEST)

        page = self.paginate_queryset(queryset)
        if page is not None:
            serializer = self.get_serializer(page, many=True)
            return self.get_paginated_response(serializer.data)

        serializer = self.get_serializer(queryset, many=True)
        return Response(serializer.data)


def _trails_from(queryset: QuerySet) -> dict[str, list[dict[str, Any]]]:
    samples = (
        SyncLocationSample.from_record(row.to_record())
        for row in queryset.order_by('timestamp')
    )
    return serialize_trails(build_trails(sample for sample in samples if sample is not None))


class TrailViewSet(viewsets.ViewSet):
    """
    ViewSet for per-user trails.

    Trails are derived on read exactly as subscribers derive them: grouped
    by user, sorted by timestamp, one sample per timestamp.

    Provides endpoints for:
    - GET /trails/: Every user's trail
    - GET /trails/{user_id}/: One user's trail
    """

    lookup_value_regex = '[^/]+'

    def list(self, request: Request) -> Response:
        """List trails, accepting the same filters as the locations endpoint."""
        try:
            queryset = filter_samples(LocationSample.objects.all(), request.query_params)
        except TimeRangeError as e:
            return Response({'error': str(e)}, status=status.HTTP_400_BAD_REQUEST)

        trails = _trails_from(queryset)
        return Response({'trails': trails, 'count': len(trails)})

    def retrieve(self, request: Request, pk: str | None = None) -> Response:
        """Get the trail of one user."""
        trails = _trails_from(LocationSample.objects.filter(user_id=pk))
        if pk not in trails:
            return Response(
                {'error': f"Expected a user with a trail, got '{pk}' which has none"},
                status=status.HTTP_404_NOT_FOUND,
            )
        trail = trails[pk]
        return Response({'user_id': pk, 'trail': trail, 'latest': trail[-1]})


class PresenceViewSet(viewsets.ReadOnlyModelViewSet):
    """
    ViewSet for presence records.

    Provides endpoints for:
    - GET /presence/: Every user's presence with derived liveness
    - GET /presence/{user_id}/: One user's presence
    - GET /presence/online/: Users currently online and their count
    """

    queryset = PresenceRecord.objects.all()
    serializer_class = PresenceRecordSerializer
    lookup_field = 'user_id'
    lookup_value_regex = '[^/]+'

    def get_serializer_context(self) -> dict[str, Any]:
        context = super().get_serializer_context()
        context['now'] = now_ms()
        return context

    @action(detail=False, methods=['get'])
    def online(self, request: Request) -> Response:
        """
        List users that are effectively online.

        A record still flagged online whose heartbeat went stale is left out.
        """
        serializer = self.get_serializer(self.get_queryset().filter(online=True), many=True)
        users = [user for user in serializer.data if user['effectively_online']]
        return Response({'count': len(users), 'users': users})


def health(request: HttpRequest) -> JsonResponse:
    """Liveness check for load balancers."""
    return JsonResponse({'status': 'ok', 'server_startup': STARTUP_TIMESTAMP})
