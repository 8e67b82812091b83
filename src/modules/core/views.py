import time
from typing import Any, Callable, Dict

import structlog
from django.conf import settings
from django.core.cache import cache
from django.db import DatabaseError, connections
from django.http import HttpRequest, JsonResponse
from django.utils import timezone
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from modules.core.models import OutboxEvent

logger = structlog.get_logger()


def _timed(check: Callable[[], Any]) -> Dict[str, Any]:
    start = time.monotonic()
    detail = check()
    result: Dict[str, Any] = {
        "status": "up",
        "response_time_ms": round((time.monotonic() - start) * 1000, 2),
    }
    if isinstance(detail, dict):
        result.update(detail)
    return result


def _check_database() -> None:
    conn = connections["default"]
    conn.ensure_connection()
    with conn.cursor() as cursor:
        cursor.execute("SELECT 1")
        cursor.fetchone()


def _check_cache() -> None:
    cache.set("_health_check", "ok", 10)
    if cache.get("_health_check") != "ok":
        raise ConnectionError("Cache read failed")


def _check_outbox() -> Dict[str, int]:
    # Backlog is informational; a stuck relay does not fail the check.
    return {
        "backlog": OutboxEvent.objects.deliverable(settings.OUTBOX_MAX_RETRIES).count()
    }


def health_check(request: HttpRequest) -> JsonResponse:
    services: Dict[str, Dict[str, Any]] = {}
    overall_healthy = True

    try:
        services["database"] = _timed(_check_database)
    except DatabaseError:
        services["database"] = {"status": "down"}
        overall_healthy = False
        logger.error("health_check.database_down")

    try:
        services["cache"] = _timed(_check_cache)
    except Exception:  # noqa: BLE001 - any cache backend error means "down"
        services["cache"] = {"status": "down"}
        overall_healthy = False
        logger.error("health_check.cache_down")

    if services["database"]["status"] == "up":
        services["outbox"] = _timed(_check_outbox)

    status_code = 200 if overall_healthy else 503
    logger.info(
        "health_check.completed", status="healthy" if overall_healthy else "unhealthy"
    )
    return JsonResponse(
        {
            "status": "healthy" if overall_healthy else "unhealthy",
            "timestamp": timezone.now().isoformat(),
            "services": services,
        },
        status=status_code,
    )


class WhoAmIView(APIView):
    """Echo the authenticated identity and its actor claims.

    * No token  -> 401
    * Bad token -> 401
    * Valid JWT -> 200
    """

    permission_classes = [IsAuthenticated]

    def get(self, request: HttpRequest) -> Response:
        claims = getattr(request.user, "payload", None)
        if claims is None:
            claims = getattr(request.auth, "payload", None) or {}
        return Response(
            {
                "user": str(request.user),
                "role": claims.get("role", ""),
                "restaurant_id": claims.get("restaurant_id"),
            }
        )
