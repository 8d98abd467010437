# videomatch/matching/views.py
import hmac
import logging

from django.conf import settings
from rest_framework.permissions import AllowAny, BasePermission
from rest_framework.response import Response
from rest_framework.views import APIView

from videomatch.matching.consumers import schedule_disconnect, schedule_reconcile
from videomatch.matching.health import HealthSupervisor
from videomatch.matching.provider import get_provider, get_webhook_provider
from videomatch.matching.reconciliation import ReconciliationService
from videomatch.matching.records import IN_CALL
from videomatch.matching.services import MATCHED, get_engine, validate_username

logger = logging.getLogger(__name__)


def ok(data=None):
    return Response({"success": True, "data": data, "error": None})


def fail(code: str, message: str, http_status: int = 400):
    return Response(
        {"success": False, "data": None, "error": {"code": code, "message": message}},
        status=http_status,
    )


def _flag(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _join_grant(username, room_name, use_demo) -> dict:
    provider = get_provider(bool(use_demo))
    return {
        "accessToken": provider.participant_token(room_name, username),
        "serverUrl": provider.host,
    }


def _with_join_grant(data: dict, username) -> dict:
    """Matched (or alone in a live room): add what the client needs to join it."""
    if data.get("roomName") and data.get("status") in (MATCHED, IN_CALL):
        data.update(_join_grant(username, data["roomName"], data.get("useDemo")))
    return data


class IsOperator(BasePermission):
    """X-Operator-Token must match MATCHING_OPERATOR_TOKEN. No token configured: closed."""

    def has_permission(self, request, view):
        expected = getattr(settings, "MATCHING_OPERATOR_TOKEN", "") or ""
        given = request.headers.get("X-Operator-Token") or ""
        return bool(expected) and hmac.compare_digest(given, expected)


class EnqueueView(APIView):
    """
    POST /api/match/enqueue
    body: { "username": "alice", "useDemo": false }
    res: { status: matched|waiting, roomName?, matchedWith?, useDemo, accessToken?, serverUrl? }
    """

    permission_classes = [AllowAny]

    def post(self, request):
        username = request.data.get("username")
        result = get_engine().enqueue(username, _flag(request.data.get("useDemo", False)))
        return ok(_with_join_grant(result.to_dict(), username))


class CancelView(APIView):
    permission_classes = [AllowAny]

    def post(self, request):
        return ok(get_engine().cancel(request.data.get("username")))


class SkipView(APIView):
    """
    POST /api/match/skip
    body: { "username", "roomName", "partner"? }
    """

    permission_classes = [AllowAny]

    def post(self, request):
        data = request.data
        return ok(
            get_engine().skip(
                data.get("username"), data.get("roomName"), partner=data.get("partner")
            )
        )


class EndView(APIView):
    permission_classes = [AllowAny]

    def post(self, request):
        return ok(get_engine().end_call(request.data.get("username"), request.data.get("roomName")))


class DisconnectView(APIView):
    """
    POST /api/match/disconnect
    Reported by the client that noticed its partner is gone (it already waited).
    """

    permission_classes = [AllowAny]

    def post(self, request):
        data = request.data
        return ok(
            get_engine().handle_disconnection(
                data.get("username"), data.get("roomName"), partner=data.get("partner")
            )
        )


class StatusView(APIView):
    permission_classes = [AllowAny]

    def get(self, request):
        username = request.query_params.get("username")
        return ok(_with_join_grant(get_engine().status(username), username))


class TokenView(APIView):
    """
    GET /api/match/token?username=alice&roomName=...
    Join token for the room the user is matched in, or alone in.
    """

    permission_classes = [AllowAny]

    def get(self, request):
        username = request.query_params.get("username")
        room_name, use_demo = get_engine().current_room(username, request.query_params.get("roomName"))
        data = {"roomName": room_name, "useDemo": use_demo}
        data.update(_join_grant(username, room_name, use_demo))
        return ok(data)


class LeftBehindView(APIView):
    permission_classes = [AllowAny]

    def get(self, request):
        username = validate_username(request.query_params.get("username"))
        return ok(get_engine().left_behind.status(username))


class ProviderWebhookView(APIView):
    """
    POST /api/match/webhook
    Signed provider event; participant changes are debounced and reconciled
    by the matching-events worker.
    """

    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        body = request.body
        auth = request.headers.get("Authorization")
        event = get_webhook_provider(auth).verify_webhook(body, auth)

        kind = event.get("event")
        room_name = (event.get("room") or {}).get("name")
        logger.info("provider event %s for room %s", kind, room_name)

        if ReconciliationService(get_engine()).handle_event(event):
            schedule_reconcile(room_name)

        identity = (event.get("participant") or {}).get("identity")
        if kind == "participant_left" and room_name and identity:
            schedule_disconnect(identity, room_name)

        return ok({"received": True})


# ---- operator ----


class HealthView(APIView):
    permission_classes = [IsOperator]

    def get(self, request):
        return ok(HealthSupervisor(get_engine()).snapshot())


class ConsistencyView(APIView):
    permission_classes = [IsOperator]

    def get(self, request):
        return ok(HealthSupervisor(get_engine()).check_consistency())

    def post(self, request):
        return ok(HealthSupervisor(get_engine()).repair())


class ClearLocksView(APIView):
    permission_classes = [IsOperator]

    def post(self, request):
        max_age = request.data.get("maxAgeSec")
        if max_age is not None:
            try:
                max_age = int(max_age)
            except (TypeError, ValueError):
                return fail("VALIDATION_ERROR", "maxAgeSec must be an integer")
        cleared = HealthSupervisor(get_engine()).clear_stale_locks(max_age)
        return ok({"cleared": cleared})


class ResetView(APIView):
    permission_classes = [IsOperator]

    def post(self, request):
        target = request.data.get("target")
        if not target:
            return fail("VALIDATION_ERROR", "target is required")
        return ok(HealthSupervisor(get_engine()).reset(target))
