# videomatch/matching/consumers.py
import asyncio
import logging

from asgiref.sync import async_to_sync, sync_to_async
from channels.consumer import AsyncConsumer
from channels.layers import get_channel_layer

from videomatch.matching.conf import get_matching_settings
from videomatch.matching.reconciliation import ReconciliationService
from videomatch.matching.services import get_engine

logger = logging.getLogger(__name__)

# manage.py runworker matching-events
EVENTS_CHANNEL = "matching-events"


def _send(message: dict) -> None:
    layer = get_channel_layer()
    if layer is None:
        logger.warning("no channel layer configured, dropping %s", message.get("type"))
        return
    async_to_sync(layer.send)(EVENTS_CHANNEL, message)


def schedule_reconcile(room_name: str) -> None:
    _send({"type": "reconcile.room", "room": room_name})


def schedule_disconnect(username: str, room_name: str) -> None:
    _send({"type": "disconnect.grace", "username": username, "room": room_name})


class ProviderEventConsumer(AsyncConsumer):
    """
    Background worker for provider webhooks.
      - reconcile.room   { room }            : after the debounce window
      - disconnect.grace { username, room }  : after the grace delay
    Each message is handled in its own task so one sleeping room never holds
    up the others.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.conf = get_matching_settings()
        self.tasks = set()

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def reconcile_room(self, message):
        room_name = message.get("room")
        if not room_name:
            return
        self._spawn(self._reconcile_later(room_name))

    async def disconnect_grace(self, message):
        username = message.get("username")
        room_name = message.get("room")
        if not username or not room_name:
            return
        self._spawn(self._disconnect_later(username, room_name))

    async def _reconcile_later(self, room_name):
        await asyncio.sleep(self.conf.RECONCILE_DEBOUNCE_SEC)
        try:
            report = await sync_to_async(self._reconcile, thread_sensitive=False)(room_name)
        except Exception:
            logger.exception("reconcile of %s failed", room_name)
            return
        logger.debug("reconciled %s: %s", room_name, report.action)
        return report

    async def _disconnect_later(self, username, room_name):
        await asyncio.sleep(self.conf.DISCONNECT_GRACE_SEC)
        try:
            result = await sync_to_async(self._confirm_disconnect, thread_sensitive=False)(
                username, room_name
            )
        except Exception:
            logger.exception("disconnect handling for %s in %s failed", username, room_name)
            return
        logger.debug("disconnect of %s from %s: %s", username, room_name, result.get("status"))
        return result

    # ---- sync side ----

    @staticmethod
    def _reconcile(room_name):
        return ReconciliationService(get_engine()).reconcile_room(room_name)

    @staticmethod
    def _confirm_disconnect(username, room_name):
        return ReconciliationService(get_engine()).confirm_disconnect(username, room_name)
