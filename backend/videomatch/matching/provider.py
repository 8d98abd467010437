# videomatch/matching/provider.py
"""Client for the video-room provider (a LiveKit-compatible server).

Only the pieces the matching backend needs: room CRUD and participant lists
over the Twirp RoomService, and verification of the provider's webhooks.
"""
import base64
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import List, Optional

import jwt
import requests
from django.conf import settings

from videomatch.common.errors import MatchingError

logger = logging.getLogger(__name__)

TWIRP_PREFIX = "/twirp/livekit.RoomService/"
TOKEN_TTL_SEC = 60
JOIN_TOKEN_TTL_SEC = 24 * 3600
REQUEST_TIMEOUT_SEC = 5


class ProviderError(MatchingError):
    code = "PROVIDER_ERROR"
    http_status = 502


class RoomNotFound(ProviderError):
    code = "ROOM_NOT_FOUND"
    http_status = 404


class WebhookRejected(MatchingError):
    code = "UNAUTHORIZED"
    http_status = 401


@dataclass
class Participant:
    identity: str
    joined_at: int = 0  # epoch seconds, as reported

    @classmethod
    def from_dict(cls, data: dict) -> "Participant":
        try:
            joined_at = int(data.get("joinedAt") or data.get("joined_at") or 0)
        except (TypeError, ValueError):
            joined_at = 0
        return cls(identity=str(data.get("identity") or ""), joined_at=joined_at)


def _bearer(auth_header: str) -> str:
    if auth_header.lower().startswith("bearer "):
        return auth_header[len("bearer "):]
    return auth_header


def _http_url(host: str) -> str:
    # the SDKs are configured with ws(s):// urls; the room service speaks http(s)
    if host.startswith("wss://"):
        return "https://" + host[len("wss://"):]
    if host.startswith("ws://"):
        return "http://" + host[len("ws://"):]
    return host


class RoomProvider:
    def __init__(self, host: str, api_key: str, api_secret: str, timeout: float = REQUEST_TIMEOUT_SEC):
        self.host = host
        self.base_url = _http_url(host).rstrip("/")
        self.api_key = api_key
        self.api_secret = api_secret
        self.timeout = timeout

    def access_token(self, **video_grants) -> str:
        now = int(time.time())
        claims = {
            "iss": self.api_key,
            "nbf": now,
            "exp": now + TOKEN_TTL_SEC,
            "video": video_grants,
        }
        return jwt.encode(claims, self.api_secret, algorithm="HS256")

    def participant_token(self, room: str, identity: str, ttl_sec: int = JOIN_TOKEN_TTL_SEC) -> str:
        """Token a client presents to join ``room`` as ``identity``."""
        now = int(time.time())
        claims = {
            "iss": self.api_key,
            "sub": identity,
            "name": identity,
            "nbf": now,
            "exp": now + ttl_sec,
            "video": {
                "roomJoin": True,
                "room": room,
                "canPublish": True,
                "canSubscribe": True,
                "canPublishData": True,
            },
        }
        return jwt.encode(claims, self.api_secret, algorithm="HS256")

    def _call(self, method: str, payload: dict, **grants) -> dict:
        token = self.access_token(**grants)
        try:
            resp = requests.post(
                self.base_url + TWIRP_PREFIX + method,
                data=json.dumps(payload),
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderError(f"{method} failed: {e}") from e

        if resp.status_code == 200:
            try:
                return resp.json()
            except ValueError as e:
                raise ProviderError(f"{method} returned a non-JSON body") from e

        try:
            err = resp.json()
        except ValueError:
            err = {}
        if resp.status_code == 404 or err.get("code") == "not_found":
            raise RoomNotFound(err.get("msg") or f"{method}: not found", room=payload.get("room"))
        raise ProviderError(
            f"{method} failed with HTTP {resp.status_code}: {err.get('msg') or resp.text[:200]}"
        )

    def create_room(self, name: str, max_participants: int = 2, empty_timeout: int = 300) -> dict:
        return self._call(
            "CreateRoom",
            {"name": name, "max_participants": max_participants, "empty_timeout": empty_timeout},
            roomCreate=True,
        )

    def delete_room(self, name: str) -> None:
        try:
            self._call("DeleteRoom", {"room": name}, roomCreate=True)
        except RoomNotFound:
            logger.debug("room %s was already gone", name)

    def list_rooms(self) -> List[str]:
        data = self._call("ListRooms", {}, roomList=True)
        return [room.get("name") for room in data.get("rooms") or [] if room.get("name")]

    def list_participants(self, name: str) -> List[Participant]:
        data = self._call("ListParticipants", {"room": name}, roomAdmin=True, room=name)
        participants = [Participant.from_dict(p) for p in data.get("participants") or []]
        return [p for p in participants if p.identity]

    def verify_webhook(self, body, auth_header: Optional[str]) -> dict:
        """Check the webhook's signed token and return the decoded event."""
        if not auth_header:
            raise WebhookRejected("missing authorization header")
        token = _bearer(auth_header)

        try:
            claims = jwt.decode(
                token,
                self.api_secret,
                algorithms=["HS256"],
                issuer=self.api_key,
                options={"verify_aud": False},
            )
        except jwt.PyJWTError as e:
            raise WebhookRejected(f"invalid webhook token: {e}") from e

        if isinstance(body, str):
            body = body.encode("utf-8")
        digest = base64.b64encode(hashlib.sha256(body).digest()).decode("ascii")
        if claims.get("sha256") != digest:
            raise WebhookRejected("webhook body does not match its signature")

        try:
            return json.loads(body)
        except ValueError as e:
            raise WebhookRejected("webhook body is not JSON") from e


def get_provider(use_demo: bool = False) -> RoomProvider:
    conf = settings.LIVEKIT_DEMO if use_demo else settings.LIVEKIT
    return RoomProvider(conf["HOST"], conf["API_KEY"], conf["API_SECRET"])


def get_webhook_provider(auth_header: Optional[str]) -> RoomProvider:
    """The provider whose API key issued this webhook; the main one when unsure."""
    demo_key = settings.LIVEKIT_DEMO["API_KEY"]
    if not auth_header or demo_key == settings.LIVEKIT["API_KEY"]:
        return get_provider()
    try:
        claims = jwt.decode(_bearer(auth_header), options={"verify_signature": False})
    except jwt.PyJWTError:
        return get_provider()
    return get_provider(claims.get("iss") == demo_key)
