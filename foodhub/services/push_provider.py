"""
Foodhub - Push delivery provider (FCM HTTP v1 over httpx)

Providers raise PushError(code, permanent). Permanent errors mean the
token is dead and must be dropped; everything else may be retried.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from foodhub.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

PERMANENT_CODES = frozenset({
    "INVALID_ARGUMENT",
    "UNREGISTERED",
    "NOT_FOUND",
    "SENDER_ID_MISMATCH",
    "INVALID_RECIPIENT",
})


class PushError(Exception):
    def __init__(self, code: str, permanent: bool, message: str = ""):
        super().__init__(message or code)
        self.code = code
        self.permanent = permanent


@dataclass
class PushMessage:
    token: str
    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)
    priority: str = "normal"
    android_channel: str = "orders"
    web: bool = False


@dataclass
class PushResult:
    token: str
    message_id: str | None = None
    error: PushError | None = None

    @property
    def success(self) -> bool:
        return self.error is None


class PushProvider(Protocol):
    async def send(self, message: PushMessage) -> str: ...

    async def send_batch(self, messages: list[PushMessage]) -> list[PushResult]: ...


def classify_status(status_code: int, error_status: str | None) -> PushError:
    """Map an FCM error response onto a PushError."""
    code = (error_status or "").upper() or f"HTTP_{status_code}"
    if code in PERMANENT_CODES or status_code == 404:
        return PushError(code, permanent=True)
    if status_code == 400:
        return PushError(code, permanent=True)
    return PushError(code, permanent=False)


class FCMPushProvider:
    """Sends one HTTP request per message to projects/<id>/messages:send."""

    def __init__(self, project_id: str, access_token: str,
                 endpoint: str | None = None, timeout: float | None = None,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.url = f"{endpoint or settings.FCM_ENDPOINT}/projects/{project_id}/messages:send"
        self._client = httpx.AsyncClient(
            timeout=timeout or settings.PUSH_TIMEOUT_SECONDS,
            headers={"Authorization": f"Bearer {access_token}"},
            transport=transport,
        )

    @staticmethod
    def build_payload(message: PushMessage) -> dict:
        high = message.priority == "high"
        payload = {
            "token": message.token,
            "notification": {"title": message.title, "body": message.body},
            "data": message.data,
            "android": {
                "priority": "high",
                "notification": {"channel_id": message.android_channel, "sound": "default"},
            },
            "apns": {
                "headers": {"apns-priority": "10"},
                "payload": {"aps": {"sound": "default", "badge": 1}},
            },
        }
        if message.web:
            payload["webpush"] = {
                "headers": {"Urgency": "high" if high else "normal"},
                "notification": {
                    "title": message.title,
                    "body": message.body,
                    "requireInteraction": high,
                },
                "fcm_options": {"link": message.data.get("url", "/")},
            }
        return {"message": payload}

    async def send(self, message: PushMessage) -> str:
        try:
            response = await self._client.post(self.url, json=self.build_payload(message))
        except httpx.TimeoutException as exc:
            raise PushError("TIMEOUT", permanent=False, message=str(exc)) from exc
        except httpx.RequestError as exc:
            raise PushError("NETWORK", permanent=False, message=str(exc)) from exc

        if response.is_success:
            return response.json().get("name", "")

        error_status = None
        try:
            error = response.json().get("error", {})
            error_status = error.get("status")
            for detail in error.get("details", []):
                if detail.get("errorCode"):
                    error_status = detail["errorCode"]
        except ValueError:
            pass
        raise classify_status(response.status_code, error_status)

    async def send_batch(self, messages: list[PushMessage]) -> list[PushResult]:
        outcomes = await asyncio.gather(
            *(self.send(m) for m in messages), return_exceptions=True,
        )
        results = []
        for message, outcome in zip(messages, outcomes):
            if isinstance(outcome, PushError):
                results.append(PushResult(message.token, error=outcome))
            elif isinstance(outcome, BaseException):
                logger.warning("Push to %s... failed unexpectedly: %s", message.token[:12], outcome)
                results.append(PushResult(message.token, error=PushError("INTERNAL", permanent=False)))
            else:
                results.append(PushResult(message.token, message_id=outcome))
        return results

    async def aclose(self) -> None:
        await self._client.aclose()


_provider: FCMPushProvider | None = None


def get_push_provider() -> FCMPushProvider | None:
    """None when FCM credentials are not configured; push is then dropped."""
    global _provider
    if _provider is None and settings.push_enabled:
        _provider = FCMPushProvider(settings.FCM_PROJECT_ID, settings.FCM_ACCESS_TOKEN)
    return _provider


async def close_push_provider() -> None:
    global _provider
    if _provider is not None:
        await _provider.aclose()
        _provider = None
