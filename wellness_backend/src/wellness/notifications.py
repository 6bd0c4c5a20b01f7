from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from .errors import NotificationTransportError
from .models import NotificationRequest

logger = logging.getLogger(__name__)


# PUBLIC_INTERFACE
class Notifications(ABC):
    """Contract of the external notifications service used by the core."""

    @abstractmethod
    def send(self, request: NotificationRequest) -> Optional[str]:
        """
        Ask the notifications service to deliver (or schedule) a message.

        Returns the message id, or None when there was nobody to notify.
        Raises NotificationTransportError on transport failure or non-2xx.
        """

    @abstractmethod
    def delete(self, app_id: str, org_id: str, message_id: str) -> None:
        """Delete a pending message. Raises NotificationTransportError on failure."""


class NotificationsAdapter(Notifications):
    """
    httpx client for the notifications building block.

    Messages are posted to {base_url}/api/bbs/message and deleted through
    {base_url}/api/bbs/message/{id}; both calls are tenant scoped and carry
    the internal API key.
    """

    def __init__(
        self,
        base_url: str,
        internal_api_key: Optional[str],
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)
        self._internal_api_key = internal_api_key

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._internal_api_key:
            headers["INTERNAL-API-KEY"] = self._internal_api_key
        return headers

    @staticmethod
    def _message_body(request: NotificationRequest) -> Dict[str, Any]:
        message: Dict[str, Any] = {
            "org_id": request.org_id,
            "app_id": request.app_id,
            "priority": 10,
            "recipients": [{"user_id": user_id} for user_id in request.recipients],
            "topic": None,
            "subject": request.subject,
            "body": request.body,
            "data": {k: str(v) for k, v in request.data.items()},
        }
        if request.scheduled_at is not None:
            message["time"] = int(request.scheduled_at)
        return {"async": True, "message": message}

    def send(self, request: NotificationRequest) -> Optional[str]:
        if not request.recipients:
            return None

        try:
            response = self._client.post(
                f"{self._base_url}/api/bbs/message",
                headers=self._headers(),
                json=self._message_body(request),
            )
        except httpx.HTTPError as exc:
            raise NotificationTransportError("send notification", str(exc)) from exc

        if response.status_code != 200:
            raise NotificationTransportError(
                "send notification", f"response code {response.status_code}", response.status_code
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise NotificationTransportError("send notification", f"invalid response body: {exc}") from exc

        message_id = payload.get("id") if isinstance(payload, dict) else None
        if not message_id:
            raise NotificationTransportError("send notification", "response without message id")
        logger.debug("notification sent: app_id=%s org_id=%s id=%s", request.app_id, request.org_id, message_id)
        return str(message_id)

    def delete(self, app_id: str, org_id: str, message_id: str) -> None:
        try:
            response = self._client.delete(
                f"{self._base_url}/api/bbs/message/{message_id}",
                headers=self._headers(),
                params={"app_id": app_id, "org_id": org_id},
            )
        except httpx.HTTPError as exc:
            raise NotificationTransportError("delete notification", str(exc)) from exc

        if not response.is_success:
            raise NotificationTransportError(
                "delete notification", f"response code {response.status_code}", response.status_code
            )
        logger.debug("notification deleted: app_id=%s org_id=%s id=%s", app_id, org_id, message_id)

    def close(self) -> None:
        self._client.close()
