from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional

import httpx

from .errors import IdentityError
from .models import DeletedAccountGroup

logger = logging.getLogger(__name__)


# PUBLIC_INTERFACE
class Identity(ABC):
    """Contract of the core identity service used by the retention sweep."""

    @abstractmethod
    def load_deleted_memberships(self) -> List[DeletedAccountGroup]:
        """Return deleted accounts grouped by tenant scope. Raises IdentityError."""


def _parse_groups(payload: Any) -> List[DeletedAccountGroup]:
    if payload is None:
        return []
    if not isinstance(payload, list):
        raise IdentityError("deleted memberships response is not a list")

    groups: List[DeletedAccountGroup] = []
    for item in payload:
        if not isinstance(item, dict):
            raise IdentityError("deleted memberships item is not an object")
        account_ids = frozenset(
            str(m["account_id"])
            for m in (item.get("memberships") or [])
            if isinstance(m, dict) and m.get("account_id")
        )
        groups.append(
            DeletedAccountGroup(app_id=str(item.get("app_id", "")), org_id=str(item.get("org_id", "")), account_ids=account_ids)
        )
    return groups


class CoreAdapter(Identity):
    """httpx client for the core building block's deleted memberships endpoint."""

    def __init__(
        self,
        base_url: str,
        service_id: str,
        internal_api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._service_id = service_id
        self._internal_api_key = internal_api_key
        self._client = client or httpx.Client(timeout=timeout)

    def load_deleted_memberships(self) -> List[DeletedAccountGroup]:
        headers = {"Content-Type": "application/json"}
        if self._internal_api_key:
            headers["INTERNAL-API-KEY"] = self._internal_api_key

        try:
            response = self._client.get(
                f"{self._base_url}/bbs/deleted-memberships",
                params={"service_id": self._service_id},
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise IdentityError(f"error sending request - {exc}") from exc

        if response.status_code != 200:
            raise IdentityError(f"error with response code - {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise IdentityError(f"unable to parse json: {exc}") from exc

        groups = _parse_groups(payload)
        logger.info("loaded %d deleted membership group(s)", len(groups))
        return groups

    def close(self) -> None:
        self._client.close()
