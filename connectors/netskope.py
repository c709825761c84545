"""
Netskope tenant client — publisher management over the REST API v2.

Wraps the four calls the provisioner needs (create, issue registration
token, get, delete) and translates HTTP failures into the provisioner's
error taxonomy.  Throttling (429), 5xx responses and connection errors are
retried with exponential backoff before giving up.
"""

from __future__ import annotations

import logging
import os
import re
import time
from typing import Any, Callable

import requests

from provisioner.errors import (
    AuthError,
    DuplicateName,
    PublisherConflict,
    PublisherNotFound,
    RateLimited,
    TenantError,
)
from provisioner.models import (
    PUBLISHER_CONNECTED,
    PUBLISHER_DISCONNECTED,
    PUBLISHER_PENDING,
    PublisherIdentity,
    RegistrationToken,
)

logger = logging.getLogger(__name__)

API_TOKEN_ENV = "NETSKOPE_API_TOKEN"
TENANT_URL_ENV = "NETSKOPE_TENANT_URL"

_PUBLISHERS_PATH = "/api/v2/infrastructure/publishers"

# Delete-conflict wording.  Must not match "disconnected".
_STILL_CONNECTED = re.compile(r"\b(?:is|still|currently)\s+connected\b|\bactive\s+connection", re.IGNORECASE)

_STATUS_MAP = {
    "connected": PUBLISHER_CONNECTED,
    "disconnected": PUBLISHER_DISCONNECTED,
    "not registered": PUBLISHER_PENDING,
    "not_registered": PUBLISHER_PENDING,
}


class TenantClient:
    """Thin client for the tenant's publisher-management API.

    The API token is read from ``NETSKOPE_API_TOKEN`` when not passed in;
    it is never loaded from a file.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_token: str | None = None,
        timeout: float = 30,
        max_retries: int = 5,
        backoff: float = 1.0,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        base_url = base_url or os.environ.get(TENANT_URL_ENV)
        if not base_url:
            raise AuthError(f"tenant URL not configured (set {TENANT_URL_ENV})")
        self._base_url = base_url.rstrip("/")
        if not self._base_url.startswith(("http://", "https://")):
            self._base_url = f"https://{self._base_url}"

        self._token = api_token or os.environ.get(API_TOKEN_ENV)
        if not self._token:
            raise AuthError(f"tenant API token not configured (set {API_TOKEN_ENV})")

        self._timeout = timeout
        self._max_retries = max_retries
        self._backoff = backoff
        self._sleep = sleep

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {
            "Netskope-Api-Token": self._token,
            "Accept": "application/json",
        }

    def _delay(self, attempt: int, resp: requests.Response | None) -> float:
        if resp is not None:
            retry_after = resp.headers.get("Retry-After")
            if retry_after:
                try:
                    return float(retry_after)
                except ValueError:
                    pass
        return self._backoff * (2 ** attempt)

    def _request(
        self,
        method: str,
        path: str,
        json_body: dict | None = None,
        idempotent: bool = True,
    ) -> requests.Response:
        """Send a request, retrying transient failures.

        Returns the final response for the caller to interpret; raises
        ``RateLimited`` or ``TenantError`` once retries are exhausted.
        Non-idempotent requests are only retried on 429: after a 5xx or a
        dropped connection the server may already have applied them.
        """
        url = f"{self._base_url}{path}"
        for attempt in range(self._max_retries + 1):
            try:
                resp = requests.request(
                    method,
                    url,
                    json=json_body,
                    headers=self._headers(),
                    timeout=self._timeout,
                )
            except requests.RequestException as exc:
                if not idempotent or attempt >= self._max_retries:
                    raise TenantError(f"{method} {path} failed: {exc}") from exc
                logger.warning("%s %s failed (%s), retrying", method, path, exc)
                self._sleep(self._delay(attempt, None))
                continue

            retryable = resp.status_code == 429 or (idempotent and resp.status_code >= 500)
            if retryable:
                if attempt >= self._max_retries:
                    if resp.status_code == 429:
                        raise RateLimited(
                            f"{method} {path} throttled after {attempt + 1} attempts",
                            status_code=429, body=resp.text,
                        )
                    raise TenantError(
                        f"{method} {path} returned {resp.status_code}",
                        status_code=resp.status_code, body=resp.text,
                    )
                logger.warning("%s %s returned %s, retrying", method, path, resp.status_code)
                self._sleep(self._delay(attempt, resp))
                continue

            if resp.status_code >= 500:
                raise TenantError(
                    f"{method} {path} returned {resp.status_code}; not retried, the request may have been applied",
                    status_code=resp.status_code, body=resp.text,
                )

            if resp.status_code in (401, 403):
                raise AuthError(
                    f"{method} {path} rejected credentials ({resp.status_code})",
                    status_code=resp.status_code, body=resp.text,
                )
            return resp

        raise TenantError(f"{method} {path} exhausted retries")  # pragma: no cover

    @staticmethod
    def _data(resp: requests.Response) -> dict:
        try:
            payload = resp.json()
        except ValueError:
            return {}
        if isinstance(payload, dict):
            data = payload.get("data", payload)
            return data if isinstance(data, dict) else {}
        return {}

    # ------------------------------------------------------------------
    # Publisher operations
    # ------------------------------------------------------------------

    def create_publisher(self, name: str) -> PublisherIdentity:
        resp = self._request("POST", _PUBLISHERS_PATH, {"name": name}, idempotent=False)
        if resp.status_code == 409 or (
            resp.status_code == 400 and "already exist" in resp.text.lower()
        ):
            raise DuplicateName(
                f"publisher named {name!r} already exists",
                status_code=resp.status_code, body=resp.text,
            )
        if resp.status_code not in (200, 201):
            raise TenantError(
                f"create publisher {name!r} returned {resp.status_code}",
                status_code=resp.status_code, body=resp.text,
            )
        data = self._data(resp)
        publisher_id = data.get("id")
        if publisher_id is None:
            raise TenantError("create publisher response had no id", body=resp.text)
        logger.info("Created publisher %s (id=%s)", name, publisher_id)
        return PublisherIdentity(publisher_id=str(publisher_id), name=data.get("name", name))

    def issue_token(self, publisher_id: str) -> RegistrationToken:
        resp = self._request("POST", f"{_PUBLISHERS_PATH}/{publisher_id}/registration_token")
        if resp.status_code == 404:
            raise PublisherNotFound(
                f"publisher {publisher_id} not found",
                status_code=404, body=resp.text,
            )
        if resp.status_code not in (200, 201):
            raise TenantError(
                f"issue token for {publisher_id} returned {resp.status_code}",
                status_code=resp.status_code, body=resp.text,
            )
        token = self._data(resp).get("token")
        if not token:
            raise TenantError(f"no token in response for publisher {publisher_id}")
        logger.info("Issued registration token for publisher %s", publisher_id)
        return RegistrationToken(publisher_id=publisher_id, value=token)

    def get_publisher(self, publisher_id: str) -> PublisherIdentity:
        resp = self._request("GET", f"{_PUBLISHERS_PATH}/{publisher_id}")
        if resp.status_code == 404:
            raise PublisherNotFound(
                f"publisher {publisher_id} not found",
                status_code=404, body=resp.text,
            )
        if resp.status_code != 200:
            raise TenantError(
                f"get publisher {publisher_id} returned {resp.status_code}",
                status_code=resp.status_code, body=resp.text,
            )
        data = self._data(resp)
        raw_status = str(data.get("status", "")).strip().lower()
        return PublisherIdentity(
            publisher_id=str(data.get("id", publisher_id)),
            name=data.get("name", ""),
            status=_STATUS_MAP.get(raw_status, PUBLISHER_PENDING),
        )

    def delete_publisher(self, publisher_id: str) -> None:
        """Delete a publisher.  Already-deleted publishers are not an error."""
        resp = self._request("DELETE", f"{_PUBLISHERS_PATH}/{publisher_id}")
        if resp.status_code == 404:
            logger.info("Publisher %s already deleted", publisher_id)
            return
        if resp.status_code == 409 or (
            resp.status_code == 400 and _STILL_CONNECTED.search(resp.text)
        ):
            raise PublisherConflict(
                f"publisher {publisher_id} still has an active connection",
                status_code=resp.status_code, body=resp.text,
            )
        if resp.status_code not in (200, 202, 204):
            raise TenantError(
                f"delete publisher {publisher_id} returned {resp.status_code}",
                status_code=resp.status_code, body=resp.text,
            )
        logger.info("Deleted publisher %s", publisher_id)
