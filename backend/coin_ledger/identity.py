"""
Identity Provider - Resolves the panel account id for a new ledger account

At registration the dashboard looks the user up on the hosting panel by
email and creates a panel user when none exists. The returned id is stored
on the account as external_id; the ledger never interprets it.

All panel calls are bounded by PROVIDER_TIMEOUT_SECONDS and retried up to
PROVIDER_MAX_RETRIES times on transport errors and 5xx responses.
"""

import asyncio
import logging
import os
import secrets
from typing import Any, Dict, Optional

import httpx

from .config import PROVIDER_MAX_RETRIES, PROVIDER_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class IdentityProviderError(Exception):
    """Panel lookup or creation failed."""


class IdentityProvider:
    async def resolve_external_id(self, email: str, username: str) -> str:
        raise NotImplementedError


class PanelIdentityProvider(IdentityProvider):
    """Pterodactyl-style application API client."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: float = PROVIDER_TIMEOUT_SECONDS,
        max_retries: int = PROVIDER_MAX_RETRIES,
        backoff_seconds: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = (base_url or os.environ.get("PROVIDER_URL", "")).rstrip("/")
        self.api_key = api_key or os.environ.get("PROVIDER_KEY", "")
        self.timeout = httpx.Timeout(timeout_seconds)
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._transport = transport

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json"
        }

    async def resolve_external_id(self, email: str, username: str) -> str:
        """Return the panel id for email, creating the panel user if needed."""
        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout,
            transport=self._transport
        ) as client:
            found = await self._request(
                client, "GET", "/api/application/users",
                params={"filter[email]": email}
            )
            users = found.get("data", [])
            if users:
                return str(users[0]["attributes"]["id"])

            created = await self._request(
                client, "POST", "/api/application/users",
                json={
                    "username": username,
                    "email": email,
                    "first_name": "user",
                    "last_name": "user",
                    "password": secrets.token_urlsafe(12)
                }
            )
            external_id = str(created["attributes"]["id"])
            logger.info(f"Created panel user {external_id} for {email}")
            return external_id

    async def _request(self, client: httpx.AsyncClient, method: str, path: str, **kwargs) -> Dict[str, Any]:
        last_error: Optional[str] = None
        for attempt in range(self.max_retries + 1):
            try:
                response = await client.request(method, path, **kwargs)
                if response.status_code < 400:
                    return response.json()
                if response.status_code < 500:
                    raise IdentityProviderError(
                        f"Panel rejected {method} {path}: {response.status_code} {response.text}"
                    )
                last_error = f"HTTP {response.status_code}"
            except httpx.HTTPError as e:
                last_error = str(e) or e.__class__.__name__

            if attempt < self.max_retries:
                logger.warning(f"Panel {method} {path} failed ({last_error}), retry {attempt + 1}/{self.max_retries}")
                await asyncio.sleep(self.backoff_seconds * (2 ** attempt))

        raise IdentityProviderError(f"Panel {method} {path} failed after {self.max_retries + 1} attempts: {last_error}")
