"""
Contact Resolver

Looks up customer contact details in the Intercom contact directory.
Archived contacts are unarchived and fetched once more. Any failure
returns None; the orchestrator treats that as a terminal resolution
failure.
"""
from dataclasses import dataclass

import httpx

from app.logging_config import get_logger


DEFAULT_CUSTOMER_NAME = "Valued Customer"

log = get_logger(component="contact_resolver")


@dataclass(frozen=True)
class ContactDetails:
    email: str
    name: str


class _Archived(Exception):
    pass


class ContactResolver:
    """Intercom-backed contact lookup."""

    def __init__(
        self,
        token: str | None,
        base_url: str = "https://api.intercom.io",
        api_version: str = "2.11",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.token = token or ""
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Intercom-Version": self.api_version,
        }

    async def close(self) -> None:
        await self._client.aclose()

    async def resolve(self, contact_id: str) -> ContactDetails | None:
        """
        Fetch email and display name for a contact.

        Returns:
            ContactDetails (email may be empty), or None on any error
        """
        if not contact_id:
            log.warning("contact_id_missing")
            return None
        if not self.token:
            log.error("contact_resolver_not_configured", contact_id=contact_id)
            return None

        try:
            try:
                return await self._fetch(contact_id)
            except _Archived:
                log.info("contact_archived", contact_id=contact_id)
                if not await self.unarchive(contact_id):
                    return None
                return await self._fetch(contact_id)
        except _Archived:
            log.error("contact_still_archived", contact_id=contact_id)
            return None
        except (httpx.HTTPError, ValueError) as e:
            log.error("contact_fetch_failed", contact_id=contact_id, error=str(e))
            return None

    async def _fetch(self, contact_id: str) -> ContactDetails | None:
        response = await self._client.get(
            f"{self.base_url}/contacts/{contact_id}",
            headers=self._headers(),
        )
        if response.status_code == 404:
            raise _Archived()
        if response.is_error:
            log.error(
                "contact_fetch_rejected",
                contact_id=contact_id,
                status_code=response.status_code,
                body=response.text[:500],
            )
            return None

        data = response.json()
        if not isinstance(data, dict):
            log.error("contact_fetch_unreadable", contact_id=contact_id, body=response.text[:500])
            return None
        if data.get("archived"):
            raise _Archived()

        email = data.get("email") or ""
        custom_attributes = data.get("custom_attributes")
        if not isinstance(custom_attributes, dict):
            custom_attributes = {}
        name = data.get("name") or custom_attributes.get("name") or DEFAULT_CUSTOMER_NAME

        log.info("contact_resolved", contact_id=contact_id, has_email=bool(email))
        return ContactDetails(email=email, name=name)

    async def unarchive(self, contact_id: str) -> bool:
        """Unarchive a contact. Returns True on success."""
        try:
            response = await self._client.post(
                f"{self.base_url}/contacts/{contact_id}/unarchive",
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            log.error("contact_unarchive_failed", contact_id=contact_id, error=str(e))
            return False

        if response.is_error:
            log.error(
                "contact_unarchive_rejected",
                contact_id=contact_id,
                status_code=response.status_code,
                body=response.text[:500],
            )
            return False

        log.info("contact_unarchived", contact_id=contact_id)
        return True

    async def test_connection(self) -> bool:
        """Probe the directory with the configured token."""
        if not self.token:
            return False
        try:
            response = await self._client.get(f"{self.base_url}/me", headers=self._headers())
        except httpx.HTTPError as e:
            log.warning("intercom_check_failed", error=str(e))
            return False
        return response.is_success
