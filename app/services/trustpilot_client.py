"""
Trustpilot invitation dispatcher.

Authenticates with a client-credentials exchange and posts email
invitations for a business unit. The access token is cached for its
stated lifetime; a refused token is dropped so the next send
re-authenticates.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.errors import AuthError, DispatchError, RateLimited, RejectedError, TransientError
from app.logging_config import get_logger


# Refresh this many seconds before the token's stated expiry
TOKEN_EXPIRY_MARGIN = 60
DEFAULT_TOKEN_TTL = 3600

log = get_logger(component="trustpilot")


@dataclass(frozen=True)
class InvitationResult:
    id: str
    status: str
    created_at: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:500]


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def classify_response(response: httpx.Response) -> DispatchError:
    """Map a non-2xx invitation response onto the dispatch error taxonomy."""
    body = _response_body(response)
    status_code = response.status_code
    detail = body.get("message") if isinstance(body, dict) else None
    message = f"Trustpilot API error: {status_code} - {detail or response.reason_phrase}"

    if status_code in (401, 403):
        return AuthError(message, status_code=status_code, body=body)
    if status_code == 429:
        return RateLimited(
            message,
            retry_after=_retry_after(response),
            status_code=status_code,
            body=body,
        )
    if status_code >= 500:
        return TransientError(message, status_code=status_code, body=body)
    return RejectedError(message, status_code=status_code, body=body)


class TrustpilotClient:
    """Review invitation client for one business unit."""

    def __init__(
        self,
        api_key: str | None,
        secret_key: str | None,
        business_unit_id: str | None,
        template_id: str | None,
        base_url: str = "https://api.trustpilot.com/v1",
        locale: str = "en-US",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
        clock=time.monotonic,
    ):
        self.api_key = api_key or ""
        self.secret_key = secret_key or ""
        self.business_unit_id = business_unit_id or ""
        self.template_id = template_id or ""
        self.base_url = base_url.rstrip("/")
        self.locale = locale
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._clock = clock
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    @property
    def configured(self) -> bool:
        return all((self.api_key, self.secret_key, self.business_unit_id, self.template_id))

    async def close(self) -> None:
        await self._client.aclose()

    def invalidate_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    async def get_access_token(self) -> str:
        """
        Return a valid bearer token, exchanging credentials when needed.

        Raises:
            AuthError: credentials missing or refused
            TransientError: token endpoint unreachable or 5xx
        """
        async with self._token_lock:
            if self._token and self._clock() < self._token_expires_at:
                return self._token

            if not self.api_key or not self.secret_key:
                raise AuthError("Trustpilot API key/secret not configured")

            log.info("trustpilot_token_requested")
            try:
                response = await self._client.post(
                    f"{self.base_url}/oauth/oauth-business-users-for-applications/accesstoken",
                    data={"grant_type": "client_credentials"},
                    auth=(self.api_key, self.secret_key),
                )
            except httpx.HTTPError as e:
                raise TransientError(f"Trustpilot token endpoint unreachable: {e}") from e

            if response.status_code >= 500:
                raise TransientError(
                    f"Trustpilot token endpoint error: {response.status_code}",
                    status_code=response.status_code,
                    body=_response_body(response),
                )
            if response.is_error:
                raise AuthError(
                    "Failed to authenticate with Trustpilot API",
                    status_code=response.status_code,
                    body=_response_body(response),
                )

            data = _response_body(response)
            token = data.get("access_token") if isinstance(data, dict) else None
            if not token:
                raise AuthError("Trustpilot token response missing access_token", body=data)

            try:
                ttl = int(data.get("expires_in", DEFAULT_TOKEN_TTL))
            except (TypeError, ValueError):
                ttl = DEFAULT_TOKEN_TTL

            self._token = token
            self._token_expires_at = self._clock() + max(ttl - TOKEN_EXPIRY_MARGIN, 0)
            log.info("trustpilot_token_obtained", expires_in=ttl)
            return token

    async def send_invitation(
        self,
        email: str,
        name: str,
        reference_id: str,
        template_id: str | None = None,
        tags: list[str] | None = None,
        locale: str | None = None,
    ) -> InvitationResult:
        """
        Create an email invitation. reference_id lets Trustpilot
        de-duplicate repeated sends for the same conversation.

        Raises:
            DispatchError subclass describing the failure
        """
        if not self.configured:
            raise AuthError("Trustpilot is not configured")

        token = await self.get_access_token()
        payload = {
            "email": email,
            "name": name,
            "referenceId": reference_id,
            "templateId": template_id or self.template_id,
            "tags": tags or [],
            "locale": locale or self.locale,
        }

        try:
            response = await self._client.post(
                f"{self.base_url}/private/business-units/{self.business_unit_id}/email-invitations",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise TransientError(f"Trustpilot unreachable: {e}") from e

        if response.is_error:
            error = classify_response(response)
            if isinstance(error, AuthError):
                self.invalidate_token()
            log.warning(
                "trustpilot_invitation_failed",
                reference_id=reference_id,
                status_code=response.status_code,
                error=type(error).__name__,
            )
            raise error

        data = _response_body(response)
        if not isinstance(data, dict):
            # the retry reuses reference_id
            raise TransientError(
                "Trustpilot returned an unreadable invitation response",
                status_code=response.status_code,
                body=data,
            )

        log.info("trustpilot_invitation_created", reference_id=reference_id, invitation_id=data.get("id"))
        return InvitationResult(
            id=str(data.get("id", "")),
            status=str(data.get("status", "")),
            created_at=data.get("createdAt"),
            raw=data,
        )

    async def test_connection(self) -> bool:
        """Exchange credentials and read the business unit."""
        try:
            token = await self.get_access_token()
            response = await self._client.get(
                f"{self.base_url}/business-units/{self.business_unit_id}",
                headers={"Authorization": f"Bearer {token}"},
            )
        except (DispatchError, httpx.HTTPError) as e:
            log.warning("trustpilot_check_failed", error=str(e))
            return False
        return response.is_success
