"""Tests for the Trustpilot invitation client."""
import asyncio
import json

import httpx
import pytest

from app.errors import AuthError, RateLimited, RejectedError, TransientError
from app.services.trustpilot_client import TrustpilotClient, classify_response


TOKEN_PATH = "/v1/oauth/oauth-business-users-for-applications/accesstoken"
INVITE_PATH = "/v1/private/business-units/bu-1/email-invitations"


class FakeTrustpilot:
    """Scripted MockTransport handler; invitation responses are consumed in order."""

    def __init__(self, invitation_responses=None, token_response=None):
        self.invitation_responses = list(invitation_responses or [])
        self.token_response = token_response
        self.token_requests: list[httpx.Request] = []
        self.invitation_requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == TOKEN_PATH:
            self.token_requests.append(request)
            if self.token_response is not None:
                return self.token_response
            return httpx.Response(200, json={"access_token": f"tok-{len(self.token_requests)}", "expires_in": 3600})
        if request.url.path == INVITE_PATH:
            self.invitation_requests.append(request)
            if self.invitation_responses:
                return self.invitation_responses.pop(0)
            return httpx.Response(201, json={"id": "inv-999", "status": "pending", "createdAt": "2026-03-02T12:00:00Z"})
        return httpx.Response(200, json={"id": "bu-1"})


def _client(handler, clock=None, **overrides) -> TrustpilotClient:
    kwargs = dict(
        api_key="key",
        secret_key="secret",
        business_unit_id="bu-1",
        template_id="tpl-1",
        base_url="https://trustpilot.test/v1",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    if clock is not None:
        kwargs["clock"] = clock
    kwargs.update(overrides)
    return TrustpilotClient(**kwargs)


def _send(client: TrustpilotClient):
    return client.send_invitation(email="alice@example.com", name="Alice", reference_id="conv-123")


def test_send_invitation_posts_expected_payload() -> None:
    server = FakeTrustpilot()
    client = _client(server)

    result = asyncio.run(_send(client))

    assert result.id == "inv-999"
    assert result.status == "pending"
    assert result.created_at == "2026-03-02T12:00:00Z"

    request = server.invitation_requests[0]
    assert request.headers["Authorization"] == "Bearer tok-1"
    assert json.loads(request.content) == {
        "email": "alice@example.com",
        "name": "Alice",
        "referenceId": "conv-123",
        "templateId": "tpl-1",
        "tags": [],
        "locale": "en-US",
    }

    token_request = server.token_requests[0]
    assert token_request.headers["Authorization"].startswith("Basic ")
    assert token_request.content == b"grant_type=client_credentials"


def test_token_is_cached_until_expiry_margin() -> None:
    now = {"t": 1000.0}
    server = FakeTrustpilot(token_response=httpx.Response(200, json={"access_token": "tok", "expires_in": 120}))
    client = _client(server, clock=lambda: now["t"])

    async def scenario():
        await _send(client)
        now["t"] += 59
        await _send(client)
        now["t"] += 2
        await _send(client)

    asyncio.run(scenario())

    assert len(server.token_requests) == 2
    assert len(server.invitation_requests) == 3


def test_refused_token_is_dropped() -> None:
    server = FakeTrustpilot(invitation_responses=[httpx.Response(401, json={"message": "Unauthorized"})])
    client = _client(server)

    async def scenario():
        with pytest.raises(AuthError) as excinfo:
            await _send(client)
        await _send(client)
        return excinfo.value

    error = asyncio.run(scenario())

    assert error.status_code == 401
    assert error.retryable is False
    assert len(server.token_requests) == 2
    assert server.invitation_requests[1].headers["Authorization"] == "Bearer tok-2"


def test_rate_limit_carries_retry_after() -> None:
    server = FakeTrustpilot(invitation_responses=[httpx.Response(429, headers={"Retry-After": "12"}, json={})])

    with pytest.raises(RateLimited) as excinfo:
        asyncio.run(_send(_client(server)))

    assert excinfo.value.retry_after == 12.0
    assert excinfo.value.retryable is True


@pytest.mark.parametrize(
    "status_code, error_type",
    [(500, TransientError), (503, TransientError), (400, RejectedError), (404, RejectedError), (403, AuthError)],
)
def test_classify_response(status_code, error_type) -> None:
    request = httpx.Request("POST", "https://trustpilot.test/v1/x")
    error = classify_response(httpx.Response(status_code, json={"message": "nope"}, request=request))

    assert type(error) is error_type
    assert error.status_code == status_code
    assert "nope" in str(error)


def test_network_failure_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == TOKEN_PATH:
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(TransientError):
        asyncio.run(_send(_client(handler)))


def test_token_exchange_errors() -> None:
    refused = FakeTrustpilot(token_response=httpx.Response(400, json={"error": "invalid_client"}))
    broken = FakeTrustpilot(token_response=httpx.Response(502, text="bad gateway"))

    with pytest.raises(AuthError):
        asyncio.run(_send(_client(refused)))
    with pytest.raises(TransientError):
        asyncio.run(_send(_client(broken)))
    assert refused.invitation_requests == []


def test_unconfigured_client_raises_auth_error() -> None:
    server = FakeTrustpilot()
    client = _client(server, template_id=None)

    assert client.configured is False
    with pytest.raises(AuthError):
        asyncio.run(_send(client))
    assert server.token_requests == []


def test_test_connection() -> None:
    ok = _client(FakeTrustpilot())
    refused = _client(FakeTrustpilot(token_response=httpx.Response(401, json={})))

    assert asyncio.run(ok.test_connection()) is True
    assert asyncio.run(refused.test_connection()) is False


def test_unreadable_invitation_response_is_transient() -> None:
    server = FakeTrustpilot(invitation_responses=[httpx.Response(202, text="Accepted")])

    with pytest.raises(TransientError) as excinfo:
        asyncio.run(_send(_client(server)))

    assert excinfo.value.status_code == 202
    assert excinfo.value.body == "Accepted"


@pytest.mark.parametrize(
    "token_response",
    [httpx.Response(200, text="ok"), httpx.Response(200, json=["tok"])],
)
def test_unreadable_token_response_is_an_auth_error(token_response) -> None:
    server = FakeTrustpilot(token_response=token_response)

    with pytest.raises(AuthError):
        asyncio.run(_send(_client(server)))
    assert server.invitation_requests == []
