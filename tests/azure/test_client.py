"""Tests for the management API client using an in-process httpx transport."""

import json
import time
from dataclasses import dataclass

import httpx
import pytest

from policysim.azure.client import ArmClient, parse_retry_after
from azure.core.exceptions import ClientAuthenticationError

from policysim.azure.errors import ArmApiError, ArmAuthenticationError, ArmNotFoundError, RetryExhaustedError
from policysim.azure.retry import Retrier, RetryPolicy


BASE_URL = "https://management.example.test"


@dataclass
class StubToken:
    token: str
    expires_on: int


class StubCredential:
    def __init__(self):
        self.calls = 0

    def get_token(self, *scopes):
        self.calls += 1
        return StubToken(token=f"token-{self.calls}", expires_on=int(time.time()) + 3600)


class FailingCredential:
    def get_token(self, *scopes):
        raise ClientAuthenticationError("no login")


def make_client(handler, sleeps=None, max_attempts=3):
    sleeps = sleeps if sleeps is not None else []
    retrier = Retrier(RetryPolicy(max_attempts=max_attempts, base_delay=0.1, jitter=False), sleep=sleeps.append)
    return ArmClient(
        base_url=BASE_URL,
        credential=StubCredential(),
        retrier=retrier,
        transport=httpx.MockTransport(handler),
    )


class TestArmClient:
    """Test cases for request handling, errors and pagination."""

    def test_get_sends_bearer_token_and_params(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            seen["params"] = dict(request.url.params)
            seen["path"] = request.url.path
            return httpx.Response(200, json={"name": "corp"})

        with make_client(handler) as client:
            body = client.get("/providers/Microsoft.Management/managementGroups/corp", {"api-version": "2021-04-01"})

        assert body == {"name": "corp"}
        assert seen["auth"] == "Bearer token-1"
        assert seen["params"] == {"api-version": "2021-04-01"}
        assert seen["path"] == "/providers/Microsoft.Management/managementGroups/corp"

    def test_token_is_reused(self):
        client = make_client(lambda request: httpx.Response(200, json={}))
        client.get("/a")
        client.get("/b")
        assert client._credential.calls == 1
        client.close()

    def test_credential_failure_is_an_arm_error(self):
        requests = []
        client = ArmClient(
            base_url=BASE_URL,
            credential=FailingCredential(),
            transport=httpx.MockTransport(lambda request: requests.append(request) or httpx.Response(200, json={})),
        )

        with pytest.raises(ArmAuthenticationError, match="no login"):
            client.get("/a")
        assert requests == []
        client.close()

    def test_string_encoded_body_is_decoded(self):
        payload = json.dumps(json.dumps({"id": "/x", "properties": {"a": 1}}))
        client = make_client(lambda request: httpx.Response(200, content=payload.encode()))
        assert client.get("/x") == {"id": "/x", "properties": {"a": 1}}

    def test_pagination_follows_next_link(self):
        def handler(request):
            if request.url.params.get("page") == "2":
                return httpx.Response(200, json={"value": [{"id": "b"}]})
            return httpx.Response(200, json={
                "value": [{"id": "a"}],
                "nextLink": f"{BASE_URL}/items?api-version=1&page=2",
            })

        client = make_client(handler)
        assert client.get_all("/items", {"api-version": "1"}) == [{"id": "a"}, {"id": "b"}]
        assert client.get_stats()["pages"] == 2

    def test_repeated_next_link_stops(self):
        def handler(request):
            return httpx.Response(200, json={"value": [{"id": "a"}], "nextLink": f"{BASE_URL}/items"})

        client = make_client(handler)
        assert client.get_all("/items") == [{"id": "a"}, {"id": "a"}]

    def test_not_found(self):
        client = make_client(lambda request: httpx.Response(
            404, json={"error": {"code": "PolicyDefinitionNotFound", "message": "gone"}}
        ))

        with pytest.raises(ArmNotFoundError) as exc_info:
            client.get("/providers/Microsoft.Authorization/policyDefinitions/x")

        assert exc_info.value.code == "PolicyDefinitionNotFound"
        assert exc_info.value.message == "gone"

    def test_forbidden_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(403, json={"error": {"code": "AuthorizationFailed", "message": "no"}})

        client = make_client(handler)
        with pytest.raises(ArmApiError) as exc_info:
            client.get("/x")

        assert exc_info.value.status_code == 403
        assert len(calls) == 1

    def test_throttling_honours_retry_after(self):
        responses = [
            httpx.Response(429, headers={"Retry-After": "7"}),
            httpx.Response(200, json={"ok": True}),
        ]
        sleeps = []
        client = make_client(lambda request: responses.pop(0), sleeps=sleeps)

        assert client.get("/x") == {"ok": True}
        assert sleeps == [7.0]
        assert client.get_stats()["retry"]["rate_limited"] == 1

    def test_server_errors_exhaust_retries(self):
        sleeps = []
        client = make_client(lambda request: httpx.Response(503), sleeps=sleeps, max_attempts=2)

        with pytest.raises(RetryExhaustedError):
            client.get("/x")

        assert len(sleeps) == 1
        assert client.get_stats()["requests"] == 2

    def test_transport_errors_are_transient(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json={"ok": True})

        client = make_client(handler)
        assert client.get("/x") == {"ok": True}
        assert len(attempts) == 2

    def test_invalid_json_on_success_is_an_api_error(self):
        client = make_client(lambda request: httpx.Response(200, content=b"{not json"))
        with pytest.raises(ArmApiError) as exc_info:
            client.get("/x")
        assert exc_info.value.code == "InvalidJson"


def test_parse_retry_after():
    assert parse_retry_after("5") == 5.0
    assert parse_retry_after(None) is None
    assert parse_retry_after("soon") is None
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0
