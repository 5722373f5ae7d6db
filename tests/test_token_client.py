"""Tests for the token endpoint client."""

import base64

import httpx
import pytest

from govsso_client.service.errors import UpstreamError
from govsso_client.service.token_client import TokenEndpointClient
from support import TokenEndpointStub, oauth_error, token_response

TOKEN_URL = "https://govsso.test/oauth2/token"


def _client(transport, secret="secret-a") -> TokenEndpointClient:
    return TokenEndpointClient(TOKEN_URL, "client-a", secret, timeout=2.0, transport=transport)


class TestTokenEndpointClient:
    async def test_exchange_code_uses_basic_auth(self):
        stub = TokenEndpointStub()
        client = _client(stub.transport)

        response = await client.exchange_code("code-1", "http://testserver/callback")

        assert response.access_token == "access-2"
        assert response.refresh_token == "refresh-2"
        assert response.expires_in == 900
        assert stub.requests == [
            {
                "grant_type": "authorization_code",
                "code": "code-1",
                "redirect_uri": "http://testserver/callback",
            }
        ]
        expected = base64.b64encode(b"client-a:secret-a").decode()
        assert stub.auth_headers == [f"Basic {expected}"]
        await client.close()

    async def test_refresh_grant(self):
        stub = TokenEndpointStub(lambda form: token_response(refresh_token=None))
        client = _client(stub.transport)

        response = await client.refresh("refresh-1")

        assert stub.requests[0] == {"grant_type": "refresh_token", "refresh_token": "refresh-1"}
        assert response.refresh_token is None
        await client.close()

    async def test_public_client_sends_client_id(self):
        stub = TokenEndpointStub()
        client = _client(stub.transport, secret=None)

        await client.refresh("refresh-1")

        assert stub.requests[0]["client_id"] == "client-a"
        assert stub.auth_headers == [None]
        await client.close()

    async def test_oauth_error_code_is_carried(self):
        stub = TokenEndpointStub(lambda form: oauth_error("invalid_grant"))
        client = _client(stub.transport)

        with pytest.raises(UpstreamError) as exc_info:
            await client.refresh("refresh-1")

        assert exc_info.value.error_code == "invalid_grant"
        assert exc_info.value.detail == {"status_code": 400}
        await client.close()

    async def test_server_error_without_body(self):
        client = _client(httpx.MockTransport(lambda request: httpx.Response(503, content=b"down")))

        with pytest.raises(UpstreamError) as exc_info:
            await client.refresh("refresh-1")

        assert exc_info.value.error_code == "token_endpoint_unavailable"
        await client.close()

    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = _client(httpx.MockTransport(handler))

        with pytest.raises(UpstreamError) as exc_info:
            await client.refresh("refresh-1")

        assert exc_info.value.error_code == "token_endpoint_timeout"
        await client.close()

    async def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = _client(httpx.MockTransport(handler))

        with pytest.raises(UpstreamError) as exc_info:
            await client.exchange_code("code-1", "http://testserver/callback")

        assert exc_info.value.error_code == "token_endpoint_unavailable"
        await client.close()

    async def test_missing_id_token(self):
        client = _client(
            httpx.MockTransport(
                lambda request: httpx.Response(200, json={"access_token": "a", "token_type": "Bearer"})
            )
        )

        with pytest.raises(UpstreamError) as exc_info:
            await client.refresh("refresh-1")

        assert exc_info.value.error_code == "invalid_token_response"
        await client.close()
