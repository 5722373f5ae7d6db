from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from govsso_client.logging import get_logger
from govsso_client.service.errors import UpstreamError

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    id_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None


class TokenEndpointClient:
    """OAuth2 token endpoint calls (authorization_code and refresh_token grants).

    Every call is bounded by ``timeout``; any transport failure, timeout,
    non-2xx response or malformed body surfaces as ``UpstreamError`` whose
    ``error_code`` is the provider's OAuth2 error code when it sent one.
    """

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: Optional[str],
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=False,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        return await self._request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
            grant="authorization_code",
        )

    async def refresh(self, refresh_token: str) -> TokenResponse:
        return await self._request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            grant="refresh_token",
        )

    async def _request(self, data: Dict[str, str], *, grant: str) -> TokenResponse:
        auth = (self.client_id, self.client_secret) if self.client_secret else None
        if auth is None:
            data = {**data, "client_id": self.client_id}
        try:
            response = await self._client.post(
                self.token_url,
                data=data,
                auth=auth,
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as exc:
            logger.error("token_endpoint_timeout", grant=grant, error=str(exc))
            raise UpstreamError("token endpoint timed out", error_code="token_endpoint_timeout") from exc
        except httpx.HTTPError as exc:
            logger.error("token_endpoint_unreachable", grant=grant, error=str(exc))
            raise UpstreamError("token endpoint unreachable") from exc

        payload = self._parse_json(response)
        if response.status_code >= 400:
            error_code = payload.get("error") if isinstance(payload.get("error"), str) else None
            logger.error(
                "token_endpoint_error",
                grant=grant,
                status_code=response.status_code,
                oauth_error=error_code,
                oauth_error_description=payload.get("error_description"),
            )
            raise UpstreamError(
                "token endpoint rejected the request",
                error_code=error_code or "token_endpoint_unavailable",
                detail={"status_code": response.status_code},
            )

        access_token = payload.get("access_token")
        id_token = payload.get("id_token")
        if not isinstance(access_token, str) or not isinstance(id_token, str):
            logger.error("token_response_incomplete", grant=grant, keys=sorted(payload.keys()))
            raise UpstreamError("token response missing tokens", error_code="invalid_token_response")

        refresh_token = payload.get("refresh_token")
        expires_in = payload.get("expires_in")
        try:
            expires_in = int(expires_in) if expires_in is not None else None
        except (TypeError, ValueError):
            expires_in = None
        return TokenResponse(
            access_token=access_token,
            id_token=id_token,
            refresh_token=refresh_token if isinstance(refresh_token, str) and refresh_token else None,
            expires_in=expires_in,
            token_type=payload.get("token_type") or "Bearer",
            scope=payload.get("scope"),
        )

    @staticmethod
    def _parse_json(response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            if response.status_code < 400:
                raise UpstreamError("token response is not JSON", error_code="invalid_token_response")
            return {}
        return payload if isinstance(payload, dict) else {}
