from __future__ import annotations

from typing import Any, Optional

import httpx


class ApiError(Exception):
    def __init__(self, status: int, detail: str, field_errors: Optional[dict[str, list[str]]] = None):
        super().__init__(f"{status}: {detail}")
        self.status = status
        self.detail = detail
        self.field_errors = field_errors or {}


def _clean_params(params: Optional[dict]) -> dict:
    """Drop empty filters and join list values the way the API expects (comma separated)."""
    cleaned = {}
    for key, value in (params or {}).items():
        if value is None or value == "" or value == []:
            continue
        if isinstance(value, (list, tuple, set)):
            value = ",".join(str(v) for v in value)
        cleaned[key] = value
    return cleaned


class ApiClient:
    def __init__(
        self,
        base_url: str = "http://localhost:3000",
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.token = token
        self._client = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    async def request(self, method: str, path: str, params: Optional[dict] = None, json: Any = None) -> Any:
        response = await self._client.request(method, path, params=_clean_params(params), json=json, headers=self._headers())
        if response.is_success:
            if not response.content:
                return None
            if response.headers.get("content-type", "").startswith("application/json"):
                return response.json()
            return response.text
        try:
            body = response.json()
        except ValueError:
            body = {"detail": response.text or response.reason_phrase}
        raise ApiError(response.status_code, str(body.get("detail", "Request failed")), body.get("errors"))

    async def login(self, email: str, password: str) -> dict:
        payload = await self.request("POST", "/auth/login", json={"email": email, "password": password})
        self.token = payload["access_token"]
        return payload

    async def list_resource(self, path: str, params: Optional[dict] = None) -> dict:
        return await self.request("GET", path, params=params)

    async def create(self, path: str, body: dict) -> dict:
        return await self.request("POST", path, json=body)

    async def update(self, path: str, body: dict) -> dict:
        return await self.request("PATCH", path, json=body)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)
