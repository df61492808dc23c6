import logging
from functools import lru_cache
from typing import AsyncIterator

import httpx

from ..config import get_settings

log = logging.getLogger(__name__)

CITY_NOT_LOADED_CODE = "city_not_loaded"
# older backends only say so in the message text
CITY_NOT_LOADED_TEXT = "not loaded yet"


class BackendError(Exception):
    """A request to the routing backend failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class CityNotLoaded(BackendError):
    """The city's dataset has to be generated before it can be served."""


def _extract_detail(response: httpx.Response) -> tuple[str | None, str | None]:
    """Pull (message, code) out of a backend error body if present."""
    try:
        payload = response.json()
    except ValueError:
        text = response.text
        return (text.strip()[:120] if text else None), None
    if not isinstance(payload, dict):
        return None, None
    detail = payload.get("error") or payload.get("detail") or payload.get("message")
    code = payload.get("code")
    return (str(detail) if detail else None), (str(code) if code else None)


def _is_not_loaded(detail: str | None, code: str | None) -> bool:
    if code:
        return code == CITY_NOT_LOADED_CODE
    return bool(detail) and CITY_NOT_LOADED_TEXT in detail


class BackendClient:
    """Async client for the thermal-comfort routing backend."""

    def __init__(self, base_url: str, timeout: float = 15, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self, timeout=None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout if timeout is None else timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, what: str, **kwargs) -> dict | list:
        try:
            async with self._client() as client:
                r = await client.request(method, path, **kwargs)
                r.raise_for_status()
                return r.json()
        except httpx.HTTPStatusError as exc:
            detail, code = _extract_detail(exc.response)
            msg = detail or f"{what} failed ({exc.response.status_code})"
            if _is_not_loaded(detail, code):
                log.info("%s: city data not loaded yet", path)
                raise CityNotLoaded(msg, exc.response.status_code) from exc
            raise BackendError(msg, exc.response.status_code) from exc
        except httpx.RequestError as exc:
            raise BackendError(f"{what} request failed: {exc.__class__.__name__}") from exc
        except ValueError as exc:
            raise BackendError(f"{what} returned an invalid response") from exc

    async def get_cities(self) -> list[dict]:
        data = await self._request("GET", "/api/cities", "Fetch cities")
        if not isinstance(data, dict):
            raise BackendError("Fetch cities returned an invalid response")
        return list(data.get("cities") or [])

    async def get_city_data(self, name: str) -> dict:
        data = await self._request("GET", f"/api/city/{name}/data", "Fetch city data")
        return data

    async def load_city_data(self, name: str) -> str:
        """Ask the backend to generate a city's dataset; returns the operation id."""
        data = await self._request("POST", f"/api/city/{name}/load", "Initiate city data loading")
        op_id = data.get("operation_id") if isinstance(data, dict) else None
        if not op_id:
            raise BackendError("Initiate city data loading returned no operation id")
        return str(op_id)

    async def compare_routes(self, city: str, start_lat: float, start_lon: float, end_lat: float, end_lon: float) -> dict:
        payload = {
            "city": city,
            "start_lat": start_lat,
            "start_lon": start_lon,
            "end_lat": end_lat,
            "end_lon": end_lon,
        }
        data = await self._request("POST", "/api/routes/compare", "Compare routes", json=payload)
        return data

    async def health_check(self) -> bool:
        try:
            async with self._client() as client:
                r = await client.get("/api/health")
                return r.is_success
        except httpx.HTTPError:
            return False

    async def stream_progress(self, operation_id: str) -> AsyncIterator[str]:
        """Yield the ``data`` payload of each server-sent event.

        Multi-line ``data:`` fields are joined with newlines; comments and
        ``event:``/``id:``/``retry:`` fields are ignored.
        """
        timeout = httpx.Timeout(self.timeout, read=None)
        try:
            async with self._client(timeout=timeout) as client:
                async with client.stream("GET", f"/api/progress/{operation_id}") as r:
                    r.raise_for_status()
                    buf: list[str] = []
                    async for line in r.aiter_lines():
                        if line == "":
                            if buf:
                                yield "\n".join(buf)
                                buf = []
                            continue
                        if line.startswith(":"):
                            continue
                        name, _, value = line.partition(":")
                        if name == "data":
                            buf.append(value[1:] if value.startswith(" ") else value)
                    if buf:
                        yield "\n".join(buf)
        except httpx.HTTPStatusError as exc:
            raise BackendError(f"Progress stream failed ({exc.response.status_code})", exc.response.status_code) from exc
        except httpx.RequestError as exc:
            raise BackendError(f"Progress stream failed: {exc.__class__.__name__}") from exc


@lru_cache(maxsize=1)
def get_backend() -> BackendClient:
    s = get_settings()
    return BackendClient(s.api_base_url, timeout=s.request_timeout)
