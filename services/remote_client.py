"""HTTP transport to the remote record collection."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

from core.errors import MalformedResponseError, TransportError
from core.logs import get_logger
from core.settings import SYNC
from models.record import Record


logger = get_logger("remote")


@dataclass
class ImportResult:
    records: List[Record] = field(default_factory=list)
    source_title: str = ""
    total_count: int = 0


def import_endpoint_for(collection_endpoint: str, import_path: str = SYNC.import_path) -> str:
    """``http://host/api/technologies`` -> ``http://host/api/<import_path>``."""

    base = collection_endpoint.rstrip("/")
    parent = base.rsplit("/", 1)[0] if "/" in base.split("://", 1)[-1] else base
    return f"{parent}/{import_path.strip('/')}"


def _first_record(data: Any) -> Record:
    if isinstance(data, list):
        if not data:
            raise MalformedResponseError("Response carries an empty data array")
        data = data[0]
    return Record.from_dict(data)


def _record_list(data: Any) -> List[Record]:
    if not isinstance(data, list):
        raise MalformedResponseError("Response data is not an array")
    return [Record.from_dict(item) for item in data]


class RemoteSyncClient:
    """Thin async client over the REST boundary. It never retries."""

    def __init__(
        self,
        endpoint: str = SYNC.default_endpoint,
        *,
        timeout: float = SYNC.request_timeout_sec,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Accept": "application/json"},
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _request(self, method: str, url: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        client = await self._get_client()
        logger.debug("%s %s", method, url)
        try:
            response = await client.request(method, url, json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            detail = exc.response.reason_phrase
            response_data = None
            try:
                response_data = exc.response.json()
                if isinstance(response_data, dict) and response_data.get("message"):
                    detail = str(response_data["message"])
            except ValueError:
                pass
            raise TransportError(
                f"{method} {url} failed with HTTP {status}: {detail}",
                status_code=status,
                response_data=response_data,
            ) from exc
        except httpx.TimeoutException as exc:
            raise TransportError(f"{method} {url} timed out") from exc
        except httpx.RequestError as exc:
            raise TransportError(f"Connection error to {url}: {exc}") from exc

        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise MalformedResponseError(f"{method} {url} returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise MalformedResponseError(f"{method} {url} returned {type(payload).__name__}, expected an object")
        if not payload.get("success", False):
            raise MalformedResponseError(payload.get("message") or f"{method} {url} reported failure")
        return payload

    def _item_url(self, record_id: int) -> str:
        return f"{self.endpoint}/{record_id}"

    # ------------------------------------------------------------------
    async def fetch_all(self) -> List[Record]:
        payload = await self._request("GET", self.endpoint)
        return _record_list(payload.get("data"))

    async def fetch_one(self, record_id: int) -> Record:
        payload = await self._request("GET", self._item_url(record_id))
        return _first_record(payload.get("data"))

    async def create(self, fields: Dict[str, Any]) -> Record:
        payload = await self._request("POST", self.endpoint, fields)
        return _first_record(payload.get("data"))

    async def update(self, record_id: int, diff: Dict[str, Any]) -> Record:
        payload = await self._request("PUT", self._item_url(record_id), diff)
        return _first_record(payload.get("data"))

    async def delete(self, record_id: int) -> None:
        await self._request("DELETE", self._item_url(record_id))

    async def replace_all(self, records: Sequence[Record]) -> List[Record]:
        body = {"technologies": [record.to_dict() for record in records]}
        payload = await self._request("POST", f"{self.endpoint}/sync", body)
        return _record_list(payload.get("data"))

    async def import_from_source(self, url: str) -> ImportResult:
        target = import_endpoint_for(self.endpoint)
        payload = await self._request("POST", target, {"url": url})
        data = payload.get("data")
        if not isinstance(data, list):
            raise MalformedResponseError("Import response data is not an array")
        records: List[Record] = []
        for index, item in enumerate(data):
            if isinstance(item, dict) and "id" not in item:
                # imported items get local ids anyway
                item = {**item, "id": index + 1}
            records.append(Record.from_dict(item))
        title = payload.get("sourceTitle") or payload.get("roadmapTitle") or ""
        total = payload.get("totalCount")
        return ImportResult(
            records=records,
            source_title=str(title),
            total_count=int(total) if isinstance(total, int) else len(records),
        )


__all__ = ["ImportResult", "RemoteSyncClient", "import_endpoint_for"]
