"""Supabase (PostgREST) client for the deals data store.

Filters are passed through in PostgREST syntax (``status=eq.approved``,
``or=(title.ilike.*tv*,merchant.ilike.*tv*)``), so a parameter list may repeat
a key; repeated filters are AND-ed by the server.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import httpx

from deals_assistant.config import Settings, get_settings
from deals_assistant.utils.errors import ExternalServiceError
from deals_assistant.utils.logging import get_logger

logger = get_logger("supabase_client")

QueryParams = Union[Dict[str, Any], Sequence[Tuple[str, Any]]]

SERVICE_NAME = "supabase"


def _parse_count(content_range: Optional[str]) -> int:
    """``0-9/42`` or ``*/0`` -> total row count."""
    if not content_range or "/" not in content_range:
        return 0
    total = content_range.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else 0


class SupabaseClient:
    """
    Thin async wrapper over the Supabase REST endpoint.

    One pooled ``httpx.AsyncClient`` is held for the process lifetime and
    closed with ``aclose()``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        supabase = self.settings.supabase
        headers: Dict[str, str] = {"Accept": "application/json"}
        if supabase.service_role_key:
            headers["apikey"] = supabase.service_role_key
            headers["Authorization"] = f"Bearer {supabase.service_role_key}"
        else:
            logger.warning("SUPABASE_SERVICE_ROLE_KEY not set - data store requests will be anonymous")

        self._client = http_client or httpx.AsyncClient(
            base_url=supabase.rest_url,
            timeout=supabase.timeout,
            headers=headers,
        )

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[QueryParams] = None,
        json: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        path = f"/{table}"
        logger.debug(f"{method} {path}")
        try:
            response = await self._client.request(
                method, path, params=params, json=json, headers=headers
            )
            response.raise_for_status()
            return response
        except httpx.TimeoutException as e:
            logger.error(f"Timeout calling data store {method} {path}: {e}")
            raise ExternalServiceError(
                SERVICE_NAME, "Data store request timed out", status_code=504
            ) from e
        except httpx.HTTPStatusError as e:
            body = e.response.text[:500] if e.response is not None else ""
            logger.error(
                f"Data store {method} {path} returned {e.response.status_code}: {body}"
            )
            raise ExternalServiceError(
                SERVICE_NAME,
                f"Data store returned {e.response.status_code}",
                details={"status": e.response.status_code, "table": table, "body": body},
            ) from e
        except httpx.RequestError as e:
            logger.error(f"Network error calling data store {method} {path}: {e}")
            raise ExternalServiceError(
                SERVICE_NAME, "Data store unreachable", status_code=503
            ) from e

    async def select(
        self,
        table: str,
        params: Optional[QueryParams] = None,
        single: bool = False,
    ) -> Union[List[Dict[str, Any]], Optional[Dict[str, Any]]]:
        """
        Read rows from ``table``.

        Args:
            table: Table or view name
            params: PostgREST query parameters (``select``, filters, ``order``, ``limit``)
            single: Return the first row (or None) instead of a list

        Returns:
            List of rows, or a single row / None when ``single`` is set

        Raises:
            ExternalServiceError: If the request fails
        """
        response = await self._request("GET", table, params=params)
        rows = response.json() or []
        if single:
            return rows[0] if rows else None
        return rows

    async def count(self, table: str, params: Optional[QueryParams] = None) -> int:
        """Exact row count for the filtered ``table``."""
        query: List[Tuple[str, Any]] = [("select", "id"), ("limit", 1)]
        if params:
            items = params.items() if isinstance(params, dict) else params
            query.extend(items)
        response = await self._request(
            "GET", table, params=query, headers={"Prefer": "count=exact"}
        )
        return _parse_count(response.headers.get("content-range"))

    async def insert(self, table: str, row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Insert one row and return it as stored."""
        response = await self._request(
            "POST", table, json=row, headers={"Prefer": "return=representation"}
        )
        rows = response.json() or []
        return rows[0] if rows else None

    async def update(
        self,
        table: str,
        params: QueryParams,
        values: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        """Patch every row matching ``params`` with ``values``."""
        response = await self._request(
            "PATCH",
            table,
            params=params,
            json=values,
            headers={"Prefer": "return=representation"},
        )
        return response.json() or []

    async def delete(self, table: str, params: QueryParams) -> int:
        """Delete every row matching ``params``. Returns the number removed."""
        response = await self._request(
            "DELETE",
            table,
            params=params,
            headers={"Prefer": "return=minimal,count=exact"},
        )
        return _parse_count(response.headers.get("content-range"))

    async def aclose(self) -> None:
        await self._client.aclose()
