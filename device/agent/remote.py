"""
HTTP client for the Remote Store API.

Every call is bearer-token authenticated. Transport failures are mapped
onto the closed error set from `shopline.errors` here, at the boundary, so
callers only ever see PosError subclasses:

- HTTP status codes go through `error_for_status` (400 -> ValidationError,
  409 -> ConflictError, 401/403 -> PreconditionError, ...)
- connection errors, timeouts and unreadable bodies become NetworkError
"""

import json
import socket
from decimal import Decimal
from typing import Any, Callable, Iterator, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from shopline.errors import NetworkError, PreconditionError, error_for_status


class RemoteApi:
    def __init__(
        self,
        base_url: str,
        token_source: Callable[[], Optional[str]],
        timeout_s: float = 10.0,
        opener: Callable[..., Any] = urlopen,
    ):
        self.base_url = (base_url or "").strip().rstrip("/")
        self.token_source = token_source
        self.timeout_s = max(0.2, float(timeout_s or 10.0))
        self._urlopen = opener

    def _headers(self) -> dict:
        token = self.token_source()
        if not token:
            raise PreconditionError("missing auth token")
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

    def _request(self, method: str, path: str, payload: Any = None, query: Optional[dict] = None) -> Any:
        if not self.base_url:
            raise NetworkError("missing api_base_url")
        url = f"{self.base_url}{path}"
        if query:
            url = url + "?" + urlencode(query)
        headers = self._headers()
        data = None
        if payload is not None:
            data = json.dumps(payload, default=str).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = Request(url, data=data, headers=headers, method=method)
        try:
            with self._urlopen(req, timeout=self.timeout_s) as resp:
                body = resp.read().decode("utf-8")
        except HTTPError as ex:
            raise error_for_status(ex.code, _error_detail(ex)) from ex
        except (URLError, socket.timeout, TimeoutError, ConnectionError) as ex:
            raise NetworkError(f"{method} {path} failed: {ex}") from ex
        if not body:
            return {}
        try:
            return json.loads(body, parse_float=Decimal)
        except ValueError as ex:
            raise NetworkError(f"{method} {path} returned invalid json") from ex

    def health(self) -> dict:
        return self._request("GET", "/health")

    def checkout(self, items: list[dict]) -> dict:
        return self._request("POST", "/sales/checkout", {"items": items})

    def create_product(self, product: dict) -> dict:
        return self._request("POST", "/products", product)

    def update_product(self, product_id: str, fields: dict) -> dict:
        return self._request("PATCH", f"/products/{quote(str(product_id), safe='')}", fields)

    def set_inventory(self, product_id: str, quantity: int) -> dict:
        return self._request("POST", "/inventory/set", {"productId": product_id, "quantity": quantity})

    def sync_sales(self, sales: list[dict]) -> list[dict]:
        res = self._request("POST", "/sales/sync", {"sales": sales})
        return list((res or {}).get("results") or [])

    def list_products(self, page: int = 1, limit: int = 100) -> dict:
        return self._request("GET", "/products", query={"page": page, "limit": limit})

    def list_sales(self, page: int = 1, limit: int = 100) -> dict:
        return self._request("GET", "/sales", query={"page": page, "limit": limit})

    def iter_pages(self, fetch: Callable[[int, int], dict], limit: int = 100) -> Iterator[list[dict]]:
        page = 1
        while True:
            res = fetch(page, limit) or {}
            rows = list(res.get("items") or [])
            yield rows
            meta = res.get("meta") or {}
            total_pages = int(meta.get("totalPages") or 0)
            if not rows or page >= total_pages:
                return
            page += 1


def _error_detail(ex: HTTPError) -> str:
    try:
        body = ex.read().decode("utf-8")
    except Exception:
        body = ""
    if body:
        try:
            data = json.loads(body)
        except ValueError:
            return body[:1000]
        if isinstance(data, dict):
            detail = data.get("detail") or data.get("message")
            if isinstance(detail, str):
                return detail
    return f"http {ex.code} {getattr(ex, 'reason', '')}".strip()
