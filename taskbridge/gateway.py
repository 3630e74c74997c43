from __future__ import annotations

import json
import logging
from typing import Any, Callable, TypeVar
from urllib import parse, request
from urllib.error import HTTPError, URLError

from .records import client_from_record, task_from_record, user_from_record
from .schemas import ENTITY_OF_COLLECTION, ENTITY_TYPES, OPERATIONS, Client, Task, User


logger = logging.getLogger("taskbridge.gateway")

T = TypeVar("T")


class GatewayError(RuntimeError):
    """The remote store could not apply or serve a request."""


class SyncTimeoutError(GatewayError):
    """A gateway call did not finish within the allowed time."""


def _truncate(s: str, n: int) -> str:
    s = str(s or "")
    return s if len(s) <= n else s[: n - 3] + "..."


def _safe_url_for_log(url: str) -> str:
    # Drop query strings; they may carry credentials.
    try:
        p = parse.urlparse(str(url))
        return parse.urlunparse((p.scheme, p.netloc, p.path, "", "", ""))
    except ValueError:
        return "<invalid url>"


def _http_request(
    *,
    url: str,
    method: str = "GET",
    headers: dict[str, str] | None = None,
    data: bytes | None = None,
    timeout: float = 15,
) -> tuple[int, str]:
    parsed = parse.urlparse(str(url))
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Invalid remote store URL")

    hdrs = {"User-Agent": "Taskbridge", "Accept": "application/json"}
    if headers:
        for k, v in headers.items():
            if k and v is not None:
                hdrs[str(k)] = str(v)
    req = request.Request(url=str(url), data=data, headers=hdrs, method=str(method).upper())

    safe_url = _safe_url_for_log(str(url))
    try:
        with request.urlopen(req, timeout=timeout) as resp:  # nosec B310
            body = resp.read() or b""
            status = int(getattr(resp, "status", 200))
            text = body.decode("utf-8", errors="replace")
    except HTTPError as e:
        status = int(getattr(e, "code", 0) or 0)
        try:
            body = e.read() or b""
        except OSError:
            body = b""
        snippet = _truncate(body.decode("utf-8", errors="replace").strip(), 300)
        raise GatewayError(f"HTTP {status} from {safe_url}: {snippet}") from None
    except TimeoutError:
        raise SyncTimeoutError(f"Request to {safe_url} timed out") from None
    except URLError as e:
        reason = getattr(e, "reason", None)
        if isinstance(reason, TimeoutError):
            raise SyncTimeoutError(f"Request to {safe_url} timed out") from None
        raise GatewayError(f"Request to {safe_url} failed: {reason or e}") from None
    except OSError as e:
        raise GatewayError(f"Request to {safe_url} failed: {e}") from None

    if status < 200 or status >= 300:
        raise GatewayError(f"HTTP {status} from {safe_url}: {_truncate(text.strip(), 300)}")

    return status, text


class GatewayClient:
    """HTTP client for the remote store: one mutation endpoint plus per-collection reads."""

    def __init__(self, base_url: str, *, api_token: str = "", timeout_seconds: float = 15.0):
        parsed = parse.urlparse(str(base_url or ""))
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(f"Invalid remote store URL: {base_url!r}")
        self.base_url = str(base_url).rstrip("/")
        self.api_token = str(api_token or "")
        self.timeout_seconds = float(timeout_seconds)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _get_json(self, path: str) -> Any:
        _, text = _http_request(
            url=f"{self.base_url}{path}",
            method="GET",
            headers=self._headers(),
            timeout=self.timeout_seconds,
        )
        try:
            return json.loads(text or "null")
        except ValueError:
            raise GatewayError(f"Invalid JSON from {path}: {_truncate(text, 120)}") from None

    # ---- writes ----

    def mutate(self, operation: str, entity_type: str, item: dict[str, Any]) -> None:
        """Apply one operation remotely.

        Raises GatewayError on network failure, non-2xx status or an
        application-level `success: false`, for every entity type.
        """
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown operation: {operation}")
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type}")

        body = json.dumps({"operation": operation, "type": entity_type, "item": item}).encode("utf-8")
        _, text = _http_request(
            url=f"{self.base_url}/api/mutate",
            method="POST",
            headers=self._headers(),
            data=body,
            timeout=self.timeout_seconds,
        )
        try:
            result = json.loads(text or "{}")
        except ValueError:
            raise GatewayError(f"Invalid JSON from /api/mutate: {_truncate(text, 120)}") from None
        if not isinstance(result, dict) or not result.get("success"):
            err = result.get("error") if isinstance(result, dict) else None
            raise GatewayError(f"{operation} {entity_type} rejected: {err or 'unknown error'}")

    def send_operation(self, op) -> None:
        """Sync queue adapter: `op` is a SyncOperation."""
        self.mutate(op.kind, ENTITY_OF_COLLECTION[op.collection], op.payload)

    # ---- reads ----

    def _fetch(self, path: str, mapper: Callable[[dict], T]) -> list[T]:
        rows = self._get_json(path)
        if not isinstance(rows, list):
            raise GatewayError(f"Expected a list from {path}")
        out: list[T] = []
        for row in rows:
            if not isinstance(row, dict) or not str(row.get("id") or "").strip():
                continue
            try:
                out.append(mapper(row))
            except ValueError as e:
                logger.warning("Skipping unreadable row %s from %s: %s", row.get("id"), path, e)
        return out

    def fetch_tasks(self) -> list[Task]:
        return self._fetch("/api/tasks", task_from_record)

    def fetch_users(self) -> list[User]:
        return self._fetch("/api/users", user_from_record)

    def fetch_clients(self) -> list[Client]:
        return self._fetch("/api/clients", client_from_record)

    def fetchers(self) -> dict[str, Callable[[], list]]:
        return {"tasks": self.fetch_tasks, "users": self.fetch_users, "clients": self.fetch_clients}

