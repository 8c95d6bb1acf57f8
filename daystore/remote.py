"""Remote replica clients.

The hosted replica speaks the libsql HTTP pipeline protocol. Each call sends a
single statement followed by a close request, so no stream state (baton) is
kept between calls.
"""

from __future__ import annotations

import base64
import json
import logging
import socket
import sqlite3
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from http.client import HTTPConnection, HTTPException, HTTPSConnection
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import urlparse

from .errors import RemoteError, RemoteStatementError, RemoteUnavailable

logger = logging.getLogger(__name__)

PIPELINE_PATH = "/v2/pipeline"


@dataclass
class RemoteResult:
    columns: list[str] = field(default_factory=list)
    rows: list[tuple[Any, ...]] = field(default_factory=list)
    affected_row_count: int = 0

    def dicts(self) -> list[dict[str, Any]]:
        return [dict(zip(self.columns, row, strict=False)) for row in self.rows]

    def scalar(self) -> Any:
        if not self.rows or not self.rows[0]:
            return None
        return self.rows[0][0]


class RemoteReplica(Protocol):
    def execute(
        self, sql: str, args: Sequence[Any] = (), *, timeout_s: float | None = None
    ) -> RemoteResult: ...

    def close(self) -> None: ...


def encode_value(value: Any) -> dict[str, Any]:
    if value is None:
        return {"type": "null"}
    if isinstance(value, bool):
        return {"type": "integer", "value": "1" if value else "0"}
    if isinstance(value, int):
        return {"type": "integer", "value": str(value)}
    if isinstance(value, float):
        return {"type": "float", "value": value}
    if isinstance(value, (bytes, bytearray, memoryview)):
        encoded = base64.b64encode(bytes(value)).decode("ascii")
        return {"type": "blob", "base64": encoded}
    return {"type": "text", "value": str(value)}


def decode_value(value: dict[str, Any] | None) -> Any:
    if not value:
        return None
    kind = value.get("type")
    if kind == "null":
        return None
    if kind == "integer":
        return int(value["value"])
    if kind == "float":
        return float(value["value"])
    if kind == "text":
        return value.get("value")
    if kind == "blob":
        return base64.b64decode(value.get("base64") or "")
    raise RemoteError(f"unknown value type from replica: {kind!r}")


def build_pipeline_body(sql: str, args: Sequence[Any]) -> dict[str, Any]:
    return {
        "requests": [
            {"type": "execute", "stmt": {"sql": sql, "args": [encode_value(a) for a in args]}},
            {"type": "close"},
        ]
    }


def parse_pipeline_response(payload: dict[str, Any]) -> RemoteResult:
    results = payload.get("results")
    if not isinstance(results, list) or not results:
        raise RemoteError("malformed pipeline response: missing results")
    first = results[0]
    if first.get("type") == "error":
        error = first.get("error") or {}
        raise RemoteStatementError(
            str(error.get("message") or "statement failed"), code=error.get("code")
        )
    response = first.get("response") or {}
    result = response.get("result") or {}
    columns = [str(col.get("name") or "") for col in result.get("cols") or []]
    rows = [tuple(decode_value(cell) for cell in row) for row in result.get("rows") or []]
    return RemoteResult(
        columns=columns,
        rows=rows,
        affected_row_count=int(result.get("affected_row_count") or 0),
    )


def http_base_url(url: str) -> str:
    trimmed = url.strip().rstrip("/")
    parsed = urlparse(trimmed)
    if parsed.scheme in {"libsql", "wss", "ws"}:
        return "https://" + trimmed.split("://", 1)[1]
    if not parsed.scheme:
        return f"https://{trimmed}"
    return trimmed


def _request_json(
    url: str,
    body: dict[str, Any],
    *,
    headers: dict[str, str] | None = None,
    timeout_s: float,
) -> tuple[int, dict[str, Any] | None]:
    parsed = urlparse(url)
    if not parsed.hostname:
        raise ValueError("missing hostname")
    if parsed.scheme == "https":
        conn: HTTPConnection = HTTPSConnection(parsed.hostname, parsed.port or 443, timeout=timeout_s)
    else:
        conn = HTTPConnection(parsed.hostname, parsed.port or 80, timeout=timeout_s)
    body_bytes = json.dumps(body, ensure_ascii=False).encode("utf-8")
    request_headers = {
        "Accept": "application/json",
        "Content-Type": "application/json",
        "Content-Length": str(len(body_bytes)),
    }
    if headers:
        request_headers.update(headers)
    payload: Any = None
    try:
        conn.request("POST", parsed.path or "/", body=body_bytes, headers=request_headers)
        resp = conn.getresponse()
        status = int(resp.status)
        raw = resp.read()
        if raw:
            try:
                payload = json.loads(raw.decode("utf-8"))
            except json.JSONDecodeError:
                snippet = raw[:240].decode("utf-8", errors="replace").strip()
                payload = {"error": f"non_json_response: {snippet}" if snippet else "non_json_response"}
    finally:
        conn.close()
    if payload is None or isinstance(payload, dict):
        return status, payload
    return status, {"error": f"unexpected_json_type: {type(payload).__name__}"}


class TursoHttpReplica:
    def __init__(self, url: str, auth_token: str | None = None, timeout_s: float = 3.0) -> None:
        self.base_url = http_base_url(url)
        self.auth_token = auth_token
        self.timeout_s = timeout_s

    def __repr__(self) -> str:
        return f"TursoHttpReplica({self.base_url!r})"

    def execute(
        self, sql: str, args: Sequence[Any] = (), *, timeout_s: float | None = None
    ) -> RemoteResult:
        headers: dict[str, str] = {}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        try:
            status, payload = _request_json(
                f"{self.base_url}{PIPELINE_PATH}",
                build_pipeline_body(sql, args),
                headers=headers,
                timeout_s=timeout_s if timeout_s is not None else self.timeout_s,
            )
        except (OSError, socket.timeout, HTTPException) as exc:
            raise RemoteUnavailable(f"replica unreachable: {exc}") from exc
        if status in {401, 403}:
            raise RemoteUnavailable(f"replica rejected credentials (http {status})")
        if status >= 500:
            raise RemoteUnavailable(f"replica error (http {status})")
        if payload is None:
            raise RemoteError(f"empty response from replica (http {status})")
        if status != 200:
            message = payload.get("message") or payload.get("error") or f"http {status}"
            raise RemoteStatementError(str(message), code=payload.get("code"))
        return parse_pipeline_response(payload)

    def close(self) -> None:
        # Every request closes its own stream.
        return None


class SqliteFileReplica:
    """A replica kept in another SQLite file on a shared or local disk."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None

    def __repr__(self) -> str:
        return f"SqliteFileReplica({str(self.path)!r})"

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._conn = sqlite3.connect(
                    self.path, check_same_thread=False, isolation_level=None
                )
            except (OSError, sqlite3.Error) as exc:
                raise RemoteUnavailable(f"replica unreachable: {exc}") from exc
        return self._conn

    def execute(
        self, sql: str, args: Sequence[Any] = (), *, timeout_s: float | None = None
    ) -> RemoteResult:
        with self._lock:
            conn = self._connection()
            try:
                cursor = conn.execute(sql, tuple(args))
                rows = [tuple(row) for row in cursor.fetchall()]
            except sqlite3.Error as exc:
                raise RemoteStatementError(str(exc), code=type(exc).__name__) from exc
            columns = [d[0] for d in cursor.description or ()]
            return RemoteResult(
                columns=columns, rows=rows, affected_row_count=max(cursor.rowcount, 0)
            )

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


def connect_remote(
    url: str | None, auth_token: str | None = None, *, timeout_s: float = 3.0
) -> RemoteReplica | None:
    if not url:
        return None
    if url.startswith("file:"):
        raw = url[len("file:") :]
        if raw.startswith("//"):
            raw = raw[2:]
        return SqliteFileReplica(raw)
    scheme = urlparse(url).scheme
    if scheme in {"libsql", "https", "http", "wss", "ws"}:
        return TursoHttpReplica(url, auth_token, timeout_s)
    raise ValueError(f"unsupported replica url: {url}")
