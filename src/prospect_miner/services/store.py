"""Key-value persistence for jobs, mined leads, audit entries and snapshots.

Every collection is stored as one JSON array under one key and written
back whole (read-modify-write). Callers never see a storage failure as
a crash on read: a missing or malformed collection reads as ``[]``.

Backends:

- ``MemoryStore``: JSON strings in a dict, for tests and single-process use.
- ``PostgresStore``: a ``key text primary key, value jsonb`` table via psycopg.
- ``SupabaseStore``: the same table shape through PostgREST.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any, Dict, List, Optional

import psycopg
import requests
from psycopg import sql
from psycopg.types.json import Json

from prospect_miner.services import retry

logger = logging.getLogger(__name__)


class StoreError(Exception):
    pass


# Backoff for failed store access. Writes are single attempts; callers
# retry whole read-modify-write steps so a retry re-reads fresh state.
WRITE_ATTEMPTS = 5
WRITE_BASE_DELAY = 0.5
WRITE_MAX_DELAY = 5.0

store_retry = retry.with_exponential_backoff(
    max_attempts=WRITE_ATTEMPTS,
    base_delay=WRITE_BASE_DELAY,
    max_delay=WRITE_MAX_DELAY,
    exceptions=(StoreError,),
)


class KeyValueStore:
    """Shared collection semantics on top of a backend's ``_load``/``_save``.

    ``_load`` returns the decoded value, ``None`` when the key is absent,
    and raises ``ValueError`` when the stored payload cannot be decoded.

    ``lock`` must be held around every read-modify-write of a collection;
    worker ticks run their store work in threads while engine calls run on
    the caller's thread.
    """

    def __init__(self) -> None:
        self.lock = threading.RLock()

    def _load(self, key: str) -> Any:
        raise NotImplementedError

    def _save(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def read_collection(self, key: str) -> List[Any]:
        try:
            value = self._load(key)
        except ValueError as exc:
            logger.warning("Malformed collection under %r; treating as empty: %s", key, exc)
            return []
        if value is None:
            return []
        if not isinstance(value, list):
            logger.warning(
                "Collection under %r is a %s, not a list; treating as empty",
                key,
                type(value).__name__,
            )
            return []
        return value

    def write_collection(self, key: str, items: List[Any]) -> None:
        self._save(key, list(items))

    def read_value(self, key: str, default: Any = None) -> Any:
        try:
            value = self._load(key)
        except ValueError as exc:
            logger.warning("Malformed value under %r; using default: %s", key, exc)
            return default
        return default if value is None else value

    def write_value(self, key: str, value: Any) -> None:
        self._save(key, value)


class MemoryStore(KeyValueStore):
    """In-process store keeping values JSON-encoded, like browser storage."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        super().__init__()
        self._data: Dict[str, str] = {}
        for key, value in (initial or {}).items():
            self._data[key] = value if isinstance(value, str) else json.dumps(value)

    def _load(self, key: str) -> Any:
        raw = self._data.get(key)
        if raw is None:
            return None
        # json.JSONDecodeError is a ValueError
        return json.loads(raw)

    def _save(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value, ensure_ascii=False)

    def set_raw(self, key: str, raw: str) -> None:
        self._data[key] = raw

    def keys(self) -> List[str]:
        return sorted(self._data)


class PostgresStore(KeyValueStore):
    """Postgres-backed store; each write is a single upsert statement."""

    def __init__(self, dsn: str, table: str = "mining_kv"):
        if not dsn:
            raise StoreError("POSTGRES_URL is not set for direct Postgres access")
        super().__init__()
        self._dsn = dsn
        self._table = sql.Identifier(*table.split("."))

    def _conn(self):
        return psycopg.connect(self._dsn, autocommit=True)

    def ensure_schema(self) -> None:
        stmt = sql.SQL(
            "CREATE TABLE IF NOT EXISTS {} ("
            " key text PRIMARY KEY,"
            " value jsonb NOT NULL,"
            " updated_at timestamptz NOT NULL DEFAULT now())"
        ).format(self._table)
        try:
            with self._conn() as conn, conn.cursor() as cur:
                cur.execute(stmt)
        except psycopg.Error as exc:
            raise StoreError(f"Failed to create store table: {exc}") from exc

    def _load(self, key: str) -> Any:
        stmt = sql.SQL("SELECT value FROM {} WHERE key = %s").format(self._table)
        try:
            with self._conn() as conn, conn.cursor() as cur:
                cur.execute(stmt, (key,))
                row = cur.fetchone()
        except psycopg.Error as exc:
            raise StoreError(f"SELECT {key} failed: {exc}") from exc
        return row[0] if row else None

    def _save(self, key: str, value: Any) -> None:
        stmt = sql.SQL(
            "INSERT INTO {} (key, value, updated_at) VALUES (%s, %s, now()) "
            "ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = now()"
        ).format(self._table)
        try:
            with self._conn() as conn, conn.cursor() as cur:
                cur.execute(stmt, (key, Json(value)))
        except psycopg.Error as exc:
            raise StoreError(f"UPSERT {key} failed: {exc}") from exc


class SupabaseStore(KeyValueStore):
    """PostgREST-backed store over the same ``key``/``value`` table."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        table: str = "mining_kv",
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        url = (base_url or "").rstrip("/")
        if not url:
            raise StoreError("Supabase URL is not set (SUPABASE_URL)")
        if not api_key:
            raise StoreError("Supabase key is not set (SUPABASE_SERVICE_KEY)")
        super().__init__()
        self._endpoint = f"{url}/rest/v1/{table}"
        self._api_key = api_key
        self._timeout = timeout if timeout is not None else float(os.getenv("HTTP_TIMEOUT", "20"))
        self._session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "application/json",
        }

    def _load(self, key: str) -> Any:
        params = {"select": "value", "key": f"eq.{key}", "limit": "1"}
        try:
            r = self._session.get(self._endpoint, headers=self._headers(), params=params, timeout=self._timeout)
        except requests.RequestException as exc:
            raise StoreError(f"GET {self._endpoint} failed: {exc}") from exc
        if not r.ok:
            raise StoreError(f"GET {self._endpoint} failed: {r.status_code} {r.text}")
        rows = r.json()
        if not rows:
            return None
        return rows[0].get("value")

    def _save(self, key: str, value: Any) -> None:
        headers = self._headers()
        headers["Prefer"] = "resolution=merge-duplicates,return=minimal"
        body = {"key": key, "value": value}
        try:
            r = self._session.post(
                self._endpoint,
                headers=headers,
                params={"on_conflict": "key"},
                json=body,
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise StoreError(f"POST {self._endpoint} failed: {exc}") from exc
        if not r.ok:
            raise StoreError(f"POST {self._endpoint} failed: {r.status_code} {r.text}")


def build_store(settings) -> KeyValueStore:
    """Instantiate the backend named by ``settings.store_backend``."""

    backend = settings.store_backend
    if backend == "memory":
        return MemoryStore()
    if backend == "postgres":
        store = PostgresStore(settings.postgres_url or "", table=settings.store_table)
        store.ensure_schema()
        return store
    if backend == "supabase":
        return SupabaseStore(
            settings.supabase_url or "",
            settings.supabase_key or "",
            table=settings.store_table,
        )
    raise StoreError(f"Unknown store backend: {backend!r}")
