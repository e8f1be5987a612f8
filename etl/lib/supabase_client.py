"""
Supabase-backed store for the attribution ETL.
Upsert-only writes (chunked, retried per batch) and paged rolling-window reads.

Usage:
    from etl.lib.supabase_client import TableStore

    store = TableStore.from_config(config)
    result = store.upsert("lead_facts_raw", rows, on_conflict="lead_id")
    leads = store.select_since("lead_facts_raw", "created_at", since)
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from etl.lib.errors import ConfigError, StoreError
from etl.lib.logger import setup_logger
from etl.lib.utils import batched, retry_on_exception

logger = setup_logger(__name__)

READ_PAGE_SIZE = 1000
IN_FILTER_CHUNK = 100

_client = None


def get_client(url: str, key: str):
    """Create and return a Supabase client (singleton)."""
    global _client
    if _client is not None:
        return _client

    if not url or not key:
        raise ConfigError(
            "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set", setting="SUPABASE_URL",
        )

    from supabase import create_client
    _client = create_client(url, key)
    logger.info("Supabase client connected to %s", url)
    return _client


@dataclass
class UpsertResult:
    """Outcome of a chunked upsert: rows written plus any batches given up on."""
    table: str
    attempted: int = 0
    written: int = 0
    failed_batches: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_batches


class TableStore:
    """Thin tabular store over a Supabase client."""

    def __init__(self, client, batch_size: int = 500):
        self.client = client
        self.batch_size = batch_size

    @classmethod
    def from_config(cls, config) -> "TableStore":
        return cls(
            get_client(config.supabase_url, config.supabase_key),
            batch_size=config.store_batch_size,
        )

    # --- writes ---

    @retry_on_exception(max_attempts=4, delay=1.0, backoff=2.0, exceptions=(StoreError,))
    def _upsert_batch(self, table: str, rows: List[Dict], on_conflict: str,
                      ignore_duplicates: bool) -> None:
        try:
            (
                self.client.table(table)
                .upsert(rows, on_conflict=on_conflict, ignore_duplicates=ignore_duplicates)
                .execute()
            )
        except Exception as e:
            raise StoreError(f"upsert into {table} failed: {e}", table=table) from e

    def upsert(
        self,
        table: str,
        rows: List[Dict],
        on_conflict: str,
        ignore_duplicates: bool = False,
    ) -> UpsertResult:
        """
        Upsert rows in batches. A batch that still fails after retries is
        logged and skipped; the remaining batches are still written.

        Args:
            table: Table name.
            rows: Row dicts (JSON-serialisable values).
            on_conflict: Comma-separated conflict key columns.
            ignore_duplicates: Insert-if-absent instead of last-write-wins.
        """
        result = UpsertResult(table=table, attempted=len(rows))
        for index, batch in enumerate(batched(rows, self.batch_size)):
            try:
                self._upsert_batch(table, batch, on_conflict, ignore_duplicates)
                result.written += len(batch)
            except StoreError as e:
                logger.error("Skipping batch %d of %s (%d rows): %s", index, table, len(batch), e)
                result.failed_batches.append(f"{table} batch {index}: {e}")
        logger.info("Upserted %d/%d rows into %s", result.written, result.attempted, table)
        return result

    # --- reads ---

    @retry_on_exception(max_attempts=4, delay=1.0, backoff=2.0, exceptions=(StoreError,))
    def _select_page(self, table: str, columns: str, filters: List[tuple],
                     order_by: Optional[str], desc: bool, start: int, end: int) -> List[Dict]:
        try:
            query = self.client.table(table).select(columns)
            for op, column, value in filters:
                query = getattr(query, op)(column, value)
            if order_by:
                query = query.order(order_by, desc=desc)
            return query.range(start, end).execute().data or []
        except Exception as e:
            raise StoreError(f"select from {table} failed: {e}", table=table) from e

    def select(
        self,
        table: str,
        columns: str = "*",
        filters: Iterable[tuple] = (),
        order_by: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict]:
        """
        Read rows, paging through the table in READ_PAGE_SIZE ranges.

        Args:
            filters: (operator, column, value) triples, e.g. ("gte", "created_at", iso).
            limit: Stop after this many rows.

        Raises:
            StoreError: once retries are exhausted for a page.
        """
        filters = list(filters)
        rows: List[Dict] = []
        start = 0
        while True:
            page_size = READ_PAGE_SIZE if limit is None else min(READ_PAGE_SIZE, limit - len(rows))
            if page_size <= 0:
                break
            page = self._select_page(table, columns, filters, order_by, desc,
                                     start, start + page_size - 1)
            rows.extend(page)
            if len(page) < page_size:
                break
            start += page_size
        logger.debug("Read %d rows from %s", len(rows), table)
        return rows

    def select_since(self, table: str, column: str, since: datetime,
                     columns: str = "*") -> List[Dict]:
        """Rolling-window read: rows whose `column` is at or after `since`."""
        return self.select(
            table, columns, filters=[("gte", column, since.isoformat())], order_by=column,
        )

    def select_in(self, table: str, column: str, values: Iterable[Any],
                  columns: str = "*") -> List[Dict]:
        """Rows whose `column` is in `values`, queried in chunks."""
        rows: List[Dict] = []
        for chunk in batched(sorted({str(v) for v in values}), IN_FILTER_CHUNK):
            rows.extend(self.select(table, columns, filters=[("in_", column, chunk)]))
        return rows

    def latest(self, table: str, order_by: str) -> Optional[Dict]:
        """Most recent row by `order_by`, or None."""
        rows = self.select(table, order_by=order_by, desc=True, limit=1)
        return rows[0] if rows else None
