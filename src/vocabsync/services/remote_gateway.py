"""Remote store access.

``RemoteGateway`` is the contract the sync coordinator depends on. No gateway
method raises for remote failures: each returns a ``GatewayResult`` whose
``error`` is a ``NotAuthenticated`` or ``NetworkError`` instance.

``SupabaseGateway`` implements it over a PostgREST API with httpx.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import httpx

from vocabsync.config import SYNC_FLASHCARD, SYNC_REVIEW, SYNC_WORDS, settings
from vocabsync.errors import NetworkError, NotAuthenticated, VocabSyncError
from vocabsync.models.records import (
    FlashcardProgress,
    ReviewQueueEntry,
    ReviewState,
    WordLookupRecord,
    from_iso,
    to_iso,
)
from vocabsync.monitoring import error_count

logger = logging.getLogger(__name__)

TABLES = {
    SYNC_WORDS: "words",
    SYNC_FLASHCARD: "flashcard_progress",
    SYNC_REVIEW: "immersive_review",
}


@dataclass
class GatewayResult:
    """Outcome of one gateway call."""
    success: bool
    data: Any = None
    error: Optional[VocabSyncError] = None
    latest_updated_at: Optional[datetime] = None

    @classmethod
    def ok(cls, data: Any = None, latest_updated_at: Optional[datetime] = None) -> "GatewayResult":
        return cls(success=True, data=data, latest_updated_at=latest_updated_at)

    @classmethod
    def failed(cls, error: VocabSyncError) -> "GatewayResult":
        return cls(success=False, error=error)


class RemoteGateway(ABC):
    """Contract over the remote store.

    Records are domain objects keyed by word. ``fetch_all`` and
    ``fetch_since`` return ``{word: record}`` in ``data`` and the newest
    remote ``updated_at`` among the returned rows in ``latest_updated_at``
    (None when no rows came back).
    """

    @property
    @abstractmethod
    def is_authenticated(self) -> bool:
        """Whether a user session is active."""

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> GatewayResult:
        """Open a user session."""

    @abstractmethod
    async def sign_out(self) -> GatewayResult:
        """Close the user session."""

    @abstractmethod
    async def fetch_all(self, collection: str) -> GatewayResult:
        """Fetch every record of a collection."""

    @abstractmethod
    async def fetch_since(self, collection: str, checkpoint: datetime) -> GatewayResult:
        """Fetch records updated strictly after ``checkpoint``."""

    @abstractmethod
    async def fetch_keys(self, collection: str, keys: List[str]) -> GatewayResult:
        """Fetch the records stored under the given words."""

    @abstractmethod
    async def upsert_batch(self, collection: str, records: List[Any]) -> GatewayResult:
        """Insert or update records, keyed by word."""

    @abstractmethod
    async def delete(self, collection: str, key: str) -> GatewayResult:
        """Delete one record."""

    @abstractmethod
    async def blacklist(self, word: str) -> GatewayResult:
        """Flag a word so that it is excluded from every later fetch."""

    @abstractmethod
    async def count(self, collection: str) -> GatewayResult:
        """Count the records of a collection."""

    async def close(self) -> None:
        """Release network resources."""


def record_to_row(collection: str, record: Any) -> Dict[str, Any]:
    """Convert a domain record into a remote row (without user_id)."""
    if collection == SYNC_WORDS:
        return {
            "word": record.word,
            "lookup_count": record.lookup_count,
            "contexts": list(record.contexts),
            "lookups": [to_iso(ts) for ts in record.lookup_timestamps],
            "is_blacklisted": False,
        }
    if collection == SYNC_FLASHCARD:
        return {
            "word": record.word,
            "mastery_level": record.mastery_level,
            "easiness_factor": record.easiness_factor,
            "review_count": record.review_count,
            "last_reviewed_at": to_iso(record.last_reviewed),
            "next_review_at": to_iso(record.next_review),
            "context": record.context,
        }
    if collection == SYNC_REVIEW:
        return {
            "word": record.word,
            "status": record.state.value,
            "stage": record.stage,
            "added_at": to_iso(record.added_at),
            "next_review_at": to_iso(record.next_review_at),
            "last_used_at": to_iso(record.last_used_at),
            "mastered_at": to_iso(record.mastered_at),
        }
    raise ValueError(f"Unknown sync collection: {collection}")


def row_to_record(collection: str, row: Dict[str, Any]) -> Any:
    """Convert a remote row into a domain record."""
    if collection == SYNC_WORDS:
        return WordLookupRecord.from_data({
            "word": row.get("word"),
            "count": row.get("lookup_count"),
            "contexts": row.get("contexts") or [],
            "lookups": row.get("lookups") or [],
        })
    if collection == SYNC_FLASHCARD:
        return FlashcardProgress.from_data({
            "word": row.get("word"),
            "masteryLevel": row.get("mastery_level"),
            "easinessFactor": row.get("easiness_factor"),
            "reviewCount": row.get("review_count"),
            "lastReviewed": row.get("last_reviewed_at"),
            "nextReview": row.get("next_review_at"),
            "context": row.get("context"),
        })
    if collection == SYNC_REVIEW:
        return ReviewQueueEntry.from_data(
            {
                "word": row.get("word"),
                "stage": row.get("stage"),
                "addedDate": row.get("added_at"),
                "nextReviewDate": row.get("next_review_at"),
                "lastUsedDate": row.get("last_used_at"),
                "masteredDate": row.get("mastered_at"),
            },
            state=ReviewState(row.get("status") or ReviewState.PENDING.value),
        )
    raise ValueError(f"Unknown sync collection: {collection}")


def in_filter(values: Iterable[str]) -> str:
    """PostgREST ``in`` filter with every value quoted, e.g. ``in.("a","b c")``."""
    quoted = []
    for value in values:
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        quoted.append(f'"{escaped}"')
    return f"in.({','.join(quoted)})"


def parse_content_range(value: Optional[str]) -> int:
    """Total from a ``Content-Range`` header such as ``0-0/42`` or ``*/0``."""
    if not value or "/" not in value:
        return 0
    total = value.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else 0


class SupabaseGateway(RemoteGateway):
    """Gateway over a Supabase project (PostgREST plus GoTrue auth)."""

    def __init__(
        self,
        url: Optional[str] = None,
        key: Optional[str] = None,
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the gateway; ``transport`` is for tests."""
        self.url = (url or settings.sync.supabase_url).rstrip("/")
        self.key = key or settings.sync.supabase_key
        self.page_size = page_size or settings.sync.page_size
        self.client = httpx.AsyncClient(
            base_url=self.url,
            timeout=timeout or settings.sync.timeout,
            transport=transport,
        )
        self.access_token: Optional[str] = None
        self.user_id: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.access_token and self.user_id)

    async def close(self) -> None:
        await self.client.aclose()

    async def sign_in(self, email: str, password: str) -> GatewayResult:
        try:
            response = await self._request(
                "POST",
                "/auth/v1/token",
                params={"grant_type": "password"},
                json={"email": email, "password": password},
            )
            payload = response.json()
            self.access_token = payload["access_token"]
            self.user_id = payload["user"]["id"]
        except (KeyError, TypeError, ValueError) as e:
            return self._failed("sign_in", NetworkError(f"Unexpected auth response: {e}"))
        except VocabSyncError as e:
            return self._failed("sign_in", e)
        logger.info("Signed in as %s", self.user_id)
        return GatewayResult.ok(self.user_id)

    async def sign_out(self) -> GatewayResult:
        if not self.is_authenticated:
            return GatewayResult.ok()
        try:
            await self._request("POST", "/auth/v1/logout")
        except VocabSyncError as e:
            logger.warning("Remote sign-out failed, dropping session anyway: %s", str(e))
        finally:
            self.access_token = None
            self.user_id = None
        return GatewayResult.ok()

    async def fetch_all(self, collection: str) -> GatewayResult:
        return await self._fetch(collection, None)

    async def fetch_since(self, collection: str, checkpoint: datetime) -> GatewayResult:
        return await self._fetch(collection, checkpoint)

    async def fetch_keys(self, collection: str, keys: List[str]) -> GatewayResult:
        if not keys:
            return GatewayResult.ok({})
        return await self._fetch(collection, None, keys)

    async def upsert_batch(self, collection: str, records: List[Any]) -> GatewayResult:
        if not self.is_authenticated:
            return self._failed("upsert", NotAuthenticated("Not logged in"))
        if not records:
            return GatewayResult.ok(0)
        rows = [dict(record_to_row(collection, record), user_id=self.user_id) for record in records]
        try:
            await self._request(
                "POST",
                self._table_path(collection),
                params={"on_conflict": "user_id,word"},
                json=rows,
                headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
            )
        except VocabSyncError as e:
            return self._failed("upsert", e)
        return GatewayResult.ok(len(rows))

    async def delete(self, collection: str, key: str) -> GatewayResult:
        if not self.is_authenticated:
            return self._failed("delete", NotAuthenticated("Not logged in"))
        try:
            await self._request(
                "DELETE",
                self._table_path(collection),
                params={"user_id": f"eq.{self.user_id}", "word": f"eq.{key}"},
            )
        except VocabSyncError as e:
            return self._failed("delete", e)
        return GatewayResult.ok()

    async def blacklist(self, word: str) -> GatewayResult:
        if not self.is_authenticated:
            return self._failed("blacklist", NotAuthenticated("Not logged in"))
        row = {
            "user_id": self.user_id,
            "word": word,
            "lookup_count": 0,
            "contexts": [],
            "lookups": [],
            "is_blacklisted": True,
        }
        try:
            await self._request(
                "POST",
                self._table_path(SYNC_WORDS),
                params={"on_conflict": "user_id,word"},
                json=[row],
                headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
            )
        except VocabSyncError as e:
            return self._failed("blacklist", e)
        return GatewayResult.ok()

    async def count(self, collection: str) -> GatewayResult:
        if not self.is_authenticated:
            return self._failed("count", NotAuthenticated("Not logged in"))
        params = self._owner_filter(collection)
        params["select"] = "word"
        try:
            response = await self._request(
                "GET",
                self._table_path(collection),
                params=params,
                headers={"Prefer": "count=exact", "Range-Unit": "items", "Range": "0-0"},
            )
        except VocabSyncError as e:
            return self._failed("count", e)
        return GatewayResult.ok(parse_content_range(response.headers.get("content-range")))

    async def _fetch(
        self, collection: str, since: Optional[datetime], keys: Optional[List[str]] = None
    ) -> GatewayResult:
        if not self.is_authenticated:
            return self._failed("fetch", NotAuthenticated("Not logged in"))

        records: Dict[str, Any] = {}
        latest: Optional[datetime] = None
        skipped = 0
        offset = 0
        try:
            while True:
                params = self._owner_filter(collection)
                params.update({
                    "select": "*",
                    "order": "updated_at.asc",
                    "limit": str(self.page_size),
                    "offset": str(offset),
                })
                if since is not None:
                    params["updated_at"] = f"gt.{since.isoformat()}"
                if keys is not None:
                    params["word"] = in_filter(keys)
                response = await self._request("GET", self._table_path(collection), params=params)
                rows = response.json()
                if not isinstance(rows, list):
                    raise ValueError(f"expected a list of rows, got {type(rows).__name__}")
                for row in rows:
                    try:
                        record = row_to_record(collection, row)
                        updated_at = from_iso(row.get("updated_at"))
                    except (AttributeError, KeyError, TypeError, ValueError) as e:
                        skipped += 1
                        error_count.labels(error_type="malformed_row").inc()
                        logger.warning("Skipping malformed %s row: %s", collection, str(e))
                        continue
                    if record.word:
                        records[record.word] = record
                    if updated_at and (latest is None or updated_at > latest):
                        latest = updated_at
                if len(rows) < self.page_size:
                    break
                offset += self.page_size
        except ValueError as e:
            return self._failed("fetch", NetworkError(f"Malformed {collection} response: {e}"))
        except VocabSyncError as e:
            return self._failed("fetch", e)

        logger.debug("Fetched %d %s record(s), skipped %d", len(records), collection, skipped)
        return GatewayResult.ok(records, latest)

    async def _request(self, method: str, path: str, headers: Optional[Dict[str, str]] = None, **kwargs) -> httpx.Response:
        all_headers = {
            "apikey": self.key,
            "Authorization": f"Bearer {self.access_token or self.key}",
        }
        all_headers.update(headers or {})
        try:
            response = await self.client.request(method, path, headers=all_headers, **kwargs)
        except httpx.HTTPError as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e
        if response.status_code == 401:
            raise NotAuthenticated(f"{method} {path} rejected: session expired or invalid")
        if response.is_error:
            raise NetworkError(f"{method} {path} returned {response.status_code}: {response.text}")
        return response

    def _owner_filter(self, collection: str) -> Dict[str, str]:
        params = {"user_id": f"eq.{self.user_id}"}
        if collection == SYNC_WORDS:
            params["is_blacklisted"] = "eq.false"
        return params

    @staticmethod
    def _table_path(collection: str) -> str:
        if collection not in TABLES:
            raise ValueError(f"Unknown sync collection: {collection}")
        return f"/rest/v1/{TABLES[collection]}"

    @staticmethod
    def _failed(operation: str, error: VocabSyncError) -> GatewayResult:
        error_count.labels(error_type=type(error).__name__).inc()
        logger.error("Remote %s failed: %s", operation, str(error))
        return GatewayResult.failed(error)


def batched(records: Iterable[Any], size: int) -> Iterable[List[Any]]:
    """Split records into lists of at most ``size``."""
    batch: List[Any] = []
    for record in records:
        batch.append(record)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch
