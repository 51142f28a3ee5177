"""
Provider Ingester Base

Each external provider gets one ingester that:
- Polls the provider API on its own schedule (bounded by a timeout)
- Normalizes the payload into RawTrackRecord (tagged with source + latency)
- Publishes the records to the raw channel
- Tracks consecutive failures; N in a row marks the source unhealthy

fetch() never raises: every failure resolves to an empty list.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx
from pydantic import ValidationError

from ..config import SourceSettings
from ..exceptions import PayloadError, SourceFetchError
from ..schema import EntityClass, RawTrackRecord

logger = logging.getLogger(__name__)

EMERGENCY_SQUAWKS = {"7500", "7600", "7700"}


class ProviderIngester:
    """
    Base class for provider adapters.

    Subclasses set SOURCE and ENTITY_CLASS and implement build_request()
    and extract_items()/parse_item().
    """

    SOURCE: str = ""
    ENTITY_CLASS: EntityClass = EntityClass.AIRCRAFT

    def __init__(
        self,
        settings: SourceSettings,
        http_client: Optional[httpx.AsyncClient] = None,
        bounds: Optional[Dict[str, float]] = None,
        failure_threshold: int = 3,
        redis_client=None,
    ):
        self.settings = settings
        self.http = http_client
        self.bounds = bounds or {}
        self.failure_threshold = failure_threshold
        self.redis = redis_client
        self.running = False

        # Health
        self.consecutive_failures = 0
        self.last_success: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.last_latency_ms: Optional[float] = None

        # Stats
        self.stats = {
            "fetches": 0,
            "failures": 0,
            "records_fetched": 0,
            "records_dropped": 0,
            "records_published": 0,
        }

    @property
    def name(self) -> str:
        return self.SOURCE

    @property
    def status_key(self) -> str:
        return f"ingester:{self.SOURCE}:status"

    # ------------------------------------------------------------------
    # Provider-specific hooks
    # ------------------------------------------------------------------

    def build_request(self) -> Dict[str, Any]:
        """Return httpx request kwargs: url, params, headers"""
        raise NotImplementedError

    def extract_items(self, payload: Any) -> Iterable[Any]:
        """Yield the per-entity items of a decoded payload"""
        raise NotImplementedError

    def parse_item(self, item: Any) -> Optional[Dict[str, Any]]:
        """Map one provider item to RawTrackRecord keyword arguments"""
        raise NotImplementedError

    def headers(self) -> Dict[str, str]:
        headers = {
            "User-Agent": "TrackingSystem/1.0",
            "Accept": "application/json",
        }
        if self.settings.api_key and self.settings.api_key != "mock_key":
            headers["X-API-Key"] = self.settings.api_key
        return headers

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    async def fetch(self) -> List[RawTrackRecord]:
        """Fetch and normalize one batch. Never raises."""
        if not self.settings.enabled:
            logger.debug(f"{self.SOURCE} is disabled")
            return []

        self.stats["fetches"] += 1
        started = time.monotonic()

        try:
            payload = await asyncio.wait_for(self._request(), timeout=self.settings.timeout_s)
            latency_ms = (time.monotonic() - started) * 1000.0
            records = self._normalize(payload, latency_ms)
        except asyncio.TimeoutError:
            self._record_failure(f"timed out after {self.settings.timeout_s}s")
            return []
        except Exception as e:
            self._record_failure(str(e))
            return []

        self._record_success(latency_ms)
        self.stats["records_fetched"] += len(records)
        logger.debug(f"Fetched {len(records)} records from {self.SOURCE} in {latency_ms:.0f}ms")
        return records

    async def _request(self) -> Any:
        if self.http is None:
            raise SourceFetchError(self.SOURCE, "no HTTP client configured")

        request = self.build_request()
        try:
            response = await self.http.get(
                request["url"],
                params=request.get("params"),
                headers=request.get("headers", self.headers()),
                timeout=self.settings.timeout_s,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SourceFetchError(self.SOURCE, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise SourceFetchError(self.SOURCE, f"connection failed: {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise PayloadError(f"{self.SOURCE}: malformed JSON payload") from e

    def _normalize(self, payload: Any, latency_ms: float) -> List[RawTrackRecord]:
        received_at = datetime.now(timezone.utc)
        records = []

        for item in self.extract_items(payload):
            try:
                fields = self.parse_item(item)
                if fields is None:
                    continue
                fields.setdefault("quality", self.settings.default_quality)
                records.append(RawTrackRecord(
                    source=self.SOURCE,
                    entity_class=self.ENTITY_CLASS,
                    received_at=received_at,
                    response_latency_ms=latency_ms,
                    **fields,
                ))
            except (ValidationError, AttributeError, TypeError, ValueError, KeyError, IndexError) as e:
                self.stats["records_dropped"] += 1
                logger.warning(f"Dropping invalid {self.SOURCE} item: {e}")

        return records

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def _record_success(self, latency_ms: float):
        if self.consecutive_failures >= self.failure_threshold:
            logger.info(f"{self.SOURCE} recovered after {self.consecutive_failures} failures")
        self.consecutive_failures = 0
        self.last_success = datetime.now(timezone.utc)
        self.last_latency_ms = latency_ms
        self.last_error = None

    def _record_failure(self, message: str):
        self.consecutive_failures += 1
        self.stats["failures"] += 1
        self.last_error = message
        if self.consecutive_failures == self.failure_threshold:
            logger.warning(
                f"{self.SOURCE} marked unhealthy after {self.consecutive_failures} "
                f"consecutive failures: {message}"
            )
        else:
            logger.warning(f"Failed to fetch from {self.SOURCE}: {message}. Continuing without its data.")

    def is_healthy(self) -> bool:
        return self.settings.enabled and self.consecutive_failures < self.failure_threshold

    def status(self) -> Dict[str, Any]:
        """Read-only status summary for monitoring"""
        return {
            "source": self.SOURCE,
            "entity_class": self.ENTITY_CLASS.value,
            "enabled": self.settings.enabled,
            "available": self.is_healthy(),
            "consecutive_failures": self.consecutive_failures,
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_error": self.last_error,
            "last_latency_ms": self.last_latency_ms,
            "poll_interval_s": self.settings.poll_interval_s,
            **self.stats,
        }

    async def _update_status(self):
        """Update status hash in Redis for monitoring"""
        if self.redis is None:
            return

        status = {
            key: "" if value is None else str(value)
            for key, value in self.status().items()
        }
        status["running"] = str(self.running)
        status["last_update"] = datetime.now(timezone.utc).isoformat()

        try:
            await self.redis.hset(self.status_key, mapping=status)
        except Exception as e:
            logger.error(f"Error updating status for {self.SOURCE}: {e}")

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def run_once(self, channel) -> int:
        """Fetch one batch and publish it; returns the number published"""
        records = await self.fetch()
        if not records:
            return 0

        try:
            published = await channel.publish(records)
        except Exception as e:
            logger.error(f"Error publishing {self.SOURCE} records: {e}")
            return 0

        self.stats["records_published"] += published
        return published

    async def run(self, channel):
        """Main polling loop"""
        self.running = True
        logger.info(
            f"Starting {self.SOURCE} ingester ({self.ENTITY_CLASS.value}, "
            f"every {self.settings.poll_interval_s}s)"
        )

        try:
            while self.running:
                cycle_start = time.monotonic()

                await self.run_once(channel)
                await self._update_status()

                elapsed = time.monotonic() - cycle_start
                await asyncio.sleep(max(0.0, self.settings.poll_interval_s - elapsed))

        except asyncio.CancelledError:
            logger.info(f"{self.SOURCE} ingester cancelled")
            raise
        finally:
            self.running = False
            await self._update_status()
            logger.info(f"{self.SOURCE} ingester stopped")

    def stop(self):
        self.running = False


def safe_float(value: Any) -> Optional[float]:
    """Convert to float, None if missing or invalid"""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


def safe_str(value: Any) -> Optional[str]:
    """Convert to stripped str, None if missing or blank"""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def first_present(data: Dict[str, Any], *keys: str) -> Any:
    """Value of the first key present (non-null) in data"""
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None
