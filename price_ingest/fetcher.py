"""
CoinGecko Fetcher
=================

Obtains one validated Sample per asset from the CoinGecko markets endpoint.

Every failure is classified where it is raised (FetchErrorKind) so the
retry loop never inspects error messages:

- RETRYABLE:      connection errors, timeouts, HTTP 5xx, HTTP 429
- NON_RETRYABLE:  other HTTP 4xx, unknown asset id
- VALIDATION:     malformed or incomplete response body

Retryable failures back off exponentially (initial delay, doubling, capped)
up to max_attempts. Exhaustion surfaces as a single AssetFetchFailed.
"""

import logging
import math
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

import requests

from price_ingest.exceptions import (
    AssetFetchFailed,
    NonRetryableFetchError,
    TransientFetchError,
    ValidationError,
)
from price_ingest.models import FetchErrorKind, Sample, TrackedAsset

logger = logging.getLogger(__name__)

MARKETS_ENDPOINT = "/coins/markets"
VS_CURRENCY = "usd"
API_KEY_HEADER = "x-cg-pro-api-key"

TRANSIENT_REQUEST_ERRORS = (
    requests.ConnectionError,
    requests.Timeout,
    requests.exceptions.ChunkedEncodingError,
)


# =============================================================================
# CLASSIFICATION
# =============================================================================

def classify_status(status_code: int) -> Optional[FetchErrorKind]:
    """Classify an HTTP status. None means the response is usable."""
    if 200 <= status_code < 300:
        return None
    if status_code == 429 or status_code >= 500:
        return FetchErrorKind.RETRYABLE
    return FetchErrorKind.NON_RETRYABLE


def classify_exception(exc: BaseException) -> FetchErrorKind:
    """Map an exception raised by one fetch attempt to its kind."""
    if isinstance(exc, TransientFetchError):
        return FetchErrorKind.RETRYABLE
    if isinstance(exc, ValidationError):
        return FetchErrorKind.VALIDATION
    if isinstance(exc, TRANSIENT_REQUEST_ERRORS):
        return FetchErrorKind.RETRYABLE
    return FetchErrorKind.NON_RETRYABLE


def _retry_after_seconds(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


# =============================================================================
# VALIDATION
# =============================================================================

def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def parse_market_payload(
    asset_id: str,
    upstream_id: str,
    payload: Any,
    observed_at: Callable[[], datetime],
) -> Sample:
    """
    Validate a /coins/markets response and build a Sample.

    Raises:
        ValidationError: Body malformed or a required figure missing/invalid
        NonRetryableFetchError: Upstream does not know the asset
    """
    if not isinstance(payload, list):
        raise ValidationError(f"{asset_id}: expected a list, got {type(payload).__name__}")

    entry = next(
        (e for e in payload if isinstance(e, dict) and e.get("id") == upstream_id),
        None,
    )
    if entry is None:
        raise NonRetryableFetchError(f"{asset_id}: upstream has no market data for '{upstream_id}'")

    price = _number(entry.get("current_price"))
    if price is None or price <= 0:
        raise ValidationError(f"{asset_id}: missing or non-positive price ({entry.get('current_price')!r})")

    market_cap = _number(entry.get("market_cap"))
    if market_cap is None or market_cap < 0:
        raise ValidationError(f"{asset_id}: missing or negative market cap ({entry.get('market_cap')!r})")

    change_24h = _number(entry.get("price_change_percentage_24h"))
    if change_24h is None:
        raise ValidationError(f"{asset_id}: missing 24h change")

    return Sample(
        asset_id=asset_id,
        price=price,
        market_cap=market_cap,
        change_24h=change_24h,
        observed_at=observed_at(),
    )


# =============================================================================
# RETRY
# =============================================================================

def retry_with_backoff(
    operation: Callable[[], Any],
    asset_id: str,
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Tuple[Any, int]:
    """
    Run `operation` until it succeeds or a terminal failure occurs.

    Returns:
        (result, attempts)

    Raises:
        AssetFetchFailed: On a non-retryable error or once attempts run out
    """
    delay = initial_delay

    for attempt in range(1, max_attempts + 1):
        try:
            return operation(), attempt
        except Exception as e:
            kind = classify_exception(e)

            if kind != FetchErrorKind.RETRYABLE or attempt == max_attempts:
                raise AssetFetchFailed(asset_id, kind, attempt, e) from e

            wait = delay
            retry_after = getattr(e, "retry_after", None)
            if retry_after is not None:
                wait = max(wait, retry_after)
            wait = min(wait, max_delay)

            logger.warning(
                f"[{asset_id}] attempt {attempt}/{max_attempts} failed ({e}); "
                f"retrying in {wait:.2f}s"
            )
            sleep(wait)
            delay = min(delay * 2, max_delay)

    # max_attempts < 1 never enters the loop
    raise AssetFetchFailed(asset_id, FetchErrorKind.NON_RETRYABLE, 0, ValueError("max_attempts < 1"))


# =============================================================================
# FETCHER
# =============================================================================

class CoinGeckoFetcher:
    """
    Fetches current market figures for tracked assets.

    Safe to call from several threads at once; the HTTP session and the
    request pacing are shared.
    """

    def __init__(
        self,
        assets: Sequence[TrackedAsset],
        base_url: str = "https://api.coingecko.com/api/v3",
        api_key: Optional[str] = None,
        request_timeout: float = 10.0,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        min_request_interval: float = 0.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.assets: Dict[str, TrackedAsset] = {a.asset_id: a for a in assets}
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.request_timeout = request_timeout
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.min_request_interval = min_request_interval
        self.session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock
        self._now = now

        self._pace_lock = threading.Lock()
        self._next_slot = 0.0

    @classmethod
    def from_config(cls, config, **kwargs) -> "CoinGeckoFetcher":
        return cls(
            assets=config.assets,
            base_url=config.coingecko_base_url,
            api_key=config.coingecko_api_key,
            request_timeout=config.request_timeout,
            max_attempts=config.max_attempts,
            initial_delay=config.retry_initial_delay,
            max_delay=config.retry_max_delay,
            min_request_interval=config.min_request_interval,
            **kwargs,
        )

    def fetch(self, asset_id: str) -> Sample:
        """
        Fetch one validated sample, retrying transient failures.

        Raises:
            AssetFetchFailed: Terminal failure for this asset
        """
        sample, _ = self.fetch_with_attempts(asset_id)
        return sample

    def fetch_with_attempts(self, asset_id: str) -> Tuple[Sample, int]:
        asset = self.assets.get(asset_id)
        if asset is None:
            raise AssetFetchFailed(
                asset_id,
                FetchErrorKind.NON_RETRYABLE,
                0,
                NonRetryableFetchError(f"Unknown asset id: {asset_id}"),
            )

        sample, attempts = retry_with_backoff(
            lambda: self._fetch_once(asset),
            asset_id,
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            sleep=self._sleep,
        )
        logger.debug(f"[{asset_id}] price={sample.price} after {attempts} attempt(s)")
        return sample, attempts

    def _fetch_once(self, asset: TrackedAsset) -> Sample:
        self._pace()

        headers = {"Accept": "application/json"}
        if self.api_key:
            headers[API_KEY_HEADER] = self.api_key

        try:
            resp = self.session.get(
                f"{self.base_url}{MARKETS_ENDPOINT}",
                params={"vs_currency": VS_CURRENCY, "ids": asset.upstream_id},
                headers=headers,
                timeout=self.request_timeout,
            )
        except TRANSIENT_REQUEST_ERRORS as e:
            raise TransientFetchError(f"{asset.asset_id}: {type(e).__name__}: {e}") from e

        kind = classify_status(resp.status_code)
        if kind == FetchErrorKind.RETRYABLE:
            raise TransientFetchError(
                f"{asset.asset_id}: upstream returned {resp.status_code}",
                status_code=resp.status_code,
                retry_after=_retry_after_seconds(resp.headers.get("Retry-After")),
            )
        if kind == FetchErrorKind.NON_RETRYABLE:
            raise NonRetryableFetchError(
                f"{asset.asset_id}: upstream returned {resp.status_code}",
                status_code=resp.status_code,
            )

        try:
            payload = resp.json()
        except ValueError as e:
            raise ValidationError(f"{asset.asset_id}: response is not JSON") from e

        return parse_market_payload(asset.asset_id, asset.upstream_id, payload, self._now)

    def _pace(self) -> None:
        """Space requests at least min_request_interval apart across threads."""
        if self.min_request_interval <= 0:
            return

        with self._pace_lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.min_request_interval

        wait = slot - now
        if wait > 0:
            self._sleep(wait)

    def close(self) -> None:
        self.session.close()
