from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, TypeVar

import requests

from ..config import Settings, get_settings
from ..errors import AuthenticationFailure, MalformedInput, RateLimited, UpstreamUnavailable
from ..schemas import DateRange, Transaction

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class FetchResult:
    transactions: List[Transaction] = field(default_factory=list)
    warnings: List[MalformedInput] = field(default_factory=list)


class Connector(Protocol):
    data_source: str

    def fetch(self, payload: Any, date_range: Optional[DateRange] = None) -> FetchResult: ...


def with_retries(
    func: Callable[[], T],
    *,
    attempts: int = 4,
    base_delay: float = 0.5,
    backoff: float = 2.0,
    context: str = "request",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call `func`, retrying RateLimited / UpstreamUnavailable with exponential
    backoff (base_delay * backoff**i). AuthenticationFailure and anything else
    propagate on the first failure.
    """
    for i in range(attempts):
        try:
            return func()
        except (RateLimited, UpstreamUnavailable) as e:
            if i == attempts - 1:
                raise
            delay = base_delay * (backoff ** i)
            retry_after = getattr(e, "retry_after", None)
            if retry_after:
                delay = max(delay, retry_after)
            logger.warning(
                "%s failed (%s), retry %d/%d in %.2fs", context, e.code, i + 1, attempts - 1, delay
            )
            sleep(delay)
    raise UpstreamUnavailable(detail=f"{context}: no attempts made")


def check_response(resp: requests.Response, context: str) -> None:
    """Map HTTP failures onto the connector error taxonomy."""
    if resp.status_code in (401, 403):
        raise AuthenticationFailure(
            f"{context} rejected the credentials.", detail=resp.text[:500]
        )
    if resp.status_code in (418, 429):
        retry_after = None
        header = resp.headers.get("Retry-After")
        if header:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None
        raise RateLimited(retry_after=retry_after, detail=f"{context}: HTTP {resp.status_code}")
    if resp.status_code >= 500:
        raise UpstreamUnavailable(detail=f"{context}: HTTP {resp.status_code}")
    if resp.status_code >= 400:
        raise UpstreamUnavailable(
            f"{context} returned an unexpected error (HTTP {resp.status_code}).",
            detail=resp.text[:500],
        )


def finalize(transactions: Iterable[Transaction], date_range: Optional[DateRange] = None) -> List[Transaction]:
    """
    Common connector tail: drop duplicates by provider id (first one wins),
    apply the optional date range, sort by (timestamp, id) and stamp the
    ingestion sequence.
    """
    seen: Dict[str, Transaction] = {}
    for tx in transactions:
        if tx.id in seen:
            continue
        if date_range is not None and not date_range.contains(tx.timestamp):
            continue
        seen[tx.id] = tx
    ordered = sorted(seen.values(), key=lambda t: (t.timestamp, t.id))
    return [tx.model_copy(update={"sequence": i}) for i, tx in enumerate(ordered)]


class HttpConnector:
    """Shared plumbing for connectors that talk to a REST API via requests."""

    data_source = ""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session or requests.Session()
        self.settings = settings or get_settings()
        self._sleep = sleep

    def _get_json(
        self,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        context: str,
        prepare: Optional[Callable[[Dict[str, Any], Dict[str, str]], None]] = None,
    ) -> Any:
        """
        GET with retries. `prepare(params, headers)` runs before every attempt,
        for APIs that sign each request with a fresh timestamp.
        """

        def call() -> Any:
            p = dict(params or {})
            h = dict(headers or {})
            if prepare is not None:
                prepare(p, h)
            try:
                resp = self.session.get(url, params=p, headers=h, timeout=self.settings.http_timeout)
            except requests.RequestException as e:
                raise UpstreamUnavailable(f"{context} is unreachable.", detail=str(e)) from e
            self._check(resp, context)
            try:
                return resp.json()
            except ValueError as e:
                raise UpstreamUnavailable(f"{context} returned an invalid response.", detail=str(e)) from e

        return with_retries(
            call,
            attempts=self.settings.retry_attempts,
            base_delay=self.settings.retry_base_delay,
            backoff=self.settings.retry_backoff,
            context=context,
            sleep=self._sleep,
        )

    def _check(self, resp: requests.Response, context: str) -> None:
        check_response(resp, context)
