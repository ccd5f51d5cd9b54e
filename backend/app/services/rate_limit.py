"""DB-backed request admission control.

Requests are counted in sliding windows against the ``rate_limit_requests``
event log, and keyed requests are additionally held to a per-key daily
quota that rolls over at UTC midnight. All state lives in the database so
several server processes share the same counters.

The count-then-insert sequence is not linearizable: concurrent requests
from one identifier can overshoot a window limit slightly. The daily
roll-over is the one place that relies on an atomic conditional update.
"""
from __future__ import annotations

import asyncio
import ipaddress
import logging
import math
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence

from app.core.config import Settings
from app.core.errors import StorageUnavailableError
from app.services.api_keys import ApiKeyQuota, SQLApiKeyStore
from app.services.rate_events import RequestEvent, SQLRequestEventStore

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------
# Policies
# ---------------------


@dataclass(frozen=True, slots=True)
class RateLimitPolicy:
    """A ``max_requests`` per ``window_seconds`` limit chosen per endpoint class."""

    window_seconds: int
    max_requests: int
    name: str = "custom"

    def __post_init__(self) -> None:
        if self.window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")
        if self.max_requests < 1:
            raise ValueError("max_requests must be >= 1")

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.window_seconds)


API_POLICY = RateLimitPolicy(window_seconds=60, max_requests=100, name="api")
# Feed exports are expensive
FEED_POLICY = RateLimitPolicy(window_seconds=300, max_requests=10, name="feed")
WEBHOOK_POLICY = RateLimitPolicy(window_seconds=60, max_requests=50, name="webhook")


def named_policies(settings: Settings) -> dict[str, RateLimitPolicy]:
    """Resolve the named policies with any overrides from settings."""

    return {
        "api": RateLimitPolicy(
            window_seconds=settings.rate_limit_api_window_seconds,
            max_requests=settings.rate_limit_api_max_requests,
            name="api",
        ),
        "feed": RateLimitPolicy(
            window_seconds=settings.rate_limit_feed_window_seconds,
            max_requests=settings.rate_limit_feed_max_requests,
            name="feed",
        ),
        "webhook": RateLimitPolicy(
            window_seconds=settings.rate_limit_webhook_window_seconds,
            max_requests=settings.rate_limit_webhook_max_requests,
            name="webhook",
        ),
    }


# ---------------------
# Decisions
# ---------------------


class DecisionReason(str, Enum):
    OK = "ok"
    WINDOW_EXCEEDED = "window_exceeded"
    DAILY_QUOTA_EXCEEDED = "daily_quota_exceeded"
    KEY_INACTIVE = "key_inactive"


@dataclass(frozen=True, slots=True)
class Decision:
    """Outcome of one admission check.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Limit of the deciding tier.
        remaining: Requests left in the window after this one (0 when denied).
        reset_time: When the deciding limit next frees capacity.
        retry_after_seconds: Suggested wait on denial.
        reason: Why the request was allowed or denied.
        tier: Name of the deciding tier, if any.
        degraded: True when storage failed and the request was let through.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_time: datetime
    retry_after_seconds: Optional[int] = None
    reason: DecisionReason = DecisionReason.OK
    tier: Optional[str] = None
    degraded: bool = False

    @classmethod
    def degraded_allow(cls, policy: RateLimitPolicy, now: datetime) -> "Decision":
        """Fail-open result used while the counting store is unreachable."""

        return cls(
            allowed=True,
            limit=policy.max_requests,
            remaining=policy.max_requests,
            reset_time=now + policy.window,
            degraded=True,
        )

    @property
    def message(self) -> str:
        if self.reason is DecisionReason.DAILY_QUOTA_EXCEEDED:
            return "API key daily quota exceeded"
        if self.reason is DecisionReason.KEY_INACTIVE:
            return "API key is inactive"
        if self.reason is DecisionReason.WINDOW_EXCEEDED:
            if self.tier == "apikey":
                return "API key rate limit exceeded"
            return "Rate limit exceeded"
        return "OK"


def _retry_after(reset_time: datetime, now: datetime) -> int:
    return max(1, int(math.ceil((reset_time - now).total_seconds())))


def create_headers(decision: Decision) -> dict[str, str]:
    """Map a decision onto the standard rate-limit response headers."""

    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(max(0, decision.remaining)),
        "X-RateLimit-Reset": str(int(math.ceil(decision.reset_time.timestamp()))),
    }
    if not decision.allowed and decision.retry_after_seconds is not None:
        headers["Retry-After"] = str(decision.retry_after_seconds)
    return headers


# ---------------------
# Request identity
# ---------------------


@dataclass(frozen=True, slots=True)
class RequestContext:
    """The parts of an HTTP request the gate looks at."""

    headers: Mapping[str, str]
    method: str = "GET"
    url: str = ""

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())

    @property
    def user_agent(self) -> str | None:
        return self.header("user-agent")

    @classmethod
    def from_headers(cls, headers: Mapping[str, str], *, method: str = "GET", url: str = "") -> "RequestContext":
        return cls(headers={k.lower(): v for k, v in headers.items()}, method=method, url=url)

    @classmethod
    def from_request(cls, request: Any) -> "RequestContext":
        """Build from a Starlette/FastAPI request."""

        return cls.from_headers(dict(request.headers), method=request.method, url=str(request.url))


def _normalize_ip(value: str | None) -> str | None:
    """Canonical text of a literal IPv4/IPv6 address, else None.

    Header values are client-controlled; only parseable addresses become
    identifiers, so the stored identifier stays short and canonical.
    """

    if not value:
        return None
    candidate = value.strip()
    # Zone ids (fe80::1%eth0) are unbounded text
    if not candidate or "%" in candidate:
        return None
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return None


def client_ip(request: RequestContext) -> str:
    """First ``X-Forwarded-For`` entry, else ``X-Real-IP``, else ``unknown``.

    Values that are not IP addresses are skipped. Unknown clients share one
    coarse bucket instead of bypassing the gate.
    """

    forwarded = request.header("x-forwarded-for")
    if forwarded:
        first = _normalize_ip(forwarded.split(",")[0])
        if first:
            return first
    real_ip = _normalize_ip(request.header("x-real-ip"))
    if real_ip:
        return real_ip
    return UNKNOWN_CLIENT


@dataclass(frozen=True, slots=True)
class Tier:
    """One independent limit.

    ``identify`` returns the identifier to count under, or None when the
    tier does not apply to the request. Tiers with ``uses_daily_quota`` are
    keyed tiers and are preceded by the daily quota check.
    """

    name: str
    identify: Callable[[RequestContext, Optional[str]], Optional[str]]
    uses_daily_quota: bool = False


IP_TIER = Tier(name="ip", identify=lambda request, _key: f"ip:{client_ip(request)}")
API_KEY_TIER = Tier(
    name="apikey",
    identify=lambda _request, key: f"apikey:{key}" if key else None,
    uses_daily_quota=True,
)
DEFAULT_TIERS: tuple[Tier, ...] = (IP_TIER, API_KEY_TIER)


# ---------------------
# Window evaluation
# ---------------------


class WindowEvaluator:
    """Sliding-window check against the event log. Never writes."""

    def __init__(self, events: SQLRequestEventStore) -> None:
        self._events = events

    async def evaluate(
        self,
        identifier: str,
        window: timedelta,
        max_requests: int,
        now: datetime,
        *,
        tier: str | None = None,
    ) -> Decision:
        window_start = now - window
        counted = await self._events.count_since(identifier, window_start)
        # Capacity frees up when the oldest counted event leaves the window
        reset_time = (counted.oldest + window) if counted.oldest is not None else now + window

        if counted.count < max_requests:
            return Decision(
                allowed=True,
                limit=max_requests,
                remaining=max_requests - counted.count - 1,
                reset_time=reset_time,
                tier=tier,
            )
        return Decision(
            allowed=False,
            limit=max_requests,
            remaining=0,
            reset_time=reset_time,
            retry_after_seconds=_retry_after(reset_time, now),
            reason=DecisionReason.WINDOW_EXCEEDED,
            tier=tier,
        )


# ---------------------
# Daily quota
# ---------------------


def next_utc_midnight(now: datetime) -> datetime:
    today = now.astimezone(timezone.utc).date()
    return datetime.combine(today + timedelta(days=1), datetime.min.time(), tzinfo=timezone.utc)


def utc_today(now: datetime) -> date:
    return now.astimezone(timezone.utc).date()


class QuotaSource:
    """Per-key daily quota backed by the key registry."""

    def __init__(self, registry: SQLApiKeyStore, *, default_daily_limit: int = 1000) -> None:
        self._registry = registry
        self._default_daily_limit = default_daily_limit

    async def check_and_roll_daily(self, api_key_id: str, now: datetime) -> ApiKeyQuota | None:
        """Roll the counter over to today if needed, then read the quota.

        Returns None for unknown keys. ``daily_limit`` is always resolved.
        """

        today = utc_today(now)
        if await self._registry.reset_api_key_daily_usage(api_key_id, today):
            logger.info(
                "API key daily usage rolled over",
                extra={"api_key_id": api_key_id, "usage_date": today.isoformat()},
            )
        quota = await self._registry.get_api_key_quota(api_key_id)
        if quota is None:
            return None
        if quota.daily_limit is None:
            quota = replace(quota, daily_limit=self._default_daily_limit)
        return quota

    async def increment_daily(self, api_key_id: str) -> None:
        await self._registry.increment_api_key_daily_usage(api_key_id)


# ---------------------
# Pruning
# ---------------------


class EventPruner:
    """Deletes events past the retention horizon.

    ``maybe_schedule`` is cheap to call after every admission: it starts a
    background prune at most once per ``interval`` and never raises.
    """

    def __init__(
        self,
        events: SQLRequestEventStore,
        *,
        retention: timedelta = timedelta(hours=24),
        interval: timedelta = timedelta(minutes=5),
    ) -> None:
        self._events = events
        self._retention = retention
        self._interval = interval
        self._last_run: datetime | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    async def prune(self, now: datetime | None = None) -> int:
        now = now or _utcnow()
        cutoff = now - self._retention
        removed = await self._events.prune_before(cutoff)
        logger.info(
            "Pruned rate limit events",
            extra={"removed": removed, "cutoff": cutoff.isoformat()},
        )
        return removed

    def maybe_schedule(self, now: datetime) -> asyncio.Task[Any] | None:
        if self._last_run is not None and now - self._last_run < self._interval:
            return None
        self._last_run = now
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        task = loop.create_task(self._run(now))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for scheduled prunes to finish."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def _run(self, now: datetime) -> None:
        try:
            await self.prune(now)
        except StorageUnavailableError as exc:
            logger.warning("Rate limit event pruning skipped: %s", exc.message, extra={"details": exc.details})
        except Exception:
            logger.exception("Rate limit event pruning failed")


# ---------------------
# Admission gate
# ---------------------


class AdmissionGate:
    """Walks the tier list for one request and records admissions.

    Denials are returned as decisions and leave no trace in storage. Storage
    failures admit the request with a degraded decision (fail-open).
    """

    def __init__(
        self,
        *,
        events: SQLRequestEventStore,
        quota: QuotaSource,
        evaluator: WindowEvaluator | None = None,
        pruner: EventPruner | None = None,
        default_policy: RateLimitPolicy = API_POLICY,
        tiers: Sequence[Tier] = DEFAULT_TIERS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._events = events
        self._quota = quota
        self._evaluator = evaluator or WindowEvaluator(events)
        self._pruner = pruner
        self._default_policy = default_policy
        self._tiers = tuple(tiers)
        self._clock = clock

    @property
    def default_policy(self) -> RateLimitPolicy:
        return self._default_policy

    async def check_rate_limit(
        self,
        request: RequestContext,
        api_key_id: str | None = None,
        policy: RateLimitPolicy | None = None,
    ) -> Decision:
        policy = policy or self._default_policy
        now = self._clock()
        try:
            return await self._admit(request, api_key_id, policy, now)
        except StorageUnavailableError as exc:
            return self._fail_open(exc, request, api_key_id, policy, now)

    async def prune(self, now: datetime | None = None) -> int:
        """Run one prune pass immediately; returns the number of events removed."""

        if self._pruner is None:
            return 0
        return await self._pruner.prune(now or self._clock())

    async def peek(self, request: RequestContext, policy: RateLimitPolicy | None = None) -> Decision:
        """Evaluate the anonymous tiers without recording anything."""

        policy = policy or self._default_policy
        now = self._clock()
        try:
            decision: Decision | None = None
            for tier in self._tiers:
                identifier = tier.identify(request, None)
                if identifier is None or tier.uses_daily_quota:
                    continue
                decision = await self._evaluator.evaluate(
                    identifier, policy.window, policy.max_requests, now, tier=tier.name
                )
                if not decision.allowed:
                    return decision
            return decision or self._unlimited(policy, now)
        except StorageUnavailableError as exc:
            return self._fail_open(exc, request, None, policy, now)

    async def _admit(
        self,
        request: RequestContext,
        api_key_id: str | None,
        policy: RateLimitPolicy,
        now: datetime,
    ) -> Decision:
        identifiers: list[str] = []
        decision: Decision | None = None
        keyed = False

        for tier in self._tiers:
            identifier = tier.identify(request, api_key_id)
            if identifier is None:
                continue
            max_requests = policy.max_requests
            if tier.uses_daily_quota and api_key_id is not None:
                quota = await self._quota.check_and_roll_daily(api_key_id, now)
                denial = self._check_daily_quota(quota, tier, now)
                if denial is not None:
                    self._log_denial(denial, identifier, policy)
                    return denial
                assert quota is not None and quota.daily_limit is not None
                max_requests = min(quota.daily_limit, policy.max_requests)
                keyed = True

            decision = await self._evaluator.evaluate(
                identifier, policy.window, max_requests, now, tier=tier.name
            )
            if not decision.allowed:
                self._log_denial(decision, identifier, policy)
                return decision
            identifiers.append(identifier)

        metadata: dict[str, Any] = {
            "method": request.method,
            "url": request.url,
            "user_agent": request.user_agent,
            "api_key_id": api_key_id,
        }
        await self._events.record_many(
            [RequestEvent(identifier=i, occurred_at=now, metadata=metadata) for i in identifiers]
        )
        if keyed and api_key_id is not None:
            try:
                await self._quota.increment_daily(api_key_id)
            except StorageUnavailableError as exc:
                logger.warning(
                    "Request recorded but daily usage increment failed",
                    extra={"api_key_id": api_key_id, "details": exc.details},
                )

        if self._pruner is not None:
            self._pruner.maybe_schedule(now)
        return decision or self._unlimited(policy, now)

    def _check_daily_quota(
        self, quota: ApiKeyQuota | None, tier: Tier, now: datetime
    ) -> Decision | None:
        if quota is None or not quota.active:
            limit = quota.daily_limit if quota is not None and quota.daily_limit is not None else 0
            return Decision(
                allowed=False,
                limit=limit,
                remaining=0,
                reset_time=now,
                reason=DecisionReason.KEY_INACTIVE,
                tier=tier.name,
            )
        daily_limit = quota.daily_limit if quota.daily_limit is not None else 0
        if quota.daily_usage_count >= daily_limit:
            reset_time = next_utc_midnight(now)
            return Decision(
                allowed=False,
                limit=daily_limit,
                remaining=0,
                reset_time=reset_time,
                retry_after_seconds=_retry_after(reset_time, now),
                reason=DecisionReason.DAILY_QUOTA_EXCEEDED,
                tier=tier.name,
            )
        return None

    @staticmethod
    def _unlimited(policy: RateLimitPolicy, now: datetime) -> Decision:
        return Decision(
            allowed=True,
            limit=policy.max_requests,
            remaining=policy.max_requests,
            reset_time=now + policy.window,
        )

    @staticmethod
    def _log_denial(decision: Decision, identifier: str, policy: RateLimitPolicy) -> None:
        logger.warning(
            "Request denied by rate limiter",
            extra={
                "identifier": identifier,
                "tier": decision.tier,
                "reason": decision.reason.value,
                "policy": policy.name,
                "limit": decision.limit,
                "retry_after_s": decision.retry_after_seconds,
            },
        )

    @staticmethod
    def _fail_open(
        exc: StorageUnavailableError,
        request: RequestContext,
        api_key_id: str | None,
        policy: RateLimitPolicy,
        now: datetime,
    ) -> Decision:
        logger.error(
            "Rate limiter storage unavailable; admitting request",
            extra={
                "client_ip": client_ip(request),
                "api_key_id": api_key_id,
                "policy": policy.name,
                "details": exc.details,
            },
            exc_info=exc,
        )
        return Decision.degraded_allow(policy, now)


def build_admission_gate(settings: Settings, session_maker: Any) -> AdmissionGate:
    """Wire stores, quota source and pruner for the given settings."""

    events = SQLRequestEventStore(session_maker)
    registry = SQLApiKeyStore(session_maker)
    policies = named_policies(settings)
    return AdmissionGate(
        events=events,
        quota=QuotaSource(registry, default_daily_limit=settings.api_key_default_daily_limit),
        pruner=EventPruner(
            events,
            retention=timedelta(seconds=settings.rate_limit_retention_seconds),
            interval=timedelta(seconds=settings.rate_limit_prune_interval_seconds),
        ),
        default_policy=policies["api"],
    )


__all__ = [
    "API_KEY_TIER",
    "API_POLICY",
    "AdmissionGate",
    "DEFAULT_TIERS",
    "Decision",
    "DecisionReason",
    "EventPruner",
    "FEED_POLICY",
    "IP_TIER",
    "QuotaSource",
    "RateLimitPolicy",
    "RequestContext",
    "Tier",
    "WEBHOOK_POLICY",
    "WindowEvaluator",
    "build_admission_gate",
    "client_ip",
    "create_headers",
    "named_policies",
    "next_utc_midnight",
]
