"""Quota gate for new research submissions.

Tiers and their budgets:

* ``anonymous``: lifetime budget carried in a signed cookie.
* ``free``: daily budget, resets at midnight UTC.
* ``subscription``: monthly budget, resets on the 1st.
* ``pay_per_use``: unmetered, every run is still counted and logged as billable.
* ``development``: self-hosted deployments, never limited.

Authenticated counters live in ``user_rate_limits`` and are consumed with a
single compare-and-increment in the store, so two concurrent submissions at
``used == limit - 1`` admit exactly one.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from history.config import settings
from history.models.identity import CallerSession
from history.services.logger import log_event, logger
from history.services.store import Store, get_store

COOKIE_NAME = "$dekcuf_teg"
COOKIE_MAX_AGE = 10 * 365 * 24 * 60 * 60
UNLIMITED_LIMIT = 999999
FAR_FUTURE = datetime(2099, 12, 31, tzinfo=timezone.utc)


@dataclass(slots=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    limit: int
    reset_time: datetime
    tier: str
    used: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "limit": self.limit,
            "used": self.used,
            "tier": self.tier,
            "resetTime": self.reset_time.isoformat(),
            "display": display(self),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_midnight(now: datetime) -> datetime:
    return (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)


def next_month_start(now: datetime) -> datetime:
    if now.month == 12:
        return now.replace(year=now.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return now.replace(month=now.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)


def period_key(scope: str, now: datetime) -> str:
    if scope == "daily":
        return now.strftime("%Y-%m-%d")
    if scope == "monthly":
        return now.strftime("%Y-%m")
    return ""


@dataclass(frozen=True, slots=True)
class TierPolicy:
    tier: str
    scope: str  # daily | monthly | total
    limit: int
    unmetered: bool = False

    def reset_time(self, now: datetime) -> datetime:
        if self.scope == "daily":
            return next_midnight(now)
        if self.scope == "monthly":
            return next_month_start(now)
        return FAR_FUTURE


def policy_for(tier: str) -> TierPolicy:
    if tier == "subscription":
        return TierPolicy("subscription", "monthly", settings.subscription_monthly_limit)
    if tier == "pay_per_use":
        return TierPolicy("pay_per_use", "total", UNLIMITED_LIMIT, unmetered=True)
    if tier != "free":
        logger.warning(f"Unknown subscription tier {tier!r}; applying free tier limits")
    return TierPolicy("free", "daily", settings.free_daily_limit)


def resolve_tier(user: dict[str, Any] | None) -> str:
    if user and user.get("subscription_status") == "active" and user.get("subscription_tier"):
        return str(user["subscription_tier"])
    return "free"


def display(result: RateLimitResult) -> str:
    if result.tier == "development":
        return "Dev Mode"
    if result.tier == "pay_per_use":
        return f"{result.used}/∞ queries (pay-per-use)"
    if result.tier == "subscription":
        return f"{result.used}/{result.limit} queries this month"
    if result.tier == "anonymous":
        return f"{result.used}/{result.limit} lifetime queries"
    return f"{result.used}/{result.limit} queries today"


# --- Anonymous cookie ---


def _sign(payload: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def encode_anonymous_cookie(count: int, secret: str | None = None) -> str:
    secret = settings.anonymous_cookie_secret if secret is None else secret
    payload = base64.b64encode(str(count).encode("ascii")).decode("ascii")
    if not secret:
        return payload
    return f"{payload}.{_sign(payload, secret)}"


def decode_anonymous_cookie(value: str | None, secret: str | None = None) -> int:
    """Return the anonymous usage count carried by the cookie.

    With a secret configured, unsigned or tampered values read as the
    anonymous limit so they cannot reset the counter.
    """
    if not value:
        return 0
    secret = settings.anonymous_cookie_secret if secret is None else secret
    payload = value
    if secret:
        payload, _, signature = value.partition(".")
        if not signature or not hmac.compare_digest(_sign(payload, secret), signature):
            logger.warning("Rejected anonymous quota cookie with missing or bad signature")
            return settings.anonymous_limit
    else:
        payload = value.partition(".")[0]
    try:
        return max(int(base64.b64decode(payload, validate=True).decode("ascii")), 0)
    except (binascii.Error, ValueError, UnicodeDecodeError):
        return 0


# --- Gate ---


class RateLimiter:
    def __init__(
        self,
        store: Store | None = None,
        *,
        metered: bool | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store if store is not None else get_store()
        self.metered = settings.is_metered if metered is None else metered
        self.clock = clock

    def _development(self) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            remaining=UNLIMITED_LIMIT,
            limit=UNLIMITED_LIMIT,
            reset_time=self.clock() + timedelta(days=1),
            tier="development",
            used=0,
        )

    def _anonymous(self, used: int) -> RateLimitResult:
        limit = settings.anonymous_limit
        return RateLimitResult(
            allowed=used < limit,
            remaining=max(limit - used, 0),
            limit=limit,
            reset_time=FAR_FUTURE,
            tier="anonymous",
            used=used,
        )

    def _result(self, policy: TierPolicy, used: int, now: datetime, *, allowed: bool | None = None) -> RateLimitResult:
        if policy.unmetered:
            return RateLimitResult(True, UNLIMITED_LIMIT, UNLIMITED_LIMIT, FAR_FUTURE, policy.tier, used)
        return RateLimitResult(
            allowed=used < policy.limit if allowed is None else allowed,
            remaining=max(policy.limit - used, 0),
            limit=policy.limit,
            reset_time=policy.reset_time(now),
            tier=policy.tier,
            used=used,
        )

    async def _policy(self, user_id: str) -> TierPolicy:
        return policy_for(resolve_tier(await self.store.get_user(user_id)))

    async def _used(self, user_id: str, policy: TierPolicy, now: datetime) -> int:
        row = await self.store.get_rate_limit(user_id)
        if not row:
            return 0
        if policy.scope == "monthly":
            if row.get("monthly_reset_date") != period_key("monthly", now):
                return 0
            return int(row.get("monthly_usage_count") or 0)
        if policy.scope == "daily" and row.get("reset_date") != period_key("daily", now):
            return 0
        return int(row.get("usage_count") or 0)

    async def check(self, caller: CallerSession) -> RateLimitResult:
        if not self.metered:
            return self._development()
        if caller.is_anonymous:
            return self._anonymous(caller.anonymous_used)
        now = self.clock()
        policy = await self._policy(caller.user_id)
        return self._result(policy, await self._used(caller.user_id, policy, now), now)

    async def increment(self, caller: CallerSession) -> RateLimitResult:
        """Take one slot. ``allowed`` is False when the budget was already spent."""
        if not self.metered:
            return self._development()
        if caller.is_anonymous:
            # The caller's cookie is rewritten with ``used`` once the task is accepted.
            if caller.anonymous_used >= settings.anonymous_limit:
                return self._anonymous(caller.anonymous_used)
            result = self._anonymous(caller.anonymous_used + 1)
            result.allowed = True
            return result

        now = self.clock()
        policy = await self._policy(caller.user_id)
        used = await self.store.consume_rate_limit(
            caller.user_id, policy.scope, period_key(policy.scope, now), policy.limit
        )
        if used is None:
            return self._result(policy, await self._used(caller.user_id, policy, now), now, allowed=False)
        if policy.unmetered:
            log_event("billable_run", "Pay-per-use research run", user_id=caller.user_id, usage_count=used)
        return self._result(policy, used, now, allowed=True)

    async def release(self, caller: CallerSession) -> None:
        """Give back a slot taken by ``increment`` for a submission the provider rejected."""
        if not self.metered or caller.is_anonymous:
            return
        now = self.clock()
        policy = await self._policy(caller.user_id)
        await self.store.release_rate_limit(caller.user_id, policy.scope, period_key(policy.scope, now))
        log_event("rate_limit_released", "Released quota slot", user_id=caller.user_id, tier=policy.tier)

    async def transfer_anonymous_usage(self, user_id: str, used: int) -> None:
        if not self.metered or used <= 0:
            return
        await self.store.add_usage(user_id, used, period_key("daily", self.clock()))
        log_event("anonymous_usage_transferred", "Carried anonymous usage to account", user_id=user_id, used=used)
