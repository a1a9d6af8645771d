"""Bot detection, attack shielding and role-aware rate limiting.

The guard runs in front of every route. It works out the caller's role tier,
asks a :class:`DecisionEngine` for a verdict under that tier's policy and
turns the verdict into a response:

* bot and shield hits block with 403 when the policy is enforcing and are
  only logged when it is log-only;
* rate-limit hits, from either the short burst window or the per-tier
  window, always block with 429;
* if the guard itself fails, development lets the request through and
  production answers 500.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Mapping, Optional, Protocol, Tuple
from urllib.parse import unquote_plus

from fastapi import Request, status
from fastapi.responses import JSONResponse
from limits import RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import MovingWindowRateLimiter
from prometheus_client import Counter
from slowapi.util import get_remote_address
from starlette.concurrency import run_in_threadpool

from .auth import TOKEN_COOKIE, decode_token
from .config import Environment, Settings
from .errors import AbuseDecisionError, AppError, AuthenticationError, RateLimitError
from .schemas import Identity

logger = logging.getLogger(__name__)

GUARD_DECISIONS = Counter(
    "guard_decisions_total",
    "Security guard decisions by deny reason and resulting action",
    ["reason", "action"],
)


class RoleTier(str, Enum):
    ADMIN = "admin"
    USER = "user"
    GUEST = "guest"

    @classmethod
    def from_identity(cls, identity: Optional[Identity]) -> "RoleTier":
        if identity is None:
            return cls.GUEST
        return cls(identity.role.value)


class Mode(str, Enum):
    LIVE = "LIVE"
    DRY_RUN = "DRY_RUN"


class BotCategory(str, Enum):
    SEARCH_ENGINE = "SEARCH_ENGINE"
    PREVIEW = "PREVIEW"
    API = "API"
    TOOL = "TOOL"
    UNKNOWN = "UNKNOWN"


class DenyReason(str, Enum):
    BOT = "bot"
    SHIELD = "shield"
    RATE_LIMIT = "rate_limit"


@dataclass(frozen=True)
class TierPolicy:
    tier: RoleTier
    window_seconds: int
    max_requests: int
    mode: Mode
    allowed_bots: FrozenSet[BotCategory]
    burst_requests: int
    burst_window_seconds: int

    @property
    def enforcing(self) -> bool:
        return self.mode is Mode.LIVE

    @property
    def rule_name(self) -> str:
        return f"{self.tier.value}-rate-limit"

    @property
    def message(self) -> str:
        if self.window_seconds == 60:
            window = "minute"
        else:
            window = f"{self.window_seconds} seconds"
        return (
            f"{self.tier.value.capitalize()} request limit exceeded "
            f"({self.max_requests} per {window}). Slow down."
        )


def _tiers(
    max_requests: Mapping[RoleTier, int],
    mode: Mode,
    allowed_bots: FrozenSet[BotCategory],
    burst: Tuple[int, int],
) -> Dict[RoleTier, TierPolicy]:
    """Build one policy per tier; ``burst`` is (requests, seconds) shared by all tiers."""
    return {
        tier: TierPolicy(
            tier=tier,
            window_seconds=60,
            max_requests=max_requests[tier],
            mode=mode,
            allowed_bots=allowed_bots,
            burst_requests=burst[0],
            burst_window_seconds=burst[1],
        )
        for tier in RoleTier
    }


RATE_TIERS: Dict[Environment, Dict[RoleTier, TierPolicy]] = {
    Environment.DEVELOPMENT: _tiers(
        {RoleTier.ADMIN: 100, RoleTier.USER: 50, RoleTier.GUEST: 25},
        Mode.DRY_RUN,
        frozenset({BotCategory.SEARCH_ENGINE, BotCategory.PREVIEW, BotCategory.API}),
        (50, 10),
    ),
    Environment.PRODUCTION: _tiers(
        {RoleTier.ADMIN: 20, RoleTier.USER: 10, RoleTier.GUEST: 5},
        Mode.LIVE,
        frozenset({BotCategory.SEARCH_ENGINE, BotCategory.PREVIEW}),
        (5, 2),
    ),
}


def policy_for(environment: Environment, tier: RoleTier) -> TierPolicy:
    return RATE_TIERS[environment][tier]


@dataclass(frozen=True)
class Fingerprint:
    ip: str
    method: str
    path: str
    query: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def user_agent(self) -> str:
        return self.headers.get("user-agent", "")

    @classmethod
    def from_request(cls, request: Request) -> "Fingerprint":
        return cls(
            ip=get_remote_address(request),
            method=request.method,
            path=request.url.path,
            query=request.url.query,
            headers=dict(request.headers),
        )


@dataclass(frozen=True)
class Verdict:
    """Outcome of an evaluation; ``reasons`` is empty when the request is allowed."""

    reasons: Tuple[DenyReason, ...] = ()

    @property
    def is_denied(self) -> bool:
        return bool(self.reasons)


class DecisionEngine(Protocol):
    def evaluate(self, fingerprint: Fingerprint, policy: TierPolicy) -> Verdict:
        ...


_BOT_PATTERNS = (
    (BotCategory.SEARCH_ENGINE, re.compile(
        r"googlebot|bingbot|duckduckbot|baiduspider|yandexbot|applebot|slurp", re.I)),
    (BotCategory.PREVIEW, re.compile(
        r"slackbot|twitterbot|facebookexternalhit|discordbot|linkedinbot|telegrambot"
        r"|whatsapp", re.I)),
    (BotCategory.API, re.compile(r"postman|insomnia|httpie|paw/", re.I)),
    (BotCategory.TOOL, re.compile(
        r"curl|wget|python-requests|python-urllib|httpx|aiohttp|go-http-client"
        r"|okhttp|java/|libwww|scrapy|headless", re.I)),
    (BotCategory.UNKNOWN, re.compile(r"bot|crawl|spider|scrape", re.I)),
)

_SHIELD_PATTERNS = (
    re.compile(r"\bunion\b.+\bselect\b", re.I),
    re.compile(r"'\s*or\s+'?\d+'?\s*=\s*'?\d+", re.I),
    re.compile(r";\s*(drop|delete|insert|update)\s", re.I),
    re.compile(r"(--|#|/\*)\s*$"),
    re.compile(r"<\s*script|javascript:|on(error|load)\s*=", re.I),
    re.compile(r"\.\./|\.\.\\"),
    re.compile(r"[;|`]\s*(cat|ls|rm|wget|curl|sh|bash)\b", re.I),
    re.compile(r"\$\(.*\)"),
)


def classify_user_agent(user_agent: str) -> Optional[BotCategory]:
    """Return the bot category of a user agent, or ``None`` for a browser."""
    if not user_agent.strip():
        return BotCategory.UNKNOWN
    for category, pattern in _BOT_PATTERNS:
        if pattern.search(user_agent):
            return category
    return None


def looks_like_attack(fingerprint: Fingerprint) -> bool:
    target = unquote_plus(fingerprint.path)
    if fingerprint.query:
        target += "?" + unquote_plus(fingerprint.query)
    return any(pattern.search(target) for pattern in _SHIELD_PATTERNS)


class LocalDecisionEngine:
    """In-process engine using the ``limits`` moving-window limiter.

    Bot and shield rules always report their hits; it is up to the guard to
    decide whether a hit blocks.
    """

    def __init__(self, storage_uri: str = "memory://"):
        self._limiter = MovingWindowRateLimiter(storage_from_string(storage_uri))

    def evaluate(self, fingerprint: Fingerprint, policy: TierPolicy) -> Verdict:
        reasons = []
        category = classify_user_agent(fingerprint.user_agent)
        if category is not None and category not in policy.allowed_bots:
            reasons.append(DenyReason.BOT)
        if looks_like_attack(fingerprint):
            reasons.append(DenyReason.SHIELD)
        burst = RateLimitItemPerSecond(policy.burst_requests, policy.burst_window_seconds)
        item = RateLimitItemPerSecond(policy.max_requests, policy.window_seconds)
        within_burst = self._limiter.hit(burst, "burst", fingerprint.ip)
        within_tier = self._limiter.hit(item, policy.rule_name, fingerprint.ip)
        if not (within_burst and within_tier):
            reasons.append(DenyReason.RATE_LIMIT)
        return Verdict(tuple(reasons))


class SecurityGuard:
    """HTTP middleware applying the decision engine's verdict."""

    def __init__(self, settings: Settings, engine: DecisionEngine):
        self.settings = settings
        self.engine = engine

    def resolve_tier(self, request: Request) -> RoleTier:
        token = request.cookies.get(TOKEN_COOKIE)
        if not token:
            return RoleTier.GUEST
        try:
            return RoleTier.from_identity(decode_token(token, self.settings))
        except AuthenticationError:
            return RoleTier.GUEST

    async def check(self, request: Request) -> Optional[AppError]:
        """Return the error to answer with, or ``None`` to let the request pass."""
        policy = policy_for(self.settings.environment, self.resolve_tier(request))
        fingerprint = Fingerprint.from_request(request)
        verdict = await run_in_threadpool(self.engine.evaluate, fingerprint, policy)

        details = {
            "ip": fingerprint.ip,
            "user_agent": fingerprint.user_agent,
            "path": fingerprint.path,
            "method": fingerprint.method,
        }
        for reason in (DenyReason.BOT, DenyReason.SHIELD):
            if reason not in verdict.reasons:
                continue
            blocked = policy.enforcing
            logger.log(
                logging.WARNING if blocked else logging.INFO,
                "%s request detected %s blocked=%s",
                reason.value,
                details,
                blocked,
            )
            if blocked:
                GUARD_DECISIONS.labels(reason=reason.value, action="blocked").inc()
                if reason is DenyReason.BOT:
                    return AbuseDecisionError("Automated requests are not allowed.")
                return AbuseDecisionError("Request blocked by security policy.")
            GUARD_DECISIONS.labels(reason=reason.value, action="logged").inc()

        if DenyReason.RATE_LIMIT in verdict.reasons:
            logger.warning("rate limit exceeded for %s %s", policy.rule_name, details)
            GUARD_DECISIONS.labels(reason=DenyReason.RATE_LIMIT.value, action="blocked").inc()
            return RateLimitError(policy.message)
        return None

    async def __call__(self, request: Request, call_next):
        try:
            denial = await self.check(request)
        except Exception:
            logger.exception("security guard error on %s %s", request.method, request.url.path)
            if self.settings.is_development:
                logger.warning("bypassing security guard due to error in development mode")
                return await call_next(request)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": "Internal server error",
                    "message": "Something went wrong with security middleware",
                },
            )
        if denial is not None:
            return JSONResponse(status_code=denial.status_code, content=denial.to_response())
        return await call_next(request)
