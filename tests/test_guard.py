import dataclasses

import pytest
from fastapi.testclient import TestClient

from userapi.api import create_app
from userapi.config import Environment
from userapi.guard import (
    BotCategory,
    DenyReason,
    Fingerprint,
    LocalDecisionEngine,
    Mode,
    RATE_TIERS,
    RoleTier,
    Verdict,
    classify_user_agent,
    looks_like_attack,
    policy_for,
)
from userapi.models.user import Role
from userapi.schemas import Identity

BROWSER = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"


class FixedEngine:
    def __init__(self, *reasons):
        self.verdict = Verdict(tuple(reasons))
        self.policies = []

    def evaluate(self, fingerprint, policy):
        self.policies.append(policy)
        return self.verdict


class BrokenEngine:
    def evaluate(self, fingerprint, policy):
        raise ConnectionError("decision engine unreachable")


@pytest.fixture
def production(settings):
    return settings.model_copy(update={"environment": Environment.PRODUCTION})


@pytest.fixture
def guarded_client(engine, seed_users):
    def _client(settings, decision_engine=None):
        app = create_app(
            settings,
            engine=engine,
            decision_engine=decision_engine or LocalDecisionEngine(),
        )
        return TestClient(app, headers={"User-Agent": BROWSER})

    return _client


@pytest.mark.parametrize(
    "environment, tier, max_requests, mode, burst",
    [
        (Environment.DEVELOPMENT, RoleTier.ADMIN, 100, Mode.DRY_RUN, (50, 10)),
        (Environment.DEVELOPMENT, RoleTier.USER, 50, Mode.DRY_RUN, (50, 10)),
        (Environment.DEVELOPMENT, RoleTier.GUEST, 25, Mode.DRY_RUN, (50, 10)),
        (Environment.PRODUCTION, RoleTier.ADMIN, 20, Mode.LIVE, (5, 2)),
        (Environment.PRODUCTION, RoleTier.USER, 10, Mode.LIVE, (5, 2)),
        (Environment.PRODUCTION, RoleTier.GUEST, 5, Mode.LIVE, (5, 2)),
    ],
)
def test_tier_policies(environment, tier, max_requests, mode, burst):
    policy = policy_for(environment, tier)
    assert policy.max_requests == max_requests
    assert policy.window_seconds == 60
    assert policy.mode is mode
    assert policy.rule_name == f"{tier.value}-rate-limit"
    assert (policy.burst_requests, policy.burst_window_seconds) == burst


def test_tier_messages():
    assert policy_for(Environment.PRODUCTION, RoleTier.GUEST).message == (
        "Guest request limit exceeded (5 per minute). Slow down."
    )
    assert policy_for(Environment.DEVELOPMENT, RoleTier.ADMIN).message == (
        "Admin request limit exceeded (100 per minute). Slow down."
    )


def test_role_tier_from_identity():
    assert RoleTier.from_identity(None) is RoleTier.GUEST
    admin = Identity(id=1, email="a@example.com", role=Role.ADMIN)
    user = Identity(id=2, email="u@example.com", role=Role.USER)
    assert RoleTier.from_identity(admin) is RoleTier.ADMIN
    assert RoleTier.from_identity(user) is RoleTier.USER


@pytest.mark.parametrize(
    "user_agent, category",
    [
        (BROWSER, None),
        ("", BotCategory.UNKNOWN),
        ("Mozilla/5.0 (compatible; Googlebot/2.1)", BotCategory.SEARCH_ENGINE),
        ("Slackbot-LinkExpanding 1.0", BotCategory.PREVIEW),
        ("PostmanRuntime/7.36.0", BotCategory.API),
        ("curl/8.4.0", BotCategory.TOOL),
        ("python-requests/2.31", BotCategory.TOOL),
        ("MegaIndex crawler", BotCategory.UNKNOWN),
    ],
)
def test_classify_user_agent(user_agent, category):
    assert classify_user_agent(user_agent) is category


@pytest.mark.parametrize(
    "path, query, expected",
    [
        ("/users", "", False),
        ("/users/7", "", False),
        ("/users", "q=1%27%20OR%20%271%27%3D%271", True),
        ("/users", "id=1+UNION+SELECT+password+FROM+users", True),
        ("/users", "name=%3Cscript%3Ealert(1)%3C/script%3E", True),
        ("/users/../../etc/passwd", "", True),
        ("/users", "name=ada;cat /etc/passwd", True),
    ],
)
def test_looks_like_attack(path, query, expected):
    fingerprint = Fingerprint(ip="10.0.0.1", method="GET", path=path, query=query)
    assert looks_like_attack(fingerprint) is expected


def test_local_engine_sliding_window():
    engine = LocalDecisionEngine()
    policy = policy_for(Environment.PRODUCTION, RoleTier.GUEST)
    fingerprint = Fingerprint(
        ip="10.0.0.1", method="GET", path="/users", headers={"user-agent": BROWSER}
    )
    verdicts = [engine.evaluate(fingerprint, policy) for _ in range(6)]
    assert all(not v.is_denied for v in verdicts[:5])
    assert verdicts[5].reasons == (DenyReason.RATE_LIMIT,)

    other = Fingerprint(ip="10.0.0.2", method="GET", path="/users", headers={"user-agent": BROWSER})
    assert not engine.evaluate(other, policy).is_denied


def test_local_engine_reports_bot_and_shield():
    engine = LocalDecisionEngine()
    policy = policy_for(Environment.PRODUCTION, RoleTier.GUEST)
    fingerprint = Fingerprint(
        ip="10.0.0.3",
        method="GET",
        path="/users",
        query="id=1+UNION+SELECT+1",
        headers={"user-agent": "curl/8.4.0"},
    )
    assert engine.evaluate(fingerprint, policy).reasons == (DenyReason.BOT, DenyReason.SHIELD)


def test_local_engine_burst_window_applies_to_every_tier():
    engine = LocalDecisionEngine()
    policy = policy_for(Environment.PRODUCTION, RoleTier.ADMIN)
    fingerprint = Fingerprint(
        ip="10.0.0.4", method="GET", path="/users", headers={"user-agent": BROWSER}
    )
    verdicts = [engine.evaluate(fingerprint, policy) for _ in range(6)]
    assert all(not v.is_denied for v in verdicts[:5])
    assert verdicts[5].reasons == (DenyReason.RATE_LIMIT,)


def test_guest_rate_limited_in_production(guarded_client, production):
    client = guarded_client(production)
    statuses = [client.get("/users").status_code for _ in range(5)]
    assert statuses == [200] * 5
    response = client.get("/users")
    assert response.status_code == 429
    assert response.json() == {
        "error": "Too Many Requests",
        "message": "Guest request limit exceeded (5 per minute). Slow down.",
    }


def test_authenticated_user_gets_user_tier(guarded_client, production, make_token, monkeypatch):
    tiers = RATE_TIERS[Environment.PRODUCTION]
    monkeypatch.setitem(
        tiers, RoleTier.USER, dataclasses.replace(tiers[RoleTier.USER], burst_requests=100)
    )
    client = guarded_client(production)
    client.cookies.set("token", make_token(7, "user"))
    for _ in range(10):
        assert client.get("/users").status_code == 200
    response = client.get("/users")
    assert response.status_code == 429
    assert response.json()["message"] == (
        "User request limit exceeded (10 per minute). Slow down."
    )


def test_burst_window_limits_fast_production_requests(guarded_client, production, make_token):
    client = guarded_client(production)
    client.cookies.set("token", make_token(7, "user"))
    statuses = [client.get("/users").status_code for _ in range(6)]
    assert statuses == [200] * 5 + [429]


def test_invalid_token_counts_as_guest(guarded_client, settings):
    decision_engine = FixedEngine()
    client = guarded_client(settings, decision_engine)
    client.cookies.set("token", "forged")
    client.get("/users")
    assert decision_engine.policies[-1].tier is RoleTier.GUEST


def test_bot_blocked_in_production(guarded_client, production):
    client = guarded_client(production)
    response = client.get("/users", headers={"User-Agent": "curl/8.4.0"})
    assert response.status_code == 403
    assert response.json() == {
        "error": "Forbidden",
        "message": "Automated requests are not allowed.",
    }


def test_search_engine_allowed_in_production(guarded_client, production):
    client = guarded_client(production)
    response = client.get("/users", headers={"User-Agent": "Googlebot/2.1"})
    assert response.status_code == 200


def test_bot_only_logged_in_development(guarded_client, settings):
    client = guarded_client(settings)
    response = client.get("/users", headers={"User-Agent": "curl/8.4.0"})
    assert response.status_code == 200


def test_shield_blocks_in_production(guarded_client, production):
    client = guarded_client(production)
    response = client.get("/users", params={"q": "1' OR '1'='1"})
    assert response.status_code == 403
    assert response.json()["message"] == "Request blocked by security policy."


def test_shield_only_logged_in_development(guarded_client, settings):
    client = guarded_client(settings)
    response = client.get("/users", params={"q": "1' OR '1'='1"})
    assert response.status_code == 200


def test_rate_limit_enforced_even_in_log_only_mode(guarded_client, settings):
    client = guarded_client(settings, FixedEngine(DenyReason.BOT, DenyReason.RATE_LIMIT))
    response = client.get("/users")
    assert response.status_code == 429
    assert response.json()["message"] == (
        "Guest request limit exceeded (25 per minute). Slow down."
    )


def test_bot_denial_short_circuits_before_rate_limit(guarded_client, production):
    client = guarded_client(production, FixedEngine(DenyReason.BOT, DenyReason.RATE_LIMIT))
    response = client.get("/users")
    assert response.status_code == 403


def test_guard_failure_fails_open_in_development(guarded_client, settings):
    client = guarded_client(settings, BrokenEngine())
    response = client.get("/users")
    assert response.status_code == 200


def test_guard_failure_fails_closed_in_production(guarded_client, production):
    client = guarded_client(production, BrokenEngine())
    response = client.get("/users")
    assert response.status_code == 500
    assert response.json() == {
        "error": "Internal server error",
        "message": "Something went wrong with security middleware",
    }
