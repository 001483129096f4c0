"""Shared fakes: an HTTP session that replays canned responses, and fake time."""

import json
from datetime import datetime, timedelta, timezone

import pytest

import minecraft_services
import msa_auth
import xbox_live
from account_store import AccountStore, CredentialRecord


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text

    def json(self):
        if self._payload is None:
            return json.loads(self.text)
        return self._payload


class FakeSession:
    """requests-compatible session. Queued responses are served in order per
    (method, url); the last one repeats once the queue is down to one."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, method, url, *responses):
        self.routes.setdefault((method, url), []).extend(responses)

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "headers": headers or {},
                           "timeout": timeout, **kwargs})
        queue = self.routes.get((method, url))
        if not queue:
            raise AssertionError(f"unexpected request: {method} {url}")
        resp = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(resp, Exception):
            raise resp
        return resp

    def calls_to(self, url):
        return [c for c in self.calls if c["url"] == url]


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


DEVICE_CODE_PAYLOAD = {
    "device_code": "dev-123",
    "user_code": "ABCD1234",
    "verification_uri": "https://www.microsoft.com/link",
    "interval": 5,
    "expires_in": 900,
    "message": "To sign in, use a web browser to open https://www.microsoft.com/link",
}
MS_TOKEN_PAYLOAD = {
    "access_token": "ms-access",
    "refresh_token": "ms-refresh",
    "expires_in": 3600,
}
XBL_PAYLOAD = {
    "Token": "xbl-token",
    "NotAfter": "2026-11-02T12:00:00Z",
    "DisplayClaims": {"xui": [{"uhs": "1234567890"}]},
}
XSTS_PAYLOAD = {
    "Token": "xsts-token",
    "DisplayClaims": {"xui": [{"uhs": "1234567890"}]},
}
MC_AUTH_PAYLOAD = {
    "username": "a6c1b8a1-0000-0000-0000-000000000000",
    "access_token": "mc-access",
    "token_type": "Bearer",
    "expires_in": 86400,
}
ENTITLEMENTS_PAYLOAD = {
    "items": [{"name": "product_minecraft"}, {"name": "game_minecraft"}],
}
PROFILE_PAYLOAD = {
    "id": "069a79f444e94726a5befca90e38aaf5",
    "name": "Notch",
    "skins": [{"id": "s1", "state": "ACTIVE", "url": "http://textures/s1", "variant": "CLASSIC"}],
    "capes": [],
}

FIXED_NOW = datetime(2026, 10, 19, 12, 0, 0, 250000, tzinfo=timezone.utc)


def pending(code="authorization_pending"):
    return FakeResponse(400, {"error": code, "error_description": code})


def add_downstream(session):
    """Register Xbox/XSTS/Minecraft responses for one full chain."""
    session.add("POST", xbox_live.USER_AUTH, FakeResponse(200, XBL_PAYLOAD))
    session.add("POST", xbox_live.XSTS_AUTH, FakeResponse(200, XSTS_PAYLOAD))
    session.add("POST", minecraft_services.MINECRAFT_AUTH_URL, FakeResponse(200, MC_AUTH_PAYLOAD))
    session.add("GET", minecraft_services.MINECRAFT_ENTITLEMENTS_URL,
                FakeResponse(200, ENTITLEMENTS_PAYLOAD))
    session.add("GET", minecraft_services.MINECRAFT_PROFILE_URL, FakeResponse(200, PROFILE_PAYLOAD))


def add_device_flow(session, *poll_responses):
    session.add("POST", msa_auth.DEVICE_CODE_URL, FakeResponse(200, DEVICE_CODE_PAYLOAD))
    session.add("POST", msa_auth.TOKEN_URL,
                *(poll_responses or (FakeResponse(200, MS_TOKEN_PAYLOAD),)))


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return AccountStore(str(tmp_path / "accounts.json"), encryption_key="")


@pytest.fixture
def record():
    return CredentialRecord(
        ms_access_token="old-ms-access",
        ms_refresh_token="old-ms-refresh",
        ms_expiry=FIXED_NOW + timedelta(days=1),
        mc_access_token="old-mc-access",
        mc_expiry=FIXED_NOW - timedelta(minutes=5),
        profile_id=PROFILE_PAYLOAD["id"],
        profile_name=PROFILE_PAYLOAD["name"],
    )
