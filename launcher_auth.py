"""
Launcher sign-in chain: MSA -> Xbox User Token -> XSTS -> Minecraft.

Entry points:
  start_device_login() / DeviceLogin.wait_for_login()   device code login
  browser_login()                                       redirect login
  login(method, ...)                                    either of the above
  refresh_login(record)                                 extend token lifetime
  ensure_account()                                      start-up check
  load_account() / save_account(record)

Both login methods converge on complete_login(). Any stage failure aborts
the chain before anything is written and is raised as ChainStageError,
tagged with the LoginState the attempt was in.
"""

import enum
import logging
import secrets
import time
import webbrowser
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import minecraft_services
import msa_auth
import xbox_live
from account_store import CredentialRecord, default_store
from auth_errors import AuthError, ChainStageError, PersistenceFailure

log = logging.getLogger(__name__)


class LoginMethod(enum.Enum):
    DEVICE_CODE = "device_code"
    BROWSER = "browser"


class LoginState(enum.Enum):
    IDLE = "idle"
    AWAITING_FIRST_PARTY = "microsoft sign-in"
    AWAITING_DELEGATION_1 = "xbox live auth"
    AWAITING_DELEGATION_2 = "xsts auth"
    AWAITING_GAME_AUTH = "minecraft auth"
    AWAITING_OWNERSHIP = "ownership check"
    AWAITING_PROFILE = "profile"
    SAVING = "save account"
    PERSISTED = "persisted"
    FAILED = "failed"


class LoginAttempt:
    """Tracks where one login or refresh attempt is in the chain."""

    def __init__(self):
        self.state = LoginState.IDLE
        self.failed_stage = None
        self.history = [LoginState.IDLE]

    def advance(self, state):
        self.state = state
        self.history.append(state)

    @contextmanager
    def stage(self, state):
        """Enter `state`; wrap any AuthError raised inside as ChainStageError."""
        self.advance(state)
        try:
            yield
        except ChainStageError:
            raise
        except AuthError as e:
            self.failed_stage = state
            self.advance(LoginState.FAILED)
            log.info("Login chain failed at %s: %s", state.value, e)
            raise ChainStageError(state, e) from e


def _utcnow():
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Shared downstream chain
# ---------------------------------------------------------------------------

def _minecraft_token(ms_access_token, attempt, session=None):
    """MSA token -> Xbox user token -> XSTS -> Minecraft access token."""
    with attempt.stage(LoginState.AWAITING_DELEGATION_1):
        user_token = xbox_live.authenticate_user(ms_access_token, session=session)

    with attempt.stage(LoginState.AWAITING_DELEGATION_2):
        xsts = xbox_live.authorize_xsts(user_token.token, session=session)
        user_hash = xsts.user_hash()

    with attempt.stage(LoginState.AWAITING_GAME_AUTH):
        return minecraft_services.login_with_xbox(user_hash, xsts.token, session=session)


def _persist(record, attempt, store):
    with attempt.stage(LoginState.SAVING):
        store.save(record)
    attempt.advance(LoginState.PERSISTED)
    return record


def complete_login(ms_token, attempt=None, session=None, store=None):
    """Run everything after the first-party token and save the new record."""
    attempt = attempt or LoginAttempt()
    store = store or default_store()

    mc_token = _minecraft_token(ms_token["access_token"], attempt, session=session)

    with attempt.stage(LoginState.AWAITING_OWNERSHIP):
        minecraft_services.require_ownership(mc_token["access_token"], session=session)

    with attempt.stage(LoginState.AWAITING_PROFILE):
        profile = minecraft_services.get_profile(mc_token["access_token"], session=session)

    issued_at = _utcnow()
    record = CredentialRecord(
        ms_access_token=ms_token["access_token"],
        ms_refresh_token=ms_token["refresh_token"],
        ms_expiry=issued_at + timedelta(seconds=ms_token["expires_in"]),
        mc_access_token=mc_token["access_token"],
        mc_expiry=issued_at + timedelta(seconds=mc_token["expires_in"]),
        profile_id=profile["id"],
        profile_name=profile["name"],
    )
    _persist(record, attempt, store)
    log.info("Login successful for %s", record.profile_name)
    return record


# ---------------------------------------------------------------------------
# Device code login
# ---------------------------------------------------------------------------

class DeviceLogin:
    """A started device code login. Show user_code, then wait_for_login()."""

    def __init__(self, flow, attempt, session=None, store=None):
        self.flow = flow
        self.attempt = attempt
        self.session = session
        self.store = store

    @property
    def user_code(self):
        return self.flow.user_code

    @property
    def verification_uri(self):
        return self.flow.verification_uri

    def wait_for_login(self, cancel=None, sleep=None, clock=time.monotonic):
        """Poll until the user signs in, then finish the chain.

        `cancel` is a threading.Event; setting it stops the poll loop.
        """
        with self.attempt.stage(LoginState.AWAITING_FIRST_PARTY):
            ms_token = msa_auth.poll_for_token(
                self.flow, session=self.session, cancel=cancel, sleep=sleep, clock=clock)
        return complete_login(ms_token, attempt=self.attempt,
                              session=self.session, store=self.store)


def start_device_login(session=None, store=None):
    attempt = LoginAttempt()
    with attempt.stage(LoginState.AWAITING_FIRST_PARTY):
        flow = msa_auth.start_device_flow(session=session)
    return DeviceLogin(flow, attempt, session=session, store=store)


# ---------------------------------------------------------------------------
# Browser redirect login
# ---------------------------------------------------------------------------

def browser_login(cancel=None, timeout=None, open_browser=webbrowser.open,
                  session=None, store=None, listener_factory=msa_auth.CallbackListener):
    """Sign in through the system browser and a local redirect listener."""
    attempt = LoginAttempt()
    state = secrets.token_urlsafe(32)
    verifier = msa_auth.generate_code_verifier()
    url = msa_auth.build_authorize_url(state, msa_auth.code_challenge(verifier))

    with attempt.stage(LoginState.AWAITING_FIRST_PARTY):
        with listener_factory(state=state) as listener:
            log.info("Opening browser for Microsoft sign-in")
            open_browser(url)
            code = listener.wait_for_code(cancel=cancel, timeout=timeout)
        ms_token = msa_auth.exchange_code(code, code_verifier=verifier, session=session)

    return complete_login(ms_token, attempt=attempt, session=session, store=store)


def login(method, on_device_code=None, cancel=None, session=None, store=None, **kwargs):
    """Log in with `method`. `on_device_code(flow)` is called to show the code."""
    if method is LoginMethod.DEVICE_CODE:
        device = start_device_login(session=session, store=store)
        if on_device_code is not None:
            on_device_code(device.flow)
        return device.wait_for_login(cancel=cancel, **kwargs)
    if method is LoginMethod.BROWSER:
        return browser_login(cancel=cancel, session=session, store=store, **kwargs)
    raise ValueError(f"unknown login method: {method!r}")


# ---------------------------------------------------------------------------
# Refresh / start-up
# ---------------------------------------------------------------------------

def refresh_login(record, session=None, store=None):
    """Refresh tokens for `record`. Ownership and profile are not re-checked."""
    attempt = LoginAttempt()
    store = store or default_store()

    with attempt.stage(LoginState.AWAITING_FIRST_PARTY):
        ms_token = msa_auth.refresh_token(record.ms_refresh_token, session=session)

    mc_token = _minecraft_token(ms_token["access_token"], attempt, session=session)
    refreshed = record.with_tokens(ms_token, mc_token, _utcnow())
    _persist(refreshed, attempt, store)
    log.info("Tokens refreshed for %s", refreshed.profile_name)
    return refreshed


def load_account(store=None):
    """Stored CredentialRecord, or None when nobody is logged in."""
    return (store or default_store()).load()


def save_account(record, store=None):
    (store or default_store()).save(record)


def ensure_account(session=None, store=None, now=None):
    """Start-up check: a usable record, or None if a full login is needed.

    Expired tokens (either clock) are refreshed; a failed refresh falls back
    to requiring login instead of raising.
    """
    store = store or default_store()
    try:
        record = store.load()
    except PersistenceFailure as e:
        log.warning("Could not load stored account, requiring login: %s", e)
        return None
    if record is None or not record.mc_access_token:
        return None
    if not record.needs_refresh(now):
        return record

    log.info("Stored tokens for %s expired, refreshing", record.profile_name)
    try:
        return refresh_login(record, session=session, store=store)
    except ChainStageError as e:
        log.warning("Failed to refresh token, requiring login: %s", e)
        return None
