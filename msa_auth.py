"""
Microsoft account (MSA) sign-in: first hop of the launcher auth chain.

Two ways in, both ending in the same token dict
{access_token, refresh_token, expires_in}:

  * Device code: show the user a short code, poll the token endpoint until
    they enter it at microsoft.com/link (or 15 minutes pass).
  * Browser redirect: open login.live.com, catch the redirect on a local
    listener at http://localhost:53682/callback, exchange the code (PKCE).

Plus refresh_token() to trade a stored refresh token for a new set.
"""

import base64
import enum
import hashlib
import logging
import queue
import secrets
import threading
import time
import urllib.parse
from dataclasses import dataclass

from flask import Flask, Response, request
from werkzeug.serving import make_server

from auth_errors import (
    AuthError,
    AuthorizationPending,
    CallbackCancelled,
    ListenerBindFailure,
    LoginCancelled,
    NonSuccessStatus,
    PollingTimeout,
    ProtocolDecodeFailure,
    SlowDown,
)
from launcher_http import require, send_json

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Endpoints / client registration
# ---------------------------------------------------------------------------

CLIENT_ID = "da544862-adab-4f3f-b5a2-2ea14cebeb26"
SCOPE = "XboxLive.signin offline_access"

# Device code variant (also used for refresh)
DEVICE_CODE_URL = "https://login.microsoftonline.com/consumers/oauth2/v2.0/devicecode"
TOKEN_URL = "https://login.microsoftonline.com/consumers/oauth2/v2.0/token"
DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"

# Browser redirect variant
OAUTH_AUTHORIZE = "https://login.live.com/oauth20_authorize.srf"
OAUTH_TOKEN = "https://login.live.com/oauth20_token.srf"
REDIRECT_HOST = "127.0.0.1"
REDIRECT_PORT = 53682
REDIRECT_PATH = "/callback"
REDIRECT_URI = f"http://localhost:{REDIRECT_PORT}{REDIRECT_PATH}"

DEFAULT_POLL_INTERVAL = 5
SLOW_DOWN_STEP = 5
DEVICE_FLOW_CEILING = 15 * 60
DEFAULT_EXPIRES_IN = 3600

SUCCESS_PAGE = (
    "<!DOCTYPE html><html><head><title>Nix Client Launcher</title></head>"
    "<body style=\"font-family:sans-serif;text-align:center;margin-top:15%\">"
    "<h2>Login successful!</h2><p>You can close this window.</p></body></html>"
)


# ---------------------------------------------------------------------------
# Token endpoint helpers
# ---------------------------------------------------------------------------

def _token_request(stage, url, params, session=None):
    data = send_json(stage, "POST", url, session=session, data=params, headers={
        "Content-Type": "application/x-www-form-urlencoded",
    })
    return _token_response(stage, data)


def _token_response(stage, data):
    """Normalize a token endpoint answer to {access_token, refresh_token, expires_in}."""
    try:
        expires_in = int(data.get("expires_in", DEFAULT_EXPIRES_IN))
    except (TypeError, ValueError) as e:
        raise ProtocolDecodeFailure(f"{stage}: bad expires_in: {e}") from e
    return {
        "access_token": require(stage, data, "access_token"),
        "refresh_token": data.get("refresh_token", ""),
        "expires_in": expires_in,
    }


def exchange_code(code, code_verifier=None, session=None):
    """Exchange an authorization code caught by the redirect listener."""
    params = {
        "client_id": CLIENT_ID,
        "code": code,
        "grant_type": "authorization_code",
        "redirect_uri": REDIRECT_URI,
    }
    if code_verifier:
        params["code_verifier"] = code_verifier
    token = _token_request("microsoft token exchange", OAUTH_TOKEN, params, session=session)
    log.info("Exchanged authorization code for MSA token")
    return token


def refresh_token(stored_refresh_token, session=None):
    """Trade a stored refresh token for a fresh token set.

    Microsoft usually rotates refresh tokens; when it doesn't, the old one
    stays valid and is carried over.
    """
    token = _token_request("microsoft token refresh", TOKEN_URL, {
        "client_id": CLIENT_ID,
        "scope": SCOPE,
        "grant_type": "refresh_token",
        "refresh_token": stored_refresh_token,
    }, session=session)
    if not token["refresh_token"]:
        token["refresh_token"] = stored_refresh_token
    log.info("MSA token refreshed")
    return token


# ---------------------------------------------------------------------------
# Device code flow
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DeviceFlowSession:
    device_code: str
    user_code: str
    verification_uri: str
    interval: int = DEFAULT_POLL_INTERVAL
    expires_in: int = DEVICE_FLOW_CEILING
    message: str = ""


def start_device_flow(session=None):
    """Ask for a user code. The caller shows user_code + verification_uri."""
    stage = "microsoft device code"
    data = send_json(stage, "POST", DEVICE_CODE_URL, session=session, data={
        "client_id": CLIENT_ID,
        "scope": SCOPE,
    }, headers={"Content-Type": "application/x-www-form-urlencoded"})

    try:
        interval = int(data.get("interval") or DEFAULT_POLL_INTERVAL)
        expires_in = int(data.get("expires_in") or DEVICE_FLOW_CEILING)
    except (TypeError, ValueError) as e:
        raise ProtocolDecodeFailure(f"{stage}: bad interval/expires_in: {e}") from e

    flow = DeviceFlowSession(
        device_code=require(stage, data, "device_code"),
        user_code=require(stage, data, "user_code"),
        verification_uri=data.get("verification_uri") or require(stage, data, "verification_url"),
        interval=interval,
        expires_in=expires_in,
        message=data.get("message", ""),
    )
    log.info("Device code flow started (interval=%ss, expires_in=%ss)",
             flow.interval, flow.expires_in)
    return flow


def request_device_token(flow, session=None):
    """One poll of the token endpoint.

    Returns the token dict on success. Raises AuthorizationPending or
    SlowDown for the two non-terminal answers, NonSuccessStatus for any
    other error code.
    """
    stage = "microsoft device token"
    try:
        data = send_json(stage, "POST", TOKEN_URL, session=session, data={
            "client_id": CLIENT_ID,
            "grant_type": DEVICE_CODE_GRANT,
            "device_code": flow.device_code,
        }, headers={"Content-Type": "application/x-www-form-urlencoded"})
    except NonSuccessStatus as e:
        if e.error_code == "authorization_pending":
            raise AuthorizationPending("waiting for the user to sign in") from e
        if e.error_code == "slow_down":
            raise SlowDown("server asked to poll less often") from e
        raise
    return _token_response(stage, data)


class PollState(enum.Enum):
    WAITING = "waiting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class DevicePoller:
    """Poll loop for one DeviceFlowSession, as an explicit state machine.

    WAITING -> SUCCEEDED  token payload received
            -> FAILED     terminal error code or transport failure
            -> TIMED_OUT  ceiling reached (independent of server expires_in)
            -> CANCELLED  `cancel` event set by the caller

    `sleep` and `clock` are injectable so the loop can run on fake time.
    """

    def __init__(self, flow, session=None, cancel=None, sleep=None,
                 clock=time.monotonic, ceiling=DEVICE_FLOW_CEILING):
        self.flow = flow
        self.session = session
        self.cancel = cancel
        self.interval = flow.interval or DEFAULT_POLL_INTERVAL
        self.ceiling = ceiling
        self.state = PollState.WAITING
        self.polls = 0
        self.token = None
        self.error = None
        self._sleep = sleep
        self._clock = clock

    def run(self):
        """Block until the loop leaves WAITING. Returns the token or raises."""
        deadline = self._clock() + self.ceiling
        while self.state is PollState.WAITING:
            self._step(deadline)
        if self.state is PollState.SUCCEEDED:
            return self.token
        raise self.error

    def _step(self, deadline):
        if self._wait(self.interval):
            self._finish(PollState.CANCELLED, LoginCancelled("device login cancelled"))
            return
        if self._clock() > deadline:
            self._finish(PollState.TIMED_OUT, PollingTimeout(
                f"no sign-in within {self.ceiling // 60} minutes"))
            return

        self.polls += 1
        try:
            self.token = request_device_token(self.flow, session=self.session)
        except AuthorizationPending:
            log.debug("Device poll %d: authorization pending", self.polls)
            return
        except SlowDown:
            self.interval += SLOW_DOWN_STEP
            log.info("Device poll %d: slow_down, interval now %ss", self.polls, self.interval)
            return
        except AuthError as e:
            self._finish(PollState.FAILED, e)
            return
        self._finish(PollState.SUCCEEDED)

    def _wait(self, seconds):
        """Sleep for one interval. Returns True if cancellation was requested."""
        if self._sleep is not None:
            self._sleep(seconds)
            return self.cancel is not None and self.cancel.is_set()
        if self.cancel is not None:
            return self.cancel.wait(seconds)
        time.sleep(seconds)
        return False

    def _finish(self, state, error=None):
        self.state = state
        self.error = error
        log.info("Device poll finished: %s after %d poll(s)", state.value, self.polls)


def poll_for_token(flow, session=None, cancel=None, sleep=None, clock=time.monotonic):
    """Run the device code poll loop to completion."""
    return DevicePoller(flow, session=session, cancel=cancel,
                        sleep=sleep, clock=clock).run()


# ---------------------------------------------------------------------------
# Browser redirect flow
# ---------------------------------------------------------------------------

def b64url(data):
    """Base64url encode without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_code_verifier():
    """PKCE code verifier: 128 chars from the unreserved URL alphabet."""
    return secrets.token_urlsafe(96)[:128]


def code_challenge(verifier):
    """PKCE S256 challenge for `verifier`."""
    return b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def build_authorize_url(state, challenge):
    """Build the login.live.com authorize URL the browser is sent to."""
    params = {
        "client_id": CLIENT_ID,
        "response_type": "code",
        "redirect_uri": REDIRECT_URI,
        "scope": SCOPE,
        "state": state,
        "code_challenge": challenge,
        "code_challenge_method": "S256",
    }
    return OAUTH_AUTHORIZE + "?" + urllib.parse.urlencode(params)


class CallbackListener:
    """Local HTTP listener that catches exactly one OAuth redirect.

    Owned by a single login attempt:

        with CallbackListener(state=state) as listener:
            webbrowser.open(url)
            code = listener.wait_for_code(cancel)

    The server is bound in __enter__ and shut down in __exit__.
    """

    def __init__(self, state=None, host=REDIRECT_HOST, port=REDIRECT_PORT, path=REDIRECT_PATH):
        self.expected_state = state
        self.host = host
        self.port = port
        self.path = path
        self._results = queue.Queue(maxsize=1)
        self._server = None
        self._thread = None
        self.app = Flask(__name__)
        self.app.add_url_rule(path, "callback", self._handle_callback)

    def _handle_callback(self):
        error = request.args.get("error")
        code = request.args.get("code", "")
        if not error and not code:
            return Response("No code found", status=400, mimetype="text/plain")
        if self.expected_state and request.args.get("state") != self.expected_state:
            log.warning("Redirect listener: state mismatch, ignoring callback")
            return Response("Invalid or expired state", status=400, mimetype="text/plain")

        if error:
            desc = request.args.get("error_description", error)
            self._deliver(("error", desc))
            return Response(f"Login failed: {desc}", status=400, mimetype="text/plain")
        if not self._deliver(("code", code)):
            return Response("Login already completed", status=409, mimetype="text/plain")
        return Response(SUCCESS_PAGE, mimetype="text/html")

    def _deliver(self, item):
        try:
            self._results.put_nowait(item)
            return True
        except queue.Full:
            return False

    def __enter__(self):
        try:
            self._server = make_server(self.host, self.port, self.app, threaded=True)
        except (OSError, SystemExit) as e:
            # werkzeug exits instead of raising when the port is taken
            raise ListenerBindFailure(
                f"could not listen on {self.host}:{self.port}: {e}") from None
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="msa-redirect-listener", daemon=True)
        self._thread.start()
        log.info("Redirect listener up on http://%s:%s%s", self.host, self.port, self.path)
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self):
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        self._thread.join(timeout=5)
        self._server = None
        log.info("Redirect listener stopped")

    def wait_for_code(self, cancel=None, timeout=None, tick=0.25):
        """Block until the redirect arrives, `cancel` is set, or `timeout` passes."""
        deadline = time.monotonic() + timeout if timeout else None
        while True:
            if cancel is not None and cancel.is_set():
                raise CallbackCancelled("login cancelled before the browser redirected back")
            if deadline is not None and time.monotonic() >= deadline:
                raise CallbackCancelled(f"no redirect received within {timeout}s")
            try:
                kind, value = self._results.get(timeout=tick)
            except queue.Empty:
                continue
            if kind == "error":
                raise ProtocolDecodeFailure(f"sign-in was rejected: {value}")
            return value
