"""
Shared HTTP helper for every hop of the sign-in chain.

All requests go through send(): one place for the per-call timeout, for
turning transport errors into NetworkFailure, and for keeping the response
body of non-2xx answers so the error says what the server complained about.
"""

import logging
import os

import requests

from auth_errors import NetworkFailure, NonSuccessStatus, ProtocolDecodeFailure

HTTP_TIMEOUT = float(os.environ.get("LAUNCHER_HTTP_TIMEOUT", "10"))
USER_AGENT = "Nix-Client-Launcher/1.0"

log = logging.getLogger(__name__)


def send(stage, method, url, session=None, headers=None, **kwargs):
    """Issue one request and return the raw response if it was 2xx.

    `stage` names the hop for error messages. `session` may be any object with
    a requests-compatible .request(); defaults to the requests module.
    Raises NetworkFailure or NonSuccessStatus.
    """
    http = session or requests
    all_headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
    if headers:
        all_headers.update(headers)

    log.debug("%s: %s %s", stage, method, url)
    try:
        resp = http.request(method, url, headers=all_headers,
                            timeout=HTTP_TIMEOUT, **kwargs)
    except requests.exceptions.RequestException as e:
        raise NetworkFailure(f"{stage}: {e}") from e

    if not 200 <= resp.status_code < 300:
        body = resp.text or ""
        log.debug("%s: HTTP %s from %s", stage, resp.status_code, url)
        raise NonSuccessStatus(stage, resp.status_code, body,
                               error_code=_error_code(resp))
    return resp


def send_json(stage, method, url, session=None, headers=None, **kwargs):
    """Like send(), but decode the body as a JSON object."""
    resp = send(stage, method, url, session=session, headers=headers, **kwargs)
    return decode_json(stage, resp)


def decode_json(stage, resp):
    try:
        data = resp.json()
    except ValueError as e:
        raise ProtocolDecodeFailure(f"{stage}: response is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolDecodeFailure(f"{stage}: expected a JSON object, got {type(data).__name__}")
    return data


def require(stage, data, key):
    """Fetch a mandatory field from a decoded response."""
    value = data.get(key)
    if value in (None, ""):
        raise ProtocolDecodeFailure(f"{stage}: response missing '{key}'")
    return value


def _error_code(resp):
    """Pull an OAuth `error` or Xbox `XErr` code out of an error body, if any."""
    try:
        data = resp.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    code = data.get("error")
    if code is None and "XErr" in data:
        code = str(data["XErr"])
    return code
