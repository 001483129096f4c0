"""
Xbox Live delegation hops for the launcher auth chain.

  1. MSA access_token -> Xbox User Token   (user.auth.xboxlive.com)
  2. Xbox User Token  -> XSTS Token        (xsts.auth.xboxlive.com)

The XSTS token is scoped to the Minecraft services relying party and comes
with the user hash (uhs) the Minecraft login needs.
"""

import logging
from dataclasses import dataclass, field

from auth_errors import EmptyClaimsFailure, NonSuccessStatus, ProtocolDecodeFailure
from launcher_http import require, send_json

USER_AUTH = "https://user.auth.xboxlive.com/user/authenticate"
XSTS_AUTH = "https://xsts.auth.xboxlive.com/xsts/authorize"
XBL_RELYING_PARTY = "http://auth.xboxlive.com"
MINECRAFT_RELYING_PARTY = "rp://api.minecraftservices.com/"
SANDBOX_ID = "RETAIL"

# XErr codes returned by XSTS with a 401
XERR_HINTS = {
    "2148916227": "this account is banned from Xbox Live",
    "2148916233": "this Microsoft account has no Xbox profile; sign in at xbox.com first",
    "2148916235": "Xbox Live is not available in this account's country",
    "2148916236": "the account needs adult verification (South Korea)",
    "2148916237": "the account needs adult verification (South Korea)",
    "2148916238": "child account; an adult must add it to a Microsoft family",
}

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DelegationToken:
    token: str
    claims: list = field(default_factory=list)
    not_after: str = ""

    def user_hash(self):
        """User hash from the first xui claim. Empty claims break the chain."""
        if not self.claims:
            raise EmptyClaimsFailure("no user hash found in xsts response")
        uhs = self.claims[0].get("uhs", "")
        if not uhs:
            raise EmptyClaimsFailure("first xsts claim has no user hash")
        return uhs


def _delegation_token(stage, data):
    display_claims = data.get("DisplayClaims") or {}
    claims = display_claims.get("xui") if isinstance(display_claims, dict) else None
    if claims is not None and not isinstance(claims, list):
        raise ProtocolDecodeFailure(f"{stage}: DisplayClaims.xui is not a list")
    return DelegationToken(
        token=require(stage, data, "Token"),
        claims=claims or [],
        not_after=data.get("NotAfter", ""),
    )


def authenticate_user(ms_access_token, session=None):
    """Exchange an MSA access_token for an Xbox User Token."""
    data = send_json("xbox live auth", "POST", USER_AUTH, session=session, json={
        "Properties": {
            "AuthMethod": "RPS",
            "SiteName": "user.auth.xboxlive.com",
            "RpsTicket": f"d={ms_access_token}",
        },
        "RelyingParty": XBL_RELYING_PARTY,
        "TokenType": "JWT",
    }, headers={"x-xbl-contract-version": "1"})
    token = _delegation_token("xbox live auth", data)
    log.info("Xbox user token acquired (expires: %s)", token.not_after or "unknown")
    return token


def authorize_xsts(user_token, relying_party=MINECRAFT_RELYING_PARTY, session=None):
    """Exchange an Xbox User Token for an XSTS token for `relying_party`."""
    try:
        data = send_json("xsts auth", "POST", XSTS_AUTH, session=session, json={
            "Properties": {
                "SandboxId": SANDBOX_ID,
                "UserTokens": [user_token],
            },
            "RelyingParty": relying_party,
            "TokenType": "JWT",
        }, headers={"x-xbl-contract-version": "1"})
    except NonSuccessStatus as e:
        hint = XERR_HINTS.get(e.error_code or "")
        if hint:
            raise NonSuccessStatus(e.stage, e.status, f"{hint} (XErr {e.error_code}) {e.body}",
                                   error_code=e.error_code) from e
        raise
    token = _delegation_token("xsts auth", data)
    log.info("XSTS token acquired for %s", relying_party)
    return token


def build_xbl3_token(xsts_token, uhs):
    """Build an XBL3.0 identity string."""
    return f"XBL3.0 x={uhs};{xsts_token}"
