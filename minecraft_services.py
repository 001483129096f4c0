"""
Minecraft services calls: login with the XSTS token, entitlement check,
and profile lookup.
"""

import logging

from auth_errors import OwnershipDenied, ProtocolDecodeFailure
from launcher_http import require, send_json
from xbox_live import build_xbl3_token

MINECRAFT_AUTH_URL = "https://api.minecraftservices.com/authentication/login_with_xbox"
MINECRAFT_ENTITLEMENTS_URL = "https://api.minecraftservices.com/entitlements/mcstore"
MINECRAFT_PROFILE_URL = "https://api.minecraftservices.com/minecraft/profile"

# Either entitlement means the account owns Java Edition
OWNERSHIP_ITEMS = ("product_minecraft", "game_minecraft")

log = logging.getLogger(__name__)


def _bearer(access_token):
    return {"Authorization": f"Bearer {access_token}"}


def login_with_xbox(user_hash, xsts_token, session=None):
    """Exchange uhs + XSTS token for a Minecraft access token.

    Returns dict with keys: access_token, expires_in.
    """
    stage = "minecraft auth"
    data = send_json(stage, "POST", MINECRAFT_AUTH_URL, session=session, json={
        "identityToken": build_xbl3_token(xsts_token, user_hash),
    }, headers={"Content-Type": "application/json"})
    try:
        expires_in = int(data.get("expires_in", 86400))
    except (TypeError, ValueError) as e:
        raise ProtocolDecodeFailure(f"{stage}: bad expires_in: {e}") from e
    log.info("Minecraft access token acquired (expires in %ss)", expires_in)
    return {
        "access_token": require(stage, data, "access_token"),
        "expires_in": expires_in,
    }


def check_ownership(access_token, session=None):
    """True if the entitlements list has a Java Edition item."""
    data = send_json("ownership check", "GET", MINECRAFT_ENTITLEMENTS_URL,
                     session=session, headers=_bearer(access_token))
    items = data.get("items") or []
    names = {item.get("name") for item in items if isinstance(item, dict)}
    return any(name in names for name in OWNERSHIP_ITEMS)


def require_ownership(access_token, session=None):
    if not check_ownership(access_token, session=session):
        raise OwnershipDenied()


def get_profile(access_token, session=None):
    """Fetch the Minecraft profile: {id, name, skins, capes}."""
    stage = "profile"
    data = send_json(stage, "GET", MINECRAFT_PROFILE_URL,
                     session=session, headers=_bearer(access_token))
    return {
        "id": require(stage, data, "id"),
        "name": require(stage, data, "name"),
        "skins": data.get("skins", []),
        "capes": data.get("capes", []),
    }
