"""
Credential store: one persisted sign-in record per user.

The record lives at <per-user config dir>/accounts.json. It is rewritten in
full on every successful login or refresh and read once at start-up. A
missing file means "not logged in" and is not an error.

Set LAUNCHER_ENCRYPTION_KEY (a Fernet key) to keep the token fields
encrypted at rest.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta, timezone

import click
from cryptography.fernet import Fernet, InvalidToken

from auth_errors import PersistenceFailure

APP_NAME = "NixClientLauncher"
ACCOUNTS_FILENAME = "accounts.json"
CONFIG_DIR = os.environ.get("LAUNCHER_CONFIG_DIR") or click.get_app_dir(APP_NAME)
ENCRYPTION_KEY = os.environ.get("LAUNCHER_ENCRYPTION_KEY", "")

# Treat a token as expired slightly early so it doesn't die mid-request
EXPIRY_SKEW = timedelta(seconds=60)

TOKEN_FIELDS = ("ms_access_token", "ms_refresh_token", "mc_access_token")
TIMESTAMP_FIELDS = ("ms_expiry", "mc_expiry")

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CredentialRecord:
    ms_access_token: str
    ms_refresh_token: str
    ms_expiry: datetime
    mc_access_token: str
    mc_expiry: datetime
    profile_id: str
    profile_name: str

    def ms_expired(self, now=None):
        now = now or datetime.now(timezone.utc)
        return now + EXPIRY_SKEW >= self.ms_expiry

    def mc_expired(self, now=None):
        now = now or datetime.now(timezone.utc)
        return now + EXPIRY_SKEW >= self.mc_expiry

    def needs_refresh(self, now=None):
        """Either clock running out is enough; they expire independently."""
        return self.mc_expired(now) or self.ms_expired(now)

    def with_tokens(self, ms_token, mc_token, issued_at):
        """Return a copy with token/expiry fields replaced and profile kept."""
        return replace(
            self,
            ms_access_token=ms_token["access_token"],
            ms_refresh_token=ms_token["refresh_token"],
            ms_expiry=issued_at + timedelta(seconds=ms_token["expires_in"]),
            mc_access_token=mc_token["access_token"],
            mc_expiry=issued_at + timedelta(seconds=mc_token["expires_in"]),
        )


class AccountStore:
    """Reads and writes the single credential record at `path`."""

    def __init__(self, path=None, encryption_key=None):
        self.path = path or os.path.join(CONFIG_DIR, ACCOUNTS_FILENAME)
        key = ENCRYPTION_KEY if encryption_key is None else encryption_key
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key) if key else None

    def load(self):
        """Return the stored CredentialRecord, or None if nobody is logged in."""
        if not os.path.isfile(self.path):
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                doc = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceFailure(f"could not read {self.path}: {e}") from e

        if not isinstance(doc, dict):
            raise PersistenceFailure(f"{self.path} does not hold a credential record")
        encrypted = doc.pop("encrypted", False)
        try:
            if encrypted:
                for name in TOKEN_FIELDS:
                    doc[name] = self._decrypt(doc[name])
            for name in TIMESTAMP_FIELDS:
                doc[name] = _parse_timestamp(doc[name])
            return CredentialRecord(**doc)
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceFailure(f"corrupt credential record in {self.path}: {e}") from e

    def save(self, record):
        """Overwrite the credential file with `record`."""
        doc = asdict(record)
        for name in TIMESTAMP_FIELDS:
            doc[name] = doc[name].isoformat()
        if self._fernet:
            for name in TOKEN_FIELDS:
                doc[name] = self._fernet.encrypt(doc[name].encode()).decode("ascii")
            doc["encrypted"] = True

        tmp_path = self.path + ".tmp"
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(doc, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise PersistenceFailure(f"could not write {self.path}: {e}") from e
        log.info("Saved credentials for %s to %s", record.profile_name, self.path)

    def _decrypt(self, value):
        if not self._fernet:
            raise PersistenceFailure(
                f"{self.path} is encrypted but LAUNCHER_ENCRYPTION_KEY is not set")
        if not isinstance(value, str):
            raise PersistenceFailure(f"corrupt encrypted field in {self.path}")
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken as e:
            raise PersistenceFailure(
                f"{self.path} could not be decrypted with the configured key") from e


def _parse_timestamp(value):
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def default_store():
    return AccountStore()
