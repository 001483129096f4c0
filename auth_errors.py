"""
Error taxonomy for the Microsoft -> Xbox Live -> Minecraft sign-in chain.

Every stage failure is wrapped in ChainStageError before it reaches the
caller of launcher_auth, so the shell can tell which hop broke.
"""


class AuthError(Exception):
    """Base class for everything the auth chain raises."""


class NetworkFailure(AuthError):
    """Transport-level failure: DNS, refused connection, timeout."""


class NonSuccessStatus(AuthError):
    """An endpoint answered with a non-2xx status."""

    def __init__(self, stage, status, body, error_code=None):
        self.stage = stage
        self.status = status
        self.body = body
        self.error_code = error_code
        super().__init__(f"{stage} failed: HTTP {status} - Body: {body[:500]}")


class ProtocolDecodeFailure(AuthError):
    """Response could not be parsed, or lacks a required field."""


class EmptyClaimsFailure(AuthError):
    """XSTS response carried no xui claims, so there is no user hash."""


class OwnershipDenied(AuthError):
    """Authenticated fine, but the account has no Minecraft entitlement."""

    def __init__(self, message="user does not own Minecraft Java Edition"):
        super().__init__(message)


class PollContinuation(AuthError):
    """Device-code poll answered with a non-terminal state."""


class AuthorizationPending(PollContinuation):
    """User has not finished signing in yet."""


class SlowDown(PollContinuation):
    """Server wants the poll interval increased."""


class PollingTimeout(AuthError):
    """Device-code poll loop exceeded its absolute ceiling."""


class ListenerBindFailure(AuthError):
    """Local redirect listener could not bind its port."""


class LoginCancelled(AuthError):
    """Caller cancelled a login attempt while it was waiting."""


class CallbackCancelled(LoginCancelled):
    """Redirect listener stopped before a code arrived."""


class PersistenceFailure(AuthError):
    """Credential file could not be read or written."""


class ChainStageError(AuthError):
    """A chain stage failed. `stage` is the LoginState the attempt was in."""

    def __init__(self, stage, cause):
        self.stage = stage
        self.cause = cause
        label = getattr(stage, "value", stage)
        super().__init__(f"{label}: {cause}")

    @property
    def ownership_denied(self):
        return isinstance(self.cause, OwnershipDenied)
