from typing import Optional


class LabConnectError(Exception):
    """Base error; `remediation` is a command the user can run to fix it."""

    def __init__(self, message: str, remediation: Optional[str] = None):
        super().__init__(message)
        self.remediation = remediation


class InvalidTokenFormat(LabConnectError):
    pass


class TokenNotFound(LabConnectError):
    pass


class TokenValidationError(LabConnectError):
    pass


class TokenExpired(TokenValidationError):
    pass


class AccessWindowNotStarted(TokenValidationError):
    pass


class AccessWindowEnded(TokenValidationError):
    pass


class MachineMismatch(TokenValidationError):
    pass


class FingerprintError(LabConnectError):
    pass


class MailboxUnavailable(LabConnectError):
    pass


class SecretNotFound(LabConnectError):
    pass


class SessionError(LabConnectError):
    pass


class ControlPlaneError(LabConnectError):
    pass


class WaitError(LabConnectError):
    pass


class ResourceErrorState(WaitError):
    pass


class WaitTimeout(WaitError):
    pass


class WaitCancelled(WaitError):
    pass
