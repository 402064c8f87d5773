from __future__ import annotations


class ChannelSyncError(Exception):
    """Base class for errors surfaced to the user by the sync engine."""


class PermissionDenied(ChannelSyncError):
    """Raised when the capability gate or the backend refuses an action.

    ``authoritative`` is true when the refusal came from the backend after the
    local gate had already allowed the call.
    """

    def __init__(self, action: str, *, role: str | None = None, authoritative: bool = False) -> None:
        self.action = action
        self.role = role
        self.authoritative = authoritative
        if authoritative:
            message = f"server refused {action}"
        elif role is not None:
            message = f"role {role} may not {action}"
        else:
            message = f"not permitted: {action}"
        super().__init__(message)


class AlreadyExists(ChannelSyncError):
    pass


class NotOwner(ChannelSyncError):
    pass


class SendFailed(ChannelSyncError):
    def __init__(self, channel_id: str, content: str, cause: BaseException | None = None) -> None:
        self.channel_id = channel_id
        self.content = content
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"failed to send message to {channel_id}{detail}")


class BackendError(ChannelSyncError):
    def __init__(self, status: int, message: str = "") -> None:
        self.status = status
        super().__init__(f"backend returned {status}: {message}" if message else f"backend returned {status}")


class MalformedEvent(ValueError):
    """A change-feed payload that cannot be mapped onto a typed event."""
