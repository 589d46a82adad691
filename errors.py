from fastapi import status


class WatchPartyError(Exception):
    """Base for every typed failure surfaced by the watch party subsystem."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.__class__.__name__)
        self.detail = detail or self.__class__.__name__

    @property
    def name(self) -> str:
        return self.__class__.__name__


class NotFound(WatchPartyError):
    status_code = status.HTTP_404_NOT_FOUND


class PartyFull(WatchPartyError):
    status_code = status.HTTP_400_BAD_REQUEST


class PartyEnded(WatchPartyError):
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidTransition(WatchPartyError):
    status_code = status.HTTP_400_BAD_REQUEST


class MessageTooLong(WatchPartyError):
    status_code = status.HTTP_400_BAD_REQUEST


class EmptyMessage(WatchPartyError):
    status_code = status.HTTP_400_BAD_REQUEST


class NotHost(WatchPartyError):
    status_code = status.HTTP_403_FORBIDDEN


class AuthenticationRequired(WatchPartyError):
    status_code = status.HTTP_401_UNAUTHORIZED


class BackendUnavailable(WatchPartyError):
    """Storage or network failure; callers may retry."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
