"""Error taxonomy shared by the bridge components."""
from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    """Failure categories; values double as OAuth error codes where one exists."""

    INVALID_REQUEST = 'invalid_request'
    INVALID_CLIENT_METADATA = 'invalid_client_metadata'
    INVALID_CLIENT = 'invalid_client'
    INVALID_REDIRECT_URI = 'invalid_redirect_uri'
    INVALID_STATE = 'invalid_state'
    INVALID_GRANT = 'invalid_grant'
    ACCESS_DENIED = 'access_denied'
    INVALID_TOKEN = 'invalid_token'
    SERVER_ERROR = 'server_error'


@dataclass(frozen=True)
class BridgeError:
    kind: ErrorKind
    description: str

    def __str__(self):
        return f'{self.kind.value}: {self.description}'


def server_error(description: str) -> BridgeError:
    return BridgeError(ErrorKind.SERVER_ERROR, description)
