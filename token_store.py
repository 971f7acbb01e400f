"""Typed repositories over the shared key/value namespace.

Five record kinds live side by side in one KV store, told apart by key
prefix. Each repository owns its prefix and validates records with pydantic
when reading them back, so a corrupt or partially written value fails
closed instead of surfacing half-populated fields.
"""
import logging
from typing import Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError

import config
from errors import BridgeError, server_error
from kv_store import KVStore, KVStoreError
from results import Err, Ok, Result

logger = logging.getLogger(__name__)


class StoredRecord(BaseModel):
    model_config = ConfigDict(extra='forbid', frozen=True)


class RegisteredClient(StoredRecord):
    client_id: str
    client_name: Optional[str] = None
    redirect_uris: List[str]
    created_at: float


class AuthorizationRequest(StoredRecord):
    """Pending /authorize request, keyed by the MCP client's state."""

    client_id: str
    redirect_uri: str
    code_challenge: str
    state: str


class ProviderTokens(StoredRecord):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: float


class ProviderRoundTripState(StoredRecord):
    """Spotify round trip in progress, keyed by the Spotify-side state."""

    code_verifier: str
    state: str
    redirect_uri: str
    mcp_state: str
    auth_request: AuthorizationRequest


class BridgeAuthorizationCode(StoredRecord):
    client_id: str
    redirect_uri: str
    code_challenge: str
    provider_tokens: ProviderTokens


class BridgeAccessToken(StoredRecord):
    client_id: str
    provider_tokens: ProviderTokens
    created_at: float
    expires_at: float


R = TypeVar('R', bound=StoredRecord)


class RecordRepository(Generic[R]):
    """Point get/put/delete of one record kind under a key prefix."""

    prefix: str = ''
    model: Type[R]
    label: str = 'record'

    def __init__(self, kv: KVStore, ttl: Optional[int] = None):
        self.kv = kv
        self.ttl = ttl

    def key_for(self, key: str) -> str:
        return f'{self.prefix}{key}'

    def get(self, key: str) -> Result[Optional[R], BridgeError]:
        try:
            raw = self.kv.get(self.key_for(key))
        except KVStoreError as e:
            logger.error(f"Failed to read {self.label}: {e}")
            return Err(server_error(f'Failed to retrieve {self.label}: {e}'))
        if raw is None:
            return Ok(None)
        try:
            return Ok(self.model.model_validate_json(raw))
        except ValidationError as e:
            logger.error(f"Corrupt {self.label} under {self.prefix}{key[:8]}...: {e.error_count()} error(s)")
            return Err(server_error(f'Corrupt {self.label} data'))

    def put(self, key: str, record: R, ttl: Optional[int] = None) -> Result[None, BridgeError]:
        try:
            self.kv.put(self.key_for(key), record.model_dump_json(), ttl=ttl or self.ttl)
        except KVStoreError as e:
            logger.error(f"Failed to store {self.label}: {e}")
            return Err(server_error(f'Failed to store {self.label}: {e}'))
        return Ok(None)

    def delete(self, key: str) -> Result[None, BridgeError]:
        try:
            self.kv.delete(self.key_for(key))
        except KVStoreError as e:
            logger.error(f"Failed to delete {self.label}: {e}")
            return Err(server_error(f'Failed to delete {self.label}: {e}'))
        return Ok(None)


class ClientStore(RecordRepository[RegisteredClient]):
    prefix = 'client:'
    model = RegisteredClient
    label = 'client'


class AuthorizationRequestStore(RecordRepository[AuthorizationRequest]):
    prefix = 'auth_request:'
    model = AuthorizationRequest
    label = 'authorization request'


class ProviderStateStore(RecordRepository[ProviderRoundTripState]):
    prefix = 'spotify_state:'
    model = ProviderRoundTripState
    label = 'Spotify state'


class AuthorizationCodeStore(RecordRepository[BridgeAuthorizationCode]):
    prefix = 'auth_code:'
    model = BridgeAuthorizationCode
    label = 'authorization code'


class AccessTokenStore(RecordRepository[BridgeAccessToken]):
    prefix = 'mcp_token:'
    model = BridgeAccessToken
    label = 'access token'


class BridgeStores:
    """The five repositories, sharing one KV backend."""

    def __init__(self, kv: KVStore):
        self.kv = kv
        self.clients = ClientStore(kv, ttl=config.CLIENT_TTL)
        self.auth_requests = AuthorizationRequestStore(kv, ttl=config.AUTH_REQUEST_TTL)
        self.provider_states = ProviderStateStore(kv, ttl=config.PROVIDER_STATE_TTL)
        self.auth_codes = AuthorizationCodeStore(kv, ttl=config.AUTH_CODE_TTL)
        self.access_tokens = AccessTokenStore(kv, ttl=config.ACCESS_TOKEN_TTL)
