"""Authorization bridge between MCP clients and Spotify.

The bridge is an OAuth 2.0 authorization server towards MCP clients and an
OAuth 2.0 client towards Spotify. One user authorization crosses five
independent HTTP requests::

    register -> authorize -> spotify/connect -> spotify/callback -> token

and every step hands state to the next only through the key/value store:

    AuthorizationRequest      keyed by the MCP client's ``state``
    ProviderRoundTripState    keyed by the Spotify-side ``state``
    BridgeAuthorizationCode   keyed by the code handed to the MCP client
    BridgeAccessToken         keyed by the bearer token handed to the MCP client

Each public method returns ``Ok``/``Err``; the Flask layer decides status
codes and bodies. Error descriptions are safe to show to the caller, store
details only go to the log.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Mapping, Optional

import httpx
from authlib.common.security import generate_token
from authlib.common.urls import add_params_to_uri
from pydantic import ValidationError

import config
from client_registry import (
    ClientRegistrationRequest,
    get_client,
    register_client,
    validate_redirect_uri,
)
from errors import BridgeError, ErrorKind
from results import Err, Ok, Result
from spotify_api import SpotifyClient
from spotify_oauth import SpotifyOAuthClient
from token_store import (
    AuthorizationRequest,
    BridgeAccessToken,
    BridgeAuthorizationCode,
    BridgeStores,
    ProviderRoundTripState,
    ProviderTokens,
    RegisteredClient,
)

logger = logging.getLogger(__name__)


def _short(value: Optional[str]) -> str:
    return f'{value[:8]}...' if value else '<none>'


@dataclass(frozen=True)
class ConsentRequest:
    """Everything the consent page needs."""

    client: RegisteredClient
    auth_request: AuthorizationRequest


@dataclass(frozen=True)
class AuthenticatedSession:
    token: str
    record: BridgeAccessToken


class AuthorizationBridge:
    def __init__(
        self,
        stores: BridgeStores,
        spotify_oauth: SpotifyOAuthClient,
        spotify_redirect_uri: str = config.SPOTIFY_REDIRECT_URI,
        scopes: Optional[List[str]] = None,
        api_http_client: Optional[httpx.Client] = None,
        access_token_ttl: int = config.ACCESS_TOKEN_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.stores = stores
        self.spotify_oauth = spotify_oauth
        self.spotify_redirect_uri = spotify_redirect_uri
        self.scopes = list(scopes if scopes is not None else config.SPOTIFY_SCOPES)
        self.api_http_client = api_http_client
        self.access_token_ttl = access_token_ttl
        self.clock = clock

    @property
    def scope(self) -> str:
        return ' '.join(self.scopes)

    # ------------------------------------------------------------------
    # Register: UNREGISTERED -> REGISTERED
    # ------------------------------------------------------------------

    def register(self, payload) -> Result[dict, BridgeError]:
        """Dynamic Client Registration. ``payload`` is the decoded JSON body."""
        if not isinstance(payload, dict):
            return Err(BridgeError(ErrorKind.INVALID_REQUEST, 'Request body must be a JSON object'))

        try:
            registration = ClientRegistrationRequest.model_validate(payload)
        except ValidationError as e:
            first = e.errors()[0]
            field = '.'.join(str(p) for p in first['loc'])
            return Err(BridgeError(ErrorKind.INVALID_CLIENT_METADATA, f'Invalid {field}: {first["msg"]}'))

        result = register_client(self.stores.clients, registration)
        if result.is_err():
            if result.error.kind == ErrorKind.SERVER_ERROR:
                return Err(BridgeError(ErrorKind.SERVER_ERROR, 'Failed to store client'))
            return result

        client = result.value
        response = {
            'client_id': client.client_id,
            'client_id_issued_at': int(client.created_at),
            'grant_types': registration.grant_types if registration.grant_types is not None
            else ['authorization_code'],
            'response_types': registration.response_types if registration.response_types is not None
            else ['code'],
            'redirect_uris': client.redirect_uris,
            'token_endpoint_auth_method': registration.token_endpoint_auth_method or 'none',
        }
        if client.client_name:
            response['client_name'] = client.client_name
        return Ok(response)

    # ------------------------------------------------------------------
    # Authorize: REGISTERED -> AUTHORIZING
    # ------------------------------------------------------------------

    def authorize(self, params: Mapping[str, str]) -> Result[ConsentRequest, BridgeError]:
        client_id = params.get('client_id')
        redirect_uri = params.get('redirect_uri')
        state = params.get('state')
        code_challenge = params.get('code_challenge')

        # Only S256; "plain" would be a PKCE downgrade.
        if (not client_id or not redirect_uri or not state or not code_challenge
                or params.get('code_challenge_method') != 'S256'):
            return Err(BridgeError(ErrorKind.INVALID_REQUEST, 'Missing or invalid parameters'))

        client_result = get_client(self.stores.clients, client_id)
        if client_result.is_err():
            logger.error(f"Client lookup failed during authorize: {client_result.error}")
            return Err(BridgeError(ErrorKind.SERVER_ERROR, 'Server error'))

        client = client_result.value
        if client is None:
            logger.warning(f"Authorize for unknown client {_short(client_id)}")
            return Err(BridgeError(ErrorKind.INVALID_CLIENT, 'Invalid client'))

        if validate_redirect_uri(client, redirect_uri).is_err():
            logger.warning(f"Unregistered redirect URI for client {client_id}: {redirect_uri}")
            return Err(BridgeError(ErrorKind.INVALID_REDIRECT_URI, 'Invalid redirect URI'))

        auth_request = AuthorizationRequest(
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            state=state,
        )
        stored = self.stores.auth_requests.put(state, auth_request)
        if stored.is_err():
            return Err(BridgeError(ErrorKind.SERVER_ERROR, 'Server error'))

        logger.info(f"Authorization request stored for client {client_id}")
        return Ok(ConsentRequest(client=client, auth_request=auth_request))

    @staticmethod
    def cancel_url(redirect_uri: str, state: str) -> str:
        """Where the consent page's cancel action sends the user. No store access."""
        return add_params_to_uri(redirect_uri, [('error', 'access_denied'), ('state', state)])

    # ------------------------------------------------------------------
    # Provider handoff: AUTHORIZING -> PROVIDER_ROUND_TRIP
    # ------------------------------------------------------------------

    def start_provider_handoff(self, state: Optional[str]) -> Result[str, BridgeError]:
        """Return the Spotify authorization URL to redirect the user agent to."""
        if not state:
            return Err(BridgeError(ErrorKind.INVALID_REQUEST, 'Missing state parameter'))

        lookup = self.stores.auth_requests.get(state)
        if lookup.is_err():
            return Err(BridgeError(ErrorKind.SERVER_ERROR, 'Server error'))
        auth_request = lookup.value
        if auth_request is None:
            return Err(BridgeError(ErrorKind.INVALID_STATE, 'Invalid or expired authorization request'))

        url_result = self.spotify_oauth.generate_authorization_url(self.spotify_redirect_uri, self.scopes)
        if url_result.is_err():
            logger.error(url_result.error)
            return Err(BridgeError(ErrorKind.SERVER_ERROR, 'Failed to generate authorization URL'))

        authorization = url_result.value
        round_trip = ProviderRoundTripState(
            code_verifier=authorization.flow.code_verifier,
            state=authorization.flow.state,
            redirect_uri=authorization.flow.redirect_uri,
            mcp_state=state,
            auth_request=auth_request,
        )
        stored = self.stores.provider_states.put(round_trip.state, round_trip)
        if stored.is_err():
            return Err(BridgeError(ErrorKind.SERVER_ERROR, 'Server error'))

        logger.info(f"Redirecting client {auth_request.client_id} to Spotify")
        return Ok(authorization.url)

    # ------------------------------------------------------------------
    # Provider callback: PROVIDER_ROUND_TRIP -> CODE_ISSUED
    # ------------------------------------------------------------------

    def complete_provider_callback(self, params: Mapping[str, str]) -> Result[str, BridgeError]:
        """Handle Spotify's redirect; return the URL to send the user back to the MCP client."""
        error = params.get('error')
        if error:
            logger.warning(f"Spotify returned authorization error: {error}")
            return Err(BridgeError(ErrorKind.ACCESS_DENIED, f'Spotify authorization error: {error}'))

        code = params.get('code')
        provider_state = params.get('state')
        if not code or not provider_state:
            return Err(BridgeError(ErrorKind.INVALID_REQUEST, 'Missing code or state parameter'))

        lookup = self.stores.provider_states.get(provider_state)
        if lookup.is_err():
            return Err(BridgeError(ErrorKind.SERVER_ERROR, 'Server error'))
        round_trip = lookup.value
        if round_trip is None:
            return Err(BridgeError(ErrorKind.INVALID_STATE, 'Invalid or expired state'))

        token_result = self.spotify_oauth.exchange_code_for_tokens(
            code, round_trip.code_verifier, round_trip.redirect_uri,
        )
        if token_result.is_err():
            # Round-trip records are left to expire so the callback can be retried.
            logger.error(f"Spotify token exchange failed: {token_result.error}")
            return Err(BridgeError(ErrorKind.SERVER_ERROR, f'Token exchange failed: {token_result.error}'))

        tokens = token_result.value
        auth_request = round_trip.auth_request
        bridge_code = generate_token(48)
        code_record = BridgeAuthorizationCode(
            client_id=auth_request.client_id,
            redirect_uri=auth_request.redirect_uri,
            code_challenge=auth_request.code_challenge,
            provider_tokens=ProviderTokens(
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                expires_at=self.clock() + tokens.expires_in,
            ),
        )
        stored = self.stores.auth_codes.put(bridge_code, code_record)
        if stored.is_err():
            return Err(BridgeError(ErrorKind.SERVER_ERROR, 'Server error'))

        for cleanup in (self.stores.auth_requests.delete(round_trip.mcp_state),
                        self.stores.provider_states.delete(provider_state)):
            if cleanup.is_err():
                logger.warning(f"Round-trip cleanup failed, record left to expire: {cleanup.error}")

        logger.info(f"Issued authorization code for client {auth_request.client_id}")
        return Ok(add_params_to_uri(auth_request.redirect_uri, [
            ('code', bridge_code),
            ('state', round_trip.mcp_state),
        ]))

    # ------------------------------------------------------------------
    # Token exchange: CODE_ISSUED -> TOKEN_ISSUED
    # ------------------------------------------------------------------

    def exchange_token(self, form: Mapping[str, str]) -> Result[dict, BridgeError]:
        grant_type = form.get('grant_type')
        code = form.get('code')
        code_verifier = form.get('code_verifier')
        client_id = form.get('client_id')
        redirect_uri = form.get('redirect_uri')

        if grant_type != 'authorization_code' or not code or not code_verifier or not client_id:
            return Err(BridgeError(ErrorKind.INVALID_REQUEST, 'Missing required parameters'))

        lookup = self.stores.auth_codes.get(code)
        if lookup.is_err():
            return Err(BridgeError(ErrorKind.SERVER_ERROR, 'Server error'))
        code_record = lookup.value
        if code_record is None:
            return Err(BridgeError(ErrorKind.INVALID_GRANT, 'Invalid authorization code'))

        # Do not reveal which of the two bound values differs.
        if code_record.client_id != client_id or code_record.redirect_uri != redirect_uri:
            logger.warning(f"Authorization code presented by mismatched client {_short(client_id)}")
            return Err(BridgeError(ErrorKind.INVALID_GRANT, 'Client mismatch'))

        client_result = get_client(self.stores.clients, client_id)
        if client_result.is_err():
            return Err(BridgeError(ErrorKind.SERVER_ERROR, 'Server error'))
        if client_result.value is None:
            return Err(BridgeError(ErrorKind.INVALID_CLIENT, 'Client not found'))

        # code_verifier was already checked by Spotify when it accepted its own
        # code during the callback; the bridge does not re-verify it here.

        # Single use: the code goes before anything is minted.
        deleted = self.stores.auth_codes.delete(code)
        if deleted.is_err():
            return Err(BridgeError(ErrorKind.SERVER_ERROR, 'Server error'))

        now = self.clock()
        access_token = generate_token(48)
        token_record = BridgeAccessToken(
            client_id=client_id,
            provider_tokens=code_record.provider_tokens,
            created_at=now,
            expires_at=now + self.access_token_ttl,
        )
        stored = self.stores.access_tokens.put(access_token, token_record, ttl=self.access_token_ttl)
        if stored.is_err():
            return Err(BridgeError(ErrorKind.SERVER_ERROR, 'Server error'))

        logger.info(f"Issued access token for client {client_id}")
        return Ok({
            'access_token': access_token,
            'token_type': 'Bearer',
            'expires_in': self.access_token_ttl,
            'scope': self.scope,
        })

    # ------------------------------------------------------------------
    # Resource access
    # ------------------------------------------------------------------

    def authenticate(self, token: Optional[str]) -> Result[AuthenticatedSession, BridgeError]:
        """Resolve a bearer token. Expired tokens are deleted on sight."""
        if not token:
            return Err(BridgeError(ErrorKind.INVALID_TOKEN, 'Invalid token'))

        lookup = self.stores.access_tokens.get(token)
        if lookup.is_err():
            return Err(BridgeError(ErrorKind.SERVER_ERROR, 'Server error'))
        record = lookup.value
        if record is None:
            return Err(BridgeError(ErrorKind.INVALID_TOKEN, 'Invalid token'))

        if self.clock() > record.expires_at:
            logger.info(f"Access token for client {record.client_id} expired")
            self.stores.access_tokens.delete(token)
            return Err(BridgeError(ErrorKind.INVALID_TOKEN, 'Token expired'))

        return Ok(AuthenticatedSession(token=token, record=record))

    def spotify_client_for(self, session: AuthenticatedSession) -> Result[SpotifyClient, BridgeError]:
        """Build a Spotify client from the session's tokens, refreshing them near expiry."""
        provider_tokens = session.record.provider_tokens
        now = self.clock()

        if now + config.TOKEN_REFRESH_BUFFER >= provider_tokens.expires_at:
            if not provider_tokens.refresh_token:
                return Err(BridgeError(ErrorKind.INVALID_TOKEN, 'Token refresh failed'))

            refreshed = self.spotify_oauth.refresh_access_token(provider_tokens.refresh_token)
            if refreshed.is_err():
                logger.warning(f"Spotify token refresh failed for client {session.record.client_id}: "
                               f"{refreshed.error}")
                return Err(BridgeError(ErrorKind.INVALID_TOKEN, 'Token refresh failed'))

            tokens = refreshed.value
            provider_tokens = ProviderTokens(
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token or provider_tokens.refresh_token,
                expires_at=now + tokens.expires_in,
            )
            updated = session.record.model_copy(update={'provider_tokens': provider_tokens})
            remaining = max(int(session.record.expires_at - now), 1)
            stored = self.stores.access_tokens.put(session.token, updated, ttl=remaining)
            if stored.is_err():
                logger.warning("Refreshed Spotify tokens could not be persisted; using them for this request only")
            logger.info(f"Refreshed Spotify tokens for client {session.record.client_id}")

        return Ok(SpotifyClient(provider_tokens.access_token, http_client=self.api_http_client))
