"""OAuth 2.0 client for the Spotify accounts service (Authorization Code + PKCE).

Built once at startup with the Spotify application's client id and shared
by every request. Nothing here retries; callers decide what to do with a
failure.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx
from authlib.common.security import generate_token
from authlib.common.urls import add_params_to_uri

import config
from pkce import generate_code_challenge, generate_code_verifier
from results import Err, Ok, Result

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    refresh_token: Optional[str]
    expires_in: int


@dataclass(frozen=True)
class ProviderFlowState:
    """What must be kept until Spotify redirects back."""

    code_verifier: str
    state: str
    redirect_uri: str


@dataclass(frozen=True)
class AuthorizationUrl:
    url: str
    flow: ProviderFlowState


class SpotifyOAuthClient:
    def __init__(
        self,
        client_id: str,
        authorize_url: str = config.SPOTIFY_AUTHORIZE_URL,
        token_url: str = config.SPOTIFY_TOKEN_URL,
        http_client: Optional[httpx.Client] = None,
    ):
        self.client_id = client_id
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.http_client = http_client or httpx.Client(timeout=config.HTTP_TIMEOUT)

    def generate_authorization_url(self, redirect_uri: str, scopes: List[str]) -> Result[AuthorizationUrl, str]:
        """Build the Spotify /authorize URL with a fresh PKCE pair and state."""
        try:
            code_verifier = generate_code_verifier()
            code_challenge = generate_code_challenge(code_verifier)
            # Independent of the MCP client's state.
            state = generate_token(32)
        except (OSError, NotImplementedError) as e:
            logger.error(f"Failed to generate PKCE parameters: {e}")
            return Err(f'Failed to generate authorization URL: {e}')

        url = add_params_to_uri(self.authorize_url, [
            ('client_id', self.client_id),
            ('response_type', 'code'),
            ('redirect_uri', redirect_uri),
            ('code_challenge_method', 'S256'),
            ('code_challenge', code_challenge),
            ('state', state),
            ('scope', ' '.join(scopes)),
        ])
        return Ok(AuthorizationUrl(
            url=url,
            flow=ProviderFlowState(code_verifier=code_verifier, state=state, redirect_uri=redirect_uri),
        ))

    def exchange_code_for_tokens(self, code: str, code_verifier: str, redirect_uri: str) -> Result[TokenResponse, str]:
        """Exchange a Spotify authorization code for tokens."""
        result = self._token_request({
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': redirect_uri,
            'client_id': self.client_id,
            'code_verifier': code_verifier,
        })
        if result.is_err():
            return Err(f'Failed to exchange code for tokens: {result.error}')
        return result

    def refresh_access_token(self, refresh_token: str) -> Result[TokenResponse, str]:
        """Refresh Spotify tokens. Keeps ``refresh_token`` if Spotify does not rotate it."""
        result = self._token_request({
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
            'client_id': self.client_id,
        })
        if result.is_err():
            return Err(f'Failed to refresh access token: {result.error}')

        tokens = result.value
        if not tokens.refresh_token:
            tokens = TokenResponse(
                access_token=tokens.access_token,
                refresh_token=refresh_token,
                expires_in=tokens.expires_in,
            )
        return Ok(tokens)

    def _token_request(self, form: dict) -> Result[TokenResponse, str]:
        try:
            response = self.http_client.post(self.token_url, data=form)
        except httpx.HTTPError as e:
            logger.error(f"Spotify token endpoint unreachable: {e}")
            return Err(f'request error: {e}')

        if not response.is_success:
            logger.warning(f"Spotify token endpoint returned {response.status_code} for {form['grant_type']}")
            return Err(f'{response.status_code} - {response.text}')

        try:
            data = response.json()
            return Ok(TokenResponse(
                access_token=data['access_token'],
                refresh_token=data.get('refresh_token'),
                expires_in=int(data.get('expires_in', 3600)),
            ))
        except (ValueError, KeyError, TypeError) as e:
            return Err(f'malformed token response: {e}')
