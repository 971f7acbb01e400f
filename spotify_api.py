"""Minimal Spotify Web API client authenticated with a user's access token."""
import logging
from typing import Optional

import httpx

import config
from results import Err, Ok, Result

logger = logging.getLogger(__name__)


class SpotifyClient:
    def __init__(self, access_token: str, base_url: str = config.SPOTIFY_API_BASE_URL,
                 http_client: Optional[httpx.Client] = None):
        self.access_token = access_token
        self.base_url = base_url.rstrip('/')
        self.http_client = http_client or httpx.Client(timeout=config.HTTP_TIMEOUT)

    def get(self, path: str, params: Optional[dict] = None) -> Result[dict, str]:
        """GET a Web API resource and return the decoded JSON body."""
        try:
            response = self.http_client.get(
                f'{self.base_url}/{path.lstrip("/")}',
                params=params,
                headers={'Authorization': f'Bearer {self.access_token}'},
            )
        except httpx.HTTPError as e:
            logger.error(f"Spotify API request to {path} failed: {e}")
            return Err(f'Request failed: {e}')

        if not response.is_success:
            try:
                message = response.json()['error']['message']
            except (ValueError, KeyError, TypeError):
                message = response.text
            return Err(f'Spotify API error {response.status_code}: {message}')

        try:
            return Ok(response.json())
        except ValueError as e:
            return Err(f'Invalid JSON from Spotify: {e}')

    def get_resource(self, kind: str, resource_id: str) -> Result[dict, str]:
        """Fetch a single track, album, artist or playlist by id."""
        if not resource_id or not resource_id.strip():
            return Err(f'{kind.capitalize()} ID must not be empty')
        return self.get(f'{kind}s/{resource_id.strip()}')

    def search_tracks(self, query: str, limit: int = 10, market: Optional[str] = None) -> Result[dict, str]:
        if not query or not query.strip():
            return Err('Search query must not be empty')
        if not 1 <= limit <= 50:
            return Err('limit must be between 1 and 50')
        params = {'q': query, 'type': 'track', 'limit': limit}
        if market:
            params['market'] = market
        return self.get('search', params=params)
