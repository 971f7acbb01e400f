"""Shared fixtures: fake clock, in-memory store and a fake Spotify."""
from urllib.parse import parse_qsl

import httpx
import pytest

from kv_store import KVStoreError, MemoryKVStore
from oauth_server import create_app
from spotify_oauth import SpotifyOAuthClient

SPOTIFY_CLIENT_ID = 'test-spotify-client'


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FlakyKVStore(MemoryKVStore):
    """Memory store that can be switched into failing mode."""

    def __init__(self, clock):
        super().__init__(clock=clock)
        self.failing = False

    def _check(self):
        if self.failing:
            raise KVStoreError('backend unavailable')

    def get(self, key):
        self._check()
        return super().get(key)

    def put(self, key, value, ttl=None):
        self._check()
        super().put(key, value, ttl)

    def delete(self, key):
        self._check()
        super().delete(key)


class FakeSpotify:
    """Answers for accounts.spotify.com and api.spotify.com."""

    def __init__(self):
        self.token_requests = []
        self.api_requests = []
        self.token_status = 200
        self.token_payload = {
            'access_token': 'spotify-access',
            'refresh_token': 'spotify-refresh',
            'token_type': 'Bearer',
            'expires_in': 3600,
        }
        self.api_responses = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == 'accounts.spotify.com':
            self.token_requests.append(dict(parse_qsl(request.content.decode())))
            return httpx.Response(self.token_status, json=self.token_payload)

        self.api_requests.append(request)
        status, body = self.api_responses.get(
            request.url.path, (404, {'error': {'status': 404, 'message': 'Resource not found'}}),
        )
        return httpx.Response(status, json=body)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv(clock):
    return FlakyKVStore(clock)


@pytest.fixture
def fake_spotify():
    return FakeSpotify()


@pytest.fixture
def http_client(fake_spotify):
    with httpx.Client(transport=httpx.MockTransport(fake_spotify.handler)) as client:
        yield client


@pytest.fixture
def spotify_oauth(http_client):
    return SpotifyOAuthClient(SPOTIFY_CLIENT_ID, http_client=http_client)


@pytest.fixture
def app(kv, spotify_oauth, http_client, clock):
    app = create_app(
        kv_store=kv,
        spotify_oauth=spotify_oauth,
        api_http_client=http_client,
        cors_origin='https://example.com',
        clock=clock,
    )
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def bridge(app):
    return app.extensions['auth_bridge']
