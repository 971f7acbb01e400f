"""Tests for the bearer-protected MCP endpoint."""
import json
from urllib.parse import parse_qs, urlsplit

import pytest

import config
from token_store import BridgeAccessToken, ProviderTokens


def issue_token(bridge, clock, token='mcp-token', expires_in=3600, provider_expires_in=3600,
                refresh_token='spotify-refresh'):
    now = clock()
    record = BridgeAccessToken(
        client_id='client-1',
        provider_tokens=ProviderTokens(
            access_token='spotify-access',
            refresh_token=refresh_token,
            expires_at=now + provider_expires_in,
        ),
        created_at=now,
        expires_at=now + expires_in,
    )
    bridge.stores.access_tokens.put(token, record, ttl=3600)
    return token


def rpc(client, method, params=None, token='mcp-token', request_id=1):
    body = {'jsonrpc': '2.0', 'id': request_id, 'method': method}
    if params is not None:
        body['params'] = params
    return client.post('/mcp', json=body, headers={'Authorization': f'Bearer {token}'})


def tool_text(response):
    return response.get_json()['result']['content'][0]['text']


class TestAuthentication:
    def test_missing_authorization_header(self, client):
        response = client.post('/mcp', json={'jsonrpc': '2.0', 'id': 1, 'method': 'ping'})
        assert response.status_code == 401
        assert response.get_data(as_text=True) == 'Unauthorized'
        assert 'resource_metadata=' in response.headers['WWW-Authenticate']

    def test_non_bearer_scheme(self, client):
        response = client.post('/mcp', json={}, headers={'Authorization': 'Basic dXNlcjpwYXNz'})
        assert response.status_code == 401
        assert response.get_data(as_text=True) == 'Invalid token'

    def test_unknown_token(self, client):
        response = rpc(client, 'ping', token='never-issued')
        assert response.status_code == 401
        assert response.get_data(as_text=True) == 'Invalid token'
        assert 'error="invalid_token"' in response.headers['WWW-Authenticate']

    def test_expired_token_is_deleted(self, client, bridge, clock, kv):
        issue_token(bridge, clock, expires_in=-10)
        response = rpc(client, 'ping')
        assert response.status_code == 401
        assert response.get_data(as_text=True) == 'Token expired'
        assert 'mcp_token:mcp-token' not in kv

    def test_store_failure(self, client, bridge, clock, kv):
        issue_token(bridge, clock)
        kv.failing = True
        response = rpc(client, 'ping')
        assert response.status_code == 500
        assert response.get_data(as_text=True) == 'Server error'
        assert response.mimetype == 'text/plain'

    def test_token_from_full_flow_is_accepted(self, client, fake_spotify):
        client_id = client.post('/auth/register', json={
            'redirect_uris': ['https://example.com/callback'],
        }).get_json()['client_id']
        client.get('/auth/authorize', query_string={
            'client_id': client_id, 'redirect_uri': 'https://example.com/callback', 'state': 's1',
            'code_challenge': 'c', 'code_challenge_method': 'S256',
        })
        location = client.get('/auth/spotify/connect', query_string={'state': 's1'}).headers['Location']
        spotify_state = parse_qs(urlsplit(location).query)['state'][0]
        location = client.get('/auth/spotify/callback', query_string={
            'code': 'spotify-code', 'state': spotify_state,
        }).headers['Location']
        code = parse_qs(urlsplit(location).query)['code'][0]
        token = client.post('/auth/token', data={
            'grant_type': 'authorization_code', 'code': code, 'code_verifier': 'v',
            'client_id': client_id, 'redirect_uri': 'https://example.com/callback',
        }).get_json()['access_token']

        response = rpc(client, 'ping', token=token)
        assert response.status_code == 200
        assert response.get_json() == {'jsonrpc': '2.0', 'id': 1, 'result': {}}


class TestProviderRefresh:
    def test_tokens_near_expiry_are_refreshed_and_persisted(self, client, bridge, clock, fake_spotify):
        issue_token(bridge, clock, provider_expires_in=60)
        fake_spotify.token_payload = {'access_token': 'refreshed-access', 'expires_in': 3600}
        fake_spotify.api_responses['/v1/artists/a1'] = (200, {'id': 'a1', 'name': 'Artist'})

        response = rpc(client, 'tools/call', {'name': 'get-artist', 'arguments': {'artistId': 'a1'}})
        assert response.status_code == 200
        assert fake_spotify.token_requests[-1]['grant_type'] == 'refresh_token'
        assert fake_spotify.token_requests[-1]['refresh_token'] == 'spotify-refresh'
        assert fake_spotify.api_requests[-1].headers['Authorization'] == 'Bearer refreshed-access'

        stored = bridge.stores.access_tokens.get('mcp-token').value
        assert stored.provider_tokens.access_token == 'refreshed-access'
        assert stored.provider_tokens.refresh_token == 'spotify-refresh'
        assert stored.provider_tokens.expires_at == clock() + 3600

    def test_fresh_tokens_are_not_refreshed(self, client, bridge, clock, fake_spotify):
        issue_token(bridge, clock, provider_expires_in=config.TOKEN_REFRESH_BUFFER + 60)
        assert rpc(client, 'ping').status_code == 200
        assert fake_spotify.token_requests == []

    def test_refresh_failure(self, client, bridge, clock, fake_spotify):
        issue_token(bridge, clock, provider_expires_in=60)
        fake_spotify.token_status = 400
        fake_spotify.token_payload = {'error': 'invalid_grant'}
        response = rpc(client, 'ping')
        assert response.status_code == 401
        assert response.get_data(as_text=True) == 'Token refresh failed'

    def test_no_refresh_token(self, client, bridge, clock, fake_spotify):
        issue_token(bridge, clock, provider_expires_in=0, refresh_token=None)
        response = rpc(client, 'ping')
        assert response.status_code == 401
        assert fake_spotify.token_requests == []


class TestJsonRpc:
    @pytest.fixture(autouse=True)
    def token(self, bridge, clock):
        return issue_token(bridge, clock)

    def test_initialize(self, client):
        result = rpc(client, 'initialize', {'protocolVersion': '2024-11-05'}).get_json()['result']
        assert result['protocolVersion'] == config.MCP_PROTOCOL_VERSION
        assert result['serverInfo']['name'] == config.MCP_SERVER_NAME
        assert 'tools' in result['capabilities']

    def test_tools_list(self, client):
        tools = rpc(client, 'tools/list').get_json()['result']['tools']
        assert {tool['name'] for tool in tools} == {
            'get-track', 'get-album', 'get-artist', 'get-playlist', 'search-tracks',
        }
        assert all('inputSchema' in tool for tool in tools)

    def test_get_track(self, client, fake_spotify):
        fake_spotify.api_responses['/v1/tracks/t1'] = (200, {
            'id': 't1',
            'name': 'One More Time',
            'artists': [{'name': 'Daft Punk'}],
            'album': {'name': 'Discovery'},
            'duration_ms': 320357,
            'external_urls': {'spotify': 'https://open.spotify.com/track/t1'},
        })
        response = rpc(client, 'tools/call', {'name': 'get-track', 'arguments': {'trackId': 't1'}})
        track = json.loads(tool_text(response))
        assert track['name'] == 'One More Time'
        assert track['artists'] == 'Daft Punk'
        assert track['album'] == 'Discovery'
        assert fake_spotify.api_requests[0].headers['Authorization'] == 'Bearer spotify-access'

    def test_search_tracks(self, client, fake_spotify):
        fake_spotify.api_responses['/v1/search'] = (200, {'tracks': {'items': [
            {'id': 't1', 'name': 'Song A', 'artists': [{'name': 'X'}]},
            {'id': 't2', 'name': 'Song B', 'artists': [{'name': 'Y'}, {'name': 'Z'}]},
        ]}})
        response = rpc(client, 'tools/call', {'name': 'search-tracks', 'arguments': {'query': 'song', 'limit': 2}})
        tracks = json.loads(tool_text(response))
        assert [t['id'] for t in tracks] == ['t1', 't2']
        assert tracks[1]['artists'] == 'Y, Z'

    def test_tool_error_is_reported_in_result(self, client):
        response = rpc(client, 'tools/call', {'name': 'get-album', 'arguments': {'albumId': ''}})
        result = response.get_json()['result']
        assert result['isError'] is True
        assert 'Album ID must not be empty' in result['content'][0]['text']

    def test_spotify_api_error_is_reported_in_result(self, client):
        response = rpc(client, 'tools/call', {'name': 'get-playlist', 'arguments': {'playlistId': 'gone'}})
        result = response.get_json()['result']
        assert result['isError'] is True
        assert 'Spotify API error 404' in result['content'][0]['text']

    def test_invalid_tool_arguments(self, client):
        response = rpc(client, 'tools/call', {'name': 'search-tracks', 'arguments': {'query': 'x', 'limit': 'many'}})
        assert response.get_json()['result']['isError'] is True

    def test_unknown_tool(self, client):
        error = rpc(client, 'tools/call', {'name': 'play-song'}).get_json()['error']
        assert error['code'] == -32602

    def test_unknown_method(self, client):
        response = rpc(client, 'resources/list', request_id=7)
        assert response.status_code == 200
        assert response.get_json()['id'] == 7
        assert response.get_json()['error']['code'] == -32601

    def test_notification_is_accepted(self, client):
        response = client.post('/mcp', json={'jsonrpc': '2.0', 'method': 'notifications/initialized'},
                               headers={'Authorization': 'Bearer mcp-token'})
        assert response.status_code == 202

    def test_parse_error(self, client):
        response = client.post('/mcp', data='{"jsonrpc":', content_type='application/json',
                               headers={'Authorization': 'Bearer mcp-token'})
        assert response.status_code == 400
        assert response.get_json()['error']['code'] == -32700

    def test_invalid_request(self, client):
        response = client.post('/mcp', json={'jsonrpc': '2.0', 'id': 1},
                               headers={'Authorization': 'Bearer mcp-token'})
        assert response.status_code == 400
        assert response.get_json()['error']['code'] == -32600
