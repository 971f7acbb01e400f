"""MCP endpoint (JSON-RPC 2.0 over HTTP) protected by bridge access tokens.

Every request must carry ``Authorization: Bearer <token>`` where the token
was issued by the bridge's /token endpoint. The token is resolved to the
Spotify tokens it maps to and a Spotify client is built for the tools.
"""
import json
import logging
from functools import wraps
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, current_app, g, jsonify, request

import config
from errors import ErrorKind
from results import Ok
from spotify_api import SpotifyClient

logger = logging.getLogger(__name__)

mcp_bp = Blueprint('mcp', __name__)


def www_authenticate_header(error: Optional[str] = None) -> str:
    """WWW-Authenticate value per RFC 6750 and RFC 9728."""
    issuer = config.OAUTH_ISSUER or request.url_root.rstrip('/')
    value = f'Bearer resource_metadata="{issuer}/.well-known/oauth-protected-resource"'
    if error:
        value += f', error="{error}"'
    return value


def unauthorized(message: str, error: Optional[str] = None):
    return message, 401, {
        'Content-Type': 'text/plain; charset=utf-8',
        'WWW-Authenticate': www_authenticate_header(error),
    }


def server_error_response():
    return 'Server error', 500, {'Content-Type': 'text/plain; charset=utf-8'}


def require_bearer_token(f):
    """Resolve the bearer token into ``g.spotify_client`` or answer 401."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get('Authorization')
        if not auth_header:
            return unauthorized('Unauthorized')

        parts = auth_header.split()
        if len(parts) != 2 or parts[0].lower() != 'bearer':
            return unauthorized('Invalid token', 'invalid_token')

        bridge = current_app.extensions['auth_bridge']
        session = bridge.authenticate(parts[1])
        if session.is_err():
            if session.error.kind == ErrorKind.SERVER_ERROR:
                return server_error_response()
            return unauthorized(session.error.description, 'invalid_token')

        client = bridge.spotify_client_for(session.value)
        if client.is_err():
            if client.error.kind == ErrorKind.SERVER_ERROR:
                return server_error_response()
            return unauthorized(client.error.description, 'invalid_token')

        g.client_id = session.value.record.client_id
        g.spotify_client = client.value
        return f(*args, **kwargs)
    return decorated_function


# ============================================================================
# Tools
# ============================================================================

def _summarize_track(track: dict) -> dict:
    return {
        'id': track.get('id'),
        'name': track.get('name'),
        'artists': ', '.join(a.get('name', '') for a in track.get('artists', [])),
        'album': (track.get('album') or {}).get('name'),
        'duration_ms': track.get('duration_ms'),
        'preview_url': track.get('preview_url'),
        'external_url': (track.get('external_urls') or {}).get('spotify'),
    }


def _summarize_album(album: dict) -> dict:
    return {
        'id': album.get('id'),
        'name': album.get('name'),
        'artists': ', '.join(a.get('name', '') for a in album.get('artists', [])),
        'release_date': album.get('release_date'),
        'total_tracks': album.get('total_tracks'),
        'external_url': (album.get('external_urls') or {}).get('spotify'),
    }


def _summarize_artist(artist: dict) -> dict:
    return {
        'id': artist.get('id'),
        'name': artist.get('name'),
        'genres': artist.get('genres', []),
        'popularity': artist.get('popularity'),
        'followers': (artist.get('followers') or {}).get('total'),
        'external_url': (artist.get('external_urls') or {}).get('spotify'),
    }


def _summarize_playlist(playlist: dict) -> dict:
    return {
        'id': playlist.get('id'),
        'name': playlist.get('name'),
        'description': playlist.get('description'),
        'owner': (playlist.get('owner') or {}).get('display_name'),
        'tracks_total': (playlist.get('tracks') or {}).get('total'),
        'external_url': (playlist.get('external_urls') or {}).get('spotify'),
    }


def _get_by_id(kind: str, summarize: Callable[[dict], dict]):
    def handler(spotify: SpotifyClient, arguments: dict):
        result = spotify.get_resource(kind, str(arguments.get(f'{kind}Id', '')))
        if result.is_err():
            return result
        return Ok(summarize(result.value))
    return handler


def _search_tracks(spotify: SpotifyClient, arguments: dict):
    result = spotify.search_tracks(
        str(arguments.get('query', '')),
        limit=int(arguments.get('limit', 10)),
        market=arguments.get('market'),
    )
    if result.is_err():
        return result
    items = ((result.value.get('tracks') or {}).get('items')) or []
    return Ok([_summarize_track(item) for item in items])


def _id_schema(kind: str) -> dict:
    return {
        'type': 'object',
        'properties': {f'{kind}Id': {'type': 'string', 'description': f'Spotify {kind} ID'}},
        'required': [f'{kind}Id'],
    }


TOOLS: Dict[str, Dict[str, Any]] = {
    'get-track': {
        'description': 'Get a single track by ID from Spotify',
        'inputSchema': _id_schema('track'),
        'handler': _get_by_id('track', _summarize_track),
    },
    'get-album': {
        'description': 'Get a single album by ID from Spotify',
        'inputSchema': _id_schema('album'),
        'handler': _get_by_id('album', _summarize_album),
    },
    'get-artist': {
        'description': 'Get a single artist by ID from Spotify',
        'inputSchema': _id_schema('artist'),
        'handler': _get_by_id('artist', _summarize_artist),
    },
    'get-playlist': {
        'description': 'Get a playlist by ID from Spotify',
        'inputSchema': _id_schema('playlist'),
        'handler': _get_by_id('playlist', _summarize_playlist),
    },
    'search-tracks': {
        'description': 'Search for tracks on Spotify',
        'inputSchema': {
            'type': 'object',
            'properties': {
                'query': {'type': 'string', 'description': 'Search query'},
                'limit': {'type': 'number', 'description': 'Number of results (1-50)', 'default': 10},
                'market': {'type': 'string', 'description': 'ISO 3166-1 alpha-2 country code'},
            },
            'required': ['query'],
        },
        'handler': _search_tracks,
    },
}


def call_tool(spotify: SpotifyClient, tool_name: str, arguments: dict) -> dict:
    """Run a tool and wrap its outcome as an MCP CallToolResult."""
    tool = TOOLS[tool_name]
    try:
        result = tool['handler'](spotify, arguments)
    except (TypeError, ValueError) as e:
        return {'content': [{'type': 'text', 'text': f'Error: invalid arguments: {e}'}], 'isError': True}

    if result.is_err():
        logger.warning(f"Tool {tool_name} failed: {result.error}")
        return {'content': [{'type': 'text', 'text': f'Error: {result.error}'}], 'isError': True}

    return {'content': [{'type': 'text', 'text': json.dumps(result.value, indent=2)}]}


# ============================================================================
# JSON-RPC
# ============================================================================

def jsonrpc_error(request_id, code: int, message: str, status: int = 200):
    return jsonify({'jsonrpc': '2.0', 'id': request_id, 'error': {'code': code, 'message': message}}), status


@mcp_bp.route('/mcp', methods=['POST'])
@require_bearer_token
def handle_jsonrpc_request():
    """Handle JSON-RPC 2.0 requests."""
    data = request.get_json(force=True, silent=True)
    if data is None:
        return jsonrpc_error(None, -32700, 'Parse error', 400)
    if not isinstance(data, dict) or not isinstance(data.get('method'), str):
        return jsonrpc_error(None, -32600, 'Invalid Request', 400)

    request_id = data.get('id')
    method = data['method']
    params = data.get('params') or {}
    if not isinstance(params, dict):
        return jsonrpc_error(request_id, -32602, 'Invalid params')

    if method.startswith('notifications/'):
        logger.debug(f"Received notification: {method}")
        return '', 202

    if method == 'initialize':
        logger.info(f"MCP session initialized for client {g.client_id}")
        result = {
            'protocolVersion': config.MCP_PROTOCOL_VERSION,
            'capabilities': {'tools': {'listChanged': False}},
            'serverInfo': {'name': config.MCP_SERVER_NAME, 'version': config.MCP_SERVER_VERSION},
        }
    elif method == 'ping':
        result = {}
    elif method == 'tools/list':
        result = {
            'tools': [
                {'name': name, 'description': tool['description'], 'inputSchema': tool['inputSchema']}
                for name, tool in TOOLS.items()
            ]
        }
    elif method == 'tools/call':
        tool_name = params.get('name')
        if not isinstance(tool_name, str) or tool_name not in TOOLS:
            return jsonrpc_error(request_id, -32602, f'Unknown tool: {tool_name}')
        arguments = params.get('arguments') or {}
        if not isinstance(arguments, dict):
            return jsonrpc_error(request_id, -32602, 'Invalid params')
        result = call_tool(g.spotify_client, tool_name, arguments)
    else:
        return jsonrpc_error(request_id, -32601, f'Method not found: {method}')

    return jsonify({'jsonrpc': '2.0', 'id': request_id, 'result': result})
