"""OAuth 2.0 Authorization Server bridging MCP clients to Spotify.

HTTP edge of the bridge: parses requests, calls AuthorizationBridge and
turns its Ok/Err results into responses. OAuth endpoints consumed by
machines (/register, /token) answer in JSON; the browser-facing ones
(/authorize, /spotify/connect, /spotify/callback) answer in plain text.
"""
import logging
import time
from typing import Optional

import httpx
from flask import Blueprint, Flask, current_app, jsonify, redirect, render_template_string, request, url_for
from flask_cors import CORS

import config
from auth_bridge import AuthorizationBridge
from client_registry import ensure_predefined_clients
from errors import BridgeError, ErrorKind
from kv_store import KVStore, create_kv_store
from mcp_server import mcp_bp
from spotify_oauth import SpotifyOAuthClient
from token_store import BridgeStores

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__)

STATUS_BY_KIND = {
    ErrorKind.INVALID_TOKEN: 401,
    ErrorKind.SERVER_ERROR: 500,
}

CONSENT_PAGE = """<!DOCTYPE html>
<html>
<head>
  <title>Authorize Spotify MCP Server</title>
  <style>
    body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
           max-width: 600px; margin: 100px auto; padding: 20px; text-align: center; }
    .container { background: #f5f5f5; border-radius: 10px; padding: 40px;
                 box-shadow: 0 2px 10px rgba(0,0,0,0.1); }
    h1 { color: #333; margin-bottom: 20px; }
    p { color: #666; margin-bottom: 30px; line-height: 1.6; }
    .button { display: inline-block; background: #1db954; color: white; padding: 12px 30px;
              border-radius: 25px; text-decoration: none; font-weight: bold; }
    .button:hover { background: #1ed760; }
    .cancel { display: inline-block; margin-top: 20px; color: #666; text-decoration: none; }
    .cancel:hover { text-decoration: underline; }
  </style>
</head>
<body>
  <div class="container">
    <h1>Authorize Spotify MCP Server</h1>
    <p>
      {{ client_name }} is requesting access to your Spotify account.
      This will allow the MCP server to search and retrieve information from Spotify on your behalf.
    </p>
    <a href="{{ connect_url }}" class="button">Connect with Spotify</a>
    <br>
    <a href="{{ cancel_url }}" class="cancel">Cancel</a>
  </div>
</body>
</html>
"""


def get_bridge() -> AuthorizationBridge:
    return current_app.extensions['auth_bridge']


def status_for(error: BridgeError) -> int:
    return STATUS_BY_KIND.get(error.kind, 400)


def text_error(error: BridgeError):
    return error.description, status_for(error), {'Content-Type': 'text/plain; charset=utf-8'}


def json_error(error: BridgeError):
    return jsonify({'error': error.kind.value, 'error_description': error.description}), status_for(error)


def issuer_url() -> str:
    return config.OAUTH_ISSUER or request.url_root.rstrip('/')


# OAuth 2.0 Dynamic Client Registration (RFC 7591)
@auth_bp.route('/register', methods=['POST'])
def register_client():
    """Dynamic Client Registration endpoint."""
    payload = request.get_json(force=True, silent=True)
    if payload is None:
        return jsonify({'error': 'invalid_request', 'error_description': 'Invalid JSON in request body'}), 400

    result = get_bridge().register(payload)
    if result.is_err():
        logger.warning(f"Client registration rejected: {result.error.description}")
        return json_error(result.error)
    return jsonify(result.value)


@auth_bp.route('/authorize', methods=['GET'])
def authorize():
    """Authorization endpoint: validates the request and shows the consent page."""
    bridge = get_bridge()
    result = bridge.authorize(request.args)
    if result.is_err():
        return text_error(result.error)

    consent = result.value
    auth_request = consent.auth_request
    return render_template_string(
        CONSENT_PAGE,
        client_name=consent.client.client_name or 'The application',
        connect_url=url_for('auth.spotify_connect', state=auth_request.state),
        cancel_url=bridge.cancel_url(auth_request.redirect_uri, auth_request.state),
    )


@auth_bp.route('/spotify/connect', methods=['GET'])
def spotify_connect():
    """Start the Spotify leg for a pending authorization request."""
    result = get_bridge().start_provider_handoff(request.args.get('state'))
    if result.is_err():
        return text_error(result.error)
    return redirect(result.value)


@auth_bp.route('/spotify/callback', methods=['GET'])
def spotify_callback():
    """Spotify redirects here; we send the user back to the MCP client with our own code."""
    result = get_bridge().complete_provider_callback(request.args)
    if result.is_err():
        return text_error(result.error)
    return redirect(result.value)


@auth_bp.route('/token', methods=['POST'])
def issue_token():
    """Token endpoint (authorization_code grant only)."""
    result = get_bridge().exchange_token(request.form)
    if result.is_err():
        logger.warning(f"Token request rejected: {result.error}")
        response, status = json_error(result.error)
    else:
        response, status = jsonify(result.value), 200
    response.headers['Cache-Control'] = 'no-store'
    response.headers['Pragma'] = 'no-cache'
    return response, status


def oauth_metadata():
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    issuer = issuer_url()
    prefix = config.AUTH_ROUTE_PREFIX
    return jsonify({
        'issuer': issuer,
        'authorization_endpoint': f'{issuer}{prefix}/authorize',
        'token_endpoint': f'{issuer}{prefix}/token',
        'registration_endpoint': f'{issuer}{prefix}/register',
        'scopes_supported': get_bridge().scopes,
        'response_types_supported': ['code'],
        'grant_types_supported': ['authorization_code'],
        'code_challenge_methods_supported': ['S256'],
        'token_endpoint_auth_methods_supported': ['none'],
    })


def oauth_protected_resource_metadata():
    """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
    issuer = issuer_url()
    return jsonify({
        'resource': f'{issuer}/mcp',
        'authorization_servers': [issuer],
        'bearer_methods_supported': ['header'],
        'scopes_supported': get_bridge().scopes,
    })


def health():
    """Health check endpoint."""
    return jsonify({'status': 'ok', 'service': 'spotify_oauth_bridge'})


def create_app(
    kv_store: Optional[KVStore] = None,
    spotify_oauth: Optional[SpotifyOAuthClient] = None,
    api_http_client: Optional[httpx.Client] = None,
    cors_origin: Optional[str] = None,
    clock=time.time,
) -> Flask:
    """Build the Flask application and its single AuthorizationBridge."""
    app = Flask(__name__)

    CORS(app, resources={
        r"/*": {
            "origins": cors_origin or config.CORS_ORIGIN,
            "methods": ["GET", "POST", "OPTIONS"],
            "allow_headers": ["Content-Type", "Authorization", "mcp-session-id"],
            "expose_headers": ["WWW-Authenticate"],
            "supports_credentials": True,
            "max_age": 600,
        }
    })

    stores = BridgeStores(kv_store if kv_store is not None else create_kv_store())
    bridge = AuthorizationBridge(
        stores,
        spotify_oauth or SpotifyOAuthClient(config.SPOTIFY_CLIENT_ID),
        spotify_redirect_uri=config.SPOTIFY_REDIRECT_URI,
        api_http_client=api_http_client or httpx.Client(timeout=config.HTTP_TIMEOUT),
        clock=clock,
    )
    app.extensions['auth_bridge'] = bridge

    seeded = ensure_predefined_clients(stores.clients)
    if seeded.is_err():
        logger.error(f"Could not register predefined clients: {seeded.error}")

    app.register_blueprint(auth_bp, url_prefix=config.AUTH_ROUTE_PREFIX)
    app.register_blueprint(mcp_bp)
    app.add_url_rule('/.well-known/oauth-authorization-server', 'oauth_metadata', oauth_metadata)
    app.add_url_rule('/.well-known/oauth-protected-resource', 'oauth_protected_resource_metadata',
                     oauth_protected_resource_metadata)
    app.add_url_rule('/.well-known/oauth-protected-resource/mcp', 'oauth_protected_resource_metadata_mcp',
                     oauth_protected_resource_metadata)
    app.add_url_rule('/health', 'health', health)
    app.add_url_rule('/', 'index', health)
    return app


if __name__ == '__main__':
    logging.basicConfig(level=config.LOG_LEVEL)
    if not config.SPOTIFY_CLIENT_ID:
        logger.warning("SPOTIFY_CLIENT_ID is not set; the Spotify leg of the flow will fail")
    app = create_app()
    logger.info(f"OAuth bridge starting on {config.SERVER_HOST}:{config.SERVER_PORT}")
    logger.info(f"Spotify callback: {config.SPOTIFY_REDIRECT_URI}")
    app.run(host=config.SERVER_HOST, port=config.SERVER_PORT, threaded=True)
