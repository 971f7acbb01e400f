"""Configuration for the Spotify OAuth bridge."""
import os
from dotenv import load_dotenv

load_dotenv()

# Bridge server
SERVER_HOST = os.getenv("SERVER_HOST", "127.0.0.1")
SERVER_PORT = int(os.getenv("SERVER_PORT", "8787"))
OAUTH_ISSUER = os.getenv("OAUTH_ISSUER")  # derived from the request when unset
AUTH_ROUTE_PREFIX = os.getenv("AUTH_ROUTE_PREFIX", "/auth")

# Security
CORS_ORIGIN = os.getenv("CORS_ORIGIN", "*")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Spotify application
SPOTIFY_CLIENT_ID = os.getenv("SPOTIFY_CLIENT_ID", "")
SPOTIFY_REDIRECT_URI = os.getenv(
    "SPOTIFY_REDIRECT_URI",
    f"http://{SERVER_HOST}:{SERVER_PORT}{AUTH_ROUTE_PREFIX}/spotify/callback",
)
SPOTIFY_AUTHORIZE_URL = "https://accounts.spotify.com/authorize"
SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
SPOTIFY_API_BASE_URL = "https://api.spotify.com/v1"
HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "10.0"))

SPOTIFY_SCOPES = [
    "user-read-private",
    "user-read-email",
    "playlist-read-private",
    "playlist-read-collaborative",
    "playlist-modify-public",
    "playlist-modify-private",
    "ugc-image-upload",
    "user-library-read",
    "user-library-modify",
    "user-top-read",
    "user-read-recently-played",
    "user-read-playback-state",
    "user-modify-playback-state",
    "user-read-currently-playing",
]

# Record lifetimes (seconds)
CLIENT_TTL = 30 * 24 * 60 * 60
PREDEFINED_CLIENT_TTL = 365 * 24 * 60 * 60
AUTH_REQUEST_TTL = 600
PROVIDER_STATE_TTL = 600
AUTH_CODE_TTL = 600
ACCESS_TOKEN_TTL = 3600
TOKEN_REFRESH_BUFFER = 300  # refresh Spotify tokens this close to expiry

# Key/value backend
KV_BACKEND = os.getenv("KV_BACKEND", "memory")
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_DB = int(os.getenv("REDIS_DB", "0"))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD")
REDIS_SSL = os.getenv("REDIS_SSL", "false").lower() == "true"

# Clients that are always registered (Claude.ai)
PREDEFINED_CLIENTS = [
    {
        "client_id": "712d4a09-4164-484d-b1ce-0c7e3fa35b1c",
        "client_name": "Claude.ai",
        "redirect_uris": ["https://claude.ai/api/mcp/auth_callback"],
    },
]

# MCP
MCP_PROTOCOL_VERSION = "2024-11-05"
MCP_SERVER_NAME = "spotify-mcp-server"
MCP_SERVER_VERSION = "1.0.0"
