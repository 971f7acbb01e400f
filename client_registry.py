"""Registry of public OAuth clients (RFC 7591 dynamic registration)."""
import logging
import time
import uuid
from typing import List, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict

import config
from errors import BridgeError, ErrorKind
from results import Err, Ok, Result
from token_store import ClientStore, RegisteredClient

logger = logging.getLogger(__name__)


class ClientRegistrationRequest(BaseModel):
    """Dynamic Client Registration request body.

    Unknown client metadata is accepted and ignored.
    """

    model_config = ConfigDict(extra='ignore')

    redirect_uris: List[str] = []
    client_name: Optional[str] = None
    grant_types: Optional[List[str]] = None
    response_types: Optional[List[str]] = None
    token_endpoint_auth_method: Optional[str] = None


def _metadata_error(description: str) -> Err:
    return Err(BridgeError(ErrorKind.INVALID_CLIENT_METADATA, description))


def validate_redirect_uris(uris: List[str]) -> Result[None, BridgeError]:
    """Check registration-time rules for redirect URIs.

    Every URI must be absolute, carry no fragment, and use https unless it
    is plain http on localhost. Nothing is fetched.
    """
    if not uris:
        return _metadata_error('At least one redirect_uri is required')

    for uri in uris:
        try:
            parts = urlsplit(uri)
            hostname = parts.hostname
        except ValueError:
            return _metadata_error(f'Invalid redirect URI: {uri}')

        if not parts.scheme or not hostname:
            return _metadata_error(f'Invalid redirect URI: {uri}')

        if parts.fragment or uri.endswith('#'):
            return _metadata_error(f'Redirect URI must not contain fragment: {uri}')

        if parts.scheme == 'https':
            continue
        if parts.scheme == 'http' and hostname == 'localhost':
            continue
        return _metadata_error(f'Redirect URI must use HTTPS: {uri}')

    return Ok(None)


def register_client(clients: ClientStore, request: ClientRegistrationRequest) -> Result[RegisteredClient, BridgeError]:
    """Validate and persist a new client. Identical requests yield distinct clients."""
    validation = validate_redirect_uris(request.redirect_uris)
    if validation.is_err():
        return validation

    client = RegisteredClient(
        client_id=str(uuid.uuid4()),
        client_name=request.client_name,
        redirect_uris=list(request.redirect_uris),
        created_at=time.time(),
    )

    stored = clients.put(client.client_id, client)
    if stored.is_err():
        return stored

    logger.info(f"Registered client {client.client_id} ({client.client_name or 'unnamed'})")
    return Ok(client)


def get_client(clients: ClientStore, client_id: str) -> Result[Optional[RegisteredClient], BridgeError]:
    """Look a client up; Ok(None) when it does not exist."""
    return clients.get(client_id)


def validate_redirect_uri(client: RegisteredClient, redirect_uri: str) -> Result[None, BridgeError]:
    # Exact string match, no normalization.
    if redirect_uri not in client.redirect_uris:
        return Err(BridgeError(ErrorKind.INVALID_REDIRECT_URI, 'Redirect URI not registered for this client'))
    return Ok(None)


def ensure_predefined_clients(clients: ClientStore, predefined: Optional[List[dict]] = None) -> Result[None, BridgeError]:
    """Register well-known clients with fixed ids, leaving existing records alone."""
    for entry in config.PREDEFINED_CLIENTS if predefined is None else predefined:
        existing = clients.get(entry['client_id'])
        if existing.is_err():
            return existing
        if existing.value is not None:
            continue

        client = RegisteredClient(
            client_id=entry['client_id'],
            client_name=entry.get('client_name'),
            redirect_uris=list(entry['redirect_uris']),
            created_at=time.time(),
        )
        stored = clients.put(client.client_id, client, ttl=config.PREDEFINED_CLIENT_TTL)
        if stored.is_err():
            return stored
        logger.info(f"Registered predefined client {client.client_id} ({client.client_name})")

    return Ok(None)
