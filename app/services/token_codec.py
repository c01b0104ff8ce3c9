"""
Per-user token entries nested inside an integration record's configuration.

Callers never index ``configuration`` themselves; everything that knows the
``configuration[user_id] -> token entry`` layout lives here.
"""
from collections.abc import Mapping
from typing import Optional, Dict, Any, List, Tuple
from datetime import datetime

from app.models.integration import IntegrationRecord

# Org-level credential fields that may sit beside user entries
RESERVED_KEYS = frozenset({"client_id", "client_secret", "credentials_saved_at", "credentials_saved_by"})


def _configuration(record: Optional[IntegrationRecord]) -> Optional[Mapping]:
    if record is None:
        return None
    config = record.configuration
    if not isinstance(config, Mapping):
        return None
    return config


def get_token_entry(record: Optional[IntegrationRecord], user_id: str) -> Optional[Dict[str, Any]]:
    """Return the token entry stored for a user, or None."""
    config = _configuration(record)
    if config is None:
        return None
    entry = config.get(user_id)
    if not isinstance(entry, Mapping):
        return None
    return dict(entry)


def _has_access_token(values: Optional[Mapping]) -> bool:
    if not values:
        return False
    token = values.get("access_token")
    return isinstance(token, str) and token != ""


def is_connected(record: Optional[IntegrationRecord], user_id: str) -> bool:
    """True iff the user has an entry with a non-empty access token."""
    return _has_access_token(get_token_entry(record, user_id))


def has_org_token(record: Optional[IntegrationRecord]) -> bool:
    """True iff an org-wide record holds an access token directly."""
    return _has_access_token(_configuration(record))


def set_token_entry(configuration: Optional[Mapping], user_id: str, entry: Mapping) -> Dict[str, Any]:
    """Return a copy of the configuration with the user's entry replaced."""
    updated = dict(configuration or {})
    updated[user_id] = dict(entry)
    return updated


def remove_token_entry(configuration: Optional[Mapping], user_id: str) -> Dict[str, Any]:
    """Return a copy of the configuration without the user's entry."""
    updated = dict(configuration or {})
    updated.pop(user_id, None)
    return updated


def user_keys(configuration: Optional[Mapping]) -> List[str]:
    """Keys of the configuration that hold per-user entries."""
    if not isinstance(configuration, Mapping):
        return []
    return [key for key in configuration if key not in RESERVED_KEYS]


def get_client_credentials(record: Optional[IntegrationRecord]) -> Optional[Tuple[str, str]]:
    """Organization-specific OAuth client ``(client_id, client_secret)``, if both are stored."""
    config = _configuration(record)
    if config is None:
        return None
    client_id = config.get("client_id")
    client_secret = config.get("client_secret")
    if not isinstance(client_id, str) or not client_id:
        return None
    if not isinstance(client_secret, str) or not client_secret:
        return None
    return client_id, client_secret


def set_client_credentials(
    configuration: Optional[Mapping],
    client_id: str,
    client_secret: str,
    saved_by: Optional[str] = None,
) -> Dict[str, Any]:
    """Return a copy of the configuration carrying the organization's OAuth client."""
    updated = dict(configuration or {})
    updated.update({
        "client_id": client_id,
        "client_secret": client_secret,
        "credentials_saved_at": datetime.utcnow().isoformat(),
        "credentials_saved_by": saved_by,
    })
    return updated
