"""
OAuth ``state`` parameter codec.

The state carries ``"<user_id>:<organization_id>"`` through the provider's
redirect so the callback can be tied back to the user who started it.
"""
from typing import Tuple

DELIMITER = ":"


class StateTokenError(ValueError):
    """State token is malformed."""
    pass


def encode(user_id: str, organization_id: str) -> str:
    """Build the state value for an authorization redirect."""
    for name, value in (("user_id", user_id), ("organization_id", organization_id)):
        if not value:
            raise StateTokenError(f"{name} must not be empty")
        if DELIMITER in value:
            raise StateTokenError(f"{name} must not contain '{DELIMITER}'")
    return f"{user_id}{DELIMITER}{organization_id}"


def decode(state: str) -> Tuple[str, str]:
    """
    Split a state value into ``(user_id, organization_id)``.

    Splits on the first delimiter. ``encode`` never emits a user id containing
    the delimiter, so the split is unambiguous for every token it produced.

    Raises:
        StateTokenError: If the delimiter is missing or either side is empty
    """
    if not state or DELIMITER not in state:
        raise StateTokenError("State token is missing the delimiter")

    user_id, organization_id = state.split(DELIMITER, 1)
    if not user_id or not organization_id:
        raise StateTokenError("State token has an empty component")

    return user_id, organization_id
