"""
Utility helpers for the blueprint coaching system

Simple utility functions for ID generation.
"""

import uuid


def generate_session_id(short=True):
    """
    Generate unique session identifier

    Args:
        short (bool): If True, return 8-char hex. If False, return full UUID.

    Returns:
        str: Session ID

    Examples:
        >>> generate_session_id()
        'a3f7e2b9'

        >>> generate_session_id(short=False)
        'a3f7e2b9c1d2e3f4a5b6c7d8e9f0a1b2'
    """
    full_id = uuid.uuid4().hex
    return full_id[:8] if short else full_id


def generate_request_token():
    """Opaque token matching a generation response to its request."""
    return uuid.uuid4().hex
