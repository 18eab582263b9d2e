"""
JWT utilities for issuing and verifying access tokens.

Functions
---------
create_access_token(data: dict) -> str
    Creates a signed JWT access token with an expiration (`exp`) claim.
verify_token(token: str) -> str | None
    Verify a JWT's signature & expiration and return the subject (`sub`) if valid.
profile_from_token(token: str) -> dict | None
    Profile claims of a valid token, attached to a turn's metadata bag.

Environment contract (from `settings`)
--------------------------------------
SECRET_KEY : str
    HMAC signing key for JWTs.
ALGORITHM : str
    JWT signing algorithm (e.g., "HS256").
ACCESS_TOKEN_EXPIRE_MINUTES : int
    Token lifetime window in minutes.
"""

import logging
from datetime import datetime
from typing import Optional

from jose import jwt, JWTError
from historylab.database.config.config import settings

logger = logging.getLogger(__name__)

PROFILE_CLAIMS = ("sub", "email", "name", "picture")


def create_access_token(data: dict) -> str:
    """
    Create a signed JWT access token.

    Parameters
    ----------
    data : dict
        Claims to embed in the token.

    Returns
    -------
    str
        Encoded JWT string.
    """
    encoding = data.copy()
    # exp is a NumericDate (seconds since epoch)
    expires = int(datetime.now().timestamp()) + (int(settings.ACCESS_TOKEN_EXPIRE_MINUTES) * 60)
    encoding.update({"exp": expires})
    return jwt.encode(encoding, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def _decode(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError as e:
        logger.info("Rejected token: %s", e)
        return None


def verify_token(token: str) -> Optional[str]:
    """
    Verify a JWT and return its subject.

    Returns
    ----------
    str | None
        The `sub` claim if the token is valid, otherwise None.
    """
    payload = _decode(token)
    return payload.get("sub") if payload else None


def profile_from_token(token: Optional[str]) -> Optional[dict]:
    """
    Return the profile claims of a valid token.

    Notes
    -----
    Only ``sub``, ``email``, ``name`` and ``picture`` are copied; a missing,
    invalid or expired token yields None.
    """
    if not token:
        return None
    payload = _decode(token)
    if not payload:
        return None
    return {claim: payload[claim] for claim in PROFILE_CLAIMS if claim in payload}
