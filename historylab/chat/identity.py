"""
Conversation identity codec.

A conversation id seen by the client is ``base64("{userId}|{collectionId}|{convoId}")``.
Decoding never raises: a malformed or stale id maps to the ``unknown`` user, the
default collection and a fresh ``fallback-{epoch ms}`` conversation id.
"""

import base64
import logging
import time
from typing import NamedTuple

from historylab.database.config.config import settings

logger = logging.getLogger(__name__)

DELIMITER = "|"


class ConversationIdentity(NamedTuple):
    user_id: str
    collection_id: str
    convo_id: str

    @property
    def log_key(self) -> str:
        """Key of the conversation's analytics log."""
        return f"{self.user_id}-{self.collection_id}-{self.convo_id}"


def encode_conversation_id(user_id: str, collection_id: str, convo_id: str) -> str:
    """
    Encode an identity triple into an opaque conversation id.

    Raises
    ------
    ValueError
        If a component is empty or contains the delimiter.
    """
    for component in (user_id, collection_id, convo_id):
        if not component or DELIMITER in component:
            raise ValueError(f"Invalid conversation id component: {component!r}")
    raw = DELIMITER.join((user_id, collection_id, convo_id))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def fallback_identity() -> ConversationIdentity:
    return ConversationIdentity(
        "unknown",
        settings.DEFAULT_COLLECTION_ID,
        f"fallback-{int(time.time() * 1000)}",
    )


def decode_conversation_id(conversation_id: str) -> ConversationIdentity:
    """
    Decode an opaque conversation id.

    Parameters
    ----------
    conversation_id : str
        Value produced by :func:`encode_conversation_id`, or anything else.

    Returns
    -------
    ConversationIdentity
        The decoded triple, or the fallback identity when decoding fails.
    """
    try:
        raw = base64.b64decode(conversation_id, validate=True).decode("utf-8")
        parts = raw.split(DELIMITER)
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"expected 3 non-empty components, got {len(parts)}")
        return ConversationIdentity(*parts)
    except (TypeError, ValueError) as e:
        logger.info("Could not decode conversation id %r, using fallback identity: %s", conversation_id, e)
        return fallback_identity()
