"""
Exceptions raised by the chat core.
"""


class InvalidToolTransition(ValueError):
    """A tool invocation was asked to leave a state it cannot leave."""


class InvalidTurnTransition(RuntimeError):
    """A turn state machine was driven through an illegal edge."""


class LogStoreError(RuntimeError):
    """The conversation log store could not be read or written."""


class MessageStoreError(RuntimeError):
    """The conversation message store could not be read or written."""
