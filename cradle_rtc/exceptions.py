"""Exceptions raised by cradle-rtc."""


class CradleRTCError(Exception):
    """Base class for all cradle-rtc errors."""


class CodeSpaceExhaustedError(CradleRTCError):
    """No free pairing code could be found within the allowed number of attempts."""


class MalformedMessageError(CradleRTCError, ValueError):
    """A signaling frame or payload is missing required fields."""


class NegotiationError(CradleRTCError):
    """An orchestrator operation was invoked in a state that does not allow it."""
