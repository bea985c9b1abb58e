"""Error taxonomy for the relay pipeline"""

from typing import Optional, Union

# Status codes worth another attempt; every other 4xx is a permanent rejection.
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class RelayError(Exception):
    """Base class for relay errors"""


class EventValidationError(RelayError):
    """Malformed inbound event; rejected at ingress and never queued."""


class RemoteError(RelayError):
    """A System A/B API call failed.

    `code` is the HTTP status when there was a response, or a short tag such as
    "timeout" / "network" when there was none.
    """

    def __init__(self, code: Union[int, str, None], message: str, retryable: Optional[bool] = None):
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message
        if retryable is None:
            retryable = is_retryable_status(code)
        self.retryable = retryable


class MappingNotFound(RelayError):
    """A child event arrived before its parent issue was correlated."""

    def __init__(self, source_id: str):
        super().__init__(f"Parent issue {source_id} is not mapped to the other system")
        self.source_id = source_id


class KeyValueStoreUnavailable(RelayError):
    """The key-value store could not be reached."""


class JobNotFound(RelayError):
    """No job with the given id."""


def is_retryable_status(code: Union[int, str, None]) -> bool:
    """Classify a RemoteError code as transient (True) or permanent (False)."""
    if code is None or isinstance(code, str):
        # No HTTP response at all: network trouble or timeout.
        return True
    if code in RETRYABLE_STATUS_CODES:
        return True
    return not (400 <= int(code) < 500)
