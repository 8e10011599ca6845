"""Exception types raised inside the query pipeline."""
from typing import Optional


class GatewayError(Exception):
    """Base class for pipeline failures that map to a caller response."""


class CallerNotFound(GatewayError):
    """Raised when (user_id, organization_id) does not resolve to a known user."""


class ModelOutputError(GatewayError):
    """Raised when the language model returns text that cannot be parsed."""

    def __init__(self, message: str, raw_output: str = ""):
        super().__init__(message)
        self.raw_output = raw_output


class TransientFailure(GatewayError):
    """Raised when the model or the store did not answer within its time bound."""


class StoreError(GatewayError):
    """Raised by the relational store; ``code`` is the driver error number when known."""

    def __init__(self, message: str, code: Optional[int] = None, disconnect: bool = False):
        super().__init__(message)
        self.code = code
        self.disconnect = disconnect
