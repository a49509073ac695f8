"""
Exceptions raised by the device sync engine.
"""


class TransientNetworkError(Exception):
    """The request may or may not have reached the server; safe to retry."""


class ApiError(Exception):
    """The server answered with a non-retryable error."""

    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message


class WalletNotConfigured(Exception):
    """No wallet address is set up on this device; the user has to create or import one."""
