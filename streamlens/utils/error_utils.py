"""Common error types and validation utility functions
"""

from typing import Optional

import requests


# Substrings that mark a poll error as a transport/connectivity failure.
_CONNECTIVITY_MARKERS = ("connection", "network", "timeout", "timed out")


class StreamLensError(Exception):
    """Base exception for indexer errors."""


class ConfigurationError(StreamLensError, EnvironmentError):
    """Raised for missing or invalid indexer settings."""


class StorageError(StreamLensError):
    """Raised when a state store operation fails."""

    def __init__(self, operation: str, message: str, target: Optional[str] = None):
        self.operation = operation
        self.target = target
        super().__init__(message)

    def __str__(self):
        error_msg = f"{self.operation}: {super().__str__()}"
        if self.target:
            error_msg = f"{error_msg} (target={self.target})"
        return error_msg


def check_for_missing_env_vars(env_vars: dict):
    """Checks whether any required environment values are undefined.

    :param env_vars: The dictionary of environment variables.
    """
    # Check for missing environment variables since these are unrecoverable.
    missing_keys = [k for k, v in env_vars.items() if v is None or v == ""]
    if missing_keys:
        missing_keys_str = ", ".join(missing_keys)
        raise ConfigurationError(
            f"Missing required environment variables: {missing_keys_str}"
        )


def is_empty_error(error: BaseException) -> bool:
    """Returns True for errors that carry no actionable message.

    :param error: The error raised by a poll.
    :return: True if the error should be ignored.
    """
    return error is None or not str(error).strip()


def is_connectivity_error(error: BaseException) -> bool:
    """Returns True if the error indicates a lost or failing transport.

    :param error: The error raised by a remote call.
    :return: True if the caller should reconnect.
    """
    if isinstance(
        error,
        (
            ConnectionError,
            TimeoutError,
            requests.exceptions.ConnectionError,
            requests.exceptions.Timeout,
        ),
    ):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _CONNECTIVITY_MARKERS)
