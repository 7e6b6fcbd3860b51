"""Exit codes and the error type that carries them to the command line."""

from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit codes used by every command."""

    OK = 0
    USER = 1
    AUTH = 2
    NETWORK = 3
    THROTTLED = 4
    SERVER = 5


class CLIError(Exception):
    """A user-facing failure with the exit code the process should end with."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = ExitCode(code)
        self.message = message

    def __str__(self) -> str:
        return self.message


def user_error(message: str) -> CLIError:
    """Bad input from the user."""
    return CLIError(ExitCode.USER, message)


def auth_error(message: str) -> CLIError:
    """Missing, expired or rejected credentials."""
    return CLIError(ExitCode.AUTH, message)


def network_error(message: str) -> CLIError:
    """Transport, storage or remote-service failure."""
    return CLIError(ExitCode.NETWORK, message)


def throttled_error(message: str) -> CLIError:
    """The remote service asked us to slow down."""
    return CLIError(ExitCode.THROTTLED, message)


def server_error(message: str) -> CLIError:
    """The remote service failed with a 5xx status."""
    return CLIError(ExitCode.SERVER, message)