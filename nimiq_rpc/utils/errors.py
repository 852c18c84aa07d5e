"""Custom exception classes for the RPC client.

Ordinary failures (timeouts, node errors, connection loss) are reported as
values, never raised. These exceptions signal programming errors.
"""


class NimiqRPCError(Exception):
    """Base exception for client errors."""

    pass


class ConfigurationError(NimiqRPCError):
    """Missing or invalid client configuration."""

    pass


class ConnectionStateError(NimiqRPCError):
    """Operation attempted in a connection state that does not allow it."""

    pass
