"""
notifybot exception hierarchy.

Every error raised by the bot inherits from NotifyBotError.
Each carries a ``retryable`` flag so callers (RPC clients, the poll loop)
can tell a transient dependency failure from a permanent input failure.

Usage:
    try:
        await bot.register_for_notifications(token, auth)
    except AuthenticationError:
        # Caller identity was not verified, do not retry
    except StorageError as e:
        # Database trouble, safe to retry later
    except NotifyBotError as e:
        # Anything else from the bot
"""


class NotifyBotError(Exception):
    """Base exception for all notifybot errors."""

    retryable: bool = False

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# ━━━ Configuration ━━━


class ConfigError(NotifyBotError):
    """Configuration is invalid, missing, or malformed."""

    pass


# ━━━ Input & Auth ━━━


class InvalidInputError(NotifyBotError):
    """Caller-provided data is malformed (empty token, missing key...)."""

    pass


class AuthenticationError(NotifyBotError):
    """Caller identity was not authenticated by the transport layer."""

    pass


class NotFoundError(NotifyBotError):
    """A row that the operation requires to exist is absent."""

    pass


# ━━━ Dependencies ━━━


class StorageError(NotifyBotError):
    """Storage backend failure — database errors, timeouts, corruption."""

    retryable = True


class DerivationError(NotifyBotError):
    """Ephemeral ID could not be derived for an identity."""

    pass


class TopologyError(NotifyBotError):
    """No usable network topology (not loaded yet, or unknown host)."""

    retryable = True


class NetworkError(NotifyBotError):
    """Network round-trip failed — unreachable gateway, bad response."""

    def __init__(
        self,
        message: str,
        host: str = "",
        retryable: bool = True,
        details: dict | None = None,
    ):
        self.host = host
        self.retryable = retryable
        super().__init__(message, details)


class PushError(NotifyBotError):
    """Push backend rejected or failed to accept a notification."""

    def __init__(
        self,
        message: str,
        backend: str = "",
        retryable: bool = False,
        details: dict | None = None,
    ):
        self.backend = backend
        self.retryable = retryable
        super().__init__(message, details)


# ━━━ Scheduler ━━━


class SchedulerFatalError(NotifyBotError):
    """The poll loop exhausted its consecutive-failure budget and stopped."""

    def __init__(
        self,
        message: str,
        failures: int = 0,
        last_error: BaseException | None = None,
        details: dict | None = None,
    ):
        self.failures = failures
        self.last_error = last_error
        super().__init__(message, details)
