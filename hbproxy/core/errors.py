"""Domain-specific errors for hbproxy."""


class HbproxyError(Exception):
    """Base error for hbproxy."""


class ConfigError(HbproxyError):
    """Base configuration error."""


class ConfigLoadError(ConfigError):
    """Raised when reading a configuration file fails."""


class ConfigValidationError(ConfigError):
    """Raised when a configuration file does not conform to schema or semantics."""


class AuthError(HbproxyError):
    """Raised when the hub credential exchange fails."""


class LinkError(HbproxyError):
    """Raised on upstream WebSocket transport failures."""


class FrameParseError(HbproxyError):
    """Raised when an inbound hub frame cannot be decoded."""


class CommandError(HbproxyError):
    """Raised when a downstream command cannot be translated or dispatched."""

    def __init__(self, message: str, *, cause: str) -> None:
        super().__init__(message)
        self.cause = cause


class CommandTimeout(HbproxyError):
    """Raised when the hub does not answer a write within the timeout window."""
