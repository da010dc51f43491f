class ConfigError(ValueError):
    """Declared state is invalid and nothing was applied."""


class UnsupportedOSError(ConfigError):
    """Target host has no known Sentinel service definition."""
