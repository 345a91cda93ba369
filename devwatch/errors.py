"""Project-level exception hierarchy."""


class DevwatchError(Exception):
    """Base for all devwatch exceptions."""


class ConfigError(DevwatchError):
    """Configuration could not be read or validated."""


class SpawnError(DevwatchError):
    """A subprocess could not be started."""
