"""Exception hierarchy for the load test platform.

Request-level failures never show up here: they are captured as failed
outcomes by the executor. These exceptions cover configuration mistakes and
dependencies that are missing before any load is generated.
"""


class LoadTestError(Exception):
    """Base class for load test platform errors."""


class ConfigurationError(LoadTestError):
    """Raised when the load test configuration is invalid."""


class UnknownScenarioError(ConfigurationError):
    """Raised when a scenario name is not defined in the configuration."""

    def __init__(self, name: str, available=None):
        self.name = name
        self.available = sorted(available or [])
        message = f"Scenario '{name}' not found"
        if self.available:
            message += f" (available: {', '.join(self.available)})"
        super().__init__(message)


class UnknownEnvironmentError(ConfigurationError):
    """Raised when an environment name is not defined in the configuration."""

    def __init__(self, name: str, available=None):
        self.name = name
        self.available = sorted(available or [])
        message = f"Environment '{name}' not found"
        if self.available:
            message += f" (available: {', '.join(self.available)})"
        super().__init__(message)


class DatabaseUnavailableError(LoadTestError):
    """Raised when the database under test cannot be reached at initialization."""
