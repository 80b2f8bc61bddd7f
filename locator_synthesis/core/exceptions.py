class LocatorPipelineError(RuntimeError):
    """Base class for locator pipeline failures."""


class GenerationError(LocatorPipelineError):
    """Raised when a generative client call fails and may be retried."""


class ConfigurationError(LocatorPipelineError):
    """Raised when a client or pipeline cannot be configured."""
