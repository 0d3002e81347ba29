"""
Exceptions raised by the supervisor.

Component methods report recoverable failures through return values; these
exceptions are raised where a failure has to unwind a caller.
"""


class SupervisorError(Exception):
    """Base class for supervisor failures."""


class DiscoveryError(SupervisorError):
    """The discovery store could not be queried. Retryable."""


class ConfigValidationError(SupervisorError):
    """A ponder config failed the structural checks."""


class PhaseAbortError(SupervisorError):
    """A bootstrap phase failed and the supervisor has to shut down."""

    def __init__(self, phase, message):
        super().__init__(f"{phase}: {message}")
        self.phase = phase
