"""Centralized failure taxonomy.

Every stage failure is fatal to the invocation. Checkpoint files already
written stay on disk so a rerun resumes from the last completed unit.
"""


class ContractViolation(RuntimeError):
    """Raised when a pipeline contract is violated.

    This indicates a bug in pipeline logic, not bad user input. It means a
    stage did not produce the invariants it promised.

    Key distinction:
    - ConfigurationError: User/config error (bad manifest, bad range)
    - ContractViolation: Pipeline bug or inconsistent project state
    - RegistrationEngineFailure: The external engine failed
    """
    pass


class ConfigurationError(ValueError):
    """Malformed manifest, missing required file, or out-of-range parameter."""
    pass


class CacheTypeMismatch(ContractViolation):
    """A cached image was requested with a different element type."""

    def __init__(self, key: str, cached_dtype, requested_dtype):
        self.key = key
        self.cached_dtype = cached_dtype
        self.requested_dtype = requested_dtype
        super().__init__(
            f"Cache entry '{key}' holds {cached_dtype}, requested as {requested_dtype}"
        )


class GraphConnectivityError(ContractViolation):
    """A slice cannot be reached from the chosen root."""
    pass


class RegistrationEngineFailure(RuntimeError):
    """Any failure inside a registration or reslice call.

    Attributes
    ----------
    command : list of str or None
        Engine command line when the engine is an external process.
    stderr : str
        Captured error output, possibly empty.
    """

    def __init__(self, message: str, command=None, stderr: str = ""):
        self.command = command
        self.stderr = stderr
        if stderr:
            message = f"{message}\n{stderr.strip()}"
        super().__init__(message)
