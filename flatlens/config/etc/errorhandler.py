class FlatlensError(Exception):
    """Custom exception class for flatlens-related errors."""
    def __init__(self, message):
        super().__init__(f" - {message}")


class ConfigurationConflictError(FlatlensError, ValueError):
    """Mutually exclusive construction options were supplied together."""


class InsufficientRangeError(FlatlensError, ValueError):
    """A caller-supplied spectrum does not reach the multipoles the grid needs."""


class PreconditionerNotDefinedError(FlatlensError, NotImplementedError):
    """No Hessian approximation exists for the requested latent variables."""


class DistributedMismatchError(FlatlensError, RuntimeError):
    """A distributed DataSet no longer matches its registered structural hash."""
