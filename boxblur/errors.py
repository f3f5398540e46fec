"""Failure types shared by the blur kernels and the harness."""

import dataclasses
import inspect


class BoxBlurError(Exception):
    """Base exception for all boxblur errors."""

    pass


class PreconditionViolation(BoxBlurError, ValueError):
    """Raised before a launch when dimensions or buffers are malformed."""

    pass


class ResourceFailure(BoxBlurError, RuntimeError):
    """Raised when allocation, transfer or random generation fails.

    Records the call site that hit the failure and the underlying cause.
    """

    def __init__(self, what: str, cause: BaseException = None, filename: str = None, lineno: int = None):
        if filename is None:
            caller = inspect.stack()[1]
            filename, lineno = caller.filename, caller.lineno
        self.what = what
        self.cause = cause
        self.filename = filename
        self.lineno = lineno
        message = f"{what} ({filename}:{lineno})"
        if cause is not None:
            message += f": {type(cause).__name__}: {cause}"
        super().__init__(message)


@dataclasses.dataclass
class Failure:
    """Outcome of a run that stopped on a resource failure."""
    kind: str
    where: str
    cause: str

    @classmethod
    def from_exception(cls, error: ResourceFailure) -> "Failure":
        cause = f"{type(error.cause).__name__}: {error.cause}" if error.cause is not None else error.what
        return cls(kind=error.what, where=f"{error.filename}:{error.lineno}", cause=cause)

    def __str__(self) -> str:
        return f"{self.kind} at {self.where}: {self.cause}"
