"""
Error taxonomy for library resolution, binding and script execution.

Everything raised by the provider, classifier, contributor and binder derives
from ``LibraryError`` so the lifecycle manager can abort context creation
uniformly. ``NonResumableStateWarning`` is a warning, not an error.
"""

from enum import Enum


class LibraryError(Exception):
    """Base class for library resolution and binding failures."""

    pass


class NotFoundError(LibraryError):
    """Unknown (or not visible) library name."""

    def __init__(self, library: str, *, job_name: str | None = None) -> None:
        self.library = library
        self.job_name = job_name
        msg = f"No library named '{library}' is declared"
        if job_name:
            msg += f" for job '{job_name}'"
        super().__init__(msg)


class ResolutionFailure(str, Enum):
    """Why a version could not be resolved."""

    UNKNOWN_REVISION = "unknown_revision"
    TRANSPORT_UNAVAILABLE = "transport_unavailable"
    OVERRIDE_FORBIDDEN = "override_forbidden"


class VersionResolutionError(LibraryError):
    """A version token or revision of a known library could not be materialized."""

    def __init__(
        self,
        library: str,
        version: str | None,
        kind: ResolutionFailure,
        detail: str = "",
    ) -> None:
        self.library = library
        self.version = version
        self.kind = kind
        self.detail = detail
        label = version if version else "<default>"
        msg = f"Cannot resolve library '{library}' at version '{label}' ({kind.value})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)

    @property
    def retryable(self) -> bool:
        """Only transport outages are worth retrying."""
        return self.kind == ResolutionFailure.TRANSPORT_UNAVAILABLE


class StructureError(LibraryError):
    """A file in the library tree does not follow the naming convention."""

    def __init__(self, path: str, reason: str, *, library: str | None = None) -> None:
        self.path = path
        self.reason = reason
        self.library = library
        where = f"{library}:{path}" if library else path
        super().__init__(f"Malformed library file '{where}': {reason}")


class LibraryCompilationError(LibraryError):
    """Contributed source failed to compile; fatal to starting the job."""

    def __init__(self, library: str, revision: str, path: str, detail: str) -> None:
        self.library = library
        self.revision = revision
        self.path = path
        self.detail = detail
        super().__init__(
            f"Compilation of '{path}' in library '{library}' at revision "
            f"'{revision}' failed: {detail}"
        )


class NameCollisionError(LibraryError):
    """Two loaded libraries define the same global variable or module name."""

    def __init__(self, name: str, first_library: str, second_library: str) -> None:
        self.name = name
        self.first_library = first_library
        self.second_library = second_library
        super().__init__(
            f"'{name}' is defined by both library '{first_library}' and "
            f"library '{second_library}'"
        )


class UnboundNameError(LibraryError, NameError):
    """No loaded library binds this global variable name."""

    def __init__(self, name: str, *, job_id: str | None = None) -> None:
        msg = f"No global variable named '{name}' is bound"
        if job_id:
            msg += f" in execution '{job_id}'"
        super().__init__(msg)
        self.name = name
        self.job_id = job_id


class RejectedAccessError(LibraryError, PermissionError):
    """A sandboxed unit attempted a privileged host operation."""

    def __init__(self, operation: str, unit: str | None = None) -> None:
        self.operation = operation
        self.unit = unit
        msg = f"Scripts not permitted to use '{operation}'"
        if unit:
            msg += f" (from {unit})"
        super().__init__(msg)


class ContextCancelledError(LibraryError):
    """The job was aborted while its execution context was being prepared."""

    pass


class StepFailedError(LibraryError):
    """Raised by the ``error`` step to fail the running job."""

    pass


class NonResumableStateWarning(UserWarning):
    """A global variable holds state that cannot be checkpointed."""

    pass
