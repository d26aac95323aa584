"""
Trust boundary: which units run sandboxed, and which privileged steps a
sandboxed unit may still call.

Libraries are trusted iff their declaration says so (administrators vouch for
them). Job scripts always run sandboxed. Trust travels with the compiled unit,
never with the caller, so a sandboxed job calling into a trusted library runs
that library's code trusted, and a closure defined by the job stays sandboxed
even when a trusted function invokes it.
"""

import logging

from pipelibs.core.config import settings
from pipelibs.core.errors import RejectedAccessError
from pipelibs.engines.script.sandbox import CompiledUnit, TrustLevel, compile_unit
from pipelibs.models import LibraryDeclaration

_log = logging.getLogger(__name__)

JOB_SCRIPT_TRUST = TrustLevel.SANDBOXED


def trust_for_library(decl: LibraryDeclaration) -> TrustLevel:
    return TrustLevel.TRUSTED if decl.trusted else TrustLevel.SANDBOXED


def effective_trust(recorded: bool, decl: LibraryDeclaration) -> TrustLevel:
    """Trust on resume: a library never gains trust it did not have when checkpointed."""
    return TrustLevel.TRUSTED if recorded and decl.trusted else TrustLevel.SANDBOXED


def mark_trusted(unit: CompiledUnit) -> CompiledUnit:
    """Recompile *unit* without the sandbox transforms."""
    if unit.trusted:
        return unit
    return compile_unit(unit.source, unit.filename, TrustLevel.TRUSTED)


class PermissionHook:
    """
    Decides whether a unit may perform a privileged operation.

    Trusted units may do anything. Sandboxed units may only use operations an
    administrator approved (SCRIPT_APPROVED_STEPS).
    """

    def __init__(self, approved: frozenset[str] | set[str] | None = None) -> None:
        self._approved = frozenset(approved) if approved is not None else settings.approved_steps

    @property
    def approved(self) -> frozenset[str]:
        return self._approved

    def is_permitted(self, trust: TrustLevel, operation: str) -> bool:
        return trust is TrustLevel.TRUSTED or operation in self._approved

    def check(self, trust: TrustLevel, operation: str, *, unit: str | None = None) -> None:
        if self.is_permitted(trust, operation):
            return
        _log.warning("Rejected privileged operation %s from %s", operation, unit or "<unknown>")
        raise RejectedAccessError(operation, unit)
