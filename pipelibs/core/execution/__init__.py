"""
Execution contexts and their lifecycle (start, checkpoint, resume, finish).
"""

from pipelibs.core.execution.context import ExecutionContext, LoadedLibrary
from pipelibs.core.execution.lifecycle import LifecycleManager
from pipelibs.core.execution.store import ExecutionStore

__all__ = [
    "ExecutionContext",
    "ExecutionStore",
    "LifecycleManager",
    "LoadedLibrary",
]
