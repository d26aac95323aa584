"""
Script engine (Python, RestrictedPython) for job scripts and library code.

Exports: PipelineScriptExecutor, TrustLevel, compile_unit, build_restricted_globals.
"""

from .executor import PipelineScriptExecutor, ScriptTimeoutError, parse_library_directives
from .sandbox import CompiledUnit, TrustLevel, build_restricted_globals, compile_unit

__all__ = [
    "CompiledUnit",
    "PipelineScriptExecutor",
    "ScriptTimeoutError",
    "TrustLevel",
    "build_restricted_globals",
    "compile_unit",
    "parse_library_directives",
]
