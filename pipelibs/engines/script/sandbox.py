"""
Script engine: compile and instantiate units at a trust level.

Sandboxed units are compiled with RestrictedPython and run with guarded
builtins. Allowed: dict, list, str, int, float, bool, range, enumerate, zip,
sorted, len, round, min, max, sum, abs, json, datetime/date/time/timedelta,
class definitions, plus whatever the caller injects (steps, env, log, global
variables). Blocked: open, exec, eval, compile, ``_``-prefixed names and
attributes, and any import that the caller's importer does not provide.

Trusted units are compiled with the regular compiler and get the full
builtins; the caller's importer can still put library modules first.
"""

import builtins
import hashlib
import json
import logging
import operator
import threading
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from types import CodeType, FunctionType, MethodType
from typing import Any

from RestrictedPython import compile_restricted
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safe_builtins,
    safer_getattr,
)

_log = logging.getLogger(__name__)

_CACHE_MAX_SIZE = 512
_code_cache: OrderedDict[tuple[str, str, str], CodeType] = OrderedDict()
_cache_lock = threading.Lock()


class TrustLevel(str, Enum):
    """Trust tag carried by every compiled unit."""

    TRUSTED = "trusted"
    SANDBOXED = "sandboxed"


@dataclass(frozen=True)
class CompiledUnit:
    filename: str
    code: CodeType = field(repr=False, compare=False)
    trust: TrustLevel
    source: str = field(repr=False)

    @property
    def trusted(self) -> bool:
        return self.trust is TrustLevel.TRUSTED

    def defines(self, value: Any, module: str) -> bool:
        """
        True when *value* is something this unit's own code produced and may be
        shown to sandboxed callers: functions and classes written in this file,
        instances of those classes, and plain data built from them.

        Anything imported or injected (host functions, builtins, bound steps,
        modules, foreign objects) is not.
        """
        return _defined_by(value, self.filename, module, set())


_PLAIN_SCALARS = (type(None), bool, int, float, complex, str, bytes, datetime, date, time, timedelta)


def _defined_by(value: Any, filename: str, module: str, seen: set[int]) -> bool:
    if isinstance(value, _PLAIN_SCALARS):
        return True
    if isinstance(value, MethodType):
        return _defined_by(value.__func__, filename, module, seen) and _defined_by(
            value.__self__, filename, module, seen
        )
    if isinstance(value, FunctionType):
        return value.__code__.co_filename == filename
    if isinstance(value, type):
        return value.__module__ == module
    if id(value) in seen:
        return True
    if isinstance(value, (list, tuple, set, frozenset, dict)):
        seen.add(id(value))
        items = value.items() if isinstance(value, dict) else ((v, None) for v in value)
        return all(
            _defined_by(k, filename, module, seen) and _defined_by(v, filename, module, seen)
            for k, v in items
        )
    return type(value).__module__ == module


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------


def compile_script(script: str, filename: str = "<script>") -> Any:
    """
    Compile script with RestrictedPython. Raises SyntaxError or other on failure.

    Returns a code object suitable for exec(bytecode, globals, locals).
    """
    code = compile_restricted(script, filename, "exec")
    if code is None:
        raise SyntaxError("RestrictedPython: compile failed")
    return code


def _compile(source: str, filename: str, trust: TrustLevel) -> CodeType:
    if trust is TrustLevel.TRUSTED:
        return compile(source, filename, "exec", dont_inherit=True)
    return compile_script(source, filename)


def compile_unit(
    source: str,
    filename: str = "<script>",
    trust: TrustLevel = TrustLevel.SANDBOXED,
) -> CompiledUnit:
    """Compile *source* at *trust*; code objects are cached by (source, filename, trust)."""
    digest = hashlib.sha256(source.encode("utf-8", errors="surrogatepass")).hexdigest()
    key = (digest, filename, trust.value)
    with _cache_lock:
        code = _code_cache.get(key)
        if code is not None:
            _code_cache.move_to_end(key)
    if code is None:
        code = _compile(source, filename, trust)
        with _cache_lock:
            _code_cache[key] = code
            if len(_code_cache) > _CACHE_MAX_SIZE:
                _code_cache.popitem(last=False)
    return CompiledUnit(filename=filename, code=code, trust=trust, source=source)


def clear_compile_cache() -> None:
    with _cache_lock:
        _code_cache.clear()


# ---------------------------------------------------------------------------
# Restricted globals
# ---------------------------------------------------------------------------


_INPLACE_OPS: dict[str, Callable[[Any, Any], Any]] = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "&=": operator.iand,
    "|=": operator.ior,
    "^=": operator.ixor,
}


def _inplacevar(op: str, x: Any, y: Any) -> Any:
    fn = _INPLACE_OPS.get(op)
    if fn is None:
        raise SyntaxError(f"Augmented assignment '{op}' is not allowed")
    return fn(x, y)


def _apply(f: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    return f(*args, **kwargs)


class SandboxedType(type):
    """Metaclass of classes defined in sandboxed code: their instances accept attribute writes."""

    def __new__(mcs, name: str, bases: tuple, namespace: dict[str, Any]) -> type:
        namespace.setdefault("_guarded_writes", True)
        return super().__new__(mcs, name, bases, namespace)


def make_print_collector(emit: Callable[[str], None]) -> type:
    """``_print_`` factory routing ``print(...)`` in sandboxed code to *emit*."""

    class _Printer:
        def __init__(self, _getattr_: Any = None) -> None:
            self._lines: list[str] = []

        def _call_print(self, *objects: Any, **kwargs: Any) -> None:
            sep = kwargs.get("sep", " ")
            end = kwargs.get("end", "\n")
            text = sep.join(str(o) for o in objects) + end
            self._lines.append(text)
            emit(text.rstrip("\n"))

        def __call__(self) -> str:
            return "".join(self._lines)

    return _Printer


def _make_safe_builtins(importer: Callable[..., Any] | None) -> dict[str, Any]:
    """Builtins + class support + the caller's importer. safe_builtins already has range, len, etc."""
    safe = dict(safe_builtins)
    safe["__build_class__"] = builtins.__build_class__
    safe["__import__"] = importer or _no_import
    return safe


def _no_import(name: str, *args: Any, **kwargs: Any) -> Any:
    raise ImportError(f"Import of '{name}' is not allowed in sandboxed scripts")


def _make_guard_globals() -> dict[str, Any]:
    """Guards required by RestrictedPython's rewritten bytecode."""
    return {
        "_getattr_": safer_getattr,
        "_getiter_": default_guarded_getiter,
        "_getitem_": default_guarded_getitem,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_write_": full_write_guard,
        "_inplacevar_": _inplacevar,
        "_apply_": _apply,
        "__metaclass__": SandboxedType,
    }


def _make_extra_globals() -> dict[str, Any]:
    """Extra safe symbols: json, datetime, date, time, timedelta."""
    return {
        "json": json,
        "datetime": datetime,
        "date": date,
        "time": time,
        "timedelta": timedelta,
    }


def build_restricted_globals(
    context_dict: dict[str, Any],
    *,
    name: str = "script",
    importer: Callable[..., Any] | None = None,
    emit: Callable[[str], None] | None = None,
) -> dict[str, Any]:
    """
    Build the globals dict for exec(compiled, globals): safe builtins, guards,
    extra (json, datetime), and the caller's context (steps, env, log, variables).
    """
    safe = _make_safe_builtins(importer)
    g: dict[str, Any] = {
        "__builtins__": safe,
        "__name__": name,
    }
    g.update(_make_guard_globals())
    g.update(_make_extra_globals())
    g["_print_"] = make_print_collector(emit or _log.info)
    # Common container/utility types that safe_builtins leaves out.
    for n in ("list", "dict", "set", "tuple", "len", "range", "min", "max", "sum", "abs", "sorted",
              "enumerate", "any", "all", "reversed", "map", "filter"):
        obj = safe.get(n, getattr(builtins, n, None))
        if obj is not None:
            g[n] = obj
    g.update(context_dict)
    return g


def build_trusted_globals(
    context_dict: dict[str, Any],
    *,
    name: str = "script",
    importer: Callable[..., Any] | None = None,
) -> dict[str, Any]:
    """Globals for trusted units: full builtins, optional importer override."""
    full = dict(vars(builtins))
    if importer is not None:
        full["__import__"] = importer
    g: dict[str, Any] = {
        "__builtins__": full,
        "__name__": name,
    }
    g.update(context_dict)
    return g


def instantiate(
    unit: CompiledUnit,
    context_dict: dict[str, Any],
    *,
    name: str = "script",
    namespace: dict[str, Any] | None = None,
    importer: Callable[..., Any] | None = None,
    emit: Callable[[str], None] | None = None,
) -> tuple[dict[str, Any], frozenset[str]]:
    """
    Run *unit* once in a fresh namespace (or *namespace*, e.g. a module dict).
    Globals are chosen by the unit's own trust level.

    Returns the namespace and the names that were there before the unit ran
    (builtins, guards, injected context), i.e. everything the unit did not define.
    """
    if unit.trusted:
        g = build_trusted_globals(context_dict, name=name, importer=importer)
    else:
        g = build_restricted_globals(context_dict, name=name, importer=importer, emit=emit)
    if namespace is None:
        namespace = g
    else:
        namespace.update(g)
    provided = frozenset(namespace)
    exec(unit.code, namespace)  # noqa: S102 - trust checked at compile time
    return namespace, provided
