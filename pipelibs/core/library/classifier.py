"""
Library tree classifier.

Layout of a library revision:

    src/org/acme/Utils.py      -> module ``org.acme.Utils``
    src/org/acme/__init__.py   -> package ``org.acme``
    vars/deploy.py             -> global variable ``deploy``
    vars/deploy.txt            -> documentation of ``deploy``
    resources/org/acme/x.json  -> resource ``org/acme/x.json``

Everything else is ignored. Classification is a pure function of the snapshot
content: the same revision always yields equal output.
"""

import keyword
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from pipelibs.core.errors import StructureError
from pipelibs.core.library.provider import Snapshot

_log = logging.getLogger(__name__)

SRC_DIR = "src"
VARS_DIR = "vars"
RESOURCES_DIR = "resources"
SOURCE_SUFFIX = ".py"
DOC_SUFFIX = ".txt"


@dataclass(frozen=True)
class ClassSource:
    module: str
    path: str
    source: str | None
    is_package: bool = False
    # Derived from path and content; excluded so equal trees compare equal.
    error: StructureError | None = field(default=None, compare=False)


@dataclass(frozen=True)
class VariableSource:
    name: str
    path: str
    source: str | None
    doc: str | None = None
    error: StructureError | None = field(default=None, compare=False)

    def require_source(self) -> str:
        """Source text, or the deferred StructureError for a malformed file."""
        if self.error is not None:
            raise self.error
        assert self.source is not None
        return self.source


@dataclass(frozen=True, eq=False)
class ClassifiedLibrary:
    library: str
    revision: str
    classes: Mapping[str, ClassSource]
    variables: Mapping[str, VariableSource]
    resources: Mapping[str, bytes]

    @property
    def key(self) -> tuple[str, str]:
        return (self.library, self.revision)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ClassifiedLibrary):
            return NotImplemented
        return (
            self.key == other.key
            and dict(self.classes) == dict(other.classes)
            and dict(self.variables) == dict(other.variables)
            and dict(self.resources) == dict(other.resources)
        )

    def __hash__(self) -> int:
        return hash(self.key)


def is_valid_name(name: str) -> bool:
    return name.isidentifier() and not keyword.iskeyword(name)


def _decode(library: str, path: str, data: bytes) -> tuple[str | None, StructureError | None]:
    try:
        return data.decode("utf-8"), None
    except UnicodeDecodeError as e:
        return None, StructureError(path, f"not valid UTF-8 ({e.reason})", library=library)


def _classify_source(library: str, path: str, data: bytes) -> ClassSource | None:
    rel = path[len(SRC_DIR) + 1 :]
    if not rel.endswith(SOURCE_SUFFIX):
        return None
    segments = rel[: -len(SOURCE_SUFFIX)].split("/")
    is_package = segments[-1] == "__init__"
    if is_package:
        segments = segments[:-1]
        if not segments:
            return ClassSource(
                module="__init__",
                path=path,
                source=None,
                error=StructureError(path, "src/ itself cannot be a package", library=library),
            )
    module = ".".join(segments)
    bad = [s for s in segments if not is_valid_name(s)]
    if bad:
        return ClassSource(
            module=module,
            path=path,
            source=None,
            is_package=is_package,
            error=StructureError(
                path, f"'{bad[0]}' is not a valid module name segment", library=library
            ),
        )
    source, error = _decode(library, path, data)
    return ClassSource(module=module, path=path, source=source, is_package=is_package, error=error)


def classify(snapshot: Snapshot) -> ClassifiedLibrary:
    """Split a snapshot into class sources, global variables and resources."""
    library = snapshot.library
    classes: dict[str, ClassSource] = {}
    var_sources: dict[str, tuple[str, bytes]] = {}
    var_docs: dict[str, bytes] = {}
    resources: dict[str, bytes] = {}

    for path in sorted(snapshot.files):
        data = snapshot.files[path]
        top, _, rest = path.partition("/")
        if not rest:
            continue
        if top == SRC_DIR:
            entry = _classify_source(library, path, data)
            if entry is not None:
                classes[entry.module] = entry
        elif top == VARS_DIR:
            if "/" in rest:
                _log.debug("Ignoring nested file %s in %s", path, library)
                continue
            if rest.endswith(SOURCE_SUFFIX):
                var_sources[rest[: -len(SOURCE_SUFFIX)]] = (path, data)
            elif rest.endswith(DOC_SUFFIX):
                var_docs[rest[: -len(DOC_SUFFIX)]] = data
        elif top == RESOURCES_DIR:
            resources[rest] = data

    variables: dict[str, VariableSource] = {}
    for name in sorted(var_sources):
        path, data = var_sources[name]
        doc_bytes = var_docs.get(name)
        doc = doc_bytes.decode("utf-8", errors="replace") if doc_bytes is not None else None
        if not is_valid_name(name):
            variables[name] = VariableSource(
                name=name,
                path=path,
                source=None,
                doc=doc,
                error=StructureError(
                    path, f"'{name}' is not a valid global variable name", library=library
                ),
            )
            continue
        source, error = _decode(library, path, data)
        variables[name] = VariableSource(name=name, path=path, source=source, doc=doc, error=error)

    return ClassifiedLibrary(
        library=library,
        revision=snapshot.revision,
        classes=MappingProxyType(classes),
        variables=MappingProxyType(variables),
        resources=MappingProxyType(resources),
    )
