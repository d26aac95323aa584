"""
Global variable reference pages, rendered with Jinja2.

``vars/<name>.txt`` is plain text by default and shown preformatted. A
library declared with ``doc_format=html`` ships HTML fragments; those are
passed through only for trusted libraries and escaped otherwise.
"""

from dataclasses import dataclass

from jinja2 import Environment

from pipelibs.core.library.classifier import ClassifiedLibrary
from pipelibs.models import DocFormatEnum

_DOC_ENV: Environment | None = None

_TEXT_TEMPLATE = '<pre class="global-variable-doc">{{ text }}</pre>'
_MISSING_TEMPLATE = '<p class="global-variable-doc missing">No documentation for {{ name }}.</p>'


def _get_doc_env() -> Environment:
    global _DOC_ENV
    if _DOC_ENV is None:
        _DOC_ENV = Environment(autoescape=True)
    return _DOC_ENV


@dataclass(frozen=True)
class VariableDoc:
    name: str
    library: str
    revision: str
    html: str
    has_doc: bool
    error: str | None = None


def render_doc(
    name: str,
    text: str | None,
    doc_format: DocFormatEnum = DocFormatEnum.TEXT,
    *,
    trusted: bool = True,
) -> str:
    """HTML for one variable's documentation."""
    env = _get_doc_env()
    if text is None:
        return env.from_string(_MISSING_TEMPLATE).render(name=name)
    if doc_format == DocFormatEnum.HTML and trusted:
        return text
    return env.from_string(_TEXT_TEMPLATE).render(text=text)


def variable_reference(
    classified: ClassifiedLibrary,
    doc_format: DocFormatEnum = DocFormatEnum.TEXT,
    *,
    trusted: bool = True,
) -> list[VariableDoc]:
    """Docs for every global variable of a library revision, sorted by name."""
    docs: list[VariableDoc] = []
    for name in sorted(classified.variables):
        var = classified.variables[name]
        docs.append(
            VariableDoc(
                name=name,
                library=classified.library,
                revision=classified.revision,
                html=render_doc(name, var.doc, doc_format, trusted=trusted),
                has_doc=var.doc is not None,
                error=str(var.error) if var.error is not None else None,
            )
        )
    return docs
