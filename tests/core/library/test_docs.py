"""Unit tests for global variable reference rendering."""

from types import MappingProxyType

from pipelibs.core.library.classifier import classify
from pipelibs.core.library.docs import render_doc, variable_reference
from pipelibs.core.library.provider import Snapshot
from pipelibs.models import DocFormatEnum
from tests.utils.library import tree


def test_text_is_escaped_and_preformatted() -> None:
    html = render_doc("deploy", "Use deploy('env') <carefully>")
    assert html.startswith('<pre class="global-variable-doc">')
    assert "&lt;carefully&gt;" in html
    assert "<carefully>" not in html


def test_html_passes_through_for_trusted_library() -> None:
    html = render_doc("deploy", "<b>Deploys</b>", DocFormatEnum.HTML, trusted=True)
    assert html == "<b>Deploys</b>"


def test_html_is_escaped_for_sandboxed_library() -> None:
    html = render_doc("deploy", "<script>x()</script>", DocFormatEnum.HTML, trusted=False)
    assert "<script>" not in html
    assert "&lt;script&gt;" in html


def test_missing_doc() -> None:
    html = render_doc("deploy", None)
    assert "No documentation for deploy" in html


def test_variable_reference_sorted_with_errors() -> None:
    files = tree(
        vars={"zeta": "x = 1\n", "alpha": "y = 2\n", "bad-name": "z = 3\n"},
        docs={"alpha": "Alpha helper"},
    )
    classified = classify(
        Snapshot(library="acme", revision="r1", files=MappingProxyType(files))
    )
    docs = variable_reference(classified)
    assert [d.name for d in docs] == ["alpha", "bad-name", "zeta"]
    alpha = docs[0]
    assert alpha.has_doc
    assert "Alpha helper" in alpha.html
    assert alpha.library == "acme"
    assert alpha.revision == "r1"
    assert docs[1].error is not None
    assert not docs[2].has_doc
    assert docs[2].error is None
