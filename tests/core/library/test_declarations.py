"""Unit tests for library declarations and requests."""

import pytest
from sqlmodel import Session

from pipelibs.core.library import revision_cache
from pipelibs.core.library.declarations import (
    LibraryRegistry,
    LibraryRequest,
    register_library,
    unregister_library,
)
from pipelibs.models import LibraryDeclaration
from tests.utils.library import create_library


class TestLibraryRequest:
    def test_parse_name_only(self) -> None:
        assert LibraryRequest.parse("acme") == LibraryRequest("acme", None)

    def test_parse_with_version(self) -> None:
        req = LibraryRequest.parse(" acme@release/1.2 ")
        assert req == LibraryRequest("acme", "release/1.2")
        assert str(req) == "acme@release/1.2"

    @pytest.mark.parametrize("spec", ["", "@v1", "acme@", "acme@v 1"])
    def test_parse_invalid(self, spec: str) -> None:
        with pytest.raises(ValueError):
            LibraryRequest.parse(spec)


class TestVisibility:
    def test_unscoped_visible_to_all(self) -> None:
        decl = LibraryDeclaration(name="a", location="x")
        assert decl.visible_to(None)
        assert decl.visible_to("any/job")

    def test_scoped_to_folder(self) -> None:
        decl = LibraryDeclaration(name="a", location="x", job_scope="team-a/")
        assert decl.visible_to("team-a/build")
        assert decl.visible_to("team-a")
        assert not decl.visible_to("team-ab/build")
        assert not decl.visible_to(None)


class TestRegistry:
    def test_register_and_get(self, db: Session, registry: LibraryRegistry) -> None:
        create_library(db, "acme", default_version="main")
        decl = registry.get("acme")
        assert decl is not None
        assert decl.default_version == "main"
        assert [d.name for d in registry.declarations()] == ["acme"]

    def test_reregister_updates_and_invalidates(self, db: Session, registry: LibraryRegistry) -> None:
        create_library(db, "acme")
        revision_cache.set_revision("acme", None, "old")
        register_library(db, "acme", default_version="v2")
        assert registry.get("acme").default_version == "v2"  # type: ignore[union-attr]
        assert revision_cache.get_revision("acme", None) is None

    def test_unknown_field_rejected(self, db: Session) -> None:
        with pytest.raises(ValueError, match="Unknown declaration fields"):
            register_library(db, "acme", location="x", colour="blue")

    def test_unregister(self, db: Session, registry: LibraryRegistry) -> None:
        create_library(db, "acme")
        assert unregister_library(db, "acme") is True
        assert unregister_library(db, "acme") is False
        assert registry.get("acme") is None

    def test_implicit_for(self, db: Session, registry: LibraryRegistry) -> None:
        create_library(db, "global-steps", implicit=True)
        create_library(db, "team-steps", implicit=True, job_scope="team-a")
        create_library(db, "explicit-only")
        assert [d.name for d in registry.implicit_for("team-a/job")] == [
            "global-steps",
            "team-steps",
        ]
        assert [d.name for d in registry.implicit_for("team-b/job")] == ["global-steps"]
