"""Unit tests for engines.script.steps, trust and the env/log modules."""

from unittest.mock import patch

import pytest

from pipelibs.core.errors import RejectedAccessError, StepFailedError
from pipelibs.engines.script.modules import make_env_module, make_log_module
from pipelibs.engines.script.sandbox import TrustLevel, compile_unit
from pipelibs.engines.script.steps import (
    StepRegistry,
    build_unit_bindings,
    default_step_registry,
)
from pipelibs.engines.script.trust import (
    PermissionHook,
    effective_trust,
    mark_trusted,
    trust_for_library,
)
from pipelibs.models import LibraryDeclaration


def _bindings(trust: TrustLevel, hook: PermissionHook | None = None) -> dict:
    return build_unit_bindings(
        default_step_registry(),
        trust=trust,
        unit="test.py",
        context=None,
        hook=hook or PermissionHook(frozenset()),
    )


class TestStepRegistry:
    def test_register_as_decorator(self) -> None:
        registry = StepRegistry()

        @registry.register("hello", privileged=True)
        def _hello(inv, who):  # type: ignore[no-untyped-def]
            """Say hello."""
            return "hello " + who

        definition = registry.get("hello")
        assert definition is not None
        assert definition.privileged
        assert definition.description == "Say hello."
        assert "hello" in registry

    def test_invalid_name_rejected(self) -> None:
        with pytest.raises(ValueError):
            StepRegistry().register("_private", lambda inv: None)

    def test_defaults(self) -> None:
        names = default_step_registry().names()
        assert {"echo", "error", "library_resource", "host_env", "read_host_file"} <= set(names)


class TestBoundSteps:
    def test_bindings_contain_steps_env_log(self) -> None:
        b = _bindings(TrustLevel.SANDBOXED)
        assert {"echo", "steps", "env", "log"} <= set(b)
        assert b["steps"].echo is b["echo"]

    def test_privileged_step_rejected_when_sandboxed(self) -> None:
        b = _bindings(TrustLevel.SANDBOXED)
        with pytest.raises(RejectedAccessError) as exc:
            b["host_env"]("HOME")
        assert exc.value.operation == "host_env"
        assert exc.value.unit == "test.py"

    def test_privileged_step_allowed_when_trusted(self) -> None:
        b = _bindings(TrustLevel.TRUSTED)
        with patch.dict("os.environ", {"PIPELIBS_TEST": "x"}):
            assert b["host_env"]("PIPELIBS_TEST") == "x"

    def test_approved_step_allowed_when_sandboxed(self) -> None:
        b = _bindings(TrustLevel.SANDBOXED, PermissionHook({"host_env"}))
        with patch.dict("os.environ", {"PIPELIBS_TEST": "y"}):
            assert b["host_env"]("PIPELIBS_TEST") == "y"

    def test_error_step_raises(self) -> None:
        b = _bindings(TrustLevel.SANDBOXED)
        with pytest.raises(StepFailedError, match="boom"):
            b["error"]("boom")

    def test_rejected_access_is_permission_error(self) -> None:
        assert issubclass(RejectedAccessError, PermissionError)


class TestTrust:
    def test_trust_for_library(self) -> None:
        assert trust_for_library(LibraryDeclaration(name="a", location="x")) is TrustLevel.TRUSTED
        untrusted = LibraryDeclaration(name="b", location="x", trusted=False)
        assert trust_for_library(untrusted) is TrustLevel.SANDBOXED

    def test_effective_trust_never_escalates(self) -> None:
        trusted = LibraryDeclaration(name="a", location="x")
        untrusted = LibraryDeclaration(name="a", location="x", trusted=False)
        assert effective_trust(True, trusted) is TrustLevel.TRUSTED
        assert effective_trust(False, trusted) is TrustLevel.SANDBOXED
        assert effective_trust(True, untrusted) is TrustLevel.SANDBOXED

    def test_mark_trusted_recompiles(self) -> None:
        unit = compile_unit("_private = 1", "a.py", TrustLevel.TRUSTED)
        assert mark_trusted(unit) is unit
        sandboxed = compile_unit("x = 1", "b.py")
        promoted = mark_trusted(sandboxed)
        assert promoted.trusted
        assert promoted.filename == "b.py"
        assert promoted.source == sandboxed.source


class TestEnvModule:
    def test_job_env_always_readable(self) -> None:
        env = make_env_module(job_env={"JOB_NAME": "folder/job"}, env_whitelist=frozenset())
        assert env.get("JOB_NAME") == "folder/job"

    def test_whitelist_applies_to_host_env(self) -> None:
        env = make_env_module(env_whitelist={"BUILD_NUMBER"})
        with patch.dict("os.environ", {"BUILD_NUMBER": "42", "SECRET_TOKEN": "s"}):
            assert env.get_int("BUILD_NUMBER") == 42
            assert env.get("SECRET_TOKEN") is None
            assert env.get("SECRET_TOKEN", "none") == "none"

    def test_unrestricted_when_no_whitelist(self) -> None:
        env = make_env_module()
        with patch.dict("os.environ", {"SECRET_TOKEN": "s", "FLAG": "yes"}):
            assert env.get("SECRET_TOKEN") == "s"
            assert env.get_bool("FLAG") is True


def test_log_module_passes_extra() -> None:
    with patch("pipelibs.engines.script.modules.log.logger") as m:
        log = make_log_module(extra={"job_id": "j1"})
        log.info("hello %s", "x")
    m.log.assert_called_once()
    assert m.log.call_args.kwargs["extra"] == {"job_id": "j1"}
