"""
Unit tests for the capability policy: module decisions, the import guard,
pruned builtins, the attribute guard, the audit hook and its read roots.

The audit hook is called directly here; it is never installed in the test
process because audit hooks cannot be removed.
"""

import builtins
import json
import logging
import os
import sys
from pathlib import Path

import pytest

from code_sandbox.guardrails.capabilities import (
    GETATTR_NAME,
    GUARD_NAME,
    AttributeGuard,
    CapabilityDenied,
    build_builtins,
    build_globals,
    compile_snippet,
    interpreter_read_roots,
    make_audit_hook,
    make_import_guard,
    module_capability,
)
from code_sandbox.models.execution import Capability


# -----------------------------------------------------------------------------
# Module decisions
# -----------------------------------------------------------------------------


class TestModuleCapability:
    def test_harmless_module_allowed(self) -> None:
        assert module_capability("json", ()) == (True, None)

    def test_submodule_matched_on_top_level(self) -> None:
        assert module_capability("http.client", ()) == (False, Capability.NETWORK)

    def test_any_listed_capability_unlocks_os(self) -> None:
        for cap in (Capability.FILESYSTEM, Capability.SUBPROCESS, Capability.ENVIRONMENT):
            assert module_capability("os", {cap}) == (True, None)
        assert module_capability("os", {Capability.NETWORK})[0] is False

    def test_always_denied(self) -> None:
        assert module_capability("sys", set(Capability)) == (False, None)
        assert module_capability("code_sandbox.execution", set(Capability)) == (False, None)


class TestImportGuard:
    def test_allowed_import_returns_module(self) -> None:
        guard = make_import_guard(())
        assert guard("json") is sys.modules["json"]

    def test_denied_import_names_capability(self) -> None:
        guard = make_import_guard(())
        with pytest.raises(CapabilityDenied, match="requires the 'subprocess' capability"):
            guard("subprocess")

    def test_denied_import_is_permission_error(self) -> None:
        with pytest.raises(PermissionError):
            make_import_guard(())("socket")

    def test_relative_import_denied(self) -> None:
        with pytest.raises(CapabilityDenied, match="Relative import"):
            make_import_guard(set(Capability))("sibling", None, None, (), 1)

    def test_from_import_of_denied_module_refused(self) -> None:
        with pytest.raises(CapabilityDenied, match="Module 'sys'"):
            make_import_guard(())("logging", None, None, ("sys",), 0)

    def test_from_import_of_plain_names_allowed(self) -> None:
        assert make_import_guard(())("json", None, None, ("dumps",), 0) is json


class TestBuiltins:
    def test_open_removed_without_filesystem(self) -> None:
        ns = build_builtins(())
        assert "open" not in ns
        assert "eval" not in ns
        assert "input" not in ns
        assert "globals" not in ns
        assert ns["print"] is builtins.print

    def test_open_kept_with_filesystem(self) -> None:
        assert build_builtins({Capability.FILESYSTEM})["open"] is builtins.open

    def test_import_replaced_by_guard(self) -> None:
        assert build_builtins(())["__import__"] is not builtins.__import__

    def test_globals_fresh_each_call(self) -> None:
        first = build_globals(())
        second = build_globals(())
        assert first is not second
        assert first["__name__"] == "__main__"
        assert first["__builtins__"] is not second["__builtins__"]

    def test_attribute_builtins_guarded(self) -> None:
        ns = build_globals(())
        assert ns["__builtins__"]["getattr"] is not builtins.getattr
        assert ns["__builtins__"]["vars"] is not builtins.vars
        assert callable(ns[GETATTR_NAME])
        assert callable(ns[GUARD_NAME])


# -----------------------------------------------------------------------------
# Attribute guard and snippet rewriting
# -----------------------------------------------------------------------------


class TestAttributeGuard:
    def test_module_attribute_leading_to_denied_module(self) -> None:
        with pytest.raises(CapabilityDenied, match="Module 'sys' is not available"):
            AttributeGuard(set(Capability)).getattr(logging, "sys")

    def test_capability_module_needs_grant(self) -> None:
        with pytest.raises(CapabilityDenied, match="'filesystem' capability"):
            AttributeGuard(()).getattr(logging, "os")
        assert AttributeGuard({Capability.FILESYSTEM}).getattr(logging, "os") is os

    def test_plain_attributes_pass(self) -> None:
        guard = AttributeGuard(())
        assert guard.getattr(logging, "WARNING") == logging.WARNING
        assert guard.getattr(object(), "missing", "fallback") == "fallback"

    def test_blocked_names_refused(self) -> None:
        guard = AttributeGuard(set(Capability))
        with pytest.raises(CapabilityDenied, match="'__globals__'"):
            guard.getattr(_sample_function, "__globals__")
        with pytest.raises(CapabilityDenied, match="'__code__'"):
            guard.setattr(_sample_function, "__code__", None)

    def test_non_string_name_is_type_error(self) -> None:
        with pytest.raises(TypeError):
            AttributeGuard(()).getattr(logging, 1)

    def test_vars_of_module_refused(self) -> None:
        with pytest.raises(CapabilityDenied, match="vars"):
            AttributeGuard(()).vars(logging)
        record = logging.makeLogRecord({"msg": "hello"})
        assert AttributeGuard(()).vars(record)["msg"] == "hello"

    def test_check_passes_values_through(self) -> None:
        guard = AttributeGuard(())
        assert guard.check(json) is json
        assert guard.check([sys]) == [sys]
        with pytest.raises(CapabilityDenied):
            guard.check(sys)


def _sample_function() -> None:
    pass


def _run_rewritten(code: str, granted=()) -> dict:
    namespace = build_globals(granted)
    exec(compile_snippet(code, "<sandbox>"), namespace)
    return namespace


class TestSnippetRewrite:
    def test_attribute_reads_go_through_guard(self) -> None:
        with pytest.raises(CapabilityDenied, match="Module 'sys'"):
            _run_rewritten("import logging\nx = logging.sys")

    def test_subscript_values_checked(self) -> None:
        with pytest.raises(CapabilityDenied, match="Module 'sys'"):
            _run_rewritten(
                "import logging, string\nx = string.Formatter().get_field('0.sys', (logging,), {})[0]",
                set(Capability),
            )

    def test_stores_to_blocked_attributes_rejected_before_running(self) -> None:
        with pytest.raises(CapabilityDenied, match="'__class__'"):
            compile_snippet("ran = True\nx.__class__ = int", "<sandbox>")

    def test_line_numbers_preserved(self) -> None:
        with pytest.raises(ZeroDivisionError) as exc_info:
            _run_rewritten("x = 1\ny = 2\nz = x.real / 0")
        tb = exc_info.value.__traceback__
        while tb.tb_next is not None:
            tb = tb.tb_next
        assert tb.tb_lineno == 3

    def test_ordinary_code_unchanged_in_behaviour(self) -> None:
        ns = _run_rewritten(
            "import json\n"
            "class A:\n"
            "    def __init__(self):\n"
            "        super().__init__()\n"
            "        self.items = {}\n"
            "a = A()\n"
            "a.items['k'] = [1, 2]\n"
            "a.items['k'][0] += 10\n"
            "match a.items:\n"
            "    case {'k': [first, *_]}:\n"
            "        out = json.dumps(first)\n"
        )
        assert ns["out"] == "11"

    def test_private_attributes_keep_name_mangling(self) -> None:
        ns = _run_rewritten(
            "class Box:\n"
            "    def __init__(self):\n"
            "        self.__value = 5\n"
            "    def get(self):\n"
            "        return self.__value\n"
            "out = Box().get()\n"
        )
        assert ns["out"] == 5

    @pytest.mark.parametrize(
        "code",
        [
            "_guard_ = print",
            "def _getattr_(obj, name):\n    pass",
            "import json as _guard_",
            "for _guard_ in []:\n    pass",
            "f = lambda _getattr_: 1",
            "match 1:\n    case _guard_:\n        pass",
        ],
    )
    def test_rebinding_guard_names_rejected(self, code: str) -> None:
        with pytest.raises(CapabilityDenied, match="Binding the name"):
            compile_snippet(code, "<sandbox>")

    def test_syntax_error_propagates(self) -> None:
        with pytest.raises(SyntaxError):
            compile_snippet("print(", "<sandbox>")


# -----------------------------------------------------------------------------
# Audit hook
# -----------------------------------------------------------------------------


@pytest.fixture
def read_root(tmp_path: Path) -> str:
    root = tmp_path / "lib"
    root.mkdir()
    return os.path.realpath(str(root))


class TestAuditHook:
    def test_read_under_root_allowed(self, read_root: str) -> None:
        hook = make_audit_hook((), (read_root,))
        hook("open", (os.path.join(read_root, "mod.py"), "r", os.O_RDONLY))
        hook("os.listdir", (read_root,))

    def test_read_outside_root_denied(self, read_root: str) -> None:
        hook = make_audit_hook((), (read_root,))
        with pytest.raises(CapabilityDenied, match="'filesystem' capability"):
            hook("open", ("/etc/passwd", "r", os.O_RDONLY))

    def test_sibling_prefix_not_treated_as_under_root(self, read_root: str) -> None:
        hook = make_audit_hook((), (read_root,))
        with pytest.raises(CapabilityDenied):
            hook("open", (read_root + "-other/x.py", "r", os.O_RDONLY))

    def test_write_under_root_denied(self, read_root: str) -> None:
        hook = make_audit_hook((), (read_root,))
        with pytest.raises(CapabilityDenied, match="Writing to"):
            hook("open", (os.path.join(read_root, "new.py"), "w", os.O_WRONLY | os.O_CREAT))

    def test_write_flags_without_mode_denied(self, read_root: str) -> None:
        hook = make_audit_hook((), (read_root,))
        with pytest.raises(CapabilityDenied):
            hook("open", (os.path.join(read_root, "x"), None, os.O_RDWR))

    def test_file_descriptor_open_not_path_checked(self, read_root: str) -> None:
        make_audit_hook((), (read_root,))("open", (3, "r", os.O_RDONLY))

    def test_filesystem_grant_allows_any_open(self, read_root: str) -> None:
        hook = make_audit_hook({Capability.FILESYSTEM}, (read_root,))
        hook("open", ("/tmp/out.txt", "w", os.O_WRONLY | os.O_CREAT))
        hook("os.remove", ("/tmp/out.txt", -1))

    def test_filesystem_mutation_denied(self, read_root: str) -> None:
        hook = make_audit_hook((), (read_root,))
        with pytest.raises(CapabilityDenied, match="'os.remove'"):
            hook("os.remove", ("/tmp/out.txt", -1))

    @pytest.mark.parametrize("event", ["socket.connect", "socket.getaddrinfo", "urllib.Request"])
    def test_network_events(self, read_root: str, event: str) -> None:
        with pytest.raises(CapabilityDenied, match="'network'"):
            make_audit_hook((), (read_root,))(event, ())
        make_audit_hook({Capability.NETWORK}, (read_root,))(event, ())

    @pytest.mark.parametrize("event", ["subprocess.Popen", "os.system", "os.kill"])
    def test_subprocess_events(self, read_root: str, event: str) -> None:
        with pytest.raises(CapabilityDenied, match="'subprocess'"):
            make_audit_hook({Capability.FILESYSTEM}, (read_root,))(event, ())
        make_audit_hook({Capability.SUBPROCESS}, (read_root,))(event, ())

    def test_environment_mutation(self, read_root: str) -> None:
        with pytest.raises(CapabilityDenied, match="'environment'"):
            make_audit_hook((), (read_root,))("os.putenv", ("K", "V"))
        make_audit_hook({Capability.ENVIRONMENT}, (read_root,))("os.putenv", ("K", "V"))

    def test_unrelated_events_pass(self, read_root: str) -> None:
        hook = make_audit_hook((), (read_root,))
        hook("import", ("json", None, sys.path, sys.meta_path, sys.path_hooks))
        hook("exec", (compile("1", "<x>", "eval"),))

    @pytest.mark.parametrize(
        "event",
        ["ctypes.dlopen", "ctypes.call_function", "code.__new__", "gc.get_objects", "resource.setrlimit"],
    )
    def test_native_and_heap_events_denied_with_every_grant(self, read_root: str, event: str) -> None:
        with pytest.raises(CapabilityDenied, match="is not available in the sandbox"):
            make_audit_hook(set(Capability), (read_root,))(event, ())


# -----------------------------------------------------------------------------
# Read roots
# -----------------------------------------------------------------------------


class TestInterpreterReadRoots:
    def test_include_stdlib(self) -> None:
        roots = interpreter_read_roots()
        stdlib = os.path.realpath(os.path.dirname(os.__file__))
        assert any(stdlib == r or stdlib.startswith(r + os.sep) for r in roots)
        assert os.sep not in roots

    def test_exclude_working_directory_and_project_paths(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)
        monkeypatch.syspath_prepend(str(tmp_path))
        cwd = os.path.realpath(str(tmp_path))
        roots = interpreter_read_roots()
        assert not any(cwd == r or cwd.startswith(r + os.sep) for r in roots)

    def test_root_containing_working_directory_dropped(self) -> None:
        stdlib = os.path.realpath(os.path.dirname(os.__file__))
        roots = interpreter_read_roots(cwd=os.path.join(stdlib, "json"))
        assert not any(stdlib == r or stdlib.startswith(r + os.sep) for r in roots)
