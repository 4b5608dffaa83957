"""
Capability policy for sandboxed code.

Four layers, all driven by the set of granted capabilities:

- the import guard refuses modules a snippet may not import directly;
- the pruned builtins remove primitives the snippet may not call;
- the attribute guard rewrites the snippet so attribute reads and the values
  of calls and subscripts are checked at run time, so a denied module cannot
  be reached through an allowed one (``logging.sys``);
- the audit hook (sys.addaudithook) refuses the underlying operations, so
  reaching them indirectly fails as well.

The audit hook is permanent for the interpreter that installs it, so it is
only ever installed inside the disposable sandbox process.
"""

from __future__ import annotations

import ast
import builtins
import os
import site
import sysconfig
from types import ModuleType
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Tuple

from code_sandbox.models.execution import Capability

# Modules importable only when the capability is granted (matched on the top-level name)
CAPABILITY_MODULES: Dict[Capability, FrozenSet[str]] = {
    Capability.FILESYSTEM: frozenset(
        {
            "os", "pathlib", "shutil", "tempfile", "glob", "fileinput", "filecmp",
            "zipfile", "tarfile", "gzip", "bz2", "lzma", "sqlite3", "dbm", "mmap",
        }
    ),
    Capability.NETWORK: frozenset(
        {
            "socket", "ssl", "http", "urllib", "ftplib", "smtplib", "poplib", "imaplib",
            "xmlrpc", "asyncio", "selectors", "socketserver", "requests", "httpx", "aiohttp", "urllib3",
        }
    ),
    Capability.SUBPROCESS: frozenset({"os", "subprocess", "multiprocessing", "pty", "signal", "concurrent"}),
    Capability.ENVIRONMENT: frozenset({"os"}),
}

# Never importable from a snippet: interpreter internals and native escape hatches
ALWAYS_DENIED_MODULES: FrozenSet[str] = frozenset(
    {
        "sys", "builtins", "importlib", "ctypes", "_ctypes", "cffi", "gc", "inspect", "code", "codeop",
        "runpy", "marshal", "pickle", "_pickle", "shelve", "posix", "nt", "_io", "_thread",
        "threading", "atexit", "faulthandler", "resource", "pdb", "bdb", "traceback", "linecache",
        "types", "_posixsubprocess", "_multiprocessing", "_socket", "_ssl", "site", "sysconfig",
        "_imp", "zipimport", "pkgutil", "pydoc", "code_sandbox",
    }
)

# Removed from the snippet's builtins regardless of grants
REMOVED_BUILTINS: FrozenSet[str] = frozenset(
    {
        "input", "breakpoint", "help", "exit", "quit", "eval", "exec", "compile", "globals", "locals",
        "copyright", "credits", "license",
    }
)

# Dunder attributes ordinary code needs, e.g. super().__init__()
ALLOWED_DUNDERS: FrozenSet[str] = frozenset(
    {
        "__init__", "__name__", "__doc__", "__qualname__", "__module__", "__len__", "__iter__",
        "__next__", "__enter__", "__exit__", "__str__", "__repr__", "__eq__", "__hash__",
        "__add__", "__call__", "__contains__", "__getitem__", "__setitem__", "__lt__",
    }
)

# Frame, code and generator internals that lead back to real globals
INTROSPECTION_ATTRIBUTES: FrozenSet[str] = frozenset(
    {
        "f_globals", "f_locals", "f_builtins", "f_back", "f_code", "tb_frame", "tb_next",
        "gi_frame", "gi_code", "cr_frame", "cr_code", "ag_frame", "ag_code", "co_code", "func_globals",
    }
)

# Audit events denied unless the capability is granted.
# Entries ending in "." match any event with that prefix.
_FILESYSTEM_EVENTS: Tuple[str, ...] = (
    "os.remove", "os.rename", "os.mkdir", "os.rmdir", "os.chmod", "os.chown", "os.chflags",
    "os.link", "os.symlink", "os.truncate", "os.utime", "os.chdir", "os.mkfifo", "os.mknod",
    "os.setxattr", "os.removexattr", "shutil.", "tempfile.",
)
_NETWORK_EVENTS: Tuple[str, ...] = ("socket.", "urllib.Request", "http.client.", "ftplib.", "smtplib.", "poplib.", "imaplib.")
_SUBPROCESS_EVENTS: Tuple[str, ...] = (
    "subprocess.Popen", "os.system", "os.exec", "os.spawn", "os.posix_spawn", "os.fork",
    "os.forkpty", "os.startfile", "os.kill", "os.killpg", "signal.pthread_kill", "pty.spawn",
)
_ENVIRONMENT_EVENTS: Tuple[str, ...] = ("os.putenv", "os.unsetenv")

CAPABILITY_EVENTS: Dict[Capability, Tuple[str, ...]] = {
    Capability.FILESYSTEM: _FILESYSTEM_EVENTS,
    Capability.NETWORK: _NETWORK_EVENTS,
    Capability.SUBPROCESS: _SUBPROCESS_EVENTS,
    Capability.ENVIRONMENT: _ENVIRONMENT_EVENTS,
}

# Denied whatever is granted: native calls, code forging, heap walking, raising our own rlimits
ALWAYS_DENIED_EVENTS: Tuple[str, ...] = (
    "ctypes.", "code.__new__", "gc.get_objects", "gc.get_referrers", "gc.get_referents",
    "sys._current_frames", "pickle.find_class", "resource.setrlimit", "resource.prlimit",
)

# Reads are path-checked; directory listing is needed by the import system
_PATH_CHECKED_EVENTS = frozenset({"open", "os.listdir", "os.scandir"})

_WRITE_FLAGS = (
    getattr(os, "O_WRONLY", 0)
    | getattr(os, "O_RDWR", 0)
    | getattr(os, "O_CREAT", 0)
    | getattr(os, "O_TRUNC", 0)
    | getattr(os, "O_APPEND", 0)
)

# Names the rewritten snippet calls; bound in the snippet's globals
GETATTR_NAME = "_getattr_"
GUARD_NAME = "_guard_"


class CapabilityDenied(PermissionError):
    """Raised inside the sandbox when code reaches for a capability it was not granted."""

    def __init__(self, what: str, capability: Optional[Capability] = None) -> None:
        if capability is None:
            msg = f"{what} is not available in the sandbox"
        else:
            msg = f"{what} requires the '{capability.value}' capability"
        super().__init__(msg)
        self.capability = capability


def module_capability(module_name: str, granted: Iterable[Capability]) -> Tuple[bool, Optional[Capability]]:
    """
    Decide whether a top-level module may be imported directly by a snippet.

    Returns (allowed, capability_needed). capability_needed is None for modules
    that are never allowed or need nothing.
    """
    root = module_name.split(".", 1)[0]
    if root in ALWAYS_DENIED_MODULES:
        return False, None
    granted = frozenset(granted)
    needed = [cap for cap, modules in CAPABILITY_MODULES.items() if root in modules]
    if not needed:
        return True, None
    if any(cap in granted for cap in needed):
        return True, None
    return False, needed[0]


def is_blocked_attribute(name: str) -> bool:
    """True for dunders outside ALLOWED_DUNDERS and for frame/code internals."""
    if name in INTROSPECTION_ATTRIBUTES:
        return True
    return name.startswith("__") and name.endswith("__") and name not in ALLOWED_DUNDERS


def make_import_guard(granted: Iterable[Capability], guard: Optional["AttributeGuard"] = None) -> Callable[..., Any]:
    """
    Build an __import__ replacement that enforces module_capability.

    Names taken with ``from x import y`` (or ``*``) are checked as well, so a
    denied module cannot be imported through an allowed one.
    """
    granted = frozenset(granted)
    guard = guard or AttributeGuard(granted)
    real_import = builtins.__import__

    def guarded_import(name: str, globals=None, locals=None, fromlist=(), level: int = 0):
        if level:
            raise CapabilityDenied("Relative import")
        allowed, capability = module_capability(name, granted)
        if not allowed:
            raise CapabilityDenied(f"Import of '{name}'", capability)
        module = real_import(name, globals, locals, fromlist, level)
        for attr in fromlist or ():
            if attr == "*":
                names = getattr(module, "__all__", None) or [n for n in dir(module) if not n.startswith("_")]
            else:
                names = (attr,)
            for n in names:
                guard.check(getattr(module, n, None))
        return module

    return guarded_import


# =============================================================================
# ATTRIBUTE GUARD
# =============================================================================


class AttributeGuard:
    """
    Run-time checks behind attribute access in rewritten snippets.

    A module object is only handed to the snippet when the snippet could have
    imported it, and blocked dunders are refused whichever way they are named.
    """

    def __init__(self, granted: Iterable[Capability]) -> None:
        self.granted = frozenset(granted)

    def _check_module(self, module: ModuleType) -> None:
        name = getattr(module, "__name__", None)
        if not isinstance(name, str):
            name = "?"
        allowed, capability = module_capability(name, self.granted)
        if not allowed:
            raise CapabilityDenied(f"Module '{name}'", capability)

    def check(self, value: Any) -> Any:
        """Pass value through unless it is a module the grant does not cover."""
        if isinstance(value, ModuleType):
            self._check_module(value)
        return value

    def _check_name(self, name: Any) -> None:
        if not isinstance(name, str):
            raise TypeError(f"attribute name must be string, not '{type(name).__name__}'")
        if is_blocked_attribute(name):
            raise CapabilityDenied(f"Attribute '{name}'")

    def getattr(self, obj: Any, name: str, *default: Any) -> Any:
        self._check_name(name)
        if isinstance(obj, ModuleType):
            self._check_module(obj)
        return self.check(getattr(obj, name, *default))

    def setattr(self, obj: Any, name: str, value: Any) -> None:
        self._check_name(name)
        setattr(obj, name, value)

    def delattr(self, obj: Any, name: str) -> None:
        self._check_name(name)
        delattr(obj, name)

    def vars(self, obj: Any) -> Dict[str, Any]:
        if isinstance(obj, ModuleType):
            raise CapabilityDenied("vars() of a module")
        return vars(obj)


def _guard_call(node: ast.expr) -> ast.Call:
    return ast.Call(func=ast.Name(id=GUARD_NAME, ctx=ast.Load()), args=[node], keywords=[])


_RESERVED_NAMES = frozenset({GETATTR_NAME, GUARD_NAME})


def _check_binding(name: Optional[str]) -> None:
    if name in _RESERVED_NAMES:
        raise CapabilityDenied(f"Binding the name '{name}'")


class _AttributeRewriter(ast.NodeTransformer):
    """Route attribute reads through _getattr_ and call/subscript values through _guard_."""

    def __init__(self) -> None:
        super().__init__()
        self._classes: list[str] = []

    def _mangle(self, name: str) -> str:
        # the compiler mangles private names, string constants it leaves alone
        if not self._classes or not name.startswith("__") or name.endswith("__"):
            return name
        owner = self._classes[-1].lstrip("_")
        return f"_{owner}{name}" if owner else name

    def visit_Name(self, node: ast.Name) -> ast.AST:
        if not isinstance(node.ctx, ast.Load):
            _check_binding(node.id)
        return node

    def visit_arg(self, node: ast.arg) -> ast.AST:
        _check_binding(node.arg)
        return self.generic_visit(node)

    def visit_alias(self, node: ast.alias) -> ast.AST:
        _check_binding(node.asname or node.name.split(".", 1)[0])
        return node

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> ast.AST:
        _check_binding(node.name)
        return self.generic_visit(node)

    def _visit_definition(self, node: Any) -> ast.AST:
        _check_binding(node.name)
        return self.generic_visit(node)

    visit_FunctionDef = _visit_definition
    visit_AsyncFunctionDef = _visit_definition

    def visit_ClassDef(self, node: ast.ClassDef) -> ast.AST:
        _check_binding(node.name)
        node.decorator_list = [self.visit(d) for d in node.decorator_list]
        node.bases = [self.visit(b) for b in node.bases]
        node.keywords = [self.visit(k) for k in node.keywords]
        self._classes.append(node.name)
        try:
            node.body = [self.visit(stmt) for stmt in node.body]
        finally:
            self._classes.pop()
        return node

    def _visit_scope_declaration(self, node: Any) -> ast.AST:
        for name in node.names:
            _check_binding(name)
        return node

    visit_Global = _visit_scope_declaration
    visit_Nonlocal = _visit_scope_declaration

    def visit_Attribute(self, node: ast.Attribute) -> ast.AST:
        self.generic_visit(node)
        if not isinstance(node.ctx, ast.Load):
            if is_blocked_attribute(node.attr):
                raise CapabilityDenied(f"Attribute '{node.attr}'")
            return node
        call = ast.Call(
            func=ast.Name(id=GETATTR_NAME, ctx=ast.Load()),
            args=[node.value, ast.Constant(value=self._mangle(node.attr))],
            keywords=[],
        )
        return ast.copy_location(call, node)

    def visit_Subscript(self, node: ast.Subscript) -> ast.AST:
        self.generic_visit(node)
        if not isinstance(node.ctx, ast.Load):
            return node
        return ast.copy_location(_guard_call(node), node)

    def visit_Call(self, node: ast.Call) -> ast.AST:
        self.generic_visit(node)
        return ast.copy_location(_guard_call(node), node)

    def visit_match_case(self, node: ast.AST) -> ast.AST:
        # patterns only accept names and dotted lookups, leave them as written
        for pattern in ast.walk(node.pattern):
            _check_binding(getattr(pattern, "name", None))
            _check_binding(getattr(pattern, "rest", None))
        if node.guard is not None:
            node.guard = self.visit(node.guard)
        node.body = [self.visit(stmt) for stmt in node.body]
        return node


def compile_snippet(code: str, filename: str) -> Any:
    """
    Parse, rewrite and compile a snippet.

    Raises SyntaxError or ValueError for code that does not parse, and
    CapabilityDenied for assignments to blocked attributes.
    """
    tree = ast.parse(code, filename=filename, mode="exec")
    tree = _AttributeRewriter().visit(tree)
    ast.fix_missing_locations(tree)
    return compile(tree, filename, "exec")


# =============================================================================
# NAMESPACE
# =============================================================================


def build_builtins(granted: Iterable[Capability], guard: Optional[AttributeGuard] = None) -> Dict[str, Any]:
    """Return a pruned copy of the builtins namespace for one snippet."""
    granted = frozenset(granted)
    guard = guard or AttributeGuard(granted)
    namespace = {k: v for k, v in vars(builtins).items() if k not in REMOVED_BUILTINS}
    if Capability.FILESYSTEM not in granted:
        namespace.pop("open", None)
    namespace["__import__"] = make_import_guard(granted, guard)
    namespace["getattr"] = guard.getattr
    namespace["setattr"] = guard.setattr
    namespace["delattr"] = guard.delattr
    namespace["vars"] = guard.vars
    return namespace


def build_globals(granted: Iterable[Capability]) -> Dict[str, Any]:
    """Fresh globals for one execution; nothing is shared with any other run."""
    guard = AttributeGuard(granted)
    return {
        "__name__": "__main__",
        "__doc__": None,
        "__builtins__": build_builtins(granted, guard),
        GETATTR_NAME: guard.getattr,
        GUARD_NAME: guard.check,
    }


# =============================================================================
# AUDIT HOOK
# =============================================================================


def _is_write(mode: Any, flags: Any) -> bool:
    if isinstance(mode, str) and any(c in mode for c in "wax+"):
        return True
    if isinstance(flags, int) and flags & _WRITE_FLAGS:
        return True
    return False


def _normalize(path: Any) -> Optional[str]:
    if isinstance(path, int):
        return None
    try:
        path = os.fsdecode(os.fspath(path))
    except TypeError:
        return None
    return os.path.realpath(path)


def _under(path: str, roots: Tuple[str, ...]) -> bool:
    return any(path == root or path.startswith(root + os.sep) for root in roots)


def interpreter_read_roots(cwd: Optional[str] = None) -> Tuple[str, ...]:
    """
    Directories holding the interpreter's standard library and installed packages.

    Computed by the caller before the sandbox starts. Project directories on
    sys.path are not included, and neither is any root that is, or contains,
    the caller's working directory.
    """
    paths = sysconfig.get_paths()
    candidates = {paths.get(key) for key in ("stdlib", "platstdlib", "purelib", "platlib")}
    if hasattr(site, "getsitepackages"):
        candidates.update(site.getsitepackages())
    if site.ENABLE_USER_SITE:
        candidates.add(site.getusersitepackages())
    cwd = os.path.realpath(cwd or os.getcwd())
    roots = set()
    for path in candidates:
        if not path or not os.path.isdir(path):
            continue
        real = os.path.realpath(path)
        if real == os.sep or _under(cwd, (real,)):
            continue
        roots.add(real)
    return tuple(sorted(roots))


def _denied_fork_exec(*args: Any, **kwargs: Any) -> None:
    raise CapabilityDenied("Operation 'fork_exec'", Capability.SUBPROCESS)


def seal_unaudited_primitives(granted: Iterable[Capability]) -> None:
    """
    Disable process creation paths that raise no audit event.

    _posixsubprocess.fork_exec starts processes without an audit event of its
    own; subprocess audits before calling it, direct callers do not.
    """
    if Capability.SUBPROCESS in frozenset(granted):
        return
    try:
        import _posixsubprocess
    except ImportError:
        return
    _posixsubprocess.fork_exec = _denied_fork_exec


def make_audit_hook(granted: Iterable[Capability], read_roots: Tuple[str, ...]) -> Callable[[str, tuple], None]:
    """
    Build an audit hook that raises CapabilityDenied for events outside the grant.

    Without 'filesystem', opens are allowed only read-only and only below
    read_roots (the interpreter's own library directories). ALWAYS_DENIED_EVENTS
    are refused whatever is granted.
    """
    granted = frozenset(granted)
    denied: Dict[str, Optional[Capability]] = {}
    denied_prefixes: list[Tuple[str, Optional[Capability]]] = []
    for event in ALWAYS_DENIED_EVENTS:
        if event.endswith("."):
            denied_prefixes.append((event, None))
        else:
            denied[event] = None
    for capability, events in CAPABILITY_EVENTS.items():
        if capability in granted:
            continue
        for event in events:
            if event.endswith("."):
                denied_prefixes.append((event, capability))
            else:
                denied.setdefault(event, capability)
    check_paths = Capability.FILESYSTEM not in granted

    def audit_hook(event: str, args: tuple) -> None:
        if check_paths and event in _PATH_CHECKED_EVENTS:
            if event == "open":
                path, mode, flags = (tuple(args) + (None, None, None))[:3]
                if _is_write(mode, flags):
                    raise CapabilityDenied(f"Writing to '{path}'", Capability.FILESYSTEM)
            else:
                path = args[0] if args else "."
            resolved = _normalize(path)
            if resolved is not None and not _under(resolved, read_roots):
                raise CapabilityDenied(f"Access to '{path}'", Capability.FILESYSTEM)
            return
        if event in denied:
            raise CapabilityDenied(f"Operation '{event}'", denied[event])
        for prefix, capability in denied_prefixes:
            if event.startswith(prefix):
                raise CapabilityDenied(f"Operation '{event}'", capability)

    return audit_hook
