"""
Code Sandbox Service

Runs user-authored scripts for code-execution nodes.

Scripts are a restricted Python subset:
1. The source is compiled with RestrictedPython, which rejects names and
   attributes starting with an underscore and routes attribute, item,
   iteration and write access through guards. Imports, class definitions,
   global/nonlocal and async code are rejected up front.
2. The body runs as a function ``(variables) -> value``; ``return`` gives the
   node result. Only safe builtins, ``math`` and two JSON helpers exist.
   ``print`` output is collected as the script's logs.
3. Execution happens in a spawned child process with a wall-clock budget and,
   where the platform supports it, CPU and address-space limits. The child is
   killed when the budget is exceeded.
"""
import ast
import asyncio
import json
import logging
import math
import multiprocessing
import operator
from typing import Any, Dict, List

from RestrictedPython import compile_restricted_exec, limited_builtins, safe_builtins
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import full_write_guard, guarded_iter_unpack_sequence, guarded_unpack_sequence, safer_getattr
from RestrictedPython.PrintCollector import PrintCollector

from app.core.config import settings
from app.core.exceptions import ScriptExecutionError, SandboxTimeoutError, SandboxViolationError

logger = logging.getLogger(__name__)

SCRIPT_FUNCTION_NAME = "flow_script"
STARTUP_TIMEOUT_SECONDS = 15.0

REJECTED_NODE_TYPES = (
    ast.Import, ast.ImportFrom, ast.Global, ast.Nonlocal, ast.ClassDef,
    ast.AsyncFunctionDef, ast.AsyncFor, ast.AsyncWith, ast.Await, ast.Yield, ast.YieldFrom,
)

EXTRA_BUILTIN_NAMES = (
    "all", "any", "dict", "enumerate", "filter", "list", "map", "max", "min", "reversed", "set", "sum",
)

_INPLACE_OPERATORS = {
    "+=": operator.iadd, "-=": operator.isub, "*=": operator.imul, "/=": operator.itruediv,
    "//=": operator.ifloordiv, "%=": operator.imod, "**=": operator.ipow,
    "|=": operator.ior, "&=": operator.iand, "^=": operator.ixor,
}


def _inplace_var(op: str, target, value):
    try:
        return _INPLACE_OPERATORS[op](target, value)
    except KeyError:
        raise SandboxViolationError(f"Operator '{op}' is not allowed")


def _wrap_script(tree: ast.Module) -> ast.Module:
    wrapper = ast.parse(f"def {SCRIPT_FUNCTION_NAME}(variables):\n    pass\n")
    if tree.body:
        wrapper.body[0].body = tree.body
    ast.fix_missing_locations(wrapper)
    return wrapper


def validate_script(code: str):
    """Compiles user code under the restricted policy and returns the code object."""
    try:
        tree = ast.parse(code or "", mode="exec")
    except SyntaxError as e:
        raise SandboxViolationError(f"Syntax error on line {e.lineno}: {e.msg}")

    for node in ast.walk(tree):
        if isinstance(node, REJECTED_NODE_TYPES):
            raise SandboxViolationError(f"'{type(node).__name__}' is not allowed in scripts")

    result = compile_restricted_exec(_wrap_script(tree), filename="<flow-script>")
    if result.errors:
        raise SandboxViolationError("; ".join(result.errors))
    return result.code


def _script_globals(logs: List[str]) -> Dict[str, Any]:
    import builtins

    script_builtins = dict(safe_builtins)
    script_builtins.update(limited_builtins)
    for name in EXTRA_BUILTIN_NAMES:
        script_builtins[name] = getattr(builtins, name)

    class ScriptPrinter(PrintCollector):
        def _call_print(self, *objects, **kwargs):
            logs.append(" ".join(str(o) for o in objects))

    return {
        "__builtins__": script_builtins,
        "__name__": "flow_script",
        "_getattr_": safer_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_write_": full_write_guard,
        "_inplacevar_": _inplace_var,
        "_print_": ScriptPrinter,
        "math": math,
        "parse_json": json.loads,
        "to_json": lambda value: json.dumps(value, ensure_ascii=False, default=str),
    }


def _apply_resource_limits(cpu_seconds: int, memory_limit_mb: int):
    try:
        import resource
    except ImportError:
        return
    try:
        resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds + 1))
        if memory_limit_mb > 0:
            limit = memory_limit_mb * 1024 * 1024
            resource.setrlimit(resource.RLIMIT_AS, (limit, limit))
    except (ValueError, OSError):
        pass


def _sandbox_worker(conn, code: str, variables: dict, cpu_seconds: int, memory_limit_mb: int):
    _apply_resource_limits(cpu_seconds, memory_limit_mb)
    conn.send(("ready", None))
    logs: List[str] = []
    try:
        namespace = _script_globals(logs)
        exec(validate_script(code), namespace)
        result = namespace[SCRIPT_FUNCTION_NAME](variables)
        # Round-trip through JSON so only plain data leaves the child.
        payload = json.loads(json.dumps(result, ensure_ascii=False, default=str))
        conn.send(("ok", {"result": payload, "logs": logs}))
    except MemoryError:
        conn.send(("error", "Script exceeded its memory limit"))
    except Exception as e:
        conn.send(("error", f"{type(e).__name__}: {e}"))
    finally:
        conn.close()


def run_script(code: str, variables: dict, timeout_ms: int = None) -> Dict[str, Any]:
    """
    Runs a script in a child process and returns ``{"result": ..., "logs": [...]}``.

    Raises:
        SandboxViolationError: the script uses a disallowed construct.
        SandboxTimeoutError: the wall-clock budget elapsed; the child was killed.
        ScriptExecutionError: the script raised.
    """
    validate_script(code)
    timeout_ms = timeout_ms or settings.CODE_EXECUTION_DEFAULT_TIMEOUT_MS
    timeout_ms = max(1, min(int(timeout_ms), settings.CODE_EXECUTION_MAX_TIMEOUT_MS))
    timeout_seconds = timeout_ms / 1000.0
    snapshot = json.loads(json.dumps(variables or {}, ensure_ascii=False, default=str))

    ctx = multiprocessing.get_context("spawn")
    parent_conn, child_conn = ctx.Pipe(duplex=False)
    process = ctx.Process(
        target=_sandbox_worker,
        args=(child_conn, code, snapshot, math.ceil(timeout_seconds) + 1, settings.CODE_EXECUTION_MEMORY_LIMIT_MB),
        daemon=True,
    )
    try:
        process.start()
    except OSError as e:
        parent_conn.close()
        child_conn.close()
        logger.error("Could not start script sandbox: %s", e)
        raise ScriptExecutionError(f"Script sandbox could not be started: {e}")
    child_conn.close()
    try:
        if not parent_conn.poll(STARTUP_TIMEOUT_SECONDS):
            raise SandboxTimeoutError("Script sandbox failed to start")
        parent_conn.recv()
        # The budget starts once the child is ready to run user code.
        if not parent_conn.poll(timeout_seconds):
            raise SandboxTimeoutError(f"Script timed out after {timeout_ms}ms")
        try:
            status, payload = parent_conn.recv()
        except EOFError:
            raise ScriptExecutionError("Script process exited without a result")
    finally:
        if process.is_alive():
            process.kill()
        process.join(1)
        parent_conn.close()

    if status != "ok":
        logger.info("Script failed: %s", payload)
        raise ScriptExecutionError(payload)
    return payload


async def execute_script(code: str, variables: dict, timeout_ms: int = None) -> Dict[str, Any]:
    """Async wrapper; the blocking wait runs in a worker thread."""
    return await asyncio.to_thread(run_script, code, variables, timeout_ms)
