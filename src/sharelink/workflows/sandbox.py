"""Isolated, time-bounded JavaScript realms for untrusted page scripts.

Each :class:`SandboxRealm` owns one dukpy interpreter living in a dedicated
worker process. The host talks to it over a pipe and only ever receives
strings, so no live object from inside the realm can reach host memory.
Every call waits on the pipe with a wall-clock timeout; when it expires the
worker is terminated outright and a fresh one is rebuilt by replaying the
journal of code that previously ran to completion.
"""

from __future__ import annotations

import json
import logging
import multiprocessing
import os
import signal
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple

import dukpy

from .errors import IsolationFailure, ReadFailure, ScriptRuntimeError
from .extract_config import DEFAULT_CONFIG, ExtractConfig

try:  # POSIX only; memory caps are skipped elsewhere
    import resource  # type: ignore
except ImportError:  # pragma: no cover - platform-specific
    resource = None  # type: ignore

logger = logging.getLogger(__name__)

_OP_RUN = "run"
_OP_READ = "read"
_OP_CLOSE = "close"
_STATUS_OK = "ok"
_STATUS_ERROR = "error"
_STATUS_READY = "ready"
_STATUS_FATAL = "fatal"

# Globals the embedding engine installs that lead back into Python.
HOST_BRIDGES = (
    "call_python",
    "_require_set_module_id",
    "require",
    "process",
    "console",
    "module",
    "exports",
)
# Re-registered by the engine before every evaluation, not just at startup.
_PER_EVAL_BRIDGES = ("call_python", "_require_set_module_id")
# Members a global with a live Object.prototype chain would expose.
INHERITED_MEMBERS = (
    "toString",
    "toLocaleString",
    "valueOf",
    "hasOwnProperty",
    "isPrototypeOf",
    "propertyIsEnumerable",
    "constructor",
    "__proto__",
    "__defineGetter__",
    "__lookupGetter__",
)
# dukpy re-binds its call variables under this global on every evaluation.
_VARS_GLOBAL = "dukpy"
# Pinned, non-writable copy of the realm's own eval used to run page scripts.
_RUNNER_GLOBAL = "__realm_eval__"

_ISOLATE_JS = """
(function (g) {
    var names = %(bridges)s;
    for (var i = 0; i < names.length; i++) {
        try { delete g[names[i]]; } catch (e) {}
    }
    for (var k in g) {
        if (k !== %(vars)s) {
            try { delete g[k]; } catch (e) {}
        }
    }
    if (g.Duktape) {
        try { delete g.Duktape.modSearch; } catch (e) {}
    }
    Object.defineProperty(g, %(runner)s, {value: g.eval});
    if (typeof Object.setPrototypeOf === 'function') {
        Object.setPrototypeOf(g, null);
    } else {
        g.__proto__ = null;
    }
})(this);
""" % {
    "bridges": json.dumps(list(HOST_BRIDGES)),
    "vars": json.dumps(_VARS_GLOBAL),
    "runner": json.dumps(_RUNNER_GLOBAL),
}

_CHECK_JS = """
'' + (function (g) {
    var members = %(members)s, bridges = %(bridges)s;
    var inherited = [], exposed = [], enumerable = [];
    for (var i = 0; i < members.length; i++) {
        if (members[i] in g) { inherited.push(members[i]); }
    }
    for (var j = 0; j < bridges.length; j++) {
        if (bridges[j] in g) { exposed.push(bridges[j]); }
    }
    for (var k in g) {
        if (k !== %(vars)s) { enumerable.push(k); }
    }
    return JSON.stringify({
        prototype: Object.getPrototypeOf(g) === null,
        inherited: inherited,
        bridges: exposed,
        enumerable: enumerable
    });
})(this)
""" % {
    "members": json.dumps(list(INHERITED_MEMBERS)),
    "bridges": json.dumps(list(HOST_BRIDGES)),
    "vars": json.dumps(_VARS_GLOBAL),
}

# Indirect eval runs the script as global code so its var/function
# declarations land on the realm global, as they would in a browser.
_RUN_JS = "(0, %s)(%s.source); void 0;" % (_RUNNER_GLOBAL, _VARS_GLOBAL)

# Prefixed to every code string the worker evaluates.
_SCRUB_JS = "".join("delete this[%s];\n" % json.dumps(name) for name in _PER_EVAL_BRIDGES)


class _BareInterpreter(dukpy.JSInterpreter):
    """dukpy interpreter without its process, console and require shims."""

    def _init_process(self):
        pass

    def _init_console(self):
        pass

    def _init_require(self):
        pass

    def evaljs(self, code, **kwargs):
        return super().evaljs(_SCRUB_JS + code, **kwargs)


class _WorkerTimeout(Exception):
    pass


class _WorkerLost(Exception):
    pass


def _mp_context():
    # Realms are created from worker threads; never fork a threaded host.
    if "forkserver" not in multiprocessing.get_all_start_methods():
        return multiprocessing.get_context("spawn")
    ctx = multiprocessing.get_context("forkserver")
    # Ignored once the server is running; saves re-importing per realm.
    ctx.set_forkserver_preload([__name__])
    return ctx


def _apply_memory_limit(memory_limit_mb: Optional[int]) -> None:
    if not memory_limit_mb or resource is None:
        return
    limit = int(memory_limit_mb) * 1024 * 1024
    try:
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))
    except (ValueError, OSError):
        pass


def _realm_worker(conn, memory_limit_mb: Optional[int]) -> None:
    """Worker process entry point: serve run/read requests until closed."""

    signal.signal(signal.SIGINT, signal.SIG_IGN)
    # Nothing from the host environment is copied into the interpreter.
    os.environ.clear()
    _apply_memory_limit(memory_limit_mb)
    try:
        interpreter = _BareInterpreter()
    except Exception as exc:
        conn.send((_STATUS_FATAL, f"{type(exc).__name__}: {exc}"))
        return
    conn.send((_STATUS_READY, None))

    while True:
        try:
            message = conn.recv()
        except (EOFError, OSError):
            break
        op = message[0]
        if op == _OP_CLOSE:
            break
        try:
            if op == _OP_RUN:
                _, code, variables = message
                interpreter.evaljs(code, **(variables or {}))
                reply: Tuple[str, Any] = (_STATUS_OK, None)
            elif op == _OP_READ:
                value = interpreter.evaljs(message[1])
                if isinstance(value, str):
                    reply = (_STATUS_OK, value)
                else:
                    reply = (_STATUS_ERROR, f"non-string result: {type(value).__name__}")
            else:
                reply = (_STATUS_ERROR, f"unknown op: {op}")
        except Exception as exc:
            reply = (_STATUS_ERROR, f"{type(exc).__name__}: {exc}")
        try:
            conn.send(reply)
        except (BrokenPipeError, OSError):
            break
    conn.close()


def build_read_expression(expressions: Mapping[str, str]) -> str:
    """Wrap label -> expression pairs into one string-producing expression.

    The result is forced to a primitive string by concatenation, never a
    cast, before it leaves the realm. A label whose expression throws reads
    as ``null`` without affecting the others.
    """

    members = ", ".join(
        f"{json.dumps(str(label))}: "
        f"(function () {{ try {{ return ({source}); }} catch (e) {{ return null; }} }}).call(this)"
        for label, source in expressions.items()
    )
    return f"'' + JSON.stringify({{{members}}})"


class SandboxRealm:
    """One isolated execution realm, bound to a single page document."""

    def __init__(self, config: Optional[ExtractConfig] = None) -> None:
        self.config = config or DEFAULT_CONFIG
        self._ctx = _mp_context()
        self._proc = None
        self._conn = None
        self._journal: List[Tuple[str, Dict[str, Any]]] = []
        self._broken = False
        self._closed = False
        self.respawns = 0

    @classmethod
    def create(cls, config: Optional[ExtractConfig] = None) -> "SandboxRealm":
        """Allocate a fresh realm and assert its isolation. Raises IsolationFailure."""

        realm = cls(config)
        try:
            realm._spawn()
        except BaseException:
            realm.close()
            raise
        return realm

    # -- lifecycle ---------------------------------------------------------

    def __enter__(self) -> "SandboxRealm":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._conn is not None and self._proc is not None and self._proc.is_alive():
            try:
                self._conn.send((_OP_CLOSE,))
            except (BrokenPipeError, OSError):
                pass
            self._proc.join(0.5)
        self._discard_worker()
        self._journal.clear()

    @property
    def alive(self) -> bool:
        return self._proc is not None and self._proc.is_alive()

    def _spawn(self) -> None:
        boot_timeout = self.config.boot_timeout_ms / 1000.0
        parent_conn, child_conn = self._ctx.Pipe(duplex=True)
        proc = self._ctx.Process(
            target=_realm_worker,
            args=(child_conn, self.config.memory_limit_mb),
            daemon=True,
        )
        try:
            proc.start()
        except OSError as exc:
            raise IsolationFailure(f"sandbox worker failed to start: {exc}") from exc
        finally:
            child_conn.close()
        self._proc, self._conn = proc, parent_conn

        try:
            if not parent_conn.poll(boot_timeout):
                raise _WorkerTimeout()
            status, detail = parent_conn.recv()
        except (_WorkerTimeout, EOFError, OSError) as exc:
            self._discard_worker()
            raise IsolationFailure("sandbox worker did not become ready") from exc
        if status != _STATUS_READY:
            self._discard_worker()
            raise IsolationFailure(f"sandbox engine unavailable: {detail}")

        try:
            status, detail = self._roundtrip((_OP_RUN, _ISOLATE_JS, {}), boot_timeout)
            if status == _STATUS_OK:
                status, raw = self._roundtrip((_OP_READ, _CHECK_JS), boot_timeout)
            else:
                raw = detail
        except (_WorkerTimeout, _WorkerLost) as exc:
            raise IsolationFailure("sandbox isolation check did not complete") from exc
        if status != _STATUS_OK:
            self._discard_worker()
            raise IsolationFailure(f"sandbox isolation check failed: {raw}")
        self._assert_isolated(raw)

    def _assert_isolated(self, raw: str) -> None:
        try:
            report = json.loads(raw)
        except (TypeError, ValueError) as exc:
            self._discard_worker()
            raise IsolationFailure("sandbox isolation check returned garbage") from exc
        problems = []
        if not isinstance(report, dict) or report.get("prototype") is not True:
            problems.append("global has a prototype")
        else:
            if report.get("inherited"):
                problems.append(f"inherited members {report['inherited']}")
            if report.get("bridges"):
                problems.append(f"host bridges {report['bridges']}")
            if report.get("enumerable"):
                problems.append(f"enumerable members {report['enumerable']}")
        if problems:
            self._discard_worker()
            raise IsolationFailure("sandbox global is not clean: " + "; ".join(problems))

    def _discard_worker(self) -> None:
        proc, conn = self._proc, self._conn
        self._proc, self._conn = None, None
        if proc is not None:
            if proc.is_alive():
                proc.terminate()
                proc.join(1.0)
            if proc.is_alive():
                proc.kill()
                proc.join()
            try:
                proc.close()
            except ValueError:
                pass
        if conn is not None:
            try:
                conn.close()
            except OSError:
                pass

    def _ensure_worker(self) -> None:
        """Respawn after a terminated call and replay everything journaled."""

        if self._closed:
            raise IsolationFailure("sandbox realm is closed")
        if self._proc is not None or self._broken:
            return
        self._spawn()
        self.respawns += 1
        boot_timeout = self.config.boot_timeout_ms / 1000.0
        logger.debug("sandbox respawned; replaying %d journal entries", len(self._journal))
        for code, variables in self._journal:
            try:
                self._roundtrip((_OP_RUN, code, variables), boot_timeout)
            except (_WorkerTimeout, _WorkerLost):
                logger.warning("sandbox journal replay did not complete; realm unusable")
                self._broken = True
                return

    def _roundtrip(self, message: Tuple[Any, ...], timeout: float) -> Tuple[str, Any]:
        conn = self._conn
        if conn is None:
            raise _WorkerLost()
        try:
            conn.send(message)
            if not conn.poll(timeout):
                logger.warning("sandbox call exceeded %.0f ms; terminating worker", timeout * 1000)
                self._discard_worker()
                raise _WorkerTimeout()
            return conn.recv()
        except (EOFError, BrokenPipeError, OSError) as exc:
            self._discard_worker()
            raise _WorkerLost() from exc

    # -- operations --------------------------------------------------------

    def install(self, code: str, variables: Optional[Dict[str, Any]] = None) -> None:
        """Run trusted bootstrap code and journal it. Failure is fatal."""

        variables = dict(variables or {})
        self._ensure_worker()
        try:
            status, detail = self._roundtrip(
                (_OP_RUN, code, variables), self.config.boot_timeout_ms / 1000.0
            )
        except (_WorkerTimeout, _WorkerLost) as exc:
            raise IsolationFailure("sandbox bootstrap did not complete") from exc
        if status != _STATUS_OK:
            raise IsolationFailure(f"sandbox bootstrap failed: {detail}")
        self._journal.append((code, variables))

    def run(self, code: str, timeout_ms: Optional[int] = None) -> bool:
        """Execute untrusted code. Every failure collapses to ScriptRuntimeError."""

        timeout = (timeout_ms or self.config.script_timeout_ms) / 1000.0
        self._ensure_worker()
        if self._broken:
            raise ScriptRuntimeError("unavailable")
        entry = (_RUN_JS, {"source": code})
        try:
            status, detail = self._roundtrip((_OP_RUN,) + entry, timeout)
        except _WorkerTimeout:
            raise ScriptRuntimeError("timeout") from None
        except _WorkerLost:
            raise ScriptRuntimeError("crash") from None
        # Scripts that threw still ran to completion and may have mutated state.
        self._journal.append(entry)
        if status != _STATUS_OK:
            logger.debug("sandbox script raised: %s", str(detail)[:200])
            raise ScriptRuntimeError("error")
        return True

    def run_quietly(self, code: str, timeout_ms: Optional[int] = None) -> bool:
        try:
            return self.run(code, timeout_ms)
        except ScriptRuntimeError as exc:
            logger.debug("sandbox script failed (%s)", exc.reason)
            return False

    def read(self, expressions: Mapping[str, str], timeout_ms: Optional[int] = None) -> Dict[str, Any]:
        """Serialize label -> expression values inside the realm and parse them here."""

        timeout = (timeout_ms or self.config.read_timeout_ms) / 1000.0
        self._ensure_worker()
        if self._broken:
            raise ReadFailure("sandbox realm is unavailable")
        try:
            status, raw = self._roundtrip((_OP_READ, build_read_expression(expressions)), timeout)
        except _WorkerTimeout:
            raise ReadFailure("read timed out") from None
        except _WorkerLost:
            raise ReadFailure("sandbox worker exited during read") from None
        if status != _STATUS_OK or not isinstance(raw, str):
            raise ReadFailure(f"read failed: {str(raw)[:200]}")
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise ReadFailure("read returned malformed data") from exc
        if not isinstance(data, dict):
            raise ReadFailure("read returned a non-object")
        for label, value in data.items():
            if value is not None and not isinstance(value, (str, int, float, bool)):
                raise ReadFailure(f"read value for {label!r} is not primitive")
        return data


def measure_timeout_overhead(config: Optional[ExtractConfig] = None) -> float:
    """Seconds spent terminating an endless loop; used by diagnostics."""

    with SandboxRealm.create(config) as realm:
        start = time.perf_counter()
        realm.run_quietly("for (;;) {}")
        return time.perf_counter() - start


__all__ = [
    "HOST_BRIDGES",
    "INHERITED_MEMBERS",
    "SandboxRealm",
    "build_read_expression",
    "measure_timeout_overhead",
]
