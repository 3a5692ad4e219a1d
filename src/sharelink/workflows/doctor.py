from __future__ import annotations

import importlib.util
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import SharelinkError
from .extract_config import (
    ENV_MEMORY_LIMIT_MB,
    ENV_SCRIPT_TIMEOUT_MS,
    ENV_STRATEGY,
    ENV_USER_AGENT,
    ExtractConfig,
)

# A timed-out script may overrun its budget by at most this much.
TIMEOUT_OVERHEAD_BUDGET_S = 2.0


def _module_available(name: str) -> bool:
    try:
        return importlib.util.find_spec(name) is not None
    except (ImportError, ValueError):
        return False


def _check_realm(config: ExtractConfig) -> Optional[str]:
    from .sandbox import SandboxRealm

    try:
        with SandboxRealm.create(config) as realm:
            realm.run("var answer = 40 + 2;")
            value = realm.read({"answer": "answer"}).get("answer")
    except SharelinkError as exc:
        return str(exc)
    if value != 42:
        return f"unexpected realm value: {value!r}"
    return None


def _check_timeout(config: ExtractConfig) -> tuple[bool, float]:
    from .sandbox import measure_timeout_overhead

    try:
        elapsed = measure_timeout_overhead(config)
    except SharelinkError:
        return False, -1.0
    budget = config.script_timeout_ms / 1000.0 + TIMEOUT_OVERHEAD_BUDGET_S
    return elapsed <= budget, elapsed


def build_doctor_report(*, config: Optional[ExtractConfig] = None) -> Dict[str, Any]:
    config = config or ExtractConfig.from_env()
    report: Dict[str, Any] = {
        "generated_at": datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
        "ok": True,
        "checks": [],
    }

    def add_check(
        name: str,
        status: bool,
        *,
        detail: Optional[str] = None,
        remedy: Optional[str] = None,
        level: str = "warn",
        value: Optional[str] = None,
    ) -> None:
        entry = {
            "name": name,
            "status": "ok" if status else "missing",
            "level": level,
            "detail": detail,
        }
        if remedy:
            entry["remedy"] = remedy
        if value is not None:
            entry["value"] = value
        report["checks"].append(entry)
        if not status and level == "warn":
            report["ok"] = False

    dukpy_ok = _module_available("dukpy")
    add_check(
        "dukpy",
        dukpy_ok,
        detail="Script evaluator available" if dukpy_ok else "Script evaluator missing",
        remedy="pip install dukpy",
    )

    for module, package in (("lxml", "lxml"), ("bs4", "beautifulsoup4"), ("aiohttp", "aiohttp")):
        present = _module_available(module)
        add_check(module, present, remedy=f"pip install {package}")

    if dukpy_ok:
        problem = _check_realm(config)
        add_check(
            "sandbox_isolation",
            problem is None,
            detail=problem or "Realm booted with a prototype-free global",
            remedy="The host cannot provide an isolated realm; extraction is disabled.",
        )
        bounded, elapsed = _check_timeout(config)
        add_check(
            "sandbox_timeout",
            bounded,
            detail=f"Endless loop terminated after {elapsed:.2f}s" if elapsed >= 0 else "Timeout check failed",
            remedy="Worker termination is slow; check process limits on this host.",
        )

    for name in (ENV_SCRIPT_TIMEOUT_MS, ENV_STRATEGY, ENV_USER_AGENT, ENV_MEMORY_LIMIT_MB):
        raw = os.getenv(name)
        add_check(
            name,
            raw is not None,
            detail="set" if raw is not None else "default in use",
            level="info",
            value=raw,
        )

    return report


def format_doctor_report(report: Dict[str, Any]) -> str:
    lines: List[str] = []
    lines.append("sharelink doctor")
    lines.append(f"Generated: {report.get('generated_at')}")
    lines.append("")
    for check in report.get("checks", []):
        name = check.get("name", "check")
        status = check.get("status", "unknown")
        level = check.get("level", "info")
        detail = check.get("detail")
        value = check.get("value")
        label = f"{name}: {status}"
        if value:
            label = f"{label} ({value})"
        lines.append(f"- [{level}] {label}")
        if detail:
            lines.append(f"  detail: {detail}")
        remedy = check.get("remedy")
        if remedy and status != "ok":
            lines.append(f"  remedy: {remedy}")
    return "\n".join(lines).rstrip() + "\n"
