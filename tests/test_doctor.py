from sharelink.workflows import doctor
from sharelink.workflows.doctor import build_doctor_report, format_doctor_report
from sharelink.workflows.extract_config import ExtractConfig


def _check(report, name):
    return next(check for check in report["checks"] if check["name"] == name)


def test_doctor_report_with_working_sandbox(monkeypatch):
    monkeypatch.setenv("SHARELINK_STRATEGY", "first")
    report = build_doctor_report(config=ExtractConfig(script_timeout_ms=300))

    assert report["ok"] is True
    assert _check(report, "dukpy")["status"] == "ok"
    assert _check(report, "sandbox_isolation")["status"] == "ok"
    assert _check(report, "sandbox_timeout")["status"] == "ok"
    assert _check(report, "SHARELINK_STRATEGY")["value"] == "first"


def test_doctor_flags_missing_engine(monkeypatch):
    monkeypatch.setattr(doctor, "_module_available", lambda name: name != "dukpy")
    report = build_doctor_report(config=ExtractConfig())

    assert report["ok"] is False
    assert _check(report, "dukpy")["status"] == "missing"
    names = [check["name"] for check in report["checks"]]
    assert "sandbox_isolation" not in names


def test_doctor_flags_isolation_problem(monkeypatch):
    monkeypatch.setattr(doctor, "_check_realm", lambda config: "sandbox global is not clean")
    monkeypatch.setattr(doctor, "_check_timeout", lambda config: (True, 0.5))
    report = build_doctor_report(config=ExtractConfig())

    isolation = _check(report, "sandbox_isolation")
    assert isolation["status"] == "missing"
    assert isolation["detail"] == "sandbox global is not clean"
    assert report["ok"] is False


def test_format_doctor_report_shows_remedies_only_for_failures():
    report = {
        "generated_at": "2026-01-01T00:00:00Z",
        "ok": False,
        "checks": [
            {"name": "dukpy", "status": "missing", "level": "warn", "detail": "Script evaluator missing", "remedy": "pip install dukpy"},
            {"name": "lxml", "status": "ok", "level": "warn", "detail": None, "remedy": "pip install lxml"},
            {"name": "SHARELINK_STRATEGY", "status": "ok", "level": "info", "detail": "set", "value": "first"},
        ],
    }
    text = format_doctor_report(report)

    assert text.startswith("sharelink doctor\n")
    assert "- [warn] dukpy: missing" in text
    assert "  remedy: pip install dukpy" in text
    assert "pip install lxml" not in text
    assert "- [info] SHARELINK_STRATEGY: ok (first)" in text
