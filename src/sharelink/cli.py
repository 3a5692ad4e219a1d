from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from dotenv import load_dotenv

from .core.keys import K_ERROR, K_ERROR_TYPE
from .workflows.errors import (
    BodyTypeError,
    ExtractionFailure,
    IsolationFailure,
    SharelinkError,
    TransportError,
)
from .workflows.doctor import build_doctor_report, format_doctor_report
from .workflows.extract import download_binary, extract_sync
from .workflows.extract_config import STRATEGIES, ExtractConfig

app = typer.Typer(add_help_option=False, no_args_is_help=False)

EXIT_OK = 0
EXIT_EXTRACTION = 2
EXIT_TRANSPORT = 3
EXIT_ISOLATION = 4


def _minimal_help() -> str:
    return """sharelink

Usage:
  sharelink get <url> [--json] [--download <DIR>] [--strategy accumulate|first] [--verbose]
  sharelink doctor

Options:
  --json           Print the result (or error) as JSON on stdout.
  --download <DIR> Also fetch the binary and save it into DIR.
  --strategy       accumulate (run every matching script, read once) or first.
  --verbose        Log extraction steps to stderr.

Environment:
  SHARELINK_SCRIPT_TIMEOUT_MS  SHARELINK_READ_TIMEOUT_MS  SHARELINK_BOOT_TIMEOUT_MS
  SHARELINK_REQUEST_TIMEOUT    SHARELINK_USER_AGENT       SHARELINK_STRATEGY
  SHARELINK_MEMORY_LIMIT_MB
"""


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def exit_code_for(exc: SharelinkError) -> int:
    if isinstance(exc, ExtractionFailure):
        return EXIT_EXTRACTION
    if isinstance(exc, (TransportError, BodyTypeError)):
        return EXIT_TRANSPORT
    if isinstance(exc, IsolationFailure):
        return EXIT_ISOLATION
    return EXIT_EXTRACTION


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    help: bool = typer.Option(False, "--help", "-h", is_eager=True, help="Show help."),
    doctor: bool = typer.Option(False, "--doctor", is_eager=True, help="Run diagnostics and exit."),
) -> None:
    load_dotenv(override=False)
    if doctor:
        report = build_doctor_report()
        typer.echo(format_doctor_report(report))
        raise typer.Exit(code=0 if report.get("ok", True) else 2)
    if help or ctx.invoked_subcommand is None:
        typer.echo(_minimal_help())
        raise typer.Exit(code=0)


@app.command("doctor", add_help_option=True)
def doctor_cmd() -> None:
    """Print sandbox and dependency diagnostics."""
    report = build_doctor_report()
    typer.echo(format_doctor_report(report))
    raise typer.Exit(code=0 if report.get("ok", True) else 2)


@app.command("get", add_help_option=True)
def get_url(
    url: str = typer.Argument(..., help="Share-link page URL."),
    json_out: bool = typer.Option(False, "--json", help="Print result JSON to stdout."),
    download: Optional[Path] = typer.Option(None, "--download", help="Save the binary into this directory."),
    strategy: Optional[str] = typer.Option(None, "--strategy", help="accumulate or first."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log extraction steps."),
) -> None:
    if strategy is not None and strategy.strip().lower() not in STRATEGIES:
        raise typer.BadParameter(f"Unknown strategy: {strategy}")
    _configure_logging(verbose)
    config = ExtractConfig.from_env(strategy=strategy)
    try:
        result = extract_sync(url, config=config)
        payload: Dict[str, Any] = result.to_dict()
        if download is not None:
            saved = asyncio.run(download_binary(result, config=config, dest_dir=download))
            payload["saved"] = saved.to_dict()
    except SharelinkError as exc:
        if json_out:
            sys.stdout.write(json.dumps({K_ERROR: str(exc), K_ERROR_TYPE: type(exc).__name__}) + "\n")
        else:
            typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=exit_code_for(exc))

    if json_out:
        sys.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")
    else:
        typer.echo(result.download)
        if result.filename:
            typer.echo(f"filename: {result.filename}")
        if "saved" in payload:
            typer.echo(f"saved: {payload['saved'].get('path')}")
    raise typer.Exit(code=EXIT_OK)
