"""mitiscan analyze - run mitigation rules over binaries."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer


def _collect_files(paths: list[Path], recursive: bool) -> list[Path]:
    files: list[Path] = []
    for path in paths:
        if path.is_dir():
            children = path.rglob("*") if recursive else path.iterdir()
            files.extend(sorted(p for p in children if p.is_file()))
        else:
            files.append(path)
    return files


def analyze_cmd(
    paths: list[Path] = typer.Argument(..., exists=True, help="Binaries or directories to scan"),
    as_json: bool = typer.Option(False, "--json", help="Print results as JSON"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write JSON results to file"),
    jobs: Optional[int] = typer.Option(None, "--jobs", "-j", min=1, help="Binaries analyzed in parallel"),
    rule_workers: Optional[int] = typer.Option(
        None, "--rule-workers", min=1, help="Rules evaluated in parallel per binary"
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", min=0.001, help="Per-binary rule deadline in seconds"
    ),
    disable: Optional[list[str]] = typer.Option(
        None, "--disable", "-d", help="Rule id or name to skip (repeatable)"
    ),
    recursive: bool = typer.Option(False, "--recursive", "-r", help="Descend into directories"),
) -> None:
    """Analyze binaries and exit with 0 (pass), 1 (failures), 2 (errors) or 3 (bad config)."""
    from mitiscan.cli.app import get_context
    from mitiscan.config.models import RuleConfig
    from mitiscan.engine.engine import AnalysisEngine
    from mitiscan.engine.summary import ExitStatus, summarize_exit_status
    from mitiscan.errors import ConfigurationError
    from mitiscan.utils.formatters import print_error, print_json, print_table, render_json
    from mitiscan.utils.progress import scan_progress

    ctx = get_context()
    registry = ctx.ensure_registry()
    cfg = ctx.ensure_config()

    engine_updates = {
        key: value
        for key, value in (
            ("max_workers", jobs),
            ("rule_workers", rule_workers),
            ("timeout_seconds", timeout),
        )
        if value is not None
    }
    rules = dict(cfg.rules)
    for key in disable or []:
        rule = registry.get(key)
        if rule is None:
            print_error(f"unknown rule {key!r}")
            raise typer.Exit(int(ExitStatus.CONFIGURATION_ERROR))
        existing = [k for k in rules if registry.get(k) is rule]
        for k in existing or [key]:
            base = rules.get(k, RuleConfig())
            rules[k] = base.model_copy(update={"enabled": False})
    cfg = cfg.model_copy(
        update={"engine": cfg.engine.model_copy(update=engine_updates), "rules": rules}
    )

    try:
        engine = AnalysisEngine(registry, cfg)
    except ConfigurationError as exc:
        print_error(str(exc))
        raise typer.Exit(int(ExitStatus.CONFIGURATION_ERROR)) from exc

    files = _collect_files(paths, recursive)
    if not files:
        print_error("no files to analyze")
        raise typer.Exit(int(ExitStatus.CONFIGURATION_ERROR))

    if as_json or len(files) == 1:
        reports = engine.analyze_paths(files)
    else:
        with scan_progress(len(files)) as scanned:
            reports = engine.analyze_paths(files, on_complete=scanned)
    for report in reports:
        error = report.load_error
        if error is not None:
            print_error(f"{report.path}: {error.kind.value}: {error.message}")

    status = summarize_exit_status(reports)
    payload = {
        "exit_status": status.name.lower(),
        "reports": [report.to_dict() for report in reports],
    }
    if output is not None:
        output.write_text(render_json(payload) + "\n")

    if as_json:
        print_json(payload)
    elif output is None:
        rows = [
            {
                "binary": result.binary_id,
                "rule": result.rule_id,
                "name": result.rule_name,
                "verdict": result.verdict.value,
                "severity": result.severity.value,
                "message": result.message,
            }
            for report in reports
            for result in report.results
        ]
        print_table(rows, title="Mitigation results")

    raise typer.Exit(int(status))
