"""driftguard CLI: command-line interface for DriftGuard.

Commands:
    compile         Compile a cluster specification into policy documents
    validate        Validate policy documents
    detect          Detect drift on a cluster
    remediate       Detect and remediate drift on a cluster
    history show    Show recorded drift events
    history clear   Clear recorded drift events
    sync            Sync a policy document across the fleet
    consistency     Check a policy document is consistent across the fleet
    monitor         Run periodic drift checks
    audit verify    Verify audit log chain integrity
"""

from __future__ import annotations

import json
import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any

import click

from driftguard import __version__
from driftguard.audit.logger import AuditLogger, verify_log
from driftguard.cluster.accessor import ClusterHandle
from driftguard.cluster.client import ClusterClient
from driftguard.config import DriftGuardConfig, load_config
from driftguard.drift.checks import build_checks
from driftguard.drift.detector import Detector
from driftguard.drift.history import HistoryStore, open_history_store
from driftguard.drift.monitor import Monitor, MonitorConfig, MonitorTarget
from driftguard.drift.remediator import RemediateOptions, Remediator
from driftguard.errors import (
    ConfigError,
    DriftGuardError,
    FleetSyncError,
)
from driftguard.models import (
    AuditRecord,
    DriftReport,
    DriftType,
    FleetSyncResult,
    RemediationSummary,
    UpdateMode,
    as_utc,
)
from driftguard.policy.compiler import PolicyCompiler
from driftguard.policy.loader import (
    dump_policy_documents,
    load_policy_documents,
    load_specification,
)
from driftguard.policy.validator import PolicyValidator, format_errors
from driftguard.sync.synchronizer import PolicySynchronizer

logger = logging.getLogger(__name__)

# --- Defaults ---

DEFAULT_SPEC = "./cluster-spec.yaml"
DEFAULT_AUDIT_LOG = "./driftguard-audit.jsonl"

SEVERITY_COLORS = {
    "critical": "magenta",
    "high": "red",
    "medium": "yellow",
    "low": "green",
}

_TYPE_CHOICE = click.Choice([t.value for t in DriftType])


def _resolve_cfg(config_path: str | None) -> DriftGuardConfig:
    """Load config from driftguard.yaml (explicit path errors, discovery never does)."""
    if config_path is not None:
        return load_config(config_path)
    try:
        return load_config()
    except (OSError, ConfigError) as e:
        logger.warning("Ignoring unreadable config: %s", e)
        return DriftGuardConfig()


def _or(explicit: Any, cfg_val: Any, fallback: Any) -> Any:
    """Return first non-None value: explicit CLI flag > config > fallback."""
    if explicit is not None:
        return explicit
    if cfg_val is not None:
        return cfg_val
    return fallback


def _fail(message: str) -> None:
    click.echo(click.style("Error: ", fg="red", bold=True) + message, err=True)
    sys.exit(1)


def _build_client(
    kubeconfig: str | None,
    context: str | None,
    name: str = "",
    request_timeout: float = 10.0,
) -> ClusterClient:
    """Build a cluster client from a local kubeconfig."""
    from driftguard.cluster.k8s_client import KubernetesClusterClient

    return KubernetesClusterClient(
        kubeconfig=kubeconfig,
        context=context,
        name=name,
        request_timeout=request_timeout,
    )


def _fleet(cfg: DriftGuardConfig, only: tuple[str, ...]) -> list[ClusterHandle]:
    targets = [t for t in cfg.targets if not only or t.name in only]
    if not targets:
        _fail("No fleet targets configured (add 'targets' to driftguard.yaml)")
    return [
        ClusterHandle.for_client(
            _build_client(t.kubeconfig, t.context, t.name, cfg.request_timeout),
            allow_enforcement=t.allow_enforcement,
        )
        for t in targets
    ]


def _open_history(cfg: DriftGuardConfig, history_path: str | None) -> HistoryStore:
    if history_path is not None:
        return open_history_store("file", history_path)
    return open_history_store(cfg.history_type, cfg.history_path)


def _persist_audit(path: str | None, records: list[AuditRecord]) -> None:
    if path is None or not records:
        return
    AuditLogger(path).log_records(records)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _severity_badge(severity: str) -> str:
    return click.style(f"[{severity.upper()}]", fg=SEVERITY_COLORS.get(severity, "white"))


def _print_report(report: DriftReport) -> None:
    if not report.detected:
        click.echo(click.style("NO DRIFT", fg="green", bold=True) + f"  ({report.spec.name})")
    else:
        click.echo(
            click.style("DRIFT", fg="red", bold=True)
            + f"  {report.counts.total} event(s), severity {report.severity}"
        )
        for event in report.events:
            click.echo(
                f"  {_severity_badge(event.severity)} {event.drift_kind:<14} "
                f"{event.resource.path}"
            )
            if event.diff is not None:
                for path in event.diff.modified:
                    click.echo(f"      ~ {path}")
                for path in event.diff.added:
                    click.echo(f"      + {path}")
                for path in event.diff.removed:
                    click.echo(f"      - {path}")
    for warning in report.warnings:
        click.echo(click.style("  warning: ", fg="yellow") + warning)


def _print_summary(summary: RemediationSummary) -> None:
    prefix = "[dry-run] " if summary.dry_run else ""
    click.echo(
        f"{prefix}{summary.remediated} remediated, {summary.failed} failed, "
        f"{summary.manual_required} manual, {summary.planned} planned, "
        f"{summary.skipped} skipped"
    )
    for event in summary.events:
        if event.remediation is None:
            continue
        r = event.remediation
        line = f"  {r.status:<16} {r.action:<16} {event.resource.path}"
        if r.details:
            line += f"  {r.details}"
        if r.error:
            line += click.style(f"  {r.error}", fg="red")
        click.echo(line)


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_path", default=None, help="Path to driftguard.yaml")
@click.option(
    "--log-level", default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str) -> None:
    """DriftGuard: policy drift detection and remediation for Kubernetes fleets."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        ctx.obj = _resolve_cfg(config_path)
    except (OSError, ConfigError) as e:
        _fail(str(e))


# --- compile / validate ---


@cli.command("compile")
@click.option("--spec", "spec_path", default=None, help="Cluster specification YAML")
@click.option("--output", "-o", default=None, help="Write documents to this file")
@click.pass_obj
def compile_cmd(cfg: DriftGuardConfig, spec_path: str | None, output: str | None) -> None:
    """Compile a cluster specification into policy documents."""
    spec_path = _or(spec_path, cfg.spec, DEFAULT_SPEC)
    try:
        spec = load_specification(spec_path)
        documents = PolicyCompiler().compile(spec)
    except ConfigError as e:
        _fail(str(e))

    text = dump_policy_documents(documents)
    if output:
        Path(output).write_text(text, encoding="utf-8")
        click.echo(f"Wrote {len(documents)} policy document(s) to {output}")
    else:
        click.echo(text, nl=False)


@cli.command()
@click.argument("path")
@click.option("--json-output", is_flag=True, help="Output as JSON")
def validate(path: str, json_output: bool) -> None:
    """Validate policy documents in PATH (file or directory)."""
    try:
        documents = load_policy_documents(path)
    except ConfigError as e:
        _fail(str(e))

    problems = PolicyValidator().validate_batch(documents)
    if json_output:
        _echo_json({
            "valid": not problems,
            "documents": len(documents),
            "errors": [
                {"index": p.index, "policy": p.policy, "errors": p.errors}
                for p in problems
            ],
        })
    elif problems:
        click.echo(click.style("INVALID", fg="red", bold=True))
        click.echo(format_errors(problems))
    else:
        click.echo(
            click.style("VALID", fg="green", bold=True)
            + f"  {len(documents)} policy document(s)"
        )
    if problems:
        sys.exit(1)


# --- detect / remediate ---


def _cluster_options(fn: Any) -> Any:
    fn = click.option("--spec", "spec_path", default=None, help="Cluster specification YAML")(fn)
    fn = click.option("--kubeconfig", default=None, help="Path to kubeconfig")(fn)
    fn = click.option("--context", default=None, help="Kubeconfig context")(fn)
    fn = click.option(
        "--type", "types", multiple=True, type=_TYPE_CHOICE,
        help="Drift type to include (repeatable)",
    )(fn)
    fn = click.option("--history-path", default=None, help="Record events in this history file")(fn)
    return click.option("--json-output", is_flag=True, help="Output as JSON")(fn)


@cli.command()
@_cluster_options
@click.option("--fail-on-drift", is_flag=True, help="Exit 1 if drift is detected")
@click.pass_obj
def detect(
    cfg: DriftGuardConfig,
    spec_path: str | None,
    kubeconfig: str | None,
    context: str | None,
    types: tuple[str, ...],
    history_path: str | None,
    json_output: bool,
    fail_on_drift: bool,
) -> None:
    """Detect drift between the specification and a cluster."""
    try:
        spec = load_specification(_or(spec_path, cfg.spec, DEFAULT_SPEC))
        history = _open_history(cfg, history_path)
        client = _build_client(
            _or(kubeconfig, cfg.kubeconfig, None),
            _or(context, cfg.context, None),
            request_timeout=cfg.request_timeout,
        )
        report = Detector().detect(
            PolicyCompiler().compile(spec),
            build_checks(spec),
            client,
            spec=spec.info(),
            enabled_types=[DriftType(t) for t in types] or None,
            update_mode=UpdateMode(cfg.update_mode),
        )
        history.store_many(report.events)
    except DriftGuardError as e:
        _fail(str(e))

    if json_output:
        _echo_json(report.model_dump(mode="json"))
    else:
        _print_report(report)
    if fail_on_drift and report.detected:
        sys.exit(1)


@cli.command()
@_cluster_options
@click.option("--dry-run", is_flag=True, help="Report intended changes only")
@click.option("--force", is_flag=True, help="Delete extra managed policies")
@click.option(
    "--update-mode", default=None, type=click.Choice([m.value for m in UpdateMode]),
    help="replace (default) discards cluster-only rules; merge keeps them",
)
@click.option("--audit-log", default=None, help="Append audit records to this log")
@click.pass_obj
def remediate(
    cfg: DriftGuardConfig,
    spec_path: str | None,
    kubeconfig: str | None,
    context: str | None,
    types: tuple[str, ...],
    history_path: str | None,
    json_output: bool,
    dry_run: bool,
    force: bool,
    update_mode: str | None,
    audit_log: str | None,
) -> None:
    """Detect drift and remediate it."""
    remediate_types = types or cfg.remediate_types
    options = RemediateOptions(
        dry_run=dry_run,
        force=force or cfg.force,
        types=[DriftType(t) for t in remediate_types] if remediate_types else None,
        update_mode=UpdateMode(_or(update_mode, cfg.update_mode, "replace")),
    )
    try:
        spec = load_specification(_or(spec_path, cfg.spec, DEFAULT_SPEC))
        history = _open_history(cfg, history_path)
        client = _build_client(
            _or(kubeconfig, cfg.kubeconfig, None),
            _or(context, cfg.context, None),
            request_timeout=cfg.request_timeout,
        )
        report, summary = Remediator().remediate_all(
            Detector(),
            PolicyCompiler().compile(spec),
            build_checks(spec),
            client,
            options,
            spec=spec.info(),
        )
        if not dry_run:
            history.store_many(summary.events or report.events)
        _persist_audit(_or(audit_log, cfg.audit_log, None), summary.audit)
    except DriftGuardError as e:
        _fail(str(e))

    if json_output:
        _echo_json({
            "report": report.model_dump(mode="json"),
            "remediation": summary.model_dump(mode="json"),
        })
    else:
        _print_report(report)
        if report.detected:
            _print_summary(summary)
    if summary.failed:
        sys.exit(1)


# --- history group ---


@cli.group()
def history() -> None:
    """Drift history commands."""


@history.command("show")
@click.option("--history-path", default=None, help="History file")
@click.option("--since", default=None, help="ISO-8601 timestamp (inclusive)")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_obj
def history_show(
    cfg: DriftGuardConfig,
    history_path: str | None,
    since: str | None,
    json_output: bool,
) -> None:
    """Show recorded drift events and statistics."""
    try:
        since_dt = as_utc(datetime.fromisoformat(since)) if since else None
    except ValueError:
        _fail(f"Invalid --since timestamp: {since}")
    try:
        data = _open_history(cfg, history_path).get_history(since_dt)
    except DriftGuardError as e:
        _fail(str(e))

    if json_output:
        _echo_json(data.model_dump(mode="json"))
        return

    if not data.events:
        click.echo("No drift events recorded.")
        return
    for event in data.events:
        status = event.remediation.status if event.remediation else "detected"
        click.echo(
            f"  {event.timestamp.isoformat()}  {_severity_badge(event.severity)} "
            f"{event.drift_kind:<14} {event.resource.path}  ({status})"
        )
    stats = data.stats
    click.echo(
        f"\n{stats.total_events} event(s), "
        f"remediation success rate {stats.remediation_success_rate:.0%}"
    )


@history.command("clear")
@click.option("--history-path", default=None, help="History file")
@click.confirmation_option(prompt="Clear all drift history?")
@click.pass_obj
def history_clear(cfg: DriftGuardConfig, history_path: str | None) -> None:
    """Clear all recorded drift events."""
    try:
        _open_history(cfg, history_path).clear()
    except DriftGuardError as e:
        _fail(str(e))
    click.echo("Drift history cleared.")


# --- fleet commands ---


def _print_fleet(result: FleetSyncResult) -> None:
    for cluster in result.succeeded:
        click.echo(click.style("  OK    ", fg="green") + cluster)
    for failure in result.failures:
        click.echo(click.style("  FAIL  ", fg="red") + f"{failure.cluster}: {failure.error}")
    click.echo(f"\n{result.success_count}/{result.total} cluster(s) synced.")


@cli.command()
@click.argument("policy_file")
@click.option("--name", "names", multiple=True, help="Only sync these policies (repeatable)")
@click.option("--target", "only", multiple=True, help="Only these fleet targets (repeatable)")
@click.option("--audit-log", default=None, help="Append audit records to this log")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_obj
def sync(
    cfg: DriftGuardConfig,
    policy_file: str,
    names: tuple[str, ...],
    only: tuple[str, ...],
    audit_log: str | None,
    json_output: bool,
) -> None:
    """Sync policy documents from POLICY_FILE to every fleet target."""
    try:
        documents = [
            d for d in load_policy_documents(policy_file)
            if not names or d.name in names
        ]
    except ConfigError as e:
        _fail(str(e))
    if not documents:
        _fail(f"No policy documents to sync in {policy_file}")

    handles = _fleet(cfg, only)
    synchronizer = PolicySynchronizer(max_workers=cfg.max_workers)
    results: list[FleetSyncResult] = []
    failed = False
    for document in documents:
        try:
            result = synchronizer.sync_policies_across_fleet(document, handles)
        except FleetSyncError as e:
            result = e.result
            failed = True
        except ConfigError as e:
            click.echo(f"{document.name}: {e}", err=True)
            for err in e.errors:
                click.echo(f"  - {err}", err=True)
            failed = True
            continue
        results.append(result)
        _persist_audit(_or(audit_log, cfg.audit_log, None), result.audit)

    if json_output:
        _echo_json([
            {**r.model_dump(mode="json"), "partial": r.partial} for r in results
        ])
    else:
        for result in results:
            click.echo(click.style(result.policy, bold=True))
            _print_fleet(result)
    if failed:
        sys.exit(1)


@cli.command()
@click.argument("name")
@click.option("--target", "only", multiple=True, help="Only these fleet targets (repeatable)")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_obj
def consistency(
    cfg: DriftGuardConfig,
    name: str,
    only: tuple[str, ...],
    json_output: bool,
) -> None:
    """Check that policy NAME is identical across the fleet."""
    handles = _fleet(cfg, only)
    report = PolicySynchronizer(max_workers=cfg.max_workers).validate_policy_consistency(
        name, handles,
    )

    if json_output:
        _echo_json({**report.model_dump(mode="json"), "consistent": report.consistent})
    elif report.consistent:
        click.echo(
            click.style("CONSISTENT", fg="green", bold=True)
            + f"  {name} across {len(report.checked)} cluster(s)"
        )
    else:
        click.echo(
            click.style("INCONSISTENT", fg="red", bold=True)
            + f"  {name} (baseline: {report.baseline or 'none'})"
        )
        for item in report.inconsistencies:
            click.echo(f"  - [{item.kind}] {item.message}")
    if not report.consistent:
        sys.exit(1)


# --- monitor ---


@cli.command()
@click.option("--spec", "spec_path", default=None, help="Cluster specification YAML")
@click.option("--kubeconfig", default=None, help="Path to kubeconfig")
@click.option("--context", default=None, help="Kubeconfig context")
@click.option("--interval", type=float, default=None, help="Seconds between checks")
@click.option("--auto-remediate", is_flag=True, help="Remediate detected drift")
@click.option("--history-path", default=None, help="Record events in this history file")
@click.option("--once", is_flag=True, help="Run a single cycle and exit")
@click.pass_obj
def monitor(
    cfg: DriftGuardConfig,
    spec_path: str | None,
    kubeconfig: str | None,
    context: str | None,
    interval: float | None,
    auto_remediate: bool,
    history_path: str | None,
    once: bool,
) -> None:
    """Run drift checks periodically until interrupted."""
    try:
        spec = load_specification(_or(spec_path, cfg.spec, DEFAULT_SPEC))
        history = _open_history(cfg, history_path)
        client = _build_client(
            _or(kubeconfig, cfg.kubeconfig, None),
            _or(context, cfg.context, None),
            request_timeout=cfg.request_timeout,
        )
        config = MonitorConfig(
            interval_seconds=_or(interval, cfg.interval_seconds, 300.0),
            auto_remediate=auto_remediate or cfg.auto_remediate,
            remediate_types=(
                [DriftType(t) for t in cfg.remediate_types] if cfg.remediate_types else None
            ),
            force=cfg.force,
            update_mode=UpdateMode(cfg.update_mode),
        )
    except (DriftGuardError, ValueError) as e:
        _fail(str(e))

    mon = Monitor(history, config=config)
    target = MonitorTarget(spec=spec, client=client)

    if once:
        try:
            summary = mon.check_once(target)
        except DriftGuardError as e:
            _fail(str(e))
        if summary.error:
            _fail(summary.error)
        if summary.report is not None:
            _print_report(summary.report)
        if summary.remediation is not None:
            _print_summary(summary.remediation)
        return

    mon.start(target)
    click.echo(f"Monitoring {target.key} every {config.interval_seconds:.0f}s (Ctrl+C to stop)")
    try:
        while mon.is_running(target.key):
            time.sleep(1.0)
    except KeyboardInterrupt:
        click.echo("\nStopping...")
    finally:
        mon.stop_all(timeout=5.0)


# --- audit group ---


@cli.group()
def audit() -> None:
    """Audit log commands."""


@audit.command("verify")
@click.argument("log_file", default=DEFAULT_AUDIT_LOG)
def audit_verify(log_file: str) -> None:
    """Verify audit log chain integrity."""
    path = Path(log_file)
    if not path.exists():
        click.echo(f"Audit log not found: {path}")
        sys.exit(1)

    is_valid, errors = verify_log(path)

    if is_valid:
        click.echo(click.style("VALID", fg="green", bold=True)
                    + f"  audit log chain is intact ({path})")
    else:
        click.echo(click.style("INVALID", fg="red", bold=True)
                    + f"  {len(errors)} error(s) found:")
        for error in errors:
            click.echo(f"  - {error}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
