"""Click CLI entrypoint — `lazarus <subcommand>`.

Every call is stateless: load config, touch the state directory, exit.
JSON output by default, --human for key: value lines. Hook commands are the
exception: they print only what the agent platform should see.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from typing import Any, Optional

import click

from lazarus import __version__
from lazarus.config import RecoveryConfig, load_config
from lazarus.defaults import ENV_DOMAIN
from lazarus.errors import ConfigError, LazarusError
from lazarus.output import output

log = logging.getLogger("lazarus")


def _load_config(ctx: click.Context) -> RecoveryConfig:
    """Config is loaded on first use so hook commands can report a broken file themselves."""
    if "config" not in ctx.obj:
        ctx.obj["config"] = load_config(ctx.obj["config_path"])
    return ctx.obj["config"]


def _config(ctx: click.Context) -> RecoveryConfig:
    try:
        return _load_config(ctx)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _read_hook_input() -> dict[str, Any]:
    """Optional JSON object on stdin from the lifecycle notifier. Never fails."""
    stream = click.get_text_stream("stdin")
    if stream.isatty():
        return {}
    try:
        raw = stream.read()
    except OSError:
        return {}
    if not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        log.debug("ignoring non-JSON hook input")
        return {}
    return payload if isinstance(payload, dict) else {}


def _hook_domain(domain: Optional[str]) -> str:
    resolved = domain or os.environ.get(ENV_DOMAIN)
    if not resolved:
        raise click.UsageError(f"no domain: pass --domain or set {ENV_DOMAIN}")
    return resolved


def _hook_warning(hook_name: str, domain: str, exc: Exception) -> None:
    print(f"WARNING: lazarus {hook_name} hook failed for {domain}: {exc}", file=sys.stderr)


@click.group()
@click.version_option(__version__, package_name="lazarus-recovery")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Path to lazarus.yaml (default: $LAZARUS_CONFIG or ./lazarus.yaml)")
@click.option("--human", is_flag=True, help="Human-readable output instead of JSON")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging on stderr")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], human: bool, verbose: bool) -> None:
    """lazarus — recovery coordination for long-running agent sessions."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.ensure_object(dict)
    ctx.obj["human"] = human
    ctx.obj["config_path"] = config_path


# =========================================================================
# Lifecycle hooks
# =========================================================================

@cli.group()
def hook() -> None:
    """Entry points for the agent platform's lifecycle notifications."""


@hook.command("start")
@click.option("--domain", default=None, help=f"Domain (default: ${ENV_DOMAIN})")
@click.pass_context
def hook_start(ctx: click.Context, domain: Optional[str]) -> None:
    """Print the recovery payload for the new session's context."""
    from lazarus.hooks import RecoveryCoordinator
    domain = _hook_domain(domain)
    session_id = _read_hook_input().get("session_id")
    if not isinstance(session_id, str):
        session_id = None
    try:
        payload = RecoveryCoordinator(_load_config(ctx)).on_session_start(domain, session_id=session_id)
    except (LazarusError, OSError, ValueError) as exc:
        # Never block the agent from starting.
        _hook_warning("start", domain, exc)
        return
    if payload:
        click.echo(payload, nl=False)


@hook.command("activity")
@click.option("--domain", default=None, help=f"Domain (default: ${ENV_DOMAIN})")
@click.pass_context
def hook_activity(ctx: click.Context, domain: Optional[str]) -> None:
    """Best-effort heartbeat. Always exits 0."""
    from lazarus.hooks import RecoveryCoordinator
    domain = _hook_domain(domain)
    try:
        coordinator = RecoveryCoordinator(_load_config(ctx))
    except (LazarusError, OSError, ValueError) as exc:
        _hook_warning("activity", domain, exc)
        return
    coordinator.on_activity(domain)


@hook.command("end")
@click.option("--domain", default=None, help=f"Domain (default: ${ENV_DOMAIN})")
@click.option("--exit-status", type=int, default=None)
@click.pass_context
def hook_end(ctx: click.Context, domain: Optional[str], exit_status: Optional[int]) -> None:
    """Log the end of a session."""
    from lazarus.hooks import RecoveryCoordinator
    data = _read_hook_input()
    if exit_status is None and isinstance(data.get("exit_status"), int):
        exit_status = data["exit_status"]
    domain = _hook_domain(domain)
    try:
        RecoveryCoordinator(_load_config(ctx)).on_session_end(domain, exit_status)
    except (LazarusError, OSError, ValueError) as exc:
        _hook_warning("end", domain, exc)


# =========================================================================
# Agent task updates
# =========================================================================

@cli.group()
def task() -> None:
    """Status and task text, written by the agent."""


@task.command("update")
@click.argument("domain")
@click.option("--status", type=click.Choice(["Idle", "Working", "Error"], case_sensitive=False), default=None)
@click.option("--task", "current_task", default=None, help="Current task text")
@click.option("--number", "numbers", multiple=True, help="Metric as key=value (repeatable)")
@click.pass_context
def task_update(ctx: click.Context, domain: str, status: Optional[str], current_task: Optional[str], numbers: tuple[str, ...]) -> None:
    """Update status / current task / numbers."""
    from lazarus.hooks import RecoveryCoordinator
    parsed: dict[str, str] = {}
    for item in numbers:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {item!r}", param_hint="--number")
        parsed[key] = value
    try:
        state = RecoveryCoordinator(_config(ctx)).update_task(domain, status=status, current_task=current_task, numbers=parsed)
    except LazarusError as exc:
        output({"error": str(exc)})
        return
    output(state.to_dict(), ctx.obj["human"])


@cli.group()
def loop() -> None:
    """Open loops: add work items, record resolutions."""


@loop.command("add")
@click.argument("domain")
@click.argument("text")
@click.option("--id", "loop_id", default=None, help="Stable id (default: random)")
@click.pass_context
def loop_add(ctx: click.Context, domain: str, text: str, loop_id: Optional[str]) -> None:
    """Track a new open loop."""
    from lazarus.hooks import RecoveryCoordinator
    try:
        added = RecoveryCoordinator(_config(ctx)).add_loop(domain, text, loop_id=loop_id)
    except (LazarusError, ValueError) as exc:
        output({"error": str(exc)})
        return
    output({"status": "added", "domain": domain, "loop": added.to_dict()}, ctx.obj["human"])


@loop.command("resolve")
@click.argument("domain")
@click.argument("loop_id")
@click.option("--reason", required=True)
@click.pass_context
def loop_resolve(ctx: click.Context, domain: str, loop_id: str, reason: str) -> None:
    """Append a resolution; applied at the next reconciliation."""
    from lazarus.hooks import RecoveryCoordinator
    entry = RecoveryCoordinator(_config(ctx)).resolve_loop(domain, loop_id, reason)
    output({"status": "logged", "entry": entry.to_dict()}, ctx.obj["human"])


# =========================================================================
# Supervisor, monitor, reconciliation
# =========================================================================

@cli.command()
@click.argument("domain")
@click.pass_context
def supervise(ctx: click.Context, domain: str) -> None:
    """Run the process supervisor for DOMAIN in the foreground."""
    from lazarus.supervisor import Supervisor
    phase = Supervisor(_config(ctx), domain).run()
    if phase is None:
        sys.exit(1)


@cli.command()
@click.option("--domain", "domains", multiple=True, help="Limit to these domains (repeatable)")
@click.option("--loop", "forever", is_flag=True, help="Keep running every monitor.interval_sec")
@click.pass_context
def monitor(ctx: click.Context, domains: tuple[str, ...], forever: bool) -> None:
    """Check liveness, arbitrate restarts, refresh staleness."""
    from lazarus.monitor import LivenessMonitor
    mon = LivenessMonitor(_config(ctx))
    if forever:
        mon.run_forever(on_result=lambda results: output(results, ctx.obj["human"]))
        return
    output(mon.run_once(domains or None), ctx.obj["human"])


@cli.command()
@click.option("--domain", "domains", multiple=True, help="Limit to these domains (repeatable)")
@click.option("--loop", "forever", is_flag=True, help="Keep running every reconcile.interval_sec")
@click.pass_context
def reconcile(ctx: click.Context, domains: tuple[str, ...], forever: bool) -> None:
    """Merge summaries and resolutions into state."""
    from lazarus.reconcile import ReconciliationPipeline
    pipeline = ReconciliationPipeline(_config(ctx))
    if forever:
        pipeline.run_forever(on_result=lambda results: output(results, ctx.obj["human"]))
        return
    if domains:
        output([pipeline.reconcile(d) for d in domains], ctx.obj["human"])
    else:
        output(pipeline.run_once(), ctx.obj["human"])


# =========================================================================
# Operator commands
# =========================================================================

@cli.command()
@click.argument("domain", required=False)
@click.option("--events", default=10, help="Recent ops events to include")
@click.pass_context
def status(ctx: click.Context, domain: Optional[str], events: int) -> None:
    """Show state, supervisor phase and recent ops events."""
    from lazarus.opslog import OpsLog
    from lazarus.store import StateStore
    from lazarus.supervisor import DomainMarkers, SupervisorControl
    cfg = _config(ctx)
    ops = OpsLog(cfg.ops_log_path)
    store = StateStore(cfg.state_dir, ops=ops)
    names = [domain] if domain else sorted(set(cfg.domains) | set(store.domains()))
    report = []
    for name in names:
        state = store.load(name)
        control = SupervisorControl(cfg.state_dir, name)
        sup = control.status()
        report.append({
            "domain": name,
            "state": state.to_dict() if state else None,
            "supervisor": {**sup.to_dict(), "alive": control.supervisor_alive(sup)},
            "clean_exit_marker": DomainMarkers(cfg.state_dir, name).clean_exit_present(),
            "events": ops.tail(events, domain=name),
        })
    output(report[0] if domain else report, ctx.obj["human"])


@cli.command("fresh-start")
@click.argument("domain")
@click.pass_context
def fresh_start(ctx: click.Context, domain: str) -> None:
    """Ignore the saved continuation token on the next launch."""
    from lazarus.supervisor import DomainMarkers
    DomainMarkers(_config(ctx).state_dir, domain).request_fresh_start()
    output({"status": "fresh_start_requested", "domain": domain}, ctx.obj["human"])


@cli.command()
@click.argument("domain")
@click.pass_context
def reset(ctx: click.Context, domain: str) -> None:
    """Leave safe mode and start a new supervisor."""
    from lazarus.supervisor import SupervisorControl, detached_spawner
    cfg = _config(ctx)
    control = SupervisorControl(
        cfg.state_dir, domain,
        crash_threshold=cfg.supervisor.crash_threshold,
        startup_grace_sec=cfg.supervisor.startup_grace_sec,
        spawner=detached_spawner(cfg.state_dir, cfg.config_path),
    )
    try:
        result = control.reset()
    except (OSError, RuntimeError) as exc:
        output({"error": str(exc), "domain": domain})
        return
    output({"status": result, "domain": domain}, ctx.obj["human"])


@cli.command()
@click.argument("domain")
@click.pass_context
def stop(ctx: click.Context, domain: str) -> None:
    """Stop the supervisor and agent; recorded as an intentional stop."""
    from lazarus.supervisor import SupervisorControl
    result = SupervisorControl(_config(ctx).state_dir, domain).stop()
    output({"status": result, "domain": domain}, ctx.obj["human"])
