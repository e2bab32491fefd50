"""
CLI interface for kubestage.

One command per phase (init, apply, start, cluster-init, dynamodb, deploy,
gitops-repo, gitops-init), plus:
- up: the whole pipeline, optionally resuming a failed run
- teardown: the reverse pipeline, after two confirmations
- check: preflight report for one phase
- status / show: last run and the current state file
- urls: application and ArgoCD endpoints
- configure: write a default config.yaml

Exit codes: 0 success, 1 execution failure, 2 user error, 3 cancelled.
"""

import json
import shutil
import signal
import threading
from pathlib import Path
from typing import Optional

import click
import yaml

from kubestage import __version__
from kubestage.cloud import CloudClient
from kubestage.config import KubestageConfig, default_config_dict, get_kubestage_home, load_config
from kubestage.errors import ConfigError, KubestageError
from kubestage.orchestrator import Orchestrator, RunStatus, load_latest, resume_point
from kubestage.phases import BACKEND_TEARDOWN, MAINTENANCE, PIPELINE, TEARDOWN, get_phase
from kubestage.remote import RemoteExecutor, SshTransport
from kubestage.store import VariableStore
from kubestage.tools import Toolbox
from kubestage.utils import (
    console,
    format_duration,
    masked,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USER_ERROR = 2
EXIT_CANCELLED = 3

STATUS_SYMBOLS = {
    "succeeded": "✓",
    "skipped": "↷",
    "failed": "✗",
}


def build_executor(config: KubestageConfig, abort_event: threading.Event) -> RemoteExecutor:
    return RemoteExecutor(ssh=SshTransport(config.timeouts.ssh_connect), abort_event=abort_event)


def build_cloud(config: KubestageConfig) -> CloudClient:
    return CloudClient(config.region)


def _exit_code_for(error: KubestageError) -> int:
    if error.kind in ("user", "preflight"):
        return EXIT_USER_ERROR
    if error.kind == "cancelled":
        return EXIT_CANCELLED
    return EXIT_FAILURE


def _load(ctx) -> KubestageConfig:
    """Load config once per invocation and set up logging."""
    if "config" in ctx.obj:
        return ctx.obj["config"]
    try:
        config = load_config(ctx.obj.get("config_path"))
    except (FileNotFoundError, ConfigError) as e:
        print_error(str(e))
        raise SystemExit(EXIT_USER_ERROR)

    log_level = "DEBUG" if ctx.obj.get("verbose") else config.logging.level
    setup_logging(config.get_log_file_path(), log_level, config.logging.format, config.logging.console)
    ctx.obj["config"] = config
    return config


def _install_abort_handler(abort_event: threading.Event):
    """First Ctrl-C asks phases to stop at the next safe point; a second one interrupts."""

    def handler(signum, frame):
        if abort_event.is_set():
            raise KeyboardInterrupt
        abort_event.set()
        print_warning("Abort requested; stopping at the next safe point (Ctrl-C again to force)")

    return signal.signal(signal.SIGINT, handler)


def _print_summary(run) -> None:
    duration = format_duration(run.duration_seconds)
    if run.status == RunStatus.SUCCEEDED:
        print_success(f"{run.name} completed in {duration}")
    elif run.status == RunStatus.CANCELLED:
        print_warning(f"{run.name} cancelled at {run.resume_point}. Resume with 'kubestage up --resume'")
    else:
        print_error(f"{run.name} failed at {run.resume_point} after {duration}")
        if run.name == "up":
            print_info("Fix the problem and resume with 'kubestage up --resume'")


def _run_phases(ctx, phases, resume_from: Optional[str] = None, name: str = "up"):
    config = _load(ctx)
    abort_event = threading.Event()
    executor = build_executor(config, abort_event)
    orchestrator = Orchestrator(config, executor, build_cloud(config))
    previous_handler = _install_abort_handler(abort_event)

    try:
        run = orchestrator.run(phases, resume_from=resume_from, name=name)
    except KubestageError as e:
        print_error(str(e))
        raise SystemExit(_exit_code_for(e))
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        executor.close()

    _print_summary(run)
    ctx.obj["run"] = run
    return run


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    help="Configuration file (default: $KUBESTAGE_HOME/config.yaml)",
)
@click.option("--verbose", is_flag=True, help="Enable debug logging")
@click.version_option(version=__version__, prog_name="kubestage")
@click.pass_context
def main(ctx, config_path, verbose):
    """
    kubestage - provision a kubeadm Kubernetes cluster on AWS, phase by phase.

    Every phase records what it learns in the state file
    (deployment-info.txt) and can be re-run safely.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


@main.command()
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
@click.pass_context
def configure(ctx, force: bool):
    """Write a default config.yaml."""
    cfg_path = ctx.obj.get("config_path") or get_kubestage_home() / "config.yaml"
    cfg_path = Path(cfg_path).expanduser()
    if cfg_path.exists() and not force:
        print_error(f"Config already exists at {cfg_path}. Use --force to overwrite.")
        raise SystemExit(EXIT_USER_ERROR)

    cfg_path.parent.mkdir(parents=True, exist_ok=True)
    cfg_path.write_text(yaml.safe_dump(default_config_dict(Path.cwd()), sort_keys=False))

    env_path = get_kubestage_home() / ".env"
    if not env_path.exists():
        env_path.parent.mkdir(parents=True, exist_ok=True)
        env_path.write_text("# AWS_PROFILE=...\n# GITHUB_TOKEN=...\n")

    print_success(f"Initialized kubestage config at {cfg_path}")
    print_info("Set github_user and key_file before running 'kubestage up'.")


def _phase_command(phase):
    @click.pass_context
    def command(ctx):
        run = _run_phases(ctx, [phase], name=phase.name)
        raise SystemExit(run.exit_code)

    return click.command(phase.name, help=phase.description)(command)


for _phase in PIPELINE + MAINTENANCE:
    main.add_command(_phase_command(_phase))


@main.command()
@click.argument("phase_name", metavar="PHASE")
@click.pass_context
def check(ctx, phase_name: str):
    """
    Report the preflight requirements of PHASE without running it.

    Exits 0 when every requirement is satisfied, 2 otherwise.
    """
    config = _load(ctx)
    executor = build_executor(config, threading.Event())
    try:
        phase = get_phase(phase_name)
        orchestrator = Orchestrator(config, executor, build_cloud(config))
        orchestrator.open_store(phase)
        phase_ctx = orchestrator.context()
        results = phase_ctx.checker.evaluate(phase.requirements(phase_ctx))
    except KubestageError as e:
        print_error(str(e))
        raise SystemExit(_exit_code_for(e))
    finally:
        executor.close()

    print_banner(f"Preflight: {phase.name}")
    for result in results:
        if result.ok:
            print_success(f"{result.name}: {result.detail}")
        else:
            hint = f" ({result.hint})" if result.hint else ""
            print_error(f"{result.name}: {result.status.value}, {result.detail}{hint}")

    raise SystemExit(EXIT_OK if all(r.ok for r in results) else EXIT_USER_ERROR)


@main.command()
@click.option("--resume", is_flag=True, help="Continue from the phase the last run stopped at")
@click.option(
    "--from",
    "from_phase",
    type=click.Choice([phase.name for phase in PIPELINE]),
    help="Start at this phase",
)
@click.pass_context
def up(ctx, resume: bool, from_phase: Optional[str]):
    """
    Run the full provisioning pipeline.

    Phases whose effect is already in place are skipped.

    Examples:

      # Everything, from the start
      kubestage up

      # Continue after fixing a failure
      kubestage up --resume

      # Re-run from deploy onwards
      kubestage up --from deploy
    """
    if resume and from_phase:
        raise click.UsageError("--resume and --from are mutually exclusive")

    config = _load(ctx)
    start = from_phase
    if resume:
        start = resume_point(load_latest(config.runs_path, "up"))
        if start not in [phase.name for phase in PIPELINE]:
            start = None
        if start is None:
            print_info("Last run completed or no run recorded; running the whole pipeline")
        else:
            print_info(f"Resuming from {start}")

    print_banner(f"{config.project_name}: up")
    run = _run_phases(ctx, PIPELINE, resume_from=start, name="up")
    raise SystemExit(run.exit_code)


def _preview_destroy(config: KubestageConfig) -> None:
    """Show ``terraform plan -destroy``; read-only."""
    executor = build_executor(config, threading.Event())
    try:
        result = Toolbox(executor, config).terraform("plan", "-destroy", "-input=false", "-no-color")
    finally:
        executor.close()
    if result.ok:
        console.print(result.stdout, markup=False, highlight=False)
    else:
        print_warning(f"Could not produce a destroy plan: {result.summary()}")


def purge_local(config: KubestageConfig) -> list[Path]:
    """Remove local artifacts of a destroyed deployment. Returns what was removed."""
    terraform_dir = config.path(config.terraform_dir)
    candidates = [
        config.state_path,
        Path(config.kubeconfig_path).expanduser(),
        terraform_dir / ".terraform",
        terraform_dir / ".terraform.lock.hcl",
        config.gitops_path,
    ]
    removed = []
    for path in candidates:
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()
        else:
            continue
        removed.append(path)
    return removed


@main.command()
@click.option("--purge-backend", is_flag=True, help="Also delete the Terraform state bucket and lock table")
@click.option("--purge-local", "purge_local_files", is_flag=True, help="Also delete the state file, kubeconfig and local caches")
@click.pass_context
def teardown(ctx, purge_backend: bool, purge_local_files: bool):
    """
    Destroy everything kubestage created.

    Shows a destroy plan, then asks for 'yes' and for the word DELETE.
    Anything else cancels without touching a resource.
    """
    config = _load(ctx)

    print_banner(f"{config.project_name}: teardown")
    _preview_destroy(config)

    phases = TEARDOWN + ([BACKEND_TEARDOWN] if purge_backend else [])
    print_warning("This permanently deletes:")
    for phase in (p for p in phases if p.destructive):
        console.print(f"  • {phase.description}", markup=False)
    if purge_local_files:
        console.print("  • Local state file, kubeconfig and Terraform cache", markup=False)

    if click.prompt("Type 'yes' to continue", default="", show_default=False) != "yes":
        print_warning("Teardown cancelled; nothing was deleted")
        raise SystemExit(EXIT_CANCELLED)
    if click.prompt("Type 'DELETE' to confirm", default="", show_default=False) != "DELETE":
        print_warning("Teardown cancelled; nothing was deleted")
        raise SystemExit(EXIT_CANCELLED)

    run = _run_phases(ctx, phases, name="teardown")

    if run.status == RunStatus.SUCCEEDED and purge_local_files:
        for path in purge_local(config):
            print_success(f"Removed {path}")
    raise SystemExit(run.exit_code)


def _load_store(config: KubestageConfig) -> VariableStore:
    try:
        return VariableStore.load(config.state_path)
    except KubestageError as e:
        print_error(str(e))
        raise SystemExit(_exit_code_for(e))


@main.command()
@click.option("--show-secrets", is_flag=True, help="Print passwords and tokens in clear text")
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.pass_context
def status(ctx, show_secrets: bool, as_json: bool):
    """Show the last run and the recorded state."""
    config = _load(ctx)
    store = _load_store(config)
    snapshot = masked(store.snapshot(), show_secrets)
    last_run = load_latest(config.runs_path)

    if as_json:
        click.echo(json.dumps({
            "state_file": str(store.path),
            "facts": snapshot,
            "last_run": last_run.to_dict() if last_run else None,
        }, indent=2))
        raise SystemExit(EXIT_OK)

    print_banner(f"{config.project_name}: status")
    if last_run is None:
        print_info("No previous runs found")
    else:
        click.echo(f"Last run: {last_run.name} {last_run.run_id} at {last_run.started_at.strftime('%Y-%m-%d %H:%M:%S')}")
        click.echo(f"Status: {last_run.status.value.upper()} ({format_duration(last_run.duration_seconds)})")
        for outcome in last_run.outcomes:
            symbol = STATUS_SYMBOLS.get(outcome.status.value, "·")
            detail = outcome.reason or outcome.error or ""
            click.echo(f"  {symbol} {outcome.phase:<24} {format_duration(outcome.duration_seconds):>8}  {detail}")
        point = resume_point(last_run)
        if point:
            click.echo(f"Resume point: {point}")

    click.echo(f"\nState file: {store.path}")
    width = max((len(key) for key in snapshot), default=0)
    for key, value in snapshot.items():
        click.echo(f"  {key:<{width}}  {value}")

    log_file = config.get_log_file_path()
    if log_file.exists():
        click.echo(f"\nLogs: {log_file}")


main.add_command(status, name="show")


@main.command()
@click.option("--show-secrets", is_flag=True, help="Print the ArgoCD password in clear text")
@click.pass_context
def urls(ctx, show_secrets: bool):
    """Show application and ArgoCD URLs."""
    config = _load(ctx)
    facts = masked(_load_store(config).snapshot(), show_secrets)
    master_ip = facts.get(config.control_plane.key("PUBLIC_IP"))

    app_url = facts.get("APP_URL") or (master_ip and f"http://{master_ip}:{config.ingress_http_nodeport}")
    argocd_url = facts.get("ARGOCD_URL")

    print_banner(f"{config.project_name}: URLs")
    click.echo(f"Application:  {app_url or '<not deployed yet - run kubestage deploy>'}")
    click.echo(f"ArgoCD:       {argocd_url or '<not installed yet - run kubestage gitops-init>'}")
    if argocd_url:
        click.echo("  Username:   admin")
        click.echo(f"  Password:   {facts.get('ARGOCD_ADMIN_PASSWORD') or '<not recorded>'}")

    click.echo("")
    for node in config.nodes:
        click.echo(f"{node.name + ':':<14}{facts.get(node.key('PUBLIC_IP')) or '-'}")
    click.echo(f"{'ECR registry:':<14}{facts.get('ECR_REGISTRY') or '-'}")
    click.echo(f"{'Cart table:':<14}{facts.get('DYNAMODB_TABLE_NAME') or '-'}")


if __name__ == "__main__":
    main()
