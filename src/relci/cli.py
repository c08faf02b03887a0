# cli.py
from __future__ import annotations

import json
import os
import signal
import sys
from dataclasses import replace
from pathlib import Path

import click

from relci.cache import DEFAULT_CACHE_DIR, open_cache
from relci.cancel import CancelToken
from relci.model import TriggerEvent
from relci.orchestrator import DEFAULT_WORK_DIR, Orchestrator, exit_code_for, plan_jobs
from relci.runner import load_pipelines
from relci.secrets import Secrets
from relci.ui.console import Console, get_console, set_console


def find_pipeline_files() -> list[Path]:
    """
    Find all pipeline files in the current directory.

    Returns:
        List of Path objects for pipeline files
    """
    pipeline_files = []
    current_dir = Path(".")

    default_file = current_dir / "relci_pipelines.py"
    if default_file.exists():
        pipeline_files.append(default_file)

    for path in current_dir.glob("*_pipelines.py"):
        if path != default_file:
            pipeline_files.append(path)

    return sorted(pipeline_files)


def discover_pipelines(pipelines_arg: str | None) -> Path:
    """
    Discover the pipeline file from argument or default.

    Raises:
        SystemExit: If no file can be found or several candidates exist
    """
    console = get_console()

    if pipelines_arg:
        path = Path(pipelines_arg)
        if not path.exists() and path.suffix != ".py":
            path = Path(str(path) + ".py")
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipelines_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  relci run --pipelines my_pipelines.py",
            )
            sys.exit(1)
        return path

    candidates = find_pipeline_files()

    if len(candidates) == 0:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=[
                "Looked for:",
                "  relci_pipelines.py",
                "  *_pipelines.py",
            ],
            suggestion="Create relci_pipelines.py or pass one explicitly:\n  relci run --pipelines my_pipelines.py",
        )
        sys.exit(1)

    if len(candidates) > 1:
        file_list = "\n".join(f"  {f}" for f in candidates)
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify one explicitly:\n  relci run --pipelines relci_pipelines.py",
        )
        sys.exit(1)

    return candidates[0]


def build_event(tag: str | None, branch: str | None, ref: str | None, sha: str) -> TriggerEvent:
    given = [x for x in (tag, branch, ref) if x]
    if len(given) != 1:
        raise click.UsageError("Pass exactly one of --tag, --branch or --ref")
    if tag:
        return TriggerEvent("tag", tag, sha)
    if branch:
        return TriggerEvent("branch", branch, sha)
    try:
        return TriggerEvent.from_ref(ref, sha)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--ref") from None


def build_secrets(names: tuple[str, ...], secrets_file: str | None) -> Secrets:
    """Resolve credentials at the CLI edge; nothing below this reads the environment."""
    secrets = Secrets()
    if secrets_file:
        secrets = Secrets.from_file(secrets_file)
    if names:
        missing = [n for n in names if not os.environ.get(n)]
        if missing:
            get_console().print_debug(f"secrets not set in environment: {', '.join(missing)}")
        secrets = secrets.merged(Secrets.from_environ(names, os.environ))
    return secrets


def load_definitions(pipelines: str | None, repo: str | None):
    path = discover_pipelines(pipelines)
    definitions = load_pipelines(path)
    if repo:
        definitions = [replace(d, repository=repo) for d in definitions]
    return path, definitions


def event_options(fn):
    """Options shared by every command that evaluates a push event."""
    options = [
        click.option("--pipelines", default=None,
                     help="Pipeline file path (defaults to relci_pipelines.py if present)"),
        click.option("--tag", default=None, help="Pushed tag name, e.g. 2023.01.01"),
        click.option("--branch", default=None, help="Pushed branch name"),
        click.option("--ref", default=None, help="Full git ref, e.g. refs/tags/2023.01.01"),
        click.option("--sha", default="", help="Commit the ref points at"),
        click.option("--repo", default=None, help="Override the repository every pipeline checks out"),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """relci: tag-triggered multi-platform release pipelines."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@event_options
@click.option("--cache-dir", default=DEFAULT_CACHE_DIR, envvar="RELCI_CACHE_DIR", show_default=True,
              help="Cache directory")
@click.option("--redis-url", default=None, envvar="RELCI_REDIS_URL", help="Use a Redis cache instead of a directory")
@click.option("--cache-ttl", default=None, type=int, help="Redis expiry for cache entries, in seconds")
@click.option("--work-dir", default=DEFAULT_WORK_DIR, envvar="RELCI_WORK_DIR", show_default=True,
              help="Where job workspaces and logs are created")
@click.option("--workers", default=None, type=int, help="Number of parallel jobs (default: all at once)")
@click.option("--secret", "secret_names", multiple=True,
              help="Name of a credential to read from the environment (repeatable)")
@click.option("--secrets-file", default=None, type=click.Path(exists=True, dir_okay=False),
              help="JSON object of credential name -> value")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the run report as JSON")
@click.pass_context
def run(ctx, pipelines, tag, branch, ref, sha, repo, cache_dir, redis_url, cache_ttl, work_dir, workers,
        secret_names, secrets_file, as_json):
    """Run every pipeline the push event triggers."""
    console = get_console()
    console.progress_to_stderr = as_json
    event = build_event(tag, branch, ref, sha)

    cancel = CancelToken()

    def on_sigint(signum, frame):
        if cancel.cancelled:
            raise KeyboardInterrupt
        console.print_info("\nCancelling run (Ctrl-C again to abort)...")
        cancel.cancel()

    previous = signal.signal(signal.SIGINT, on_sigint)
    try:
        path, definitions = load_definitions(pipelines, repo)
        secrets = build_secrets(secret_names, secrets_file)
        console.set_redactor(secrets.redact)
        console.print_debug(f"pipelines: {path}; secrets: {', '.join(secrets.names()) or '(none)'}")

        orchestrator = Orchestrator(
            open_cache(cache_dir, redis_url, cache_ttl),
            secrets=secrets,
            work_root=work_dir,
            max_workers=workers,
            console=console,
            cancel=cancel,
        )
        report = orchestrator.run(definitions, event)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    finally:
        signal.signal(signal.SIGINT, previous)

    if as_json:
        click.echo(secrets.redact(json.dumps(report.to_dict(), indent=2)))
    else:
        console.print_results(report)
    sys.exit(exit_code_for(report))


@cli.command()
@event_options
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the planned jobs as JSON")
@click.pass_context
def plan(ctx, pipelines, tag, branch, ref, sha, repo, as_json):
    """Show which jobs a push event would run, without running them."""
    console = get_console()
    event = build_event(tag, branch, ref, sha)

    try:
        _, definitions = load_definitions(pipelines, repo)
        jobs = plan_jobs(definitions, event)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps([
            {
                "job_id": j.job_id,
                "pipeline": j.pipeline,
                "platform_id": j.platform_id,
                "params": j.params,
                "runner_image": j.template.runner_image,
                "steps": [s.name for s in j.template.steps],
                "publish": [t.name for t in j.template.publish_targets],
            }
            for j in jobs
        ], indent=2))
        return

    if not jobs:
        console.print_not_triggered(event.ref_name)
        return
    console.print_header(f"PLAN for {event.ref_kind} {event.ref_name}")
    for j in jobs:
        console.print_plan_job(j.job_id, j.template.runner_image, len(j.template.steps),
                               [t.name for t in j.template.publish_targets])


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address")
@click.option("--port", default=8000, type=int, show_default=True, help="Bind port")
@click.pass_context
def serve(ctx, host, port):
    """Serve the push-event webhook and run archive."""
    import uvicorn

    console = get_console()
    try:
        uvicorn.run("relci.cloud.main:app", host=host, port=port, log_level="debug" if ctx.obj["debug"] else "info")
    except KeyboardInterrupt:
        console.print_info("\nServer stopped by user")
        sys.exit(0)


if __name__ == "__main__":
    cli()
