import time

import click

from backq.config import settings
from backq.jobs import ReliabilityError, build_worker, start_worker
from backq.log import configure_logging
from backq.messages import ProcessMessage
from backq.publishers import QueuePublisher


@click.group(help="backq: background job queue workers and publishers")
@click.option("--log-level", default=None, help="Override BACKQ_LOG_LEVEL")
def cli(log_level):
    configure_logging(log_level or settings.log_level)


# ---------- Workers ----------
@cli.group("worker", help="Run workers")
def worker_group():
    pass


def _run_worker(kind, queue, work_timeout, restart_threshold):
    worker = build_worker(
        kind,
        queue_name=queue,
        work_timeout=work_timeout,
        restart_threshold=restart_threshold,
    )
    click.secho(f"Starting {kind} worker on '{worker.queue_name}'. Press Ctrl+C to stop…", fg="cyan")
    try:
        connected = start_worker(worker)
    except ReliabilityError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    if not connected:
        click.secho("Error: could not connect to the broker.", fg="red")
        raise SystemExit(1)
    click.secho("Worker stopped.", fg="yellow")


worker_options = [
    click.option("--queue", default=None, help="Queue to lease from"),
    click.option("--work-timeout", type=int, default=None, help="Seconds to wait for a job per lease"),
    click.option("--restart-threshold", type=int, default=None, help="Exit after this many jobs (0 = never)"),
]


def with_worker_options(func):
    for option in reversed(worker_options):
        func = option(func)
    return func


@worker_group.command("process", help="Launch queued commands as background processes")
@with_worker_options
def worker_process(queue, work_timeout, restart_threshold):
    _run_worker("process", queue, work_timeout, restart_threshold)


@worker_group.command("serialized", help="Forward queued messages to their publishers")
@with_worker_options
def worker_serialized(queue, work_timeout, restart_threshold):
    _run_worker("serialized", queue, work_timeout, restart_threshold)


# ---------- Enqueue ----------
def _parse_env(values):
    env = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint="--env")
        env[key] = value
    return env


def _from_now(seconds):
    return None if seconds is None else time.time() + seconds


@cli.command("enqueue", help="Queue a command for the process worker")
@click.argument("command", nargs=-1, required=True)
@click.option("--queue", default=None, help="Target queue (default: BACKQ_PROCESS_QUEUE)")
@click.option("--shell", is_flag=True, help="Run COMMAND through the shell as one string")
@click.option("--cwd", default=None, help="Working directory")
@click.option("--env", "env_items", multiple=True, help="Environment override KEY=VALUE")
@click.option("--input", "input_text", default=None, help="Text fed to the command's stdin")
@click.option("--timeout", type=float, default=None, help="Seconds before the process is stopped")
@click.option("--deadline-in", type=float, default=None, help="Drop the job if not started within N seconds")
@click.option("--ready-in", type=float, default=None, help="Keep the job deferred for N seconds")
@click.option("--expires-in", type=float, default=None, help="Discard the job after N seconds")
@click.option("--priority", type=int, default=None, help="Lower number = more urgent")
@click.option("--delay", type=int, default=None, help="Seconds before the broker hands the job out")
@click.option("--ttr", type=int, default=None, help="Lease time-to-run in seconds")
def enqueue_cmd(command, queue, shell, cwd, env_items, input_text, timeout, deadline_in,
                ready_in, expires_in, priority, delay, ttr):
    message = ProcessMessage(
        commandline=" ".join(command) if shell else list(command),
        cwd=cwd,
        env=_parse_env(env_items) or None,
        input=input_text,
        timeout=timeout,
        deadline=_from_now(deadline_in),
        ready_at=_from_now(ready_in),
        expires_at=_from_now(expires_in),
    )

    publisher = QueuePublisher(queue_name=queue or settings.process_queue)
    try:
        if not publisher.start():
            raise click.ClickException("could not connect to the broker")
        job_id = publisher.publish(
            message,
            {"priority": priority, "readywait": delay, "jobttr": ttr},
        )
        if job_id is None:
            raise click.ClickException("broker rejected the job")
    except click.ClickException as e:
        click.secho(f"Error: {e.message}", fg="red")
        raise SystemExit(1)
    finally:
        publisher.finish()

    click.secho(f"Enqueued job {job_id} on '{publisher.queue_name}' -> {message.display_commandline()}", fg="green")


# ---------- HTTP API ----------
@cli.command("serve", help="Run the HTTP API")
@click.option("--host", default=None, help="Bind address (default: BACKQ_API_HOST)")
@click.option("--port", type=int, default=None, help="Port (default: BACKQ_API_PORT)")
def serve_cmd(host, port):
    import uvicorn

    uvicorn.run(
        "backq.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_level=settings.log_level.lower(),
    )


def main():
    cli()
