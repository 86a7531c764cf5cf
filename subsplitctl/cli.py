# subsplitctl/cli.py
import click
import json
import uuid
import os
import signal
import subprocess
import sys
import traceback
from datetime import datetime, timezone
from . import broker as broker_module
from . import config as config_module
from . import models
from . import worker as worker_module


def new_worker_id():
    return f"worker-{uuid.uuid4().hex[:8]}"


def start_worker_process(worker_id=None, config_path=None):
    """
    Target function for a detached worker process.
    Instantiates and runs a worker with its output sent to the log file.
    Exits non-zero on a fatal fault so a supervisor can restart it.
    """
    try:
        os.makedirs(config_module.APP_DIR, exist_ok=True)
        log_f = open(config_module.LOG_FILE, 'a')

        # Redirect stdout and stderr to the log file
        # This is CRITICAL for detaching from the parent terminal
        sys.stdout = log_f
        sys.stderr = log_f

        print(f"\n--- Starting new worker at {datetime.now(timezone.utc).isoformat()} ---")
    except OSError as e:
        print(f"Failed to open log file: {e}", file=sys.__stderr__)
        sys.exit(1)

    worker_id = worker_id or new_worker_id()
    exit_code = 0
    try:
        print(f"[{worker_id}] Process started (PID: {os.getpid()}).")
        cfg = config_module.load_config(config_path)
        w = worker_module.Worker(worker_id, cfg, broker_module.connect(cfg.redis))
        print(f"[{worker_id}] Worker instantiated. Starting run loop...")
        w.run()
        print(f"[{worker_id}] Run loop exited cleanly.")

    except Exception:
        print(f"[{worker_id}] FATAL ERROR: Worker crashed.")
        traceback.print_exc(file=sys.stderr)
        print("--- End of error ---")
        exit_code = 1
    finally:
        print(f"[{worker_id}] Process exiting.")
        log_f.close()
    sys.exit(exit_code)


def read_worker_entries():
    """
    Reads (pid, worker_id) pairs from the PID file.
    Lines are 'PID WORKER_ID'; worker_id is None for a bare PID.
    """
    if not os.path.exists(config_module.PID_FILE):
        return []
    entries = []
    try:
        with open(config_module.PID_FILE, 'r') as f:
            for line in f.read().splitlines():
                fields = line.split()
                if not fields:
                    continue
                entries.append((int(fields[0]), fields[1] if len(fields) > 1 else None))
    except (OSError, ValueError) as e:
        click.echo(f"Error reading PID file: {e}", err=True)
        return []
    return entries


def write_worker_entries(entries):
    """Writes the PID file, or removes it when there is nothing to record."""
    if not entries:
        if os.path.exists(config_module.PID_FILE):
            os.remove(config_module.PID_FILE)
        return
    os.makedirs(config_module.APP_DIR, exist_ok=True)
    with open(config_module.PID_FILE, 'w') as f:
        for pid, worker_id in entries:
            f.write(f"{pid} {worker_id}\n" if worker_id else f"{pid}\n")


def is_process_running(pid):
    """Checks if a process with the given PID is running."""
    try:
        os.kill(pid, 0)
    except OSError:
        return False
    else:
        return True


def format_worker(pid, worker_id):
    return f"{pid} ({worker_id})" if worker_id else str(pid)


def load_config_or_exit(ctx):
    try:
        return config_module.load_config(ctx.obj.get('config_path'))
    except config_module.ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)


def get_broker(ctx):
    cfg = load_config_or_exit(ctx)
    return broker_module.connect(cfg.redis)


def describe(body):
    """One-line summary of a queued payload."""
    try:
        data = json.loads(body)
    except ValueError:
        return f"<malformed> {body[:60]}"
    if not isinstance(data, dict):
        return f"<malformed> {body[:60]}"
    repository = data.get('repository')
    url = repository.get('url') if isinstance(repository, dict) else None
    return f"{url or '-'} {data.get('ref') or '-'} {data.get('project_name') or '-'}"


@click.group()
@click.option('--config', 'config_path', envvar=config_module.CONFIG_ENVVAR, default=None,
              help='Path to the JSON config file (default: config.json, then config.json.dist).')
@click.pass_context
def main(ctx, config_path):
    """
    subsplitctl: publish monorepo subsplits from a queue of repository notifications.
    """
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path


@main.command()
@click.argument('notification_json')
@click.pass_context
def enqueue(ctx, notification_json):
    """
    Add a repository-change notification to the incoming queue.

    NOTIFICATION_JSON: A JSON string as sent by the repository webhook.
    Example: '{"repository": {"url": "https://example/lib.git"}, "ref": "refs/heads/main"}'
    """
    try:
        notification = models.Notification.from_json(notification_json)
    except models.NotificationError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)

    get_broker(ctx).enqueue(notification_json)
    click.echo(f"Notification for {notification.repository_url} ({notification.ref}) enqueued.")


@main.group()
def worker():
    """
    Manage worker processes.
    """
    pass


@worker.command()
@click.option('--worker-id', default=None, help='Worker id (default: random). Namespaces the working directory.')
@click.pass_context
def run(ctx, worker_id):
    """
    Run a worker in the foreground until it is stopped or the broker fails.
    """
    cfg = load_config_or_exit(ctx)
    w = worker_module.Worker(worker_id or new_worker_id(), cfg, broker_module.connect(cfg.redis))
    # BrokerFault propagates: the process must exit non-zero so its supervisor restarts it
    w.run()


@worker.command()
@click.option('--count', default=1, help='Number of workers to start.')
@click.pass_context
def start(ctx, count):
    """
    Start one or more workers in the background.
    """
    active = [(pid, wid) for pid, wid in read_worker_entries() if is_process_running(pid)]

    if active:
        click.echo(f"Workers are already running: {', '.join(format_worker(*e) for e in active)}")
        click.echo("Please stop them first with 'subsplitctl worker stop'.")
        return

    # Fail early instead of in every detached worker
    cfg = load_config_or_exit(ctx)

    # Use a detached subprocess, started in a fresh interpreter
    started = []
    for _ in range(count):
        worker_id = new_worker_id()
        cmd = [sys.executable, '-m', 'subsplitctl.worker_launcher', worker_id]
        if cfg.source:
            cmd.append(cfg.source)
        try:
            # start_new_session detaches from controlling TTY and parent process group
            p = subprocess.Popen(cmd, close_fds=True, start_new_session=True)
            started.append((p.pid, worker_id))
        except OSError as e:
            click.echo(f"Error starting worker subprocess: {e}", err=True)

    try:
        write_worker_entries(started)
        click.echo(f"Started {len(started)} worker(s) in the background: {', '.join(format_worker(*e) for e in started)}")
    except OSError as e:
        click.echo(f"Error writing PID file: {e}")
        click.echo("Workers started, but PID file not written. You may need to stop them manually.")


@worker.command()
def stop():
    """
    Stop all running worker processes gracefully.
    """
    entries = read_worker_entries()
    if not entries:
        click.echo("No workers running (PID file not found).")
        return

    click.echo(f"Sending graceful shutdown (SIGTERM) to: {', '.join(format_worker(*e) for e in entries)}...")
    stopped_count = 0
    for pid, worker_id in entries:
        try:
            os.kill(pid, signal.SIGTERM)
            stopped_count += 1
        except ProcessLookupError:
            click.echo(f"Warning: Worker {format_worker(pid, worker_id)} not found (may have already stopped).")
        except OSError as e:
            click.echo(f"Error stopping worker {format_worker(pid, worker_id)}: {e}")

    click.echo(f"Signal sent to {stopped_count} process(es).")
    write_worker_entries([])


@main.command()
@click.pass_context
def status(ctx):
    """
    Show active workers and the length of every queue.
    """
    click.echo("--- Worker Status ---")
    entries = read_worker_entries()
    active = [(pid, wid) for pid, wid in entries if is_process_running(pid)]

    if len(active) != len(entries):
        click.echo(f"Dropping {len(entries) - len(active)} stale PID file entries.")
        write_worker_entries(active)

    if not active:
        click.echo("No active workers found.")
    else:
        click.echo(f"Found {len(active)} active worker(s):")
        for pid, worker_id in active:
            click.echo(f"  PID {pid:<8} {worker_id or '-'}")

    broker = get_broker(ctx)
    click.echo("\n--- Queue Summary ---")
    click.echo(f"  Incoming:   {broker.length(broker_module.INCOMING)}")
    click.echo(f"  Processing: {broker.length(broker_module.PROCESSING)}")
    click.echo(f"  Processed:  {broker.length(broker_module.PROCESSED)}")
    click.echo(f"  Failures:   {broker.length(broker_module.FAILURES)}")


@main.group()
def dlq():
    """
    Manage the failures queue (dead letters).
    """
    pass


@dlq.command('list')
@click.pass_context
def dlq_list(ctx):
    """
    List all failed notifications, newest first.
    """
    entries = get_broker(ctx).entries(broker_module.FAILURES)
    if not entries:
        click.echo("No failed notifications.")
        return

    click.echo(f"{'INDEX':<6} REPOSITORY REF PROJECT")
    click.echo("-" * 60)
    for index, body in enumerate(entries):
        click.echo(f"{index:<6} {describe(body)}")


@dlq.command('retry')
@click.argument('index', type=int)
@click.pass_context
def dlq_retry(ctx, index):
    """
    Move the failed notification at INDEX (see 'dlq list') back to incoming.
    """
    broker = get_broker(ctx)
    entries = broker.entries(broker_module.FAILURES)
    if index < 0 or index >= len(entries):
        click.echo(f"Error: No failed notification at index {index}.", err=True)
        ctx.exit(1)

    if not broker.requeue_failure(entries[index]):
        click.echo(f"Error: Notification at index {index} is no longer in failures.", err=True)
        ctx.exit(1)
    click.echo(f"Notification {index} moved back to incoming: {describe(entries[index])}")


@main.group()
def config():
    """
    Inspect configuration.
    """
    pass


@config.command('show')
@click.pass_context
def config_show(ctx):
    """
    Print the effective configuration.
    """
    cfg = load_config_or_exit(ctx)
    click.echo(f"# {cfg.source}")
    click.echo(json.dumps(cfg.to_dict(), indent=2))


if __name__ == '__main__':
    main()
