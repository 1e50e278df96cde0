import json
import logging
import threading

import click
from rich.logging import RichHandler

from . import repository as repo
from .background import RecurringJobRunner
from .config import DB_FILE, DISPATCH_TICK_SECONDS
from .db import Database, init_db
from .models import STATES, KINDS, VIDEO_DOWNLOAD, CHANNEL_ADD, CHANNEL_FETCH
from .tasks import WorkerContext
from .utils import parse_domain
from .worker import Dispatcher, setup_signal_handlers
from .ytdlp import YtDlp


def _setup_logging(debug: bool):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _enqueue(db: Database, kind: str, payload):
    with db.connect() as conn:
        task_id = repo.enqueue(conn, kind, payload)
    click.secho(f"Enqueued task {task_id} ({kind})", fg="green")


@click.group(help="tubequeue — media download job queue")
@click.option("--db", "db_path", envvar="TUBEQUEUE_DB", default=DB_FILE, show_default=True,
              help="SQLite database file")
@click.option("--debug", is_flag=True, help="Verbose logging")
@click.pass_context
def cli(ctx, db_path, debug):
    _setup_logging(debug)
    db = Database(db_path)
    # Ensure DB/schema exist before any command runs
    init_db(db)
    ctx.obj = db
    ctx.call_on_close(db.close)


# ---------- Enqueue ----------
@cli.command("enqueue", help="Add a task with a raw JSON payload")
@click.argument("kind", type=click.Choice(KINDS))
@click.argument("payload")
@click.pass_obj
def enqueue_cmd(db, kind, payload):
    try:
        data = json.loads(payload)
    except ValueError as e:
        raise click.ClickException(f"Payload is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise click.ClickException("Payload must be a JSON object")
    _enqueue(db, kind, data)


@cli.command("download", help="Queue a video download")
@click.argument("url")
@click.pass_obj
def download_cmd(db, url):
    _enqueue(db, VIDEO_DOWNLOAD, {"url": url})


@cli.group("channel", help="Follow channels")
def channel_group():
    pass


@channel_group.command("add", help="Queue registration of a channel URL")
@click.argument("url")
@click.pass_obj
def channel_add_cmd(db, url):
    _enqueue(db, CHANNEL_ADD, {"url": url})


@channel_group.command("fetch", help="Queue a video listing refresh for a channel")
@click.argument("channel_id")
@click.option("--domain", default="youtube.com", show_default=True)
@click.option("--limit", type=int, default=None, help="Newest N videos, 0 for all")
@click.pass_obj
def channel_fetch_cmd(db, channel_id, domain, limit):
    payload = {"domain": domain, "channel_id": channel_id}
    if limit is not None:
        payload["limit"] = limit
    _enqueue(db, CHANNEL_FETCH, payload)


# ---------- Dispatcher ----------
@cli.command("run", help="Run the dispatcher and recurring jobs until interrupted")
@click.option("--tick", type=float, default=DISPATCH_TICK_SECONDS, show_default=True,
              help="Seconds between dispatcher iterations")
@click.pass_obj
def run_cmd(db, tick):
    with db.connect() as conn:
        try:
            conf = repo.load_runtime_config(conn)
        except ValueError as e:
            raise click.ClickException(str(e))
        recovered = repo.requeue_abandoned(conn)
    if recovered:
        click.secho(f"Re-queued {recovered} task(s) left in progress.", fg="yellow")

    stop = threading.Event()
    setup_signal_handlers(stop)
    ctx = WorkerContext(db=db, config=conf, ytdlp=YtDlp(conf.ytdlp_bin), stop=stop)

    click.secho(f"Dispatching with concurrency {conf.concurrency}. Press Ctrl+C to stop…", fg="cyan")
    RecurringJobRunner(ctx, stop).start()
    Dispatcher(ctx, stop=stop, tick=tick).run()
    click.secho("Dispatcher stopped.", fg="yellow")


# ---------- Tasks ----------
@cli.command("list", help="List tasks")
@click.option("--state", type=click.Choice(STATES), default=None)
@click.pass_obj
def list_cmd(db, state):
    with db.connect() as conn:
        tasks = repo.list_tasks(conn, state=state)

    if not tasks:
        click.echo("No tasks.")
        return

    for t in tasks:
        click.echo(
            f"{t.id:>6} | {t.kind:<14} | {t.state:<4} | retries={t.retry_count} "
            f"| updated={t.updated_at} | error={t.error_code} | {t.payload}"
        )


@cli.command("status", help="Task count per state")
@click.pass_obj
def status_cmd(db):
    with db.connect() as conn:
        click.echo(json.dumps(repo.counts(conn), indent=2))


@cli.command("retry", help="Re-queue an ERR or FAIL task")
@click.argument("task_id", type=int)
@click.pass_obj
def retry_cmd(db, task_id):
    with db.connect() as conn:
        if not repo.retry_task(conn, task_id):
            raise click.ClickException(f"Task {task_id} is not in ERR or FAIL.")
    click.secho(f"Re-queued task {task_id}.", fg="green")


# ---------- Channels / videos / jobs ----------
@cli.command("channels", help="List followed channels")
@click.pass_obj
def channels_cmd(db):
    with db.connect() as conn:
        channels = repo.list_channels(conn)
    if not channels:
        click.echo("No channels.")
        return
    for c in channels:
        click.echo(f"{c.channel_name_normalized:<30} | {c.channel_name} | {c.url}")


@cli.command("videos", help="List known videos")
@click.option("--channel", "channel_name", default=None, help="Channel name (any case)")
@click.option("--domain", default="youtube.com", show_default=True)
@click.pass_obj
def videos_cmd(db, channel_name, domain):
    with db.connect() as conn:
        channel_ref = None
        if channel_name:
            channel = repo.find_channel_by_name(conn, parse_domain(domain), channel_name)
            if channel is None:
                raise click.ClickException(f"No channel named {channel_name!r}.")
            channel_ref = channel.id
        videos = repo.list_videos(conn, channel_ref=channel_ref)
    if not videos:
        click.echo("No videos.")
        return
    for v in videos:
        flags = ("R" if v.is_requested else "-") + ("D" if v.is_downloaded else "-")
        date = v.release_date or v.release_date_estimate or "?"
        click.echo(f"{flags} | {date} | {v.video_id} | {v.name}")


@cli.command("jobs", help="List recurring jobs")
@click.pass_obj
def jobs_cmd(db):
    with db.connect() as conn:
        for job in repo.list_persistent_jobs(conn):
            click.echo(f"{job.name:<18} | every {job.interval_sec}s | last run {job.last_exec}")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_obj
def config_get(db):
    with db.connect() as conn:
        click.echo(json.dumps(repo.get_config(conn), indent=2))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set_cmd(db, key, value):
    try:
        with db.connect() as conn:
            repo.set_config(conn, key, value)
    except ValueError as e:
        raise click.ClickException(str(e))
    click.secho(f"Config updated: {key}={value}", fg="green")


def main():
    cli()
