"""Command-line interface for the cloud backup engine."""

import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .auth.vault import Credential
from .config.settings import ENV_PREFIX, EngineSettings
from .context import EngineContext
from .exceptions import BackupError
from .tasks.manager import TASK_KEY_PREFIX, TaskManager
from .tasks.models import BackupTask, TaskStatus
from .utils.encryption import EncryptionManager
from .utils.logging import setup_logging

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    TaskStatus.PENDING: "yellow",
    TaskStatus.RUNNING: "cyan",
    TaskStatus.SYNCING: "cyan",
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
}


def _fail(error: Exception):
    """Print an error on stderr and exit with status 1."""
    err_console.print(f"❌ Error: {error}", style="red bold")
    sys.exit(1)


def _engine(ctx: click.Context) -> EngineContext:
    engine: EngineContext = ctx.obj["engine"]
    return engine.initialize()


@click.group()
@click.version_option(version=__version__)
@click.option('--master-password',
              envvar=f"{ENV_PREFIX}MASTER_PASSWORD",
              required=True,
              help='Master password for credential encryption')
@click.option('--config', '-c', 'config_path',
              type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help='Path to YAML settings file')
@click.option('--log-level',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              help='Override the configured log level')
@click.pass_context
def cli(ctx: click.Context, master_password: str, config_path: Optional[Path], log_level: Optional[str]):
    """Cloud Backup Tool

    Back up files and folders to cloud storage, once, on a cron schedule
    or as a continuous folder sync.
    """
    ctx.ensure_object(dict)
    try:
        settings = EngineSettings.load(config_path)
        if log_level:
            settings.logging.level = log_level.upper()
        setup_logging(
            log_level=settings.logging.level,
            log_file=settings.logging.file,
            log_to_console=settings.logging.console,
            max_file_size=settings.logging.max_file_size,
            backup_count=settings.logging.backup_count,
        )
        engine = EngineContext(
            master_password,
            settings,
            registry=ctx.obj.get("registry"),
            observer_factory=ctx.obj.get("observer_factory"),
        )
    except Exception as e:
        _fail(e)

    ctx.obj["engine"] = engine
    ctx.call_on_close(engine.shutdown)


@cli.command()
@click.option('--source', '-s', required=True, help='File or folder to back up')
@click.option('--provider', '-p', required=True, help='Storage provider name (see "providers")')
@click.option('--dest', '-d', default='', help='Destination path in cloud storage')
@click.option('--schedule', help='Backup schedule in cron format (optional)')
@click.option('--recurring', is_flag=True, help='Repeat the backup on every schedule tick')
@click.option('--compress', is_flag=True, help='Compress the backup (tar.gz)')
@click.option('--encrypt', is_flag=True, help='Encrypt the backup')
@click.option('--key', help='Encryption key (generated and kept in the vault when omitted)')
@click.option('--single', is_flag=True, help='Back up a single file')
@click.option('--sync', 'is_sync', is_flag=True, help='Keep the folder synchronized until interrupted')
@click.pass_context
def create(ctx: click.Context, source: str, provider: str, dest: str, schedule: Optional[str],
           recurring: bool, compress: bool, encrypt: bool, key: Optional[str], single: bool, is_sync: bool):
    """Create a backup task and run it."""
    try:
        engine = _engine(ctx)
        task = BackupTask(
            source_path=str(Path(source).absolute()),
            provider=provider,
            destination_path=dest,
            schedule=schedule or None,
            recurring=recurring,
            compress=compress,
            encrypt=encrypt,
            encryption_key=key or None,
            is_single=single,
            is_sync=is_sync,
        )
        engine.manager.create_task(task)
        console.print(f"✅ Task created with ID: [bold]{task.id}[/bold]", style="green")
        _run(engine, task)
    except BackupError as e:
        _fail(e)


@cli.command('run')
@click.argument('task_id')
@click.pass_context
def run_task(ctx: click.Context, task_id: str):
    """Run a stored task again."""
    try:
        engine = _engine(ctx)
        _run(engine, engine.manager.get_task(task_id))
    except BackupError as e:
        _fail(e)


def _run(engine: EngineContext, task: BackupTask):
    """Run a task the way its flags ask for."""
    if task.is_sync:
        _sync_until_interrupted(engine.manager, task)
        return

    if task.schedule:
        kind = "recurring" if task.recurring else "one-shot"
        console.print(f"⏰ Waiting for {kind} schedule '{task.schedule}' (Ctrl+C to stop)...")
        try:
            engine.scheduler.schedule_task(task)
        except KeyboardInterrupt:
            engine.scheduler.cancel(task.id)
            console.print("\n🛑 Schedule stopped", style="yellow")
            return
        console.print(f"✅ Scheduled task {task.id} finished", style="green")
        return

    with console.status(f"Backing up {task.source_path}..."):
        engine.manager.execute_task(task)
    console.print(f"✅ Task completed successfully with ID: {task.id}", style="green")


def _sync_until_interrupted(manager: TaskManager, task: BackupTask):
    """Run a sync task in the background until Ctrl+C or SIGTERM."""
    errors: List[Exception] = []

    def target():
        try:
            manager.execute_task(task)
        except Exception as e:
            errors.append(e)

    worker = threading.Thread(target=target, name=f"sync-{task.id}", daemon=True)
    worker.start()
    console.print("🔄 Folder sync is active. Press Ctrl+C to stop...")

    stop_requested = threading.Event()
    previous_handler = signal.signal(signal.SIGTERM, lambda signum, frame: stop_requested.set())
    try:
        while worker.is_alive() and not stop_requested.wait(0.5):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    if worker.is_alive():
        console.print("\n🛑 Stopping sync...")
        manager.stop_sync(task)
        worker.join()

    if errors:
        error = errors[0]
        if isinstance(error, BackupError):
            raise error
        raise BackupError(f"sync task {task.id} failed: {error}") from error
    console.print("✅ Sync stopped successfully", style="green")


@cli.command('list')
@click.pass_context
def list_tasks(ctx: click.Context):
    """List backup tasks."""
    try:
        tasks = _engine(ctx).manager.list_tasks()
    except BackupError as e:
        _fail(e)

    if not tasks:
        console.print("No backup tasks found")
        return

    table = Table(title="Backup Tasks")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Source")
    table.add_column("Provider", style="magenta")
    table.add_column("Destination")
    table.add_column("Schedule")
    table.add_column("Mode")
    table.add_column("Status")
    table.add_column("Created")
    table.add_column("Error", style="red")

    for task in tasks:
        style = STATUS_STYLES.get(task.status, "white")
        mode = "sync" if task.is_sync else ("recurring" if task.recurring else "once")
        flags = [name for name, on in (("compress", task.compress), ("encrypt", task.encrypt)) if on]
        if flags:
            mode = f"{mode} ({', '.join(flags)})"
        table.add_row(
            task.id,
            task.source_path,
            task.provider,
            task.destination_path,
            task.schedule or "-",
            mode,
            f"[{style}]{task.status.value}[/{style}]",
            task.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            task.error_message or "",
        )

    console.print(table)


@cli.command()
@click.argument('task_id')
@click.pass_context
def delete(ctx: click.Context, task_id: str):
    """Delete a backup task."""
    try:
        _engine(ctx).manager.delete_task(task_id)
    except BackupError as e:
        _fail(e)
    console.print(f"🗑️ Deleted task {task_id}", style="green")


@cli.command()
@click.option('--provider', '-p', required=True, help='Provider to configure')
@click.option('--client-id', default='', help='Client ID, access key, account name or root directory')
@click.option('--client-secret', default='', help='Client secret, secret key or account key')
@click.option('--redirect-url', default='', help='Redirect URL, bucket or container address')
@click.pass_context
def configure(ctx: click.Context, provider: str, client_id: str, client_secret: str, redirect_url: str):
    """Store provider credentials in the encrypted vault."""
    if provider.startswith(TASK_KEY_PREFIX):
        _fail(click.BadParameter(f"provider names may not start with {TASK_KEY_PREFIX}"))
    try:
        engine = _engine(ctx)
        engine.vault.store_credential(Credential(
            provider=provider,
            key=client_id,
            secret=client_secret,
            redirect_url=redirect_url,
        ))
    except BackupError as e:
        _fail(e)

    console.print(f"✅ Successfully configured credentials for {provider}", style="green")
    if provider not in engine.registry:
        console.print(f"⚠️ No storage provider named '{provider}' is registered", style="yellow")
    else:
        console.print("\nYou can now create backup tasks using this provider.")


@cli.command()
@click.argument('provider')
@click.pass_context
def authorize(ctx: click.Context, provider: str):
    """Sign in to a provider once and cache its token."""
    try:
        engine = _engine(ctx)
        instance = engine.registry.create(provider, engine.vault.get_credential(provider))
        auth = getattr(instance, "auth", None)
        if hasattr(auth, "code_prompt"):
            auth.code_prompt = _prompt_for_code
        instance.authenticate()
    except BackupError as e:
        _fail(e)
    console.print(f"✅ Authorized {provider}", style="green")


def _prompt_for_code(url: str) -> str:
    console.print(f"Visit the following URL to authenticate:\n{url}")
    return click.prompt("Enter the code")


@cli.command()
@click.pass_context
def providers(ctx: click.Context):
    """Show storage providers and whether they are configured."""
    try:
        engine = _engine(ctx)
        configured = {
            name for name in engine.vault.list_providers() if not name.startswith(TASK_KEY_PREFIX)
        }
        registered = engine.registry.names()
    except BackupError as e:
        _fail(e)

    table = Table(title="Storage Providers")
    table.add_column("Provider", style="cyan")
    table.add_column("Registered")
    table.add_column("Credentials")
    for name in sorted(set(registered) | configured):
        table.add_row(
            name,
            "[green]yes[/green]" if name in registered else "[red]no[/red]",
            "[green]configured[/green]" if name in configured else "[yellow]missing[/yellow]",
        )
    console.print(table)


@cli.command()
@click.argument('file', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--key', '-k', required=True, help='Encryption key the backup was made with')
@click.option('--output', '-o', type=click.Path(dir_okay=False, path_type=Path),
              help='Where to write the decrypted file')
@click.pass_context
def decrypt(ctx: click.Context, file: Path, key: str, output: Optional[Path]):
    """Decrypt a downloaded encrypted backup."""
    engine: EngineContext = ctx.obj["engine"]
    try:
        manager = EncryptionManager(key, iterations=engine.settings.kdf_iterations)
        output_path = manager.decrypt_file(file, output)
    except (BackupError, ValueError, OSError) as e:
        _fail(e)
    console.print(f"🔓 Decrypted to {output_path}", style="green")


if __name__ == '__main__':
    cli()
