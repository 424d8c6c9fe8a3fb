"""Command-line entry point.

``para`` mirrors a source tree into an OpenAI vector store, keeps it in sync
while running, and opens a chat with an assistant that searches it.
"""

import asyncio
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated

import cyclopts
from dotenv import load_dotenv
from openai import AsyncOpenAI
from rich.console import Console
from rich.logging import RichHandler
from rich.prompt import Confirm

from para.assistant.conversation import ConversationDriver
from para.assistant.session import ChatSession
from para.config import DEFAULT_CONFIG_PATH, load_config
from para.context import InstanceContext
from para.exceptions import ConfigurationError, ParaError
from para.files.mirror import MirrorManager, MirrorScan
from para.sync.journal import SyncJournal
from para.sync.ledger import FileIdLedger
from para.sync.orchestrator import BatchResult, SyncOrchestrator
from para.sync.remote import OpenAIRemoteService

console = Console()

app = cyclopts.App(
    name="para",
    help="Chat with an assistant that knows your source tree",
)

ConfigPath = Annotated[
    Path, cyclopts.Parameter(help="Path to the JSON configuration file")
]


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    if not verbose:
        for noisy in ("httpx", "openai", "watchdog"):
            logging.getLogger(noisy).setLevel(logging.WARNING)


def create_client() -> AsyncOpenAI:
    """Create the OpenAI client from environment variables.

    Raises:
        ConfigurationError: If OPENAI_API_KEY is not set
    """
    api_key = os.environ.get("OPENAI_API_KEY")
    if not api_key:
        raise ConfigurationError("OPENAI_API_KEY is not set (environment or .env file)")

    return AsyncOpenAI(
        api_key=api_key,
        organization=os.environ.get("OPENAI_ORG_ID") or None,
        project=os.environ.get("OPENAI_PROJECT_ID") or None,
    )


@dataclass
class Runtime:
    """Everything built at startup for one source tree."""

    context: InstanceContext
    client: AsyncOpenAI
    journal: SyncJournal
    mirror: MirrorManager
    scan: MirrorScan
    orchestrator: SyncOrchestrator


async def bootstrap(config_path: Path, client: AsyncOpenAI | None = None) -> Runtime:
    """Load config, build the mirror and connect the orchestrator to the vector store.

    Raises:
        ConfigurationError: On invalid configuration or missing credentials
        RemoteServiceError: If the vector store cannot be found or created
    """
    config = load_config(config_path)
    context = InstanceContext.create(config)
    client = client or create_client()

    journal = SyncJournal(context.journal_path)
    journal.truncate()

    ledger = FileIdLedger(context.ledger_path)
    ledger.ensure_exists()

    mirror = MirrorManager(context.source_dir, context.tracked_dir, context.path_filter())
    scan = mirror.initialize()

    remote = OpenAIRemoteService(client)
    index_id = await remote.find_or_create_index(config.vector_store_name)

    orchestrator = SyncOrchestrator(
        remote=remote,
        ledger=ledger,
        mirror_dir=context.tracked_dir,
        index_id=index_id,
        journal=journal,
    )
    return Runtime(context, client, journal, mirror, scan, orchestrator)


async def startup_sync(runtime: Runtime) -> BatchResult:
    """Remove stale files and bring every mirrored file in sync."""
    for filename in runtime.scan.removed:
        await runtime.orchestrator.delete(filename)
    return await runtime.orchestrator.sync_all()


async def run_assistant(config_path: Path) -> None:
    with console.status("[blue]Virtualizing watched files[/blue]"):
        runtime = await bootstrap(config_path)
        runtime.mirror.watch()
        await startup_sync(runtime)

    dispatcher = asyncio.create_task(
        runtime.orchestrator.run(runtime.mirror.events())
    )
    try:
        config = runtime.context.config
        driver = ConversationDriver(
            runtime.client, config.assistant, runtime.orchestrator.index_id
        )
        with console.status("[blue]Setting up your assistant[/blue]"):
            await driver.setup()

        session = ChatSession(
            console=console,
            orchestrator=runtime.orchestrator,
            driver=driver,
            journal=runtime.journal,
            generate_files_dir=config.assistant.generate_files_dir,
        )
        await session.run()
    finally:
        runtime.mirror.stop()
        await dispatcher
        await runtime.client.close()


def _run(coro) -> int:
    try:
        asyncio.run(coro)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        return 1
    except ParaError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


@app.default
def chat(
    config_path: ConfigPath = DEFAULT_CONFIG_PATH,
    *,
    verbose: Annotated[bool, cyclopts.Parameter(help="Enable debug logging")] = False,
):
    """Mirror the configured source tree and start the assistant chat.

    Example:
        para ./para-config.json
    """
    _setup_logging(verbose)
    sys.exit(_run(run_assistant(config_path)))


async def _sync_once(config_path: Path) -> None:
    runtime = await bootstrap(config_path)
    try:
        result = await startup_sync(runtime)
        console.print(
            f"[blue]{len(result.succeeded)} files synchronized successfully.[/blue]"
        )
        if result.failed:
            console.print(f"[yellow]{len(result.failed)} files failed to sync[/yellow]")
    finally:
        await runtime.client.close()


@app.command
def sync(
    config_path: ConfigPath = DEFAULT_CONFIG_PATH,
    *,
    verbose: Annotated[bool, cyclopts.Parameter(help="Enable debug logging")] = False,
):
    """Synchronize the source tree with the vector store once and exit.

    Example:
        para sync ./para-config.json
    """
    _setup_logging(verbose)
    sys.exit(_run(_sync_once(config_path)))


async def _purge_once(config_path: Path) -> None:
    runtime = await bootstrap(config_path)
    try:
        count = await runtime.orchestrator.purge()
        console.print(f"[blue]{count} files purged successfully.[/blue]")
    finally:
        await runtime.client.close()


@app.command
def purge(
    config_path: ConfigPath = DEFAULT_CONFIG_PATH,
    *,
    yes: Annotated[bool, cyclopts.Parameter(help="Skip the confirmation prompt")] = False,
    verbose: Annotated[bool, cyclopts.Parameter(help="Enable debug logging")] = False,
):
    """Delete every file from the remote file store and vector store.

    Example:
        para purge ./para-config.json --yes
    """
    _setup_logging(verbose)
    if not yes and not Confirm.ask("Delete every remote file?", default=False):
        console.print("[yellow]Purge cancelled[/yellow]")
        return
    sys.exit(_run(_purge_once(config_path)))


def main():
    load_dotenv()
    app()
