"""Interactive prompt loop.

Free text goes to the assistant; a few ``$`` commands run administrative
sync operations. The prompt is read with prompt_toolkit's async API so the
event loop keeps dispatching file watcher events while waiting for input.
"""

import logging
from pathlib import Path

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import InMemoryHistory
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from para.assistant.conversation import ConversationDriver, write_code_blocks
from para.sync.journal import SyncJournal
from para.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

PROMPT = HTML("<ansiblue>&gt;&gt;&gt; </ansiblue><ansiyellow>Ask your question or type `$help` to see commands: </ansiyellow>")

COMMANDS = {
    "$help": "Show this list of commands",
    "$sync": "Upload or repair every mirrored file that is out of sync",
    "$purge": "Delete every file from the remote file store and vector store",
    "$status": "Show recent failed sync operations",
}


class ChatSession:
    """Read questions from the terminal until EOF or interrupt."""

    def __init__(
        self,
        console: Console,
        orchestrator: SyncOrchestrator,
        driver: ConversationDriver,
        journal: SyncJournal | None = None,
        generate_files_dir: Path | None = None,
        prompt_session=None,
    ):
        self.console = console
        self.orchestrator = orchestrator
        self.driver = driver
        self.journal = journal
        self.generate_files_dir = generate_files_dir
        self.prompt_session = prompt_session or PromptSession(history=InMemoryHistory())

        self._handlers = {
            "$help": self.show_help,
            "$sync": self.sync,
            "$purge": self.purge,
            "$status": self.show_status,
        }

    async def run(self) -> None:
        """Prompt until the user sends EOF (Ctrl-D) or interrupts (Ctrl-C)."""
        while True:
            try:
                with patch_stdout():
                    question = await self.prompt_session.prompt_async(PROMPT)
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/dim]")
                return

            question = question.strip()
            if not question:
                continue

            try:
                await self.handle(question)
            except Exception as e:
                logger.debug("Turn failed", exc_info=True)
                self.console.print(f"\n[red]An error occurred:\n{e}[/red]")

    async def handle(self, question: str) -> None:
        handler = self._handlers.get(question)
        if handler is not None:
            await handler()
        else:
            await self.answer(question)

    async def answer(self, question: str) -> None:
        with self.console.status("[blue]Thinking[/blue]"):
            answer = await self.driver.ask(question)

        self.console.print()
        self.console.print(Markdown(answer.text or "_(empty response)_"))

        if self.generate_files_dir is not None and answer.code_blocks:
            written = write_code_blocks(answer.code_blocks, self.generate_files_dir)
            for path in written:
                self.console.print(f"[dim]Wrote {path}[/dim]")

    async def show_help(self) -> None:
        table = Table(title="Commands", show_header=False, box=None)
        table.add_column("Command", style="cyan", no_wrap=True)
        table.add_column("Description", style="white")
        for command, description in COMMANDS.items():
            table.add_row(command, description)
        table.add_row("anything else", "Ask the assistant a question")
        self.console.print(table)

    async def sync(self) -> None:
        with self.console.status("[blue]Synchronizing files[/blue]"):
            result = await self.orchestrator.sync_all()
        self.console.print(
            f"\n[blue]{len(result.succeeded)} files synchronized successfully.[/blue]"
        )
        if result.failed:
            self.console.print(
                f"[yellow]{len(result.failed)} files failed: "
                f"{', '.join(result.failed)}[/yellow]"
            )

    async def purge(self) -> None:
        with self.console.status("[blue]Purging remote files[/blue]"):
            count = await self.orchestrator.purge()
        self.console.print(f"\n[blue]{count} files purged successfully.[/blue]")

    async def show_status(self) -> None:
        if self.journal is None:
            self.console.print("[dim]No sync journal configured.[/dim]")
            return

        failures = [e for e in self.journal.recent(limit=200) if e.status == "failed"][:20]
        if not failures:
            self.console.print("[green]✓ No recent sync failures[/green]")
            return

        table = Table(title="Recent Sync Failures")
        table.add_column("Time", style="dim")
        table.add_column("Operation", style="cyan")
        table.add_column("File", style="white")
        table.add_column("Error", style="red")
        for entry in failures:
            table.add_row(
                entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                entry.op_type,
                entry.filename,
                entry.error or "",
            )
        self.console.print(table)
