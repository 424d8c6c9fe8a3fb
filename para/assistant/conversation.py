"""Conversation driver for an OpenAI assistant bound to the synced vector store."""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import openai
from openai import AsyncOpenAI

from para.config import AssistantConfig
from para.exceptions import ConversationError

logger = logging.getLogger(__name__)

CODE_BLOCK_PATTERN = re.compile(r"```([^\n`]*)\n(.*?)```", re.DOTALL)

TERMINAL_RUN_STATUSES = ("completed", "failed", "cancelled", "expired", "incomplete")

EXTENSIONS = {
    "bash": "sh",
    "c": "c",
    "cpp": "cpp",
    "c++": "cpp",
    "csharp": "cs",
    "cs": "cs",
    "css": "css",
    "go": "go",
    "html": "html",
    "java": "java",
    "javascript": "js",
    "js": "js",
    "json": "json",
    "jsx": "jsx",
    "markdown": "md",
    "md": "md",
    "php": "php",
    "python": "py",
    "py": "py",
    "ruby": "rb",
    "rb": "rb",
    "rust": "rs",
    "sh": "sh",
    "shell": "sh",
    "sql": "sql",
    "tex": "tex",
    "latex": "tex",
    "ts": "ts",
    "tsx": "tsx",
    "typescript": "ts",
    "yaml": "yaml",
    "yml": "yaml",
}


@dataclass(frozen=True)
class CodeBlock:
    language: str
    code: str

    @property
    def extension(self) -> str:
        return EXTENSIONS.get(self.language.lower(), "txt")


@dataclass
class Answer:
    """The assistant's reply to one question."""

    text: str
    code_blocks: list[CodeBlock] = field(default_factory=list)


def extract_code_blocks(text: str) -> list[CodeBlock]:
    """Extract fenced code blocks from markdown text."""
    blocks = []
    for match in CODE_BLOCK_PATTERN.finditer(text or ""):
        language = match.group(1).strip().split(" ")[0] if match.group(1).strip() else ""
        blocks.append(CodeBlock(language=language, code=match.group(2).strip()))
    return blocks


def write_code_blocks(
    blocks: list[CodeBlock], out_dir: Path, timestamp: datetime | None = None
) -> list[Path]:
    """Write code blocks to ``out_dir`` as ``response-<timestamp>-<n>.<ext>``.

    Returns:
        Paths of the files written
    """
    if not blocks:
        return []

    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    stamp = (timestamp or datetime.now()).strftime("%Y%m%d-%H%M%S")

    written = []
    for n, block in enumerate(blocks, start=1):
        path = out_dir / f"response-{stamp}-{n}.{block.extension}"
        path.write_text(block.code + "\n", encoding="utf-8")
        written.append(path)
    logger.debug(f"Wrote {len(written)} code blocks to {out_dir}")
    return written


class ConversationDriver:
    """Ask questions of an assistant whose thread searches the vector store."""

    def __init__(
        self,
        client: AsyncOpenAI,
        assistant_config: AssistantConfig,
        index_id: str,
        poll_interval: float = 1.0,
        max_polls: int = 300,
    ):
        self.client = client
        self.assistant_config = assistant_config
        self.index_id = index_id
        self.poll_interval = poll_interval
        self.max_polls = max_polls

        self.assistant_id: str | None = None
        self.thread_id: str | None = None

    async def setup(self) -> None:
        """Find or create the assistant and open a thread on the vector store."""
        try:
            self.assistant_id = await self._find_or_create_assistant()
            thread = await self.client.beta.threads.create(
                tool_resources={"file_search": {"vector_store_ids": [self.index_id]}}
            )
        except openai.OpenAIError as e:
            raise ConversationError(f"Could not set up the assistant: {e}") from e
        self.thread_id = thread.id
        logger.debug(f"Assistant {self.assistant_id}, thread {self.thread_id}")

    async def _find_or_create_assistant(self) -> str:
        cfg = self.assistant_config
        async for assistant in self.client.beta.assistants.list():
            if assistant.name == cfg.name and assistant.description == cfg.description:
                return assistant.id

        assistant = await self.client.beta.assistants.create(
            name=cfg.name,
            description=cfg.description,
            instructions=cfg.instructions,
            model=cfg.model,
            tools=[{"type": "file_search"}],
        )
        logger.info(f"Created assistant {assistant.id} ({cfg.name})")
        return assistant.id

    async def ask(self, question: str) -> Answer:
        """Post a question, wait for the run to finish and return the reply.

        Raises:
            ConversationError: If the run fails, is cancelled, expires or does
                not finish within ``max_polls`` checks
        """
        if self.thread_id is None or self.assistant_id is None:
            raise ConversationError("setup() must be called before ask()")

        try:
            await self.client.beta.threads.messages.create(
                self.thread_id, role="user", content=question
            )
            run = await self.client.beta.threads.runs.create(
                self.thread_id, assistant_id=self.assistant_id
            )
            run = await self._wait_for_run(run)
            page = await self.client.beta.threads.messages.list(
                self.thread_id, run_id=run.id, order="desc", limit=1
            )
        except openai.OpenAIError as e:
            raise ConversationError(f"Assistant request failed: {e}") from e

        text = ""
        if page.data:
            text = "\n".join(
                part.text.value for part in page.data[0].content if part.type == "text"
            )
        return Answer(text=text, code_blocks=extract_code_blocks(text))

    async def _wait_for_run(self, run):
        for _ in range(self.max_polls):
            if run.status in TERMINAL_RUN_STATUSES:
                break
            await asyncio.sleep(self.poll_interval)
            run = await self.client.beta.threads.runs.retrieve(
                run.id, thread_id=self.thread_id
            )

        if run.status not in TERMINAL_RUN_STATUSES:
            raise ConversationError(
                f"Run {run.id} still {run.status} after {self.max_polls} checks"
            )

        if run.status != "completed":
            detail = getattr(run.last_error, "message", None) or run.status
            raise ConversationError(f"Run {run.id} ended as {run.status}: {detail}")
        return run
