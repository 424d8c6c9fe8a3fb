"""Remote file store and index contract, with an OpenAI implementation.

The orchestrator only talks to ``RemoteService``. ``OpenAIRemoteService``
maps the contract onto the OpenAI files API (the Remote File Store) and a
vector store (the Remote Index), translating SDK errors into the taxonomy in
``para.exceptions``: ``NotFoundError`` for already-absent objects and
``TransientServiceError`` for everything else.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass

import openai
from openai import AsyncOpenAI

from para.exceptions import (
    NotFoundError,
    TransientServiceError,
    UploadError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteFileRecord:
    """A file as known to the remote file store."""

    remote_id: str
    filename: str


class RemoteService(ABC):
    """Abstract remote file store plus searchable index."""

    @abstractmethod
    async def upload_file(self, filename: str, content: bytes) -> str:
        """Upload content and return the new remote id.

        Raises:
            UploadError: On transport or quota failure
        """

    @abstractmethod
    async def delete_file(self, remote_id: str) -> None:
        """Delete a stored file.

        Raises:
            NotFoundError: If the file is already absent
            TransientServiceError: On any other failure
        """

    @abstractmethod
    async def list_files(self) -> list[RemoteFileRecord]:
        """List every stored file."""

    @abstractmethod
    async def add_to_index(self, index_id: str, remote_id: str) -> str:
        """Make a stored file searchable in an index; return the membership id."""

    @abstractmethod
    async def remove_from_index(self, index_id: str, remote_id: str) -> None:
        """Remove a file from an index.

        Raises:
            NotFoundError: If the file is not a member of the index
        """

    @abstractmethod
    async def list_index_members(self, index_id: str) -> list[str]:
        """Return the remote ids that are, or are becoming, searchable in an index.

        Memberships whose ingestion failed or was cancelled are not included;
        they stay attached until removed with ``remove_from_index``.
        """

    @abstractmethod
    async def find_or_create_index(self, name: str) -> str:
        """Return the id of the index called ``name``, creating it if needed."""


@contextmanager
def _translate_errors(action: str, error_cls=TransientServiceError):
    try:
        yield
    except openai.NotFoundError as e:
        raise NotFoundError(f"{action}: {e}") from e
    except openai.OpenAIError as e:
        raise error_cls(f"{action}: {e}") from e


class OpenAIRemoteService(RemoteService):
    """RemoteService backed by OpenAI files and vector stores."""

    TERMINAL_FAILURES = ("failed", "cancelled")
    LIVE_STATUSES = ("completed", "in_progress")

    def __init__(
        self,
        client: AsyncOpenAI,
        purpose: str = "assistants",
        poll_interval: float = 1.0,
        max_polls: int = 120,
    ):
        """Initialize the service.

        Args:
            client: OpenAI async client
            purpose: File purpose used for uploads and listings
            poll_interval: Seconds between vector store ingestion checks
            max_polls: Number of checks before an ingestion is reported failed
        """
        self.client = client
        self.purpose = purpose
        self.poll_interval = poll_interval
        self.max_polls = max_polls

    async def upload_file(self, filename: str, content: bytes) -> str:
        with _translate_errors(f"upload {filename}", UploadError):
            file = await self.client.files.create(
                file=(filename, content), purpose=self.purpose
            )
        logger.debug(f"Uploaded {filename} as {file.id}")
        return file.id

    async def delete_file(self, remote_id: str) -> None:
        with _translate_errors(f"delete file {remote_id}"):
            await self.client.files.delete(remote_id)

    async def list_files(self) -> list[RemoteFileRecord]:
        records = []
        with _translate_errors("list files"):
            async for file in self.client.files.list(purpose=self.purpose):
                records.append(RemoteFileRecord(remote_id=file.id, filename=file.filename))
        return records

    async def add_to_index(self, index_id: str, remote_id: str) -> str:
        with _translate_errors(f"add {remote_id} to vector store {index_id}"):
            member = await self.client.vector_stores.files.create(
                vector_store_id=index_id, file_id=remote_id
            )
            for _ in range(self.max_polls):
                if member.status == "completed":
                    return member.id
                if member.status in self.TERMINAL_FAILURES:
                    detail = getattr(member.last_error, "message", None) or member.status
                    raise TransientServiceError(
                        f"Indexing {remote_id} in {index_id} ended as {member.status}: {detail}"
                    )
                await asyncio.sleep(self.poll_interval)
                member = await self.client.vector_stores.files.retrieve(
                    remote_id, vector_store_id=index_id
                )

        raise TransientServiceError(
            f"Indexing {remote_id} in {index_id} still {member.status} "
            f"after {self.max_polls} checks"
        )

    async def remove_from_index(self, index_id: str, remote_id: str) -> None:
        with _translate_errors(f"remove {remote_id} from vector store {index_id}"):
            await self.client.vector_stores.files.delete(
                remote_id, vector_store_id=index_id
            )

    async def list_index_members(self, index_id: str) -> list[str]:
        members = []
        with _translate_errors(f"list vector store {index_id}"):
            async for member in self.client.vector_stores.files.list(
                vector_store_id=index_id
            ):
                if member.status in self.LIVE_STATUSES:
                    members.append(member.id)
                else:
                    logger.debug(f"Ignoring {member.status} membership {member.id}")
        return members

    async def find_or_create_index(self, name: str) -> str:
        with _translate_errors(f"find or create vector store {name!r}"):
            async for store in self.client.vector_stores.list():
                if store.name == name:
                    logger.debug(f"Using vector store {store.id} ({name})")
                    return store.id
            store = await self.client.vector_stores.create(name=name)
        logger.info(f"Created vector store {store.id} ({name})")
        return store.id
