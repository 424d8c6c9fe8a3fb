"""Synchronization of the flattened mirror with the remote vector store."""

from para.sync.journal import SyncJournal
from para.sync.ledger import FileIdLedger, LedgerError
from para.sync.orchestrator import BatchResult, SyncOrchestrator, SyncOutcome
from para.sync.remote import OpenAIRemoteService, RemoteFileRecord, RemoteService

__all__ = [
    "FileIdLedger",
    "LedgerError",
    "SyncJournal",
    "SyncOrchestrator",
    "SyncOutcome",
    "BatchResult",
    "RemoteService",
    "RemoteFileRecord",
    "OpenAIRemoteService",
]
