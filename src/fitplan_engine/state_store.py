from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Protocol

from pydantic import ValidationError

from .errors import RecordNotFoundError
from .models import GenerationPhase, GenerationRecord, PlanDocument, PlanKind

logger = logging.getLogger(__name__)

Document = dict[str, Any]
Predicate = Callable[[Document], bool]

GENERATIONS_COLLECTION = "pending_generations"
PLANS_COLLECTION = "plans"

_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


class DocumentStore(Protocol):
    """Keyed document store with query-by-predicate.

    Writes are whole-document replacement keyed by id.  No transactions are
    assumed across collections.
    """

    async def get(self, collection: str, document_id: str) -> Document | None:
        ...

    async def put(self, collection: str, document_id: str, document: Document) -> None:
        ...

    async def query(self, collection: str, predicate: Predicate) -> list[Document]:
        ...


# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the document file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically via a same-directory temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, label: str) -> Document:
    """Read a JSON object from *path*.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty, not UTF-8, not JSON, or not a JSON object.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{label} at {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"{label} at {path} must contain a JSON object")
    return data


# ---------------------------------------------------------------------------
# FileDocumentStore
# ---------------------------------------------------------------------------

class FileDocumentStore:
    """Filesystem document store: one JSON file per document.

    Layout is ``<root>/<collection>/<document_id>.json``.  Writes use atomic
    temp-file-then-rename and every read/write of a document holds an
    ``fcntl`` lock on its sidecar file.  Blocking I/O runs in a worker thread
    so callers on the event loop are never blocked.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def _document_path(self, collection: str, document_id: str) -> Path:
        if not _SAFE_NAME.match(collection):
            raise ValueError(f"Invalid collection name: {collection!r}")
        if not _SAFE_NAME.match(document_id):
            raise ValueError(f"Invalid document id: {document_id!r}")
        return self.root / collection / f"{document_id}.json"

    async def get(self, collection: str, document_id: str) -> Document | None:
        path = self._document_path(collection, document_id)
        return await asyncio.to_thread(self._read_document, path, collection)

    async def put(self, collection: str, document_id: str, document: Document) -> None:
        path = self._document_path(collection, document_id)
        content = json.dumps(document, indent=2, sort_keys=True)
        await asyncio.to_thread(self._write_document, path, content)

    async def query(self, collection: str, predicate: Predicate) -> list[Document]:
        if not _SAFE_NAME.match(collection):
            raise ValueError(f"Invalid collection name: {collection!r}")
        documents = await asyncio.to_thread(self._read_collection, self.root / collection, collection)
        return [document for document in documents if predicate(document)]

    @staticmethod
    def _read_document(path: Path, label: str) -> Document | None:
        if not path.is_file():
            return None
        with _locked_file(path):
            return _safe_read_json(path, label)

    @staticmethod
    def _write_document(path: Path, content: str) -> None:
        with _locked_file(path):
            _atomic_write_text(path, content)

    @staticmethod
    def _read_collection(directory: Path, label: str) -> list[Document]:
        if not directory.is_dir():
            return []
        documents: list[Document] = []
        for path in sorted(directory.glob("*.json")):
            try:
                with _locked_file(path):
                    documents.append(_safe_read_json(path, label))
            except (FileNotFoundError, ValueError) as exc:
                logger.warning("Skipping unreadable document %s: %s", path, exc)
        return documents


# ---------------------------------------------------------------------------
# Typed repositories
# ---------------------------------------------------------------------------

def _owned_by(owner_id: str) -> Predicate:
    def predicate(document: Document) -> bool:
        # v1 records stored the owner as user_id.
        return document.get("owner_id", document.get("user_id")) == owner_id

    return predicate


class GenerationRepository:
    """Typed access to generation records in the ``pending_generations`` collection."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def get(self, record_id: str) -> GenerationRecord | None:
        document = await self.store.get(GENERATIONS_COLLECTION, record_id)
        if document is None:
            return None
        return self._parse(document, record_id)

    async def require(self, owner_id: str, record_id: str) -> GenerationRecord:
        """Load a record owned by ``owner_id``.

        Raises:
            RecordNotFoundError: If the record is missing or belongs to another owner.
        """
        record = await self.get(record_id)
        if record is None or record.owner_id != owner_id:
            raise RecordNotFoundError(f"generation record {record_id} not found for owner", record_id=record_id)
        return record

    async def save(self, record: GenerationRecord) -> None:
        await self.store.put(GENERATIONS_COLLECTION, record.id, record.model_dump(mode="json"))

    async def list_for_owner(
        self,
        owner_id: str,
        *,
        phase: GenerationPhase | None = None,
        plan_kind: PlanKind | None = None,
        include_archived: bool = True,
    ) -> list[GenerationRecord]:
        """Return the owner's records, oldest first, optionally filtered."""
        documents = await self.store.query(GENERATIONS_COLLECTION, _owned_by(owner_id))
        records: list[GenerationRecord] = []
        for document in documents:
            try:
                record = self._parse(document, str(document.get("id")))
            except ValueError as exc:
                logger.warning("Skipping invalid generation record: %s", exc)
                continue
            if phase is not None and record.phase is not phase:
                continue
            if plan_kind is not None and record.plan_kind is not plan_kind:
                continue
            if not include_archived and record.is_archived:
                continue
            records.append(record)
        records.sort(key=lambda item: item.created_at)
        return records

    @staticmethod
    def _parse(document: Document, record_id: str) -> GenerationRecord:
        try:
            return GenerationRecord.model_validate(document)
        except ValidationError as exc:
            raise ValueError(f"generation record {record_id} failed validation: {exc}") from exc


class PlanRepository:
    """Typed access to generated plans in the ``plans`` collection."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def get(self, plan_id: str) -> PlanDocument | None:
        document = await self.store.get(PLANS_COLLECTION, plan_id)
        if document is None:
            return None
        try:
            return PlanDocument.model_validate(document)
        except ValidationError as exc:
            raise ValueError(f"plan {plan_id} failed validation: {exc}") from exc

    async def save(self, plan: PlanDocument) -> None:
        await self.store.put(PLANS_COLLECTION, plan.id, plan.model_dump(mode="json"))

    async def list_for_owner(self, owner_id: str, *, include_archived: bool = True) -> list[PlanDocument]:
        """Return the owner's plans, newest first."""
        documents = await self.store.query(PLANS_COLLECTION, _owned_by(owner_id))
        plans: list[PlanDocument] = []
        for document in documents:
            try:
                plan = PlanDocument.model_validate(document)
            except ValidationError as exc:
                logger.warning("Skipping invalid plan %s: %s", document.get("id"), exc)
                continue
            if not include_archived and plan.is_archived:
                continue
            plans.append(plan)
        plans.sort(key=lambda item: item.created_at, reverse=True)
        return plans
