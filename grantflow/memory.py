"""In-process implementations of the collaborator protocols.

These keep everything in dictionaries guarded by a lock. They back the test
suite and small deployments that do not need a document store; a production
repository must offer the same conditional-save semantics.
"""

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from grantflow.collaborators import SaveResult
from grantflow.models import Application

logger = logging.getLogger(__name__)


class InMemoryApplicationRepository:
    """Application documents keyed by id, with optimistic concurrency.

    ``save`` compares the stored version with ``expected_version`` and writes
    only when they match; the version check and the write happen under one
    lock, so of two writers holding the same version exactly one wins.

    Examples:
        >>> from grantflow.types import FormType
        >>> repo = InMemoryApplicationRepository()
        >>> app = Application.new(FormType.UG1, owner_id="s1")
        >>> repo.save(app, expected_version=None)
        SaveResult(ok=True, new_version=1)
        >>> repo.save(app, expected_version=None).ok
        False
    """

    def __init__(self):
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def load(self, application_id: str) -> Optional[Application]:
        with self._lock:
            document = self._documents.get(application_id)
        return Application.from_dict(document) if document is not None else None

    def save(self, application: Application, expected_version: Optional[int]) -> SaveResult:
        now = datetime.now(timezone.utc)
        with self._lock:
            current = self._documents.get(application.id)
            if expected_version is None:
                if current is not None:
                    return SaveResult.conflict()
                created_at = now
                new_version = 1
            else:
                if current is None or current["version"] != expected_version:
                    return SaveResult.conflict()
                created_at = application.created_at or now
                new_version = expected_version + 1

            document = application.to_dict()
            document["version"] = new_version
            document["createdAt"] = created_at.isoformat()
            document["updatedAt"] = now.isoformat()
            self._documents[application.id] = document
        return SaveResult(ok=True, new_version=new_version)

    def delete(self, application_id: str) -> bool:
        with self._lock:
            return self._documents.pop(application_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._documents)


class InMemoryAttachmentStore:
    """Blob store keyed by generated storage references."""

    def __init__(self):
        self._blobs: Dict[str, Tuple[bytes, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes, metadata: Dict[str, Any]) -> str:
        storage_ref = f"blob_{uuid.uuid4().hex}"
        with self._lock:
            self._blobs[storage_ref] = (bytes(data), dict(metadata))
        return storage_ref

    def delete(self, storage_ref: str) -> None:
        with self._lock:
            if self._blobs.pop(storage_ref, None) is None:
                logger.warning("Blob %s not found for deletion", storage_ref)

    def get(self, storage_ref: str) -> bytes:
        with self._lock:
            try:
                return self._blobs[storage_ref][0]
            except KeyError:
                raise KeyError(f"Blob {storage_ref} not found") from None

    def metadata(self, storage_ref: str) -> Dict[str, Any]:
        with self._lock:
            return dict(self._blobs[storage_ref][1])

    def __contains__(self, storage_ref: str) -> bool:
        with self._lock:
            return storage_ref in self._blobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._blobs)


class RecordingNotificationSink:
    """Keeps every notification it receives, in order."""

    def __init__(self):
        self.sent: List[Tuple[str, Dict[str, Any]]] = []
        self._lock = threading.Lock()

    def notify(self, recipient_id: str, event: Dict[str, Any]) -> None:
        with self._lock:
            self.sent.append((recipient_id, event))

    def for_recipient(self, recipient_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [event for recipient, event in self.sent if recipient == recipient_id]


__all__ = [
    "InMemoryApplicationRepository",
    "InMemoryAttachmentStore",
    "RecordingNotificationSink",
]
