"""Application and attachment records.

Applications are stored as documents; every record here serializes to and
from the camelCase document shape with to_dict()/from_dict().
Timestamps are ISO 8601 strings on the wire.
"""

import os
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dateutil.parser import isoparse

from grantflow.types import ApplicationStatus, FormType, Role


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return isoparse(value)


def new_application_id() -> str:
    return f"app_{uuid.uuid4().hex[:16]}"


def new_attachment_id() -> str:
    return f"att_{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True)
class Attachment:
    """One stored file committed to an application slot.

    Attachments are never mutated. They are created when the reconciler
    accepts an upload and stores its bytes, and removed only by a later
    reconciliation or when the owning application is deleted.

    Attributes:
        id: Identifier minted after the bytes were stored
        slot: Slot name the file belongs to
        original_name: File name as uploaded by the client
        mime_type: Content type declared by the client
        size_bytes: Size of the stored bytes
        storage_ref: Opaque handle understood by the attachment store
    """
    id: str
    slot: str
    original_name: str
    mime_type: str
    size_bytes: int
    storage_ref: str

    @property
    def extension(self) -> str:
        return os.path.splitext(self.original_name)[1].lower()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        return {
            "id": self.id,
            "slot": self.slot,
            "originalName": self.original_name,
            "mimeType": self.mime_type,
            "sizeBytes": self.size_bytes,
            "storageRef": self.storage_ref,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attachment":
        """Create Attachment from dict."""
        return cls(
            id=data["id"],
            slot=data["slot"],
            original_name=data["originalName"],
            mime_type=data["mimeType"],
            size_bytes=data["sizeBytes"],
            storage_ref=data["storageRef"],
        )


@dataclass(frozen=True)
class Upload:
    """A raw file submitted in a request, not yet stored.

    Attributes:
        file_name: Client-side file name
        mime_type: Declared content type
        data: File bytes
    """
    file_name: str
    mime_type: str
    data: bytes = field(repr=False)

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        return os.path.splitext(self.file_name)[1].lower()


@dataclass(frozen=True)
class StatusChange:
    """One entry of an application's status history."""
    status: ApplicationStatus
    changed_at: datetime
    changed_by: str
    changed_by_role: Role
    remark: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "status": self.status.value,
            "changedAt": self.changed_at.isoformat(),
            "changedBy": self.changed_by,
            "changedByRole": self.changed_by_role.value,
        }
        if self.remark is not None:
            result["remark"] = self.remark
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatusChange":
        """Create StatusChange from dict."""
        return cls(
            status=ApplicationStatus(data["status"]),
            changed_at=_parse_ts(data["changedAt"]),
            changed_by=data["changedBy"],
            changed_by_role=Role(data["changedByRole"]),
            remark=data.get("remark"),
        )


@dataclass
class Application:
    """One student submission for one form type.

    ``id``, ``form_type`` and ``owner_id`` never change after creation.
    ``status`` changes only through the ApplicationStateMachine.
    ``version``, ``created_at`` and ``updated_at`` are owned by the repository.

    Attributes:
        id: Application identifier
        form_type: Which form this application fills in
        owner_id: Identity of the submitting student
        status: Current lifecycle status
        fields: Field name to value
        attachments: Slot name to ordered list of committed attachments
        remarks_by_role: Role name to that role's latest remark
        status_history: Every status the application went through
        version: Optimistic-concurrency counter (0 until first save)
        created_at: Set by the repository on first save
        updated_at: Set by the repository on every save
    """
    id: str
    form_type: FormType
    owner_id: str
    status: ApplicationStatus = ApplicationStatus.PENDING
    fields: Dict[str, Any] = field(default_factory=dict)
    attachments: Dict[str, List[Attachment]] = field(default_factory=dict)
    remarks_by_role: Dict[str, str] = field(default_factory=dict)
    status_history: List[StatusChange] = field(default_factory=list)
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def new(cls, form_type: FormType, owner_id: str) -> "Application":
        """Create an unsaved pending application with its creation history entry."""
        return cls(
            id=new_application_id(),
            form_type=form_type,
            owner_id=owner_id,
            status_history=[
                StatusChange(
                    status=ApplicationStatus.PENDING,
                    changed_at=_utcnow(),
                    changed_by=owner_id,
                    changed_by_role=Role.STUDENT,
                    remark="Form submitted",
                )
            ],
        )

    def files_in(self, slot: str) -> List[Attachment]:
        return list(self.attachments.get(slot, []))

    def copy(self) -> "Application":
        """Return a copy whose containers can be mutated independently."""
        return replace(
            self,
            fields=dict(self.fields),
            attachments={slot: list(files) for slot, files in self.attachments.items()},
            remarks_by_role=dict(self.remarks_by_role),
            status_history=list(self.status_history),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the stored document shape."""
        return {
            "id": self.id,
            "formType": self.form_type.value,
            "ownerId": self.owner_id,
            "status": self.status.value,
            "fields": dict(self.fields),
            "attachments": {
                slot: [a.to_dict() for a in files]
                for slot, files in self.attachments.items()
            },
            "remarksByRole": dict(self.remarks_by_role),
            "statusHistory": [entry.to_dict() for entry in self.status_history],
            "version": self.version,
            "createdAt": _format_ts(self.created_at),
            "updatedAt": _format_ts(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Application":
        """Create Application from its stored document shape."""
        return cls(
            id=data["id"],
            form_type=FormType(data["formType"]),
            owner_id=data["ownerId"],
            status=ApplicationStatus(data.get("status", ApplicationStatus.PENDING.value)),
            fields=dict(data.get("fields") or {}),
            attachments={
                slot: [Attachment.from_dict(a) for a in files]
                for slot, files in (data.get("attachments") or {}).items()
            },
            remarks_by_role=dict(data.get("remarksByRole") or {}),
            status_history=[
                StatusChange.from_dict(entry) for entry in data.get("statusHistory") or []
            ],
            version=data.get("version", 0),
            created_at=_parse_ts(data.get("createdAt")),
            updated_at=_parse_ts(data.get("updatedAt")),
        )


__all__ = [
    "Attachment",
    "Upload",
    "StatusChange",
    "Application",
    "new_application_id",
    "new_attachment_id",
]
