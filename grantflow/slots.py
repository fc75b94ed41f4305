"""Attachment slot definitions.

A slot is a named attachment category on a form type (a guide signature, the
supporting PDFs, a ZIP bundle). Slot definitions are static configuration:
they describe what may be uploaded into a slot, never what is in it.

Uploads are classified into coarse kinds (pdf, zip, image, document) without
caring about the exact MIME type a browser sent. Exclusivity groups only
keep ZIP bundles apart from loose files: "a ZIP replaces the PDFs and vice
versa", while a PDF bill and a scanned image bill may sit side by side.
"""

from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional, Union

from grantflow.models import Attachment, Upload

MB = 1024 * 1024

PDF_TYPES: FrozenSet[str] = frozenset({".pdf", "application/pdf"})
ZIP_TYPES: FrozenSet[str] = frozenset({
    ".zip",
    "application/zip",
    "application/x-zip-compressed",
})
IMAGE_TYPES: FrozenSet[str] = frozenset({
    ".png",
    ".jpg",
    ".jpeg",
    "image/png",
    "image/jpeg",
})

# Order matters: a .zip sent as application/octet-stream is still a zip.
_KIND_TABLE = (
    ("zip", ZIP_TYPES),
    ("pdf", PDF_TYPES),
    ("image", IMAGE_TYPES),
)


def file_kind(item: Union[Upload, Attachment]) -> str:
    """Classify an upload or stored attachment into a coarse kind.

    Examples:
        >>> file_kind(Upload("bills.ZIP", "application/octet-stream", b"PK"))
        'zip'
        >>> file_kind(Upload("scan.pdf", "application/pdf", b"%PDF"))
        'pdf'
    """
    for kind, types in _KIND_TABLE:
        if item.extension in types or item.mime_type.lower() in types:
            return kind
    return "document"


def exclusivity_kind(item: Union[Upload, Attachment]) -> str:
    """Kind compared by exclusivity groups: a ZIP bundle or loose files.

    Examples:
        >>> exclusivity_kind(Upload("scan.png", "image/png", b"x"))
        'files'
        >>> exclusivity_kind(Upload("all.zip", "application/zip", b"PK"))
        'zip'
    """
    return "zip" if file_kind(item) == "zip" else "files"


@dataclass(frozen=True)
class Cardinality:
    """How many files a slot may hold.

    Attributes:
        max_count: Upper bound on committed files
        multiple: False for single-file slots
    """
    max_count: int
    multiple: bool

    @classmethod
    def single(cls) -> "Cardinality":
        return cls(max_count=1, multiple=False)

    @classmethod
    def up_to(cls, max_count: int) -> "Cardinality":
        if max_count < 1:
            raise ValueError("max_count must be at least 1")
        return cls(max_count=max_count, multiple=True)


@dataclass(frozen=True)
class SlotDefinition:
    """Static rules for one attachment slot.

    Attributes:
        name: Slot name as used in requests and stored documents
        cardinality: Maximum number of files
        allowed_types: Accepted extensions (".pdf") and MIME types
        max_size_bytes: Per-file size limit
        exclusivity_group: Optional group name; kinds in the same group never
            coexist in one submission
        min_count: Files required before the application can enter review

    Examples:
        >>> slot = SlotDefinition(
        ...     name="pdfDocuments",
        ...     cardinality=Cardinality.up_to(5),
        ...     allowed_types=PDF_TYPES,
        ...     max_size_bytes=5 * MB,
        ... )
        >>> slot.accepts_type(Upload("a.pdf", "application/pdf", b"%PDF"))
        True
    """
    name: str
    cardinality: Cardinality
    allowed_types: FrozenSet[str]
    max_size_bytes: int
    exclusivity_group: Optional[str] = None
    min_count: int = 0

    def __post_init__(self):
        if self.min_count > self.cardinality.max_count:
            raise ValueError(
                f"Slot '{self.name}' requires {self.min_count} files but holds "
                f"at most {self.cardinality.max_count}"
            )

    @property
    def max_count(self) -> int:
        return self.cardinality.max_count

    @property
    def required(self) -> bool:
        return self.min_count > 0

    def accepts_type(self, upload: Upload) -> bool:
        allowed = {t.lower() for t in self.allowed_types}
        return upload.extension in allowed or upload.mime_type.lower() in allowed


def slot(
    name: str,
    types: Iterable[str],
    max_mb: int,
    max_count: int = 1,
    group: Optional[str] = None,
    required: bool = False,
) -> SlotDefinition:
    """Shorthand used by the form registry."""
    return SlotDefinition(
        name=name,
        cardinality=Cardinality.single() if max_count == 1 else Cardinality.up_to(max_count),
        allowed_types=frozenset(types),
        max_size_bytes=max_mb * MB,
        exclusivity_group=group,
        min_count=1 if required else 0,
    )


__all__ = [
    "MB",
    "PDF_TYPES",
    "ZIP_TYPES",
    "IMAGE_TYPES",
    "file_kind",
    "exclusivity_kind",
    "Cardinality",
    "SlotDefinition",
    "slot",
]
