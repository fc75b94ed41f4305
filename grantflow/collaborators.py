"""Interfaces of the external collaborators the core talks to.

The core never touches a database, a blob store or a mail server directly.
It is handed objects implementing these protocols, and wraps every call in a
caller-supplied timeout so that no request hangs on a slow collaborator.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TypeVar

from typing_extensions import Protocol, runtime_checkable

from grantflow.models import Application

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CollaboratorTimeoutError(Exception):
    """A collaborator call did not return within its timeout."""


@dataclass(frozen=True)
class SaveResult:
    """Outcome of a conditional save.

    Attributes:
        ok: False when the stored version did not match the expected version
        new_version: Version after the save (None on conflict)
    """
    ok: bool
    new_version: Optional[int] = None

    @classmethod
    def conflict(cls) -> "SaveResult":
        return cls(ok=False)


@runtime_checkable
class AttachmentStore(Protocol):
    """Blob storage for attachment bytes."""

    def put(self, data: bytes, metadata: Dict[str, Any]) -> str:
        """Store bytes and return an opaque storage reference."""
        ...

    def delete(self, storage_ref: str) -> None:
        """Delete stored bytes."""
        ...

    def get(self, storage_ref: str) -> bytes:
        """Fetch stored bytes (used by the file-serving endpoint)."""
        ...


@runtime_checkable
class ApplicationRepository(Protocol):
    """Document store for applications with optimistic concurrency."""

    def load(self, application_id: str) -> Optional[Application]:
        """Return the application, or None when it does not exist."""
        ...

    def save(self, application: Application, expected_version: Optional[int]) -> SaveResult:
        """Persist the application if its stored version equals ``expected_version``.

        ``expected_version`` is None for a first save (insert).
        """
        ...

    def delete(self, application_id: str) -> bool:
        """Remove the application document. Returns False if it did not exist."""
        ...


@runtime_checkable
class NotificationSink(Protocol):
    """Delivers notifications (email in the portal) to a recipient."""

    def notify(self, recipient_id: str, event: Dict[str, Any]) -> None:
        ...


def call_with_timeout(
    fn: Callable[..., T],
    timeout: Optional[float],
    *args: Any,
    on_late_result: Optional[Callable[[T], None]] = None,
) -> T:
    """Call ``fn(*args)``, giving up after ``timeout`` seconds.

    With ``timeout=None`` the call runs inline on the current thread.
    Otherwise it runs on a thread of its own, so the timeout counts from
    the moment the call starts and hung calls never starve later ones.

    A call that times out cannot be stopped. When it eventually returns,
    ``on_late_result`` (if given) receives its result, for instance to
    delete a blob nobody will reference.

    Raises:
        CollaboratorTimeoutError: If the call did not finish in time
    """
    if timeout is None:
        return fn(*args)
    name = getattr(fn, "__qualname__", repr(fn))
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="grantflow-io")
    try:
        future = executor.submit(fn, *args)
    finally:
        executor.shutdown(wait=False)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        logger.warning("%s timed out after %.2fs", name, timeout)
        if on_late_result is not None:
            future.add_done_callback(_late_result_handler(name, on_late_result))
        raise CollaboratorTimeoutError(f"{name} timed out after {timeout}s") from None


def _late_result_handler(name: str, on_late_result: Callable[[Any], None]) -> Callable[[Future], None]:
    def handle(future: Future) -> None:
        if future.exception() is not None:
            logger.info("%s failed after timing out: %s", name, future.exception())
            return
        result = future.result()
        logger.warning("%s returned %r after timing out", name, result)
        try:
            on_late_result(result)
        except Exception:
            logger.warning("Handling the late result of %s failed", name, exc_info=True)
    return handle


__all__ = [
    "AttachmentStore",
    "ApplicationRepository",
    "NotificationSink",
    "SaveResult",
    "CollaboratorTimeoutError",
    "call_with_timeout",
]
