"""
Document store client.

The whole database is a single JSON document on a remote host (JSONBin API):
GET returns {"record": {...}}, PUT replaces the whole document. All writes
go through DocumentStore.mutate, which serializes writers in this process and
uses the document revision stamp to detect writers outside it.

Known limitation: the host has no conditional PUT. A foreign write landing
between the revision re-check and our PUT is still overwritten; mutate logs
every conflict it does see.
"""
import logging
import threading
from typing import Callable, Optional, TypeVar, Any, Dict

import requests
from pydantic import ValidationError as SchemaError

from config import DOCUMENT_STORE_URL, DOCUMENT_STORE_KEY, STORE_TIMEOUT_SECONDS, STORE_MAX_RETRIES
from errors import StoreConflict, StoreUnavailable, ValidationError
from schemas import Hubdocument

logger = logging.getLogger(__name__)

T = TypeVar("T")


def default_document() -> Hubdocument:
    return Hubdocument()


class DocumentStore:
    def __init__(
        self,
        url: str,
        api_key: str,
        session: Optional[requests.Session] = None,
        timeout: float = STORE_TIMEOUT_SECONDS,
        max_retries: int = STORE_MAX_RETRIES,
    ):
        self.url = url
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self._write_lock = threading.RLock()

    @property
    def headers(self) -> Dict[str, str]:
        return {"X-Master-Key": self.api_key, "Content-Type": "application/json"}

    # ------------------ Primitive round trips ------------------
    def _get_record(self) -> Dict[str, Any]:
        resp = self.session.get(self.url, headers=self.headers, timeout=self.timeout)
        resp.raise_for_status()
        body = resp.json() or {}
        record = body.get("record") if isinstance(body, dict) else None
        return record if isinstance(record, dict) else {}

    def load_document(self) -> Hubdocument:
        """Fetch and merge with defaults, raising StoreUnavailable on any failure."""
        try:
            record = self._get_record()
            return Hubdocument.model_validate(record)
        except (requests.RequestException, ValueError, SchemaError) as e:
            logger.warning("Document store read failed: %s", str(e)[:200])
            raise StoreUnavailable() from e

    def fetch_document(self) -> Hubdocument:
        """Read path: never raises, an unreachable store reads as the empty default document."""
        try:
            return self.load_document()
        except StoreUnavailable:
            return default_document()

    def save_document(self, doc: Hubdocument) -> bool:
        try:
            resp = self.session.put(self.url, json=doc.to_record(), headers=self.headers, timeout=self.timeout)
            if resp.status_code >= 400:
                logger.warning("Document store write rejected: HTTP %s", resp.status_code)
                return False
            return True
        except requests.RequestException as e:
            logger.error("Document store write failed: %s", str(e)[:200])
            return False

    def current_revision(self) -> int:
        return self.load_document().revision

    # ------------------ Read-modify-write ------------------
    def mutate(self, fn: Callable[[Hubdocument], T]) -> T:
        """
        Run fn against a freshly loaded document and persist the result.

        fn mutates the document in place and returns whatever the caller needs.
        Domain errors raised by fn abort without writing. When the remote
        revision moved while fn ran, the attempt is thrown away and fn runs
        again on fresh data; after max_retries StoreConflict is raised.
        """
        with self._write_lock:
            for attempt in range(1, self.max_retries + 1):
                doc = self.load_document()
                base_revision = doc.revision
                try:
                    result = fn(doc)
                except SchemaError as e:
                    raise ValidationError(f"Invalid value: {e.errors()[0]['msg']}") from e

                if self.current_revision() != base_revision:
                    logger.warning(
                        "Document revision moved from %s during write (attempt %s/%s)",
                        base_revision, attempt, self.max_retries,
                    )
                    continue

                doc.revision = base_revision + 1
                if not self.save_document(doc):
                    raise StoreUnavailable("Could not save changes. Please try again.")
                return result

        raise StoreConflict()


db: Optional[DocumentStore] = DocumentStore(DOCUMENT_STORE_URL, DOCUMENT_STORE_KEY) if DOCUMENT_STORE_URL else None
