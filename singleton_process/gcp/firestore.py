"""
Firestore persister for singleton locks.

Document structure:
    Collection: singletons (configurable, shared by every lock name)
    Document ID: {url-quoted lock name}
    Fields: name (str), created (timestamp)

``DocumentReference.create()`` fails with AlreadyExists when the document is
present; Firestore performs that check and the write atomically, which is
what makes the lock exclusive across processes.
"""

from typing import Optional
from urllib.parse import quote

from ..errors import PersisterError
from ..expiry import utcnow
from ..monitoring import get_logger
from ..persistence import PersistResult

logger = get_logger(__name__)

# Lazy import to avoid hard dependency
_firestore = None
_api_exceptions = None


def _get_firestore():
    global _firestore
    if _firestore is None:
        try:
            from google.cloud import firestore
            _firestore = firestore
        except ImportError:
            raise ImportError(
                "google-cloud-firestore is required for GCP persisters. "
                "Install with: pip install singleton-process[gcp]"
            )
    return _firestore


def _get_api_exceptions():
    global _api_exceptions
    if _api_exceptions is None:
        try:
            from google.api_core import exceptions
            _api_exceptions = exceptions
        except ImportError:
            raise ImportError(
                "google-api-core is required for GCP persisters. "
                "Install with: pip install singleton-process[gcp]"
            )
    return _api_exceptions


class FirestorePersister:
    """
    Lock persister backed by a single Firestore collection.

    Args:
        collection: Collection holding every lock document (default: "singletons")
        project: GCP project ID (optional, uses default)
        client: Pre-built ``firestore.AsyncClient`` (optional)
    """

    def __init__(
        self,
        collection: str = "singletons",
        project: Optional[str] = None,
        client=None
    ):
        self.collection = collection
        self.project = project
        self._db = client

    @property
    def db(self):
        """Lazy-load Firestore client."""
        if self._db is None:
            firestore = _get_firestore()
            if self.project:
                self._db = firestore.AsyncClient(project=self.project)
            else:
                self._db = firestore.AsyncClient()
        return self._db

    def _doc_ref(self, name: str):
        # Document IDs may not contain '/'
        return self.db.collection(self.collection).document(quote(name, safe=''))

    async def persist_lock(self, name: str) -> PersistResult:
        exceptions = _get_api_exceptions()
        doc_ref = self._doc_ref(name)

        try:
            await doc_ref.create({"name": name, "created": utcnow()})
        except exceptions.AlreadyExists:
            try:
                snapshot = await doc_ref.get()
            except exceptions.GoogleAPIError as e:
                raise PersisterError(f"Firestore read failed for lock '{name}': {e}") from e

            if not snapshot.exists:
                return PersistResult(created=False)
            data = snapshot.to_dict() or {}
            return PersistResult(created=False, conflict_created=data.get("created"))
        except exceptions.GoogleAPIError as e:
            raise PersisterError(f"Firestore create failed for lock '{name}': {e}") from e

        logger.debug(f"Firestore: created lock {self.collection}/{name}")
        return PersistResult(created=True)

    async def delete_lock(self, name: str) -> None:
        exceptions = _get_api_exceptions()
        try:
            await self._doc_ref(name).delete()
        except exceptions.GoogleAPIError as e:
            raise PersisterError(f"Firestore delete failed for lock '{name}': {e}") from e

    async def lock_exists(self, name: str) -> bool:
        exceptions = _get_api_exceptions()
        try:
            snapshot = await self._doc_ref(name).get()
        except exceptions.GoogleAPIError as e:
            raise PersisterError(f"Firestore read failed for lock '{name}': {e}") from e
        return snapshot.exists
