"""
Google Cloud Platform persisters for singleton-process.

Provides a Firestore-based lock persister for Cloud Run, Cloud Functions
and GKE fleets.

Usage:
    from singleton_process import Singleton
    from singleton_process.gcp import FirestorePersister

    persister = FirestorePersister(collection="singletons")
    singleton = Singleton("nightly-report", persister, {"lock_expire_seconds": 3600})

Requirements:
    pip install google-cloud-firestore
"""

from .firestore import FirestorePersister

__all__ = [
    "FirestorePersister",
]
