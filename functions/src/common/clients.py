# FILE: functions/src/common/clients.py
import firebase_admin
from google.cloud import firestore

from common import config
from common.database import FirestoreStore

# This module provides lazily-initialized, singleton clients for external services.
# This prevents resource contention and timeouts during Cloud Function cold starts.

_firebase_app_initialized = False
_db_client = None
_store = None


def _initialize_firebase():
    """Initializes the Firebase app if it hasn't been already."""
    global _firebase_app_initialized
    if not _firebase_app_initialized:
        try:
            firebase_admin.get_app()
        except ValueError:
            options = {'projectId': config.GOOGLE_CLOUD_PROJECT} if config.GOOGLE_CLOUD_PROJECT else None
            firebase_admin.initialize_app(options=options)
        _firebase_app_initialized = True


def get_db_client():
    """Returns a singleton Firestore client, initializing it on first use."""
    global _db_client
    if _db_client is None:
        _initialize_firebase()
        if config.GOOGLE_CLOUD_PROJECT:
            _db_client = firestore.Client(project=config.GOOGLE_CLOUD_PROJECT)
        else:
            _db_client = firestore.Client()
    return _db_client


def get_store():
    """Returns the singleton DocumentStore wrapping the Firestore client."""
    global _store
    if _store is None:
        _store = FirestoreStore(get_db_client())
    return _store


def ensure_firebase_app():
    """Makes sure firebase_admin is initialized before auth calls."""
    _initialize_firebase()
