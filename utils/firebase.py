import json
import logging
from typing import Optional

import firebase_admin
from firebase_admin import credentials, firestore as _firestore
from google.cloud.firestore import Client as FirestoreClient

import settings

logger = logging.getLogger(__name__)

def init_firebase(
    service_account_json: Optional[str] = None,
    bucket: Optional[str] = None,
) -> None:
    try:
        firebase_admin.get_app()
    except ValueError:
        sa_json = service_account_json or settings.FIREBASE_SERVICE_ACCOUNT_JSON
        if not sa_json:
            raise RuntimeError("FIREBASE_SERVICE_ACCOUNT_JSON is not set")
        cred = credentials.Certificate(json.loads(sa_json))
        bucket = bucket or settings.FIREBASE_STORAGE_BUCKET
        if bucket:
            firebase_admin.initialize_app(cred, {
                "storageBucket": bucket
            })
        else:
            firebase_admin.initialize_app(cred)
        logger.info("Firebase app initialised")

def get_db() -> FirestoreClient:
    """
    Return a Firestore client.
    """
    return _firestore.client()

def delete_firebase() -> None:
    try:
        firebase_admin.delete_app(firebase_admin.get_app())
    except ValueError:
        pass
