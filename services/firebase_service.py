import firebase_admin
from firebase_admin import credentials, firestore
import json
import logging

from core.config import settings

logger = logging.getLogger(__name__)


def initialize_firebase():
    """Initializes the Firebase Admin SDK once per process."""
    if firebase_admin._apps:
        return firebase_admin.get_app()

    options = {}
    if settings.FIREBASE_PROJECT_ID:
        options["projectId"] = settings.FIREBASE_PROJECT_ID

    if settings.FIREBASE_SERVICE_ACCOUNT_KEY_JSON:
        # The service account key is expected to be a JSON string in the environment variable.
        service_account_info = json.loads(settings.FIREBASE_SERVICE_ACCOUNT_KEY_JSON)
        cred = credentials.Certificate(service_account_info)
    else:
        logger.warning("FIREBASE_SERVICE_ACCOUNT_KEY_JSON is not set, falling back to application default credentials.")
        cred = credentials.ApplicationDefault()

    app = firebase_admin.initialize_app(cred, options)
    logger.info("Firebase initialized successfully.")
    return app


def get_firestore_client():
    """Returns the Firestore client of the default Firebase app."""
    initialize_firebase()
    return firestore.client()
