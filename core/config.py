import os
from dotenv import load_dotenv

load_dotenv()

class Settings:
    """Application settings and configuration."""
    # Firebase service account key as a JSON string
    FIREBASE_SERVICE_ACCOUNT_KEY_JSON = os.getenv("FIREBASE_SERVICE_ACCOUNT_KEY_JSON")
    FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID")

    # CloudKit Web Services (legacy store, read during migration)
    CLOUDKIT_API_URL = os.getenv("CLOUDKIT_API_URL", "https://api.apple-cloudkit.com")
    CLOUDKIT_CONTAINER = os.getenv("CLOUDKIT_CONTAINER", "iCloud.com.gmail.taismryotasis.Travory")
    CLOUDKIT_ENVIRONMENT = os.getenv("CLOUDKIT_ENVIRONMENT", "production")
    CLOUDKIT_DATABASE = os.getenv("CLOUDKIT_DATABASE", "private")
    CLOUDKIT_API_TOKEN = os.getenv("CLOUDKIT_API_TOKEN")
    CLOUDKIT_WEB_AUTH_TOKEN = os.getenv("CLOUDKIT_WEB_AUTH_TOKEN")

    # Local storage
    IMAGE_STORAGE_DIR = os.getenv("IMAGE_STORAGE_DIR", os.path.join(os.getcwd(), "data", "documents"))
    PREFERENCES_PATH = os.getenv("PREFERENCES_PATH", os.path.join(os.getcwd(), "data", "preferences.json"))

    # Bump the suffix whenever the migration or the target schema changes incompatibly
    MIGRATION_KEY = os.getenv("MIGRATION_KEY", "hasCompletedCloudKitMigration_v1")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    CORS_ORIGINS = [
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "http://localhost,http://localhost:8080").split(",")
        if origin.strip()
    ]

settings = Settings()
