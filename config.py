import os

# Auth
JWT_SECRET = os.getenv("JWT_SECRET", "dev_secret_change_me")
JWT_EXPIRES_IN = int(os.getenv("JWT_EXPIRES_IN", "3600"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

# Document store (JSONBin style: GET/PUT on a single bin)
DOCUMENT_STORE_URL = os.getenv("DOCUMENT_STORE_URL", "")
DOCUMENT_STORE_KEY = os.getenv("DOCUMENT_STORE_KEY", "")
STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", "10"))
STORE_MAX_RETRIES = int(os.getenv("STORE_MAX_RETRIES", "3"))

# Generative AI
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_API_BASE = os.getenv("GEMINI_API_BASE", "https://generativelanguage.googleapis.com/v1beta")
GEMINI_PRIMARY_MODEL = os.getenv("GEMINI_PRIMARY_MODEL", "gemini-3-flash-preview")
GEMINI_FALLBACK_MODEL = os.getenv("GEMINI_FALLBACK_MODEL", "gemini-2.5-flash")
GEMINI_IMAGE_MODEL = os.getenv("GEMINI_IMAGE_MODEL", "gemini-2.5-flash-image")
GEMINI_VIDEO_MODEL = os.getenv("GEMINI_VIDEO_MODEL", "veo-3.1-fast-generate-preview")
AI_REQUEST_TIMEOUT = float(os.getenv("AI_REQUEST_TIMEOUT", "90"))
AI_VALIDATION_TIMEOUT = float(os.getenv("AI_VALIDATION_TIMEOUT", "60"))
API_KEY_LOOKUP_TIMEOUT = float(os.getenv("API_KEY_LOOKUP_TIMEOUT", "1.5"))
VIDEO_POLL_INTERVAL = float(os.getenv("VIDEO_POLL_INTERVAL", "5"))

# Media uploads
CLOUDINARY_CLOUD_NAME = os.getenv("CLOUDINARY_CLOUD_NAME", "")
CLOUDINARY_UPLOAD_PRESET = os.getenv("CLOUDINARY_UPLOAD_PRESET", "dualpower_upload")

# Health portal
EMERGENCY_HOTLINE = os.getenv("EMERGENCY_HOTLINE", "0112241760")

# Initial admin, read only by seed_admin.py
INITIAL_ADMIN_NAME = os.getenv("INITIAL_ADMIN_NAME", "Administrator")
INITIAL_ADMIN_EMAIL = os.getenv("INITIAL_ADMIN_EMAIL", "")
INITIAL_ADMIN_PHONE = os.getenv("INITIAL_ADMIN_PHONE", "")
INITIAL_ADMIN_PASSWORD = os.getenv("INITIAL_ADMIN_PASSWORD", "")

ORG_NAME = "Dual Power Women Hub"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", "8000"))
