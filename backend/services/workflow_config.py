"""
Compliance Case Hub - Workflow Configuration

All runtime settings for the approval workflows. Values are read from
environment variables once at import time (server.py loads .env first).

Upload limits:
- MAX_UPLOAD_BYTES applies to the LMRO and DLMRO stages
- MAX_FINAL_STAGE_UPLOAD_BYTES applies to the CEO stage, which usually carries
  the signed, consolidated pack
"""

import os
from typing import FrozenSet


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


# =============================================================================
# DATABASE
# =============================================================================

MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "compliance_hub")


# =============================================================================
# AUTH / LOGGING
# =============================================================================

JWT_SECRET = os.environ.get("JWT_SECRET", "compliance-hub-secret-key")
JWT_ALGORITHM = "HS256"
JWT_TTL_SECONDS = _env_int("JWT_TTL_SECONDS", 86400)

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


# =============================================================================
# BLOB STORE
# =============================================================================

# "cloudinary" in production, "memory" for local development
BLOB_STORE_PROVIDER = os.environ.get("BLOB_STORE_PROVIDER", "cloudinary").lower()

CLOUDINARY_CLOUD_NAME = os.environ.get("CLOUDINARY_CLOUD_NAME", "")
CLOUDINARY_API_KEY = os.environ.get("CLOUDINARY_API_KEY", "")
CLOUDINARY_API_SECRET = os.environ.get("CLOUDINARY_API_SECRET", "")
CLOUDINARY_API_BASE = os.environ.get("CLOUDINARY_API_BASE", "https://api.cloudinary.com/v1_1")

UPLOAD_TIMEOUT_SECONDS = _env_float("UPLOAD_TIMEOUT_SECONDS", 60.0)


# =============================================================================
# DOCUMENT VALIDATION
# =============================================================================

MAX_UPLOAD_BYTES = _env_int("MAX_UPLOAD_BYTES", 10 * 1024 * 1024)
MAX_FINAL_STAGE_UPLOAD_BYTES = _env_int("MAX_FINAL_STAGE_UPLOAD_BYTES", 25 * 1024 * 1024)

DEFAULT_ALLOWED_MIME_TYPES = (
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "image/jpeg",
    "image/png",
)

_mime_override = os.environ.get("ALLOWED_DOCUMENT_MIME_TYPES", "")
ALLOWED_DOCUMENT_MIME_TYPES: FrozenSet[str] = frozenset(
    m.strip().lower() for m in _mime_override.split(",") if m.strip()
) or frozenset(DEFAULT_ALLOWED_MIME_TYPES)

# Stages whose uploads use the larger limit
FINAL_STAGES = frozenset({"ceo"})


def get_max_upload_bytes(stage: str) -> int:
    """Return the upload size limit for an approval stage."""
    if stage in FINAL_STAGES:
        return MAX_FINAL_STAGE_UPLOAD_BYTES
    return MAX_UPLOAD_BYTES


def is_allowed_mime_type(mime_type: str) -> bool:
    return (mime_type or "").lower() in ALLOWED_DOCUMENT_MIME_TYPES
