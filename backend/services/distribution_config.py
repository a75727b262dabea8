"""
Distribution Hub - Configuration

Environment-driven settings for the distribution workflow engine and the API.
The server loads `.env` before importing this module, so every value below can
be overridden per deployment.

Feature settings:
- DISTRIBUTION_NOTES_MAX_LENGTH: upper bound for free-text notes
- DISTRIBUTION_SEQUENCE_WIDTH: zero padding for the sequence part of numbers
- TRANSMITTAL_DEFAULT_CURRENCY: currency printed when a document has none
"""

import os
from dataclasses import dataclass


# =============================================================================
# DATABASE
# =============================================================================

MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "distribution_hub")


# =============================================================================
# AUTH
# =============================================================================

JWT_SECRET = os.environ.get("JWT_SECRET", "distribution-hub-secret-key")
JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")


# =============================================================================
# WORKFLOW
# =============================================================================

DISTRIBUTION_NOTES_MAX_LENGTH = int(os.environ.get("DISTRIBUTION_NOTES_MAX_LENGTH", "1000"))
DISTRIBUTION_SEQUENCE_WIDTH = int(os.environ.get("DISTRIBUTION_SEQUENCE_WIDTH", "5"))
TRANSMITTAL_DEFAULT_CURRENCY = os.environ.get("TRANSMITTAL_DEFAULT_CURRENCY", "IDR")


@dataclass(frozen=True)
class DistributionSettings:
    """Settings bundle handed to the service layer."""
    notes_max_length: int = DISTRIBUTION_NOTES_MAX_LENGTH
    sequence_width: int = DISTRIBUTION_SEQUENCE_WIDTH
    default_currency: str = TRANSMITTAL_DEFAULT_CURRENCY


def get_settings() -> DistributionSettings:
    """Build settings from the current module-level values."""
    return DistributionSettings()
