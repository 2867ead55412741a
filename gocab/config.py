"""
Application Configuration
Reads settings from environment variables (and a local .env file)
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _get_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Database
MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017/gocab")
# Multi-document transactions need a replica set or sharded cluster
MONGO_TRANSACTIONS = _get_bool("MONGO_TRANSACTIONS", "false")

# JWT Configuration
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "your-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Routing collaborator
GOOGLE_MAPS_API_KEY = os.getenv("GOOGLE_MAPS_API_KEY")

# Matching
SEARCH_RADIUS_KM = float(os.getenv("SEARCH_RADIUS_KM", "5.0"))
MAX_SEARCH_RADIUS_KM = float(os.getenv("MAX_SEARCH_RADIUS_KM", "50.0"))
MATCH_MAX_ATTEMPTS = int(os.getenv("MATCH_MAX_ATTEMPTS", "3"))
MATCH_CANDIDATE_LIMIT = int(os.getenv("MATCH_CANDIDATE_LIMIT", "10"))
REQUIRE_DRIVER_APPROVAL = _get_bool("REQUIRE_DRIVER_APPROVAL", "true")
REQUEST_TTL_MINUTES = int(os.getenv("REQUEST_TTL_MINUTES", "10"))
# How far ahead of the server clock a device may stamp a location tick
LOCATION_CLOCK_SKEW_SECONDS = float(os.getenv("LOCATION_CLOCK_SKEW_SECONDS", "30"))

# Client reconciliation
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "5.0"))
SEARCH_TIMEOUT_SECONDS = float(os.getenv("SEARCH_TIMEOUT_SECONDS", "60.0"))
MAX_SEARCH_ATTEMPTS = int(os.getenv("MAX_SEARCH_ATTEMPTS", "3"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
