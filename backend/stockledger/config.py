# backend/stockledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stockledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///stockledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Bounded wait for the per-product lock before an operation gives up
    LOCK_TIMEOUT_SECONDS = float(os.environ.get("LOCK_TIMEOUT_SECONDS", "5"))

    # How long an applied client-origin id keeps deduplicating resubmissions
    SYNC_RETENTION_DAYS = int(os.environ.get("SYNC_RETENTION_DAYS", "30"))
    MAX_BATCH_SIZE = int(os.environ.get("MAX_BATCH_SIZE", "500"))

    # On-demand rebuild after this many incremental applies (0 disables)
    REBUILD_AFTER_APPLIES = int(os.environ.get("REBUILD_AFTER_APPLIES", "500"))

    # Invoice line total vs. document total, in basis points (100 = 1%)
    INVOICE_TOTAL_TOLERANCE_BPS = int(os.environ.get("INVOICE_TOTAL_TOLERANCE_BPS", "100"))
