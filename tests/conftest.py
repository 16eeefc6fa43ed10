"""Shared pytest configuration for the MiastoAlert test suite.

Ensures the project root is on sys.path so test files can import
source modules (api, lifecycle, identity, etc.) directly, and points the
log file at a temp directory before any module opens it.
"""

import os
import sys
import tempfile
from pathlib import Path

# Add project root to sys.path so `import lifecycle`, `from api import app`, etc. work
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

os.environ.setdefault("MIASTOALERT_ENV", "test")
os.environ.setdefault("MIASTOALERT_DB_BACKEND", "sqlite")
os.environ.setdefault("MIASTOALERT_SWEEP_ENABLED", "false")
os.environ.setdefault(
    "MIASTOALERT_LOG_FILE", os.path.join(tempfile.gettempdir(), "miastoalert-test.log")
)
