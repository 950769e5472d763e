"""
Centralized configuration for the portfolio importer.

All environment variables are read here, validated, and exposed as module-level
constants. Other modules import from here instead of reading os.environ directly.
Every invalid value is collected and reported together in one ValueError.

Usage:
    from config import FUZZY_MATCH_THRESHOLD, HEADER_SCAN_ROWS
"""

import os

_errors = []


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        return int(raw)
    except ValueError:
        _errors.append(f"{name} must be an integer, got '{raw}'")
        return default


# ─── PATHS ───────────────────────────────────────────────────

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
TAXONOMY_DIR = os.environ.get(
    "PORTFOLIO_TAXONOMY_DIR",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "taxonomy_reference"),
)

# ─── MATCHING ────────────────────────────────────────────────

# Minimum rapidfuzz token_set_ratio (0-100) for the scored step of the
# dimension matchers. Heuristic; see DESIGN.md.
FUZZY_MATCH_THRESHOLD = _int_env("PORTFOLIO_FUZZY_THRESHOLD", 60)

# ─── INGESTION ───────────────────────────────────────────────

# How many leading rows of a sheet are scanned for the marker header
HEADER_SCAN_ROWS = _int_env("PORTFOLIO_HEADER_SCAN_ROWS", 20)

# ─── LOGGING ─────────────────────────────────────────────────

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # "text" or "json"

# ─── VALIDATION ──────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_LOG_FORMATS = {"text", "json"}

if LOG_LEVEL not in _VALID_LOG_LEVELS:
    _errors.append(f"LOG_LEVEL must be one of {_VALID_LOG_LEVELS}, got '{LOG_LEVEL}'")

if LOG_FORMAT not in _VALID_LOG_FORMATS:
    _errors.append(f"LOG_FORMAT must be one of {_VALID_LOG_FORMATS}, got '{LOG_FORMAT}'")

if not 0 <= FUZZY_MATCH_THRESHOLD <= 100:
    _errors.append(f"PORTFOLIO_FUZZY_THRESHOLD must be between 0 and 100, got {FUZZY_MATCH_THRESHOLD}")

if HEADER_SCAN_ROWS < 1:
    _errors.append(f"PORTFOLIO_HEADER_SCAN_ROWS must be positive, got {HEADER_SCAN_ROWS}")

if _errors:
    raise ValueError("Invalid configuration:\n  " + "\n  ".join(_errors))
