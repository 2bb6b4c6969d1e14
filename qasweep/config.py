"""Centralised defaults for QA Sweep.

Every tunable value lives here as a module-level constant. Each one can be
overridden through a ``QASWEEP_*`` environment variable so deployments do not
need code changes. Per-run feature toggles are not here; see
``qasweep.models.types.TestConfig``.
"""

from __future__ import annotations

import os
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    return os.environ.get(name) or default


# ── Filesystem ────────────────────────────────────────────────────────────────

REPO_ROOT: Path = Path(__file__).resolve().parent.parent
DATA_DIR: Path = Path(_env_str("QASWEEP_DATA_DIR", str(REPO_ROOT / "data")))
STATE_FILE_NAME = "state.json"

# ── Navigation ────────────────────────────────────────────────────────────────

PAGE_LOAD_TIMEOUT_MS: int = _env_int("QASWEEP_PAGE_LOAD_TIMEOUT_MS", 30000)
PAGE_LOAD_POLL_MS: int = _env_int("QASWEEP_PAGE_LOAD_POLL_MS", 500)
# Extra wait after readyState == complete so late scripts can run
PAGE_LOAD_GRACE_MS: int = _env_int("QASWEEP_PAGE_LOAD_GRACE_MS", 2000)

# ── Capture / stitching ───────────────────────────────────────────────────────

STITCH_TIMEOUT_MS: int = _env_int("QASWEEP_STITCH_TIMEOUT_MS", 30000)
SCROLL_TOLERANCE_PX: int = 10
EMULATION_SETTLE_MS: int = _env_int("QASWEEP_EMULATION_SETTLE_MS", 4000)
RESPONSIVE_SETTLE_MS: int = _env_int("QASWEEP_RESPONSIVE_SETTLE_MS", 1000)

# ── Run lifecycle / storage ───────────────────────────────────────────────────

RUN_RETENTION_SECONDS: int = _env_int("QASWEEP_RUN_RETENTION_SECONDS", 60)
SCREENSHOT_RETENTION_HOURS: int = _env_int("QASWEEP_SCREENSHOT_RETENTION_HOURS", 24)
STORAGE_IMAGE_BUDGET_BYTES: int = _env_int("QASWEEP_STORAGE_IMAGE_BUDGET_BYTES", 1_500_000)
STORAGE_START_QUALITY: int = 60

# ── AI reports ────────────────────────────────────────────────────────────────

AI_API_KEY_ENV = "GEMINI_API_KEY"
AI_MODEL: str = _env_str("QASWEEP_AI_MODEL", "gemini-2.0-flash")
AI_MAX_OUTPUT_TOKENS: int = _env_int("QASWEEP_AI_MAX_OUTPUT_TOKENS", 4000)
AI_TEMPERATURE = 0.7
