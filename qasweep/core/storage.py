"""Persistent run state.

One JSON document under the data directory holds the active-run marker
(``activeTestId`` / ``activeTestConfig``) and the most recent run's results
(``latestTestResults``). Screenshots are compacted before they are stored and
their image payloads are dropped once they outlive the retention window.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path

from qasweep.config import (
    DATA_DIR,
    SCREENSHOT_RETENTION_HOURS,
    STATE_FILE_NAME,
    STORAGE_IMAGE_BUDGET_BYTES,
    STORAGE_START_QUALITY,
)
from qasweep.core.stitcher import compress_image, decode_data_url, to_data_url
from qasweep.models.types import now_ms

log = logging.getLogger(__name__)

ACTIVE_ID_KEY = "activeTestId"
ACTIVE_CONFIG_KEY = "activeTestConfig"
LATEST_RESULTS_KEY = "latestTestResults"


def shrink_data_url(data_url: str | None, budget: int = STORAGE_IMAGE_BUDGET_BYTES) -> str | None:
    """Re-encode an image data URL as JPEG when it is larger than ``budget`` characters."""
    if not data_url or len(data_url) <= budget:
        return data_url
    try:
        image = decode_data_url(data_url)
        # base64 inflates the payload by 4/3
        data, quality = compress_image(image, STORAGE_START_QUALITY, 10, 10, budget * 3 // 4)
    except (OSError, ValueError) as e:
        log.warning("Could not compress screenshot for storage: %s", e)
        return data_url
    log.debug("Compressed screenshot from %d to %d chars at quality %d",
              len(data_url), len(data) * 4 // 3, quality)
    return to_data_url(data)


def compact_screenshots(screenshots: list[dict], budget: int = STORAGE_IMAGE_BUDGET_BYTES) -> list[dict]:
    """Storage form of screenshot records: one image each, no raw segments."""
    compacted = []
    for shot in screenshots:
        data = shot.get("data")
        full_page = shot.get("fullPageDataUrl")
        if full_page:
            full_page = shrink_data_url(full_page, budget)
            data = None
        elif data:
            data = shrink_data_url(data, budget)
        compacted.append({
            **shot,
            "data": data,
            "fullPageDataUrl": full_page,
            "segments": None,
            "compressed": True,
        })
    return compacted


class RunStore:
    """JSON-file backed store shared by the orchestrator and the outer surfaces."""

    def __init__(self, data_dir: Path | str = DATA_DIR, file_name: str = STATE_FILE_NAME):
        self.path = Path(data_dir) / file_name
        self._lock = threading.Lock()

    # ── Active-run marker ─────────────────────────────────────────────────────

    def set_active(self, run_id: str, urls: list[str], config: dict):
        with self._lock:
            state = self._read()
            state[ACTIVE_ID_KEY] = run_id
            state[ACTIVE_CONFIG_KEY] = {"urls": list(urls), "config": config}
            self._write(state)

    def get_active(self) -> dict | None:
        """{"testId", "urls", "config"} of the marked run, or None."""
        state = self._read()
        run_id = state.get(ACTIVE_ID_KEY)
        if not run_id:
            return None
        active = state.get(ACTIVE_CONFIG_KEY) or {}
        return {"testId": run_id, "urls": active.get("urls", []), "config": active.get("config", {})}

    def clear_active(self):
        with self._lock:
            state = self._read()
            if ACTIVE_ID_KEY not in state and ACTIVE_CONFIG_KEY not in state:
                return
            state.pop(ACTIVE_ID_KEY, None)
            state.pop(ACTIVE_CONFIG_KEY, None)
            self._write(state)

    # ── Latest results ────────────────────────────────────────────────────────

    def save_latest(self, results: dict) -> bool:
        """Store ``results`` with compacted screenshots; falls back to no screenshots."""
        try:
            compacted = {**results, "screenshots": compact_screenshots(results.get("screenshots") or [])}
            self._put(LATEST_RESULTS_KEY, compacted)
            return True
        except (OSError, TypeError, ValueError) as e:
            log.error("Failed to store results: %s", e)

        try:
            self._put(LATEST_RESULTS_KEY, {**results, "screenshots": []})
            return True
        except (OSError, TypeError, ValueError) as e:
            log.error("Failed to store even minimal results: %s", e)
            return False

    def load_latest(self) -> dict | None:
        return self._read().get(LATEST_RESULTS_KEY)

    def cleanup_old_screenshots(self, now: int | None = None) -> bool:
        """Drop image payloads from stored results older than the retention window."""
        now = now if now is not None else now_ms()
        with self._lock:
            state = self._read()
            results = state.get(LATEST_RESULTS_KEY)
            if not results or not results.get("screenshots"):
                return False

            age = now - (results.get("endTime") or results.get("startTime") or 0)
            if age <= SCREENSHOT_RETENTION_HOURS * 3600 * 1000:
                return False

            log.info("Cleaning up screenshots older than %d hours", SCREENSHOT_RETENTION_HOURS)
            results["screenshots"] = [
                {
                    "url": s.get("url"),
                    "type": s.get("type"),
                    "dimensions": s.get("dimensions"),
                    "timestamp": s.get("timestamp"),
                    "data": None,
                    "fullPageDataUrl": None,
                    "segments": None,
                }
                for s in results["screenshots"]
            ]
            self._write(state)
            return True

    # ── File access ───────────────────────────────────────────────────────────

    def _put(self, key: str, value):
        with self._lock:
            state = self._read()
            state[key] = value
            self._write(state)

    def _read(self) -> dict:
        try:
            with open(self.path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (json.JSONDecodeError, OSError) as e:
            log.warning("Ignoring unreadable state file %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, state: dict):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump(state, f)
        os.replace(tmp_path, self.path)
