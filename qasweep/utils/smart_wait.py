"""Condition-based waiting for page loads.

Polls ``document.readyState`` instead of trusting navigation events, so a
tab reused across URLs and a freshly opened tab are handled the same way.
The wait is bounded: callers get a ``PageLoadTimeout`` rather than a hang.
"""

from __future__ import annotations

import asyncio
import logging

from qasweep.config import PAGE_LOAD_GRACE_MS, PAGE_LOAD_POLL_MS, PAGE_LOAD_TIMEOUT_MS
from qasweep.errors import PageLoadTimeout

log = logging.getLogger(__name__)

_READY_STATE_JS = "() => document.readyState"


async def wait_for_page_load(
    tab,
    timeout_ms: int = PAGE_LOAD_TIMEOUT_MS,
    poll_ms: int = PAGE_LOAD_POLL_MS,
    grace_ms: int = PAGE_LOAD_GRACE_MS,
):
    """Wait until the tab reports ``complete``, then give scripts ``grace_ms`` to run."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_ms / 1000

    while True:
        try:
            state = await tab.evaluate(_READY_STATE_JS)
        except Exception as e:
            # The execution context is torn down while a navigation commits
            log.debug("readyState poll failed on %s: %s", tab.url, e)
            state = None

        if state == "complete":
            if grace_ms:
                await asyncio.sleep(grace_ms / 1000)
            return

        if loop.time() >= deadline:
            raise PageLoadTimeout(tab.url, timeout_ms)
        await asyncio.sleep(poll_ms / 1000)
