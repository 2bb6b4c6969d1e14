"""AI report client for QA Sweep.

Two reports per URL, both from Gemini 2.0 Flash: a visual UI/UX review of
the full-page screenshot and a technical SEO review of the collected page
data. The client never raises; every failure comes back as a structured
``{"error", "timestamp"}`` object that lands in the run's AI report map.

Usage: one GeminiReportClient per orchestrator, shared across runs.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import os

from qasweep.config import AI_API_KEY_ENV, AI_MAX_OUTPUT_TOKENS, AI_MODEL, AI_TEMPERATURE
from qasweep.models.types import ScreenshotResult, UrlResult, now_ms

log = logging.getLogger(__name__)

_TECHNICAL_ISSUE_TYPES = {"seo", "broken_link", "missing_h1", "multiple_h1"}


def _image_part(data_url: str) -> dict:
    header, _, payload = data_url.partition(",")
    mime = header[len("data:"):].split(";")[0] or "image/png"
    return {"mime_type": mime, "data": base64.b64decode(payload)}


def visual_prompt(url: str, view_type: str) -> str:
    if view_type == "mobile":
        device_section = """### 8. Mobile-Specific Issues
* Identify any mobile-specific usability issues.
* Check for touch target sizes (minimum 44x44px).
* Verify that content is properly adapted for small screens."""
    else:
        device_section = """### 8. Desktop Layout Optimization
* Evaluate the use of available screen space.
* Check for proper responsive grid usage.
* Identify areas that could benefit from better desktop optimization."""

    return f"""You are given a full-page screenshot of a webpage ({view_type} view). Review it as a senior QA engineer would review the UI/UX quality and accessibility of the site. Provide a structured report in checkbox format for actionable tracking.

## Visual & UI/UX Analysis Report for {url}

### Critical Issues (Must Fix Immediately)
- [ ] [Specific issue with location and fix]

### High Priority Issues (Fix This Week)
- [ ] [Specific issue with measurements and solution]

### Medium Priority Issues (Fix This Month)
- [ ] [Specific issue with actionable fix]

### Low Priority Enhancements (Nice to Have)
- [ ] [Enhancement suggestion with implementation details]

## Detailed Analysis

### 1. Layout & Spacing
* Consistent spacing between sections, text blocks and elements.
* Overcrowded areas or excessive empty space; alignment problems.

### 2. Visual Hierarchy
* Clear structure guiding attention (headings, subheadings, calls to action).

### 3. Color & Contrast
* Consistent brand colors, contrast problems, readability.

### 4. Typography
* Consistent font families, sizes and line spacing on a logical scale.

### 5. Accessibility
* Size, spacing and visibility of text, buttons and links; focus and hover indicators.

### 6. Navigation & Usability
* Menus and navigation that are easy to find and use.

### 7. Content Presentation
* Organised, scannable content with a clear message.

{device_section}

### 9. Specific Recommendations
Be specific: give exact measurements, color codes or CSS values where applicable.

Please analyze the {view_type} screenshot provided below."""


def technical_prompt(url: str, url_result: UrlResult) -> str:
    seo = url_result.seo_data or {}
    headers = seo.get("headers") or []
    meta_tags = seo.get("metaTags") or {}
    links = seo.get("links") or {}
    internal = len(links.get("internal") or [])
    external = len(links.get("external") or [])
    structured = "Present" if seo.get("structuredData") else "Not found"

    header_lines = "\n".join(f'- {h.get("tag")}: "{h.get("text", "")}"' for h in headers) or "No headers found"
    meta_lines = "\n".join(
        f'- {k}: "{v[:100]}{"..." if len(v) > 100 else ""}"' for k, v in meta_tags.items()
    ) or "No meta tags found"

    relevant = [
        i for i in url_result.issues
        if i.type in _TECHNICAL_ISSUE_TYPES or "meta" in i.type or "title" in i.type
    ]
    issue_lines = "\n".join(
        f"- [{i.severity.value}] {i.type}: {i.message or i.details.get('message') or str(i.details)[:100]}"
        for i in relevant
    ) or "None"
    broken_lines = "\n".join(
        f'- {i.details.get("href", "Unknown URL")}: "{i.details.get("text") or "No text"}"'
        for i in url_result.issues if i.type == "broken_link"
    ) or "None"

    return f"""You are an SEO expert analyzing the technical SEO data for this webpage. Review the data and provide actionable recommendations in checkbox format.

## URL: {url}

## SEO Data Collected:

**Headers Structure:**
{header_lines}

**Meta Tags:**
{meta_lines}

**Canonical URL:** {seo.get("canonical") or "Not set"}

**Links:**
- Internal links: {internal}
- External links: {external}

**Structured Data:** {structured}

**Performance metrics:** {url_result.metrics or "Not collected"}

## Current Issues:
{issue_lines}

## Broken Links:
{broken_lines}

---

## Technical SEO Analysis Report

### Critical SEO Issues (Fix Immediately)
- [ ] [Specific issue and exact fix]

### High Priority SEO Issues (Fix This Week)
- [ ] [Issue with solution]

### Medium Priority Optimizations (Fix This Month)
- [ ] [Optimization task]

### Low Priority Enhancements (Nice to Have)
- [ ] [Enhancement]

## Detailed Technical Analysis
### On-Page SEO Score: [X/100]
**Title Tag**, **Meta Description**, **H1 Usage**, **Header Hierarchy**: length and assessment of each.

### Technical Health
**Canonical Status:** {"Set" if seo.get("canonical") else "Missing"}
**Structured Data:** {structured}
**Open Graph Tags:** [Assessment]

## Quick SEO Wins (Implement Today)
1. [Specific quick fix with exact implementation]"""


class GeminiReportClient:
    """Wraps the Gemini calls behind the per-URL AI reports."""

    def __init__(self, model_name: str = AI_MODEL, model=None):
        self._model_name = model_name
        self._model = model
        self._call_count = 0

    def _ensure_model(self):
        if self._model:
            return
        api_key = os.environ.get(AI_API_KEY_ENV)
        if not api_key:
            raise RuntimeError(f"{AI_API_KEY_ENV} not set")
        import google.generativeai as genai
        genai.configure(api_key=api_key)
        self._model = genai.GenerativeModel(
            self._model_name,
            generation_config={"temperature": AI_TEMPERATURE, "max_output_tokens": AI_MAX_OUTPUT_TOKENS},
        )

    @property
    def available(self) -> bool:
        return self._model is not None or bool(os.environ.get(AI_API_KEY_ENV))

    @property
    def stats(self) -> dict:
        return {"calls": self._call_count, "model": self._model_name}

    async def generate(self, prompt: str, images: list[str] | None = None) -> dict:
        """One completion. Returns {content, model, timestamp} or {error, timestamp}."""
        try:
            self._ensure_model()
            parts: list = [prompt]
            parts.extend(_image_part(url) for url in images or [])
            self._call_count += 1

            def _sync():
                resp = self._model.generate_content(parts)
                return resp.text if resp and resp.text else None

            text = await asyncio.to_thread(_sync)
        except Exception as e:
            log.warning("AI request failed: %s", e)
            return {"error": str(e), "timestamp": now_ms()}

        if not text:
            return {"error": "Empty response from model", "timestamp": now_ms()}
        return {"content": text.strip(), "model": self._model_name, "timestamp": now_ms()}

    async def visual_report(self, url: str, screenshots: list[ScreenshotResult]) -> dict:
        shots = [s for s in screenshots if s.success and (s.full_page_data_url or s.data)]
        if not shots:
            return {"error": "No screenshots captured for visual analysis", "timestamp": now_ms(), "url": url}

        shot = shots[0]
        report = await self.generate(visual_prompt(url, shot.profile), [shot.full_page_data_url or shot.data])
        report["url"] = url
        return report

    async def technical_report(self, url: str, url_result: UrlResult) -> dict:
        report = await self.generate(technical_prompt(url, url_result))
        report["url"] = url
        return report
