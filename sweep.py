#!/usr/bin/env python3
"""
QA Sweep CLI
Usage: python sweep.py https://example.com [more URLs] [--screenshots] [--mobile] [--ai] [--all] [--headful]
"""

import argparse
import asyncio
import base64
import json
import logging
import re
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from qasweep.core.browser import BrowserHandle
from qasweep.core.orchestrator import TestRunOrchestrator
from qasweep.core.report import print_report
from qasweep.models.types import TestConfig

log = logging.getLogger("qasweep.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="QA Sweep: automated website QA sweeps",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python sweep.py https://example.com --all\n"
               "  python sweep.py https://a.com https://b.com --screenshots --mobile --out shots/\n"
               "  python sweep.py --urls-file urls.txt --seo --ai --json",
    )
    parser.add_argument("urls", nargs="*", help="URLs to test, in order")
    parser.add_argument("--urls-file", type=Path, help="File with one URL per line (# starts a comment)")
    parser.add_argument("--screenshots", action="store_true", help="Capture stitched full-page screenshots")
    parser.add_argument("--mobile", action="store_true",
                        help="Also capture mobile and run the mobile/tablet responsive check")
    parser.add_argument("--view-mode", choices=["desktop", "mobile"], default="desktop",
                        help="Screenshot view mode (default: desktop)")
    parser.add_argument("--ai", action="store_true", help="Generate AI visual and technical reports (GEMINI_API_KEY)")
    parser.add_argument("--seo", action="store_true", help="SEO checks and data collection")
    parser.add_argument("--accessibility", action="store_true", help="Accessibility checks")
    parser.add_argument("--layout", action="store_true", help="Layout and spacing validation")
    parser.add_argument("--links", action="store_true", help="Broken link detection")
    parser.add_argument("--performance", action="store_true", help="Navigation timing and thresholds")
    parser.add_argument("--all", action="store_true", help="Enable every check except AI reports")
    parser.add_argument("--headful", action="store_true", help="Run the browser visibly")
    parser.add_argument("--json", action="store_true", help="Output results as JSON instead of a report")
    parser.add_argument("--out", type=Path, help="Directory to write captured screenshots to")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def collect_urls(args) -> list[str]:
    urls = list(args.urls)
    if args.urls_file:
        for line in args.urls_file.read_text().splitlines():
            line = line.strip()
            if line and not line.startswith("#"):
                urls.append(line)
    return [u if u.startswith("http") else f"https://{u}" for u in urls]


def config_from_args(args) -> TestConfig:
    every = args.all
    return TestConfig.from_dict({
        "fullScreenshots": args.screenshots or every,
        "mobileTablet": args.mobile or every,
        "viewMode": args.view_mode,
        "aiAnalysis": args.ai,
        "seoCheck": args.seo or every,
        "accessibility": args.accessibility or every,
        "spacingValidation": args.layout or every,
        "brokenLinks": args.links or every,
        "lighthouse": args.performance or every,
    })


def _cli_progress(event_type: str, data: dict):
    if event_type == "progress":
        status = data.get("status", "")
        if status.startswith("Testing ") or status.startswith("Generating") or status.startswith("Capturing"):
            print(f"   {status[:100]}")
    elif event_type == "url_complete":
        if data.get("error"):
            print(f"         [ERROR] {data['error'][:100]}")
        else:
            print(f"         {data.get('issues', 0)} issue(s)")
    elif event_type == "run_complete":
        progress = data.get("progress", {})
        print(f"\n   Done: {progress.get('status', data.get('state', ''))}\n")


def write_screenshots(results: dict, out_dir: Path) -> list[Path]:
    out_dir.mkdir(parents=True, exist_ok=True)
    written = []
    for i, shot in enumerate(results.get("screenshots", [])):
        data_url = shot.get("fullPageDataUrl") or shot.get("data")
        if not data_url:
            continue
        header, _, payload = data_url.partition(",")
        ext = "jpg" if "jpeg" in header else "png"
        slug = re.sub(r"[^A-Za-z0-9]+", "_", shot.get("url", "")).strip("_")[:80] or "page"
        path = out_dir / f"{i + 1:02d}_{slug}_{shot.get('type', 'desktop')}.{ext}"
        path.write_bytes(base64.b64decode(payload))
        written.append(path)
    return written


async def run_sweep(urls: list[str], config: TestConfig, headful: bool = False,
                    on_progress=_cli_progress) -> tuple[dict, dict]:
    async with BrowserHandle(headless=not headful) as browser:
        orchestrator = TestRunOrchestrator(browser, on_progress=on_progress)
        run_id = await orchestrator.start(urls, config)
        try:
            results = await orchestrator.wait(run_id)
            progress = orchestrator.get_progress(run_id)
        finally:
            await orchestrator.shutdown()
    return results, progress


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )

    urls = collect_urls(args)
    if not urls:
        print("  No URLs given. Pass URLs or --urls-file.")
        sys.exit(2)

    config = config_from_args(args)
    if not args.json:
        enabled = [k for k, v in config.to_dict().items() if v is True]
        print(f"\n  QA Sweep testing {len(urls)} URL(s)")
        print(f"  Checks: {', '.join(enabled) or 'none'} | View: {config.view_mode.value}", end="")
        print(" | Mode: headful" if args.headful else " | Mode: headless")
        print()

    try:
        results, progress = asyncio.run(run_sweep(urls, config, args.headful, None if args.json else _cli_progress))
    except Exception as e:
        log.debug("Sweep failed", exc_info=True)
        print(f"\n  Error during sweep: {e}")
        sys.exit(1)

    if args.out:
        for path in write_screenshots(results, args.out):
            if not args.json:
                print(f"  Saved {path}")

    if args.json:
        print(json.dumps(results, indent=2))
    else:
        print_report(results, progress)


if __name__ == "__main__":
    main()
