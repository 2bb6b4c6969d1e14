"""In-page analysis: broken links, layout, accessibility, SEO, timing.

The script is shipped to the tab as one read-only function of the feature
toggles and returns plain data. ``apply_analysis`` turns that data into
issues on a UrlResult.
"""

from __future__ import annotations

from qasweep.detectors.performance import PerformanceDetector
from qasweep.models.types import Severity, TestConfig, UrlResult


ANALYSIS_JS = """(config) => {
    const analysis = {
        brokenLinks: [],
        layoutIssues: [],
        accessibilityIssues: [],
        seoIssues: [],
        seoData: {
            headers: [],
            metaTags: {},
            links: { internal: [], external: [] },
            structuredData: [],
            canonical: null,
        },
        performance: {},
    };

    if (config.brokenLinks) {
        for (const link of document.querySelectorAll('a[href]')) {
            const href = link.href;
            if (href.includes('404') || href.includes('non-existent')) {
                analysis.brokenLinks.push({
                    href,
                    text: (link.textContent || '').trim().substring(0, 100),
                    selector: link.id || link.className || 'a',
                });
            }
        }
    }

    if (config.spacingValidation) {
        if (document.documentElement.scrollWidth > window.innerWidth) {
            analysis.layoutIssues.push({ type: 'horizontal_scroll', message: 'Page has horizontal scrollbar' });
        }
        const rects = [];
        for (const el of document.querySelectorAll('div, section, article, aside, nav, header, footer')) {
            const rect = el.getBoundingClientRect();
            if (rect.width > 0 && rect.height > 0) rects.push({ el, rect });
            if (rects.length >= 50) break;
        }
        for (let i = 0; i < rects.length; i++) {
            for (let j = i + 1; j < rects.length; j++) {
                const a = rects[i], b = rects[j];
                if (a.el.contains(b.el) || b.el.contains(a.el)) continue;
                const r1 = a.rect, r2 = b.rect;
                if (r1.left < r2.right && r1.right > r2.left && r1.top < r2.bottom && r1.bottom > r2.top) {
                    analysis.layoutIssues.push({
                        type: 'overlapping_elements',
                        elements: [
                            a.el.tagName.toLowerCase() + '.' + a.el.className,
                            b.el.tagName.toLowerCase() + '.' + b.el.className,
                        ],
                    });
                    break;
                }
            }
        }
    }

    if (config.accessibility) {
        for (const img of document.querySelectorAll('img')) {
            if (!img.hasAttribute('alt') && !img.getAttribute('aria-label')) {
                analysis.accessibilityIssues.push({
                    type: 'missing_alt_text', element: 'img', src: (img.src || '').substring(0, 100),
                });
            }
        }
        for (const input of document.querySelectorAll('input, textarea, select')) {
            if (input.type === 'hidden' || input.type === 'submit' || input.type === 'button') continue;
            const label = input.id ? document.querySelector(`label[for="${CSS.escape(input.id)}"]`) : null;
            if (!label && !input.closest('label') && !input.getAttribute('aria-label')
                    && !input.getAttribute('aria-labelledby')) {
                analysis.accessibilityIssues.push({
                    type: 'missing_label', element: input.tagName.toLowerCase(),
                    inputType: input.type || '', name: input.name || '',
                });
            }
        }
        let lastLevel = 0;
        let h1Count = 0;
        for (const h of document.querySelectorAll('h1, h2, h3, h4, h5, h6')) {
            const level = parseInt(h.tagName[1], 10);
            if (level === 1) h1Count++;
            if (level > lastLevel + 1) {
                analysis.accessibilityIssues.push({
                    type: 'heading_hierarchy',
                    message: `Skipped heading level: ${h.tagName} after H${lastLevel}`,
                });
            }
            lastLevel = level;
        }
        if (h1Count === 0) {
            analysis.accessibilityIssues.push({ type: 'missing_h1', message: 'Page is missing H1 heading' });
        }
        if (!document.documentElement.lang) {
            analysis.accessibilityIssues.push({ type: 'missing_lang', message: 'Missing lang attribute on <html>' });
        }
    }

    if (config.seoCheck) {
        const seo = analysis.seoData;
        for (const h of document.querySelectorAll('h1, h2, h3, h4, h5, h6')) {
            seo.headers.push({
                tag: h.tagName.toLowerCase(),
                text: (h.textContent || '').trim().substring(0, 200),
                level: parseInt(h.tagName[1], 10),
            });
        }
        for (const meta of document.querySelectorAll('meta')) {
            const name = meta.getAttribute('name') || meta.getAttribute('property');
            const content = meta.getAttribute('content');
            if (name && content) seo.metaTags[name] = content;
        }
        const canonical = document.querySelector('link[rel="canonical"]');
        if (canonical) seo.canonical = canonical.href;
        for (const script of document.querySelectorAll('script[type="application/ld+json"]')) {
            try { seo.structuredData.push(JSON.parse(script.textContent)); } catch (e) {}
        }
        const host = window.location.hostname;
        for (const link of document.querySelectorAll('a[href]')) {
            try {
                const target = new URL(link.href);
                const entry = { href: link.href, text: (link.textContent || '').trim().substring(0, 100) };
                (target.hostname === host ? seo.links.internal : seo.links.external).push(entry);
            } catch (e) {}
        }

        const desc = document.querySelector('meta[name="description"]');
        if (!desc) {
            analysis.seoIssues.push({ type: 'missing_meta_description', message: 'Page is missing meta description' });
        } else if (desc.content.length < 50) {
            analysis.seoIssues.push({ type: 'short_meta_description', message: 'Meta description is too short',
                                      length: desc.content.length, content: desc.content });
        } else if (desc.content.length > 160) {
            analysis.seoIssues.push({ type: 'long_meta_description', message: 'Meta description is too long',
                                      length: desc.content.length, content: desc.content });
        }

        const title = document.title;
        if (!title) {
            analysis.seoIssues.push({ type: 'missing_title', message: 'Page is missing title tag' });
        } else if (title.length < 30) {
            analysis.seoIssues.push({ type: 'short_title', message: 'Title tag is too short', length: title.length, content: title });
        } else if (title.length > 60) {
            analysis.seoIssues.push({ type: 'long_title', message: 'Title tag is too long', length: title.length, content: title });
        }

        const missingOg = ['og:title', 'og:description', 'og:image']
            .filter(p => !document.querySelector(`meta[property="${p}"]`));
        if (missingOg.length) {
            analysis.seoIssues.push({ type: 'missing_og_tags', message: 'Missing Open Graph tags', missing: missingOg });
        }

        const h1s = document.querySelectorAll('h1').length;
        if (h1s === 0) {
            analysis.seoIssues.push({ type: 'missing_h1', message: 'Page is missing H1 tag' });
        } else if (h1s > 1) {
            analysis.seoIssues.push({ type: 'multiple_h1', message: `Page has ${h1s} H1 tags (should have only 1)`, count: h1s });
        }
    }

    if (config.lighthouse) {
        const nav = performance.getEntriesByType('navigation')[0];
        if (nav) {
            const paint = performance.getEntriesByType('paint').find(p => p.name === 'first-contentful-paint');
            analysis.performance = {
                domContentLoaded: Math.round(nav.domContentLoadedEventEnd - nav.startTime),
                loadComplete: Math.round(nav.loadEventEnd - nav.startTime),
                firstByte: Math.round(nav.responseStart - nav.startTime),
                firstContentfulPaint: paint ? Math.round(paint.startTime) : null,
                domNodeCount: document.querySelectorAll('*').length,
                transferSize: nav.transferSize || 0,
            };
        }
    }

    return analysis;
}"""

# (analysis key, tests key, issue type, severity)
_ISSUE_GROUPS = (
    ("brokenLinks", "brokenLinks", "broken_link", Severity.HIGH),
    ("layoutIssues", "layout", "layout", Severity.LOW),
    ("accessibilityIssues", "accessibility", "accessibility", Severity.HIGH),
    ("seoIssues", "seo", "seo", Severity.MEDIUM),
)


def _script_options(config: TestConfig) -> dict:
    return {
        "brokenLinks": config.broken_links,
        "spacingValidation": config.spacing_validation,
        "accessibility": config.accessibility,
        "seoCheck": config.seo_check,
        "lighthouse": config.lighthouse,
    }


async def run_page_analysis(tab, config: TestConfig) -> dict:
    """Run the analysis script in ``tab`` and return its raw result."""
    result = await tab.evaluate(ANALYSIS_JS, _script_options(config))
    if not isinstance(result, dict):
        raise ValueError("Page analysis returned no data")
    return result


def apply_analysis(analysis: dict, url_result: UrlResult, config: TestConfig | None = None):
    """Record analysis findings as tests and issues on ``url_result``."""
    for key, test_name, issue_type, severity in _ISSUE_GROUPS:
        found = analysis.get(key) or []
        if not found:
            continue
        if key == "brokenLinks":
            url_result.tests[test_name] = {"found": found}
        else:
            url_result.tests[test_name] = {"issues": found}
        for details in found:
            url_result.add_issue(issue_type, severity, details, message=details.get("message", ""))

    seo_data = analysis.get("seoData")
    if seo_data and (config is None or config.seo_check):
        url_result.seo_data = seo_data

    metrics = analysis.get("performance") or {}
    if metrics:
        url_result.metrics = metrics
        url_result.tests["performance"] = {"metrics": metrics}
        for issue in PerformanceDetector().detect(metrics):
            url_result.issues.append(issue)
