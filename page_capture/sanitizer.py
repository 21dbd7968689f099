"""Removal of analytics, tracking, advertising, tag-manager and redirect code.

The rule set is plain data: callers can pass their own SanitizerRules. The
matching is substring and regex based and is not a security boundary.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Pattern, Tuple

from bs4 import BeautifulSoup
from bs4.element import Tag

from .config import CaptureOptions


@dataclass(frozen=True)
class CategoryRules:
    src_substrings: Tuple[str, ...] = ()
    inline_keywords: Tuple[str, ...] = ()
    selectors: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MaliciousRules:
    remove_tags: Tuple[str, ...] = ("base",)
    meta_http_equiv: Tuple[str, ...] = ("refresh", "location", "redirect")
    meta_names: Tuple[str, ...] = ("referrer", "redirect", "location")
    inline_substrings: Tuple[str, ...] = ()
    inline_patterns: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SanitizerRules:
    analytics: CategoryRules = field(default_factory=CategoryRules)
    tracking: CategoryRules = field(default_factory=CategoryRules)
    ads: CategoryRules = field(default_factory=CategoryRules)
    tag_manager: CategoryRules = field(default_factory=CategoryRules)
    malicious: MaliciousRules = field(default_factory=MaliciousRules)


DEFAULT_RULES = SanitizerRules(
    analytics=CategoryRules(
        src_substrings=(
            "google-analytics.com",
            "googletagmanager.com/gtag",
            "gtag/js",
            "analytics.js",
            "gtag.js",
            "ga.js",
            "hm.baidu.com",
            "cnzz.com",
            "mixpanel.com",
            "segment.com",
            "segment.io",
        ),
        inline_keywords=(
            "google-analytics.com",
            "gtag(",
            "ga(",
            "_gaq",
            "googleanalyticsobject",
            "hm.baidu.com",
            "_hmt",
            "mixpanel",
            "analytics.track",
            "segment.com",
        ),
    ),
    tracking=CategoryRules(
        src_substrings=(
            "connect.facebook.net",
            "analytics.tiktok.com",
            "snapchat.com/web-sdk",
            "hotjar.com",
            "crazyegg.com",
            "clarity.ms",
            "mouseflow.com",
            "fullstory.com",
        ),
        inline_keywords=(
            "fbq(",
            "facebook.net",
            "ttq.track",
            "tiktok",
            "snaptr(",
            "hotjar",
            "hj(",
            "crazyegg",
            "clarity",
            "mouseflow",
            "fullstory",
        ),
    ),
    ads=CategoryRules(
        src_substrings=(
            "googlesyndication.com",
            "doubleclick.net",
            "taboola.com",
            "outbrain.com",
            "popads.net",
            "propellerads.com",
            "adcash.com",
            "affiliate.js",
            "redirect.js",
        ),
        inline_keywords=(
            "googlesyndication",
            "adsbygoogle",
            "doubleclick",
            "taboola",
            "outbrain",
            "popads",
            "propellerads",
            "adcash",
            "affiliate",
            "redirect",
        ),
        selectors=("ins.adsbygoogle",),
    ),
    tag_manager=CategoryRules(
        src_substrings=("googletagmanager.com/gtm.js",),
        inline_keywords=("googletagmanager.com", "datalayer", "gtm-"),
        selectors=("noscript iframe[src*='googletagmanager.com']",),
    ),
    malicious=MaliciousRules(
        inline_substrings=(
            "window.location.href",
            "window.location.replace",
            "window.location.assign",
            "document.location.href",
            "document.location.replace",
            "location.href",
            "location.replace",
            "top.location",
            "parent.location",
            "<base",
        ),
        inline_patterns=(
            r"""location\s*=\s*['"][^'"]*['"]""",
            r"location\s*\.\s*href\s*=",
            r"window\s*\.\s*open\s*\(",
            r"document\s*\.\s*write.*<base",
            r"settimeout\s*\(.*location",
            r"setinterval\s*\(.*location",
            r"document\.createelement.*base",
            r"http-equiv.*refresh",
            r"meta.*refresh",
        ),
    ),
)


def _alive(tag: Tag) -> bool:
    return not getattr(tag, "decomposed", False)


class Sanitizer:
    def __init__(self, options: CaptureOptions, rules: SanitizerRules = DEFAULT_RULES):
        self.options = options
        self.rules = rules
        self._patterns: List[Pattern[str]] = [
            re.compile(p, re.IGNORECASE | re.DOTALL) for p in rules.malicious.inline_patterns
        ]

    def apply(self, soup: BeautifulSoup) -> int:
        """Remove matching nodes in place and return how many were removed."""
        removed = 0
        if self.options.remove_analytics:
            removed += self._remove_category(soup, self.rules.analytics, "analytics")
        if self.options.remove_tracking:
            removed += self._remove_category(soup, self.rules.tracking, "tracking")
        if self.options.remove_ads:
            removed += self._remove_category(soup, self.rules.ads, "ads")
        if self.options.remove_tag_manager:
            removed += self._remove_category(soup, self.rules.tag_manager, "tag manager")
        if self.options.remove_malicious_tags:
            removed += self._remove_malicious(soup)
        if removed:
            logging.info("sanitizer removed %d elements", removed)
        return removed

    def _remove_all(self, tags: Iterable[Tag]) -> int:
        n = 0
        for tag in list(tags):
            if _alive(tag):
                tag.decompose()
                n += 1
        return n

    def _remove_category(self, soup: BeautifulSoup, rules: CategoryRules, label: str) -> int:
        doomed: List[Tag] = []
        for script in soup.find_all("script"):
            src = (script.get("src") or "").lower()
            if src and any(s.lower() in src for s in rules.src_substrings):
                doomed.append(script)
                continue
            text = script.get_text().lower()
            if text and any(k.lower() in text for k in rules.inline_keywords):
                doomed.append(script)
        for sel in rules.selectors:
            doomed.extend(soup.select(sel))
        n = self._remove_all(doomed)
        logging.debug("removed %d %s elements", n, label)
        return n

    def is_malicious_script(self, text: str) -> bool:
        low = text.lower()
        if any(s in low for s in self.rules.malicious.inline_substrings):
            return True
        return any(p.search(low) for p in self._patterns)

    def _remove_malicious(self, soup: BeautifulSoup) -> int:
        rules = self.rules.malicious
        doomed: List[Tag] = []
        for name in rules.remove_tags:
            doomed.extend(soup.find_all(name))
        for meta in soup.find_all("meta"):
            equiv = (meta.get("http-equiv") or "").strip().lower()
            name = (meta.get("name") or "").strip().lower()
            if equiv in rules.meta_http_equiv or name in rules.meta_names:
                doomed.append(meta)
        for script in soup.find_all("script"):
            text = script.get_text()
            if text and self.is_malicious_script(text):
                doomed.append(script)
        n = self._remove_all(doomed)
        logging.debug("removed %d malicious elements", n)
        return n
