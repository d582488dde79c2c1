"""
Kimland Stock Sync - Variant Extractor
Reads the size/stock select from a Kimland product detail page.

Option texts look like "42 - 3 piéce(s)", "XL: 2", "Dimension: Standard
- 1 piéce(s)"... and are matched against OPTION_PATTERNS in order.
"""

import logging
import re
from typing import List, Optional, Tuple

import ftfy
import requests
from bs4 import BeautifulSoup, Tag

from .html_scorer import element_text, parse_html
from .models import RemoteVariant
from .session import HTML_ACCEPT, SessionAuthenticator

logger = logging.getLogger(__name__)

# select[name=...] values that are always the size control
SIZE_SELECT_NAMES = ("pointure", "taille", "size", "variant", "option")

IGNORED_SELECT_MARKERS = ("categor", "search")

ALTERNATIVE_SIZE_SELECTORS = [
    "button[data-size]",
    "[data-size]",
    ".size-option",
    '[class*="size"]',
    ".variant",
    '[class*="variant"]',
]

_PIECE = r"pi[eéè]ce"

# (name, pattern) - first match wins; group 1 is the label, group 2 the quantity
OPTION_PATTERNS: List[Tuple[str, re.Pattern]] = [
    ("dimension", re.compile(rf"^Dimension\s*:\s*(.+?)\s*-\s*(\d+)\s*{_PIECE}s?(?:\(s\))?$", re.IGNORECASE)),
    ("dash_pieces_s", re.compile(rf"^(.+?)\s*-\s*(\d+)\s*{_PIECE}\(s\)$", re.IGNORECASE)),
    ("colon_pieces_s", re.compile(rf"^(.+?)\s*:\s*(\d+)\s*{_PIECE}\(s\)$", re.IGNORECASE)),
    ("dash_pieces", re.compile(rf"^(.+?)\s*-\s*(\d+)\s*{_PIECE}s?$", re.IGNORECASE)),
    ("parenthesized", re.compile(r"^(.+?)\s*\(\s*(\d+)\s*\)$")),
    ("dash_available", re.compile(r"^(.+?)\s*-\s*(\d+)\s*disp", re.IGNORECASE)),
    ("bracketed", re.compile(r"^(.+?)\s*\[\s*(\d+)\s*\]")),
    ("colon", re.compile(r"^(.+?)\s*:\s*(\d+)$")),
    ("trailing_pieces", re.compile(rf"^(.+?)\s+(\d+)\s*{_PIECE}s?$", re.IGNORECASE)),
]

NUMERIC_TOKEN = re.compile(r"\b\d+(\.\d+)?\b")
ACCENTED_E = re.compile(r"[éèê]")
LABEL_JUNK = re.compile(r"[^\w\s.]")

# Labels of "pick one" / filter entries, never sizes
NON_SIZE_LABELS = ("catégorie", "categorie", "toutes")


def clean_option_text(text: str) -> str:
    """Repair mis-decoded accents (piÃ©ce → piéce) and collapse whitespace."""
    return " ".join(ftfy.fix_text(text or "").split())


def parse_option(text: str) -> Optional[RemoteVariant]:
    """
    Turn one option text into a variant.

    Returns None for empty or non-size entries. When no pattern yields a
    count the label is kept with stock 0 and `stock_parsed=False`.
    """
    text = clean_option_text(text)
    if not text:
        return None

    for name, pattern in OPTION_PATTERNS:
        match = pattern.match(text)
        if not match:
            continue
        size = match.group(1).strip()
        if not size or any(marker in size.lower() for marker in NON_SIZE_LABELS):
            continue
        return RemoteVariant(size=ACCENTED_E.sub("e", size), stock=int(match.group(2)))

    if any(marker in text.lower() for marker in NON_SIZE_LABELS):
        return None
    size_only = LABEL_JUNK.sub("", text).strip()
    if not size_only:
        return None
    return RemoteVariant(size=size_only, stock=0, stock_parsed=False)


def find_size_select(soup: BeautifulSoup) -> Optional[Tag]:
    """The size <select>: by name first, else the first one listing numbers."""
    for name in SIZE_SELECT_NAMES:
        select = soup.select_one(f'select[name="{name}"]')
        if select is not None:
            logger.debug(f"Size select found by name: {name}")
            return select

    for select in soup.select("select"):
        name = (select.get("name") or "").lower()
        select_id = (select.get("id") or "").lower()
        if any(marker in name or marker in select_id for marker in IGNORED_SELECT_MARKERS):
            continue
        for option in select.select("option"):
            text = element_text(option)
            if NUMERIC_TOKEN.search(text) and "catégorie" not in text.lower():
                logger.debug(f"Size select found by content: name={name!r} id={select_id!r}")
                return select
    return None


def extract_variants_from_html(html: str) -> List[RemoteVariant]:
    """Parse a detail page into variants. An empty list is a valid answer."""
    soup = parse_html(html)
    variants: List[RemoteVariant] = []

    select = find_size_select(soup)
    if select is not None:
        for option in select.select("option"):
            # value="" marks the "choose a size" prompt
            if option.has_attr("value") and not option["value"].strip():
                continue
            variant = parse_option(element_text(option))
            if variant is not None:
                variants.append(variant)
        return variants

    for selector in ALTERNATIVE_SIZE_SELECTORS:
        elements = soup.select(selector)
        if not elements:
            continue
        logger.info(f"🔍 No size select, trying {selector!r} ({len(elements)} elements)")
        for element in elements:
            text = element_text(element) or element.get("data-size", "")
            variant = parse_option(text)
            if variant is not None:
                variants.append(variant)
        if variants:
            break
    return variants


class VariantExtractor:
    """Fetches a detail page with the authenticated session and parses its sizes."""

    def __init__(self, authenticator: SessionAuthenticator):
        self.authenticator = authenticator

    def extract(self, detail_url: str) -> List[RemoteVariant]:
        logger.info(f"📥 Fetching product page {detail_url}")
        try:
            response = self.authenticator.http.get(
                detail_url,
                headers={"Accept": HTML_ACCEPT, **self.authenticator.session.cookie_header()},
                timeout=self.authenticator.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"❌ Could not fetch {detail_url}: {e}")
            return []

        variants = extract_variants_from_html(response.text or "")
        if variants:
            summary = ", ".join(f"{v.size}: {v.stock}" for v in variants)
            logger.info(f"✅ {len(variants)} variants ({summary})")
        else:
            logger.warning(f"⚠️ No size information on {detail_url}")
        return variants
