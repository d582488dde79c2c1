"""
Kimland Stock Sync - HTML Candidate Scorer
Pure functions that find and rank product listings on a Kimland page.

Nothing here does I/O: every function takes parsed HTML and returns
scores, so the heuristics can be tested against saved pages.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterator, List, Optional

from bs4 import BeautifulSoup, Tag
from soupsieve import SelectorSyntaxError

logger = logging.getLogger(__name__)

# =============================================================================
# SELECTORS (ordered by priority: first listed wins ties)
# =============================================================================

PRODUCT_SELECTORS = [
    # Kimland listing classes
    ".product-item.col-6",
    ".product-item.col-4",
    ".product-item.col-md-6",
    ".product-item",
    ".product-card",
    ".item.col-6",
    ".item.col-4",
    ".product.col-6",
    ".product.col-4",
    # Bootstrap grids
    ".row .col-6",
    ".row .col-4",
    ".row .col-md-6",
    ".row .col-lg-4",
    ".products .col-6",
    ".products .col-4",
    ".container .col-6",
    ".container .col-4",
    # Partial class names
    '[class*="col-6"][class*="product"]',
    '[class*="col-4"][class*="product"]',
    '[class*="product"][class*="col"]',
    '[class*="item"][class*="col"]',
    # Clickable containers
    'div[onclick*="product"]',
    'div[onclick*="item"]',
    'div[onclick*="detail"]',
    'a[href*="product"]',
    'a[href*="item"]',
    'a[href*="detail"]',
    # Cards and articles
    ".card.product",
    '.card[class*="product"]',
    ".item-card",
    "article.product",
    'article[class*="product"]',
    # Last resort
    ".product",
    ".item",
    '[class*="product"]',
    '[class*="item"]',
    ".card",
    "article",
]

LINK_SELECTORS = [
    'a[href*="product"]',
    'a[href*="item"]',
    'a[href*="article"]',
    'a[href*="detail"]',
    "a[onclick]",
    "a[href]",
]

NAME_SELECTORS = [
    ".product-item-name a",
    ".product-name a",
    ".item-name a",
    ".title a",
    "a[title]",
    "h1 a", "h2 a", "h3 a", "h4 a",
    ".product-item-name",
    ".product-name",
    ".name",
    ".title",
    "a",
]

IMAGE_SELECTORS = [
    ".product-item-img img",
    ".product-img img",
    ".item-img img",
    "img",
]

PRICE_SELECTOR = '.price, [class*="price"], .cost, [class*="cost"], [class*="prix"]'
OLD_PRICE_SELECTOR = '.old-price, [class*="old"], .was-price, del'

TITLE_SELECTOR = '[class*="name"], [class*="title"], h1, h2, h3, h4, h5, h6'

# Placeholder listings the site shows for any query
GENERIC_PRODUCT_NAMES = frozenset({
    "produit vip",
    "vip",
    "article vip",
    "produit",
    "product",
    "article",
    "produit test",
    "test",
    "nouveau produit",
    "new product",
    "sans nom",
    "placeholder",
})
GENERIC_NAME_PATTERN = re.compile(r"\bvip\b|\bplaceholder\b|produit\s+g[ée]n[ée]rique", re.IGNORECASE)

CHROME_CLASS_MARKERS = ("filter", "sidebar", "menu")
CHROME_HTML_MARKERS = (
    'input type="checkbox"',
    'name="pointure"',
    'name="categori',
    "filter",
    "sidebar",
)

CANDIDATE_THRESHOLD = 3
PLACEHOLDER_PENALTY = 10

ERROR_MARKERS = ("n'existe pas", "recherche n'existe", "Erreur 404", "Page non trouvée")
NO_RESULTS_MARKERS = ("aucun résultat", "produit introuvable", "aucun produit", "recherche vide")


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class ScoreBreakdown:
    """Why a fragment scored what it did."""
    has_link: int = 0
    has_image: int = 0
    has_title: int = 0
    has_price: int = 0
    sku_match: int = 0
    name_match: int = 0
    penalty: int = 0

    @property
    def total(self) -> int:
        return (
            self.has_link + self.has_image + self.has_title + self.has_price
            + self.sku_match + self.name_match - self.penalty
        )


@dataclass
class CandidateFragment:
    """A DOM subtree hypothesised to be one product listing."""
    fragment: Tag
    selector: str
    breakdown: ScoreBreakdown = field(default_factory=ScoreBreakdown)
    is_placeholder: bool = False

    @property
    def score(self) -> int:
        return self.breakdown.total


@dataclass
class PageAnalysis:
    contains_sku_in_text: bool
    has_error_message: bool
    has_no_results_message: bool


# =============================================================================
# HELPERS
# =============================================================================

def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def class_string(element: Tag) -> str:
    classes = element.get("class") or []
    if isinstance(classes, str):
        return classes
    return " ".join(classes)


def element_text(element: Tag) -> str:
    return " ".join(element.get_text(" ", strip=True).split())


def normalize_name(name: str) -> str:
    return " ".join((name or "").lower().split())


def first_match(element: Tag, selectors: List[str], accept=None) -> Optional[Tag]:
    """Return the first element matched by the first selector that yields one."""
    for selector in selectors:
        for found in element.select(selector):
            if accept is None or accept(found):
                return found
    return None


def extract_name(fragment: Tag) -> str:
    found = first_match(fragment, NAME_SELECTORS, accept=lambda el: bool(element_text(el)))
    return element_text(found) if found else ""


# =============================================================================
# FILTERS
# =============================================================================

def is_layout_chrome(element: Tag) -> bool:
    """Filters, sidebars, menus and form controls are never products."""
    if element.name in ("label", "input"):
        return True

    class_name = class_string(element).lower()
    element_id = (element.get("id") or "").lower()
    if any(marker in class_name or marker in element_id for marker in CHROME_CLASS_MARKERS):
        return True

    inner_html = element.decode_contents()
    return any(marker in inner_html for marker in CHROME_HTML_MARKERS)


def is_generic_name(name: str) -> bool:
    normalized = normalize_name(name)
    if not normalized:
        return False
    return normalized in GENERIC_PRODUCT_NAMES or bool(GENERIC_NAME_PATTERN.search(normalized))


def is_placeholder_listing(fragment: Tag) -> bool:
    return is_generic_name(extract_name(fragment))


# =============================================================================
# SCORING
# =============================================================================

def score_fragment(fragment: Tag, identifier: str, display_name: Optional[str] = None) -> ScoreBreakdown:
    """
    Score one listing fragment.

    One point each for a link, an image, a title-ish element and a
    price-ish element; 3 for the identifier appearing in its text; up to
    3 for words of the display name (3+ chars) found in its text.
    """
    breakdown = ScoreBreakdown(
        has_link=1 if fragment.select_one("a[href]") else 0,
        has_image=1 if fragment.select_one("img") else 0,
        has_title=1 if fragment.select_one(TITLE_SELECTOR) else 0,
        has_price=1 if fragment.select_one('[class*="price"], [class*="cost"], [class*="prix"]') else 0,
    )

    text = element_text(fragment).lower()
    if identifier and identifier.lower() in text:
        breakdown.sku_match = 3

    if display_name:
        words = [w for w in display_name.lower().split() if len(w) >= 3]
        matching = sum(1 for w in words if w in text)
        breakdown.name_match = min(3, matching)

    return breakdown


def iter_candidates(
    soup: BeautifulSoup,
    identifier: str,
    display_name: Optional[str] = None,
    include_placeholders: bool = False,
    selectors: List[str] = PRODUCT_SELECTORS,
) -> Iterator[CandidateFragment]:
    """
    Walk the selector list in order and yield every fragment scoring at
    least CANDIDATE_THRESHOLD. Each element is yielded once, under the
    first selector that reached it.

    Placeholder listings are skipped unless `include_placeholders`, in
    which case they come back with PLACEHOLDER_PENALTY applied.
    """
    seen = set()
    for selector in selectors:
        try:
            elements = soup.select(selector)
        except SelectorSyntaxError as e:
            logger.warning(f"⚠️ Bad selector {selector!r}: {e}")
            continue

        logger.debug(f"Selector {selector!r}: {len(elements)} elements")
        for element in elements:
            if id(element) in seen:
                continue
            seen.add(id(element))

            if is_layout_chrome(element):
                continue

            placeholder = is_placeholder_listing(element)
            if placeholder and not include_placeholders:
                continue

            breakdown = score_fragment(element, identifier, display_name)
            if breakdown.total < CANDIDATE_THRESHOLD:
                continue
            if placeholder:
                breakdown.penalty = PLACEHOLDER_PENALTY

            yield CandidateFragment(
                fragment=element,
                selector=selector,
                breakdown=breakdown,
                is_placeholder=placeholder,
            )


def find_candidates(
    soup: BeautifulSoup,
    identifier: str,
    display_name: Optional[str] = None,
) -> List[CandidateFragment]:
    """Candidates, falling back to penalised placeholders if nothing else qualifies."""
    candidates = list(iter_candidates(soup, identifier, display_name))
    if not candidates:
        candidates = list(iter_candidates(soup, identifier, display_name, include_placeholders=True))
        if candidates:
            logger.info(f"🔁 Only placeholder listings on page for {identifier} ({len(candidates)})")
    return candidates


def best_candidate(candidates: List[CandidateFragment]) -> Optional[CandidateFragment]:
    """Highest score wins; ties go to the earliest (highest-priority selector)."""
    if not candidates:
        return None
    return max(candidates, key=lambda c: c.score)


# =============================================================================
# PAGE-LEVEL CHECKS
# =============================================================================

def check_error_indicators(page_text: str, identifier: str) -> PageAnalysis:
    return PageAnalysis(
        contains_sku_in_text=identifier in page_text,
        has_error_message=any(marker in page_text for marker in ERROR_MARKERS),
        has_no_results_message=any(marker in page_text.lower() for marker in NO_RESULTS_MARKERS),
    )


def page_diagnostics(soup: BeautifulSoup) -> dict:
    """Element counts by tag and class, logged when a search finds nothing."""
    elements = soup.select('[class*="product"], [class*="item"], .card, article, [class*="col"]')
    by_tag = Counter(el.name for el in elements)
    top_classes = [c for c in (class_string(el) for el in elements) if c][:10]
    return {
        "total_elements": len(elements),
        "elements_by_tag": dict(by_tag),
        "top_classes": top_classes,
        "rows": len(soup.select(".row")),
        "cols": len(soup.select('[class*="col-"]')),
        "products": len(soup.select('[class*="product"]')),
        "items": len(soup.select('[class*="item"]')),
    }
