"""
Kimland Stock Sync - Product Locator
Finds the Kimland listing for a reference and validates it.

Search order per query: known search URLs (public first, then the client
area), generic catalogue pages, then the same search URLs through an
anonymous client. The winning listing must share a token with the
reference or it is rejected and an alternate query is tried.
"""

import logging
import re
import time
from typing import Callable, List, Optional
from urllib.parse import parse_qs, quote, urljoin, urlparse

import requests

from .exceptions import AuthFailure, ParseFailure
from .html_scorer import (
    IMAGE_SELECTORS,
    LINK_SELECTORS,
    OLD_PRICE_SELECTOR,
    PRICE_SELECTOR,
    best_candidate,
    check_error_indicators,
    element_text,
    extract_name,
    find_candidates,
    first_match,
    is_generic_name,
    page_diagnostics,
    parse_html,
)
from .models import RemoteProduct
from .session import DEFAULT_HEADERS, HTML_ACCEPT, INDEX_PATH, SessionAuthenticator
from .variants import VariantExtractor

logger = logging.getLogger(__name__)

# {q} is the url-encoded query. Public storefront first: the client area
# rarely lists products.
SEARCH_PATHS = [
    "/index.php?page=products&pages=0&keyword={q}",
    "/index.php?page=products&keyword={q}",
    "/products.php?search={q}",
    "/search.php?keyword={q}",
    "/catalogue.php?search={q}",
    "/index.php?search={q}",
    "/app/client/index.php?page=products&keyword={q}",
    "/app/client/products.php?search={q}",
    "/app/client/search.php?keyword={q}",
]

PUBLIC_SEARCH_PATHS = [
    "/index.php?page=products&keyword={q}",
    "/index.php?page=products&pages=0&keyword={q}",
    "/products.php?search={q}",
    "/search.php?q={q}",
    "/index.php?search={q}",
    "/catalogue.php?keyword={q}",
]

FALLBACK_PATHS = [
    "/app/client/index.php?page=products",
    "/app/client/products.php",
    "/index.php?page=products",
    "/products.php",
    "/catalogue.php",
    "/index.php",
]

PRODUCT_STRUCTURE_MARKERS = (
    "product-item",
    "product-name",
    'class="product',
    "item-name",
    "card-product",
    "col-6",
    "row",
)
PUBLIC_STRUCTURE_MARKERS = ("product-item", "product-card", "item-card", "col-6")
VENDOR_MARKERS = ("KIMLAND", "kimland", "product", "catalogue")
PAGE_ERROR_MARKERS = ("Erreur 404", "Page non trouvée", "Not Found")

MIN_CONTENT_LENGTH = 2000
LARGE_PAGE_LENGTH = 5000
FALLBACK_MIN_LENGTH = 1000
PUBLIC_MIN_LENGTH = 3000

TOKEN_SPLIT = re.compile(r"[-_\s]+")
MIN_TOKEN_LENGTH = 4

ONCLICK_URL = re.compile(r"""['"]([^'"]+\.php[^'"]*|/[^'"]+)['"]""")


# =============================================================================
# PURE HELPERS
# =============================================================================

def has_product_structure(html: str) -> bool:
    return any(marker in html for marker in PRODUCT_STRUCTURE_MARKERS) or (
        "product" in html and "price" in html
    )


def score_search_page(html: str, identifier: str) -> int:
    """0-7: identifier present (+3), listing structure (+2), long page (+1), not an error page (+1)."""
    score = 0
    if identifier and identifier.lower() in html.lower():
        score += 3
    if has_product_structure(html):
        score += 2
    if len(html) > MIN_CONTENT_LENGTH:
        score += 1
    if not any(marker in html for marker in PAGE_ERROR_MARKERS):
        score += 1
    return score


def accept_search_page(html: str, identifier: str) -> bool:
    score = score_search_page(html, identifier)
    return score >= 3 or (score >= 2 and len(html) > LARGE_PAGE_LENGTH)


def accept_fallback_page(html: str) -> bool:
    return len(html) > FALLBACK_MIN_LENGTH and any(marker in html for marker in VENDOR_MARKERS)


def accept_public_page(html: str, identifier: str) -> bool:
    structure = any(marker in html for marker in PUBLIC_STRUCTURE_MARKERS) or (
        "product" in html and "price" in html
    )
    contains_identifier = bool(identifier) and identifier.lower() in html.lower()
    return (structure or contains_identifier) and len(html) > PUBLIC_MIN_LENGTH and "Erreur 404" not in html


def tokens(text: str) -> List[str]:
    return [t for t in TOKEN_SPLIT.split((text or "").lower()) if t]


def name_matches_identifier(name: str, identifier: str) -> bool:
    """
    True when the listing name plausibly belongs to the reference: the full
    reference appears in the name, or a token of 4+ chars from one is a
    substring of a token from the other.
    """
    if not name or not identifier:
        return False
    if identifier.lower() in name.lower():
        return True

    id_tokens = [t for t in tokens(identifier) if len(t) >= MIN_TOKEN_LENGTH]
    name_tokens = [t for t in tokens(name) if len(t) >= MIN_TOKEN_LENGTH]
    return any(a in b or b in a for a in id_tokens for b in name_tokens)


def alternate_queries(identifier: str, max_alternates: int = 3) -> List[str]:
    """The reference itself, then up to `max_alternates` reformulations."""
    identifier = identifier.strip()
    candidates = [
        identifier,
        identifier.split("-", 1)[0],
        identifier.replace("-", " "),
        re.sub(r"[-_\s]", "", identifier),
    ]
    queries: List[str] = []
    for query in candidates:
        query = query.strip()
        if query and query not in queries:
            queries.append(query)
    return queries[: max_alternates + 1]


def product_id_from_url(url: str) -> str:
    parsed = urlparse(url)
    params = parse_qs(parsed.query)
    for key in ("id", "product_id", "product", "id_product"):
        if params.get(key):
            return params[key][0]
    segments = [s for s in parsed.path.split("/") if s]
    if segments:
        return re.sub(r"\.(php|html?)$", "", segments[-1])
    return "unknown"


def default_public_http() -> requests.Session:
    http = requests.Session()
    http.headers.update(DEFAULT_HEADERS)
    return http


# =============================================================================
# LOCATOR
# =============================================================================

class ProductLocator:
    """
    Searches Kimland for a reference and returns the validated product,
    variants included, or None.
    """

    def __init__(
        self,
        authenticator: SessionAuthenticator,
        extractor: Optional[VariantExtractor] = None,
        public_http_factory: Callable[[], requests.Session] = default_public_http,
        public_timeout: float = 30.0,
        retry_delay: float = 1.0,
        max_alternate_queries: int = 3,
    ):
        self.authenticator = authenticator
        self.extractor = extractor or VariantExtractor(authenticator)
        self.public_http_factory = public_http_factory
        self.public_timeout = public_timeout
        self.retry_delay = retry_delay
        self.max_alternate_queries = max_alternate_queries

    def locate(self, identifier: str, display_name: Optional[str] = None) -> Optional[RemoteProduct]:
        if not self.authenticator.is_logged_in():
            raise AuthFailure("Not authenticated on Kimland")

        queries = alternate_queries(identifier, self.max_alternate_queries)
        for attempt, query in enumerate(queries):
            if attempt:
                logger.info(
                    f"🔁 Retrying {identifier} as {query!r} ({attempt}/{len(queries) - 1})",
                    extra={"sku": identifier},
                )
                time.sleep(self.retry_delay)

            html = self._fetch_search_page(query)
            if html is None:
                logger.error(f"❌ No working Kimland search URL for {query}", extra={"sku": identifier})
                return None

            try:
                listing = self._pick_listing(html, query, display_name)
            except ParseFailure as e:
                logger.warning(f"⚠️ {e}", extra={"sku": identifier})
                return None
            if listing is None:
                return None

            name = listing["name"]
            if is_generic_name(name):
                logger.warning(f"🚫 Placeholder listing {name!r} rejected for {identifier}", extra={"sku": identifier})
                continue
            if not name_matches_identifier(name, identifier):
                logger.warning(f"🚫 Listing {name!r} does not match {identifier}", extra={"sku": identifier})
                continue

            variants = self.extractor.extract(listing["url"])
            product = RemoteProduct(
                id=product_id_from_url(listing["url"]),
                name=name,
                url=listing["url"],
                price=listing["price"],
                old_price=listing["old_price"],
                image_url=listing["image_url"],
                variants=variants,
            )
            logger.info(
                f"✅ Found {product.name} ({len(variants)} sizes, {product.total_stock} in stock)",
                extra={"sku": identifier},
            )
            return product

        logger.warning(f"❌ No valid Kimland match for {identifier} after {len(queries)} queries", extra={"sku": identifier})
        return None

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------

    def _get(self, path: str) -> Optional[str]:
        try:
            response = self.authenticator.http.get(
                self.authenticator.url(path),
                headers={
                    "Accept": HTML_ACCEPT,
                    "Referer": self.authenticator.url(INDEX_PATH),
                    **self.authenticator.session.cookie_header(),
                },
                timeout=self.authenticator.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"⚠️ {path} failed: {e}")
            return None
        logger.debug(f"{path}: status={response.status_code} length={len(response.text or '')}")
        return response.text or ""

    def _fetch_search_page(self, query: str) -> Optional[str]:
        q = quote(query, safe="")

        for template in SEARCH_PATHS:
            path = template.format(q=q)
            html = self._get(path)
            if html is not None and accept_search_page(html, query):
                logger.info(f"📡 Search page accepted: {path} (score {score_search_page(html, query)})")
                return html

        logger.info(f"🔄 Trying generic catalogue pages for {query}")
        for path in FALLBACK_PATHS:
            html = self._get(path)
            if html is not None and accept_fallback_page(html):
                logger.info(f"📡 Fallback page accepted: {path}")
                return html

        return self._public_search(q, query)

    def _public_search(self, q: str, query: str) -> Optional[str]:
        logger.info(f"🌐 Trying anonymous search for {query}")
        http = self.public_http_factory()
        try:
            for template in PUBLIC_SEARCH_PATHS:
                path = template.format(q=q)
                try:
                    response = http.get(
                        self.authenticator.url(path),
                        headers={"Accept": HTML_ACCEPT},
                        timeout=self.public_timeout,
                    )
                except requests.RequestException as e:
                    logger.warning(f"⚠️ Public {path} failed: {e}")
                    continue
                html = response.text or ""
                if accept_public_page(html, query):
                    logger.info(f"📡 Public page accepted: {path}")
                    return html
        finally:
            http.close()
        return None

    # -------------------------------------------------------------------------
    # Parsing
    # -------------------------------------------------------------------------

    def _pick_listing(self, html: str, query: str, display_name: Optional[str]) -> Optional[dict]:
        soup = parse_html(html)
        candidates = find_candidates(soup, query, display_name)
        best = best_candidate(candidates)

        if best is None:
            analysis = check_error_indicators(soup.get_text(" "), query)
            logger.info(f"🔍 No candidate for {query}: {page_diagnostics(soup)}")
            if analysis.has_error_message or analysis.has_no_results_message:
                logger.info(f"❌ Kimland reports no product for {query}")
            elif analysis.contains_sku_in_text:
                logger.info(f"🔍 {query} is in the page text but no listing structure matched")
            return None

        logger.info(
            f"🏆 Best candidate for {query}: score={best.score} selector={best.selector!r} "
            f"({len(candidates)} candidates)"
        )
        return self._extract_listing(best.fragment)

    def _extract_listing(self, fragment) -> dict:
        link = fragment if fragment.name == "a" and fragment.get("href") else first_match(
            fragment, LINK_SELECTORS, accept=lambda el: bool(el.get("href") or el.get("onclick"))
        )
        name = extract_name(fragment) or (element_text(fragment) if fragment.name == "a" else "")
        if link is None or not name:
            raise ParseFailure(
                "Could not read the product listing",
                reason=f"link={'yes' if link is not None else 'no'} name={'yes' if name else 'no'}",
            )

        href = link.get("href") or ""
        if not href or href.startswith("javascript"):
            match = ONCLICK_URL.search(link.get("onclick") or "")
            href = match.group(1) if match else href
        base = self.authenticator.base_url + "/"

        image = first_match(fragment, IMAGE_SELECTORS, accept=lambda el: bool(el.get("src")))
        price = fragment.select_one(PRICE_SELECTOR)
        old_price = fragment.select_one(OLD_PRICE_SELECTOR)

        return {
            "name": name,
            "url": urljoin(base, href),
            "image_url": urljoin(base, image["src"]) if image is not None else "",
            "price": element_text(price) if price is not None else "",
            "old_price": element_text(old_price) if old_price is not None else None,
        }
