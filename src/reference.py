"""
Kimland Stock Sync - Reference Extraction
Pulls the supplier reference out of a Shopify product description.
"""

import html
import re
from typing import Optional

TAG_PATTERN = re.compile(r"<[^>]+>")

# Labelled forms first ("Référence: 9902F-1482"), then bare shapes
LABELLED_PATTERNS = [
    re.compile(r"R[ée]f[ée]rence\s*:?\s*([A-Z0-9\-_.]+)", re.IGNORECASE),
    re.compile(r"\bREF\s*[:.]?\s*([A-Z0-9\-_.]+)", re.IGNORECASE),
    re.compile(r"\bCode\s*:?\s*([A-Z0-9\-_.]+)", re.IGNORECASE),
    re.compile(r"\bSKU\s*:?\s*([A-Z0-9\-_.]+)", re.IGNORECASE),
    re.compile(r"\bArt(?:icle)?\s*[:.]?\s*([A-Z0-9\-_.]+)", re.IGNORECASE),
    re.compile(r"\bMod[èe]le\s*:?\s*([A-Z0-9\-_.]+)", re.IGNORECASE),
    re.compile(r"\bModel\s*:?\s*([A-Z0-9\-_.]+)", re.IGNORECASE),
]

SHAPE_PATTERNS = [
    re.compile(r"\b([0-9]{4}[A-Z]?-[0-9A-Z]+)\b"),  # 9902F-1482
    re.compile(r"\b([A-Z]{2}[0-9]{4})\b"),  # EG1758
    re.compile(r"\b([A-Z]+[0-9]+[A-Z]*-?[0-9]*)\b"),  # CD6109-200
]

INVALID_REFERENCES = {"null", "undefined", "none"}


def strip_html(text: str) -> str:
    return " ".join(html.unescape(TAG_PATTERN.sub(" ", text or "")).split())


def is_valid_reference(reference: Optional[str]) -> bool:
    """2-50 chars, at least one letter or digit, not a JS null leak."""
    if not reference:
        return False
    reference = reference.strip()
    if not 2 <= len(reference) <= 50:
        return False
    if reference.lower() in INVALID_REFERENCES:
        return False
    return any(ch.isalnum() for ch in reference)


def normalize_reference(reference: str) -> str:
    return (reference or "").strip().upper()


def extract_reference(description_html: Optional[str]) -> Optional[str]:
    """
    Find the supplier reference in an HTML description.

    Returns the normalised reference, or None when nothing plausible
    is found.
    """
    text = strip_html(description_html or "")
    if not text:
        return None

    for pattern in LABELLED_PATTERNS:
        match = pattern.search(text)
        if match:
            candidate = match.group(1).strip(".-_")
            if is_valid_reference(candidate) and any(ch.isdigit() for ch in candidate):
                return normalize_reference(candidate)

    for pattern in SHAPE_PATTERNS:
        match = pattern.search(text)
        if match and is_valid_reference(match.group(1)):
            return normalize_reference(match.group(1))

    return None
