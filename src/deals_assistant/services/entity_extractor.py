"""Regex/keyword extraction of structured shopping entities from free text."""

import re
from typing import Dict, Optional, Tuple

from deals_assistant.models.classification import Entities

PRICE_CEILING = re.compile(
    r"\b(?:under|below|less than|max|up to)\s*\$?(\d+(?:,\d{3})*(?:\.\d{2})?)", re.I
)
DISCOUNT_FLOOR = re.compile(r"\b(\d+)\s*%\s*off\b", re.I)

# Case-insensitive substring match, first hit wins.
KNOWN_STORES: Tuple[str, ...] = (
    "amazon",
    "walmart",
    "target",
    "best buy",
    "costco",
    "ebay",
    "newegg",
    "home depot",
    "lowes",
    "macys",
    "nordstrom",
    "kohls",
    "doordash",
    "ubereats",
    "grubhub",
    "instacart",
    "gamestop",
)

# Insertion order matters: "gaming" resolves to electronics before "game" can match toys.
CATEGORY_KEYWORDS: Dict[str, str] = {
    "laptop": "electronics",
    "computer": "electronics",
    "phone": "electronics",
    "tv": "electronics",
    "television": "electronics",
    "headphone": "electronics",
    "tablet": "electronics",
    "camera": "electronics",
    "gaming": "electronics",
    "clothes": "fashion",
    "shoes": "fashion",
    "jacket": "fashion",
    "dress": "fashion",
    "furniture": "home",
    "kitchen": "home",
    "appliance": "home",
    "mattress": "home",
    "makeup": "beauty",
    "skincare": "beauty",
    "perfume": "beauty",
    "toy": "toys",
    "lego": "toys",
    "game": "toys",
    "food": "food",
    "grocery": "food",
    "restaurant": "food",
    "flight": "travel",
    "hotel": "travel",
    "vacation": "travel",
}

FILLER_PATTERNS: Tuple[re.Pattern, ...] = (
    re.compile(r"\b(find|search|show me|get me|looking for)\b", re.I),
    re.compile(r"\b(deals?|coupons?|codes?|offers?)\b", re.I),
    re.compile(r"\b(under|below|less than|max|up to)\s*\$?\d+", re.I),
    re.compile(r"\b(for me|please|thanks?)\b", re.I),
)


def _max_price(query: str) -> Optional[float]:
    match = PRICE_CEILING.search(query)
    if match:
        return float(match.group(1).replace(",", ""))
    return None


def _min_discount(query: str) -> Optional[float]:
    match = DISCOUNT_FLOOR.search(query)
    if match:
        return float(int(match.group(1)))
    return None


def _first_substring(lowered: str, candidates) -> Optional[str]:
    for candidate in candidates:
        if candidate in lowered:
            return candidate
    return None


def clean_query(query: str) -> str:
    """Strip filler phrases so what remains is a usable search term."""
    cleaned = query
    for pattern in FILLER_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    return re.sub(r"\s{2,}", " ", cleaned).strip()


def extract_entities(query: str) -> Entities:
    """Pull price ceiling, discount floor, store, category and a cleaned query out of ``query``."""
    lowered = query.lower()
    keyword = _first_substring(lowered, CATEGORY_KEYWORDS)
    return Entities(
        query=clean_query(query),
        store=_first_substring(lowered, KNOWN_STORES),
        category=CATEGORY_KEYWORDS[keyword] if keyword else None,
        max_price=_max_price(query),
        min_discount=_min_discount(query),
    )
