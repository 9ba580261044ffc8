"""
Seller catalog classification.

Flags likely bundles, suggests a category from the words of existing product
names and marks what is already in the catalog.
"""

import re
from collections import Counter
from typing import Any, Dict, List, Optional

BUNDLE_KEYWORDS = ("bundle", "bundled")
BUNDLE_SEPARATOR = " + "
UNCATEGORIZED = "Uncategorized"

_NON_WORD = re.compile(r"[^a-z0-9\s]")


def _words(text: str) -> List[str]:
    return [w for w in _NON_WORD.sub("", (text or "").lower()).split() if len(w) >= 3]


def is_likely_bundle(title: str, price: Optional[float], reviews_count: Optional[int]) -> bool:
    lower = (title or "").lower()
    if any(kw in lower for kw in BUNDLE_KEYWORDS):
        return True
    if BUNDLE_SEPARATOR in (title or ""):
        return True
    # No price and no reviews: usually a multi-pack listing with no sales
    return not price and not reviews_count


def build_category_map(existing_products: List[Dict[str, Any]]) -> Dict[str, str]:
    """Map each name word to the first category it was seen under."""
    keyword_map: Dict[str, str] = {}
    for product in existing_products:
        category = product.get("category")
        if not category or category == UNCATEGORIZED:
            continue
        for word in _words(product.get("product_name") or ""):
            keyword_map.setdefault(word, category)
    return keyword_map


def suggest_category(title: str, keyword_map: Dict[str, str]) -> Optional[str]:
    votes = Counter(keyword_map[w] for w in _words(title) if w in keyword_map)
    if not votes:
        return None
    return votes.most_common(1)[0][0]


def classify_products(
    raw_products: List[Dict[str, Any]],
    existing_products: List[Dict[str, Any]]
) -> Dict[str, Any]:
    """
    Classify pulled products against the catalog.

    Returns products (annotated), categories, summary counts, the ASINs to
    pre-select (new, non-bundle) and pre-filled category suggestions.
    """
    existing = {p["asin"]: p for p in existing_products if p.get("asin")}
    keyword_map = build_category_map(existing_products)
    categories = sorted({p["category"] for p in existing_products if p.get("category")})

    products = []
    for raw in raw_products:
        known = existing.get(raw["asin"])
        reviews_count = raw.get("reviews_count")
        suggested = (known or {}).get("category") or suggest_category(raw.get("title") or "", keyword_map)
        products.append({
            **raw,
            "is_bundle": is_likely_bundle(raw.get("title") or "", raw.get("price"), reviews_count),
            "has_sales": bool(raw.get("price") and reviews_count and reviews_count > 0),
            "exists_in_system": known is not None,
            "suggested_category": suggested,
        })

    bundles = [p for p in products if p["is_bundle"]]
    non_bundles = [p for p in products if not p["is_bundle"]]
    new_products = [p for p in non_bundles if not p["exists_in_system"]]

    return {
        "products": products,
        "categories": categories,
        "summary": {
            "total": len(products),
            "bundles": len(bundles),
            "bundles_with_sales": sum(1 for p in bundles if p["has_sales"]),
            "non_bundles": len(non_bundles),
            "already_in_system": len(non_bundles) - len(new_products),
            "new": len(new_products),
        },
        "auto_selected_asins": [p["asin"] for p in new_products],
        "auto_categories": {
            p["asin"]: p["suggested_category"] for p in products if p["suggested_category"]
        },
    }
