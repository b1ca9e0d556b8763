"""
core/keywords.py -- Search keywords for inventory entries.

Keywords drive both the feed query and the match score, so order matters:
structured identifiers first (vendor, product, asset name), then a handful of
significant description words, then declared technologies.

The extractor accepts any object with the inventory attributes (vendor,
product_name, name, description, technologies). Missing attributes are
treated as empty so partially filled records never raise.
"""

import re
from typing import Any, Iterable, Optional

MAX_DESCRIPTION_KEYWORDS = 5
MIN_DESCRIPTION_WORD = 4

_WS_RE = re.compile(r"\s+")
_WORD_RE = re.compile(r"[A-Za-z][A-Za-z0-9+#.\-]*")
_NON_WORD_RE = re.compile(r"[^\w\s]")

# Words that show up in asset descriptions but never identify a product.
STOP_WORDS = frozenset(
    {
        "about",
        "also",
        "application",
        "based",
        "being",
        "between",
        "company",
        "data",
        "default",
        "from",
        "have",
        "into",
        "internal",
        "main",
        "more",
        "other",
        "over",
        "primary",
        "production",
        "server",
        "service",
        "services",
        "some",
        "such",
        "system",
        "than",
        "that",
        "their",
        "them",
        "then",
        "there",
        "these",
        "they",
        "this",
        "used",
        "uses",
        "using",
        "very",
        "were",
        "what",
        "when",
        "which",
        "while",
        "will",
        "with",
        "within",
        "your",
    }
)


def _normalize(value: Optional[str]) -> str:
    if not value:
        return ""
    return _WS_RE.sub(" ", str(value)).strip().lower()


def description_keywords(description: Optional[str], limit: int = MAX_DESCRIPTION_KEYWORDS) -> list[str]:
    """Pick up to `limit` significant words from free text, in order of appearance."""
    words: list[str] = []
    for match in _WORD_RE.finditer(description or ""):
        word = match.group(0).strip(".-").lower()
        if len(word) < MIN_DESCRIPTION_WORD or word in STOP_WORDS or word in words:
            continue
        words.append(word)
        if len(words) >= limit:
            break
    return words


def _dedupe(tokens: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for token in tokens:
        if token and token not in seen:
            seen.add(token)
            result.append(token)
    return result


def extract_keywords_from_asset(asset: Any) -> list[str]:
    """Return lowercase, deduplicated search tokens for an asset.

    Priority order: vendor, product name, asset name, description words,
    technologies. Each structured field is kept as a whole phrase
    ("tomcat server"), never split into fragments.
    """
    tokens = [
        _normalize(getattr(asset, "vendor", None)),
        _normalize(getattr(asset, "product_name", None)),
        _normalize(getattr(asset, "name", None)),
    ]
    tokens.extend(description_keywords(getattr(asset, "description", None)))
    for tech in getattr(asset, "technologies", None) or []:
        if isinstance(tech, str):
            tokens.append(_normalize(tech))
    return _dedupe(tokens)


def primary_query(asset: Any, keywords: list[str]) -> Optional[str]:
    """The single feed query for an asset: "vendor product" when both exist."""
    vendor = _normalize(getattr(asset, "vendor", None))
    product = _normalize(getattr(asset, "product_name", None))
    if vendor and product:
        return f"{vendor} {product}"
    return keywords[0] if keywords else None


def extract_vendor_keyword(vendor_name: Optional[str]) -> str:
    """Vendor names are searched as-is minus punctuation ("AT&T, Inc." -> "att inc")."""
    return _normalize(_NON_WORD_RE.sub("", vendor_name or ""))
