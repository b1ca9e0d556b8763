"""
matcher.py -- Scores candidate CVEs against an asset or a vendor.

Pure functions: no I/O, no store access. The service gathers candidates
(feed search + cache search) and the KEV set; this module decides which of
them are real matches and how strong they are.

Asset score (0-100), weights from ScoringPolicy:
  keyword_base + keyword_step per extra matched keyword, capped at keyword_cap
  + cpe_exact_bonus   when a vulnerable CPE criterion equals the asset CPE
  + cpe_product_bonus otherwise, when vendor and product agree
  + version_bonus     when the asset version appears as a whole token in the
                      affected ranges, CPE criteria or description

Keywords match on word boundaries. The default min_match_score sits above
keyword_base, so one keyword hit alone never makes a suggestion.
"""

import logging
import re
from typing import Iterable, Optional

from .config import ScoringPolicy
from .cpe import cpe_vendor_product
from .models import CachedCve, MatchCandidate

logger = logging.getLogger("threatwatch.matcher")


def _searchable_text(cve: CachedCve) -> str:
    parts = [cve.description or ""]
    for criteria in cve.cpe_matches:
        pair = cpe_vendor_product(criteria)
        if pair:
            parts.append(" ".join(pair).replace("_", " "))
    return " ".join(parts).lower()


def _word_pattern(phrase: str) -> re.Pattern:
    # Alphanumeric neighbours break a hit: "go" must not match "google".
    body = r"\s+".join(re.escape(w) for w in phrase.lower().split())
    return re.compile(r"(?<![a-z0-9])" + body + r"(?![a-z0-9])")


def matched_keywords(cve: CachedCve, keywords: Iterable[str]) -> list[str]:
    """Keywords that occur as whole words in the CVE's description or CPE vendor/product text."""
    text = _searchable_text(cve)
    return [k for k in keywords if k and k.strip() and _word_pattern(k).search(text)]


def matches_all_words(cve: CachedCve, phrase: str) -> bool:
    """True when every word of `phrase` occurs somewhere in the CVE text, in any order."""
    words = phrase.split()
    text = _searchable_text(cve)
    return bool(words) and all(_word_pattern(w).search(text) for w in words)


def _version_hit(cve: CachedCve, version: Optional[str]) -> bool:
    if not version or not version.strip():
        return False
    pattern = re.compile(r"(?<![\w.])" + re.escape(version.strip().lower()) + r"(?![\w]|\.\d)")
    haystack = " ".join([*cve.affected_ranges, *cve.cpe_matches, cve.description or ""]).lower()
    return bool(pattern.search(haystack))


def _cpe_bonus(cve: CachedCve, cpe: Optional[str], policy: ScoringPolicy) -> tuple[int, str]:
    if not cpe:
        return 0, ""
    wanted = cpe.lower()
    if any(c.lower() == wanted for c in cve.cpe_matches):
        return policy.cpe_exact_bonus, "exact CPE match"
    pair = cpe_vendor_product(wanted)
    if pair and any(cpe_vendor_product(c) == pair for c in cve.cpe_matches):
        return policy.cpe_product_bonus, "CPE vendor/product match"
    return 0, ""


def _clamp(score: int) -> int:
    return max(0, min(100, score))


def score_asset_candidate(
    cve: CachedCve,
    keywords: list[str],
    cpe: Optional[str],
    version: Optional[str],
    policy: ScoringPolicy,
    is_kev: bool = False,
    product: Optional[str] = None,
) -> Optional[MatchCandidate]:
    """Score one cached CVE for one asset. Returns None when it is not a match.

    When the asset names a product, the CVE must mention that product or carry
    a CPE for it. A hit on the vendor name alone is not a match.
    """
    hits = matched_keywords(cve, keywords)
    cpe_points, cpe_reason = _cpe_bonus(cve, cpe, policy)
    if not hits and not cpe_points:
        return None
    if product and product.strip() and not cpe_points and not matched_keywords(cve, [product]):
        return None

    score = 0
    reasons: list[str] = []
    if hits:
        score = min(policy.keyword_cap, policy.keyword_base + policy.keyword_step * (len(hits) - 1))
        reasons.append("keyword match: " + ", ".join(hits))
    if cpe_points:
        score += cpe_points
        reasons.append(cpe_reason)
    if _version_hit(cve, version):
        score += policy.version_bonus
        reasons.append(f"version {version.strip()} in affected range")

    score = _clamp(score)
    if score < policy.min_match_score:
        return None
    return MatchCandidate(
        cve_id=cve.cve_id,
        match_score=score,
        match_reason="; ".join(reasons),
        is_kev=is_kev,
        cvss_score=cve.cvss_score,
        description=cve.description,
    )


def score_vendor_candidate(
    cve: CachedCve,
    keyword: str,
    policy: ScoringPolicy,
    is_kev: bool = False,
) -> Optional[MatchCandidate]:
    """Vendor matches need every word of the vendor keyword somewhere in the CVE text.

    The score is flat (vendor_base) because there is no product or version
    to narrow on.
    """
    if not keyword or not matches_all_words(cve, keyword):
        return None
    return MatchCandidate(
        cve_id=cve.cve_id,
        match_score=_clamp(policy.vendor_base),
        match_reason=f"vendor keyword match: {keyword}",
        is_kev=is_kev,
        cvss_score=cve.cvss_score,
        description=cve.description,
    )


def rank_candidates(candidates: Iterable[MatchCandidate]) -> list[MatchCandidate]:
    """KEV first, then score, then CVSS (unknown last), then CVE id for stability."""
    return sorted(
        candidates,
        key=lambda c: (
            not c.is_kev,
            -c.match_score,
            -(c.cvss_score if c.cvss_score is not None else -1.0),
            c.cve_id,
        ),
    )
