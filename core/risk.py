"""
risk.py -- Vendor risk score and vulnerability severity buckets.

A vendor starts at 100 (no known risk) and loses points for every matched
CVE and every known breach. Penalties are never negative (RiskPolicy rejects
them), so adding a finding can only lower the score or leave it unchanged.
"""

from typing import Iterable, Optional

from .config import RiskPolicy

SEVERITY_CRITICAL = "Critical"
SEVERITY_HIGH = "High"
SEVERITY_MEDIUM = "Medium"
SEVERITY_LOW = "Low"


def cve_penalty(cvss_score: Optional[float], policy: RiskPolicy) -> int:
    if cvss_score is None:
        return policy.cve_low_penalty
    if cvss_score > policy.cve_critical_threshold:
        return policy.cve_critical_penalty
    if cvss_score > policy.cve_high_threshold:
        return policy.cve_high_penalty
    if cvss_score > policy.cve_medium_threshold:
        return policy.cve_medium_penalty
    return policy.cve_low_penalty


def breach_penalty(breach_risk: int, policy: RiskPolicy) -> int:
    if breach_risk > policy.breach_high_threshold:
        return policy.breach_high_penalty
    if breach_risk > policy.breach_medium_threshold:
        return policy.breach_medium_penalty
    return policy.breach_low_penalty


def compute_vendor_risk(
    cvss_scores: Iterable[Optional[float]],
    breach_scores: Iterable[int],
    policy: Optional[RiskPolicy] = None,
) -> int:
    """Return 100 minus all penalties, floored at 0."""
    policy = policy or RiskPolicy()
    total = sum(cve_penalty(s, policy) for s in cvss_scores)
    total += sum(breach_penalty(b, policy) for b in breach_scores)
    return max(0, 100 - total)


def severity_for_cvss(cvss_score: Optional[float]) -> str:
    """Bucket a CVSS base score: >=9 Critical, >=7 High, >=4 Medium, else Low.

    Unknown scores land in Low so an imported record always has a severity.
    """
    if cvss_score is None:
        return SEVERITY_LOW
    if cvss_score >= 9.0:
        return SEVERITY_CRITICAL
    if cvss_score >= 7.0:
        return SEVERITY_HIGH
    if cvss_score >= 4.0:
        return SEVERITY_MEDIUM
    return SEVERITY_LOW
