"""
core/cpe.py -- CPE 2.3 identifiers for inventory entries.

Builds the "application" form used by NVD:

    cpe:2.3:a:{vendor}:{product}:{version}:*:*:*:*:*:*:*

Vendor and product are lowercased with whitespace runs collapsed to "_".
CPE special characters (":", "*", "?", backslash) are NOT escaped, so a
vendor named "foo:bar" produces an identifier with an extra component.
NVD rejects those on cpeName searches and we fall back to keyword matching.
"""

import re
from typing import Optional

_WS_RE = re.compile(r"\s+")

_CPE_PREFIX = "cpe:2.3:"
_CPE_SUFFIX = ":*:*:*:*:*:*:*"


def _clean(value: Optional[str]) -> str:
    if value is None:
        return ""
    return _WS_RE.sub("_", value.strip()).lower()


def generate_cpe_string(vendor: Optional[str], product: Optional[str], version: Optional[str] = None) -> Optional[str]:
    """Return the CPE 2.3 application identifier, or None without vendor and product.

    >>> generate_cpe_string("Apache", "Tomcat Server", "9.0.86")
    'cpe:2.3:a:apache:tomcat_server:9.0.86:*:*:*:*:*:*:*'
    """
    v = _clean(vendor)
    p = _clean(product)
    if not v or not p:
        return None
    ver = _WS_RE.sub("_", version.strip()) if version and version.strip() else "*"
    return f"{_CPE_PREFIX}a:{v}:{p}:{ver}{_CPE_SUFFIX}"


def cpe_vendor_product(cpe: str) -> Optional[tuple[str, str]]:
    """Return (vendor, product) from a CPE 2.3 string, lowercased.

    Returns None for anything that does not look like a CPE 2.3 identifier.
    """
    if not cpe or not cpe.lower().startswith(_CPE_PREFIX):
        return None
    parts = cpe.split(":")
    if len(parts) < 6:
        return None
    return parts[3].lower(), parts[4].lower()


def cpe_version(cpe: str) -> Optional[str]:
    """Return the version component of a CPE 2.3 string ("*" and "-" mean any)."""
    parts = cpe.split(":") if cpe else []
    if len(parts) < 6:
        return None
    return parts[5]
