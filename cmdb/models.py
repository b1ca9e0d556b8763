"""
cmdb/models.py -- Inventory and vulnerability-tracking dataclasses.

Assets and vendors are owned by the inventory subsystem; the engine only
reads them. Vulnerability is the external tracking record an accepted match
is imported into. Pure data containers, no logic.
"""

from dataclasses import dataclass, field
from typing import Optional

# Asset types the matcher scans. An asset with no type is scanned too.
SCANNABLE_ASSET_TYPES = ("Software", "Hardware")


@dataclass
class Asset:
    """A technology asset in a client's inventory.

    vendor/product_name/version drive the CPE; name, description and
    technologies only contribute search keywords.

    id is None before the record is written to the database.
    """

    client_id: int
    name: str
    vendor: Optional[str] = None
    product_name: Optional[str] = None
    version: Optional[str] = None
    description: Optional[str] = None
    technologies: list[str] = field(default_factory=list)
    asset_type: Optional[str] = "Software"
    id: Optional[int] = None

    @property
    def scannable(self) -> bool:
        return not self.asset_type or self.asset_type in SCANNABLE_ASSET_TYPES


@dataclass
class Vendor:
    client_id: int
    name: str
    website: Optional[str] = None
    id: Optional[int] = None


@dataclass
class Vulnerability:
    """Tracked vulnerability created by importing an asset/CVE match."""

    client_id: int
    name: str
    severity: str  # "Critical" | "High" | "Medium" | "Low"
    asset_id: Optional[int] = None
    cve_id: Optional[str] = None
    description: str = ""
    cvss_score: Optional[float] = None
    source: str = "NVD"
    status: str = "open"
    discovered_at: str = ""  # ISO 8601, set by store on insert
    id: Optional[int] = None
