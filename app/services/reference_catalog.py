"""
Reference catalogs — read-only lookups by stable code.

The lifecycle engine never mutates catalogs.  Validation works against a
``ReferenceCatalog`` snapshot so a whole import batch sees one consistent
view, and so the validator can be exercised without a database
(``ReferenceCatalog.from_codes``).

``seed_reference_data`` installs the default catalog contents and backs the
``flask seed-reference-data`` CLI command.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from app.models import db
from app.models.reference import (
    CATALOG_KINDS,
    CATALOG_MODELS,
    ContractType,
    FundSource,
    ProcurementMethod,
    Province,
    UnitOfMeasure,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogEntry:
    kind: str
    code: str
    name: str
    id: int | None = None


class ReferenceCatalog:
    """Immutable snapshot of the active catalog entries, keyed by kind then code."""

    def __init__(self, entries: dict[str, dict[str, CatalogEntry]]):
        unknown = set(entries) - CATALOG_KINDS
        if unknown:
            raise ValueError(f"Unknown catalog kind(s): {', '.join(sorted(unknown))}")
        self._entries = {kind: dict(entries.get(kind, {})) for kind in CATALOG_KINDS}

    @classmethod
    def load(cls) -> ReferenceCatalog:
        """Snapshot every active catalog row from the database."""
        entries = {}
        for kind, model in CATALOG_MODELS.items():
            rows = model.query.filter_by(active=True).all()
            entries[kind] = {
                r.code.upper(): CatalogEntry(kind=kind, code=r.code, name=r.name, id=r.id)
                for r in rows
            }
        return cls(entries)

    @classmethod
    def from_codes(cls, mapping: dict) -> ReferenceCatalog:
        """Build a catalog from ``{kind: [code, ...]}`` or ``{kind: {code: name}}``."""
        entries = {}
        for kind, codes in mapping.items():
            if not isinstance(codes, dict):
                codes = {c: c for c in codes}
            entries[kind] = {
                code.upper(): CatalogEntry(kind=kind, code=code, name=name)
                for code, name in codes.items()
            }
        return cls(entries)

    def lookup(self, kind: str, code) -> CatalogEntry | None:
        if kind not in self._entries:
            raise ValueError(f"Unknown catalog kind: {kind}")
        if code is None:
            return None
        return self._entries[kind].get(str(code).strip().upper())

    def codes(self, kind: str) -> list[str]:
        return sorted(e.code for e in self._entries[kind].values())


def list_entries(kind: str) -> list[dict]:
    """Active rows of one catalog, ordered by code."""
    model = CATALOG_MODELS.get(kind)
    if model is None:
        raise ValueError(f"Unknown catalog kind: {kind}")
    return [r.to_dict() for r in model.query.filter_by(active=True).order_by(model.code).all()]


# ═══════════════════════════════════════════════════════════════
# Default data
# ═══════════════════════════════════════════════════════════════

DEFAULT_PROCUREMENT_METHODS = [
    {"code": "RFQ", "name": "Request for Quotation",
     "description": "For low-value purchases below K50,000",
     "threshold_max": Decimal("50000"), "requires_approval": False},
    {"code": "RFT", "name": "Request for Tender",
     "description": "Open competitive tender for goods and services",
     "threshold_min": Decimal("50000")},
    {"code": "RFP", "name": "Request for Proposal",
     "description": "For consulting and professional services"},
    {"code": "ICB", "name": "International Competitive Bidding",
     "description": "For high-value international procurement",
     "threshold_min": Decimal("5000000")},
    {"code": "NCB", "name": "National Competitive Bidding",
     "description": "For national-level competitive procurement",
     "threshold_min": Decimal("500000"), "threshold_max": Decimal("5000000")},
    {"code": "RT", "name": "Restricted Tender",
     "description": "Limited to pre-qualified suppliers"},
    {"code": "DP", "name": "Direct Procurement",
     "description": "Single source procurement with justification"},
    {"code": "SH", "name": "Shopping",
     "description": "Comparison of prices from multiple suppliers",
     "threshold_max": Decimal("100000"), "requires_approval": False},
]

DEFAULT_CONTRACT_TYPES = [
    {"code": "SUP", "name": "Supply Contract", "description": "For supply of goods", "category": "goods"},
    {"code": "WRK", "name": "Works Contract", "description": "For construction and civil works",
     "category": "works"},
    {"code": "SVC", "name": "Service Contract", "description": "For general services", "category": "services"},
    {"code": "CON", "name": "Consulting Contract", "description": "For consulting and advisory services",
     "category": "consulting"},
    {"code": "FWK", "name": "Framework Agreement", "description": "Long-term agreement with call-off orders",
     "category": "services"},
    {"code": "PNL", "name": "Panel Contract", "description": "Multiple suppliers on a panel",
     "category": "services"},
    {"code": "TRK", "name": "Turnkey Contract", "description": "Design, build, and operate",
     "category": "works"},
]

DEFAULT_UNITS_OF_MEASURE = [
    ("EA", "Each", "ea"), ("SET", "Set", "set"), ("LOT", "Lot", "lot"),
    ("PKG", "Package", "pkg"), ("KG", "Kilogram", "kg"), ("TON", "Metric Ton", "t"),
    ("M", "Meter", "m"), ("KM", "Kilometer", "km"), ("SQM", "Square Meter", "m2"),
    ("CBM", "Cubic Meter", "m3"), ("L", "Liter", "L"), ("HR", "Hour", "hr"),
    ("DAY", "Day", "day"), ("MTH", "Month", "mth"), ("YR", "Year", "yr"),
    ("LS", "Lump Sum", "LS"),
]

DEFAULT_PROVINCES = [
    ("NCD", "National Capital District", "Southern"),
    ("CEN", "Central Province", "Southern"),
    ("GUL", "Gulf Province", "Southern"),
    ("MIL", "Milne Bay Province", "Southern"),
    ("NIP", "Northern (Oro) Province", "Southern"),
    ("WES", "Western Province", "Southern"),
    ("EHP", "Eastern Highlands Province", "Highlands"),
    ("SIM", "Simbu Province", "Highlands"),
    ("WHP", "Western Highlands Province", "Highlands"),
    ("SHP", "Southern Highlands Province", "Highlands"),
    ("ENG", "Enga Province", "Highlands"),
    ("JWA", "Jiwaka Province", "Highlands"),
    ("HEL", "Hela Province", "Highlands"),
    ("MAD", "Madang Province", "Momase"),
    ("MOR", "Morobe Province", "Momase"),
    ("ESP", "East Sepik Province", "Momase"),
    ("WSP", "West Sepik (Sandaun) Province", "Momase"),
    ("ENB", "East New Britain Province", "Islands"),
    ("WNB", "West New Britain Province", "Islands"),
    ("NIR", "New Ireland Province", "Islands"),
    ("MAN", "Manus Province", "Islands"),
    ("ARB", "Autonomous Region of Bougainville", "Islands"),
]

DEFAULT_FUND_SOURCES = [
    ("GOPNG-DEV", "GoPNG Development Budget", "Government of PNG Development Budget"),
    ("GOPNG-REC", "GoPNG Recurrent Budget", "Government of PNG Recurrent Budget"),
    ("ADB", "Asian Development Bank", "ADB Loan/Grant Funded"),
    ("WB", "World Bank", "World Bank Loan/Grant Funded"),
    ("EU", "European Union", "EU Grant Funded"),
    ("JICA", "Japan International Cooperation Agency", "JICA Loan/Grant Funded"),
    ("DFAT", "Australian DFAT", "Australian Aid Funded"),
    ("MFAT", "New Zealand MFAT", "New Zealand Aid Funded"),
]


def _default_rows():
    yield from ((ProcurementMethod, dict(row)) for row in DEFAULT_PROCUREMENT_METHODS)
    yield from ((ContractType, dict(row)) for row in DEFAULT_CONTRACT_TYPES)
    for code, name, abbr in DEFAULT_UNITS_OF_MEASURE:
        yield UnitOfMeasure, {"code": code, "name": name, "abbreviation": abbr}
    for code, name, region in DEFAULT_PROVINCES:
        yield Province, {"code": code, "name": name, "region": region}
    for code, name, description in DEFAULT_FUND_SOURCES:
        yield FundSource, {"code": code, "name": name, "description": description}


def seed_reference_data() -> int:
    """Insert any missing default catalog rows.  Idempotent; flushes, caller commits.

    Returns the number of rows created.
    """
    created = 0
    for model, values in _default_rows():
        if model.query.filter_by(code=values["code"]).first():
            continue
        db.session.add(model(**values))
        created += 1
    db.session.flush()
    logger.info("Reference catalogs seeded", extra={"event_type": "reference.seed", "rows_created": created})
    return created
