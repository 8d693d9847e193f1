"""
Procurement Plan Lifecycle Engine
Reference catalog models.

Models:
    - ProcurementMethod: tender/quotation methods (RFQ, NCB, ...)
    - ContractType:      supply, works, services, consulting contracts
    - UnitOfMeasure:     quantity units used on plan items
    - Province:          administrative provinces (location-scoped items)
    - FundSource:        government and donor funding origins

The catalogs are read-only from the lifecycle engine's point of view.
They are resolved by their stable ``code`` and only ``active`` rows resolve.
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

CATALOG_KINDS = {
    "procurement_method", "contract_type", "unit_of_measure",
    "province", "fund_source",
}

CONTRACT_CATEGORIES = {"goods", "works", "services", "consulting"}

PROVINCE_REGIONS = {"Southern", "Highlands", "Momase", "Islands"}


class _CatalogMixin:
    """Columns shared by every reference catalog."""

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), unique=True, nullable=False, index=True)
    name = db.Column(db.String(150), nullable=False)
    active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    def _base_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "active": self.active,
        }


class ProcurementMethod(_CatalogMixin, db.Model):
    __tablename__ = "procurement_methods"

    description = db.Column(db.Text, default="")
    threshold_min = db.Column(db.Numeric(18, 2), nullable=True)
    threshold_max = db.Column(db.Numeric(18, 2), nullable=True)
    requires_approval = db.Column(db.Boolean, default=True)

    def to_dict(self):
        d = self._base_dict()
        d.update({
            "description": self.description,
            "threshold_min": float(self.threshold_min) if self.threshold_min is not None else None,
            "threshold_max": float(self.threshold_max) if self.threshold_max is not None else None,
            "requires_approval": self.requires_approval,
        })
        return d

    def __repr__(self):
        return f"<ProcurementMethod {self.code}>"


class ContractType(_CatalogMixin, db.Model):
    __tablename__ = "contract_types"

    description = db.Column(db.Text, default="")
    category = db.Column(
        db.String(20), nullable=False, default="goods",
        comment="goods | works | services | consulting",
    )

    def to_dict(self):
        d = self._base_dict()
        d.update({"description": self.description, "category": self.category})
        return d

    def __repr__(self):
        return f"<ContractType {self.code}>"


class UnitOfMeasure(_CatalogMixin, db.Model):
    __tablename__ = "units_of_measure"

    abbreviation = db.Column(db.String(10), default="")

    def to_dict(self):
        d = self._base_dict()
        d["abbreviation"] = self.abbreviation
        return d

    def __repr__(self):
        return f"<UnitOfMeasure {self.code}>"


class Province(_CatalogMixin, db.Model):
    __tablename__ = "provinces"

    region = db.Column(db.String(30), default="")

    def to_dict(self):
        d = self._base_dict()
        d["region"] = self.region
        return d

    def __repr__(self):
        return f"<Province {self.code}>"


class FundSource(_CatalogMixin, db.Model):
    __tablename__ = "fund_sources"

    description = db.Column(db.Text, default="")

    def to_dict(self):
        d = self._base_dict()
        d["description"] = self.description
        return d

    def __repr__(self):
        return f"<FundSource {self.code}>"


CATALOG_MODELS = {
    "procurement_method": ProcurementMethod,
    "contract_type": ContractType,
    "unit_of_measure": UnitOfMeasure,
    "province": Province,
    "fund_source": FundSource,
}
