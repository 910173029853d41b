"""Subscription plan catalog and tier-based entitlements.

Four plan tiers gate fleet resources and AI extraction credits:

* **Free** -- 5 drivers, one document each, a one-time 5-credit grant.
* **Starter** -- 25 drivers, 100 credits per month with rollover.
* **Professional** -- 100 drivers, 500 credits per month, SMS reminders.
* **Enterprise** -- Unlimited everything, custom priced, sold out-of-band.

The catalog is a static, versioned table.  Changing limits or prices is a
deploy, never a database write.  Every entry is validated when this module
is imported so a malformed tier fails at startup rather than mid-request.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger(__name__)

CATALOG_VERSION = "2025-10"

# Credits granted per whole currency unit on a one-off purchase.
CREDITS_PER_CURRENCY_UNIT = 8

# Suggested one-off purchases shown alongside an insufficient-credit error.
CREDIT_PURCHASE_PRESETS: tuple[dict[str, int], ...] = (
    {"amount": 5, "credits": 5 * CREDITS_PER_CURRENCY_UNIT},
    {"amount": 10, "credits": 10 * CREDITS_PER_CURRENCY_UNIT},
    {"amount": 25, "credits": 25 * CREDITS_PER_CURRENCY_UNIT},
)


class PlanName(str, Enum):
    """Subscription tier names as stored on the tenant billing record."""

    FREE = "Free"
    STARTER = "Starter"
    PROFESSIONAL = "Professional"
    ENTERPRISE = "Enterprise"


class Feature(str, Enum):
    """Product features that can be gated by plan tier."""

    EMAIL = "email"
    REMINDERS = "reminders"
    SMS = "sms"
    ADVANCED_ANALYTICS = "advanced_analytics"
    WHATSAPP = "whatsapp"
    CUSTOM_INTEGRATIONS = "custom_integrations"
    SSO = "sso"
    DEDICATED_SUPPORT = "dedicated_support"
    MULTI_LOCATION = "multi_location"


class ResourceType(str, Enum):
    """Resources whose consumption is capped by the plan."""

    DRIVERS = "drivers"
    DOCUMENTS = "documents"
    CREDITS = "credits"


class PlanLimits(BaseModel):
    """Typed limits for a single plan tier.

    ``None`` on a cap or credit field means *unlimited*.
    """

    model_config = ConfigDict(frozen=True)

    name: PlanName
    tier: int = Field(..., ge=0, description="Ordinal used for upgrade/downgrade comparisons.")
    description: str
    monthly_price: Decimal | None = Field(
        default=None,
        description="Price per monthly cycle; None for custom-priced tiers.",
    )
    yearly_price: Decimal | None = Field(
        default=None,
        description="Price per yearly cycle; None for custom-priced tiers.",
    )
    max_drivers: int | None = Field(default=None, ge=0)
    max_documents_per_driver: int | None = Field(default=None, ge=0)
    initial_credits: int | None = Field(
        default=None,
        ge=0,
        description="One-time credit grant when the plan is entered.",
    )
    monthly_credits: int | None = Field(
        default=None,
        ge=0,
        description="Credits added on every renewal.",
    )
    credits_rollover: bool = True
    features: frozenset[Feature] = frozenset()
    popular: bool = False

    @property
    def is_custom_priced(self) -> bool:
        return self.monthly_price is None

    @property
    def unlimited_credits(self) -> bool:
        return self.monthly_credits is None

    @model_validator(mode="after")
    def _unlimited_only_when_custom_priced(self) -> PlanLimits:
        unlimited = [
            field
            for field in ("max_drivers", "max_documents_per_driver", "initial_credits", "monthly_credits")
            if getattr(self, field) is None
        ]
        if unlimited and not self.is_custom_priced:
            raise ValueError(f"Plan {self.name.value} is self-serve but has unlimited fields: {unlimited}")
        return self


class LimitViolation(BaseModel):
    """A single resource whose usage exceeds a plan cap."""

    resource: ResourceType
    current: int
    limit: int
    message: str


class ResourceUsage(BaseModel):
    """Snapshot of a tenant's capped resource usage."""

    drivers: int = Field(default=0, ge=0)
    max_documents_per_driver: int = Field(
        default=0,
        ge=0,
        description="Document count of the tenant's busiest driver.",
    )


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

_BASE_FEATURES: frozenset[Feature] = frozenset({Feature.EMAIL, Feature.REMINDERS})

_PROFESSIONAL_FEATURES: frozenset[Feature] = _BASE_FEATURES | frozenset(
    {
        Feature.SMS,
        Feature.ADVANCED_ANALYTICS,
    }
)

_ENTERPRISE_FEATURES: frozenset[Feature] = _PROFESSIONAL_FEATURES | frozenset(
    {
        Feature.WHATSAPP,
        Feature.CUSTOM_INTEGRATIONS,
        Feature.SSO,
        Feature.DEDICATED_SUPPORT,
        Feature.MULTI_LOCATION,
    }
)

PLAN_CATALOG: dict[PlanName, PlanLimits] = {
    PlanName.FREE: PlanLimits(
        name=PlanName.FREE,
        tier=0,
        description="Perfect for trying out the platform",
        monthly_price=Decimal("0"),
        yearly_price=Decimal("0"),
        max_drivers=5,
        max_documents_per_driver=1,
        initial_credits=5,
        monthly_credits=0,
        credits_rollover=False,
        features=_BASE_FEATURES,
    ),
    PlanName.STARTER: PlanLimits(
        name=PlanName.STARTER,
        tier=1,
        description="For small fleets getting started",
        monthly_price=Decimal("49"),
        yearly_price=Decimal("470"),
        max_drivers=25,
        max_documents_per_driver=5,
        initial_credits=100,
        monthly_credits=100,
        features=_BASE_FEATURES,
    ),
    PlanName.PROFESSIONAL: PlanLimits(
        name=PlanName.PROFESSIONAL,
        tier=2,
        description="For growing fleets that need automation",
        monthly_price=Decimal("149"),
        yearly_price=Decimal("1430"),
        max_drivers=100,
        max_documents_per_driver=10,
        initial_credits=500,
        monthly_credits=500,
        features=_PROFESSIONAL_FEATURES,
        popular=True,
    ),
    PlanName.ENTERPRISE: PlanLimits(
        name=PlanName.ENTERPRISE,
        tier=3,
        description="Custom solutions for large fleets",
        features=_ENTERPRISE_FEATURES,
    ),
}


def _validate_catalog(catalog: dict[PlanName, PlanLimits]) -> None:
    """Reject catalogs whose ordinals are not strictly increasing."""
    tiers = [catalog[name].tier for name in PlanName]
    if tiers != sorted(set(tiers)):
        raise ValueError(f"Plan tiers must be strictly increasing, got {tiers}")
    for name, limits in catalog.items():
        if limits.name != name:
            raise ValueError(f"Catalog key {name.value} holds limits for {limits.name.value}")


_validate_catalog(PLAN_CATALOG)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def parse_plan_name(name: str | PlanName | None) -> PlanName | None:
    """Return the :class:`PlanName` for *name*, or ``None`` when unknown.

    Matching is case-insensitive so ``"starter"`` and ``"Starter"`` agree.
    """
    if isinstance(name, PlanName):
        return name
    if not name:
        return None
    for candidate in PlanName:
        if candidate.value.lower() == str(name).strip().lower():
            return candidate
    return None


def lookup_plan(name: str | PlanName | None) -> PlanLimits:
    """Return the limits for *name*, falling back to Free for unknown names.

    Parameters
    ----------
    name:
        Plan name as stored or as received from the payment processor.

    Returns
    -------
    PlanLimits
        The matching tier, or the most restrictive tier with a warning.
    """
    plan = parse_plan_name(name)
    if plan is None:
        logger.warning("Unknown plan %r; falling back to %s limits", name, PlanName.FREE.value)
        return PLAN_CATALOG[PlanName.FREE]
    return PLAN_CATALOG[plan]


def plan_ordinal(name: str | PlanName) -> int:
    return lookup_plan(name).tier


def all_plans() -> list[PlanLimits]:
    """Return every tier ordered from cheapest to most expensive."""
    return sorted(PLAN_CATALOG.values(), key=lambda limits: limits.tier)


def is_unlimited(plan: str | PlanName, resource: ResourceType) -> bool:
    """Check whether *resource* is uncapped on *plan*."""
    limits = lookup_plan(plan)
    if resource is ResourceType.DRIVERS:
        return limits.max_drivers is None
    if resource is ResourceType.DOCUMENTS:
        return limits.max_documents_per_driver is None
    return limits.unlimited_credits


def has_feature(plan: str | PlanName, feature: Feature) -> bool:
    return feature in lookup_plan(plan).features


def required_plan_for(feature: Feature) -> PlanName:
    """Return the cheapest tier that includes *feature*."""
    for limits in all_plans():
        if feature in limits.features:
            return limits.name
    return PlanName.ENTERPRISE


def next_tier(plan: str | PlanName) -> PlanName | None:
    """Return the tier directly above *plan*, or ``None`` at the top."""
    current = lookup_plan(plan).tier
    for limits in all_plans():
        if limits.tier > current:
            return limits.name
    return None


def check_downgrade(usage: ResourceUsage, target: str | PlanName) -> list[LimitViolation]:
    """Compare *usage* against the caps of *target*.

    Returns
    -------
    list[LimitViolation]
        Every violated resource; an empty list means the downgrade fits.
    """
    limits = lookup_plan(target)
    violations: list[LimitViolation] = []

    if limits.max_drivers is not None and usage.drivers > limits.max_drivers:
        violations.append(
            LimitViolation(
                resource=ResourceType.DRIVERS,
                current=usage.drivers,
                limit=limits.max_drivers,
                message=(
                    f"You have {usage.drivers} drivers but the {limits.name.value} plan "
                    f"allows only {limits.max_drivers}. Remove "
                    f"{usage.drivers - limits.max_drivers} drivers first."
                ),
            )
        )

    if (
        limits.max_documents_per_driver is not None
        and usage.max_documents_per_driver > limits.max_documents_per_driver
    ):
        violations.append(
            LimitViolation(
                resource=ResourceType.DOCUMENTS,
                current=usage.max_documents_per_driver,
                limit=limits.max_documents_per_driver,
                message=(
                    f"Some drivers have {usage.max_documents_per_driver} documents but the "
                    f"{limits.name.value} plan allows only {limits.max_documents_per_driver} per driver."
                ),
            )
        )

    return violations


def credits_for_payment(amount: int | Decimal) -> int:
    """Convert a paid currency amount into purchased credits.

    Fractional currency is truncated so a purchase never grants credits
    that were not paid for.
    """
    whole_units = int(Decimal(amount))
    if whole_units < 0:
        raise ValueError(f"Payment amount must be non-negative, got {amount}")
    return whole_units * CREDITS_PER_CURRENCY_UNIT


def charge_for_plan_change(target: str | PlanName, yearly: bool = False) -> Decimal | None:
    """Return the amount charged when switching to *target*.

    Plan switches are charged the full cycle price immediately; there is
    no proration.  ``None`` for custom-priced tiers.
    """
    limits = lookup_plan(target)
    return limits.yearly_price if yearly else limits.monthly_price
