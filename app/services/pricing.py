"""Package pricing catalog.

Single source of truth for registration and recurring fees. Every amount is
an integer in the smallest currency unit (TZS has no minor unit in use, so
amounts are whole shillings).

Lookups never raise: unknown package types resolve to documented defaults.
"""

from __future__ import annotations

from dataclasses import dataclass

from app.models.account import AccountRole, InstitutionType
from app.models.billing import BillingCycle, InvoiceType

PAYMENT_REQUIRED_ROLES = frozenset(
    {AccountRole.student, AccountRole.entrepreneur, AccountRole.nonstudent}
)

# Lowest government-tier student fee, used for unknown package types.
DEFAULT_REGISTRATION_FEE = 20000

CTM_CLUB_FEES = {
    InstitutionType.government: {"annual": 3000, "certificate": 5000, "total": 8000},
    InstitutionType.private: {"annual": 10000, "certificate": 5000, "total": 15000},
}

STUDENT_PACKAGES = {
    "normal": {
        "registration_fee": {InstitutionType.government: 20000, InstitutionType.private: 25000},
        "monthly_fee": None,
        "description": "Normal Registration",
    },
    "ctm_club": {
        "registration_fee": {InstitutionType.government: 20000, InstitutionType.private: 25000},
        "monthly_fee": None,
        "description": "CTM Club Membership",
    },
    "premier": {
        "registration_fee": {InstitutionType.government: 50000, InstitutionType.private: 60000},
        "monthly_fee": 70000,
        "description": "Premier CTM Membership",
    },
}

ENTREPRENEUR_PACKAGES = {
    "silver": {"registration_fee": 30000, "monthly_fee": 50000, "description": "Silver Package"},
    "gold": {"registration_fee": 100000, "monthly_fee": 150000, "description": "Gold Package"},
    "platinum": {"registration_fee": 200000, "monthly_fee": 300000, "description": "Platinum Package"},
}

NONSTUDENT_PACKAGES = {
    "diamond": {"registration_fee": 30000, "monthly_fee": 55000, "description": "Diamond Registration"},
}

MONTHLY_PACKAGES = frozenset({"premier", "diamond", "silver", "gold", "platinum"})
ANNUAL_PACKAGES = frozenset({"ctm_club"})

# Which roles own each recurring package.
PACKAGE_ROLES = {
    "premier": frozenset({AccountRole.student}),
    "ctm_club": frozenset({AccountRole.student}),
    "diamond": frozenset({AccountRole.nonstudent}),
    "silver": frozenset({AccountRole.entrepreneur, AccountRole.nonstudent}),
    "gold": frozenset({AccountRole.entrepreneur, AccountRole.nonstudent}),
    "platinum": frozenset({AccountRole.entrepreneur, AccountRole.nonstudent}),
}

PACKAGE_INVOICE_TYPES = {
    "premier": InvoiceType.membership,
    "ctm_club": InvoiceType.membership,
    "diamond": InvoiceType.subscription,
    "silver": InvoiceType.subscription,
    "gold": InvoiceType.subscription,
    "platinum": InvoiceType.subscription,
}


@dataclass(frozen=True)
class BillingPlan:
    package_type: str
    amount: int
    cycle: BillingCycle
    invoice_type: InvoiceType
    description: str


def normalize_package_type(package_type: str | None) -> str | None:
    if not package_type:
        return None
    return (
        package_type.strip()
        .lower()
        .replace("_registration", "")
        .replace("-", "_")
    )


def _coerce_role(role) -> AccountRole | None:
    if isinstance(role, AccountRole):
        return role
    try:
        return AccountRole(role)
    except ValueError:
        return None


def _coerce_institution(institution_type) -> InstitutionType:
    if isinstance(institution_type, InstitutionType):
        return institution_type
    try:
        return InstitutionType(institution_type)
    except ValueError:
        return InstitutionType.government


def get_ctm_club_fees(institution_type=InstitutionType.government) -> dict:
    return CTM_CLUB_FEES[_coerce_institution(institution_type)]


def student_registration_fee(package_type: str | None, institution_type=InstitutionType.government) -> int:
    institution = _coerce_institution(institution_type)
    normalized = normalize_package_type(package_type) or "normal"
    package = STUDENT_PACKAGES.get(normalized)
    if package is None:
        return DEFAULT_REGISTRATION_FEE
    return package["registration_fee"][institution]


def entrepreneur_package(package_type: str | None) -> dict:
    normalized = normalize_package_type(package_type)
    return ENTREPRENEUR_PACKAGES.get(normalized or "silver", ENTREPRENEUR_PACKAGES["silver"])


def entrepreneur_registration_fee(package_type: str | None, include_first_month: bool = False) -> int:
    package = entrepreneur_package(package_type)
    if include_first_month:
        return package["registration_fee"] + package["monthly_fee"]
    return package["registration_fee"]


def registration_fee(role, package_type: str | None, institution_type=InstitutionType.government) -> int:
    role = _coerce_role(role)
    if role == AccountRole.student:
        return student_registration_fee(package_type, institution_type)
    if role == AccountRole.nonstudent:
        normalized = normalize_package_type(package_type)
        if normalized in NONSTUDENT_PACKAGES:
            return NONSTUDENT_PACKAGES[normalized]["registration_fee"]
        return entrepreneur_registration_fee(package_type)
    if role == AccountRole.entrepreneur:
        return entrepreneur_registration_fee(package_type)
    return 0


def required_total(role, package_type: str | None, institution_type=InstitutionType.government) -> int:
    """Amount a payment-required role must pay to be fully paid up."""
    if _coerce_role(role) not in PAYMENT_REQUIRED_ROLES:
        return 0
    return registration_fee(role, package_type, institution_type)


def monthly_fee(role, package_type: str | None) -> int | None:
    role = _coerce_role(role)
    normalized = normalize_package_type(package_type)
    if role is None or normalized is None:
        return None
    if role == AccountRole.student:
        package = STUDENT_PACKAGES.get(normalized)
        return package["monthly_fee"] if package else None
    if role in (AccountRole.entrepreneur, AccountRole.nonstudent):
        package = ENTREPRENEUR_PACKAGES.get(normalized)
        if package is None and role == AccountRole.nonstudent:
            package = NONSTUDENT_PACKAGES.get(normalized)
        return package["monthly_fee"] if package else None
    return None


def annual_fee(institution_type=InstitutionType.government) -> int:
    return get_ctm_club_fees(institution_type)["annual"]


def billing_cycle_for(package_type: str | None) -> BillingCycle | None:
    normalized = normalize_package_type(package_type)
    if normalized in MONTHLY_PACKAGES:
        return BillingCycle.monthly
    if normalized in ANNUAL_PACKAGES:
        return BillingCycle.annual
    return None


def has_recurring_billing(package_type: str | None) -> bool:
    return billing_cycle_for(package_type) is not None


def recurring_package_types() -> list[str]:
    return sorted(MONTHLY_PACKAGES | ANNUAL_PACKAGES)


def package_description(role, package_type: str | None) -> str:
    role = _coerce_role(role)
    normalized = normalize_package_type(package_type)
    if normalized is None:
        return "Unknown Package"
    if role == AccountRole.student:
        package = STUDENT_PACKAGES.get(normalized)
        return package["description"] if package else "Student Package"
    if role in (AccountRole.entrepreneur, AccountRole.nonstudent):
        package = ENTREPRENEUR_PACKAGES.get(normalized) or NONSTUDENT_PACKAGES.get(normalized)
        return package["description"] if package else "Entrepreneur Package"
    return "Standard Package"


def resolve_billing_plan(role, package_type: str | None, institution_type=InstitutionType.government) -> BillingPlan | None:
    """Recurring charge for an account, or None when nothing recurs.

    None is also returned when the role does not own the package, so a
    student on an entrepreneur tier is never billed the entrepreneur fee.
    """
    role = _coerce_role(role)
    normalized = normalize_package_type(package_type)
    cycle = billing_cycle_for(normalized)
    if role is None or cycle is None:
        return None
    if role not in PACKAGE_ROLES.get(normalized, frozenset()):
        return None
    if cycle == BillingCycle.monthly:
        amount = monthly_fee(role, normalized)
        suffix = "Monthly Fee"
    else:
        amount = annual_fee(institution_type)
        suffix = "Annual Fee"
    if not amount:
        return None
    return BillingPlan(
        package_type=normalized,
        amount=amount,
        cycle=cycle,
        invoice_type=PACKAGE_INVOICE_TYPES[normalized],
        description=f"{package_description(role, normalized)} - {suffix}",
    )


def format_amount(amount: int, currency: str = "TZS") -> str:
    return f"{currency} {amount:,}"
