"""
Exact line-item pricing in integer minor units.

Every amount produced here is an ``int``; rates are ``Decimal``. Discounts and
taxes are spread across line items with :func:`allocate_pro_rata` so that the
per-item figures always add up to the order level figure.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Sequence

from learnpay.errors import PaymentValidationError

BASIS_POINTS = 10000


@dataclass(frozen=True)
class LineItem:
    unit_amount: int
    quantity: int = 1
    tax_exempt: bool = False
    id: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class CouponTerms:
    code: str
    discount_type: str  # percentage | fixed
    discount_value: int
    currency: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class TaxRegion:
    country: Optional[str] = None
    region: Optional[str] = None
    postal_code: Optional[str] = None


@dataclass(frozen=True)
class TaxRate:
    rate: Decimal
    jurisdiction: dict = field(default_factory=dict)


@dataclass
class LineTotals:
    id: Optional[str]
    name: Optional[str]
    unit_amount: int
    quantity: int
    subtotal: int
    taxable_basis: int
    discount: int
    tax: int
    total: int


@dataclass
class Totals:
    currency: str
    subtotal: int
    discount: int
    tax: int
    total: int
    taxable_subtotal: int
    taxable_after_discount: int
    line_items: List[LineTotals]
    tax_breakdown: dict

    def summary(self):
        return {
            "subtotal": self.subtotal,
            "discount": self.discount,
            "tax": self.tax,
            "total": self.total,
        }


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _by_descending_basis(weights: Sequence[int]) -> List[int]:
    # sorted() is stable, so equal weights keep their original order
    return sorted(range(len(weights)), key=lambda i: -weights[i])


def _reconcile(allocations: List[int], expected: int, weights: Sequence[int]) -> List[int]:
    """Nudge allocations one unit at a time until they sum to ``expected``."""
    delta = expected - sum(allocations)
    order = [i for i in _by_descending_basis(weights) if weights[i] > 0]
    if delta and not order:
        raise ValueError("Cannot reconcile a non-zero total without a positive basis")
    step = 1 if delta > 0 else -1
    position = 0
    while delta:
        index = order[position % len(order)]
        position += 1
        if step < 0 and allocations[index] == 0:
            continue
        allocations[index] += step
        delta -= step
    return allocations


def allocate_pro_rata(total: int, weights: Sequence[int]) -> List[int]:
    """Split ``total`` across ``weights`` so the parts sum to ``total`` exactly.

    Each item first receives ``floor(weight / sum(weights) * total)``; the
    remaining units go one at a time to the items with the largest weight,
    ties broken by original position.
    """
    if not _is_int(total) or total < 0:
        raise ValueError("total must be a non-negative integer")
    if any(not _is_int(w) or w < 0 for w in weights):
        raise ValueError("weights must be non-negative integers")
    basis = sum(weights)
    if total == 0 or basis == 0:
        return [0] * len(weights)
    allocations = [weight * total // basis for weight in weights]
    return _reconcile(allocations, total, weights)


class TaxRegionResolver:
    """Looks up tax rates from a table shaped like
    ``{"US": {"defaultRate": 0.075, "regions": {"CA": 0.0825}}}``.

    The configured minimum rate acts as a floor and as the rate used when no
    region is supplied.
    """

    def __init__(self, table=None, minimum_rate="0"):
        self.table = {str(k).upper(): v for k, v in (table or {}).items()}
        self.minimum_rate = Decimal(str(minimum_rate))

    def resolve(self, country=None, region=None, postal_code=None) -> TaxRate:
        jurisdiction = {
            "country": country.upper() if country else None,
            "region": region.upper() if region else None,
            "postal_code": postal_code,
        }
        rate = self.minimum_rate
        entry = self.table.get(jurisdiction["country"]) if country else None
        if entry:
            regions = {str(k).upper(): v for k, v in (entry.get("regions") or {}).items()}
            found = regions.get(jurisdiction["region"]) if region else None
            if found is None:
                found = entry.get("defaultRate")
            if found is not None:
                rate = max(Decimal(str(found)), self.minimum_rate)
        return TaxRate(rate=rate, jurisdiction=jurisdiction)


def normalize_currency(currency, allowed: Sequence[str]) -> str:
    code = str(currency or "").strip().upper()
    if not code:
        raise PaymentValidationError("Currency is required", code="CURRENCY_REQUIRED")
    if len(code) != 3 or not code.isalpha():
        raise PaymentValidationError(f"Currency {code} is not a valid ISO code", code="CURRENCY_INVALID")
    if allowed and code not in allowed:
        raise PaymentValidationError(
            f"Currency {code} is not supported for payments", code="CURRENCY_UNSUPPORTED"
        )
    return code


class TotalsCalculator:
    def __init__(self, resolver: TaxRegionResolver, *, tax_inclusive=False,
                 coupon_cap_basis_points=8000, allowed_currencies=()):
        self.resolver = resolver
        self.tax_inclusive = tax_inclusive
        self.coupon_cap_basis_points = coupon_cap_basis_points
        self.allowed_currencies = list(allowed_currencies)

    @classmethod
    def from_settings(cls, settings):
        return cls(
            TaxRegionResolver(settings.tax_table, settings.minimum_tax_rate),
            tax_inclusive=settings.tax_inclusive,
            coupon_cap_basis_points=settings.coupon_cap_basis_points,
            allowed_currencies=settings.allowed_currencies,
        )

    def calculate(self, items: Sequence[LineItem], currency: str,
                  coupon: Optional[CouponTerms] = None,
                  tax_region: Optional[TaxRegion] = None) -> Totals:
        currency = normalize_currency(currency, self.allowed_currencies)
        self._validate_items(items)

        line_subtotals = [item.unit_amount * item.quantity for item in items]
        taxable_bases = [0 if item.tax_exempt else amount for item, amount in zip(items, line_subtotals)]
        subtotal = sum(line_subtotals)
        taxable_subtotal = sum(taxable_bases)

        discount = self._discount(coupon, currency, taxable_subtotal)
        discounts = allocate_pro_rata(discount, taxable_bases)
        taxable_after = [basis - share for basis, share in zip(taxable_bases, discounts)]
        taxable_after_discount = taxable_subtotal - discount

        region = tax_region or TaxRegion()
        tax_rate = self.resolver.resolve(region.country, region.region, region.postal_code)
        taxes = self._allocate_tax(taxable_after, taxable_after_discount, tax_rate.rate)
        tax = sum(taxes)

        if self.tax_inclusive:
            total = subtotal - discount
        else:
            total = subtotal - discount + tax

        line_totals = []
        for item, amount, basis, share, item_tax in zip(items, line_subtotals, taxable_bases, discounts, taxes):
            line_total = amount - share + (0 if self.tax_inclusive else item_tax)
            line_totals.append(LineTotals(
                id=item.id,
                name=item.name,
                unit_amount=item.unit_amount,
                quantity=item.quantity,
                subtotal=amount,
                taxable_basis=basis,
                discount=share,
                tax=item_tax,
                total=line_total,
            ))

        return Totals(
            currency=currency,
            subtotal=subtotal,
            discount=discount,
            tax=tax,
            total=total,
            taxable_subtotal=taxable_subtotal,
            taxable_after_discount=taxable_after_discount,
            line_items=line_totals,
            tax_breakdown={
                "jurisdiction": tax_rate.jurisdiction,
                "rate": float(tax_rate.rate),
                "inclusive": self.tax_inclusive,
                "taxable_amount": taxable_after_discount,
                "discount_applied": discount,
            },
        )

    @staticmethod
    def _validate_items(items):
        if not items:
            raise PaymentValidationError("At least one line item is required", code="LINE_ITEMS_REQUIRED")
        for position, item in enumerate(items):
            label = item.name or item.id or f"#{position + 1}"
            if not _is_int(item.unit_amount) or item.unit_amount <= 0:
                raise PaymentValidationError(
                    f"Line item {label} must specify a positive integer unit amount",
                    code="LINE_ITEM_AMOUNT_INVALID",
                )
            if not _is_int(item.quantity) or item.quantity <= 0:
                raise PaymentValidationError(
                    f"Line item {label} must specify a positive integer quantity",
                    code="LINE_ITEM_QUANTITY_INVALID",
                )

    def _discount(self, coupon, currency, taxable_subtotal) -> int:
        if coupon is None:
            return 0
        if not _is_int(coupon.discount_value) or coupon.discount_value < 0:
            raise PaymentValidationError("Coupon discount must be a non-negative integer", code="COUPON_INVALID")
        if coupon.discount_type not in ("percentage", "fixed"):
            raise PaymentValidationError(
                f"Unsupported coupon discount type {coupon.discount_type}", code="COUPON_INVALID"
            )
        if coupon.discount_type == "fixed" and (coupon.currency or "").upper() != currency:
            raise PaymentValidationError(
                "Coupon currency does not match order currency", code="COUPON_CURRENCY_MISMATCH"
            )
        if taxable_subtotal == 0:
            return 0
        if coupon.discount_type == "percentage":
            basis_points = min(coupon.discount_value, self.coupon_cap_basis_points)
            return taxable_subtotal * basis_points // BASIS_POINTS
        return min(coupon.discount_value, taxable_subtotal)

    def _allocate_tax(self, bases: List[int], taxable_total: int, rate: Decimal) -> List[int]:
        if rate <= 0 or taxable_total <= 0:
            return [0] * len(bases)
        if self.tax_inclusive:
            def portion(amount):
                return _round_half_up(Decimal(amount) - Decimal(amount) / (1 + rate))
        else:
            def portion(amount):
                return _round_half_up(Decimal(amount) * rate)
        per_item = [portion(basis) for basis in bases]
        return _reconcile(per_item, portion(taxable_total), bases)
