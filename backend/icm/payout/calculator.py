# backend/icm/payout/calculator.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Sequence

from icm.core.config import settings
from icm.core.errors import RuleConfigurationError
from icm.schemas.execution import CreditShare
from icm.schemas.scheme import CreditSplitEntry, PayoutStructure, PayoutTier

HUNDRED = Decimal("100")
TIER_BASES = {"metric", "attainment"}


@dataclass(frozen=True)
class Commission:
    amount: Decimal
    tier: Optional[PayoutTier] = None
    basis_value: Decimal = Decimal("0")
    note: Optional[str] = None


class PayoutCalculator:
    """
    Tiered / percentage payout plus credit splitting.

    All arithmetic is Decimal. Commission amounts and split shares are rounded
    to `quantum` with ROUND_HALF_UP.
    """

    def __init__(
        self,
        *,
        quantum: Decimal | str = settings.MONEY_QUANTUM,
        epsilon: Decimal | float = settings.CREDIT_SPLIT_EPSILON,
    ) -> None:
        self.quantum = Decimal(str(quantum))
        self.epsilon = Decimal(str(epsilon))

    def _round(self, value: Decimal) -> Decimal:
        return value.quantize(self.quantum, rounding=ROUND_HALF_UP)

    # -----------------------------
    # Validation (scheme load time)
    # -----------------------------

    def tier_issues(self, tiers: Sequence[PayoutTier]) -> list[str]:
        issues: list[str] = []
        ordered = sorted(tiers, key=lambda t: t.from_value)
        for tier in ordered:
            if tier.to_value is not None and tier.from_value >= tier.to_value:
                issues.append(f"tier {tier.from_value}-{tier.to_value}: 'from' must be below 'to'")
            if tier.rate < 0:
                issues.append(f"tier {tier.from_value}-{_fmt_to(tier)}: rate must not be negative")
        for current, following in zip(ordered, ordered[1:]):
            if current.to_value is None or current.to_value > following.from_value:
                issues.append(
                    f"tiers {current.from_value}-{_fmt_to(current)} and "
                    f"{following.from_value}-{_fmt_to(following)} overlap"
                )
        return issues

    def validate_tiers(self, tiers: Sequence[PayoutTier]) -> list[PayoutTier]:
        """Return the tiers sorted by `from`, or raise RuleConfigurationError."""
        issues = self.tier_issues(tiers)
        if issues:
            raise RuleConfigurationError("Payout tiers are invalid", issues=issues)
        return sorted(tiers, key=lambda t: t.from_value)

    def credit_split_issues(self, credit_split: Sequence[CreditSplitEntry]) -> list[str]:
        if not credit_split:
            return []
        issues = [f"credit split role '{e.role}' has a negative percentage" for e in credit_split if e.percentage < 0]
        total = sum((e.percentage for e in credit_split), Decimal("0"))
        if abs(total - HUNDRED) > self.epsilon:
            issues.append(f"credit split percentages sum to {total}, expected 100")
        return issues

    def validate_credit_split(self, credit_split: Sequence[CreditSplitEntry]) -> None:
        issues = self.credit_split_issues(credit_split)
        if issues:
            raise RuleConfigurationError("Credit split is invalid", issues=issues)

    def payout_issues(self, structure: PayoutStructure, quota_amount: Decimal = Decimal("0")) -> list[str]:
        """Everything that stops compute_commission from working: tiers and tier basis."""
        issues = self.tier_issues(structure.tiers)
        if structure.tier_basis not in TIER_BASES:
            issues.append(f"unknown tier basis '{structure.tier_basis}'")
        elif structure.tier_basis == "attainment" and quota_amount <= 0:
            issues.append("attainment tiers need a positive quota amount")
        return issues

    # -----------------------------
    # Calculation
    # -----------------------------

    def compute_commission(
        self,
        base_metric: Decimal,
        structure: PayoutStructure,
        *,
        quota_amount: Decimal = Decimal("0"),
    ) -> Commission:
        tiers = self.validate_tiers(structure.tiers)
        if not tiers:
            return Commission(amount=self._round(Decimal("0")), basis_value=base_metric, note="no payout tiers configured")

        basis_value = base_metric
        if structure.tier_basis == "attainment":
            if quota_amount <= 0:
                raise RuleConfigurationError("attainment tiers need a positive quota amount")
            basis_value = base_metric / quota_amount * HUNDRED
        elif structure.tier_basis not in TIER_BASES:
            raise RuleConfigurationError(f"unknown tier basis '{structure.tier_basis}'")

        tier = next(
            (t for t in tiers if t.from_value <= basis_value and (t.to_value is None or basis_value < t.to_value)),
            None,
        )
        if tier is None:
            return Commission(
                amount=self._round(Decimal("0")),
                basis_value=basis_value,
                note=f"no payout tier covers {basis_value}",
            )

        raw = base_metric * tier.rate if structure.is_percentage else tier.rate
        return Commission(amount=self._round(raw), tier=tier, basis_value=basis_value)

    def split_credit(self, commission: Decimal, credit_split: Sequence[CreditSplitEntry]) -> list[CreditShare]:
        """
        Shares are commission * percentage / 100, rounded; the rounding
        remainder goes to the last role so the shares add up to the commission.
        """
        self.validate_credit_split(credit_split)
        if not credit_split:
            return []

        shares = [self._round(commission * e.percentage / HUNDRED) for e in credit_split]
        shares[-1] += self._round(commission) - sum(shares, Decimal("0"))
        return [CreditShare(role=e.role, amount=amount) for e, amount in zip(credit_split, shares)]


def _fmt_to(tier: PayoutTier) -> str:
    return "∞" if tier.to_value is None else str(tier.to_value)
