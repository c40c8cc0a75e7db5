"""
Amortization Module

Equal-installment (reducing balance) repayment schedules. All math is done
in Decimal and every money amount is rounded half-up to cents; the final
period absorbs the accumulated rounding so the balance ends at exactly zero.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from dataclasses import dataclass, field
from typing import List, Optional, Union

from .errors import InvalidLoanTerms

CENT = Decimal('0.01')

Number = Union[Decimal, int, str, float]


def to_cents(value: Decimal) -> Decimal:
    """Round a Decimal half-up to two places"""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _as_decimal(value: Number, name: str) -> Decimal:
    try:
        # str() first so floats like 28.75 do not carry binary noise
        result = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidLoanTerms(f"{name} must be numeric, got {value!r}")
    if not result.is_finite():
        raise InvalidLoanTerms(f"{name} must be a finite number, got {value!r}")
    return result


@dataclass
class AmortizationEntry:
    """Single period of a repayment schedule"""
    period: int
    payment: Decimal
    principal: Decimal
    interest: Decimal
    balance: Decimal   # Remaining principal after this payment

    def __post_init__(self):
        if self.principal + self.interest != self.payment:
            raise ValueError(f"Payment {self.payment} does not equal "
                             f"principal {self.principal} + interest {self.interest}")


@dataclass
class AmortizationSchedule:
    """Result of an amortization calculation"""
    principal: Decimal
    annual_rate_percent: Decimal
    term_months: int
    monthly_payment: Decimal
    total_repayment: Decimal
    total_interest: Decimal
    entries: List[AmortizationEntry] = field(default_factory=list)

    @property
    def final_balance(self) -> Decimal:
        return self.entries[-1].balance if self.entries else self.principal


class AmortizationCalculator:
    """
    Computes the standard amortizing-loan payment

        M = P * r * (1 + r)^n / ((1 + r)^n - 1),  r = annual% / 100 / 12

    with the degenerate r = 0 case M = P / n.
    """

    def monthly_payment(self, principal: Number, annual_rate_percent: Number,
                        term_months: int) -> Decimal:
        """Monthly installment rounded to cents"""
        p, annual, rate, n = self._validate(principal, annual_rate_percent, term_months)
        return to_cents(self._raw_payment(p, rate, n))

    def schedule(
        self,
        principal: Number,
        annual_rate_percent: Number,
        term_months: int,
        include_breakdown: bool = False
    ) -> AmortizationSchedule:
        """
        Calculate the repayment schedule

        Args:
            principal: Amount borrowed (> 0)
            annual_rate_percent: Nominal annual rate in percent (>= 0), e.g. 28.75
            term_months: Number of monthly installments (> 0)
            include_breakdown: Attach the per-period principal/interest/balance rows

        Returns:
            AmortizationSchedule; entries is empty unless include_breakdown is set
        """
        p, annual, rate, n = self._validate(principal, annual_rate_percent, term_months)
        payment = to_cents(self._raw_payment(p, rate, n))
        entries = self._build_entries(p, rate, n, payment)

        total_repayment = sum((e.payment for e in entries), Decimal('0'))

        return AmortizationSchedule(
            principal=p,
            annual_rate_percent=annual,
            term_months=n,
            monthly_payment=payment,
            total_repayment=total_repayment,
            total_interest=total_repayment - p,
            entries=entries if include_breakdown else []
        )

    def _validate(self, principal: Number, annual_rate_percent: Number, term_months: int):
        p = _as_decimal(principal, "principal")
        annual = _as_decimal(annual_rate_percent, "annual_rate_percent")

        if isinstance(term_months, bool) or not isinstance(term_months, int):
            raise InvalidLoanTerms(f"term_months must be an integer, got {term_months!r}")
        if term_months <= 0:
            raise InvalidLoanTerms(f"term_months must be positive, got {term_months}")
        if p <= 0:
            raise InvalidLoanTerms(f"principal must be positive, got {p}")
        if annual < 0:
            raise InvalidLoanTerms(f"annual_rate_percent cannot be negative, got {annual}")

        return p, annual, annual / Decimal('100') / Decimal('12'), term_months

    def _raw_payment(self, principal: Decimal, periodic_rate: Decimal, n: int) -> Decimal:
        if periodic_rate == 0:
            return principal / Decimal(n)
        factor = (Decimal('1') + periodic_rate) ** n
        return principal * periodic_rate * factor / (factor - Decimal('1'))

    def _build_entries(self, principal: Decimal, periodic_rate: Decimal, n: int,
                       payment: Decimal) -> List[AmortizationEntry]:
        entries = []
        balance = to_cents(principal)

        for period in range(1, n + 1):
            interest = to_cents(balance * periodic_rate)

            if period == n:
                # Pay off exactly what is left
                principal_part = balance
            else:
                principal_part = max(min(payment - interest, balance), Decimal('0'))

            balance = balance - principal_part
            entries.append(AmortizationEntry(
                period=period,
                payment=principal_part + interest,
                principal=principal_part,
                interest=interest,
                balance=balance
            ))

            if balance == 0:
                break

        return entries


_default_calculator: Optional[AmortizationCalculator] = None


def schedule(principal: Number, annual_rate_percent: Number, term_months: int,
             include_breakdown: bool = False) -> AmortizationSchedule:
    """Module-level convenience wrapper around AmortizationCalculator.schedule"""
    global _default_calculator
    if _default_calculator is None:
        _default_calculator = AmortizationCalculator()
    return _default_calculator.schedule(principal, annual_rate_percent, term_months, include_breakdown)
