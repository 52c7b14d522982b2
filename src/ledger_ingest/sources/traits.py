"""
Per-account-type sign tables.

Every account type states explicitly how each record kind maps onto the
canonical signed amount and flow. Direction is never inferred from a
category. Debt balances (loans, card balances owed) are negative; payments
that reduce a debt move the balance toward zero.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from ..schemas.ledger import AccountType, Flow, RawTransaction


@dataclass(frozen=True)
class SignRule:
    """
    How one record kind becomes a canonical amount.

    ``sign=None`` keeps the amount as printed and derives the flow from
    its sign; otherwise the canonical amount is ``sign * |printed|``.
    """

    sign: Optional[int] = None
    flow: Optional[Flow] = None

    def apply(self, printed: Decimal) -> tuple[Decimal, Flow]:
        if self.sign is None:
            amount = printed
        else:
            amount = abs(printed) if self.sign > 0 else -abs(printed)

        if self.flow is not None:
            return amount, self.flow
        if amount > 0:
            return amount, Flow.INCOME
        if amount < 0:
            return amount, Flow.EXPENSE
        return amount, Flow.NEUTRAL


AS_PRINTED = SignRule()


@dataclass(frozen=True)
class AccountTrait:
    """Sign table, balance convention and note fields of one account type."""

    account_type: AccountType
    rules: dict[str, SignRule] = field(default_factory=dict)
    default: SignRule = AS_PRINTED
    # Multiplier turning a printed running balance into the holder's view
    balance_sign: int = 1
    # Source fields copied into the canonical notes, in order
    note_fields: tuple[str, ...] = ()

    def rule_for(self, kind: str) -> SignRule:
        return self.rules.get(kind, self.default)

    def canonical_amount(self, raw: RawTransaction) -> tuple[Decimal, Flow]:
        """Signed canonical amount and flow for a non-skipped raw record."""
        if raw.amount is None:
            raise ValueError(f"Record {raw.sequence} has no amount: {raw.skip_reason}")
        return self.rule_for(raw.kind).apply(raw.amount)

    def canonical_balance(self, raw: RawTransaction) -> Optional[Decimal]:
        if raw.balance is None:
            return None
        return raw.balance * self.balance_sign

    def notes(self, raw: RawTransaction) -> str:
        parts = []
        for name in self.note_fields:
            value = raw.source_fields.get(name)
            if value not in (None, ""):
                parts.append(f"{name}: {value}")
        return "; ".join(parts)


CHECKING = AccountTrait(
    account_type=AccountType.CHECKING,
    rules={"credit": AS_PRINTED, "debit": AS_PRINTED},
    note_fields=("reference",),
)

CREDIT_CARD = AccountTrait(
    account_type=AccountType.CREDIT_CARD,
    rules={
        "charge": SignRule(sign=-1, flow=Flow.EXPENSE),
        "fee": SignRule(sign=-1, flow=Flow.EXPENSE),
        "payment": SignRule(sign=1, flow=Flow.NEUTRAL),
        "refund": SignRule(sign=1, flow=Flow.INCOME),
    },
    # Card statements print the amount owed as a positive balance
    balance_sign=-1,
    note_fields=("reference", "type"),
)

LOAN = AccountTrait(
    account_type=AccountType.LOAN,
    rules={
        # Principal part of a repayment reduces the (negative) debt balance
        "repayment": SignRule(sign=1, flow=Flow.NEUTRAL),
        "disbursement": SignRule(sign=-1, flow=Flow.NEUTRAL),
    },
    # Remaining principal is printed as a positive number
    balance_sign=-1,
    note_fields=("period", "payment", "interest"),
)

ACCOUNT_TRAITS: dict[AccountType, AccountTrait] = {
    trait.account_type: trait for trait in (CHECKING, CREDIT_CARD, LOAN)
}


def trait_for(account_type: AccountType | str) -> AccountTrait:
    return ACCOUNT_TRAITS[AccountType(account_type)]
