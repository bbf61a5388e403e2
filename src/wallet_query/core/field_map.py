"""
Canonical card schema and the natural-language token lookup.

Every field a query can reference is a member of CardField. Natural-language
tokens are resolved once, at decomposition time, through FIELD_TOKENS.

Matching Order:
    Phrases are matched longest first and a matched span is consumed, so
    "payment network" resolves to card_network before the bare "payment"
    (amount_to_pay) can claim the same words. The order is a correctness
    invariant of the lookup.
"""

import re
from dataclasses import dataclass
from enum import Enum


class CardField(Enum):
    """Closed set of canonical card record fields."""

    ISSUER = "issuer"
    CARD_NETWORK = "card_network"
    CARD_TYPE = "card_type"
    CARD_NAME = "card_name"
    NICKNAME = "nickname"
    CURRENT_BALANCE = "current_balance"
    APR = "apr"
    CREDIT_LIMIT = "credit_limit"
    ANNUAL_FEE = "annual_fee"
    AMOUNT_TO_PAY = "amount_to_pay"
    UTILIZATION = "utilization"
    AVAILABLE_CREDIT = "available_credit"
    PAYMENT_DUE_DATE = "payment_due_date"
    PAYMENT_DUE_DAY = "payment_due_day"
    STATEMENT_CYCLE_START = "statement_cycle_start"
    STATEMENT_CYCLE_END = "statement_cycle_end"
    STATEMENT_CLOSE_DAY = "statement_close_day"
    GRACE_PERIOD_DAYS = "grace_period_days"
    REWARD_STRUCTURE = "reward_structure"
    IS_MANUAL_ENTRY = "is_manual_entry"
    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"


class FieldCategory(Enum):
    """Schema grouping of card fields."""

    IDENTITY = "identity"
    FINANCIAL = "financial"
    DATE = "date"
    COMPUTED = "computed"
    REWARD = "reward"
    METADATA = "metadata"


class ValueType(Enum):
    """How values of a field are coerced and compared."""

    TEXT = "text"
    MONEY = "money"
    PERCENT = "percent"
    INTEGER = "integer"
    DATE = "date"
    BOOLEAN = "boolean"
    JSON = "json"

    @property
    def is_numeric(self) -> bool:
        return self in (ValueType.MONEY, ValueType.PERCENT, ValueType.INTEGER)


@dataclass(frozen=True)
class FieldSpec:
    """Static description of one canonical field."""

    category: FieldCategory
    value_type: ValueType
    label: str
    source_keys: tuple[str, ...] = ()  # alternative record keys, checked after the canonical name


FIELD_SPECS: dict[CardField, FieldSpec] = {
    CardField.ISSUER: FieldSpec(FieldCategory.IDENTITY, ValueType.TEXT, "Issuer", ("bank",)),
    CardField.CARD_NETWORK: FieldSpec(FieldCategory.IDENTITY, ValueType.TEXT, "Network", ("network",)),
    CardField.CARD_TYPE: FieldSpec(FieldCategory.IDENTITY, ValueType.TEXT, "Card type", ("type",)),
    CardField.CARD_NAME: FieldSpec(FieldCategory.IDENTITY, ValueType.TEXT, "Card name", ("name",)),
    CardField.NICKNAME: FieldSpec(FieldCategory.IDENTITY, ValueType.TEXT, "Nickname"),
    CardField.CURRENT_BALANCE: FieldSpec(FieldCategory.FINANCIAL, ValueType.MONEY, "Balance", ("balance",)),
    CardField.APR: FieldSpec(FieldCategory.FINANCIAL, ValueType.PERCENT, "APR", ("interest_rate",)),
    CardField.CREDIT_LIMIT: FieldSpec(FieldCategory.FINANCIAL, ValueType.MONEY, "Credit limit", ("limit",)),
    CardField.ANNUAL_FEE: FieldSpec(FieldCategory.FINANCIAL, ValueType.MONEY, "Annual fee"),
    CardField.AMOUNT_TO_PAY: FieldSpec(
        FieldCategory.FINANCIAL, ValueType.MONEY, "Payment amount", ("minimum_payment", "payment_amount")
    ),
    CardField.UTILIZATION: FieldSpec(FieldCategory.COMPUTED, ValueType.PERCENT, "Utilization"),
    CardField.AVAILABLE_CREDIT: FieldSpec(FieldCategory.COMPUTED, ValueType.MONEY, "Available credit"),
    CardField.PAYMENT_DUE_DATE: FieldSpec(FieldCategory.DATE, ValueType.DATE, "Payment due date", ("due_date",)),
    CardField.PAYMENT_DUE_DAY: FieldSpec(FieldCategory.DATE, ValueType.INTEGER, "Payment due day"),
    CardField.STATEMENT_CYCLE_START: FieldSpec(FieldCategory.DATE, ValueType.DATE, "Statement start"),
    CardField.STATEMENT_CYCLE_END: FieldSpec(FieldCategory.DATE, ValueType.DATE, "Statement end"),
    CardField.STATEMENT_CLOSE_DAY: FieldSpec(FieldCategory.DATE, ValueType.INTEGER, "Statement close day"),
    CardField.GRACE_PERIOD_DAYS: FieldSpec(
        FieldCategory.FINANCIAL, ValueType.INTEGER, "Grace period (days)", ("grace_period",)
    ),
    CardField.REWARD_STRUCTURE: FieldSpec(FieldCategory.REWARD, ValueType.JSON, "Rewards", ("rewards",)),
    CardField.IS_MANUAL_ENTRY: FieldSpec(FieldCategory.METADATA, ValueType.BOOLEAN, "Manual entry"),
    CardField.CREATED_AT: FieldSpec(FieldCategory.METADATA, ValueType.DATE, "Added on"),
    CardField.UPDATED_AT: FieldSpec(FieldCategory.METADATA, ValueType.DATE, "Last updated"),
}


FIELD_TOKENS: dict[str, CardField] = {
    # Identity
    "card issuer": CardField.ISSUER,
    "issuing bank": CardField.ISSUER,
    "issuers": CardField.ISSUER,
    "issuer": CardField.ISSUER,
    "banks": CardField.ISSUER,
    "bank": CardField.ISSUER,
    "payment networks": CardField.CARD_NETWORK,
    "payment network": CardField.CARD_NETWORK,
    "card networks": CardField.CARD_NETWORK,
    "card network": CardField.CARD_NETWORK,
    "networks": CardField.CARD_NETWORK,
    "network": CardField.CARD_NETWORK,
    "types of cards": CardField.CARD_TYPE,
    "kinds of cards": CardField.CARD_TYPE,
    "card types": CardField.CARD_TYPE,
    "card type": CardField.CARD_TYPE,
    "types": CardField.CARD_TYPE,
    "type": CardField.CARD_TYPE,
    "card names": CardField.CARD_NAME,
    "card name": CardField.CARD_NAME,
    "names": CardField.CARD_NAME,
    "name": CardField.CARD_NAME,
    "nicknames": CardField.NICKNAME,
    "nickname": CardField.NICKNAME,
    # Financial
    "current balances": CardField.CURRENT_BALANCE,
    "current balance": CardField.CURRENT_BALANCE,
    "outstanding balance": CardField.CURRENT_BALANCE,
    "balances": CardField.CURRENT_BALANCE,
    "balance": CardField.CURRENT_BALANCE,
    "debt": CardField.CURRENT_BALANCE,
    "owe": CardField.CURRENT_BALANCE,
    "interest rates": CardField.APR,
    "interest rate": CardField.APR,
    "aprs": CardField.APR,
    "apr": CardField.APR,
    "rates": CardField.APR,
    "rate": CardField.APR,
    "credit limits": CardField.CREDIT_LIMIT,
    "credit limit": CardField.CREDIT_LIMIT,
    "spending limit": CardField.CREDIT_LIMIT,
    "limits": CardField.CREDIT_LIMIT,
    "limit": CardField.CREDIT_LIMIT,
    "annual fees": CardField.ANNUAL_FEE,
    "annual fee": CardField.ANNUAL_FEE,
    "fees": CardField.ANNUAL_FEE,
    "fee": CardField.ANNUAL_FEE,
    "minimum payments": CardField.AMOUNT_TO_PAY,
    "minimum payment": CardField.AMOUNT_TO_PAY,
    "payment amounts": CardField.AMOUNT_TO_PAY,
    "payment amount": CardField.AMOUNT_TO_PAY,
    "amount to pay": CardField.AMOUNT_TO_PAY,
    "amount due": CardField.AMOUNT_TO_PAY,
    "payments": CardField.AMOUNT_TO_PAY,
    "payment": CardField.AMOUNT_TO_PAY,
    "grace periods": CardField.GRACE_PERIOD_DAYS,
    "grace period": CardField.GRACE_PERIOD_DAYS,
    "grace": CardField.GRACE_PERIOD_DAYS,
    # Computed
    "credit utilization": CardField.UTILIZATION,
    "utilization rate": CardField.UTILIZATION,
    "utilization": CardField.UTILIZATION,
    "usage": CardField.UTILIZATION,
    "available credit": CardField.AVAILABLE_CREDIT,
    "remaining credit": CardField.AVAILABLE_CREDIT,
    "credit available": CardField.AVAILABLE_CREDIT,
    # Dates
    "payment due dates": CardField.PAYMENT_DUE_DATE,
    "payment due date": CardField.PAYMENT_DUE_DATE,
    "due dates": CardField.PAYMENT_DUE_DATE,
    "due date": CardField.PAYMENT_DUE_DATE,
    "due": CardField.PAYMENT_DUE_DATE,
    "payment due day": CardField.PAYMENT_DUE_DAY,
    "due day": CardField.PAYMENT_DUE_DAY,
    "statement cycle start": CardField.STATEMENT_CYCLE_START,
    "statement start": CardField.STATEMENT_CYCLE_START,
    "cycle start": CardField.STATEMENT_CYCLE_START,
    "statement cycle end": CardField.STATEMENT_CYCLE_END,
    "statement closing date": CardField.STATEMENT_CYCLE_END,
    "statement close": CardField.STATEMENT_CYCLE_END,
    "statement end": CardField.STATEMENT_CYCLE_END,
    "closing date": CardField.STATEMENT_CYCLE_END,
    "cycle end": CardField.STATEMENT_CYCLE_END,
    "statement closing day": CardField.STATEMENT_CLOSE_DAY,
    "statement close day": CardField.STATEMENT_CLOSE_DAY,
    "close day": CardField.STATEMENT_CLOSE_DAY,
    # Rewards
    "reward structure": CardField.REWARD_STRUCTURE,
    "cash back": CardField.REWARD_STRUCTURE,
    "cashback": CardField.REWARD_STRUCTURE,
    "rewards": CardField.REWARD_STRUCTURE,
    "reward": CardField.REWARD_STRUCTURE,
    "points": CardField.REWARD_STRUCTURE,
    # Metadata
    "manually entered": CardField.IS_MANUAL_ENTRY,
    "manual entry": CardField.IS_MANUAL_ENTRY,
    "date added": CardField.CREATED_AT,
    "added on": CardField.CREATED_AT,
    "created": CardField.CREATED_AT,
    "last updated": CardField.UPDATED_AT,
    "updated": CardField.UPDATED_AT,
}

# Longest phrase first: more words, then more characters.
ORDERED_TOKENS: list[tuple[str, CardField]] = sorted(
    FIELD_TOKENS.items(), key=lambda item: (-len(item[0].split()), -len(item[0]), item[0])
)

_PHRASE_PATTERNS: list[tuple[re.Pattern[str], str, CardField]] = [
    (re.compile(rf"\b{re.escape(phrase)}\b"), phrase, card_field) for phrase, card_field in ORDERED_TOKENS
]

_CANONICAL_NAMES: dict[str, CardField] = {card_field.value: card_field for card_field in CardField}


@dataclass(frozen=True)
class FieldMention:
    """A field phrase found in normalized text."""

    token: str
    field: CardField
    start: int
    end: int


def normalize_token(token: str) -> str:
    """Lowercase, turn underscores into spaces and collapse whitespace."""
    return " ".join(token.replace("_", " ").lower().split())


def resolve_field(token: str | None) -> CardField | None:
    """
    Map a natural-language token (or a canonical name) to a CardField.

    Returns:
        The canonical field, or None when the token has no mapping
    """
    if not token:
        return None
    stripped = token.strip().lower()
    if stripped in _CANONICAL_NAMES:
        return _CANONICAL_NAMES[stripped]
    return FIELD_TOKENS.get(normalize_token(token))


def find_field_mentions(text: str, taken: list[bool] | None = None) -> list[FieldMention]:
    """
    Find field phrases in lowercase text, longest phrases first.

    Args:
        text: Normalized (lowercase) text
        taken: Optional per-character mask of spans already claimed by other
            entities. Updated in place with the spans claimed here.

    Returns:
        Mentions ordered by position in the text
    """
    if taken is None:
        taken = [False] * len(text)
    mentions: list[FieldMention] = []
    for pattern, phrase, card_field in _PHRASE_PATTERNS:
        for match in pattern.finditer(text):
            start, end = match.span()
            if any(taken[start:end]):
                continue
            for i in range(start, end):
                taken[i] = True
            mentions.append(FieldMention(token=phrase, field=card_field, start=start, end=end))
    mentions.sort(key=lambda m: m.start)
    return mentions


def field_spec(card_field: CardField) -> FieldSpec:
    return FIELD_SPECS[card_field]


def is_numeric_field(card_field: CardField) -> bool:
    return FIELD_SPECS[card_field].value_type.is_numeric
