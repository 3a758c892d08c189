"""
Money value object for handling monetary amounts with currency.

This value object ensures type safety and provides clear semantics
for monetary operations in the domain.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation


@dataclass(frozen=True)
class Money:
    """
    Immutable value object representing a monetary amount with currency.

    Attributes:
        amount: The monetary amount as Decimal, quantized to 2 places
        currency: ISO 4217 currency code (e.g., "USD", "THB")

    Example:
        >>> Money.from_minor_units(1_250_000, "MYR", divisor=100_000).amount
        Decimal('12.50')
    """

    amount: Decimal
    currency: str = "USD"

    def __post_init__(self) -> None:
        """Validate money object after initialization."""
        if not isinstance(self.amount, Decimal):
            try:
                object.__setattr__(self, "amount", Decimal(str(self.amount)))
            except InvalidOperation:
                raise ValueError(f"Invalid money amount: {self.amount!r}") from None

        if not self.amount.is_finite():
            raise ValueError(f"Invalid money amount: {self.amount}")

        object.__setattr__(self, "amount", self.amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))

        if self.amount < 0:
            raise ValueError(f"Money amount cannot be negative: {self.amount}")

        currency = (self.currency or "").strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            raise ValueError(f"Invalid currency code: {self.currency}")
        object.__setattr__(self, "currency", currency)

    def __str__(self) -> str:
        """String representation of Money."""
        return f"{self.currency} {self.amount:.2f}"

    @property
    def is_zero(self) -> bool:
        """Check if amount is zero."""
        return self.amount == Decimal("0")

    @classmethod
    def from_string(cls, amount: str, currency: str = "USD") -> "Money":
        """
        Create Money from a platform string ("1,299.00", " 15.5 ").

        Raises:
            ValueError: If the string is not a number
        """
        cleaned = str(amount).replace(",", "").strip()
        if not cleaned:
            raise ValueError("Empty money amount")
        try:
            return cls(amount=Decimal(cleaned), currency=currency)
        except InvalidOperation:
            raise ValueError(f"Invalid money amount: {amount!r}") from None

    @classmethod
    def from_minor_units(cls, value: int | str, currency: str, divisor: int = 100) -> "Money":
        """
        Create Money from integer minor units (cents, micro-units).

        Args:
            value: Integer amount in minor units
            currency: Currency code
            divisor: Minor units per major unit (100 for cents, 100000 for micro)
        """
        try:
            minor = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"Invalid minor-unit amount: {value!r}") from None
        return cls(amount=minor / Decimal(divisor), currency=currency)
