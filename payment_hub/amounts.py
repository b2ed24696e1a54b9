"""
Amount reconciliation: decides whether a reported paid amount covers the
expected price.

The processor deducts network and exchange fees from what reaches the
merchant, so an invoice counts as paid once the paid amount reaches
``sufficiency_ratio`` (0.95 by default, see ``Settings.sufficiency_ratio``)
of the expected price.
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict

DEFAULT_SUFFICIENCY_RATIO = Decimal("0.95")

AmountLike = Union["AmountEvidence", Decimal, int, float, str, None]


class AmountEvidence(BaseModel):
    """
    A reported amount together with the raw value it was parsed from.

    ``value`` is None both when nothing was reported and when the report could
    not be parsed; ``unparsable`` tells the two apart.
    """

    model_config = ConfigDict(frozen=True)

    raw: Any = None
    value: Optional[Decimal] = None

    @property
    def present(self) -> bool:
        return self.value is not None

    @property
    def unparsable(self) -> bool:
        return self.value is None and not _is_blank(self.raw)

    def describe(self) -> str:
        if self.present:
            return str(self.value)
        if self.unparsable:
            return f"unparsable({self.raw!r})"
        return "absent"


def _is_blank(raw: Any) -> bool:
    return raw is None or (isinstance(raw, str) and not raw.strip())


def parse_amount(raw: AmountLike) -> AmountEvidence:
    """Parse a processor amount. Never raises."""
    if isinstance(raw, AmountEvidence):
        return raw
    if _is_blank(raw) or isinstance(raw, bool):
        return AmountEvidence(raw=raw)
    if isinstance(raw, Decimal):
        value = raw
    elif isinstance(raw, (int, float)):
        value = Decimal(str(raw))
    elif isinstance(raw, str):
        try:
            value = Decimal(raw.strip())
        except InvalidOperation:
            return AmountEvidence(raw=raw)
    else:
        return AmountEvidence(raw=raw)
    if not value.is_finite():
        return AmountEvidence(raw=raw)
    return AmountEvidence(raw=raw, value=value)


def is_sufficient(
    expected: AmountLike,
    paid: AmountLike,
    ratio: Decimal = DEFAULT_SUFFICIENCY_RATIO,
) -> bool:
    """
    True when ``paid >= expected * ratio``.

    Fails closed: an absent or unparsable paid amount, or an expected price
    that is absent, unparsable or not positive, is never sufficient.
    """
    expected_value = parse_amount(expected).value
    paid_value = parse_amount(paid).value
    if paid_value is None or expected_value is None or expected_value <= 0:
        return False
    return paid_value >= expected_value * ratio


def threshold(expected: AmountLike, ratio: Decimal = DEFAULT_SUFFICIENCY_RATIO) -> Optional[Decimal]:
    expected_value = parse_amount(expected).value
    if expected_value is None:
        return None
    return expected_value * ratio
