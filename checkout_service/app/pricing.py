from dataclasses import dataclass
from typing import Iterable

from .schemas import CartItem


@dataclass(frozen=True)
class ShippingPolicy:
    """Flat shipping fee, waived once the subtotal reaches the threshold."""
    free_shipping_threshold: int
    flat_fee: int

    def fee_for(self, subtotal: int) -> int:
        if subtotal >= self.free_shipping_threshold:
            return 0
        return self.flat_fee


@dataclass(frozen=True)
class Totals:
    subtotal: int
    shipping_fee: int
    total: int


def compute_totals(items: Iterable[CartItem], policy: ShippingPolicy) -> Totals:
    """Integer arithmetic over minor units; no rounding happens anywhere."""
    subtotal = sum(item.line_total for item in items)
    shipping_fee = policy.fee_for(subtotal)
    return Totals(subtotal=subtotal, shipping_fee=shipping_fee, total=subtotal + shipping_fee)
