from decimal import Decimal
from typing import Dict, Optional

from order_engine.enums import DeliveryOption

CITY_FEES = {
    "Accra": Decimal("15"),
    "Kumasi": Decimal("15"),
    "Tema": Decimal("20"),
    "Takoradi": Decimal("25"),
    "Tamale": Decimal("30"),
    "Cape Coast": Decimal("25"),
}
DEFAULT_FEE = Decimal("20")


class DeliveryFeePolicy:
    """Flat per-city fee table. Swap in another policy object for distance pricing."""

    def __init__(self, city_fees: Optional[Dict[str, Decimal]] = None, default_fee: Decimal = DEFAULT_FEE):
        self.city_fees = dict(CITY_FEES if city_fees is None else city_fees)
        self.default_fee = default_fee

    def fee_for(self, option: DeliveryOption, city: Optional[str] = None) -> Decimal:
        if option in (DeliveryOption.PICKUP, DeliveryOption.CUSTOMER_ARRANGED):
            return Decimal("0")
        return self.city_fees.get(city or "", self.default_fee)
