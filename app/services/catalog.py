"""Static store product catalog: product_id -> what a purchase grants."""

from dataclasses import dataclass

SUBSCRIPTION = "subscription"
MINUTES = "minutes"
COINS = "coins"
UNKNOWN = "unknown"


@dataclass(frozen=True)
class ProductInfo:
    product_id: str
    type: str
    amount: int | None = None
    plan: str | None = None  # subscriptions only


PRODUCT_CATALOG: dict[str, ProductInfo] = {
    p.product_id: p
    for p in (
        # Subscriptions
        ProductInfo("com.luna.pro.monthly", SUBSCRIPTION, plan="pro"),
        ProductInfo("com.luna.pro.yearly", SUBSCRIPTION, plan="pro"),
        ProductInfo("com.luna.couples.monthly", SUBSCRIPTION, plan="couples"),
        ProductInfo("com.luna.couples.yearly", SUBSCRIPTION, plan="couples"),
        # Voice minutes
        ProductInfo("com.luna.minutes.15", MINUTES, amount=15),
        ProductInfo("com.luna.minutes.30", MINUTES, amount=30),
        ProductInfo("com.luna.minutes.60", MINUTES, amount=60),
        ProductInfo("com.luna.minutes.120", MINUTES, amount=120),
        # Coins
        ProductInfo("com.luna.coins.100", COINS, amount=100),
        ProductInfo("com.luna.coins.500", COINS, amount=500),
        ProductInfo("com.luna.coins.1000", COINS, amount=1000),
        ProductInfo("com.luna.coins.2500", COINS, amount=2500),
    )
}


def get_product(product_id: str | None) -> ProductInfo | None:
    if not product_id:
        return None
    return PRODUCT_CATALOG.get(product_id)


def product_type_for(product_id: str | None) -> str:
    product = get_product(product_id)
    return product.type if product else UNKNOWN


def is_wallet_product(product: ProductInfo | None) -> bool:
    """True for consumables that credit a wallet (minutes, coins)."""
    return product is not None and product.type in (MINUTES, COINS) and bool(product.amount)


def list_products() -> list[dict]:
    return [
        {"product_id": p.product_id, "type": p.type, "amount": p.amount, "plan": p.plan}
        for p in PRODUCT_CATALOG.values()
    ]
