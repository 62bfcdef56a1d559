"""Static product -> token grant table.

Maintained as configuration; never derived at runtime. Store identifiers
differ per platform (App Store uses dots, Play uses underscores, web packs
carry a `_web` suffix), so each tier appears under several ids.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal

from src.shared.errors import UnknownProductError


class ProductKind(enum.Enum):
    SUBSCRIPTION = "subscription"
    CONSUMABLE = "consumable"


@dataclass(frozen=True)
class ProductGrant:
    """Tokens granted for one purchase of a product."""

    product_id: str
    tokens: Decimal
    tier: str
    kind: ProductKind


def _grants(
    tier: str,
    tokens: int,
    kind: ProductKind,
    product_ids: Iterable[str],
) -> list[ProductGrant]:
    return [ProductGrant(pid, Decimal(tokens), tier, kind) for pid in product_ids]


_SUB = ProductKind.SUBSCRIPTION
_PACK = ProductKind.CONSUMABLE

DEFAULT_PRODUCTS: tuple[ProductGrant, ...] = (
    # Monthly subscriptions: iOS, Android, Play Console, legacy
    *_grants(
        "starter",
        120,
        _SUB,
        (
            "nailit.starter.monthly",
            "nailit_starter_monthly",
            "starter_monthly",
            "sub_starter_monthly",
        ),
    ),
    *_grants(
        "plus",
        250,
        _SUB,
        ("nailit.plus.monthly", "nailit_plus_monthly", "plus_monthly", "sub_plus_monthly"),
    ),
    *_grants(
        "pro",
        480,
        _SUB,
        ("nailit.pro.monthly", "nailit_pro_monthly", "pro_monthly", "sub_pro_monthly"),
    ),
    *_grants(
        "power",
        1000,
        _SUB,
        (
            "nailit.power.monthly",
            "nailit_power_monthly",
            "power_monthly",
            "sub_power_monthly",
        ),
    ),
    # Token packs sold per tier (iOS / Android / web)
    *_grants("starter", 120, _PACK, ("tokens.starter", "tokens_starter", "tokens_starter_web")),
    *_grants("plus", 250, _PACK, ("tokens.plus", "tokens_plus", "tokens_plus_web")),
    *_grants("pro", 480, _PACK, ("tokens.pro", "tokens_pro", "tokens_pro_web")),
    *_grants("power", 1000, _PACK, ("tokens.power", "tokens_power", "tokens_power_web")),
    # Bulk consumables
    *_grants("pack_1k", 1000, _PACK, ("nailit.tokens.1k", "nailit_tokens_1k")),
    *_grants("pack_5k", 5000, _PACK, ("nailit.tokens.5k", "nailit_tokens_5k")),
)

# Free one-time grant on first sign-in. Not sold, so not in DEFAULT_PRODUCTS.
STARTER_PACK = ProductGrant("starter_free_20", Decimal(20), "starter_free", _PACK)


class ProductCatalog:
    """Lookup of token grants by external product identifier."""

    def __init__(self, products: Iterable[ProductGrant] = DEFAULT_PRODUCTS) -> None:
        self._products: dict[str, ProductGrant] = {}
        for product in products:
            if product.tokens <= 0:
                msg = f"Product {product.product_id} must grant a positive amount"
                raise ValueError(msg)
            self._products[product.product_id] = product

    @classmethod
    def from_mapping(
        cls,
        mapping: Mapping[str, int | str],
        *,
        tier: str = "custom",
        kind: ProductKind = ProductKind.CONSUMABLE,
    ) -> ProductCatalog:
        """Build a catalog from a plain {product_id: tokens} table."""
        return cls(
            ProductGrant(pid, Decimal(str(tokens)), tier, kind) for pid, tokens in mapping.items()
        )

    def lookup(self, product_id: str) -> ProductGrant:
        """Return the grant for a product.

        Raises:
            UnknownProductError: product_id is not mapped.
        """
        product = self._products.get(product_id)
        if product is None:
            raise UnknownProductError(product_id)
        return product

    def __contains__(self, product_id: object) -> bool:
        return product_id in self._products

    def __len__(self) -> int:
        return len(self._products)
