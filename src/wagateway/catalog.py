from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .exceptions import CatalogUnavailable
from .persistence.crm import CrmRepository
from .session import ConnectionManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CatalogSnapshot:
    count: int
    products: list[Mapping[str, Any]] = field(default_factory=list)


def product_row(tenant_id: str, product: Mapping[str, Any]) -> dict[str, Any]:
    # Prices arrive in thousandths of the currency unit.
    price = product.get("priceAmount1000")
    return {
        "company_id": tenant_id,
        "product_id": str(product.get("productId") or product.get("id") or ""),
        "name": product.get("title") or product.get("name"),
        "description": product.get("description"),
        "price": price / 1000 if isinstance(price, (int, float)) else 0,
        "currency": product.get("currencyCode"),
        "image_url": product.get("mediaUrl"),
        "is_hidden": bool(product.get("isHidden", False)),
    }


class CatalogSync:
    """Mirrors the session account's own product catalog into `products`."""

    def __init__(self, sessions: ConnectionManager, crm: CrmRepository) -> None:
        self._sessions = sessions
        self._crm = crm

    async def fetch(self, session_id: str) -> CatalogSnapshot:
        session = self._sessions.require(session_id)
        socket, me = session.socket, session.me
        assert socket is not None
        if not me:
            raise CatalogUnavailable("session has no account yet")
        try:
            products = list(await socket.get_products(me))
        except Exception as e:
            raise CatalogUnavailable(f"catalog fetch failed: {e}") from e

        rows = [product_row(session.tenant_id, p) for p in products]
        rows = [r for r in rows if r["product_id"]]
        await self._crm.upsert_products(rows)
        logger.info("synced %d catalog products", len(rows))
        return CatalogSnapshot(count=len(products), products=products)
