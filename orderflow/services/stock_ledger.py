"""
Single authority for stock changes.

Every decrement and restore is one conditional UPDATE, so two writers racing
for the last units can never both win and stock can never go negative. The
ledger never commits: the caller owns the transaction.
"""
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from orderflow.core.exceptions import InsufficientStock, ProductNotFound, StockLedgerError, VariantNotFound
from orderflow.models.product import Product, ProductVariant

logger = structlog.get_logger()
LOW_STOCK_WARNING_THRESHOLD = 5


def _selector_matches(value: Optional[str], selector: Optional[str]) -> bool:
    if selector is None:
        return True
    return value is not None and value.strip().lower() == selector.strip().lower()


def _log_stock_depletion_warning(product_id: int, variant_id: Optional[int], remaining: int) -> None:
    if remaining <= 0:
        logger.warning("stock_depleted", product_id=product_id, variant_id=variant_id)
    elif remaining <= LOW_STOCK_WARNING_THRESHOLD:
        logger.warning(
            "stock_depletion_warning",
            product_id=product_id,
            variant_id=variant_id,
            stock_quantity=remaining,
        )


class StockLedger:

    def __init__(self, db: Session):
        self.db = db

    def get_product(self, product_id: int) -> Product:
        product = self.db.query(Product).filter(Product.id == product_id).first()
        if not product:
            raise ProductNotFound()
        return product

    def resolve_variant(
        self,
        product: Product,
        size: Optional[str] = None,
        color: Optional[str] = None,
        include_inactive: bool = False,
    ) -> Optional[ProductVariant]:
        """
        Pick the variant row addressed by ``size``/``color``.

        Returns None when the product does not track variants at all. When it
        does, the selectors must match exactly one (active) variant.
        """
        if not product.variants:
            return None

        matches = [
            variant
            for variant in product.variants
            if (include_inactive or variant.is_active)
            and _selector_matches(variant.size, size)
            and _selector_matches(variant.color, color)
        ]
        if len(matches) != 1:
            raise VariantNotFound(size, color)
        return matches[0]

    def available(self, product_id: int, size: Optional[str] = None, color: Optional[str] = None) -> int:
        product = self.get_product(product_id)
        variant = self.resolve_variant(product, size, color)
        if variant is not None:
            return variant.stock_quantity
        return product.total_stock

    def check_available(
        self,
        product_id: int,
        size: Optional[str],
        color: Optional[str],
        quantity: int,
    ) -> bool:
        return self.available(product_id, size, color) >= quantity

    def locate_variant(
        self,
        product: Product,
        size: Optional[str],
        color: Optional[str],
        variant_id: Optional[int] = None,
        include_inactive: bool = False,
    ) -> Optional[ProductVariant]:
        """Look the variant up by id when the caller recorded one, else by selectors."""
        if variant_id is None:
            return self.resolve_variant(product, size, color, include_inactive=include_inactive)
        variant = next((v for v in product.variants if v.id == variant_id), None)
        if variant is None:
            raise VariantNotFound(size, color)
        return variant

    def decrement(
        self,
        product_id: int,
        size: Optional[str],
        color: Optional[str],
        quantity: int,
        variant_id: Optional[int] = None,
    ) -> None:
        """Take ``quantity`` units out of stock or raise InsufficientStock. Never clamps, never retries."""
        if quantity <= 0:
            raise ValueError("quantity must be positive")

        product = self.get_product(product_id)
        variant = self.locate_variant(product, size, color, variant_id)

        if variant is not None:
            updated = (
                self.db.query(ProductVariant)
                .filter(ProductVariant.id == variant.id, ProductVariant.stock_quantity >= quantity)
                .update(
                    {
                        ProductVariant.stock_quantity: ProductVariant.stock_quantity - quantity,
                        ProductVariant.sold_count: ProductVariant.sold_count + quantity,
                    },
                    synchronize_session=False,
                )
            )
            if updated == 0:
                available = self._current_variant_stock(variant.id)
                logger.warning(
                    "stock_decrement_rejected",
                    product_id=product_id,
                    variant_id=variant.id,
                    requested=quantity,
                    available=available,
                )
                raise InsufficientStock(available)

        updated = (
            self.db.query(Product)
            .filter(Product.id == product.id, Product.total_stock >= quantity)
            .update(
                {
                    Product.total_stock: Product.total_stock - quantity,
                    Product.sold_count: Product.sold_count + quantity,
                },
                synchronize_session=False,
            )
        )
        if updated == 0:
            available = self._current_product_stock(product.id)
            logger.warning(
                "stock_decrement_rejected",
                product_id=product_id,
                requested=quantity,
                available=available,
            )
            raise InsufficientStock(available)

        self._expire(product, variant)
        remaining = variant.stock_quantity if variant is not None else product.total_stock
        logger.info(
            "stock_decremented",
            product_id=product_id,
            variant_id=variant.id if variant is not None else None,
            quantity=quantity,
            remaining=remaining,
        )
        _log_stock_depletion_warning(product_id, variant.id if variant is not None else None, remaining)

    def restore(
        self,
        product_id: int,
        size: Optional[str],
        color: Optional[str],
        quantity: int,
        variant_id: Optional[int] = None,
    ) -> None:
        """Put ``quantity`` units back. Restoring more than was sold is a ledger error."""
        if quantity <= 0:
            raise ValueError("quantity must be positive")

        product = self.get_product(product_id)
        variant = self.locate_variant(product, size, color, variant_id, include_inactive=True)

        if variant is not None:
            updated = (
                self.db.query(ProductVariant)
                .filter(ProductVariant.id == variant.id, ProductVariant.sold_count >= quantity)
                .update(
                    {
                        ProductVariant.stock_quantity: ProductVariant.stock_quantity + quantity,
                        ProductVariant.sold_count: ProductVariant.sold_count - quantity,
                    },
                    synchronize_session=False,
                )
            )
            if updated == 0:
                raise StockLedgerError(
                    f"Cannot restore {quantity} units to variant {variant.id}: more than were sold"
                )

        updated = (
            self.db.query(Product)
            .filter(Product.id == product.id, Product.sold_count >= quantity)
            .update(
                {
                    Product.total_stock: Product.total_stock + quantity,
                    Product.sold_count: Product.sold_count - quantity,
                },
                synchronize_session=False,
            )
        )
        if updated == 0:
            raise StockLedgerError(
                f"Cannot restore {quantity} units to product {product.id}: more than were sold"
            )

        self._expire(product, variant)
        logger.info(
            "stock_restored",
            product_id=product_id,
            variant_id=variant.id if variant is not None else None,
            quantity=quantity,
        )

    def _current_variant_stock(self, variant_id: int) -> int:
        return self.db.query(ProductVariant.stock_quantity).filter(ProductVariant.id == variant_id).scalar() or 0

    def _current_product_stock(self, product_id: int) -> int:
        return self.db.query(Product.total_stock).filter(Product.id == product_id).scalar() or 0

    def _expire(self, product: Product, variant: Optional[ProductVariant]) -> None:
        # Bulk UPDATEs bypass the identity map
        self.db.expire(product, ["total_stock", "sold_count"])
        if variant is not None:
            self.db.expire(variant, ["stock_quantity", "sold_count"])
