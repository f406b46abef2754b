# invomaker/services/catalog.py
import logging
import uuid
from decimal import Decimal
from typing import List

from invomaker.models.catalog import (
    BusinessProfile, Customer, CustomerData, CustomerUpdate,
    Product, ProductData, ProductUpdate,
)
from invomaker.services.errors import NotFound

logger = logging.getLogger(__name__)

LOW_STOCK_THRESHOLD = Decimal("10")


class Catalog:
    """Clients, produits et profil de l entreprise. Les factures n y gardent qu une reference."""

    def __init__(self, store):
        self.store = store

    async def list_customers(self, query: str = "") -> List[Customer]:
        """Recherche sur le nom, l email et le telephone, sans tenir compte de la casse."""
        return await self.store.list_customers(query)

    async def get_customer(self, customer_id: str) -> Customer:
        return await self.store.load_customer(customer_id)

    async def create_customer(self, data: CustomerData) -> Customer:
        customer = Customer(id=uuid.uuid4().hex, **data.model_dump())
        await self.store.save_customer(customer)
        logger.info("Client cree", extra={"extra": {"customer_id": customer.id}})
        return customer

    async def update_customer(self, customer_id: str, changes: CustomerUpdate) -> Customer:
        customer = await self.store.load_customer(customer_id)
        fields = changes.model_dump(exclude_unset=True)
        if fields.get("name", "") is None:
            del fields["name"]
        updated = customer.model_copy(update=fields)
        await self.store.save_customer(updated)
        return updated

    async def delete_customer(self, customer_id: str) -> None:
        # les factures gardent leur customer_id, seule la recherche echoue ensuite
        await self.store.delete_customer(customer_id)
        logger.info("Client supprime", extra={"extra": {"customer_id": customer_id}})

    async def list_products(self, include_inactive: bool = False, query: str = "") -> List[Product]:
        if query:
            # la recherche ne porte que sur les produits actifs
            return await self.store.search_products(query)
        return await self.store.list_products(include_inactive)

    async def get_product_by_barcode(self, barcode: str) -> Product:
        product = await self.store.find_product_by_barcode(barcode)
        if product is None:
            raise NotFound(f"Aucun produit actif pour le code-barres {barcode}")
        return product

    async def low_stock_products(self, threshold: Decimal = LOW_STOCK_THRESHOLD) -> List[Product]:
        return await self.store.low_stock_products(threshold)

    async def get_product(self, product_id: str) -> Product:
        return await self.store.load_product(product_id)

    async def create_product(self, data: ProductData) -> Product:
        product = Product(id=uuid.uuid4().hex, **data.model_dump())
        await self.store.save_product(product)
        logger.info("Produit cree", extra={"extra": {"product_id": product.id}})
        return product

    async def update_product(self, product_id: str, changes: ProductUpdate) -> Product:
        """Les lignes de facture existantes ne sont pas modifiees : elles ont leur propre copie."""
        product = await self.store.load_product(product_id)
        fields = {k: v for k, v in changes.model_dump(exclude_unset=True).items() if v is not None}
        updated = product.model_copy(update=fields)
        await self.store.save_product(updated)
        return updated

    async def delete_product(self, product_id: str) -> None:
        await self.store.delete_product(product_id)

    async def get_business(self) -> BusinessProfile:
        return await self.store.load_business()

    async def update_business(self, profile: BusinessProfile) -> BusinessProfile:
        await self.store.save_business(profile)
        logger.info("Profil entreprise mis a jour", extra={"extra": {"name": profile.name}})
        return profile
