from app.business.catalog.models import CatalogProduct
from app.business.catalog.schemas import ProductCreate, ProductRead, ProductType, ProductUpdate

__all__ = [
    "CatalogProduct",
    "ProductCreate",
    "ProductRead",
    "ProductType",
    "ProductUpdate",
]
