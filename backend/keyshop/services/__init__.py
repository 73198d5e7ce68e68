from .orders import OrdersService
from .products import ProductsService
from .users import UsersService

__all__ = ["OrdersService", "ProductsService", "UsersService"]
