from pydantic import Field

from cafe_pos.schemas.product import Product
from cafe_pos.schemas.wire import PaymentMethod, ProductCategory, ServiceType, UtcDatetime, WireModel

class CartLine(WireModel):
    product_id: str = Field(alias="id")
    name: str = ""
    category: ProductCategory | None = None
    unit_price: float = Field(alias="price", ge=0)
    unit_cost: float = Field(default=0.0, alias="cost", ge=0)
    quantity: int = Field(default=1, ge=1)
    description: str | None = None

    @classmethod
    def from_product(cls, product: Product, quantity: int = 1):
        return cls(
            product_id=product.id,
            name=product.name,
            category=product.category,
            unit_price=product.price,
            unit_cost=product.cost,
            quantity=quantity,
        )

    @property
    def line_total(self) -> float:
        return self.unit_price * self.quantity

    @property
    def line_cost(self) -> float:
        return self.unit_cost * self.quantity

    @property
    def is_cafeteria(self) -> bool:
        return self.category is ProductCategory.CAFETERIA

class OrderPayload(WireModel):
    items: list[CartLine]
    subtotal: float
    discount: float = 0.0
    tip: float = 0.0
    total: float
    total_cost: float = 0.0
    client_name: str = ""
    service_type: ServiceType = ServiceType.TABLE
    payment_method: PaymentMethod
    customer_id: str | None = None
    user_id: str | None = None

class Order(OrderPayload):
    id: str
    date: UtcDatetime
