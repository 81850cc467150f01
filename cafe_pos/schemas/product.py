from cafe_pos.schemas.wire import ProductCategory, WireModel

class Product(WireModel):
    id: str
    name: str
    price: float
    cost: float = 0.0
    stock: float = 0.0
    description: str = ""
    category: ProductCategory | None = None
