from typing import Optional
from sqlalchemy import select
from sqlalchemy.orm import Session
from ordercore.db.external import Product, Customer

def get_product(db: Session, product_id: int) -> Optional[Product]:
    return db.get(Product, product_id)

def lock_product(db: Session, product_id: int) -> Optional[Product]:
    # populate_existing: re-read stock committed by whoever held the lock before us
    stmt = (
        select(Product)
        .where(Product.id == product_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalar_one_or_none()

def decrement_stock(product: Product, qty: int):
    product.stock_quantity = (product.stock_quantity or 0) - qty

def restock(db: Session, product_id: int, qty: int) -> Optional[Product]:
    product = lock_product(db, product_id)
    if product is None:
        return None
    product.stock_quantity = (product.stock_quantity or 0) + max(0, qty)
    return product

def get_customer(db: Session, customer_id: int) -> Optional[Customer]:
    return db.get(Customer, customer_id)

def find_customer_by_email(db: Session, email: str) -> Optional[Customer]:
    return db.execute(select(Customer).where(Customer.user_email == email)).scalar_one_or_none()
