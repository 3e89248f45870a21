from dataclasses import dataclass
from typing import List
from sqlalchemy import select, delete
from sqlalchemy.orm import Session
from ordercore.db.external import CartItem

@dataclass(frozen=True)
class CartLine:
    user_email: str
    product_id: int
    quantity: int

def get_lines(db: Session, email: str, lock: bool = False) -> List[CartLine]:
    """Snapshot the user's cart; ``lock`` holds the cart rows until commit."""
    stmt = select(CartItem).where(CartItem.user_email == email).order_by(CartItem.product_id)
    if lock:
        stmt = stmt.with_for_update()
    rows = db.execute(stmt).scalars().all()
    return [CartLine(user_email=r.user_email, product_id=r.product_id, quantity=r.quantity) for r in rows]

def clear_cart(db: Session, email: str) -> int:
    result = db.execute(delete(CartItem).where(CartItem.user_email == email))
    return result.rowcount
