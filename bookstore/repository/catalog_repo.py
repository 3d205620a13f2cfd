from sqlalchemy.orm import Session, selectinload
from bookstore.models.catalog import Address, Book, Cart, CartItem, Promotion, PromotionUsage, User
from typing import Dict, Iterable, Optional


class CatalogRepository:
    """用户、地址、图书、购物车、促销的只读端口"""

    def __init__(self, db: Session):
        self.db = db

    def get_user(self, user_id) -> Optional[User]:
        return self.db.query(User).filter(User.id == user_id).first()

    def get_address(self, address_id) -> Optional[Address]:
        return self.db.query(Address).filter(Address.id == address_id).first()

    def get_default_address(self, user_id) -> Optional[Address]:
        return (
            self.db.query(Address)
            .filter(Address.user_id == user_id)
            .order_by(Address.is_default.desc(), Address.created_at.asc())
            .first()
        )

    def get_books(self, book_ids: Iterable) -> Dict:
        ids = list(book_ids)
        if not ids:
            return {}
        books = self.db.query(Book).filter(Book.id.in_(ids)).all()
        return {book.id: book for book in books}

    def get_cart(self, user_id) -> Optional[Cart]:
        return (
            self.db.query(Cart)
            .options(selectinload(Cart.items))
            .filter(Cart.user_id == user_id)
            .first()
        )

    def clear_cart(self, cart_id) -> int:
        deleted = self.db.query(CartItem).filter(CartItem.cart_id == cart_id).delete(synchronize_session=False)
        cart = self.db.query(Cart).filter(Cart.id == cart_id).first()
        if cart:
            cart.promo_code = None
            self.db.expire(cart, ["items"])
        return deleted

    def get_promotion_by_code(self, code: str, for_update: bool = False) -> Optional[Promotion]:
        query = self.db.query(Promotion).filter(Promotion.code == code)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_promotion(self, promotion_id) -> Optional[Promotion]:
        return self.db.query(Promotion).filter(Promotion.id == promotion_id).first()

    def record_promotion_usage(self, promotion: Promotion, user_id, order_id, discount) -> PromotionUsage:
        usage = PromotionUsage(
            promotion_id=promotion.id,
            user_id=user_id,
            order_id=order_id,
            discount_amount=discount,
        )
        self.db.add(usage)
        promotion.current_uses = (promotion.current_uses or 0) + 1
        self.db.flush()
        return usage
