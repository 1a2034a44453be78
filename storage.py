"""
Data Access Layer

Domain operations for the storefront (users, cart, favorites, orders) built
only on Database.query / run / transaction with typed statements, so the
same code runs unchanged on the SQLite and key/value backends.

Check-then-write sequences (cart upsert, favorite toggle, order creation,
user updates, and signup in auth.py) hold `write_lock`. The key/value
backend has no constraints of its own, so this lock is what keeps one row
per (user_id, product_id) and one user per email there. Cascading deletes are done here explicitly
for the same reason.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from bson import ObjectId

from database import Database
from schemas import (
    ORDER_STATUSES,
    CartItem,
    CartLine,
    FavoriteItem,
    Order,
    OrderItem,
    ShippingInfo,
    Stats,
    User,
)
from session import Session
from statements import Delete, Eq, Insert, Select, Update, normalize_email

logger = logging.getLogger(__name__)

USER_UPDATABLE = ("name", "email", "password", "profile_image", "phone", "address")


def new_id(prefix: str) -> str:
    # ObjectId = 4-byte timestamp + random value + counter
    return f"{prefix}_{ObjectId()}"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


class StorageService:
    def __init__(self, database: Database, session: Session):
        self.db = database
        self.session = session
        self.write_lock = asyncio.Lock()

    # ===================== USERS =====================

    async def get_all_users(self) -> List[User]:
        rows = await self.db.query(Select("users", order_by="created_at"))
        return [User.model_validate(r) for r in rows]

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        rows = await self.db.query(Select("users", where=(Eq("id", user_id),), limit=1))
        return User.model_validate(rows[0]) if rows else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        rows = await self.db.query(Select("users", where=(Eq.ci("email", email),), limit=1))
        return User.model_validate(rows[0]) if rows else None

    async def create_user(
        self,
        name: str,
        email: str,
        password: str,
        profile_image: Optional[str] = None,
        phone: Optional[str] = None,
        address: Optional[str] = None,
    ) -> User:
        """Insert a user. Email uniqueness is the caller's check (see auth.signup)."""
        user = User(
            id=new_id("USER"),
            name=name,
            email=normalize_email(email),
            password=password,
            profile_image=profile_image,
            phone=phone,
            address=address,
            created_at=now_iso(),
        )
        await self.db.run(Insert("users", user.model_dump()))
        logger.info(f"Created user {user.id}")
        return user

    async def update_user(self, user_id: str, updates: Dict[str, Any]) -> Optional[User]:
        unknown = set(updates) - set(USER_UPDATABLE)
        if unknown:
            raise ValueError(f"Cannot update user fields: {', '.join(sorted(unknown))}")
        async with self.write_lock:
            user = await self.get_user_by_id(user_id)
            if user is None:
                return None

            data = user.model_dump()
            data.update(updates)
            data["email"] = normalize_email(data["email"])
            updated = User.model_validate(data)

            if updated.email != user.email:
                owner = await self.get_user_by_email(updated.email)
                if owner is not None and owner.id != user_id:
                    raise ValueError(f"Email already registered: {updated.email}")

            # whole record written back: the key/value path has no partial update
            await self.db.run(Update(
                "users",
                {k: getattr(updated, k) for k in USER_UPDATABLE},
                where=(Eq("id", user_id),),
            ))
        if self.session.user is not None and self.session.user.id == user_id:
            self.session.set_user(updated)
        return updated

    async def delete_user(self, user_id: str) -> bool:
        async def cascade() -> int:
            orders = await self.db.query(Select("orders", where=(Eq("user_id", user_id),), columns=("id",)))
            for order in orders:
                await self.db.run(Delete("order_items", where=(Eq("order_id", order["id"]),)))
            await self.db.run(Delete("orders", where=(Eq("user_id", user_id),)))
            await self.db.run(Delete("favorites", where=(Eq("user_id", user_id),)))
            await self.db.run(Delete("cart_items", where=(Eq("user_id", user_id),)))
            result = await self.db.run(Delete("users", where=(Eq("id", user_id),)))
            return result.changes

        async with self.write_lock:
            changes = await self.db.transaction(cascade)
        if changes and self.session.user is not None and self.session.user.id == user_id:
            self.session.clear()
        return changes > 0

    # ===================== SESSION =====================

    def get_current_user(self) -> Optional[User]:
        return self.session.user

    def set_current_user(self, user: Optional[User]) -> None:
        self.session.set_user(user)

    async def login(self, email: str, password: str) -> Optional[User]:
        """Exact stored-value match on (email, password). Hash checks happen in auth.login."""
        rows = await self.db.query(Select(
            "users",
            where=(Eq.ci("email", email), Eq("password", password)),
            limit=1,
        ))
        if not rows:
            return None
        user = User.model_validate(rows[0])
        self.session.set_user(user)
        return user

    def logout(self) -> None:
        self.session.clear()

    # ===================== CART =====================

    async def get_cart_items(self, user_id: str) -> List[CartItem]:
        rows = await self.db.query(Select("cart_items", where=(Eq("user_id", user_id),), order_by="added_at"))
        return [CartItem.model_validate(r) for r in rows]

    async def _get_cart_item(self, item_id: str) -> Optional[CartItem]:
        rows = await self.db.query(Select("cart_items", where=(Eq("id", item_id),), limit=1))
        return CartItem.model_validate(rows[0]) if rows else None

    async def add_to_cart(self, user_id: str, product_id: str, quantity: int = 1) -> CartItem:
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        async with self.write_lock:
            rows = await self.db.query(Select(
                "cart_items",
                where=(Eq("user_id", user_id), Eq("product_id", product_id)),
                limit=1,
            ))
            if rows:
                item = CartItem.model_validate(rows[0])
                new_quantity = item.quantity + quantity
                await self.db.run(Update("cart_items", {"quantity": new_quantity}, where=(Eq("id", item.id),)))
                return item.model_copy(update={"quantity": new_quantity})

            item = CartItem(
                id=new_id("CART"),
                user_id=user_id,
                product_id=product_id,
                quantity=quantity,
                added_at=now_iso(),
            )
            await self.db.run(Insert("cart_items", item.model_dump()))
            return item

    async def update_cart_item_quantity(self, item_id: str, quantity: int) -> Optional[CartItem]:
        """Set a quantity. Zero or less removes the row and returns None."""
        if quantity <= 0:
            await self.remove_from_cart(item_id)
            return None
        result = await self.db.run(Update("cart_items", {"quantity": quantity}, where=(Eq("id", item_id),)))
        if not result.changes:
            return None
        return await self._get_cart_item(item_id)

    async def remove_from_cart(self, item_id: str) -> Optional[CartItem]:
        item = await self._get_cart_item(item_id)
        if item is not None:
            await self.db.run(Delete("cart_items", where=(Eq("id", item_id),)))
        return item

    async def clear_cart(self, user_id: str) -> int:
        result = await self.db.run(Delete("cart_items", where=(Eq("user_id", user_id),)))
        return result.changes

    async def get_cart_count(self, user_id: str) -> int:
        # summed here: the key/value interpreter has no aggregates
        return sum(item.quantity for item in await self.get_cart_items(user_id))

    # ===================== FAVORITES =====================

    async def get_favorite_items(self, user_id: str) -> List[FavoriteItem]:
        rows = await self.db.query(Select("favorites", where=(Eq("user_id", user_id),), order_by="added_at"))
        return [FavoriteItem.model_validate(r) for r in rows]

    async def get_favorite_product_ids(self, user_id: str) -> List[str]:
        return [item.product_id for item in await self.get_favorite_items(user_id)]

    async def _find_favorite(self, user_id: str, product_id: str) -> Optional[FavoriteItem]:
        rows = await self.db.query(Select(
            "favorites",
            where=(Eq("user_id", user_id), Eq("product_id", product_id)),
            limit=1,
        ))
        return FavoriteItem.model_validate(rows[0]) if rows else None

    async def _insert_favorite(self, user_id: str, product_id: str) -> FavoriteItem:
        item = FavoriteItem(id=new_id("FAV"), user_id=user_id, product_id=product_id, added_at=now_iso())
        await self.db.run(Insert("favorites", item.model_dump()))
        return item

    async def _delete_favorite(self, user_id: str, product_id: str) -> bool:
        result = await self.db.run(Delete("favorites", where=(Eq("user_id", user_id), Eq("product_id", product_id))))
        return result.changes > 0

    async def add_to_favorites(self, user_id: str, product_id: str) -> FavoriteItem:
        async with self.write_lock:
            existing = await self._find_favorite(user_id, product_id)
            if existing is not None:
                return existing
            return await self._insert_favorite(user_id, product_id)

    async def remove_from_favorites(self, user_id: str, product_id: str) -> bool:
        async with self.write_lock:
            return await self._delete_favorite(user_id, product_id)

    async def toggle_favorite(self, user_id: str, product_id: str) -> bool:
        """Returns True when the product is a favorite afterwards."""
        async with self.write_lock:
            if await self._find_favorite(user_id, product_id) is not None:
                await self._delete_favorite(user_id, product_id)
                return False
            await self._insert_favorite(user_id, product_id)
            return True

    async def is_favorite(self, user_id: str, product_id: str) -> bool:
        return await self._find_favorite(user_id, product_id) is not None

    # ===================== ORDERS =====================

    def _order_from_row(self, row: Dict[str, Any], items: List[OrderItem]) -> Order:
        data = dict(row)
        raw_address = data.pop("shipping_address", None)
        data["shipping_info"] = ShippingInfo.model_validate(json.loads(raw_address) if raw_address else {})
        data["items"] = items
        return Order.model_validate(data)

    async def get_order_items(self, order_id: str) -> List[OrderItem]:
        rows = await self.db.query(Select("order_items", where=(Eq("order_id", order_id),)))
        return [OrderItem.model_validate(r) for r in rows]

    async def get_all_orders(self, user_id: str) -> List[Order]:
        rows = await self.db.query(Select(
            "orders",
            where=(Eq("user_id", user_id),),
            order_by="date",
            descending=True,
        ))
        return [self._order_from_row(row, await self.get_order_items(row["id"])) for row in rows]

    async def get_order_by_id(self, order_id: str) -> Optional[Order]:
        rows = await self.db.query(Select("orders", where=(Eq("id", order_id),), limit=1))
        if not rows:
            return None
        return self._order_from_row(rows[0], await self.get_order_items(order_id))

    async def create_order(
        self,
        user_id: str,
        lines: Sequence[CartLine],
        shipping_info: ShippingInfo,
        payment_method: str,
        subtotal: float,
        shipping: float,
        tax: float,
        total: float,
        status: str = "pending",
    ) -> Order:
        """
        Write one order header plus one order item per line inside a single
        transaction. Names, prices and images are copied from the products
        so later catalog changes do not touch past orders. Only SQLite can
        roll back a partial write; the key/value backend cannot.
        """
        if not lines:
            raise ValueError("Cannot create an order without items")

        order_id = new_id("ORD")
        items = [
            OrderItem(
                id=new_id("ORDITEM"),
                order_id=order_id,
                product_id=line.product.id,
                name=line.product.name,
                price=line.product.price,
                quantity=line.quantity,
                image=line.product.image,
            )
            for line in lines
        ]
        order = Order(
            id=order_id,
            user_id=user_id,
            date=now_iso(),
            items=items,
            subtotal=subtotal,
            tax=tax,
            shipping=shipping,
            total=total,
            status=status,
            shipping_info=shipping_info,
            payment_method=payment_method,
        )

        async def write() -> None:
            await self.db.run(Insert("orders", {
                "id": order.id,
                "user_id": order.user_id,
                "date": order.date,
                "subtotal": order.subtotal,
                "tax": order.tax,
                "shipping": order.shipping,
                "total": order.total,
                "status": order.status,
                "shipping_address": order.shipping_info.model_dump_json(),
                "payment_method": order.payment_method,
            }))
            for item in items:
                await self.db.run(Insert("order_items", item.model_dump()))

        async with self.write_lock:
            await self.db.transaction(write)
        logger.info(f"Created order {order.id} with {len(items)} item(s) for {user_id}")
        return order

    async def update_order_status(self, order_id: str, status: str) -> Optional[Order]:
        if status not in ORDER_STATUSES:
            raise ValueError(f"Invalid order status: {status}")
        result = await self.db.run(Update("orders", {"status": status}, where=(Eq("id", order_id),)))
        if not result.changes:
            return None
        return await self.get_order_by_id(order_id)

    async def delete_order(self, order_id: str) -> bool:
        async def cascade() -> int:
            await self.db.run(Delete("order_items", where=(Eq("order_id", order_id),)))
            result = await self.db.run(Delete("orders", where=(Eq("id", order_id),)))
            return result.changes

        async with self.write_lock:
            return await self.db.transaction(cascade) > 0

    # ===================== UTILITY =====================

    async def clear_all_data(self) -> None:
        await self.db.clear_all_data()
        self.session.clear()
        logger.info("All app data cleared")

    async def export_data(self) -> Dict[str, Any]:
        users = await self.get_all_users()
        current = self.session.user
        return {
            "users": [u.model_dump() for u in users],
            "current_user": current.model_dump() if current else None,
        }

    async def get_stats(self, user_id: str) -> Stats:
        orders = await self.get_all_orders(user_id)
        favorites = await self.get_favorite_items(user_id)
        return Stats(
            total_orders=len(orders),
            total_favorites=len(favorites),
            cart_items_count=await self.get_cart_count(user_id),
            total_spent=round(sum(o.total for o in orders), 2),
        )
