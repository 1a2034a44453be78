import logging
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, EmailStr, Field

import auth
from config import Settings, get_settings
from database import Database, create_backend
from errors import DatabaseError
from kvstore import open_store
from schemas import CartItem, CartLine, Order, OrderStatus, ShippingInfo, Stats, User
from session import Session
from storage import StorageService

settings = get_settings()
logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Cookie Shop Storage API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def build_storage(cfg: Settings) -> StorageService:
    # one store holds both the key/value buckets and the session slot
    store = open_store(cfg.storage_path)
    session = Session(store)
    session.load()
    logger.info(f"Storage backend selected: {cfg.storage_backend}")
    return StorageService(Database(create_backend(cfg, store)), session)


_storage: Optional[StorageService] = None


def get_storage() -> StorageService:
    global _storage
    if _storage is None:
        _storage = build_storage(settings)
    return _storage


# Models

class UserOut(BaseModel):
    id: str
    name: str
    email: str
    profile_image: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    created_at: str


def public(user: User) -> UserOut:
    return UserOut(**user.model_dump(exclude={"password"}))


class SignUpRequest(BaseModel):
    name: str
    email: EmailStr
    password: str

class SignInRequest(BaseModel):
    email: EmailStr
    password: str

class AuthResponse(BaseModel):
    user_id: str
    name: str
    email: str

class UpdateUserRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    profile_image: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None

class AddToCartRequest(BaseModel):
    user_id: str
    product_id: str
    quantity: int = Field(1, ge=1)

class UpdateQuantityRequest(BaseModel):
    quantity: int

class ToggleFavoriteRequest(BaseModel):
    user_id: str
    product_id: str

class CreateOrderRequest(BaseModel):
    user_id: str
    items: List[CartLine] = Field(..., min_length=1)
    shipping_info: ShippingInfo
    payment_method: str
    subtotal: float = Field(..., ge=0)
    shipping: float = Field(0, ge=0)
    tax: float = Field(0, ge=0)
    total: float = Field(..., ge=0)

class StatusRequest(BaseModel):
    status: OrderStatus


# Routes

@app.get("/")
def root():
    return {"message": "Cookie shop storage API running"}

@app.get("/test")
async def test_database(storage: StorageService = Depends(get_storage)):
    resp = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "storage_backend": storage.db.backend_name,
        "connection_status": "Not Connected",
        "tables": {},
    }
    try:
        resp["tables"] = await storage.db.counts()
        resp["database"] = "✅ Connected & Working"
        resp["connection_status"] = "Connected"
    except DatabaseError as e:
        resp["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return resp


# Auth

@app.post("/auth/signup", response_model=AuthResponse)
async def signup(payload: SignUpRequest, storage: StorageService = Depends(get_storage)):
    try:
        user = await auth.signup(storage, payload.name, payload.email, payload.password, settings.auth_salt)
    except auth.AuthError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return AuthResponse(user_id=user.id, name=user.name, email=user.email)

@app.post("/auth/signin", response_model=AuthResponse)
async def signin(payload: SignInRequest, storage: StorageService = Depends(get_storage)):
    user = await auth.login(storage, payload.email, payload.password, settings.auth_salt)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return AuthResponse(user_id=user.id, name=user.name, email=user.email)

@app.post("/auth/logout")
def logout(storage: StorageService = Depends(get_storage)):
    storage.logout()
    return {"ok": True}

@app.get("/auth/me", response_model=Optional[UserOut])
def me(storage: StorageService = Depends(get_storage)):
    user = storage.get_current_user()
    return public(user) if user else None


# Users

@app.get("/users/{user_id}", response_model=UserOut)
async def get_user(user_id: str, storage: StorageService = Depends(get_storage)):
    user = await storage.get_user_by_id(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return public(user)

@app.patch("/users/{user_id}", response_model=UserOut)
async def update_user(user_id: str, payload: UpdateUserRequest, storage: StorageService = Depends(get_storage)):
    try:
        user = await storage.update_user(user_id, payload.model_dump(exclude_none=True))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return public(user)

@app.delete("/users/{user_id}")
async def delete_user(user_id: str, storage: StorageService = Depends(get_storage)):
    if not await storage.delete_user(user_id):
        raise HTTPException(status_code=404, detail="User not found")
    return {"ok": True}

@app.get("/users/{user_id}/orders", response_model=List[Order])
async def list_orders(user_id: str, storage: StorageService = Depends(get_storage)):
    return await storage.get_all_orders(user_id)

@app.get("/users/{user_id}/stats", response_model=Stats)
async def user_stats(user_id: str, storage: StorageService = Depends(get_storage)):
    return await storage.get_stats(user_id)


# Cart

@app.get("/cart/{user_id}")
async def get_cart(user_id: str, storage: StorageService = Depends(get_storage)):
    items = await storage.get_cart_items(user_id)
    return {"items": items, "count": sum(i.quantity for i in items)}

@app.get("/cart/{user_id}/count")
async def cart_count(user_id: str, storage: StorageService = Depends(get_storage)):
    return {"count": await storage.get_cart_count(user_id)}

@app.post("/cart/add", response_model=CartItem)
async def add_to_cart(payload: AddToCartRequest, storage: StorageService = Depends(get_storage)):
    return await storage.add_to_cart(payload.user_id, payload.product_id, payload.quantity)

@app.patch("/cart/items/{item_id}")
async def update_cart_item(item_id: str, payload: UpdateQuantityRequest, storage: StorageService = Depends(get_storage)):
    item = await storage.update_cart_item_quantity(item_id, payload.quantity)
    if item is None and payload.quantity > 0:
        raise HTTPException(status_code=404, detail="Cart item not found")
    return {"item": item}

@app.delete("/cart/items/{item_id}", response_model=CartItem)
async def remove_cart_item(item_id: str, storage: StorageService = Depends(get_storage)):
    item = await storage.remove_from_cart(item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Cart item not found")
    return item

@app.delete("/cart/{user_id}")
async def clear_cart(user_id: str, storage: StorageService = Depends(get_storage)):
    return {"removed": await storage.clear_cart(user_id)}


# Favorites

@app.get("/favorites/{user_id}")
async def list_favorites(user_id: str, storage: StorageService = Depends(get_storage)):
    return {"product_ids": await storage.get_favorite_product_ids(user_id)}

@app.post("/favorites/toggle")
async def toggle_favorite(payload: ToggleFavoriteRequest, storage: StorageService = Depends(get_storage)):
    return {"favorite": await storage.toggle_favorite(payload.user_id, payload.product_id)}


# Orders

@app.post("/orders", response_model=Order)
async def create_order(payload: CreateOrderRequest, storage: StorageService = Depends(get_storage)):
    order = await storage.create_order(
        user_id=payload.user_id,
        lines=payload.items,
        shipping_info=payload.shipping_info,
        payment_method=payload.payment_method,
        subtotal=payload.subtotal,
        shipping=payload.shipping,
        tax=payload.tax,
        total=payload.total,
    )
    # checkout empties the cart once the order is stored
    await storage.clear_cart(payload.user_id)
    return order

@app.get("/orders/{order_id}", response_model=Order)
async def get_order(order_id: str, storage: StorageService = Depends(get_storage)):
    order = await storage.get_order_by_id(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order

@app.patch("/orders/{order_id}/status", response_model=Order)
async def update_order_status(order_id: str, payload: StatusRequest, storage: StorageService = Depends(get_storage)):
    order = await storage.update_order_status(order_id, payload.status)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


# Reset

@app.post("/reset")
async def reset(storage: StorageService = Depends(get_storage)):
    await storage.clear_all_data()
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
