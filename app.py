# app.py
import logging
import sys
from datetime import datetime, timezone
from typing import Optional, Any, Dict, List

from fastapi import FastAPI, Request, HTTPException, Depends, Query, UploadFile, File, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr
from pymongo import MongoClient
from pymongo.errors import PyMongoError
import certifi
import jwt

# ---------- LOGGING CONFIGURATION ----------
# Console handler that never chokes on non-ASCII (names, addresses, emoji in chat)
class _SafeStreamHandler(logging.StreamHandler):
    def emit(self, record):
        try:
            msg = self.format(record)
            msg = msg.encode("ascii", errors="replace").decode("ascii")
            self.stream.write(msg + self.terminator)
            self.flush()
        except Exception:
            self.handleError(record)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[_SafeStreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)

logger.info("=" * 80)
logger.info("QUICKCART BACKEND STARTING...")
logger.info("=" * 80)

# ---------- CONFIG ----------
import config
from errors import ServiceError
from helpers import serialize_doc, to_object_id
from auth_service import AuthService, decode_access_token, public_user
from product_service import ProductService
from delivery_service import DeliveryService, slot_view
from order_service import OrderService, order_view
from payment_service import StripePaymentService
from review_service import ReviewService
from notification_service import MSG91Service, NotificationService, PushNotificationService
from chat_service import ChatService
from faq_service import FAQService
from upload_service import ImageUploadService
from realtime import manager, order_room, chat_room

# ---------- APP ----------
app = FastAPI(title="QuickCart API")

logger.info("FastAPI app initialized")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_URL, config.ADMIN_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

logger.info("CORS middleware configured")

# ---------- REQUEST LOGGING MIDDLEWARE ----------
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = datetime.now()
    logger.info(f"[INCOMING] {request.method} {request.url.path}")

    try:
        response = await call_next(request)
        duration = (datetime.now() - start_time).total_seconds()
        status_str = "[OK]" if response.status_code < 400 else "[ERR]"
        logger.info(f"{status_str} RESPONSE: {request.method} {request.url.path} - Status: {response.status_code} - Duration: {duration:.3f}s")
        return response
    except Exception as e:
        duration = (datetime.now() - start_time).total_seconds()
        logger.error(f"[ERROR] {request.method} {request.url.path} - {str(e)} - Duration: {duration:.3f}s")
        raise

logger.info("Request logging middleware configured")

security = HTTPBearer(auto_error=False)

# ---------- DATABASE (lazy connect on first request) ----------
db_connected = False
mongo_connection_error = None
client = None
db = None
users_collection = None

auth_service = None
product_service = None
delivery_service = None
order_service = None
payment_service = None
review_service = None
notification_service = None
msg91_service = None
chat_service = None
faq_service = None
upload_service = None


def init_services(database, mailer=None, push=None, uploads=None):
    """Build every service on top of `database`. Integrations can be swapped in."""
    global db, users_collection, db_connected
    global auth_service, product_service, delivery_service, order_service, payment_service
    global review_service, notification_service, msg91_service, chat_service, faq_service, upload_service
    db = database
    users_collection = db[config.USERS_COLLECTION]
    db_connected = True

    msg91_service = mailer or MSG91Service()
    notification_service = NotificationService(db, push or PushNotificationService())
    auth_service = AuthService(db, msg91_service)
    product_service = ProductService(db)
    delivery_service = DeliveryService(db)
    order_service = OrderService(db, delivery_service, notification_service, msg91_service)
    payment_service = StripePaymentService(db)
    review_service = ReviewService(db)
    chat_service = ChatService(db, notification_service)
    faq_service = FAQService(db)
    upload_service = uploads or ImageUploadService()
    return db


def _ensure_indexes():
    for service in (auth_service, product_service, delivery_service, order_service, payment_service,
                    review_service, notification_service, chat_service, faq_service):
        try:
            service.ensure_indexes()
        except PyMongoError as e:
            logger.warning("Index creation failed for %s: %s", type(service).__name__, e)


def ensure_db():
    """Connect on first use with config.MONGO_URI."""
    global client, db_connected, mongo_connection_error
    if db is not None:
        return db
    uri = config.MONGO_URI
    if not uri:
        mongo_connection_error = "MONGO_URI not set. Set MONGO_URI in .env."
        return None
    sep = "&" if "?" in uri else "?"
    uri_with_opts = uri.rstrip("/") + sep + "tlsDisableOCSPEndpointCheck=true"

    def _connect(use_uri, tls_ca_file=None, tls_allow_invalid=False):
        kw = dict(
            serverSelectionTimeoutMS=30000,
            connectTimeoutMS=30000,
            socketTimeoutMS=30000,
            retryWrites=True,
        )
        if tls_ca_file:
            kw["tlsCAFile"] = tls_ca_file
        if tls_allow_invalid:
            kw["tlsAllowInvalidCertificates"] = True
            kw["tlsAllowInvalidHostnames"] = True
        return MongoClient(use_uri, **kw)

    try:
        attempts = [
            ("CA bundle", lambda: _connect(uri_with_opts, tls_ca_file=certifi.where())),
            ("tlsAllowInvalidCertificates", lambda: _connect(uri_with_opts, tls_allow_invalid=True)),
        ]
        connected = None
        last_err = None
        for name, connect_fn in attempts:
            try:
                c = connect_fn()
                c.server_info()  # force connection now
                connected = c
                break
            except PyMongoError as e:
                last_err = e
                if "SSL" in str(e) or "TLS" in str(e) or "handshake" in str(e).lower():
                    logger.warning("MongoDB TLS failed (%s), trying next option", name)
                    continue
                raise
        if connected is None and last_err:
            raise last_err
        client = connected
        init_services(client[config.DATABASE_NAME])
        _ensure_indexes()
        mongo_connection_error = None
        logger.info("MongoDB connected (lazy): %s", config.DATABASE_NAME)
        return db
    except PyMongoError as e:
        mongo_connection_error = str(e)
        db_connected = False
        logger.error("MONGODB DISCONNECTED - REASON: %s", mongo_connection_error)
        return None


@app.middleware("http")
async def ensure_db_middleware(request: Request, call_next):
    ensure_db()
    return await call_next(request)

# ---------- ERROR HANDLERS ----------
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "msg": exc.msg})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"[ERR] Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"success": False, "msg": "Internal server error"})


def ok(**payload):
    return {"success": True, **serialize_doc(payload)}

# ---------- TOKEN DEPENDENCY ----------
def _user_from_token(token: str) -> dict:
    payload = decode_access_token(token)
    user = users_collection.find_one({"_id": to_object_id(payload.get("user_id"))})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def verify_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)):
    if not credentials:
        raise HTTPException(status_code=401, detail="Missing authentication credentials")
    if not db_connected:
        raise HTTPException(status_code=503, detail="Database not connected")
    try:
        user = _user_from_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except (jwt.InvalidTokenError, ServiceError) as e:
        logger.warning(f"[AUTH] Invalid token - {e}")
        raise HTTPException(status_code=401, detail="Invalid token")
    if user.get("is_blocked"):
        raise HTTPException(status_code=403, detail="Account is blocked")
    return user


def require_admin(current_user: dict = Depends(verify_token)):
    if current_user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return current_user


def require_delivery(current_user: dict = Depends(verify_token)):
    if current_user.get("role") not in ("delivery", "admin"):
        raise HTTPException(status_code=403, detail="Delivery partner access required")
    return current_user

# ---------- ROOT / HEALTH ----------
@app.get("/")
async def root():
    return {
        "message": "QuickCart API",
        "docs": "/docs",
        "health": "/api/health",
        "redoc": "/redoc"
    }


@app.get("/api/health")
@app.get("/health")
async def health_check():
    user_count = users_collection.count_documents({}) if db_connected else None
    out = {
        "success": True,
        "message": "API is running",
        "mongodb": "connected" if db_connected else "disconnected",
        "total_users": user_count,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if not db_connected and mongo_connection_error:
        out["mongodb_error"] = mongo_connection_error
    return out


@app.get("/api/why-disconnected")
async def why_disconnected():
    """Returns the exact reason MongoDB is disconnected."""
    return {
        "mongodb": "connected" if db_connected else "disconnected",
        "reason": mongo_connection_error if (not db_connected and mongo_connection_error) else None,
    }

# ---------- AUTH ----------
class RegisterRequest(BaseModel):
    first_name: str
    last_name: Optional[str] = ""
    email: Optional[EmailStr] = None
    mobile: Optional[str] = None
    password: str

class LoginRequest(BaseModel):
    identifier: str
    password: str

class RefreshRequest(BaseModel):
    refresh_token: str

class SendOtpRequest(BaseModel):
    type: str
    phone: Optional[str] = None
    email: Optional[EmailStr] = None

class VerifyOtpRequest(BaseModel):
    type: str
    otp: str
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

class GoogleAuthRequest(BaseModel):
    id_token: str

class ForgotPasswordRequest(BaseModel):
    email: EmailStr

class ResetPasswordRequest(BaseModel):
    token: str
    password: str

class UserLocationRequest(BaseModel):
    latitude: float
    longitude: float
    address: Optional[str] = None

class AddressRequest(BaseModel):
    action: str
    address: Dict[str, Any] = {}

class DeviceTokenRequest(BaseModel):
    token: str
    platform: Optional[str] = "web"

class PreferencesRequest(BaseModel):
    language: Optional[str] = None
    notifications: Optional[Dict[str, bool]] = None
    categories: Optional[List[str]] = None


@app.post("/api/auth/register")
async def register(request: RegisterRequest):
    result = auth_service.register(request.first_name, request.last_name, request.password,
                                   email=request.email, mobile=request.mobile)
    return {"success": True, **result}


@app.post("/api/auth/login")
async def login(request: LoginRequest):
    return {"success": True, **auth_service.login(request.identifier, request.password)}


@app.post("/api/auth/refresh")
async def refresh_token(request: RefreshRequest):
    return {"success": True, **auth_service.refresh(request.refresh_token)}


@app.post("/api/auth/logout")
async def logout(current_user: dict = Depends(verify_token)):
    auth_service.logout(current_user["_id"])
    return {"success": True, "message": "Logged out"}


@app.post("/api/auth/send-otp")
async def send_otp(request: SendOtpRequest):
    return auth_service.send_otp(request.type, phone=request.phone, email=request.email)


@app.post("/api/auth/verify-otp")
async def verify_otp(request: VerifyOtpRequest):
    result = auth_service.verify_otp(request.type, request.otp, phone=request.phone, email=request.email,
                                     first_name=request.first_name, last_name=request.last_name)
    return {"success": True, "message": "Verified successfully", **result}


@app.post("/api/auth/google-auth")
async def google_auth(request: GoogleAuthRequest):
    return {"success": True, **auth_service.google_auth(request.id_token)}


@app.post("/api/auth/forgot-password")
async def forgot_password(request: ForgotPasswordRequest):
    return auth_service.forgot_password(request.email)


@app.post("/api/auth/reset-password")
async def reset_password(request: ResetPasswordRequest):
    return auth_service.reset_password(request.token, request.password)


@app.get("/api/auth/profile")
async def get_profile(current_user: dict = Depends(verify_token)):
    return {"success": True, "user": public_user(current_user)}


@app.put("/api/auth/location")
async def update_location(request: UserLocationRequest, current_user: dict = Depends(verify_token)):
    location = auth_service.update_location(current_user["_id"], request.latitude, request.longitude, request.address)
    return ok(message="Location updated successfully", location=location)


@app.post("/api/auth/address")
async def manage_address(request: AddressRequest, current_user: dict = Depends(verify_token)):
    addresses = auth_service.manage_address(current_user["_id"], request.action, request.address)
    return ok(message=f"Address {request.action} successful", addresses=addresses)


@app.post("/api/auth/device-token")
async def register_device_token(request: DeviceTokenRequest, current_user: dict = Depends(verify_token)):
    auth_service.register_device_token(current_user["_id"], request.token, request.platform)
    return {"success": True, "message": "Device token registered successfully"}


@app.put("/api/auth/preferences")
async def update_preferences(request: PreferencesRequest, current_user: dict = Depends(verify_token)):
    preferences = auth_service.update_preferences(current_user["_id"], request.model_dump(exclude_none=True))
    return ok(preferences=preferences)

# ---------- SEARCH / CATALOG ----------
class ProductRequest(BaseModel):
    title: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    category: Optional[str] = None
    brand: Optional[str] = None
    color: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    quantity: Optional[int] = None
    images: Optional[List[Dict[str, Any]]] = None

class CategoryRequest(BaseModel):
    title: str


@app.get("/api/search")
async def search_products(
    q: Optional[str] = None,
    category: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    brand: Optional[str] = None,
    sort: Optional[str] = None,
    limit: int = 20,
):
    products = product_service.search(q, category, min_price, max_price, brand, sort, limit)
    return ok(count=len(products), products=products)


@app.get("/api/search/suggestions")
async def search_suggestions(q: Optional[str] = None):
    return ok(suggestions=product_service.suggestions(q))


@app.get("/api/search/trending")
async def trending_searches():
    return ok(trending=product_service.trending_searches())


@app.get("/api/search/filter")
async def filter_products(
    categories: Optional[str] = None,
    brands: Optional[str] = None,
    colors: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    rating: Optional[float] = None,
    in_stock: bool = False,
    tags: Optional[str] = None,
    sort: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
):
    result = product_service.filter(categories, brands, colors, min_price, max_price, rating,
                                    in_stock, tags, sort, page, limit)
    return ok(**result)


@app.get("/api/products/{product_id}")
async def get_product(product_id: str):
    return ok(product=product_service.get_product(product_id))


@app.post("/api/products")
async def create_product(request: ProductRequest, admin: dict = Depends(require_admin)):
    return ok(product=product_service.create_product(request.model_dump(exclude_none=True)))


@app.put("/api/products/{product_id}")
async def update_product(product_id: str, request: ProductRequest, admin: dict = Depends(require_admin)):
    return ok(product=product_service.update_product(product_id, request.model_dump(exclude_none=True)))


@app.get("/api/categories")
async def list_categories():
    return ok(categories=product_service.list_categories())


@app.post("/api/categories")
async def create_category(request: CategoryRequest, admin: dict = Depends(require_admin)):
    return ok(category=product_service.create_category(request.title))

# ---------- RECOMMENDATIONS ----------
@app.get("/api/recommendations/personalized")
async def personalized_recommendations(current_user: dict = Depends(verify_token)):
    return ok(recommendations=product_service.personalized(current_user["_id"]))


@app.get("/api/recommendations/similar/{product_id}")
async def similar_products(product_id: str):
    return ok(similar_products=product_service.similar(product_id))


@app.get("/api/recommendations/frequently-bought/{product_id}")
async def frequently_bought_together(product_id: str):
    return ok(frequently_bought=product_service.frequently_bought_together(product_id))


@app.get("/api/recommendations/best-sellers")
async def best_sellers(category: Optional[str] = None, limit: int = 10):
    return ok(best_sellers=product_service.best_sellers(category, limit))


@app.get("/api/recommendations/new-arrivals")
async def new_arrivals(category: Optional[str] = None, limit: int = 10):
    return ok(new_arrivals=product_service.new_arrivals(category, limit))


@app.get("/api/recommendations/trending")
async def trending_products(limit: int = 10):
    return ok(trending_products=product_service.trending(limit))


@app.get("/api/recommendations/deals")
async def deals(limit: int = 10):
    return ok(deals=product_service.deals(limit))

# ---------- ORDERS ----------
class OrderItemRequest(BaseModel):
    product: str
    quantity: int = 1
    color: Optional[str] = None

class ShippingInfoRequest(BaseModel):
    first_name: str
    last_name: Optional[str] = ""
    address: str
    city: str
    state: Optional[str] = None
    other: Optional[str] = None
    pincode: str

class CreateOrderRequest(BaseModel):
    items: List[OrderItemRequest]
    shipping_info: ShippingInfoRequest
    payment_method: str = "cod"
    coupon: Optional[str] = None
    delivery_slot_id: Optional[str] = None
    customer_notes: Optional[str] = None

class ReasonRequest(BaseModel):
    reason: Optional[str] = None

class DeliveryLocationRequest(BaseModel):
    latitude: float
    longitude: float

class DeliveryOtpRequest(BaseModel):
    otp: str
    proof_images: Optional[List[str]] = None
    signature: Optional[str] = None

class AssignDeliveryRequest(BaseModel):
    delivery_person_id: str
    vehicle_number: Optional[str] = None

class UpdateStatusRequest(BaseModel):
    status: str
    note: Optional[str] = None


async def _broadcast_status(order: dict):
    await manager.broadcast(order_room(str(order["_id"])), "status_updated",
                            {"order_id": str(order["_id"]), "status": order["order_status"]})


@app.post("/api/orders")
async def create_order(request: CreateOrderRequest, current_user: dict = Depends(verify_token)):
    order = order_service.create_order(
        current_user,
        [item.model_dump() for item in request.items],
        request.shipping_info.model_dump(exclude_none=True),
        payment_method=request.payment_method,
        coupon=request.coupon,
        delivery_slot_id=request.delivery_slot_id,
        customer_notes=request.customer_notes,
    )
    return ok(order=order_view(order))


@app.get("/api/orders")
async def list_orders(current_user: dict = Depends(verify_token)):
    return ok(orders=[order_view(o) for o in order_service.list_orders(current_user["_id"])])


@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, current_user: dict = Depends(verify_token)):
    order = order_service.get_order(current_user["_id"], order_id, is_admin=current_user.get("role") == "admin")
    return ok(order=order_view(order))

# ---------- ORDER TRACKING ----------
@app.get("/api/order-tracking/delivery/my-orders")
async def delivery_person_orders(current_user: dict = Depends(require_delivery)):
    return ok(orders=[order_view(o) for o in order_service.delivery_person_orders(current_user["_id"])])


@app.get("/api/order-tracking/{order_id}/track")
async def order_tracking(order_id: str, current_user: dict = Depends(verify_token)):
    return ok(tracking=order_service.get_tracking(current_user["_id"], order_id))


@app.get("/api/order-tracking/{order_id}/live")
async def live_location(order_id: str, current_user: dict = Depends(verify_token)):
    return ok(**order_service.get_live_location(current_user["_id"], order_id))


@app.put("/api/order-tracking/{order_id}/cancel")
async def cancel_order(order_id: str, request: ReasonRequest, current_user: dict = Depends(verify_token)):
    order = order_service.cancel_order(current_user["_id"], order_id, request.reason)
    await _broadcast_status(order)
    return ok(message="Order cancelled successfully", order=order_view(order))


@app.post("/api/order-tracking/{order_id}/return")
async def request_return(order_id: str, request: ReasonRequest, current_user: dict = Depends(verify_token)):
    order = order_service.request_return(current_user["_id"], order_id, request.reason)
    await _broadcast_status(order)
    return ok(message="Return request submitted successfully", order=order_view(order))


@app.put("/api/order-tracking/{order_id}/location")
async def update_delivery_location(order_id: str, request: DeliveryLocationRequest,
                                   current_user: dict = Depends(require_delivery)):
    location = order_service.update_delivery_location(current_user["_id"], order_id,
                                                      request.latitude, request.longitude)
    await manager.broadcast(order_room(order_id), "location_updated", serialize_doc(location))
    return {"success": True, "message": "Location updated successfully"}


@app.post("/api/order-tracking/{order_id}/verify-otp")
async def verify_delivery_otp(order_id: str, request: DeliveryOtpRequest,
                              current_user: dict = Depends(require_delivery)):
    order = order_service.verify_delivery_otp(current_user["_id"], order_id, request.otp,
                                              request.proof_images, request.signature)
    await _broadcast_status(order)
    return ok(message="Order delivered successfully", order=order_view(order))


@app.put("/api/order-tracking/{order_id}/assign")
async def assign_delivery_person(order_id: str, request: AssignDeliveryRequest, admin: dict = Depends(require_admin)):
    order, otp = order_service.assign_delivery_person(admin["_id"], order_id, request.delivery_person_id,
                                                      request.vehicle_number)
    await _broadcast_status(order)
    return ok(order=order_view(order), delivery_otp=otp)


@app.put("/api/order-tracking/{order_id}/status")
async def update_order_status(order_id: str, request: UpdateStatusRequest, admin: dict = Depends(require_admin)):
    order = order_service.update_status(admin["_id"], order_id, request.status, request.note)
    await _broadcast_status(order)
    return ok(order=order_view(order))

# ---------- DELIVERY SLOTS ----------
class TimeWindow(BaseModel):
    start_time: str
    end_time: str

class SlotRequest(BaseModel):
    date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    max_orders: Optional[int] = None
    area: Optional[str] = None
    pincodes: Optional[List[str]] = None
    is_active: Optional[bool] = None
    delivery_charge: Optional[float] = None
    express_delivery: Optional[bool] = None
    priority: Optional[int] = None

class BulkSlotRequest(BaseModel):
    dates: List[str]
    time_slots: List[TimeWindow]
    area: Optional[str] = None
    pincode: Optional[str] = None
    max_orders: Optional[int] = None


@app.get("/api/delivery-slots/available")
async def available_slots(pincode: Optional[str] = None, date: Optional[str] = None):
    return ok(slots=[slot_view(s) for s in delivery_service.available_slots(pincode, date)])


@app.get("/api/delivery-slots/weekly")
async def weekly_slots(pincode: Optional[str] = None):
    by_date = delivery_service.weekly_slots(pincode)
    return {"success": True, "slots_by_date": {day: [slot_view(s) for s in slots] for day, slots in by_date.items()}}


@app.get("/api/delivery-slots/all")
async def all_slots(date: Optional[str] = None, area: Optional[str] = None, admin: dict = Depends(require_admin)):
    return ok(slots=[slot_view(s) for s in delivery_service.all_slots(date, area)])


@app.post("/api/delivery-slots")
async def create_slot(request: SlotRequest, admin: dict = Depends(require_admin)):
    return ok(slot=slot_view(delivery_service.create_slot(request.model_dump(exclude_none=True))))


@app.post("/api/delivery-slots/bulk")
async def create_bulk_slots(request: BulkSlotRequest, admin: dict = Depends(require_admin)):
    slots = delivery_service.create_bulk_slots(request.dates, [w.model_dump() for w in request.time_slots],
                                               request.area, request.pincode, request.max_orders)
    return ok(count=len(slots), slots=[slot_view(s) for s in slots])


@app.put("/api/delivery-slots/{slot_id}")
async def update_slot(slot_id: str, request: SlotRequest, admin: dict = Depends(require_admin)):
    return ok(slot=slot_view(delivery_service.update_slot(slot_id, request.model_dump(exclude_none=True))))


@app.delete("/api/delivery-slots/{slot_id}")
async def delete_slot(slot_id: str, admin: dict = Depends(require_admin)):
    delivery_service.delete_slot(slot_id)
    return {"success": True, "message": "Delivery slot deleted successfully"}

# ---------- SERVICE AREAS ----------
class CoordinatesRequest(BaseModel):
    latitude: float
    longitude: float

class DeliveryEstimateRequest(BaseModel):
    pincode: str
    order_value: float
    express: bool = False

class ServiceAreaRequest(BaseModel):
    name: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincodes: Optional[List[str]] = None
    coordinates: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None
    delivery_charge: Optional[float] = None
    free_delivery_above: Optional[float] = None
    minimum_order_value: Optional[float] = None
    average_delivery_time: Optional[int] = None
    express_delivery_available: Optional[bool] = None
    express_delivery_charge: Optional[float] = None
    cod_available: Optional[bool] = None
    priority: Optional[int] = None


@app.get("/api/location/check/{pincode}")
async def check_serviceability(pincode: str):
    return {"success": True, **delivery_service.check_serviceability(pincode)}


@app.post("/api/location/check-location")
async def check_serviceability_by_location(request: CoordinatesRequest):
    return {"success": True, **delivery_service.check_serviceability_by_location(request.latitude, request.longitude)}


@app.get("/api/location/areas")
async def list_service_areas():
    return ok(areas=delivery_service.list_areas())


@app.post("/api/location/delivery-estimate")
async def delivery_estimate(request: DeliveryEstimateRequest):
    return delivery_service.delivery_estimate(request.pincode, request.order_value, request.express)


@app.post("/api/location/area")
async def create_service_area(request: ServiceAreaRequest, admin: dict = Depends(require_admin)):
    return ok(service_area=delivery_service.create_area(request.model_dump(exclude_none=True)))


@app.put("/api/location/area/{area_id}")
async def update_service_area(area_id: str, request: ServiceAreaRequest, admin: dict = Depends(require_admin)):
    return ok(service_area=delivery_service.update_area(area_id, request.model_dump(exclude_none=True)))


@app.delete("/api/location/area/{area_id}")
async def delete_service_area(area_id: str, admin: dict = Depends(require_admin)):
    delivery_service.delete_area(area_id)
    return {"success": True, "message": "Service area deleted successfully"}

# ---------- PAYMENTS ----------
class CreatePaymentSessionRequest(BaseModel):
    order_id: str

class RefundRequest(BaseModel):
    amount: Optional[float] = None
    reason: str = "requested_by_customer"


@app.post("/api/payments/create-session")
async def create_payment_session(request: CreatePaymentSessionRequest, current_user: dict = Depends(verify_token)):
    order = order_service.get_order(current_user["_id"], request.order_id)
    result = payment_service.create_checkout_session(order, current_user)
    if not result.get("success"):
        raise HTTPException(status_code=502, detail=result.get("error", "Payment session could not be created"))
    return result


@app.post("/api/payments/webhook")
async def stripe_webhook(request: Request):
    payload = await request.body()
    return payment_service.handle_webhook(payload, request.headers.get("stripe-signature"))


@app.get("/api/payments/confirm/{session_id}")
async def confirm_payment(session_id: str, current_user: dict = Depends(verify_token)):
    return payment_service.confirm_payment(session_id)


@app.get("/api/payments/{order_id}")
async def get_payment_status(order_id: str, current_user: dict = Depends(verify_token)):
    order = order_service.get_order(current_user["_id"], order_id, is_admin=current_user.get("role") == "admin")
    return serialize_doc(payment_service.get_payment_status(str(order["_id"])))


@app.post("/api/payments/{order_id}/refund")
async def refund_payment(order_id: str, request: RefundRequest, admin: dict = Depends(require_admin)):
    order = order_service.get_order(admin["_id"], order_id, is_admin=True)
    result = payment_service.create_refund(order, request.amount, request.reason)
    if not result.get("success"):
        raise HTTPException(status_code=502, detail=result.get("error", "Refund failed"))
    return result

# ---------- REVIEWS ----------
class CreateReviewRequest(BaseModel):
    product_id: str
    order_id: str
    rating: int
    title: Optional[str] = None
    comment: Optional[str] = None
    images: Optional[List[str]] = None

class UpdateReviewRequest(BaseModel):
    rating: Optional[int] = None
    title: Optional[str] = None
    comment: Optional[str] = None
    images: Optional[List[str]] = None

class HelpfulRequest(BaseModel):
    helpful: bool

class ModerateReviewRequest(BaseModel):
    status: str
    admin_response: Optional[str] = None


@app.get("/api/reviews/product/{product_id}")
async def product_reviews(product_id: str, page: int = 1, limit: int = 10, sort: str = "recent",
                          rating: Optional[int] = None):
    return ok(**review_service.product_reviews(product_id, page, limit, sort, rating))


@app.get("/api/reviews/all")
async def all_reviews(status: Optional[str] = None, page: int = 1, limit: int = 20,
                      admin: dict = Depends(require_admin)):
    return ok(**review_service.all_reviews(status, page, limit))


@app.post("/api/reviews")
async def create_review(request: CreateReviewRequest, current_user: dict = Depends(verify_token)):
    review = review_service.create_review(current_user["_id"], request.product_id, request.order_id,
                                          request.rating, request.title, request.comment, request.images)
    return ok(review=review)


@app.put("/api/reviews/{review_id}/helpful")
async def mark_review_helpful(review_id: str, request: HelpfulRequest, current_user: dict = Depends(verify_token)):
    return {"success": True, **review_service.mark_helpful(current_user["_id"], review_id, request.helpful)}


@app.put("/api/reviews/{review_id}/moderate")
async def moderate_review(review_id: str, request: ModerateReviewRequest, admin: dict = Depends(require_admin)):
    return ok(review=review_service.moderate_review(admin["_id"], review_id, request.status, request.admin_response))


@app.put("/api/reviews/{review_id}")
async def update_review(review_id: str, request: UpdateReviewRequest, current_user: dict = Depends(verify_token)):
    review = review_service.update_review(current_user["_id"], review_id, request.rating, request.title,
                                          request.comment, request.images)
    return ok(review=review)


@app.delete("/api/reviews/{review_id}")
async def delete_review(review_id: str, current_user: dict = Depends(verify_token)):
    review_service.delete_review(current_user["_id"], review_id)
    return {"success": True, "message": "Review deleted successfully"}

# ---------- NOTIFICATIONS ----------
class NotificationRequest(BaseModel):
    title: str
    message: str
    type: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    action_url: Optional[str] = None
    image_url: Optional[str] = None

class SendNotificationRequest(NotificationRequest):
    user_id: str
    priority: Optional[str] = None

class BulkNotificationRequest(NotificationRequest):
    user_ids: List[str]

class ScheduleNotificationRequest(NotificationRequest):
    user_id: str
    scheduled_for: datetime
    expires_at: Optional[datetime] = None


@app.get("/api/notifications")
async def user_notifications(page: int = 1, limit: int = 20, type: Optional[str] = None,
                             is_read: Optional[bool] = None, current_user: dict = Depends(verify_token)):
    return notification_service.user_notifications(str(current_user["_id"]), page, limit, type, is_read)


@app.put("/api/notifications/read-all")
async def mark_all_notifications_read(current_user: dict = Depends(verify_token)):
    count = notification_service.mark_all_as_read(str(current_user["_id"]))
    return {"success": True, "message": "All notifications marked as read", "updated": count}


@app.put("/api/notifications/{notification_id}/read")
async def mark_notification_read(notification_id: str, current_user: dict = Depends(verify_token)):
    return ok(notification=notification_service.mark_as_read(str(current_user["_id"]), notification_id))


@app.delete("/api/notifications/read/all")
async def delete_read_notifications(current_user: dict = Depends(verify_token)):
    count = notification_service.delete_all_read(str(current_user["_id"]))
    return {"success": True, "message": "All read notifications deleted", "deleted": count}


@app.delete("/api/notifications/{notification_id}")
async def delete_notification(notification_id: str, current_user: dict = Depends(verify_token)):
    notification_service.delete(str(current_user["_id"]), notification_id)
    return {"success": True, "message": "Notification deleted"}


@app.post("/api/notifications/send")
async def send_notification(request: SendNotificationRequest, admin: dict = Depends(require_admin)):
    notification = notification_service.create(request.user_id, request.title, request.message, request.type,
                                               request.data, request.action_url, request.image_url, request.priority)
    return ok(notification=notification)


@app.post("/api/notifications/send-bulk")
async def send_bulk_notifications(request: BulkNotificationRequest, admin: dict = Depends(require_admin)):
    count = notification_service.send_bulk(request.user_ids, request.title, request.message, request.type,
                                           request.data, request.action_url, request.image_url)
    return {"success": True, "message": f"Notification sent to {count} users", "count": count}


@app.post("/api/notifications/send-all")
async def send_to_all_users(request: NotificationRequest, admin: dict = Depends(require_admin)):
    count = notification_service.send_to_all(request.title, request.message, request.type, request.data,
                                             request.action_url, request.image_url)
    return {"success": True, "message": f"Notification sent to {count} users", "count": count}


@app.post("/api/notifications/schedule")
async def schedule_notification(request: ScheduleNotificationRequest, admin: dict = Depends(require_admin)):
    notification = notification_service.schedule(request.user_id, request.title, request.message,
                                                 request.scheduled_for, request.type, request.data,
                                                 request.action_url, request.expires_at)
    return ok(message="Notification scheduled successfully", notification=notification)

# ---------- SUPPORT CHAT ----------
class CreateConversationRequest(BaseModel):
    message: str
    subject: Optional[str] = None
    category: Optional[str] = None

class ChatMessageRequest(BaseModel):
    message: Optional[str] = None
    attachments: Optional[List[str]] = None

class CloseConversationRequest(BaseModel):
    rating: Optional[int] = None
    feedback: Optional[str] = None

class AssignConversationRequest(BaseModel):
    support_agent_id: Optional[str] = None


async def _broadcast_message(conversation_id: str, message: dict):
    await manager.broadcast(chat_room(conversation_id), "new_message", serialize_doc(message))


@app.post("/api/chat/conversation")
async def create_conversation(request: CreateConversationRequest, current_user: dict = Depends(verify_token)):
    conversation, message = chat_service.create_conversation(current_user["_id"], request.message,
                                                             request.subject, request.category)
    await _broadcast_message(str(conversation["_id"]), message)
    return ok(conversation=conversation, message=message)


@app.get("/api/chat/conversations")
async def user_conversations(current_user: dict = Depends(verify_token)):
    return ok(conversations=chat_service.user_conversations(current_user["_id"]))


@app.get("/api/chat/all")
async def all_conversations(status: Optional[str] = None, category: Optional[str] = None, page: int = 1,
                            limit: int = 20, admin: dict = Depends(require_admin)):
    return ok(**chat_service.all_conversations(status, category, page, limit))


@app.get("/api/chat/conversation/{conversation_id}")
async def conversation_messages(conversation_id: str, current_user: dict = Depends(verify_token)):
    conversation, messages = chat_service.conversation_messages(current_user["_id"], conversation_id,
                                                                is_admin=current_user.get("role") == "admin")
    return ok(conversation=conversation, messages=messages)


@app.post("/api/chat/conversation/{conversation_id}/message")
async def send_chat_message(conversation_id: str, request: ChatMessageRequest, current_user: dict = Depends(verify_token)):
    message = chat_service.send_message(current_user["_id"], conversation_id, request.message, request.attachments)
    await _broadcast_message(conversation_id, message)
    return ok(message=message)


@app.put("/api/chat/conversation/{conversation_id}/close")
async def close_conversation(conversation_id: str, request: CloseConversationRequest,
                             current_user: dict = Depends(verify_token)):
    conversation = chat_service.close_conversation(current_user["_id"], conversation_id, request.rating, request.feedback)
    return ok(conversation=conversation)


@app.put("/api/chat/conversation/{conversation_id}/assign")
async def assign_conversation(conversation_id: str, request: AssignConversationRequest,
                              admin: dict = Depends(require_admin)):
    conversation, message = chat_service.assign_conversation(admin["_id"], conversation_id, request.support_agent_id)
    await _broadcast_message(conversation_id, message)
    return ok(conversation=conversation)


@app.post("/api/chat/conversation/{conversation_id}/support-message")
async def send_support_message(conversation_id: str, request: ChatMessageRequest, admin: dict = Depends(require_admin)):
    message = chat_service.send_support_message(admin["_id"], conversation_id, request.message, request.attachments)
    await _broadcast_message(conversation_id, message)
    return ok(message=message)


@app.put("/api/chat/conversation/{conversation_id}/resolve")
async def resolve_conversation(conversation_id: str, admin: dict = Depends(require_admin)):
    conversation, message = chat_service.resolve_conversation(admin["_id"], conversation_id)
    await _broadcast_message(conversation_id, message)
    return ok(conversation=conversation)

# ---------- FAQ ----------
class FAQRequest(BaseModel):
    question: Optional[str] = None
    answer: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    is_active: Optional[bool] = None
    order: Optional[int] = None

class ReorderFAQRequest(BaseModel):
    faq_ids: List[str]


@app.get("/api/faq")
async def list_faqs(category: Optional[str] = None):
    faqs, grouped = faq_service.list_active(category)
    return ok(faqs=faqs, faqs_by_category=grouped)


@app.get("/api/faq/popular")
async def popular_faqs(limit: int = 5):
    return ok(faqs=faq_service.popular(limit))


@app.get("/api/faq/search")
async def search_faqs(q: Optional[str] = None):
    return ok(faqs=faq_service.search(q))


@app.get("/api/faq/admin/all")
async def admin_list_faqs(admin: dict = Depends(require_admin)):
    return ok(faqs=faq_service.list_all())


@app.post("/api/faq/reorder")
async def reorder_faqs(request: ReorderFAQRequest, admin: dict = Depends(require_admin)):
    faq_service.reorder(request.faq_ids)
    return {"success": True, "message": "FAQs reordered successfully"}


@app.get("/api/faq/{faq_id}")
async def get_faq(faq_id: str):
    return ok(faq=faq_service.get(faq_id))


@app.post("/api/faq/{faq_id}/helpful")
async def mark_faq_helpful(faq_id: str, request: HelpfulRequest):
    return {"success": True, **faq_service.mark_helpful(faq_id, request.helpful)}


@app.post("/api/faq")
async def create_faq(request: FAQRequest, admin: dict = Depends(require_admin)):
    return ok(faq=faq_service.create(request.model_dump(exclude_none=True)))


@app.put("/api/faq/{faq_id}")
async def update_faq(faq_id: str, request: FAQRequest, admin: dict = Depends(require_admin)):
    return ok(faq=faq_service.update(faq_id, request.model_dump(exclude_none=True)))


@app.delete("/api/faq/{faq_id}")
async def delete_faq(faq_id: str, admin: dict = Depends(require_admin)):
    faq_service.delete(faq_id)
    return {"success": True, "message": "FAQ deleted successfully"}

# ---------- UPLOADS ----------
@app.post("/api/upload")
async def upload_images(images: List[UploadFile] = File(...), admin: dict = Depends(require_admin)):
    files = [(f.filename or "image", f.content_type, await f.read()) for f in images]
    return {"success": True, "images": upload_service.upload_images(files)}


@app.delete("/api/upload/delete-img/{public_id:path}")
async def delete_image(public_id: str, admin: dict = Depends(require_admin)):
    upload_service.delete_image(public_id)
    return {"success": True, "message": "Deleted"}

# ---------- REALTIME ----------
def _socket_user(token: Optional[str]) -> Optional[dict]:
    if not token or ensure_db() is None:
        return None
    try:
        user = _user_from_token(token)
    except (jwt.InvalidTokenError, ServiceError, HTTPException):
        return None
    return None if user.get("is_blocked") else user


@app.websocket("/ws/orders/{order_id}")
async def order_socket(websocket: WebSocket, order_id: str, token: Optional[str] = Query(None)):
    user = _socket_user(token)
    try:
        order = order_service.get_order(None, order_id, is_admin=True) if user else None
    except ServiceError:
        order = None
    allowed = order is not None and (
        user.get("role") == "admin"
        or order["user_id"] == str(user["_id"])
        or (order.get("delivery_person") or {}).get("id") == str(user["_id"])
    )
    if not allowed:
        await websocket.close(code=1008)
        return

    room = order_room(order_id)
    await manager.connect(room, websocket)
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                continue
            if not isinstance(message, dict) or message.get("event") != "location":
                continue
            try:
                location = order_service.update_delivery_location(
                    user["_id"], order_id, float(message["latitude"]), float(message["longitude"]))
            except (ServiceError, KeyError, TypeError, ValueError) as e:
                await websocket.send_json({"event": "error", "data": {"msg": getattr(e, "msg", "Invalid location")}})
                continue
            await manager.broadcast(room, "location_updated", serialize_doc(location))
    except WebSocketDisconnect:
        logger.info(f"[WS] Client left {room}")
    finally:
        manager.disconnect(room, websocket)


@app.websocket("/ws/chat/{conversation_id}")
async def chat_socket(websocket: WebSocket, conversation_id: str, token: Optional[str] = Query(None)):
    user = _socket_user(token)
    try:
        allowed = user is not None and chat_service.can_join(user, conversation_id)
    except ServiceError:
        allowed = False
    if not allowed:
        await websocket.close(code=1008)
        return

    room = chat_room(conversation_id)
    await manager.connect(room, websocket)
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                continue
            if isinstance(message, dict) and message.get("event") == "typing":
                await manager.broadcast(room, "user_typing", {
                    "user_id": str(user["_id"]),
                    "name": user.get("first_name"),
                    "is_typing": bool(message.get("is_typing", True)),
                }, exclude=websocket)
    except WebSocketDisconnect:
        logger.info(f"[WS] Client left {room}")
    finally:
        manager.disconnect(room, websocket)


if __name__ == "__main__":
    import uvicorn

    logger.info("=" * 80)
    logger.info("[START] STARTING FASTAPI SERVER")
    logger.info("=" * 80)

    logger.info("[ROUTES] Registered Routes:")
    for route in app.routes:
        if hasattr(route, 'methods') and hasattr(route, 'path'):
            logger.info(f"   {route.path} [{','.join(route.methods)}]")

    logger.info(f"[OK] Server starting on http://{config.HOST}:{config.PORT}")
    logger.info("=" * 80)

    uvicorn.run(
        app,
        host=config.HOST,
        port=config.PORT,
        log_level="info"
    )
