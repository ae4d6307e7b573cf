import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import config
import database
from admin_orders import router as admin_orders_router
from auth import router as auth_router
from cart import router as cart_router
from database import create_document, ensure_indexes, get_db
from errors import ServiceError
from orders import router as orders_router
from products import router as products_router
from schemas import Product as ProductSchema, User as UserSchema
from security import hash_password

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
    yield


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------- Errors -----------------------
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.include_router(auth_router)
app.include_router(products_router)
app.include_router(cart_router)
app.include_router(orders_router)
app.include_router(admin_orders_router)


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
        "database_name": "✅ Set" if config.DATABASE_NAME else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ----------------------- Seed Demo Data -----------------------
DEMO_PRODUCTS = [
    {
        "title": "Pixel 7A",
        "description": "Powerful camera and smooth Android experience.",
        "specification": {"brand": "Google", "storage": "128GB", "ram": "8GB"},
        "price": {"amount": 34999, "currency": "BDT"},
        "category": "Mobiles",
        "stock": 25,
    },
    {
        "title": "ThinkPad X1",
        "description": "Business-class laptop with legendary keyboard.",
        "specification": {"brand": "Lenovo", "cpu": "i7", "ram": "16GB", "storage": "512GB SSD"},
        "price": {"amount": 119999, "currency": "BDT"},
        "category": "Laptops",
        "stock": 10,
    },
    {
        "title": "Noise Cancelling Headphones",
        "description": "Immerse in music with ANC.",
        "specification": {"brand": "Sony", "battery": "30h"},
        "price": {"amount": 199.99, "currency": "USD"},
        "category": "Accessories",
        "stock": 40,
    },
    {
        "title": "Mechanical Keyboard",
        "description": "Hot-swappable RGB keyboard.",
        "specification": {"brand": "Keychron", "switches": "Gateron"},
        "price": {"amount": 7999, "currency": "BDT"},
        "category": "Accessories",
        "stock": 30,
    },
]


@app.post("/seed")
def seed(db=Depends(get_db)):
    seeded = False
    if db["product"].count_documents({}) == 0:
        for p in DEMO_PRODUCTS:
            create_document(db, "product", ProductSchema(**p))
        seeded = True
    # bootstrap an admin only when credentials are configured
    admin_created = False
    if config.ADMIN_EMAIL and config.ADMIN_PASSWORD and db["user"].count_documents({"role": "admin"}) == 0:
        admin = UserSchema(
            full_name="Admin",
            email=config.ADMIN_EMAIL.strip().lower(),
            password_hash=hash_password(config.ADMIN_PASSWORD),
            role="admin",
            is_email_verified=True,
        )
        create_document(db, "user", admin)
        admin_created = True
    return {"seeded": seeded, "admin_created": admin_created, "products": db["product"].count_documents({})}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
