import os
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from campus_lost_found.config import Settings, get_settings
from campus_lost_found.database import Base, SessionLocal, engine
from campus_lost_found.errors import LostFoundError
from campus_lost_found.logging_config import logging_config
from campus_lost_found.models import Category, Location
from campus_lost_found.rate_limit import limiter, rate_limit_exceeded_handler
from campus_lost_found.routes import admin, auth, claims, items
from campus_lost_found.storage import FileStorage

logger = logging.getLogger(__name__)

SLOW_REQUEST_THRESHOLD = 2.0


def seed_reference_data(db: Session, settings: Settings):
    """カテゴリ・場所マスタが空なら既定値を投入する"""
    if db.query(Category).count() == 0:
        db.add_all([Category(name=name) for name in settings.default_categories])
        logger.info(f"Seeded {len(settings.default_categories)} categories")
    if db.query(Location).count() == 0:
        db.add_all([
            Location(name=name, building=building) for name, building in settings.default_locations
        ])
        logger.info(f"Seeded {len(settings.default_locations)} locations")
    db.commit()


def init_db(settings: Settings):
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_reference_data(db, settings)
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    init_db(settings)
    FileStorage(settings).ensure_directories()
    logger.info("Campus Lost & Found API started")
    yield
    logger.info("Campus Lost & Found API stopped")


settings = get_settings()

# 画像の公開ディレクトリ（証明書類は公開しない）
if not os.path.exists(settings.upload_dir):
    os.makedirs(settings.upload_dir, exist_ok=True)

app = FastAPI(
    title="Campus Lost & Found API",
    description="学内の遺失物・拾得物の登録と、確認質問による返却申請のAPI",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# CORS設定
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ミドルウェア: リクエストログ記録
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    logging_config.log_request(
        request.method,
        str(request.url.path),
        response.status_code,
        time.time() - start_time,
        SLOW_REQUEST_THRESHOLD,
    )

    return response


@app.exception_handler(LostFoundError)
async def lost_found_error_handler(request: Request, exc: LostFoundError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    message = f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": message, "code": "VALIDATION_ERROR"},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error", "code": "INTERNAL_ERROR"},
    )


@app.get("/api/health", tags=["root"])
def health():
    return {"success": True, "status": "OK", "message": "Campus Lost & Found API is running"}


app.include_router(auth.router)
app.include_router(items.router)
app.include_router(claims.router)
app.include_router(admin.router)

app.mount("/uploads", StaticFiles(directory=settings.upload_dir), name="uploads")


# サーバー起動設定
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "campus_lost_found.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=False,
        log_level="info"
    )
