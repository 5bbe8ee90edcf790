import logging
import os
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, File, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError
from pymongo.errors import PyMongoError

import database
from auth import SESSION_COOKIE, SESSION_TTL_MINUTES, authenticate, issue_session, require_admin, session_from_request, SessionClaims
from catalog import (
    ADMIN_DEFAULT_PAGE_SIZE,
    ADMIN_MAX_PAGE_SIZE,
    ADMINS,
    PUBLIC_DEFAULT_PAGE_SIZE,
    PUBLIC_MAX_PAGE_SIZE,
    VEHICLES,
    Page,
    create_vehicle,
    delete_vehicle,
    list_admins,
    list_vehicles,
    update_vehicle,
)
from errors import AuthDenied, BackendUnavailable, CatalogError, RateLimited, ValidationFailed, install_error_handlers, issues_from_pydantic
from images import CloudinaryImageHost, ImageHost, LocalImageHost
from rate_limit import TokenBucketLimiter
from schemas import CATEGORIES, DeleteImageIn, ListQuery, ListRequest, LoginIn, VehicleCreate, VehicleUpdate

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("catalog.api")

COOKIE_SECURE = os.getenv("COOKIE_SECURE", "").lower() in ("1", "true", "yes")
RATE_LIMIT_PER_MIN = float(os.getenv("RATE_LIMIT_PER_MIN", "60"))
RATE_LIMIT_BURST = float(os.getenv("RATE_LIMIT_BURST", str(RATE_LIMIT_PER_MIN)))
UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join(os.getcwd(), "uploads"))
UPLOAD_FOLDER = os.getenv("UPLOAD_FOLDER", "vehicles")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")
TRUSTED_PROXIES = {p.strip() for p in os.getenv("TRUSTED_PROXIES", "").split(",") if p.strip()}

app = FastAPI(title="Vehicle Catalog API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
install_error_handlers(app)

# Process-local state, reached only through the dependencies below
app.state.rate_limiter = TokenBucketLimiter(RATE_LIMIT_PER_MIN, RATE_LIMIT_BURST)
if os.getenv("CLOUDINARY_URL"):
    app.state.image_host = CloudinaryImageHost(UPLOAD_FOLDER)
else:
    app.state.image_host = LocalImageHost(UPLOAD_DIR, UPLOAD_FOLDER, PUBLIC_BASE_URL)
    app.mount("/uploads", StaticFiles(directory=UPLOAD_DIR), name="uploads")

# ----------------------
# Dependencies
# ----------------------

def get_rate_limiter(request: Request) -> TokenBucketLimiter:
    return request.app.state.rate_limiter


def get_image_host(request: Request) -> ImageHost:
    return request.app.state.image_host


def client_address(request: Request) -> str:
    peer = request.client.host if request.client else "unknown"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and peer in TRUSTED_PROXIES:
        # the hop appended by our own proxy; earlier entries are client-supplied
        return forwarded.split(",")[-1].strip() or peer
    return peer


def rate_limited(request: Request, limiter: TokenBucketLimiter = Depends(get_rate_limiter)) -> None:
    addr = client_address(request)
    if not limiter.allow(addr):
        logger.warning("rate limit hit for %s on %s", addr, request.url.path)
        raise RateLimited()


def parse_list_request(data: Dict[str, Any], model=ListRequest) -> ListRequest:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ValidationFailed(issues_from_pydantic(e.errors()))


def page_body(page: Page) -> Dict[str, Any]:
    return {"items": page.items, "nextCursor": page.next_cursor}

# ----------------------
# Routes
# ----------------------
@app.get("/")
def read_root():
    return {"message": "Vehicle Catalog API running"}

@app.get("/test")
def store_status():
    """Store diagnostics: configured or not, reachable or not, and catalog sizes."""
    status = {"backend": "running", "store": "not configured", "vehicles": None, "admins": None}
    if database.db is None:
        return status
    try:
        status["vehicles"] = database.db[VEHICLES].count_documents({})
        status["admins"] = database.db[ADMINS].count_documents({})
        status["store"] = "connected"
    except PyMongoError as e:
        logger.warning("store check failed: %s", e)
        status["store"] = "unreachable"
    return status

# Auth
@app.post("/login", dependencies=[Depends(rate_limited)])
def login(payload: LoginIn, response: Response):
    try:
        ok = authenticate(database.get_collection(ADMINS), payload.name, payload.password)
    except CatalogError:
        raise
    except Exception as e:
        logger.exception("login lookup failed")
        raise BackendUnavailable() from e
    if not ok:
        logger.info("failed login for %r", payload.name)
        raise AuthDenied("Invalid credentials")

    token = issue_session(payload.name)
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=SESSION_TTL_MINUTES * 60,
        path="/",
        httponly=True,
        samesite="lax",
        secure=COOKIE_SECURE,
    )
    logger.info("admin %r logged in", payload.name)
    return {"ok": True, "name": payload.name}

@app.post("/logout")
def logout(response: Response):
    response.delete_cookie(SESSION_COOKIE, path="/")
    return {"ok": True}

@app.get("/session")
def session(request: Request):
    result = session_from_request(request)
    return {"admin": result.allowed, "name": result.claims.name if result.claims else None}

# Public catalog
@app.get("/categories")
def list_categories():
    return list(CATEGORIES)

@app.get("/vehicles", dependencies=[Depends(rate_limited)])
def list_public_vehicles(request: Request):
    req = parse_list_request(dict(request.query_params), ListQuery)
    return page_body(list_vehicles(req, admin=False,
                                   default_page_size=PUBLIC_DEFAULT_PAGE_SIZE,
                                   max_page_size=PUBLIC_MAX_PAGE_SIZE))

@app.post("/vehicles", dependencies=[Depends(rate_limited)])
def search_public_vehicles(body: Optional[Dict[str, Any]] = Body(None)):
    req = parse_list_request(body or {})
    return page_body(list_vehicles(req, admin=False,
                                   default_page_size=PUBLIC_DEFAULT_PAGE_SIZE,
                                   max_page_size=PUBLIC_MAX_PAGE_SIZE))

# Admin back-office
@app.get("/admin/vehicles")
def list_admin_vehicles(request: Request, claims: SessionClaims = Depends(require_admin)):
    req = parse_list_request(dict(request.query_params), ListQuery)
    return page_body(list_vehicles(req, admin=True,
                                   default_page_size=ADMIN_DEFAULT_PAGE_SIZE,
                                   max_page_size=ADMIN_MAX_PAGE_SIZE))

@app.post("/admin/vehicles")
def create_admin_vehicle(payload: VehicleCreate, claims: SessionClaims = Depends(require_admin)):
    return {"id": create_vehicle(payload)}

@app.patch("/admin/vehicles")
def update_admin_vehicle(payload: VehicleUpdate, claims: SessionClaims = Depends(require_admin)):
    matched = update_vehicle(payload)
    return {"ok": True, "matched": matched}

@app.delete("/admin/vehicles")
def delete_admin_vehicle(id: Optional[str] = None, claims: SessionClaims = Depends(require_admin),
                         images: ImageHost = Depends(get_image_host)):
    if not id:
        raise ValidationFailed([{"field": "id", "message": "required"}], 'Parameter "id" is required')
    deleted = delete_vehicle(id, images)
    return {"ok": True, "deleted": deleted}

@app.get("/admin/admins")
def list_admin_accounts(claims: SessionClaims = Depends(require_admin)):
    return {"items": list_admins()}

# Images
@app.post("/upload")
async def upload_image(file: Optional[UploadFile] = File(None), claims: SessionClaims = Depends(require_admin),
                       images: ImageHost = Depends(get_image_host)):
    if file is None:
        raise ValidationFailed([{"field": "file", "message": "required"}], "No file sent")
    data = await file.read()
    try:
        descriptor = images.upload(file.filename, data)
    except CatalogError:
        raise
    except Exception as e:
        logger.exception("image upload failed")
        raise BackendUnavailable("Could not upload image") from e
    return descriptor.model_dump()

@app.post("/delete-image")
def delete_image(payload: DeleteImageIn, claims: SessionClaims = Depends(require_admin),
                 images: ImageHost = Depends(get_image_host)):
    try:
        images.destroy(payload.public_id)
    except CatalogError:
        raise
    except Exception as e:
        logger.exception("image delete failed for %s", payload.public_id)
        raise BackendUnavailable("Could not delete image") from e
    return {"success": True}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
