"""
Database Schemas for the Vehicle Catalog

Each Pydantic model maps to a MongoDB collection (lowercased class name).
- Vehicle -> "vehicle"
- Admin -> "admin"

Request models (VehicleCreate, VehicleUpdate, LoginIn, ListRequest) validate
input at the HTTP boundary, before anything touches the store.
"""

from typing import Any, Literal, Optional
from urllib.parse import urlparse

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

CATEGORIES = (
    "Bicicleta",
    "Buggy",
    "Camião",
    "Carrinha",
    "Class",
    "Clássico",
    "Comum",
    "Desportivo",
    "Elétrico",
    "Presidencial",
    "Mota",
    "Offroad",
    "Outro",
    "SUV",
    "Supercarro",
)

Category = Literal[CATEGORIES]

SortField = Literal["brand", "model", "price", "speed_original", "speed_tuned", "trunk_capacity"]


def blank_to_none(v: Any) -> Any:
    # HTML forms and query strings send "" for untouched inputs
    if isinstance(v, str) and not v.strip():
        return None
    return v


def check_http_url(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    parsed = urlparse(v)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("must be an absolute http(s) URL")
    return v


class Vehicle(BaseModel):
    """
    Vehicles collection schema
    Collection name: "vehicle"
    """
    brand: str = Field(..., min_length=1, description="Manufacturer")
    category: Category = Field(..., description="Vehicle class")
    model: str = Field(..., min_length=1, description="Model name")
    price: float = Field(..., ge=0, allow_inf_nan=False, description="Price")
    speed_original: float = Field(..., ge=0, allow_inf_nan=False, description="Stock top speed (km/h)")
    speed_tuned: Optional[float] = Field(None, ge=0, allow_inf_nan=False, description="Top speed when fully tuned (km/h)")
    trunk_capacity: Optional[float] = Field(None, ge=0, allow_inf_nan=False, description="Trunk capacity (kg)")
    stock: bool = Field(False, description="Availability")
    image_url: Optional[str] = Field(None, description="Absolute URL of the hosted image")
    image_public_id: Optional[str] = Field(None, description="Image host id, used to release the image")
    published: bool = Field(True, description="Visible in the public catalog")


class VehicleCreate(Vehicle):
    model_config = ConfigDict(extra="forbid")

    @field_validator("speed_tuned", "trunk_capacity", "image_url", "image_public_id", mode="before")
    @classmethod
    def _blank_optional(cls, v):
        return blank_to_none(v)

    @field_validator("brand", "model")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    @field_validator("image_url")
    @classmethod
    def _http_url(cls, v):
        return check_http_url(v)


class VehicleUpdate(BaseModel):
    """Partial update: only fields present in the payload are written."""
    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1)
    brand: Optional[str] = Field(None, min_length=1)
    category: Optional[Category] = None
    model: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    speed_original: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    speed_tuned: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    trunk_capacity: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    stock: Optional[bool] = None
    # "" clears the stored image reference
    image_url: Optional[str] = None
    image_public_id: Optional[str] = None
    published: Optional[bool] = None

    @field_validator("price", "speed_original", "speed_tuned", "trunk_capacity", mode="before")
    @classmethod
    def _blank_number(cls, v):
        return blank_to_none(v)

    @field_validator("brand", "model")
    @classmethod
    def _not_blank(cls, v):
        if v is not None and not v.strip():
            raise ValueError("must not be blank")
        return v.strip() if v is not None else v

    @field_validator("image_url")
    @classmethod
    def _http_url(cls, v):
        if v == "":
            return v
        return check_http_url(v)

    def changes(self) -> dict:
        """Fields the caller actually supplied, minus the id."""
        data = self.model_dump(exclude_unset=True)
        data.pop("id", None)
        # an explicit null never erases a stored value
        return {k: v for k, v in data.items() if v is not None}


class Admin(BaseModel):
    """
    Admin accounts schema
    Collection name: "admin"
    """
    name: str = Field(..., min_length=1, description="Display/login name")
    password_hash: str = Field(..., description="BCrypt hash of password")


class LoginIn(BaseModel):
    name: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class DeleteImageIn(BaseModel):
    public_id: str = Field(..., min_length=1)


class ListRequest(BaseModel):
    """Filter / sort / page parameters of a catalog listing."""
    model_config = ConfigDict(extra="forbid")

    search: Optional[str] = None
    category: Optional[str] = None
    stock: Optional[bool] = None
    price_min: Optional[float] = Field(None, allow_inf_nan=False, validation_alias=AliasChoices("minPrice", "price_min"))
    price_max: Optional[float] = Field(None, allow_inf_nan=False, validation_alias=AliasChoices("maxPrice", "price_max"))
    speed_min: Optional[float] = Field(None, allow_inf_nan=False, validation_alias=AliasChoices("minSpeed", "speed_min"))
    speed_max: Optional[float] = Field(None, allow_inf_nan=False, validation_alias=AliasChoices("maxSpeed", "speed_max"))
    trunk_min: Optional[float] = Field(None, allow_inf_nan=False, validation_alias=AliasChoices("minTrunk", "trunk_min"))
    trunk_max: Optional[float] = Field(None, allow_inf_nan=False, validation_alias=AliasChoices("maxTrunk", "trunk_max"))
    sort_field: SortField = Field("price", validation_alias=AliasChoices("sortField", "sort_field"))
    sort_order: Literal["asc", "desc"] = Field("asc", validation_alias=AliasChoices("sortOrder", "sort_order"))
    page_size: Optional[int] = Field(None, validation_alias=AliasChoices("limit", "pageSize", "page_size"))
    cursor: Optional[str] = None

    @field_validator(
        "search", "category", "stock", "price_min", "price_max", "speed_min", "speed_max",
        "trunk_min", "trunk_max", "page_size", "cursor", mode="before",
    )
    @classmethod
    def _blank(cls, v):
        v = blank_to_none(v)
        return v.strip() if isinstance(v, str) else v

    @field_validator("sort_field", "sort_order", mode="before")
    @classmethod
    def _blank_default(cls, v, info):
        if blank_to_none(v) is None:
            return "price" if info.field_name == "sort_field" else "asc"
        return v


class ListQuery(ListRequest):
    """ListRequest read from a query string; unrelated keys (cache-busters) are ignored."""
    model_config = ConfigDict(extra="ignore")
