"""
Catalog query engine and vehicle writes.

Listing is a conjunction of equality / inclusive range predicates, a single
requested sort key with _id as tie-break in the same direction, and keyset
pagination: the cursor is the id of the last item returned, and the next
page resumes strictly after that item's (sort key, _id) position.

Search is a case-insensitive substring match on "<brand> <model>" evaluated
by the store, so it applies to the whole collection rather than to a single
fetched page.

Pagination yields every record exactly once only while the collection is
stable. A write that changes a record's sort key or published flag between
page fetches can make it be skipped or repeated.
"""
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from database import create_document, get_collection
from errors import BackendUnavailable
from schemas import ListRequest, VehicleCreate, VehicleUpdate

logger = logging.getLogger(__name__)

VEHICLES = "vehicle"
ADMINS = "admin"

PUBLIC_DEFAULT_PAGE_SIZE = 20
PUBLIC_MAX_PAGE_SIZE = 50
ADMIN_DEFAULT_PAGE_SIZE = 24
ADMIN_MAX_PAGE_SIZE = 200

RANGE_FILTERS = (
    ("price", "price_min", "price_max"),
    ("speed_original", "speed_min", "speed_max"),
    ("trunk_capacity", "trunk_min", "trunk_max"),
)


class Page(BaseModel):
    items: List[Dict[str, Any]]
    next_cursor: Optional[str] = None


def serialize_doc(doc: dict) -> dict:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def parse_id(value: Optional[str]) -> Optional[ObjectId]:
    if not value:
        return None
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def clamp_page_size(requested: Optional[int], default: int, maximum: int) -> int:
    if requested is None:
        return default
    return min(max(int(requested), 1), maximum)


def search_clause(term: str) -> dict:
    haystack = {"$concat": [{"$ifNull": ["$brand", ""]}, " ", {"$ifNull": ["$model", ""]}]}
    return {"$expr": {"$regexMatch": {"input": haystack, "regex": re.escape(term), "options": "i"}}}


def after_clause(field: str, descending: bool, value: Any, oid: ObjectId) -> dict:
    """Predicate for "strictly after (value, oid)" in the given order.

    Missing / null sort values order lowest, as the store sorts them:
    first when ascending, last when descending.
    """
    if not descending:
        if value is None:
            return {"$or": [{field: None, "_id": {"$gt": oid}}, {field: {"$ne": None}}]}
        return {"$or": [{field: {"$gt": value}}, {field: value, "_id": {"$gt": oid}}]}
    if value is None:
        return {field: None, "_id": {"$lt": oid}}
    return {"$or": [{field: {"$lt": value}}, {field: value, "_id": {"$lt": oid}}, {field: None}]}


def build_filter(req: ListRequest, admin: bool = False) -> List[dict]:
    clauses: List[dict] = []
    if not admin:
        clauses.append({"published": True})
    if req.category:
        clauses.append({"category": req.category})
    if req.stock is not None:
        clauses.append({"stock": req.stock})
    for field, lo_attr, hi_attr in RANGE_FILTERS:
        lo, hi = getattr(req, lo_attr), getattr(req, hi_attr)
        cond = {}
        if lo is not None:
            cond["$gte"] = lo
        if hi is not None:
            cond["$lte"] = hi
        if cond:
            clauses.append({field: cond})
    if req.search:
        clauses.append(search_clause(req.search))
    return clauses


def combine(clauses: List[dict]) -> dict:
    if not clauses:
        return {}
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def list_vehicles(req: ListRequest, admin: bool = False,
                  default_page_size: int = PUBLIC_DEFAULT_PAGE_SIZE,
                  max_page_size: int = PUBLIC_MAX_PAGE_SIZE) -> Page:
    """One page of vehicles plus the cursor for the next one (None at the end).

    Non-admin callers only ever see published vehicles. A cursor that is
    malformed or names a vehicle that no longer exists is ignored and the
    scan starts from the beginning.
    """
    vehicles = get_collection(VEHICLES)
    page_size = clamp_page_size(req.page_size, default_page_size, max_page_size)
    descending = req.sort_order == "desc"
    direction = DESCENDING if descending else ASCENDING

    try:
        clauses = build_filter(req, admin=admin)
        oid = parse_id(req.cursor)
        if oid is not None:
            anchor = vehicles.find_one({"_id": oid})
            if anchor is not None:
                clauses.append(after_clause(req.sort_field, descending, anchor.get(req.sort_field), oid))
            else:
                logger.debug("cursor %s no longer exists, starting from the beginning", req.cursor)

        cursor = vehicles.find(combine(clauses))
        cursor = cursor.sort([(req.sort_field, direction), ("_id", direction)]).limit(page_size + 1)
        docs = list(cursor)
    except PyMongoError as e:
        logger.exception("vehicle listing failed")
        raise BackendUnavailable() from e

    items = [serialize_doc(d) for d in docs[:page_size]]
    next_cursor = items[-1]["id"] if len(docs) > page_size else None
    return Page(items=items, next_cursor=next_cursor)


def create_vehicle(payload: VehicleCreate) -> str:
    try:
        vid = create_document(VEHICLES, payload)
    except PyMongoError as e:
        logger.exception("vehicle create failed")
        raise BackendUnavailable() from e
    logger.info("created vehicle %s", vid)
    return vid


def update_vehicle(payload: VehicleUpdate) -> bool:
    """Merge the supplied fields into the vehicle. Returns False if it does not exist."""
    oid = parse_id(payload.id)
    if oid is None:
        return False

    changes = payload.changes()
    unset = {}
    if changes.get("image_url") == "":
        del changes["image_url"]
        unset["image_url"] = ""
    changes["updated_at"] = datetime.now(timezone.utc)

    update: Dict[str, Any] = {"$set": changes}
    if unset:
        update["$unset"] = unset
    try:
        result = get_collection(VEHICLES).update_one({"_id": oid}, update)
    except PyMongoError as e:
        logger.exception("vehicle update failed for %s", payload.id)
        raise BackendUnavailable() from e
    logger.info("updated vehicle %s (%s)", payload.id, ", ".join(sorted(changes)))
    return result.matched_count > 0


def delete_vehicle(vehicle_id: str, images=None) -> bool:
    """Delete a vehicle, then release its hosted image.

    The image release is best-effort: a failure there is logged and the
    delete still succeeds. Deleting an unknown id is a no-op returning False.
    """
    oid = parse_id(vehicle_id)
    if oid is None:
        return False
    vehicles = get_collection(VEHICLES)
    try:
        doc = vehicles.find_one({"_id": oid})
        if doc is None:
            return False
        vehicles.delete_one({"_id": oid})
    except PyMongoError as e:
        logger.exception("vehicle delete failed for %s", vehicle_id)
        raise BackendUnavailable() from e
    logger.info("deleted vehicle %s", vehicle_id)

    public_id = doc.get("image_public_id")
    if public_id and images is not None:
        try:
            images.destroy(public_id)
        except Exception:
            logger.exception("could not release image %s of vehicle %s", public_id, vehicle_id)
    return True


def list_admins() -> List[Dict[str, str]]:
    try:
        docs = list(get_collection(ADMINS).find({}, {"name": 1}).sort("name", ASCENDING))
    except PyMongoError as e:
        logger.exception("admin listing failed")
        raise BackendUnavailable() from e
    return [{"id": str(d["_id"]), "name": d.get("name", "")} for d in docs]
