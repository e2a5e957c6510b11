"""MongoDB service for marketplace records"""
from typing import Dict, Any, List, Optional
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
import logging
import os
import uuid

from flask import current_app, has_app_context
from pymongo import MongoClient, ReturnDocument, DESCENDING
from pymongo.errors import PyMongoError, DuplicateKeyError

from carbon_exchange.errors import ConflictError, NotFoundError, StorageError

logger = logging.getLogger(__name__)

PROJECT_TYPES = ("reforestation", "renewable_energy", "waste_management", "methane_capture")
CREDIT_STATUSES = ("available", "sold", "retired")

_client: Optional[MongoClient] = None
_client_uri: Optional[str] = None


def _setting(name: str, default: str) -> str:
    """App config wins over the environment inside an app context."""
    if has_app_context() and current_app.config.get(name):
        return current_app.config[name]
    return os.getenv(name) or default


def get_db():
    """Get MongoDB database connection"""
    global _client, _client_uri
    mongo_uri = _setting("MONGODB_URI", "mongodb://localhost:27017/")
    if _client is None or _client_uri != mongo_uri:
        if _client is not None:
            _client.close()
        _client = MongoClient(mongo_uri, tz_aware=True)
        _client_uri = mongo_uri
        logger.debug("Opened MongoDB client for %s", mongo_uri)
    return _client[_setting("MONGODB_DB", "carbon_exchange")]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def money(value: Any) -> Decimal:
    """Round an amount half-up to cents."""
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Make a document JSON friendly."""
    if doc is None:
        return None
    if "_id" in doc:
        doc["_id"] = str(doc["_id"])
    return doc


def ensure_indexes():
    """Ensure required indexes exist in MongoDB"""
    try:
        db = get_db()

        db.users.create_index("user_id", unique=True)
        db.users.create_index("email", unique=True)

        db.sessions.create_index("token", unique=True)
        # Expired sessions are removed by the TTL monitor
        db.sessions.create_index("expires_at", expireAfterSeconds=0)

        db.buyer_profiles.create_index("user_id", unique=True)
        db.seller_profiles.create_index("user_id", unique=True)

        db.projects.create_index("project_id", unique=True)
        db.projects.create_index("seller_id")

        db.carbon_credits.create_index("credit_id", unique=True)
        db.carbon_credits.create_index("project_id")
        db.carbon_credits.create_index([("status", 1), ("available_quantity", 1)])

        db.transactions.create_index("transaction_id", unique=True)
        db.transactions.create_index([("buyer_id", 1), ("transaction_date", DESCENDING)])
        db.transactions.create_index([("seller_id", 1), ("transaction_date", DESCENDING)])
        # One transaction per buyer and idempotency key
        db.transactions.create_index(
            [("buyer_id", 1), ("idempotency_key", 1)],
            unique=True,
            partialFilterExpression={"idempotency_key": {"$type": "string"}}
        )

        db.certificate_records.create_index("cert_id", unique=True)
        db.certificate_records.create_index("transaction_id", unique=True)

        db.carbon_calculations.create_index("buyer_id")
        return True
    except PyMongoError as e:
        raise StorageError(f"Failed to create indexes: {str(e)}")


# -- profiles ---------------------------------------------------------------

def get_buyer_profile(user_id: str) -> Optional[Dict[str, Any]]:
    try:
        return serialize(get_db().buyer_profiles.find_one({"user_id": user_id}))
    except PyMongoError as e:
        raise StorageError(f"Failed to get buyer profile: {str(e)}")


def get_seller_profile(user_id: str) -> Optional[Dict[str, Any]]:
    try:
        return serialize(get_db().seller_profiles.find_one({"user_id": user_id}))
    except PyMongoError as e:
        raise StorageError(f"Failed to get seller profile: {str(e)}")


def create_buyer_profile(
    user_id: str,
    company_name: str,
    industry_type: Optional[str] = None,
    address: Optional[str] = None,
    gst_number: Optional[str] = None
) -> Dict[str, Any]:
    """Create the buyer profile of a user; the profile id is the user id."""
    profile = {
        "profile_id": user_id,
        "user_id": user_id,
        "company_name": company_name,
        "industry_type": industry_type,
        "address": address,
        "gst_number": gst_number,
        "total_emissions": None,
        "carbon_credits_req": None,
        "created_at": utcnow(),
        "updated_at": utcnow()
    }
    try:
        result = get_db().buyer_profiles.insert_one(profile)
        profile["_id"] = str(result.inserted_id)
        return profile
    except DuplicateKeyError:
        raise ConflictError("Buyer profile already exists")
    except PyMongoError as e:
        raise StorageError(f"Failed to create buyer profile: {str(e)}")


def create_seller_profile(
    user_id: str,
    organization_name: str,
    website: Optional[str] = None,
    organization_description: Optional[str] = None,
    gst_number: Optional[str] = None
) -> Dict[str, Any]:
    """Create the seller profile of a user; the profile id is the user id."""
    profile = {
        "profile_id": user_id,
        "user_id": user_id,
        "organization_name": organization_name,
        "website": website,
        "organization_description": organization_description,
        "gst_number": gst_number,
        "project_count": 0,
        "total_credits_sold": 0,
        "total_revenue": 0.0,
        "created_at": utcnow(),
        "updated_at": utcnow()
    }
    try:
        result = get_db().seller_profiles.insert_one(profile)
        profile["_id"] = str(result.inserted_id)
        return profile
    except DuplicateKeyError:
        raise ConflictError("Seller profile already exists")
    except PyMongoError as e:
        raise StorageError(f"Failed to create seller profile: {str(e)}")


def record_buyer_footprint(buyer_id: str, total_emissions: float, credits_required: float) -> None:
    try:
        get_db().buyer_profiles.update_one(
            {"profile_id": buyer_id},
            {"$set": {
                "total_emissions": total_emissions,
                "carbon_credits_req": credits_required,
                "updated_at": utcnow()
            }}
        )
    except PyMongoError as e:
        raise StorageError(f"Failed to update buyer footprint: {str(e)}")


def store_calculation(buyer_id: str, industry: str, input_data: Dict[str, Any], result: Dict[str, Any]) -> Dict[str, Any]:
    """Keep a carbon calculator run for a buyer"""
    doc = {
        "calculation_id": new_id(),
        "buyer_id": buyer_id,
        "industry": industry,
        "input_data": input_data,
        "estimated_co2": result["totalFootprint"],
        "credits_needed": result["recommendedCredits"],
        "created_at": utcnow()
    }
    try:
        inserted = get_db().carbon_calculations.insert_one(doc)
        doc["_id"] = str(inserted.inserted_id)
        return doc
    except PyMongoError as e:
        raise StorageError(f"Failed to store calculation: {str(e)}")


# -- projects ---------------------------------------------------------------

def create_project(
    seller_id: str,
    name: str,
    project_type: str,
    description: Optional[str] = None,
    location: Optional[str] = None,
    registry: Optional[str] = None,
    vintage_year: Optional[int] = None
) -> Dict[str, Any]:
    """Create a project owned by a seller profile"""
    project = {
        "project_id": new_id(),
        "seller_id": seller_id,
        "name": name,
        "description": description,
        "type": project_type,
        "location": location,
        "registry": registry,
        "vintage_year": vintage_year,
        "created_at": utcnow(),
        "updated_at": utcnow()
    }
    try:
        db = get_db()
        result = db.projects.insert_one(project)
        db.seller_profiles.update_one(
            {"profile_id": seller_id},
            {"$inc": {"project_count": 1}, "$set": {"updated_at": utcnow()}}
        )
        project["_id"] = str(result.inserted_id)
        return project
    except PyMongoError as e:
        raise StorageError(f"Failed to create project: {str(e)}")


def get_seller_projects(seller_id: str) -> List[Dict[str, Any]]:
    try:
        projects = get_db().projects.find({"seller_id": seller_id}).sort("created_at", DESCENDING)
        return [serialize(p) for p in projects]
    except PyMongoError as e:
        raise StorageError(f"Failed to get projects: {str(e)}")


def get_project(project_id: str) -> Dict[str, Any]:
    try:
        project = get_db().projects.find_one({"project_id": project_id})
    except PyMongoError as e:
        raise StorageError(f"Failed to get project: {str(e)}")
    if not project:
        raise NotFoundError(f"Project {project_id} not found")
    return serialize(project)


# -- credits ----------------------------------------------------------------

def create_credit(project_id: str, seller_id: str, quantity: int, price_per_credit: float) -> Dict[str, Any]:
    """List a new lot of credits for a project"""
    credit = {
        "credit_id": new_id(),
        "project_id": project_id,
        "seller_id": seller_id,
        "quantity": quantity,
        "available_quantity": quantity,
        "price_per_credit": float(money(price_per_credit)),
        "status": "available",
        "created_at": utcnow(),
        "updated_at": utcnow()
    }
    try:
        result = get_db().carbon_credits.insert_one(credit)
        credit["_id"] = str(result.inserted_id)
        return credit
    except PyMongoError as e:
        raise StorageError(f"Failed to create credit: {str(e)}")


def get_available_credits() -> List[Dict[str, Any]]:
    """Get all credits buyers can purchase, with their project details"""
    pipeline = [
        {"$match": {"status": "available", "available_quantity": {"$gt": 0}}},
        {"$lookup": {
            "from": "projects",
            "localField": "project_id",
            "foreignField": "project_id",
            "as": "project"
        }},
        {"$unwind": {"path": "$project", "preserveNullAndEmptyArrays": True}},
        {"$sort": {"created_at": DESCENDING}},
        {"$project": {
            "_id": 0,
            "id": "$credit_id",
            "availableQuantity": "$available_quantity",
            "pricePerCredit": "$price_per_credit",
            "projectId": "$project_id",
            "projectName": "$project.name",
            "type": "$project.type",
            "registry": "$project.registry",
            "location": "$project.location",
            "vintageYear": "$project.vintage_year"
        }}
    ]
    try:
        return list(get_db().carbon_credits.aggregate(pipeline))
    except PyMongoError as e:
        raise StorageError(f"Failed to get credits: {str(e)}")


def get_seller_credits(seller_id: str) -> List[Dict[str, Any]]:
    """Get a seller's listings with their project names"""
    pipeline = [
        {"$match": {"seller_id": seller_id}},
        {"$lookup": {
            "from": "projects",
            "localField": "project_id",
            "foreignField": "project_id",
            "as": "project"
        }},
        {"$unwind": {"path": "$project", "preserveNullAndEmptyArrays": True}},
        {"$sort": {"created_at": DESCENDING}},
        {"$project": {
            "_id": 0,
            "id": "$credit_id",
            "projectId": "$project_id",
            "projectName": "$project.name",
            "quantity": "$quantity",
            "availableQuantity": "$available_quantity",
            "pricePerCredit": "$price_per_credit",
            "status": "$status"
        }}
    ]
    try:
        return list(get_db().carbon_credits.aggregate(pipeline))
    except PyMongoError as e:
        raise StorageError(f"Failed to get listings: {str(e)}")


def get_credit(credit_id: str) -> Dict[str, Any]:
    try:
        credit = get_db().carbon_credits.find_one({"credit_id": credit_id})
    except PyMongoError as e:
        raise StorageError(f"Failed to get credit: {str(e)}")
    if not credit:
        raise NotFoundError("Credit not found")
    return serialize(credit)


def get_credit_sold_quantity(credit_id: str) -> int:
    """Credits of a lot held by pending or completed purchases"""
    pipeline = [
        {"$match": {"credit_id": credit_id, "status": {"$in": ["pending", "completed"]}}},
        {"$group": {"_id": None, "sold": {"$sum": "$quantity"}}}
    ]
    try:
        rows = list(get_db().transactions.aggregate(pipeline))
    except PyMongoError as e:
        raise StorageError(f"Failed to get sold quantity: {str(e)}")
    return rows[0]["sold"] if rows else 0


def update_credit(credit_id: str, seller_id: str, updates: Dict[str, Any],
                  expected_available: Optional[int] = None) -> Dict[str, Any]:
    """Update a listing owned by the seller and return it.

    With expected_available the write only applies while the stock is
    still at that value, so a purchase landing in between is not undone.
    """
    update_data = dict(updates)
    update_data["updated_at"] = utcnow()
    query = {"credit_id": credit_id, "seller_id": seller_id}
    if expected_available is not None:
        query["available_quantity"] = expected_available
    try:
        credit = get_db().carbon_credits.find_one_and_update(
            query,
            {"$set": update_data},
            return_document=ReturnDocument.AFTER
        )
    except PyMongoError as e:
        raise StorageError(f"Failed to update listing: {str(e)}")
    if not credit:
        if expected_available is not None:
            raise ConflictError("Listing changed while updating, please retry")
        raise NotFoundError("Listing not found")
    return serialize(credit)


# -- transactions -----------------------------------------------------------

def get_transaction(transaction_id: str) -> Dict[str, Any]:
    try:
        txn = get_db().transactions.find_one({"transaction_id": transaction_id})
    except PyMongoError as e:
        raise StorageError(f"Failed to get transaction: {str(e)}")
    if not txn:
        raise NotFoundError("Transaction not found")
    return serialize(txn)


def get_transaction_details(transaction_id: str) -> Dict[str, Any]:
    """Get a transaction joined with its buyer, seller and project"""
    pipeline = [{"$match": {"transaction_id": transaction_id}}] + _transaction_joins() + [{"$limit": 1}]
    try:
        rows = list(get_db().transactions.aggregate(pipeline))
    except PyMongoError as e:
        raise StorageError(f"Failed to get transaction: {str(e)}")
    if not rows:
        raise NotFoundError("Transaction not found")
    return serialize(rows[0])


def get_profile_transactions(field: str, profile_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Get the newest transactions where ``field`` (buyer_id or seller_id) is the profile"""
    pipeline = [
        {"$match": {field: profile_id}},
        {"$sort": {"transaction_date": DESCENDING}},
        {"$limit": limit}
    ] + _transaction_joins()
    try:
        return [serialize(row) for row in get_db().transactions.aggregate(pipeline)]
    except PyMongoError as e:
        raise StorageError(f"Failed to get transactions: {str(e)}")


def _transaction_joins() -> List[Dict[str, Any]]:
    joins = []
    for collection, local, foreign, alias in (
        ("buyer_profiles", "buyer_id", "profile_id", "buyer"),
        ("seller_profiles", "seller_id", "profile_id", "seller"),
        ("projects", "project_id", "project_id", "project"),
        ("certificate_records", "transaction_id", "transaction_id", "certificate"),
    ):
        joins.append({"$lookup": {
            "from": collection,
            "localField": local,
            "foreignField": foreign,
            "as": alias
        }})
        joins.append({"$unwind": {"path": f"${alias}", "preserveNullAndEmptyArrays": True}})
    return joins


# -- certificates -----------------------------------------------------------

def get_certificate_by_transaction(transaction_id: str) -> Optional[Dict[str, Any]]:
    try:
        return serialize(get_db().certificate_records.find_one({"transaction_id": transaction_id}))
    except PyMongoError as e:
        raise StorageError(f"Failed to get certificate: {str(e)}")


def create_certificate_record(transaction: Dict[str, Any], cert_id: str, verification_url: str) -> Dict[str, Any]:
    record = {
        "record_id": new_id(),
        "cert_id": cert_id,
        "transaction_id": transaction["transaction_id"],
        "issued_to_buyer_id": transaction["buyer_id"],
        "issued_to_seller_id": transaction["seller_id"],
        "verification_url": verification_url,
        "issued_at": utcnow()
    }
    try:
        result = get_db().certificate_records.insert_one(record)
        record["_id"] = str(result.inserted_id)
        return record
    except DuplicateKeyError:
        raise ConflictError("Certificate already issued for this transaction")
    except PyMongoError as e:
        raise StorageError(f"Failed to create certificate record: {str(e)}")


def reissue_certificate_record(transaction_id: str, cert_id: str, verification_url: str) -> Dict[str, Any]:
    """Give an existing certificate record a new certificate id"""
    try:
        record = get_db().certificate_records.find_one_and_update(
            {"transaction_id": transaction_id},
            {"$set": {
                "cert_id": cert_id,
                "verification_url": verification_url,
                "issued_at": utcnow()
            }},
            return_document=ReturnDocument.AFTER
        )
    except PyMongoError as e:
        raise StorageError(f"Failed to reissue certificate: {str(e)}")
    if not record:
        raise NotFoundError("Certificate record not found")
    return serialize(record)


def get_certificate_details(cert_id: str) -> Dict[str, Any]:
    """Get a certificate joined with its transaction, parties and project"""
    pipeline = [
        {"$match": {"cert_id": cert_id}},
        {"$lookup": {
            "from": "transactions",
            "localField": "transaction_id",
            "foreignField": "transaction_id",
            "as": "transaction"
        }},
        {"$unwind": {"path": "$transaction", "preserveNullAndEmptyArrays": True}},
        {"$lookup": {
            "from": "buyer_profiles",
            "localField": "issued_to_buyer_id",
            "foreignField": "profile_id",
            "as": "buyer"
        }},
        {"$unwind": {"path": "$buyer", "preserveNullAndEmptyArrays": True}},
        {"$lookup": {
            "from": "seller_profiles",
            "localField": "issued_to_seller_id",
            "foreignField": "profile_id",
            "as": "seller"
        }},
        {"$unwind": {"path": "$seller", "preserveNullAndEmptyArrays": True}},
        {"$lookup": {
            "from": "projects",
            "localField": "transaction.project_id",
            "foreignField": "project_id",
            "as": "project"
        }},
        {"$unwind": {"path": "$project", "preserveNullAndEmptyArrays": True}},
        {"$limit": 1}
    ]
    try:
        rows = list(get_db().certificate_records.aggregate(pipeline))
    except PyMongoError as e:
        raise StorageError(f"Failed to verify certificate: {str(e)}")
    if not rows:
        raise NotFoundError(f"No record found for certId: {cert_id}")
    return serialize(rows[0])
