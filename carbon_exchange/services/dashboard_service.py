"""Buyer portfolio and seller dashboard aggregates"""
from typing import Dict, Any, List
import logging

from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from carbon_exchange.errors import StorageError
from carbon_exchange.services.mongodb_service import get_db

logger = logging.getLogger(__name__)


def _first(rows: List[Dict[str, Any]], default: Dict[str, Any]) -> Dict[str, Any]:
    return rows[0] if rows else default


def buyer_summary(buyer: Dict[str, Any]) -> Dict[str, Any]:
    """Holdings per project and spend for a buyer profile"""
    buyer_id = buyer["profile_id"]
    try:
        db = get_db()
        totals = _first(list(db.transactions.aggregate([
            {"$match": {"buyer_id": buyer_id, "status": "completed"}},
            {"$group": {
                "_id": None,
                "credits": {"$sum": "$quantity"},
                "spent": {"$sum": "$amount_due"},
                "count": {"$sum": 1}
            }}
        ])), {"credits": 0, "spent": 0.0, "count": 0})

        holdings = list(db.transactions.aggregate([
            {"$match": {"buyer_id": buyer_id, "status": "completed"}},
            {"$group": {
                "_id": "$project_id",
                "credits": {"$sum": "$quantity"},
                "value": {"$sum": "$total_price"}
            }},
            {"$lookup": {
                "from": "projects",
                "localField": "_id",
                "foreignField": "project_id",
                "as": "project"
            }},
            {"$unwind": {"path": "$project", "preserveNullAndEmptyArrays": True}},
            {"$sort": {"credits": DESCENDING}},
            {"$project": {
                "_id": 0,
                "projectId": "$_id",
                "projectName": "$project.name",
                "type": "$project.type",
                "registry": "$project.registry",
                "credits": 1,
                "value": 1
            }}
        ]))
    except PyMongoError as e:
        raise StorageError(f"Failed to build buyer dashboard: {str(e)}")

    required = buyer.get("carbon_credits_req")
    return {
        "creditsPurchased": totals["credits"],
        "totalSpent": round(totals["spent"], 2),
        "transactionCount": totals["count"],
        "holdings": holdings,
        "totalEmissions": buyer.get("total_emissions"),
        "creditsRequired": required,
        "offsetProgress": round(min(totals["credits"] / required, 1.0) * 100, 1) if required else None
    }


def seller_summary(seller: Dict[str, Any]) -> Dict[str, Any]:
    """Listings, sales and revenue for a seller profile"""
    seller_id = seller["profile_id"]
    try:
        db = get_db()
        listings = _first(list(db.carbon_credits.aggregate([
            {"$match": {"seller_id": seller_id}},
            {"$group": {
                "_id": None,
                "listed": {"$sum": "$quantity"},
                "available": {"$sum": "$available_quantity"},
                "active": {"$sum": {"$cond": [{"$eq": ["$status", "available"]}, 1, 0]}}
            }}
        ])), {"listed": 0, "available": 0, "active": 0})

        sales = _first(list(db.transactions.aggregate([
            {"$match": {"seller_id": seller_id, "status": "completed"}},
            {"$group": {
                "_id": None,
                "sold": {"$sum": "$quantity"},
                "revenue": {"$sum": "$total_price"},
                "orders": {"$sum": 1}
            }}
        ])), {"sold": 0, "revenue": 0.0, "orders": 0})

        recent = list(db.transactions.find(
            {"seller_id": seller_id},
            {"_id": 0, "transaction_id": 1, "quantity": 1, "total_price": 1, "status": 1, "transaction_date": 1}
        ).sort("transaction_date", DESCENDING).limit(5))
    except PyMongoError as e:
        raise StorageError(f"Failed to build seller dashboard: {str(e)}")

    return {
        "projectCount": seller.get("project_count", 0),
        "activeListings": listings["active"],
        "creditsListed": listings["listed"],
        "creditsAvailable": listings["available"],
        "creditsSold": sales["sold"],
        "revenue": round(sales["revenue"], 2),
        "orders": sales["orders"],
        "recentOrders": [
            {
                "id": order["transaction_id"],
                "quantity": order["quantity"],
                "totalValue": order["total_price"],
                "status": order["status"],
                "date": order["transaction_date"]
            }
            for order in recent
        ]
    }
