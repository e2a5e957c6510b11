"""Demo data for local development"""
from typing import Dict, Any
import logging

import click
from werkzeug.security import generate_password_hash

from carbon_exchange.services.mongodb_service import get_db, utcnow

logger = logging.getLogger(__name__)

DEMO_PASSWORD = "password123"

SEEDED_COLLECTIONS = (
    "carbon_calculations",
    "certificate_records",
    "transactions",
    "carbon_credits",
    "projects",
    "buyer_profiles",
    "seller_profiles",
    "sessions",
    "users",
)


def clear_database(db) -> None:
    for name in SEEDED_COLLECTIONS:
        db[name].delete_many({})


def demo_documents() -> Dict[str, Any]:
    now = utcnow()
    password_hash = generate_password_hash(DEMO_PASSWORD)
    return {
        "users": [
            {"user_id": "buyer-1", "email": "buyer@example.com", "name": "Demo Buyer",
             "role": "buyer", "password_hash": password_hash, "created_at": now, "updated_at": now},
            {"user_id": "seller-1", "email": "seller@example.com", "name": "Demo Seller",
             "role": "seller", "password_hash": password_hash, "created_at": now, "updated_at": now},
        ],
        "buyer_profiles": [
            {"profile_id": "buyer-1", "user_id": "buyer-1", "company_name": "Demo Logistics Ltd",
             "industry_type": "transportation", "created_at": now, "updated_at": now},
        ],
        "seller_profiles": [
            {"profile_id": "seller-1", "user_id": "seller-1", "organization_name": "Green Earth Projects",
             "project_count": 2, "total_credits_sold": 100, "total_revenue": 1500.0,
             "created_at": now, "updated_at": now},
        ],
        "projects": [
            {"project_id": "project-1", "seller_id": "seller-1", "name": "Mangrove Restoration Initiative",
             "description": "Blue carbon project restoring coastal mangroves.", "type": "reforestation",
             "registry": "Verra", "location": "India", "vintage_year": 2024,
             "created_at": now, "updated_at": now},
            {"project_id": "project-2", "seller_id": "seller-1", "name": "Solar Farm Expansion",
             "description": "Utility-scale solar project reducing grid emissions.", "type": "renewable_energy",
             "registry": "Gold Standard", "location": "Kenya", "vintage_year": 2023,
             "created_at": now, "updated_at": now},
        ],
        "carbon_credits": [
            {"credit_id": "credit-1", "project_id": "project-1", "seller_id": "seller-1", "quantity": 1000,
             "available_quantity": 900, "price_per_credit": 15.0, "status": "available",
             "created_at": now, "updated_at": now},
            {"credit_id": "credit-2", "project_id": "project-2", "seller_id": "seller-1", "quantity": 500,
             "available_quantity": 500, "price_per_credit": 18.0, "status": "available",
             "created_at": now, "updated_at": now},
        ],
        "transactions": [
            {"transaction_id": "tx-1", "buyer_id": "buyer-1", "seller_id": "seller-1", "credit_id": "credit-1",
             "project_id": "project-1", "quantity": 100, "unit_price": 15.0, "total_price": 1500.0,
             "platform_fee": 30.0, "compliance_fee": 15.0, "gst_applied": 8.1, "amount_due": 1553.1,
             "registry": "Verra", "status": "completed", "blockchain_status": "skipped",
             "transaction_date": now, "completed_at": now},
        ],
    }


def seed_database(db=None) -> Dict[str, int]:
    """Replace the marketplace data with the demo set; returns counts per collection"""
    db = db if db is not None else get_db()
    clear_database(db)
    counts = {}
    for name, documents in demo_documents().items():
        db[name].insert_many(documents)
        counts[name] = len(documents)
        logger.info("Seeded %s %s", len(documents), name)
    return counts


@click.command("seed")
def seed_command():
    """Clear the database and load demo data."""
    counts = seed_database()
    for name, count in counts.items():
        click.echo(f"Seeded {count} {name}")
    click.echo(f"Demo accounts: buyer@example.com / seller@example.com, password {DEMO_PASSWORD}")
