import pytest
import sys
import os
from unittest.mock import patch, MagicMock
from datetime import datetime, timezone
from dotenv import load_dotenv

# Add the project root to Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Load environment variables
load_dotenv()

from carbon_exchange.app import create_app


@pytest.fixture
def app():
    """Create and configure a test Flask application."""
    app = create_app('testing')
    return app


@pytest.fixture
def client(app):
    """Create a test client."""
    return app.test_client()


@pytest.fixture
def buyer_user():
    return {
        "user_id": "buyer-1",
        "name": "Demo Buyer",
        "email": "buyer@example.com",
        "role": "buyer"
    }


@pytest.fixture
def seller_user():
    return {
        "user_id": "seller-1",
        "name": "Demo Seller",
        "email": "seller@example.com",
        "role": "seller"
    }


@pytest.fixture
def sign_in():
    """Make requests run as the given user."""
    patchers = []

    def _sign_in(user):
        patcher = patch('carbon_exchange.security.resolve_session', return_value=user)
        patcher.start()
        patchers.append(patcher)
        return user

    yield _sign_in
    for patcher in patchers:
        patcher.stop()


@pytest.fixture
def mock_db():
    """A stand-in for the MongoDB database handle."""
    return MagicMock()


@pytest.fixture
def buyer_profile():
    return {
        "profile_id": "buyer-1",
        "user_id": "buyer-1",
        "company_name": "Demo Logistics Ltd",
        "industry_type": "transportation"
    }


@pytest.fixture
def seller_profile():
    return {
        "profile_id": "seller-1",
        "user_id": "seller-1",
        "organization_name": "Green Earth Projects",
        "project_count": 1
    }


@pytest.fixture
def test_project():
    return {
        "project_id": "project-1",
        "seller_id": "seller-1",
        "name": "Mangrove Restoration Initiative",
        "type": "reforestation",
        "registry": "Verra",
        "location": "India",
        "vintage_year": 2024
    }


@pytest.fixture
def test_credit():
    return {
        "credit_id": "0a1b2c3d-0000-4000-8000-000000000001",
        "project_id": "project-1",
        "seller_id": "seller-1",
        "quantity": 1000,
        "available_quantity": 900,
        "price_per_credit": 15.0,
        "status": "available"
    }


@pytest.fixture
def test_transaction():
    """A completed purchase joined with its parties and project."""
    return {
        "transaction_id": "tx-1",
        "buyer_id": "buyer-1",
        "seller_id": "seller-1",
        "credit_id": "0a1b2c3d-0000-4000-8000-000000000001",
        "project_id": "project-1",
        "quantity": 100,
        "unit_price": 15.0,
        "total_price": 1500.0,
        "platform_fee": 30.0,
        "compliance_fee": 15.0,
        "gst_applied": 8.1,
        "amount_due": 1553.1,
        "registry": "Verra",
        "status": "completed",
        "blockchain_status": "recorded",
        "blockchain_tx_hash": "ABC123",
        "transaction_date": datetime(2025, 1, 10, tzinfo=timezone.utc),
        "buyer": {"profile_id": "buyer-1", "user_id": "buyer-1", "company_name": "Demo Logistics Ltd"},
        "seller": {"profile_id": "seller-1", "user_id": "seller-1", "organization_name": "Green Earth Projects"},
        "project": {"project_id": "project-1", "name": "Mangrove Restoration Initiative",
                    "type": "reforestation", "registry": "Verra"}
    }
