import os
import pytest
from unittest.mock import patch
from pymongo.errors import DuplicateKeyError, PyMongoError

from carbon_exchange.app import create_app
from carbon_exchange.errors import ConflictError, NotFoundError, StorageError
from carbon_exchange.seed import SEEDED_COLLECTIONS, seed_database
from carbon_exchange.services.dashboard_service import buyer_summary, seller_summary
from carbon_exchange.services.mongodb_service import (
    create_buyer_profile,
    create_project,
    get_certificate_details,
    get_credit,
    get_credit_sold_quantity,
    get_db,
    money,
    update_credit
)


# MongoDB Service Tests
def test_money():
    assert str(money(2.675)) == "2.68"
    assert str(money("10")) == "10.00"


def test_create_buyer_profile():
    with patch('pymongo.collection.Collection.insert_one') as mock_insert:
        mock_insert.return_value.inserted_id = "507f1f77bcf86cd799439011"
        profile = create_buyer_profile("buyer-1", "Demo Logistics Ltd", industry_type="transportation")

    assert profile["profile_id"] == "buyer-1"
    assert profile["_id"] == "507f1f77bcf86cd799439011"


def test_create_buyer_profile_twice():
    with patch('pymongo.collection.Collection.insert_one', side_effect=DuplicateKeyError("duplicate key")):
        with pytest.raises(ConflictError):
            create_buyer_profile("buyer-1", "Demo Logistics Ltd")


def test_create_project_counts_for_seller(mock_db):
    with patch('carbon_exchange.services.mongodb_service.get_db', return_value=mock_db):
        project = create_project("seller-1", "Solar Farm Expansion", "renewable_energy", registry="Gold Standard")

    assert project["seller_id"] == "seller-1"
    mock_db.seller_profiles.update_one.assert_called_once()
    assert mock_db.seller_profiles.update_one.call_args[0][1]["$inc"] == {"project_count": 1}


def test_get_credit_not_found():
    with patch('pymongo.collection.Collection.find_one', return_value=None):
        with pytest.raises(NotFoundError) as exc_info:
            get_credit("missing")
    assert str(exc_info.value) == "Credit not found"


def test_get_credit_storage_failure():
    with patch('pymongo.collection.Collection.find_one', side_effect=PyMongoError("connection refused")):
        with pytest.raises(StorageError) as exc_info:
            get_credit("credit-1")
    assert exc_info.value.status_code == 503


def test_update_credit_scoped_to_seller(mock_db):
    mock_db.carbon_credits.find_one_and_update.return_value = None
    with patch('carbon_exchange.services.mongodb_service.get_db', return_value=mock_db):
        with pytest.raises(NotFoundError):
            update_credit("credit-1", "seller-2", {"price_per_credit": 20.0})

    query = mock_db.carbon_credits.find_one_and_update.call_args[0][0]
    assert query == {"credit_id": "credit-1", "seller_id": "seller-2"}


def test_update_credit_checks_expected_stock(mock_db):
    mock_db.carbon_credits.find_one_and_update.return_value = None
    with patch('carbon_exchange.services.mongodb_service.get_db', return_value=mock_db):
        with pytest.raises(ConflictError) as exc_info:
            update_credit("credit-1", "seller-1", {"available_quantity": 500}, expected_available=900)

    assert exc_info.value.status_code == 409
    query, update = mock_db.carbon_credits.find_one_and_update.call_args[0]
    assert query == {"credit_id": "credit-1", "seller_id": "seller-1", "available_quantity": 900}
    assert update["$set"]["available_quantity"] == 500


def test_get_credit_sold_quantity(mock_db):
    mock_db.transactions.aggregate.return_value = iter([{"_id": None, "sold": 150}])
    with patch('carbon_exchange.services.mongodb_service.get_db', return_value=mock_db):
        assert get_credit_sold_quantity("credit-1") == 150

    match = mock_db.transactions.aggregate.call_args[0][0][0]["$match"]
    assert match == {"credit_id": "credit-1", "status": {"$in": ["pending", "completed"]}}

    mock_db.transactions.aggregate.return_value = iter([])
    with patch('carbon_exchange.services.mongodb_service.get_db', return_value=mock_db):
        assert get_credit_sold_quantity("credit-2") == 0


def test_get_db_uses_app_config(app, monkeypatch):
    monkeypatch.setattr('carbon_exchange.services.mongodb_service._client', None)
    monkeypatch.setattr('carbon_exchange.services.mongodb_service._client_uri', None)
    app.config['MONGODB_URI'] = 'mongodb://db.internal:27017/'
    with patch('carbon_exchange.services.mongodb_service.MongoClient') as mock_client:
        with app.app_context():
            get_db()

    mock_client.assert_called_once_with('mongodb://db.internal:27017/', tz_aware=True)
    mock_client.return_value.__getitem__.assert_called_once_with(app.config['MONGODB_DB'])
    assert app.config['MONGODB_DB'] == os.getenv('MONGODB_TEST_DB', 'carbon_exchange_test')


def test_get_certificate_details_unknown(mock_db):
    mock_db.certificate_records.aggregate.return_value = iter([])
    with patch('carbon_exchange.services.mongodb_service.get_db', return_value=mock_db):
        with pytest.raises(NotFoundError) as exc_info:
            get_certificate_details("nope")
    assert str(exc_info.value) == "No record found for certId: nope"


# Dashboard Service Tests
def test_buyer_summary(mock_db, buyer_profile):
    mock_db.transactions.aggregate.side_effect = [
        iter([{"credits": 150, "spent": 2329.65, "count": 2}]),
        iter([{"projectId": "project-1", "projectName": "Mangrove Restoration Initiative", "credits": 150}])
    ]
    buyer = dict(buyer_profile, carbon_credits_req=300, total_emissions=272.5)

    with patch('carbon_exchange.services.dashboard_service.get_db', return_value=mock_db):
        summary = buyer_summary(buyer)

    assert summary["creditsPurchased"] == 150
    assert summary["transactionCount"] == 2
    assert summary["offsetProgress"] == 50.0
    assert summary["holdings"][0]["projectId"] == "project-1"


def test_buyer_summary_without_purchases(mock_db, buyer_profile):
    mock_db.transactions.aggregate.side_effect = [iter([]), iter([])]
    with patch('carbon_exchange.services.dashboard_service.get_db', return_value=mock_db):
        summary = buyer_summary(buyer_profile)
    assert summary["creditsPurchased"] == 0
    assert summary["offsetProgress"] is None


def test_seller_summary(mock_db, seller_profile, test_transaction):
    mock_db.carbon_credits.aggregate.return_value = iter([{"listed": 1500, "available": 1300, "active": 2}])
    mock_db.transactions.aggregate.return_value = iter([{"sold": 200, "revenue": 3000.0, "orders": 2}])
    mock_db.transactions.find.return_value.sort.return_value.limit.return_value = [test_transaction]

    with patch('carbon_exchange.services.dashboard_service.get_db', return_value=mock_db):
        summary = seller_summary(seller_profile)

    assert summary["activeListings"] == 2
    assert summary["creditsSold"] == 200
    assert summary["revenue"] == 3000.0
    assert summary["recentOrders"][0]["id"] == "tx-1"


def test_dashboard_routes_check_role(client, sign_in, buyer_user):
    sign_in(buyer_user)
    response = client.get('/api/dashboard/seller')
    assert response.status_code == 403


# Seed
def test_seed_database(mock_db):
    counts = seed_database(mock_db)

    assert counts["users"] == 2
    assert counts["projects"] == 2
    assert counts["carbon_credits"] == 2
    assert counts["transactions"] == 1
    accessed = {call[0][0] for call in mock_db.__getitem__.call_args_list}
    assert set(SEEDED_COLLECTIONS) <= accessed
    assert "carbon_calculations" in accessed
    collection = mock_db.__getitem__.return_value
    assert collection.delete_many.call_count == len(SEEDED_COLLECTIONS)


def test_seed_command(app, mock_db):
    runner = app.test_cli_runner()
    with patch('carbon_exchange.seed.get_db', return_value=mock_db):
        result = runner.invoke(args=['seed'])
    assert result.exit_code == 0
    assert 'Seeded 2 projects' in result.output


# App
def test_create_app_without_secret_key(monkeypatch, caplog):
    monkeypatch.delenv('SECRET_KEY', raising=False)
    with patch('carbon_exchange.app.ensure_indexes'):
        first = create_app()
        second = create_app()

    assert first.config['SECRET_KEY'] != 'dev-secret-key'
    assert len(first.config['SECRET_KEY']) == 64
    assert first.config['SECRET_KEY'] != second.config['SECRET_KEY']
    assert 'SECRET_KEY is not set' in caplog.text


def test_create_app_with_secret_key(monkeypatch, caplog):
    monkeypatch.setenv('SECRET_KEY', 'configured-key')
    with patch('carbon_exchange.app.ensure_indexes'):
        app = create_app()

    assert app.config['SECRET_KEY'] == 'configured-key'
    assert 'SECRET_KEY is not set' not in caplog.text
