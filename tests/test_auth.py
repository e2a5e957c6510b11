import pytest
from datetime import timedelta
from unittest.mock import patch
from pymongo.errors import DuplicateKeyError
from werkzeug.security import generate_password_hash

from carbon_exchange.errors import AuthError, ConflictError, ValidationError
from carbon_exchange.security import SESSION_KEY
from carbon_exchange.services.auth_service import (
    authenticate,
    create_user,
    public_user,
    resolve_session
)
from carbon_exchange.services.mongodb_service import utcnow


# Auth service tests
def test_create_user(mock_db):
    with patch('carbon_exchange.services.auth_service.get_db', return_value=mock_db):
        user = create_user("Jane", " Jane@Example.com ", "password123", role="seller")

    inserted = mock_db.users.insert_one.call_args[0][0]
    assert inserted["email"] == "jane@example.com"
    assert inserted["password_hash"] != "password123"
    assert user["role"] == "seller"
    assert "password_hash" not in public_user(user)


def test_create_user_validation(mock_db):
    with patch('carbon_exchange.services.auth_service.get_db', return_value=mock_db):
        with pytest.raises(ValidationError):
            create_user("Jane", "not-an-email", "password123")
        with pytest.raises(ValidationError):
            create_user("Jane", "jane@example.com", "short")
        with pytest.raises(ValidationError):
            create_user("Jane", "jane@example.com", "password123", role="admin")
    mock_db.users.insert_one.assert_not_called()


def test_create_user_duplicate_email(mock_db):
    mock_db.users.insert_one.side_effect = DuplicateKeyError("duplicate key")
    with patch('carbon_exchange.services.auth_service.get_db', return_value=mock_db):
        with pytest.raises(ConflictError) as exc_info:
            create_user("Jane", "jane@example.com", "password123")
    assert exc_info.value.status_code == 409


def test_authenticate(mock_db):
    mock_db.users.find_one.return_value = {
        "user_id": "buyer-1",
        "email": "buyer@example.com",
        "password_hash": generate_password_hash("password123")
    }
    with patch('carbon_exchange.services.auth_service.get_db', return_value=mock_db):
        assert authenticate("Buyer@example.com", "password123")["user_id"] == "buyer-1"
        with pytest.raises(AuthError):
            authenticate("buyer@example.com", "wrong-password")


def test_resolve_session_expired(mock_db):
    mock_db.sessions.find_one.return_value = {
        "token": "tok",
        "user_id": "buyer-1",
        "expires_at": utcnow() - timedelta(minutes=1)
    }
    with patch('carbon_exchange.services.auth_service.get_db', return_value=mock_db):
        assert resolve_session("tok") is None
    mock_db.sessions.delete_one.assert_called_once_with({"token": "tok"})
    mock_db.users.find_one.assert_not_called()


def test_resolve_session_without_token():
    assert resolve_session(None) is None


# Auth route tests
def test_sign_up(client):
    user = {"user_id": "u-1", "name": "Jane", "email": "jane@example.com", "role": "buyer",
            "password_hash": "hashed"}

    with patch('carbon_exchange.routes.auth_routes.create_user', return_value=user), \
         patch('carbon_exchange.routes.auth_routes.start_session', return_value={"token": "tok-1"}):
        response = client.post('/api/auth/sign-up', json={
            "name": "Jane", "email": "jane@example.com", "password": "password123"
        })

    assert response.status_code == 201
    assert response.json['user']['email'] == 'jane@example.com'
    assert 'password_hash' not in response.json['user']
    with client.session_transaction() as sess:
        assert sess[SESSION_KEY] == 'tok-1'


def test_sign_up_missing_fields(client):
    response = client.post('/api/auth/sign-up', json={"name": "Jane", "password": "password123"})
    assert response.status_code == 400
    assert response.json['error'] == 'email is required'


def test_sign_in_invalid_credentials(client):
    with patch('carbon_exchange.routes.auth_routes.authenticate',
               side_effect=AuthError("Invalid email or password")):
        response = client.post('/api/auth/sign-in', json={
            "email": "jane@example.com", "password": "wrong-password"
        })
    assert response.status_code == 401
    assert response.json['error'] == 'Invalid email or password'


def test_sign_out(client):
    with client.session_transaction() as sess:
        sess[SESSION_KEY] = 'tok-1'

    with patch('carbon_exchange.routes.auth_routes.end_session') as mock_end:
        response = client.post('/api/auth/sign-out')

    assert response.status_code == 200
    mock_end.assert_called_once_with('tok-1')
    with client.session_transaction() as sess:
        assert SESSION_KEY not in sess


def test_me(client, sign_in, buyer_user):
    response = client.get('/api/me')
    assert response.json == {'user': None}

    sign_in(buyer_user)
    response = client.get('/api/me')
    assert response.status_code == 200
    assert response.json['user']['user_id'] == 'buyer-1'
