"""Session handling for route handlers"""
from functools import wraps
from typing import Dict, Any, Optional

from flask import g, jsonify, session

from carbon_exchange.services.auth_service import resolve_session

SESSION_KEY = "session_token"


def get_session_user() -> Optional[Dict[str, Any]]:
    """Get the signed-in user for the current request, if any"""
    if "user" not in g:
        g.user = resolve_session(session.get(SESSION_KEY))
    return g.user


def login_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if get_session_user() is None:
            return jsonify({'error': 'Unauthorized'}), 401
        return f(*args, **kwargs)
    return decorated


def role_required(role: str, message: str = None):
    """Only let signed-in users with ``role`` through"""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            user = get_session_user()
            if user is None:
                return jsonify({'error': 'Unauthorized'}), 401
            if user.get('role') != role:
                return jsonify({'error': message or f'Only {role}s can do this'}), 403
            return f(*args, **kwargs)
        return decorated
    return decorator
