"""Sign-up, sign-in and session routes"""
from typing import Tuple
from flask import Blueprint, current_app, jsonify, request, session, Response

from carbon_exchange.errors import ServiceError
from carbon_exchange.security import SESSION_KEY, get_session_user
from carbon_exchange.services.auth_service import (
    authenticate,
    create_user,
    end_session,
    public_user,
    start_session
)

bp = Blueprint('auth', __name__, url_prefix='/api')


def _open_session(user_id: str) -> None:
    session_doc = start_session(user_id, ttl_hours=current_app.config['SESSION_TTL_HOURS'])
    session.clear()
    session[SESSION_KEY] = session_doc['token']
    session.permanent = True


@bp.route('/auth/sign-up', methods=['POST'])
def sign_up() -> Tuple[Response, int]:
    """Register with email and password and sign in"""
    try:
        data = request.get_json(silent=True) or {}

        if not data.get('name'):
            return jsonify({'error': 'name is required'}), 400
        if not data.get('email'):
            return jsonify({'error': 'email is required'}), 400
        if not data.get('password'):
            return jsonify({'error': 'password is required'}), 400

        user = create_user(
            name=data['name'],
            email=data['email'],
            password=data['password'],
            role=data.get('role') or 'buyer'
        )
        _open_session(user['user_id'])
        return jsonify({'user': public_user(user)}), 201
    except ServiceError as e:
        return jsonify({'error': str(e)}), e.status_code


@bp.route('/auth/sign-in', methods=['POST'])
def sign_in() -> Tuple[Response, int]:
    """Sign in with email and password"""
    try:
        data = request.get_json(silent=True) or {}
        if not data.get('email') or not data.get('password'):
            return jsonify({'error': 'email and password are required'}), 400

        user = authenticate(data['email'], data['password'])
        _open_session(user['user_id'])
        return jsonify({'user': public_user(user)}), 200
    except ServiceError as e:
        return jsonify({'error': str(e)}), e.status_code


@bp.route('/auth/sign-out', methods=['POST'])
def sign_out() -> Tuple[Response, int]:
    end_session(session.get(SESSION_KEY))
    session.clear()
    return jsonify({'ok': True}), 200


@bp.route('/me', methods=['GET'])
def me() -> Tuple[Response, int]:
    """The signed-in user, or null"""
    user = get_session_user()
    return jsonify({'user': public_user(user) if user else None}), 200
