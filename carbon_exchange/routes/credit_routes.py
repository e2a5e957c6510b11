"""Marketplace routes for carbon credit listings"""
from typing import Tuple
from flask import Blueprint, jsonify, request, Response

from carbon_exchange.errors import NotFoundError, ServiceError
from carbon_exchange.security import get_session_user, login_required
from carbon_exchange.services.mongodb_service import (
    CREDIT_STATUSES,
    create_credit,
    get_available_credits,
    get_credit,
    get_credit_sold_quantity,
    get_project,
    get_seller_credits,
    get_seller_profile,
    money,
    update_credit
)

bp = Blueprint('credits', __name__, url_prefix='/api/credits')


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@bp.route('', methods=['GET'])
def get_listings() -> Tuple[Response, int]:
    """Get all credits open for purchase"""
    try:
        credits = get_available_credits()
        return jsonify({'credits': credits, 'count': len(credits)}), 200
    except ServiceError as e:
        return jsonify({'error': str(e)}), e.status_code


@bp.route('', methods=['POST'])
@login_required
def list_credits() -> Tuple[Response, int]:
    """List credits of one of the seller's projects"""
    try:
        data = request.get_json(silent=True) or {}

        if not data.get('projectId'):
            return jsonify({'error': 'projectId is required'}), 400
        if not _is_int(data.get('quantity')) or data['quantity'] <= 0:
            return jsonify({'error': 'quantity must be a positive integer'}), 400
        if not _is_number(data.get('pricePerCredit')) or data['pricePerCredit'] <= 0:
            return jsonify({'error': 'pricePerCredit must be a positive number'}), 400

        seller = get_seller_profile(get_session_user()['user_id'])
        if not seller:
            return jsonify({'error': 'Seller profile not found'}), 400

        try:
            project = get_project(data['projectId'])
        except NotFoundError:
            project = None
        if not project or project['seller_id'] != seller['profile_id']:
            return jsonify({'error': 'Project not found or not owned by seller'}), 404

        credit = create_credit(
            project_id=project['project_id'],
            seller_id=seller['profile_id'],
            quantity=data['quantity'],
            price_per_credit=data['pricePerCredit']
        )
        return jsonify({'ok': True, 'id': credit['credit_id']}), 200
    except ServiceError as e:
        return jsonify({'error': str(e)}), e.status_code


@bp.route('/mine', methods=['GET'])
@login_required
def my_listings() -> Tuple[Response, int]:
    """Get the signed-in seller's listings"""
    try:
        seller = get_seller_profile(get_session_user()['user_id'])
        if not seller:
            return jsonify({'listings': []}), 200
        return jsonify({'listings': get_seller_credits(seller['profile_id'])}), 200
    except ServiceError as e:
        return jsonify({'error': str(e)}), e.status_code


@bp.route('/<credit_id>', methods=['PATCH'])
@login_required
def edit_listing(credit_id: str) -> Tuple[Response, int]:
    """Change the price, available quantity or status of a listing"""
    try:
        data = request.get_json(silent=True) or {}
        updates = {}

        if 'pricePerCredit' in data:
            if not _is_number(data['pricePerCredit']) or data['pricePerCredit'] <= 0:
                return jsonify({'error': 'pricePerCredit must be a positive number'}), 400
            updates['price_per_credit'] = float(money(data['pricePerCredit']))
        if 'availableQuantity' in data:
            if not _is_int(data['availableQuantity']) or data['availableQuantity'] < 0:
                return jsonify({'error': 'availableQuantity must be a non-negative integer'}), 400
            updates['available_quantity'] = data['availableQuantity']
        if 'status' in data:
            if data['status'] not in CREDIT_STATUSES:
                return jsonify({'error': f"status must be one of: {', '.join(CREDIT_STATUSES)}"}), 400
            updates['status'] = data['status']

        if not updates:
            return jsonify({'error': 'No changes provided'}), 400

        seller = get_seller_profile(get_session_user()['user_id'])
        if not seller:
            return jsonify({'error': 'Seller profile not found'}), 400

        expected_available = None
        if 'available_quantity' in updates:
            credit = get_credit(credit_id)
            if credit['seller_id'] != seller['profile_id']:
                return jsonify({'error': 'Listing not found'}), 404
            if updates['available_quantity'] > credit['quantity']:
                return jsonify({'error': 'availableQuantity cannot exceed the listed quantity'}), 400
            unsold = credit['quantity'] - get_credit_sold_quantity(credit_id)
            if updates['available_quantity'] > unsold:
                return jsonify({'error': f"availableQuantity cannot exceed the {unsold} unsold credits"}), 400
            expected_available = credit['available_quantity']

        update_credit(credit_id, seller['profile_id'], updates, expected_available=expected_available)
        return jsonify({'ok': True}), 200
    except ServiceError as e:
        if e.status_code == 404:
            return jsonify({'error': 'Listing not found'}), 404
        return jsonify({'error': str(e)}), e.status_code
