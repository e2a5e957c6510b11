"""Buyer and seller dashboard routes"""
from typing import Tuple
from flask import Blueprint, jsonify, Response

from carbon_exchange.errors import ServiceError
from carbon_exchange.security import get_session_user, role_required
from carbon_exchange.services.dashboard_service import buyer_summary, seller_summary
from carbon_exchange.services.mongodb_service import get_buyer_profile, get_seller_profile

bp = Blueprint('dashboard', __name__, url_prefix='/api/dashboard')


@bp.route('/buyer', methods=['GET'])
@role_required('buyer')
def buyer_dashboard() -> Tuple[Response, int]:
    try:
        buyer = get_buyer_profile(get_session_user()['user_id'])
        if not buyer:
            return jsonify({'error': 'Buyer profile not found'}), 400
        return jsonify(buyer_summary(buyer)), 200
    except ServiceError as e:
        return jsonify({'error': str(e)}), e.status_code


@bp.route('/seller', methods=['GET'])
@role_required('seller')
def seller_dashboard() -> Tuple[Response, int]:
    try:
        seller = get_seller_profile(get_session_user()['user_id'])
        if not seller:
            return jsonify({'error': 'Seller profile not found'}), 400
        return jsonify(seller_summary(seller)), 200
    except ServiceError as e:
        return jsonify({'error': str(e)}), e.status_code
