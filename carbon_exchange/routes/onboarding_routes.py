"""Buyer and seller onboarding routes"""
from typing import Tuple
from flask import Blueprint, jsonify, request, Response

from carbon_exchange.errors import ServiceError
from carbon_exchange.security import get_session_user, login_required
from carbon_exchange.services.auth_service import set_user_role
from carbon_exchange.services.mongodb_service import create_buyer_profile, create_seller_profile

bp = Blueprint('onboarding', __name__, url_prefix='/api/onboard')


def describe_organization(data: dict):
    """Fold the optional seller details into one description"""
    if not data.get('description'):
        return None
    return (
        f"Organization Type: {data.get('organizationType') or 'Not specified'}\n"
        f"Location: {data.get('location') or 'Not specified'}\n"
        f"Description: {data['description']}"
    )


@bp.route('/buyer', methods=['POST'])
@login_required
def onboard_buyer() -> Tuple[Response, int]:
    """Create the buyer profile of the signed-in user"""
    try:
        data = request.get_json(silent=True) or {}
        if not data.get('companyName'):
            return jsonify({'error': 'companyName is required'}), 400

        user = get_session_user()
        create_buyer_profile(
            user_id=user['user_id'],
            company_name=data['companyName'],
            industry_type=data.get('industryType'),
            address=data.get('address'),
            gst_number=data.get('gstNumber')
        )
        set_user_role(user['user_id'], 'buyer')
        return jsonify({'ok': True}), 200
    except ServiceError as e:
        return jsonify({'error': str(e)}), e.status_code


@bp.route('/seller', methods=['POST'])
@login_required
def onboard_seller() -> Tuple[Response, int]:
    """Create the seller profile of the signed-in user"""
    try:
        data = request.get_json(silent=True) or {}
        if not data.get('firmName'):
            return jsonify({'error': 'firmName is required'}), 400

        user = get_session_user()
        create_seller_profile(
            user_id=user['user_id'],
            organization_name=data['firmName'],
            website=data.get('website'),
            organization_description=describe_organization(data),
            gst_number=data.get('gstNumber')
        )
        set_user_role(user['user_id'], 'seller')
        return jsonify({'ok': True}), 200
    except ServiceError as e:
        return jsonify({'error': str(e)}), e.status_code
