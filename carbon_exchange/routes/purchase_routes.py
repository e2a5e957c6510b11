"""Credit purchase route"""
from typing import Tuple
from flask import Blueprint, current_app, jsonify, request, Response

from carbon_exchange.errors import ServiceError
from carbon_exchange.security import get_session_user, role_required
from carbon_exchange.services.purchase_service import settle_purchase

bp = Blueprint('purchase', __name__, url_prefix='/api/purchase')

MAX_IDEMPOTENCY_KEY_LENGTH = 128


@bp.route('', methods=['POST'])
@role_required('buyer', 'Only buyers can make purchases')
def purchase() -> Tuple[Response, int]:
    """Buy credits from a listing.

    Expected request body:
    {
        "creditId": str,         # listing to buy from
        "quantity": int,         # whole credits, > 0
        "walletAddress": str     # Optional XRPL account to receive the token
    }

    An ``Idempotency-Key`` header makes retries return the first result.
    """
    try:
        data = request.get_json(silent=True) or {}

        if not isinstance(data.get('creditId'), str) or not data['creditId']:
            return jsonify({'error': 'creditId is required'}), 400
        quantity = data.get('quantity')
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            return jsonify({'error': 'quantity must be a positive integer'}), 400

        idempotency_key = request.headers.get('Idempotency-Key') or None
        if idempotency_key and len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            return jsonify({'error': 'Idempotency-Key is too long'}), 400

        result = settle_purchase(
            user_id=get_session_user()['user_id'],
            credit_id=data['creditId'],
            quantity=quantity,
            wallet_address=data.get('walletAddress') or None,
            idempotency_key=idempotency_key,
            fee_rates={
                'platform_fee_rate': current_app.config['PLATFORM_FEE_RATE'],
                'compliance_fee_rate': current_app.config['COMPLIANCE_FEE_RATE'],
                'gst_rate': current_app.config['GST_RATE']
            }
        )
        return jsonify(result), 200
    except ServiceError as e:
        return jsonify({'error': str(e)}), e.status_code
