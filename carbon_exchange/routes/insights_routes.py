"""AI insight routes"""
from typing import Tuple
from datetime import datetime, timezone
import logging
from flask import Blueprint, jsonify, request, Response

from carbon_exchange.errors import ServiceError
from carbon_exchange.security import get_session_user
from carbon_exchange.services.ai_service import (
    calculate_carbon_footprint,
    classify_product,
    generate_market_insights,
    parse_footprint_input,
    summarize_market,
    summarize_sustainability
)
from carbon_exchange.services.mongodb_service import (
    get_available_credits,
    get_buyer_profile,
    record_buyer_footprint,
    store_calculation
)

logger = logging.getLogger(__name__)

bp = Blueprint('insights', __name__, url_prefix='/api')


@bp.route('/market-insights', methods=['GET'])
def market_insights() -> Tuple[Response, int]:
    """Market insights with a per-type price summary of open listings"""
    result = generate_market_insights()
    body = {
        'insights': result['insights'],
        'timestamp': datetime.now(timezone.utc).isoformat()
    }
    if result['fallback']:
        body['fallback'] = True
    try:
        body['market'] = summarize_market(get_available_credits())
    except ServiceError as e:
        logger.warning("Market summary unavailable: %s", e)
    return jsonify(body), 200


@bp.route('/carbon-footprint', methods=['POST'])
def carbon_footprint() -> Tuple[Response, int]:
    """Estimate a company's yearly footprint and the credits to offset it"""
    try:
        data = parse_footprint_input(request.get_json(silent=True) or {})
        result = calculate_carbon_footprint(data)

        user = get_session_user()
        if user and user.get('role') == 'buyer':
            buyer = get_buyer_profile(user['user_id'])
            if buyer:
                store_calculation(buyer['profile_id'], data['industryType'], data, result)
                record_buyer_footprint(buyer['profile_id'], result['totalFootprint'], result['recommendedCredits'])
        return jsonify(result), 200
    except ServiceError as e:
        return jsonify({'error': str(e)}), e.status_code
    except ValueError as e:
        return jsonify({'error': str(e)}), 400


@bp.route('/product-insights', methods=['POST'])
def product_insights() -> Tuple[Response, int]:
    data = request.get_json(silent=True) or {}
    name = data.get('productName')
    if not name or not isinstance(name, str):
        return jsonify({'error': 'productName is required'}), 400
    description = data.get('description') or ''
    if not isinstance(description, str):
        return jsonify({'error': 'description must be a string'}), 400

    return jsonify({
        'category': classify_product(name, description),
        'summary': summarize_sustainability(description)
    }), 200
