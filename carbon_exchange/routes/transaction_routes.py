"""Transaction history routes"""
from typing import Tuple, Dict, Any
from datetime import datetime, timezone
from flask import Blueprint, jsonify, Response

from carbon_exchange.errors import ServiceError
from carbon_exchange.security import get_session_user, login_required
from carbon_exchange.services.mongodb_service import (
    get_buyer_profile,
    get_profile_transactions,
    get_seller_profile,
    get_transaction
)
from carbon_exchange.services.xrpl_service import get_explorer_url, verify_xrpl_transaction

bp = Blueprint('transactions', __name__, url_prefix='/api/transactions')

HISTORY_LIMIT = 50


def format_transaction(row: Dict[str, Any], role: str) -> Dict[str, Any]:
    """One history row as seen by the buyer or the seller"""
    project = row.get('project') or {}
    certificate = row.get('certificate')
    quantity = row.get('quantity') or 0
    total = row.get('total_price') or 0.0
    if role == 'buyer':
        counterparty = (row.get('seller') or {}).get('organization_name') or 'Unknown Seller'
    else:
        counterparty = (row.get('buyer') or {}).get('company_name') or 'Unknown Buyer'
    return {
        'id': row['transaction_id'],
        'date': row.get('transaction_date'),
        'type': 'buy' if role == 'buyer' else 'sell',
        'quantity': quantity,
        'unitPrice': round(total / quantity, 2) if quantity else 0.0,
        'totalValue': total,
        'amountDue': row.get('amount_due'),
        'status': row.get('status'),
        'counterparty': counterparty,
        'projectName': project.get('name') or 'N/A',
        'projectType': project.get('type') or 'N/A',
        'creditType': project.get('type') or 'Unknown',
        'hasCertificate': bool(certificate),
        'certificateId': certificate.get('cert_id') if certificate else None,
        'blockchainTxHash': row.get('blockchain_tx_hash'),
        'blockchainStatus': row.get('blockchain_status'),
        'explorerUrl': get_explorer_url(row.get('blockchain_tx_hash')),
        'registry': row.get('registry')
    }


@bp.route('', methods=['GET'])
@login_required
def list_transactions() -> Tuple[Response, int]:
    """Get the signed-in user's transactions, newest first"""
    try:
        user = get_session_user()
        role = user.get('role')
        if role == 'buyer':
            profile = get_buyer_profile(user['user_id'])
            field = 'buyer_id'
        elif role == 'seller':
            profile = get_seller_profile(user['user_id'])
            field = 'seller_id'
        else:
            profile = None

        rows = get_profile_transactions(field, profile['profile_id'], HISTORY_LIMIT) if profile else []
        return jsonify({
            'transactions': [format_transaction(row, role) for row in rows],
            'userRole': role,
            'lastUpdated': datetime.now(timezone.utc).isoformat()
        }), 200
    except ServiceError as e:
        return jsonify({'error': 'Failed to fetch transactions', 'details': str(e)}), e.status_code


@bp.route('/<transaction_id>/chain', methods=['GET'])
@login_required
def verify_on_chain(transaction_id: str) -> Tuple[Response, int]:
    """Check the ledger record of a transaction"""
    try:
        txn = get_transaction(transaction_id)
        # Profile ids are the owning user ids
        if get_session_user()['user_id'] not in (txn['buyer_id'], txn['seller_id']):
            return jsonify({'error': 'Forbidden'}), 403
        if not txn.get('blockchain_tx_hash'):
            return jsonify({'error': 'Transaction has no ledger record'}), 404

        result = verify_xrpl_transaction(txn['blockchain_tx_hash'], expected_type='AccountSet')
        return jsonify({
            'transactionId': transaction_id,
            'blockchainTxHash': txn['blockchain_tx_hash'],
            'explorerUrl': get_explorer_url(txn['blockchain_tx_hash']),
            'verified': result['success'],
            'message': result.get('message')
        }), 200
    except ServiceError as e:
        return jsonify({'error': str(e)}), e.status_code
