"""Certificate download and public verification routes"""
from typing import Tuple
from io import BytesIO
from flask import Blueprint, current_app, jsonify, request, send_file, Response

from carbon_exchange.errors import NotFoundError, ServiceError
from carbon_exchange.security import get_session_user, login_required
from carbon_exchange.services.certificate_service import build_download, clamp_copies, issue_certificate
from carbon_exchange.services.mongodb_service import get_certificate_details

bp = Blueprint('certificates', __name__, url_prefix='/api')


def public_base_url() -> str:
    return current_app.config.get('PUBLIC_BASE_URL') or request.host_url


@bp.route('/generate-certificate', methods=['POST'])
@login_required
def generate_certificate():
    """Download the certificate of a completed transaction.

    Expected request body:
    {
        "transactionId": str,
        "copies": int,         # Optional, 1..20; more than one returns a zip
        "regenerate": bool     # Optional, issue a new certificate id
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        transaction_id = data.get('transactionId')
        if not transaction_id or not isinstance(transaction_id, str):
            return jsonify({'error': 'transactionId is required'}), 400
        copies = clamp_copies(data.get('copies', 1))

        certificate = issue_certificate(
            user=get_session_user(),
            transaction_id=transaction_id,
            base_url=public_base_url(),
            regenerate=bool(data.get('regenerate', False))
        )
        body, mimetype, filename = build_download(certificate, copies)
        return send_file(
            BytesIO(body),
            mimetype=mimetype,
            as_attachment=True,
            download_name=filename
        )
    except ServiceError as e:
        return jsonify({'error': str(e)}), e.status_code


@bp.route('/verify', methods=['GET'])
def verify_certificate() -> Tuple[Response, int]:
    """Check a certificate id against the registry"""
    cert_id = request.args.get('certId', '').strip()
    if not cert_id:
        return jsonify({'valid': False, 'error': 'Missing certId query parameter'}), 400

    try:
        row = get_certificate_details(cert_id)
    except NotFoundError as e:
        return jsonify({'valid': False, 'error': f'Invalid certificate. {str(e)}'}), 404
    except ServiceError as e:
        return jsonify({'valid': False, 'error': str(e)}), e.status_code

    txn = row.get('transaction') or {}
    project = row.get('project') or {}
    return jsonify({
        'valid': True,
        'message': 'This certificate is valid and recorded in our registry.',
        'certificate': {
            'certificateId': row['cert_id'],
            'transactionId': row.get('transaction_id'),
            'issuedAt': row.get('issued_at'),
            'buyer': (row.get('buyer') or {}).get('company_name'),
            'seller': (row.get('seller') or {}).get('organization_name'),
            'credits': txn.get('quantity'),
            'projectName': project.get('name'),
            'projectType': project.get('type'),
            'registry': project.get('registry') or txn.get('registry'),
            'blockchainTxHash': txn.get('blockchain_tx_hash')
        }
    }), 200
