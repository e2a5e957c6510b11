"""Seller project routes"""
from typing import Tuple
from flask import Blueprint, jsonify, request, Response

from carbon_exchange.errors import ServiceError
from carbon_exchange.security import get_session_user, login_required
from carbon_exchange.services.mongodb_service import (
    PROJECT_TYPES,
    create_project,
    get_seller_profile,
    get_seller_projects
)

bp = Blueprint('projects', __name__, url_prefix='/api/projects')


@bp.route('', methods=['GET'])
@login_required
def list_projects() -> Tuple[Response, int]:
    """Get the signed-in seller's projects"""
    try:
        seller = get_seller_profile(get_session_user()['user_id'])
        if not seller:
            return jsonify({'projects': []}), 200
        return jsonify({'projects': get_seller_projects(seller['profile_id'])}), 200
    except ServiceError as e:
        return jsonify({'error': str(e)}), e.status_code


@bp.route('', methods=['POST'])
@login_required
def add_project() -> Tuple[Response, int]:
    """Create a project for the signed-in seller"""
    try:
        data = request.get_json(silent=True) or {}

        if not data.get('name'):
            return jsonify({'error': 'name is required'}), 400
        if data.get('type') not in PROJECT_TYPES:
            return jsonify({'error': f"type must be one of: {', '.join(PROJECT_TYPES)}"}), 400
        vintage_year = data.get('vintageYear')
        if vintage_year is not None and (not isinstance(vintage_year, int) or isinstance(vintage_year, bool)):
            return jsonify({'error': 'vintageYear must be an integer'}), 400

        seller = get_seller_profile(get_session_user()['user_id'])
        if not seller:
            return jsonify({'error': 'Seller profile not found'}), 400

        project = create_project(
            seller_id=seller['profile_id'],
            name=data['name'],
            project_type=data['type'],
            description=data.get('description'),
            location=data.get('location'),
            registry=data.get('registry'),
            vintage_year=vintage_year
        )
        return jsonify({'ok': True, 'id': project['project_id']}), 200
    except ServiceError as e:
        return jsonify({'error': str(e)}), e.status_code
