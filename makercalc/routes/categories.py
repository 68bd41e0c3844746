from flask import Blueprint, jsonify
from flask_babel import gettext as _
from ..models import db, MaterialCategory, ValidationError
from ..subscription import CATEGORIES
from .utils import (
    log_audit, get_current_user, get_json_body, get_owned_or_404, require_name,
    get_soft_lock_status, ensure_can_create_resource, ensure_item_writable, enforce_hard_cap
)

categories_blueprint = Blueprint('categories', __name__)

DEFAULT_COLOR = '#3b82f6'


def check_duplicate_name(user_id, name, exclude_id=None):
    query = MaterialCategory.query.filter_by(user_id=user_id, name=name)
    if exclude_id is not None:
        query = query.filter(MaterialCategory.id != exclude_id)
    if query.first():
        raise ValidationError(_('A category with this name already exists'), field='name', value=name)


# ----------------------------
# Material Categories
# ----------------------------
@categories_blueprint.route('/api/material-categories', methods=['GET'])
def list_categories():
    user = get_current_user()
    status = get_soft_lock_status(user)
    categories = MaterialCategory.query.filter_by(user_id=user.id).order_by(MaterialCategory.name).all()
    result = []
    for category in categories:
        data = category.to_dict()
        data['readOnly'] = status.is_read_only(CATEGORIES, category.id)
        data['materialCount'] = len(category.raw_materials)
        result.append(data)
    return jsonify(result)


@categories_blueprint.route('/api/material-categories/<int:category_id>', methods=['GET'])
def get_category(category_id):
    user = get_current_user()
    category = get_owned_or_404(MaterialCategory, category_id, user.id, 'category')
    status = get_soft_lock_status(user)
    data = category.to_dict()
    data['readOnly'] = status.is_read_only(CATEGORIES, category.id)
    data['materialCount'] = len(category.raw_materials)
    return jsonify(data)


@categories_blueprint.route('/api/material-categories', methods=['POST'])
def create_category():
    user = get_current_user()
    data = get_json_body()
    name = require_name(data)
    check_duplicate_name(user.id, name)
    status = ensure_can_create_resource(user, CATEGORIES)

    category = MaterialCategory(name=name, color=data.get('color') or DEFAULT_COLOR, user_id=user.id)
    db.session.add(category)
    enforce_hard_cap(user, CATEGORIES, status)

    log_audit(user.id, 'create', 'category', category.id, f'Created new category "{name}" with {category.color} color')
    db.session.commit()
    return jsonify(category.to_dict()), 201


@categories_blueprint.route('/api/material-categories/<int:category_id>', methods=['PUT'])
def update_category(category_id):
    user = get_current_user()
    category = get_owned_or_404(MaterialCategory, category_id, user.id, 'category')
    ensure_item_writable(user, CATEGORIES, category.id)
    data = get_json_body()

    if 'name' in data:
        name = require_name(data)
        check_duplicate_name(user.id, name, exclude_id=category.id)
        category.name = name
    if data.get('color'):
        category.color = data['color']

    log_audit(user.id, 'update', 'category', category.id, f'Updated category "{category.name}"')
    db.session.commit()
    return jsonify(category.to_dict())


@categories_blueprint.route('/api/material-categories/<int:category_id>', methods=['DELETE'])
def delete_category(category_id):
    user = get_current_user()
    category = get_owned_or_404(MaterialCategory, category_id, user.id, 'category')
    ensure_item_writable(user, CATEGORIES, category.id)

    # Unlink materials instead of deleting them
    for material in category.raw_materials:
        material.category_id = None
    name, color = category.name, category.color
    db.session.delete(category)
    log_audit(user.id, 'delete', 'category', category_id, f'Deleted category "{name}" ({color} color)')
    db.session.commit()
    return jsonify({'success': True})
