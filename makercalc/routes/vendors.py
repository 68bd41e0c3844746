from flask import Blueprint, jsonify
from ..models import db, Vendor
from ..subscription import VENDORS
from .utils import (
    log_audit, get_current_user, get_json_body, get_owned_or_404, require_name,
    get_soft_lock_status, ensure_can_create_resource, ensure_item_writable, enforce_hard_cap
)

vendors_blueprint = Blueprint('vendors', __name__)

VENDOR_FIELDS = {
    'contactEmail': 'contact_email',
    'contactPhone': 'contact_phone',
    'address': 'address',
    'notes': 'notes',
}


def describe_vendor(prefix, vendor):
    description = f'{prefix} "{vendor.name}"'
    if vendor.contact_email:
        description += f" ({vendor.contact_email})"
    return description


# ----------------------------
# Vendor Management
# ----------------------------
@vendors_blueprint.route('/api/vendors', methods=['GET'])
def list_vendors():
    user = get_current_user()
    status = get_soft_lock_status(user)
    vendors = Vendor.query.filter_by(user_id=user.id).order_by(Vendor.name).all()
    result = []
    for vendor in vendors:
        data = vendor.to_dict()
        data['readOnly'] = status.is_read_only(VENDORS, vendor.id)
        result.append(data)
    return jsonify(result)


@vendors_blueprint.route('/api/vendors/<int:vendor_id>', methods=['GET'])
def get_vendor(vendor_id):
    user = get_current_user()
    vendor = get_owned_or_404(Vendor, vendor_id, user.id, 'vendor')
    status = get_soft_lock_status(user)
    data = vendor.to_dict()
    data['readOnly'] = status.is_read_only(VENDORS, vendor.id)
    data['materialCount'] = len(vendor.raw_materials)
    return jsonify(data)


@vendors_blueprint.route('/api/vendors', methods=['POST'])
def create_vendor():
    user = get_current_user()
    data = get_json_body()
    name = require_name(data)
    status = ensure_can_create_resource(user, VENDORS)

    vendor = Vendor(name=name, user_id=user.id)
    for key, column in VENDOR_FIELDS.items():
        setattr(vendor, column, data.get(key))
    db.session.add(vendor)
    enforce_hard_cap(user, VENDORS, status)

    log_audit(user.id, 'create', 'vendor', vendor.id, describe_vendor("Added new vendor", vendor))
    db.session.commit()
    return jsonify(vendor.to_dict()), 201


@vendors_blueprint.route('/api/vendors/<int:vendor_id>', methods=['PUT'])
def update_vendor(vendor_id):
    user = get_current_user()
    vendor = get_owned_or_404(Vendor, vendor_id, user.id, 'vendor')
    ensure_item_writable(user, VENDORS, vendor.id)
    data = get_json_body()

    if 'name' in data:
        vendor.name = require_name(data)
    for key, column in VENDOR_FIELDS.items():
        if key in data:
            setattr(vendor, column, data.get(key))

    log_audit(user.id, 'update', 'vendor', vendor.id, f'Updated vendor "{vendor.name}"')
    db.session.commit()
    return jsonify(vendor.to_dict())


@vendors_blueprint.route('/api/vendors/<int:vendor_id>', methods=['DELETE'])
def delete_vendor(vendor_id):
    """Materials keep existing; they just lose their vendor link"""
    user = get_current_user()
    vendor = get_owned_or_404(Vendor, vendor_id, user.id, 'vendor')
    ensure_item_writable(user, VENDORS, vendor.id)

    for material in vendor.raw_materials:
        material.vendor_id = None
    deleted = describe_vendor("Deleted vendor", vendor)
    db.session.delete(vendor)
    log_audit(user.id, 'delete', 'vendor', vendor_id, deleted)
    db.session.commit()
    return jsonify({'success': True})
