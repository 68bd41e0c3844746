import logging
from flask import Blueprint, request, jsonify
from flask_babel import gettext as _
from ..models import db, RawMaterial, MaterialCategory, Vendor, FormulationIngredient, ValidationError
from ..costing import calculate_unit_cost, display_unit_cost
from ..subscription import MATERIALS
from .utils import (
    log_audit, get_current_user, get_json_body, get_owned_or_404, require_name, parse_decimal,
    parse_bool, parse_unit, sync_material_unit_cost, UNIT_COST_PLACES, recalculate_material_dependents,
    get_soft_lock_status, ensure_can_create_resource, ensure_item_writable, enforce_hard_cap
)

logger = logging.getLogger(__name__)

raw_materials_blueprint = Blueprint('raw_materials', __name__)

COST_FIELDS = ('totalCost', 'quantity', 'unit')


def resolve_links(data, user_id, material):
    """Category and vendor must belong to the same user"""
    if 'categoryId' in data:
        category_id = data.get('categoryId')
        if category_id:
            get_owned_or_404(MaterialCategory, category_id, user_id, 'category')
        material.category_id = category_id or None
    if 'vendorId' in data:
        vendor_id = data.get('vendorId')
        if vendor_id:
            get_owned_or_404(Vendor, vendor_id, user_id, 'vendor')
        material.vendor_id = vendor_id or None


def material_usage(material_id):
    """Formulations that list the material as an ingredient"""
    rows = FormulationIngredient.query.filter_by(material_id=material_id).all()
    seen = {}
    for row in rows:
        seen[row.formulation_id] = row.formulation.name
    return [{'id': fid, 'name': name} for fid, name in sorted(seen.items())]


# ----------------------------
# Raw Materials Management
# ----------------------------
@raw_materials_blueprint.route('/api/raw-materials', methods=['GET'])
def list_raw_materials():
    user = get_current_user()
    include_inactive = request.args.get('includeInactive', 'false') == 'true'

    query = RawMaterial.query.filter_by(user_id=user.id)
    if not include_inactive:
        query = query.filter_by(is_active=True)
    category_id = request.args.get('categoryId', type=int)
    if category_id:
        query = query.filter_by(category_id=category_id)

    status = get_soft_lock_status(user)
    materials = query.order_by(RawMaterial.name).all()
    return jsonify([m.to_dict(read_only=status.is_read_only(MATERIALS, m.id)) for m in materials])


@raw_materials_blueprint.route('/api/raw-materials/<int:material_id>', methods=['GET'])
def get_raw_material(material_id):
    user = get_current_user()
    material = get_owned_or_404(RawMaterial, material_id, user.id, 'material')
    status = get_soft_lock_status(user)
    data = material.to_dict(read_only=status.is_read_only(MATERIALS, material.id))
    data['usedIn'] = material_usage(material.id)
    return jsonify(data)


@raw_materials_blueprint.route('/api/raw-materials', methods=['POST'])
def create_raw_material():
    user = get_current_user()
    data = get_json_body()
    name = require_name(data)
    total_cost = parse_decimal(data, 'totalCost')
    quantity = parse_decimal(data, 'quantity')
    unit = parse_unit(data)
    unit_cost = calculate_unit_cost(total_cost, quantity).quantize(UNIT_COST_PLACES)
    status = ensure_can_create_resource(user, MATERIALS)

    material = RawMaterial(
        name=name,
        sku=data.get('sku'),
        total_cost=total_cost,
        quantity=quantity,
        unit=unit,
        unit_cost=unit_cost,
        notes=data.get('notes'),
        is_active=parse_bool(data, 'isActive', default=True),
        user_id=user.id
    )
    resolve_links(data, user.id, material)
    db.session.add(material)
    enforce_hard_cap(user, MATERIALS, status)

    log_audit(
        user.id, 'create', 'material', material.id,
        f'Added new raw material "{name}" with a total cost of ${total_cost} for {quantity} {unit}',
        unitCost=display_unit_cost(unit_cost)
    )
    db.session.commit()
    return jsonify(material.to_dict()), 201


@raw_materials_blueprint.route('/api/raw-materials/<int:material_id>', methods=['PUT'])
def update_raw_material(material_id):
    user = get_current_user()
    material = get_owned_or_404(RawMaterial, material_id, user.id, 'material')
    ensure_item_writable(user, MATERIALS, material.id)
    data = get_json_body()

    old_unit_cost = material.unit_cost
    if 'name' in data:
        material.name = require_name(data)
    if 'totalCost' in data:
        material.total_cost = parse_decimal(data, 'totalCost')
    if 'quantity' in data:
        material.quantity = parse_decimal(data, 'quantity')
    if 'unit' in data:
        material.unit = parse_unit(data)
    for key, column in (('sku', 'sku'), ('notes', 'notes')):
        if key in data:
            setattr(material, column, data.get(key))
    if 'isActive' in data:
        material.is_active = parse_bool(data, 'isActive')
    resolve_links(data, user.id, material)

    affected, failed = set(), []
    if any(key in data for key in COST_FIELDS):
        sync_material_unit_cost(material)
        affected, failed = recalculate_material_dependents(material)

    unit_cost_change = ''
    if old_unit_cost is not None and display_unit_cost(material.unit_cost) != display_unit_cost(old_unit_cost):
        unit_cost_change = (f" (unit cost changed from ${display_unit_cost(old_unit_cost)}"
                            f" to ${display_unit_cost(material.unit_cost)})")
    log_audit(
        user.id, 'update', 'material', material.id,
        f'Updated raw material "{material.name}" - total cost is now ${material.total_cost} '
        f'for {material.quantity} {material.unit}{unit_cost_change}',
        affectedFormulations=sorted(affected),
        failedFormulations=[f['id'] for f in failed]
    )
    db.session.commit()

    result = material.to_dict()
    result['affectedFormulations'] = sorted(affected)
    # Affected formulations that could not be costed keep their previous figures
    result['failedFormulations'] = failed
    return jsonify(result)


@raw_materials_blueprint.route('/api/raw-materials/<int:material_id>', methods=['DELETE'])
def delete_raw_material(material_id):
    user = get_current_user()
    material = get_owned_or_404(RawMaterial, material_id, user.id, 'material')
    ensure_item_writable(user, MATERIALS, material.id)

    used_in = material_usage(material.id)
    if used_in:
        names = ', '.join(f['name'] for f in used_in)
        raise ValidationError(
            _('Material is used in formulations: %(names)s', names=names),
            field='materialId', value=material.id, formulations=used_in
        )

    description = (f'Deleted raw material "{material.name}" (was ${material.total_cost} total cost '
                   f'for {material.quantity} {material.unit})')
    db.session.delete(material)
    log_audit(user.id, 'delete', 'material', material_id, description)
    db.session.commit()
    logger.info("Deleted material %s for user %s", material_id, user.id)
    return jsonify({'success': True})
