import json
import logging
from decimal import Decimal
from flask import abort, current_app, request, session
from flask_babel import gettext as _
from sqlalchemy import func
from ..models import (
    db, UNITS, User, Vendor, MaterialCategory, RawMaterial, Formulation,
    File, AuditLog, NotFoundError, QuotaExceededError, ValidationError
)
from ..costing import (
    MaterialCost, IngredientLine, FormulationSpec, DependencyIndex, refresh_costs, to_decimal,
    calculate_unit_cost
)
from ..subscription import (
    ResourceUsage, evaluate_soft_lock, ensure_can_create, ensure_writable, is_unlimited,
    MATERIALS, FORMULATIONS, VENDORS, CATEGORIES, FILE_ATTACHMENTS, STORAGE
)

logger = logging.getLogger(__name__)

# Predefined units for materials and batches
units_list = list(UNITS)

TOTAL_COST_PLACES = Decimal("0.0001")
UNIT_COST_PLACES = Decimal("0.00000001")
MARGIN_PLACES = Decimal("0.01")
# Bounds of Formulation.profit_margin, Numeric(18, 2)
MARGIN_LIMIT = Decimal("9999999999999999.99")

RESOURCE_MODELS = {
    MATERIALS: RawMaterial,
    FORMULATIONS: Formulation,
    VENDORS: Vendor,
    CATEGORIES: MaterialCategory,
    FILE_ATTACHMENTS: File,
}


# ----------------------------
# Request helpers
# ----------------------------
def get_current_user():
    """The signed-in user from the session, or the X-User-Id header for API clients"""
    user_id = session.get('user_id') or request.headers.get('X-User-Id', type=int)
    if not user_id:
        abort(401, description=_('Authentication required'))
    user = db.session.get(User, user_id)
    if not user:
        abort(401, description=_('Authentication required'))
    return user


def get_json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(_('Request body must be a JSON object'))
    return data


def get_owned_or_404(model, item_id, user_id, entity_type):
    item = model.query.filter_by(id=item_id, user_id=user_id).first()
    if not item:
        raise NotFoundError(entity_type, item_id, _('%(entity)s not found', entity=entity_type.capitalize()))
    return item


def parse_decimal(data, key, required=True, default=None):
    value = data.get(key)
    if value is None or value == '':
        if required:
            raise ValidationError(_('%(field)s is required', field=key), field=key)
        return default
    return to_decimal(value, key)


def parse_bool(data, key, default=False):
    value = data.get(key, default)
    if isinstance(value, str):
        return value.lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def require_name(data, key='name'):
    name = (data.get(key) or '').strip()
    if not name:
        raise ValidationError(_('%(field)s is required', field=key), field=key)
    return name


def parse_unit(data, key='unit'):
    unit = data.get(key)
    if unit not in UNITS:
        raise ValidationError(
            _('%(field)s must be one of %(units)s', field=key, units=', '.join(UNITS)), field=key, value=unit
        )
    return unit


# ----------------------------
# Audit trail
# ----------------------------
def log_audit(user_id, action, entity_type, entity_id, description, **data):
    try:
        payload = {'description': description}
        payload.update(data)
        log = AuditLog(
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            changes=json.dumps(payload, default=str)
        )
        db.session.add(log)
    except (TypeError, ValueError) as e:
        # Audit logging must not interrupt the main operation
        logger.warning("Failed to log audit for %s %s: %s", entity_type, entity_id, e)


# ----------------------------
# Cost snapshots and recalculation
# ----------------------------
def material_snapshot(material):
    return MaterialCost.from_totals(material.id, material.total_cost, material.quantity, material.unit)


def formulation_snapshot(formulation):
    return FormulationSpec(
        id=formulation.id,
        batch_size=formulation.batch_size,
        batch_unit=formulation.batch_unit,
        markup_percentage=formulation.markup_percentage,
        target_price=formulation.target_price,
        ingredients=[
            IngredientLine(
                id=ing.id,
                quantity=ing.quantity,
                unit=ing.unit,
                material_id=ing.material_id,
                sub_formulation_id=ing.sub_formulation_id,
                include_in_markup=ing.include_in_markup,
            )
            for ing in formulation.ingredients
        ],
    )


def sync_material_unit_cost(material):
    material.unit_cost = calculate_unit_cost(material.total_cost, material.quantity).quantize(UNIT_COST_PLACES)
    return material.unit_cost


def load_cost_inputs(user_id):
    materials = RawMaterial.query.filter_by(user_id=user_id).all()
    formulations = Formulation.query.filter_by(user_id=user_id).all()
    return materials, formulations


def cost_all(materials, formulations):
    return refresh_costs(
        [formulation_snapshot(f) for f in formulations],
        [material_snapshot(m) for m in materials],
        allow_unit_conversion=current_app.config.get('COST_UNIT_CONVERSION', False),
    )


def live_costs(user_id):
    """Costs of every formulation of the user from current prices, without writing anything"""
    return cost_all(*load_cost_inputs(user_id))


def apply_cost(formulation, cost):
    formulation.total_cost = cost.total_cost.quantize(TOTAL_COST_PLACES)
    formulation.unit_cost = cost.unit_cost.quantize(UNIT_COST_PLACES)
    margin = cost.profit_margin.quantize(MARGIN_PLACES)
    formulation.profit_margin = max(-MARGIN_LIMIT, min(margin, MARGIN_LIMIT))
    for ingredient in formulation.ingredients:
        contribution = cost.contributions.get(ingredient.id)
        if contribution is not None:
            ingredient.cost_contribution = contribution.quantize(TOTAL_COST_PLACES)


def recalculate_formulations(user_id, formulation_ids=None):
    """
    Recompute costs from the latest material prices and write them back.

    Every formulation of the user takes part in the calculation so that
    sub-formulations are always fresh; only ``formulation_ids`` (or all when
    None) are written. Failed formulations keep their previously stored costs.
    """
    db.session.flush()
    materials, formulations = load_cost_inputs(user_id)
    result = cost_all(materials, formulations)
    targets = set(formulation_ids) if formulation_ids is not None else None
    for formulation in formulations:
        if targets is not None and formulation.id not in targets:
            continue
        cost = result.costs.get(formulation.id)
        if cost is not None:
            apply_cost(formulation, cost)
    for formulation_id, error in result.errors.items():
        if targets is None or formulation_id in targets:
            logger.warning("Could not recalculate formulation %s: %s", formulation_id, error.message)
    return result


def failed_formulations(result, formulation_ids=None):
    """Errors of a refresh as response entries, limited to ``formulation_ids`` when given"""
    return [
        dict(error.to_dict(), id=formulation_id)
        for formulation_id, error in sorted(result.errors.items())
        if formulation_ids is None or formulation_id in formulation_ids
    ]


def dependency_index(user_id):
    formulations = Formulation.query.filter_by(user_id=user_id).all()
    return DependencyIndex.from_specs([formulation_snapshot(f) for f in formulations])


def recalculate_material_dependents(material):
    """
    Refresh every formulation that uses the material directly or through a
    sub-formulation. Returns the affected ids and the ones that failed to cost.
    """
    affected = dependency_index(material.user_id).dependents_of_material(material.id)
    if not affected:
        return affected, []
    result = recalculate_formulations(material.user_id, affected)
    return affected, failed_formulations(result, affected)


def recalculate_formulation_and_dependents(formulation):
    """Returns the refresh result and the dependent formulations that failed to cost"""
    dependents = dependency_index(formulation.user_id).dependents_of_formulation(formulation.id)
    result = recalculate_formulations(formulation.user_id, dependents | {formulation.id})
    return result, failed_formulations(result, dependents)


# ----------------------------
# Subscription soft lock
# ----------------------------
def count_usage(user_id, resource):
    if resource == STORAGE:
        total_bytes = db.session.query(func.coalesce(func.sum(File.file_size), 0)).filter(
            File.user_id == user_id
        ).scalar()
        return float(total_bytes or 0) / (1024 * 1024)
    return RESOURCE_MODELS[resource].query.filter_by(user_id=user_id).count()


def get_usage(user_id):
    return ResourceUsage(
        materials=count_usage(user_id, MATERIALS),
        formulations=count_usage(user_id, FORMULATIONS),
        vendors=count_usage(user_id, VENDORS),
        categories=count_usage(user_id, CATEGORIES),
        file_attachments=count_usage(user_id, FILE_ATTACHMENTS),
        storage_size=count_usage(user_id, STORAGE),
    )


def get_soft_lock_status(user):
    """Evaluated fresh from the database on every call"""
    usage = get_usage(user.id)
    items = {}
    for resource, model in RESOURCE_MODELS.items():
        if resource == FILE_ATTACHMENTS:
            rows = db.session.query(File.id, File.uploaded_at.label('created_at')).filter(File.user_id == user.id).all()
        else:
            rows = db.session.query(model.id, model.created_at).filter(model.user_id == user.id).all()
        items[resource] = rows
    return evaluate_soft_lock(user.plan, usage, items)


def ensure_can_create_resource(user, resource, additional=1):
    status = get_soft_lock_status(user)
    ensure_can_create(status, resource, additional)
    return status


def ensure_item_writable(user, resource, item_id):
    status = get_soft_lock_status(user)
    ensure_writable(status, resource, item_id)
    return status


def enforce_hard_cap(user, resource, status):
    """
    Re-count after the new row has been flushed. If a concurrent request got
    in first and the insert pushed usage past the cap, undo it.
    """
    db.session.flush()
    limit = status.limits.limit_for(resource)
    if is_unlimited(limit):
        return
    current = count_usage(user.id, resource)
    if current > limit:
        db.session.rollback()
        raise QuotaExceededError(resource, status.plan, current - 1, limit)
