from decimal import Decimal
from flask import Blueprint, jsonify
from flask_babel import gettext as _
from ..models import db, User, RawMaterial, Formulation, Vendor, AuditLog, ValidationError
from ..costing import round_money
from .utils import log_audit, get_current_user, get_json_body, live_costs

main_blueprint = Blueprint('main', __name__)

RECENT_ACTIVITY_LIMIT = 10


@main_blueprint.route('/api/health')
def health():
    return jsonify({'status': 'ok'})


# ----------------------------
# Dashboard
# ----------------------------
@main_blueprint.route('/api/dashboard/stats')
def dashboard_stats():
    user = get_current_user()
    materials = RawMaterial.query.filter_by(user_id=user.id).all()
    formulations = Formulation.query.filter_by(user_id=user.id).all()

    active = [f for f in formulations if f.is_active]
    # Margins from current prices; formulations that cannot be costed are left out
    costs = live_costs(user.id)
    margins = [costs.costs[f.id].profit_margin for f in active if f.id in costs.costs]
    margins = [margin for margin in margins if margin > 0]
    total_value = sum((Decimal(m.total_cost) for m in materials), Decimal("0"))
    if margins:
        avg_margin = sum(margins, Decimal("0")) / len(margins)
    else:
        avg_margin = Decimal("0")

    return jsonify({
        'totalMaterials': len(materials),
        'activeFormulations': len(active),
        'vendorsCount': Vendor.query.filter_by(user_id=user.id).count(),
        'totalInventoryValue': str(round_money(total_value)),
        'avgProfitMargin': str(round_money(avg_margin)),
    })


@main_blueprint.route('/api/dashboard/recent-activity')
def recent_activity():
    user = get_current_user()
    logs = AuditLog.query.filter_by(user_id=user.id) \
        .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()) \
        .limit(RECENT_ACTIVITY_LIMIT).all()
    return jsonify([log.to_dict() for log in logs])


# ----------------------------
# User profile
# ----------------------------
@main_blueprint.route('/api/user/profile', methods=['GET'])
def get_profile():
    user = get_current_user()
    return jsonify(user.to_dict())


@main_blueprint.route('/api/user/profile', methods=['PUT'])
def update_profile():
    user = get_current_user()
    data = get_json_body()

    for field in ('username', 'email'):
        if field in data:
            value = (data.get(field) or '').strip()
            if not value:
                raise ValidationError(_('%(field)s is required', field=field), field=field)
            clash = User.query.filter(getattr(User, field) == value, User.id != user.id).first()
            if clash:
                raise ValidationError(_('%(field)s is already taken', field=field), field=field, value=value)
            setattr(user, field, value)
    if 'company' in data:
        user.company = data.get('company')

    log_audit(user.id, 'update', 'user', user.id, 'Updated profile')
    db.session.commit()
    return jsonify(user.to_dict())
