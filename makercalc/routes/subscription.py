import logging
from flask import Blueprint, jsonify
from ..models import db
from ..subscription import PLAN_LIMITS, validate_plan
from .utils import log_audit, get_current_user, get_json_body, get_soft_lock_status

logger = logging.getLogger(__name__)

subscription_blueprint = Blueprint('subscription', __name__)


@subscription_blueprint.route('/api/subscription/status', methods=['GET'])
def subscription_status():
    """Usage, limits and read-only item ids, counted fresh on every call"""
    user = get_current_user()
    status = get_soft_lock_status(user)
    data = status.to_dict()
    data['subscriptionStatus'] = user.subscription_status
    return jsonify(data)


@subscription_blueprint.route('/api/subscription/plans', methods=['GET'])
def list_plans():
    return jsonify({name: limits.to_dict() for name, limits in PLAN_LIMITS.items()})


@subscription_blueprint.route('/api/subscription/plan', methods=['PUT'])
def change_plan():
    user = get_current_user()
    data = get_json_body()
    plan = validate_plan(data.get('plan'))

    old_plan = user.plan
    user.subscription_plan = plan
    user.subscription_status = 'active' if plan != 'free' else 'none'
    log_audit(user.id, 'update', 'subscription', user.id, f'Changed plan from {old_plan} to {plan}')
    db.session.commit()
    logger.info("User %s moved from %s to %s", user.id, old_plan, plan)

    return jsonify(get_soft_lock_status(user).to_dict())
