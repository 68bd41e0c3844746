"""
Subscription quotas and soft-lock evaluation.

A user whose usage exceeds their plan keeps every item visible, but only the
oldest ``limit`` items of a resource stay writable; the rest are read-only
until the user upgrades or removes items. Creation is blocked once usage
reaches the limit.

Items are ordered by (created_at, id) ascending. Items without a creation
timestamp sort after dated ones. The evaluation is pure and is meant to be
recomputed from fresh counts on every request.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List

from .models import QuotaExceededError, ReadOnlyError, ValidationError

logger = logging.getLogger(__name__)

UNLIMITED = -1
DEFAULT_PLAN = 'free'

MATERIALS = 'materials'
FORMULATIONS = 'formulations'
VENDORS = 'vendors'
CATEGORIES = 'categories'
FILE_ATTACHMENTS = 'fileAttachments'
STORAGE = 'storage'

# Resources whose individual items can be soft-locked
LOCKABLE_RESOURCES = (MATERIALS, FORMULATIONS, VENDORS, CATEGORIES, FILE_ATTACHMENTS)
RESOURCES = LOCKABLE_RESOURCES + (STORAGE,)


@dataclass(frozen=True)
class PlanLimits:
    max_materials: int
    max_formulations: int
    max_vendors: int
    max_categories: int
    max_file_attachments: int
    max_storage_size: int  # MB

    def limit_for(self, resource):
        return {
            MATERIALS: self.max_materials,
            FORMULATIONS: self.max_formulations,
            VENDORS: self.max_vendors,
            CATEGORIES: self.max_categories,
            FILE_ATTACHMENTS: self.max_file_attachments,
            STORAGE: self.max_storage_size,
        }[resource]

    def to_dict(self):
        return {
            'maxMaterials': self.max_materials,
            'maxFormulations': self.max_formulations,
            'maxVendors': self.max_vendors,
            'maxCategories': self.max_categories,
            'maxFileAttachments': self.max_file_attachments,
            'maxStorageSize': self.max_storage_size,
        }


PLAN_LIMITS = {
    'free': PlanLimits(5, 1, 2, 2, 1, 5),
    'starter': PlanLimits(20, 8, 5, 5, 5, 30),
    'pro': PlanLimits(100, 25, 10, 10, 10, 100),
    'professional': PlanLimits(300, 60, 20, 20, 25, 500),
    'business': PlanLimits(500, 100, 25, 25, 50, 1000),
    'enterprise': PlanLimits(1000, 250, 50, 50, 100, 10000),
}


def resolve_plan(plan):
    """Unknown or missing plans fall back to free"""
    return plan if plan in PLAN_LIMITS else DEFAULT_PLAN


def validate_plan(plan):
    if plan not in PLAN_LIMITS:
        raise ValidationError(
            f"Unknown plan. Choose one of {', '.join(PLAN_LIMITS)}", field='plan', value=plan
        )
    return plan


@dataclass
class ResourceUsage:
    materials: int = 0
    formulations: int = 0
    vendors: int = 0
    categories: int = 0
    file_attachments: int = 0
    storage_size: float = 0.0  # MB

    def get(self, resource):
        return {
            MATERIALS: self.materials,
            FORMULATIONS: self.formulations,
            VENDORS: self.vendors,
            CATEGORIES: self.categories,
            FILE_ATTACHMENTS: self.file_attachments,
            STORAGE: self.storage_size,
        }[resource]

    def to_dict(self):
        return {
            'materials': self.materials,
            'formulations': self.formulations,
            'vendors': self.vendors,
            'categories': self.categories,
            'fileAttachments': self.file_attachments,
            'storageSize': round(self.storage_size, 2),
        }


def is_unlimited(limit):
    return limit is None or limit < 0


def is_over_limit(usage, limit):
    return not is_unlimited(limit) and usage > limit


def can_create(usage, limit):
    """Reaching the limit exactly blocks further creation"""
    return is_unlimited(limit) or usage < limit


def soft_lock_order(items):
    """Oldest first; undated items last; id breaks ties"""
    return sorted(
        items,
        key=lambda item: (
            item.created_at is None,
            item.created_at or datetime.min,
            item.id,
        ),
    )


def select_read_only(items, limit):
    if is_unlimited(limit):
        return []
    ordered = soft_lock_order(items)
    return [item.id for item in ordered[limit:]]


@dataclass
class SoftLockStatus:
    plan: str
    limits: PlanLimits
    usage: ResourceUsage
    soft_lock: Dict[str, bool] = field(default_factory=dict)
    over_limit_ids: Dict[str, List[int]] = field(default_factory=dict)
    creatable: Dict[str, bool] = field(default_factory=dict)

    def is_read_only(self, resource, item_id):
        return item_id in self.over_limit_ids.get(resource, ())

    def can_create(self, resource):
        return self.creatable.get(resource, True)

    def to_dict(self):
        return {
            'plan': self.plan,
            'limits': self.limits.to_dict(),
            'usage': self.usage.to_dict(),
            'softLock': dict(self.soft_lock),
            'isOverLimit': dict(self.soft_lock),
            'canCreate': dict(self.creatable),
            'overLimitItemIds': {k: list(v) for k, v in self.over_limit_ids.items()},
        }


def evaluate_soft_lock(plan, usage, items=None):
    """
    Build the soft-lock status for one user.

    ``items`` maps a lockable resource to its rows (anything with ``id`` and
    ``created_at``); resources without items get no read-only ids.
    """
    plan = resolve_plan(plan)
    limits = PLAN_LIMITS[plan]
    items = items or {}

    status = SoftLockStatus(plan=plan, limits=limits, usage=usage)
    for resource in RESOURCES:
        limit = limits.limit_for(resource)
        current = usage.get(resource)
        status.soft_lock[resource] = is_over_limit(current, limit)
        status.creatable[resource] = can_create(current, limit)
        if resource in LOCKABLE_RESOURCES:
            if status.soft_lock[resource]:
                status.over_limit_ids[resource] = select_read_only(items.get(resource, ()), limit)
            else:
                status.over_limit_ids[resource] = []
    return status


def ensure_can_create(status, resource, additional=1):
    """
    Raise QuotaExceededError if the user may not add ``additional`` more of
    ``resource``. For storage, ``additional`` is the upload size in MB.
    """
    limit = status.limits.limit_for(resource)
    current = status.usage.get(resource)
    if resource == STORAGE:
        allowed = is_unlimited(limit) or current + additional <= limit
    else:
        allowed = can_create(current + additional - 1, limit)
    if not allowed:
        logger.warning("Quota exceeded: plan=%s resource=%s current=%s limit=%s",
                       status.plan, resource, current, limit)
        raise QuotaExceededError(resource, status.plan, current, limit)


def ensure_writable(status, resource, item_id):
    if status.is_read_only(resource, item_id):
        raise ReadOnlyError(resource, item_id, plan=status.plan)
