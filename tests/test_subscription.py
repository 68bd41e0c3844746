from collections import namedtuple
from datetime import datetime, timedelta

import pytest

from makercalc.models import QuotaExceededError, ReadOnlyError, ValidationError
from makercalc.subscription import (
    MATERIALS, STORAGE, ResourceUsage, can_create, ensure_can_create, ensure_writable,
    evaluate_soft_lock, is_over_limit, select_read_only, validate_plan
)

Item = namedtuple('Item', 'id created_at')

START = datetime(2024, 1, 1)


def items(count):
    return [Item(i + 1, START + timedelta(days=i)) for i in range(count)]


@pytest.mark.parametrize('usage, limit, creatable, over', [
    (4, 5, True, False),
    (5, 5, False, False),
    (6, 5, False, True),
    (1000, -1, True, False),
])
def test_limit_boundaries(usage, limit, creatable, over):
    assert can_create(usage, limit) is creatable
    assert is_over_limit(usage, limit) is over


def test_six_materials_on_free_plan():
    status = evaluate_soft_lock('free', ResourceUsage(materials=6), {MATERIALS: items(6)})

    assert status.soft_lock[MATERIALS] is True
    assert status.over_limit_ids[MATERIALS] == [6]
    assert status.is_read_only(MATERIALS, 6)
    assert not status.is_read_only(MATERIALS, 1)
    with pytest.raises(QuotaExceededError) as exc:
        ensure_can_create(status, MATERIALS)
    assert exc.value.details['currentCount'] == 6
    assert exc.value.details['maxAllowed'] == 5


def test_newest_items_are_locked_regardless_of_id():
    rows = [Item(1, START + timedelta(days=5)), Item(2, START), Item(3, START + timedelta(days=1))]
    assert select_read_only(rows, 2) == [1]


def test_ties_and_missing_timestamps_are_deterministic():
    rows = [Item(3, None), Item(2, START), Item(1, START)]
    assert select_read_only(rows, 1) == [2, 3]


def test_at_limit_blocks_creation_without_locking():
    status = evaluate_soft_lock('free', ResourceUsage(materials=5), {MATERIALS: items(5)})
    assert status.over_limit_ids[MATERIALS] == []
    assert status.can_create(MATERIALS) is False


def test_read_only_item_rejects_writes():
    status = evaluate_soft_lock('free', ResourceUsage(materials=7), {MATERIALS: items(7)})
    with pytest.raises(ReadOnlyError):
        ensure_writable(status, MATERIALS, 7)
    ensure_writable(status, MATERIALS, 5)


def test_unknown_plan_falls_back_to_free():
    status = evaluate_soft_lock('mystery', ResourceUsage())
    assert status.plan == 'free'
    assert status.limits.max_materials == 5


def test_storage_counts_upload_size():
    status = evaluate_soft_lock('free', ResourceUsage(storage_size=4.5))
    ensure_can_create(status, STORAGE, 0.5)
    with pytest.raises(QuotaExceededError):
        ensure_can_create(status, STORAGE, 0.6)


def test_validate_plan_rejects_unknown():
    with pytest.raises(ValidationError):
        validate_plan('platinum')


def test_status_dict_shape():
    data = evaluate_soft_lock('starter', ResourceUsage(materials=3)).to_dict()
    assert data['plan'] == 'starter'
    assert data['limits']['maxMaterials'] == 20
    assert data['usage']['materials'] == 3
    assert data['canCreate'][MATERIALS] is True
