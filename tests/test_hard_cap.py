from decimal import Decimal

import pytest

from makercalc import db
from makercalc.models import QuotaExceededError, RawMaterial, User
from makercalc.routes.utils import enforce_hard_cap, ensure_can_create_resource
from makercalc.subscription import MATERIALS


def material(name):
    return RawMaterial(name=name, total_cost=Decimal('10'), quantity=Decimal('100'), unit='g',
                       unit_cost=Decimal('0.1'), user_id=1)


def test_insert_within_the_cap_is_kept(app):
    with app.app_context():
        user = db.session.get(User, 1)
        status = ensure_can_create_resource(user, MATERIALS)
        db.session.add(material('First'))
        enforce_hard_cap(user, MATERIALS, status)
        db.session.commit()

        assert RawMaterial.query.filter_by(user_id=1).count() == 1


def test_create_that_lost_a_race_is_rolled_back(app):
    with app.app_context():
        db.session.add_all([material(f'Material {i}') for i in range(4)])
        db.session.commit()

        user = db.session.get(User, 1)
        # Four of five used: the check passes
        status = ensure_can_create_resource(user, MATERIALS)

        # A concurrent request takes the last slot before this one flushes
        db.session.add(material('Concurrent'))
        db.session.commit()

        db.session.add(material('Late'))
        with pytest.raises(QuotaExceededError) as excinfo:
            enforce_hard_cap(user, MATERIALS, status)

        assert excinfo.value.limit == 5
        assert excinfo.value.to_dict()['currentCount'] == 5
        names = [m.name for m in RawMaterial.query.filter_by(user_id=1).all()]
        assert len(names) == 5
        assert 'Late' not in names
        assert 'Concurrent' in names
