from decimal import Decimal

from makercalc import db
from makercalc.models import Formulation, FormulationIngredient, RawMaterial


def create_formulation(client, name, ingredients, batch_size='1', batch_unit='kg', **extra):
    payload = {'name': name, 'batchSize': batch_size, 'batchUnit': batch_unit, 'ingredients': ingredients}
    payload.update(extra)
    return client.post('/api/formulations', json=payload)


def test_create_formulation_costs_it(api, make_material):
    material = make_material()
    response = create_formulation(api, 'Bar soap', [{'materialId': material['id'], 'quantity': '500', 'unit': 'g'}],
                                  markupPercentage=30)
    assert response.status_code == 201
    body = response.get_json()
    assert body['totalCost'] == '25.50'
    assert body['unitCost'] == '25.5000'
    assert body['suggestedPrice'] == '33.15'
    assert body['profitMargin'] == '23.08'
    assert body['ingredients'][0]['costContribution'] == '25.5000'


def test_unit_mismatch_rejects_the_formulation(api, make_material):
    material = make_material()
    response = create_formulation(api, 'Bar soap', [{'materialId': material['id'], 'quantity': '0.5', 'unit': 'kg'}])
    assert response.status_code == 400
    assert response.get_json()['expectedUnit'] == 'g'
    assert api.get('/api/formulations').get_json() == []


def test_formulation_quota_on_free_plan(api):
    assert create_formulation(api, 'First', []).status_code == 201
    response = create_formulation(api, 'Second', [])
    assert response.status_code == 403
    assert response.get_json()['maxAllowed'] == 1


def test_sub_formulation_costs_flow_upwards(studio, make_material):
    material = make_material(client=studio)
    base = create_formulation(studio, 'Soap base', [{'materialId': material['id'], 'quantity': '500', 'unit': 'g'}],
                              batch_size='500', batch_unit='g').get_json()
    bar = create_formulation(studio, 'Lavender bar', [{'subFormulationId': base['id'], 'quantity': '100', 'unit': 'g'}])
    assert bar.status_code == 201
    assert bar.get_json()['totalCost'] == '5.10'

    response = studio.put(f"/api/raw-materials/{material['id']}", json={'totalCost': '51'})
    assert sorted(response.get_json()['affectedFormulations']) == sorted([base['id'], bar.get_json()['id']])

    stored = {f['name']: f['totalCost'] for f in studio.get('/api/formulations').get_json()}
    assert stored == {'Soap base': '51.00', 'Lavender bar': '10.20'}


def test_circular_reference_is_rejected(studio):
    first = create_formulation(studio, 'A', [], batch_size='1', batch_unit='kg').get_json()
    second = create_formulation(studio, 'B', [{'subFormulationId': first['id'], 'quantity': '1', 'unit': 'kg'}]).get_json()

    response = studio.put(f"/api/formulations/{first['id']}", json={
        'ingredients': [{'subFormulationId': second['id'], 'quantity': '1', 'unit': 'kg'}]
    })
    assert response.status_code == 400
    body = response.get_json()
    assert body['error'] == 'Circular formulation reference'
    assert body['cycle'] == [first['id'], second['id'], first['id']]

    # Nothing was written
    assert studio.get(f"/api/formulations/{first['id']}/ingredients").get_json() == []


def test_self_reference_is_rejected(studio):
    formulation = create_formulation(studio, 'A', []).get_json()
    response = studio.post(f"/api/formulations/{formulation['id']}/ingredients",
                           json={'subFormulationId': formulation['id'], 'quantity': '1', 'unit': 'kg'})
    assert response.status_code == 400
    assert response.get_json()['cycle'] == [formulation['id'], formulation['id']]


def test_ingredient_lifecycle(api, make_material):
    material = make_material()
    formulation = create_formulation(api, 'Bar soap', []).get_json()

    added = api.post(f"/api/formulations/{formulation['id']}/ingredients",
                     json={'materialId': material['id'], 'quantity': '500', 'unit': 'g'})
    assert added.status_code == 201
    ingredient_id = added.get_json()['id']

    updated = api.put(f'/api/formulation-ingredients/{ingredient_id}', json={'quantity': '250'})
    assert updated.status_code == 200
    assert api.get('/api/formulations').get_json()[0]['totalCost'] == '12.75'

    assert api.delete(f'/api/formulation-ingredients/{ingredient_id}').status_code == 200
    assert api.get('/api/formulations').get_json()[0]['totalCost'] == '0.00'


def test_cost_breakdown_shares(studio, make_material):
    oil = make_material(client=studio)
    jar = make_material(client=studio, name='Jar', totalCost='12', quantity='24', unit='pcs')
    formulation = create_formulation(studio, 'Balm', [
        {'materialId': oil['id'], 'quantity': '500', 'unit': 'g'},
        {'materialId': jar['id'], 'quantity': '2', 'unit': 'pcs', 'includeInMarkup': False},
    ]).get_json()

    breakdown = studio.get(f"/api/formulations/{formulation['id']}/cost-breakdown").get_json()
    assert breakdown['totalCost'] == '26.50'
    assert breakdown['markupEligibleCost'] == '25.50'
    shares = {line['name']: line['percentage'] for line in breakdown['ingredients']}
    assert shares == {'Olive oil': '96.23', 'Jar': '3.77'}


def test_archive_and_restore(api):
    formulation = create_formulation(api, 'Seasonal', []).get_json()
    assert api.post(f"/api/formulations/{formulation['id']}/archive").status_code == 200
    assert api.get('/api/formulations').get_json() == []
    archived = api.get('/api/formulations?archived=true').get_json()
    assert [f['name'] for f in archived] == ['Seasonal']

    api.post(f"/api/formulations/{formulation['id']}/restore")
    assert len(api.get('/api/formulations').get_json()) == 1


def test_delete_used_sub_formulation_is_blocked(studio):
    base = create_formulation(studio, 'Base', []).get_json()
    create_formulation(studio, 'Bar', [{'subFormulationId': base['id'], 'quantity': '1', 'unit': 'kg'}])
    response = studio.delete(f"/api/formulations/{base['id']}")
    assert response.status_code == 400
    assert response.get_json()['formulations'][0]['name'] == 'Bar'


def test_refresh_keeps_previous_cost_of_failed_formulation(app, studio, make_material):
    material = make_material(client=studio)
    good = create_formulation(studio, 'Good', [{'materialId': material['id'], 'quantity': '500', 'unit': 'g'}]).get_json()
    bad = create_formulation(studio, 'Bad', [{'materialId': material['id'], 'quantity': '500', 'unit': 'g'}]).get_json()

    with app.app_context():
        ingredient = FormulationIngredient.query.filter_by(formulation_id=bad['id']).one()
        ingredient.unit = 'kg'
        db.session.commit()

    studio.put(f"/api/raw-materials/{material['id']}", json={'totalCost': '51'})
    response = studio.post('/api/formulations/refresh-costs')
    body = response.get_json()

    assert response.status_code == 200
    assert body['updated'] == [good['id']]
    assert [f['id'] for f in body['failed']] == [bad['id']]

    stored = {f['name']: f['totalCost'] for f in studio.get('/api/formulations').get_json()}
    assert stored == {'Good': '51.00', 'Bad': '25.50'}

    detail = studio.get(f"/api/formulations/{bad['id']}").get_json()
    assert detail['costError']['expectedUnit'] == 'g'


def test_batch_unit_change_reports_broken_parents(studio, make_material):
    material = make_material(client=studio)
    base = create_formulation(studio, 'Soap base', [{'materialId': material['id'], 'quantity': '500', 'unit': 'g'}],
                              batch_size='500', batch_unit='g').get_json()
    bar = create_formulation(studio, 'Lavender bar', [{'subFormulationId': base['id'], 'quantity': '100', 'unit': 'g'}])

    response = studio.put(f"/api/formulations/{base['id']}", json={'batchSize': '0.5', 'batchUnit': 'kg'})
    assert response.status_code == 200
    failed = response.get_json()['failedFormulations']
    assert [f['id'] for f in failed] == [bar.get_json()['id']]
    assert failed[0]['expectedUnit'] == 'kg'

    detail = studio.get(f"/api/formulations/{bar.get_json()['id']}").get_json()
    assert detail['costError']['expectedUnit'] == 'kg'


def test_list_is_costed_from_current_prices(app, api, make_material):
    material = make_material()
    create_formulation(api, 'Bar soap', [{'materialId': material['id'], 'quantity': '500', 'unit': 'g'}],
                       markupPercentage=30)

    # Price written behind the API's back: stored formulation totals are now stale
    with app.app_context():
        db.session.get(RawMaterial, material['id']).total_cost = Decimal('51')
        db.session.commit()

    listed = api.get('/api/formulations').get_json()[0]
    assert listed['totalCost'] == '51.00'
    assert listed['suggestedPrice'] == '66.30'
    assert 'costError' not in listed

    stats = api.get('/api/dashboard/stats').get_json()
    assert stats['avgProfitMargin'] == '23.08'
    batch = {r['title']: r['data'] for r in api.get('/api/reports').get_json()}
    assert batch['Unit Cost Calculations Based on Batch Size'][0]['totalCost'] == '51.00'


def test_tiny_target_price_gives_a_large_negative_margin(app, api, make_material):
    material = make_material(totalCost='25000', quantity='500')
    formulation = create_formulation(api, 'Luxury bar', [{'materialId': material['id'], 'quantity': '500', 'unit': 'g'}],
                                     targetPrice='0.01').get_json()
    assert formulation['profitMargin'] == '-249999900.00'

    with app.app_context():
        stored = db.session.get(Formulation, formulation['id'])
        assert stored.profit_margin == Decimal('-249999900.00')
        assert Formulation.__table__.c.profit_margin.type.precision == 18
