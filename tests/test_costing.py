from decimal import Decimal

import pytest

from makercalc.costing import (
    CostCalculator, DependencyIndex, FormulationGraph, FormulationSpec, IngredientLine, MaterialCost,
    calculate_formulation_cost, calculate_pricing, calculate_unit_cost, convert_quantity,
    display_unit_cost, refresh_costs, round_money
)
from makercalc.models import CycleError, NotFoundError, ValidationError


def olive_oil():
    return MaterialCost.from_totals(1, '25.50', '500', 'g')


def soap(ingredients, formulation_id=10, **kwargs):
    kwargs.setdefault('batch_size', Decimal('1'))
    kwargs.setdefault('batch_unit', 'kg')
    return FormulationSpec(id=formulation_id, ingredients=ingredients, **kwargs)


# ----------------------------
# Material unit cost
# ----------------------------
def test_unit_cost_from_purchase():
    unit_cost = calculate_unit_cost(Decimal('25.50'), Decimal('500'))
    assert unit_cost == Decimal('0.051')
    assert display_unit_cost(unit_cost) == '0.0510'


def test_unit_cost_keeps_full_precision():
    unit_cost = calculate_unit_cost('10', '3')
    assert unit_cost > Decimal('3.3333')
    assert display_unit_cost(unit_cost) == '3.3333'


@pytest.mark.parametrize('quantity', ['0', '-1'])
def test_unit_cost_rejects_non_positive_quantity(quantity):
    with pytest.raises(ValidationError) as exc:
        calculate_unit_cost('10', quantity)
    assert exc.value.details['field'] == 'quantity'


def test_unit_cost_rejects_negative_total():
    with pytest.raises(ValidationError):
        calculate_unit_cost('-1', '10')


def test_unit_cost_rejects_text():
    with pytest.raises(ValidationError):
        calculate_unit_cost('abc', '10')


# ----------------------------
# Formulation rollup
# ----------------------------
def test_single_ingredient_formulation():
    spec = soap([IngredientLine(id=1, quantity=Decimal('500'), unit='g', material_id=1)])
    cost = calculate_formulation_cost(spec, [olive_oil()])

    assert cost.contributions[1] == Decimal('25.50')
    assert cost.total_cost == Decimal('25.50')
    assert cost.unit_cost == Decimal('25.50')
    assert round_money(cost.suggested_price) == Decimal('33.15')
    assert cost.effective_price == cost.suggested_price
    assert round_money(cost.profit_margin) == Decimal('23.08')


def test_empty_formulation_costs_nothing():
    cost = calculate_formulation_cost(soap([]), [])
    assert cost.total_cost == 0
    assert cost.unit_cost == 0
    assert cost.profit_margin == 0


def test_excluded_ingredient_is_costed_but_not_marked_up():
    jar = MaterialCost.from_totals(2, '12', '24', 'pcs')
    spec = soap([
        IngredientLine(id=1, quantity=Decimal('500'), unit='g', material_id=1),
        IngredientLine(id=2, quantity=Decimal('2'), unit='pcs', material_id=2, include_in_markup=False),
    ])
    cost = calculate_formulation_cost(spec, [olive_oil(), jar])

    assert cost.total_cost == Decimal('26.50')
    assert cost.markup_eligible_cost == Decimal('25.50')
    assert round_money(cost.suggested_price) == Decimal('33.15')


def test_target_price_overrides_suggestion():
    spec = soap([IngredientLine(id=1, quantity=Decimal('500'), unit='g', material_id=1)],
                target_price=Decimal('51'))
    cost = calculate_formulation_cost(spec, [olive_oil()])
    assert cost.effective_price == Decimal('51')
    assert cost.profit_margin == Decimal('50')


def test_zero_target_price_falls_back_to_markup():
    suggested, effective, margin = calculate_pricing(Decimal('10'), Decimal('50'), Decimal('0'))
    assert suggested == Decimal('15')
    assert effective == suggested
    assert round_money(margin) == Decimal('33.33')


def test_pricing_without_positive_price_has_zero_margin():
    assert calculate_pricing(Decimal('0'), Decimal('30'))[2] == 0


def test_recalculation_is_idempotent():
    spec = soap([IngredientLine(id=1, quantity=Decimal('333'), unit='g', material_id=1)], batch_size=Decimal('3'))
    first = calculate_formulation_cost(spec, [olive_oil()])
    second = calculate_formulation_cost(spec, [olive_oil()])
    assert first == second


def test_sub_formulation_contributes_its_unit_cost():
    base = soap([IngredientLine(id=1, quantity=Decimal('500'), unit='g', material_id=1)],
                formulation_id=20, batch_size=Decimal('500'), batch_unit='g')
    bar = soap([IngredientLine(id=2, quantity=Decimal('100'), unit='g', sub_formulation_id=20)])
    cost = calculate_formulation_cost(bar, [olive_oil()], [base])
    assert cost.total_cost == Decimal('5.100')


def test_unit_mismatch_is_rejected_by_default():
    spec = soap([IngredientLine(id=1, quantity=Decimal('0.5'), unit='kg', material_id=1)])
    with pytest.raises(ValidationError) as exc:
        calculate_formulation_cost(spec, [olive_oil()])
    assert exc.value.details['expectedUnit'] == 'g'


def test_unit_conversion_within_dimension_when_enabled():
    spec = soap([IngredientLine(id=1, quantity=Decimal('0.5'), unit='kg', material_id=1)])
    cost = calculate_formulation_cost(spec, [olive_oil()], allow_unit_conversion=True)
    assert cost.total_cost == Decimal('25.50')


def test_mass_and_volume_never_convert():
    with pytest.raises(ValidationError):
        convert_quantity(Decimal('1'), 'ml', 'g')


def test_missing_material_is_not_found():
    spec = soap([IngredientLine(id=1, quantity=Decimal('1'), unit='g', material_id=99)])
    with pytest.raises(NotFoundError):
        calculate_formulation_cost(spec, [])


@pytest.mark.parametrize('field, kwargs', [
    ('batchSize', {'batch_size': Decimal('0')}),
    ('markupPercentage', {'markup_percentage': Decimal('1001')}),
    ('markupPercentage', {'markup_percentage': Decimal('-1')}),
])
def test_invalid_formulation_fields(field, kwargs):
    with pytest.raises(ValidationError) as exc:
        calculate_formulation_cost(soap([], **kwargs), [])
    assert exc.value.details['field'] == field


def test_ingredient_needs_exactly_one_reference():
    with pytest.raises(ValidationError):
        IngredientLine(quantity=Decimal('1'), unit='g').validate()
    with pytest.raises(ValidationError):
        IngredientLine(quantity=Decimal('1'), unit='g', material_id=1, sub_formulation_id=2).validate()


# ----------------------------
# Reference graph
# ----------------------------
def test_self_reference_is_a_cycle():
    graph = FormulationGraph({1: []})
    assert graph.would_create_cycle(1, 1)


def test_indirect_reference_is_a_cycle():
    graph = FormulationGraph({1: [2], 2: [3], 3: []})
    assert graph.would_create_cycle(3, 1)
    assert not graph.would_create_cycle(1, 3)


def test_find_cycle_returns_the_loop():
    graph = FormulationGraph({1: [2], 2: [1]})
    cycle = graph.find_cycle()
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {1, 2}


def test_topological_order_puts_sub_formulations_first():
    graph = FormulationGraph({1: [2, 3], 2: [3], 3: []})
    assert graph.topological_order() == [3, 2, 1]


def test_topological_order_raises_on_cycle():
    with pytest.raises(CycleError):
        FormulationGraph({1: [2], 2: [1]}).topological_order()


def test_cyclic_formulations_fail_instead_of_recursing():
    a = soap([IngredientLine(id=1, quantity=Decimal('1'), unit='kg', sub_formulation_id=11)], formulation_id=10)
    b = soap([IngredientLine(id=2, quantity=Decimal('1'), unit='kg', sub_formulation_id=10)], formulation_id=11)
    with pytest.raises(CycleError):
        CostCalculator([], [a, b]).calculate(10)


def test_dependency_index_follows_sub_formulations():
    base = soap([IngredientLine(quantity=Decimal('1'), unit='g', material_id=1)], formulation_id=20)
    bar = soap([IngredientLine(quantity=Decimal('1'), unit='kg', sub_formulation_id=20)], formulation_id=21)
    other = soap([IngredientLine(quantity=Decimal('1'), unit='g', material_id=2)], formulation_id=22)
    index = DependencyIndex.from_specs([base, bar, other])

    assert index.dependents_of_material(1) == {20, 21}
    assert index.dependents_of_formulation(20) == {21}
    assert index.dependents_of_material(3) == set()


# ----------------------------
# Batch refresh
# ----------------------------
def test_refresh_orders_and_isolates_failures():
    base = soap([IngredientLine(id=1, quantity=Decimal('500'), unit='g', material_id=1)],
                formulation_id=20, batch_size=Decimal('500'), batch_unit='g')
    bar = soap([IngredientLine(id=2, quantity=Decimal('100'), unit='g', sub_formulation_id=20)], formulation_id=21)
    broken = soap([IngredientLine(id=3, quantity=Decimal('1'), unit='g', material_id=99)], formulation_id=22)

    result = refresh_costs([bar, broken, base], [olive_oil()])

    assert result.order.index(20) < result.order.index(21)
    assert set(result.costs) == {20, 21}
    assert isinstance(result.errors[22], NotFoundError)


def test_refresh_marks_cycles_as_failed():
    a = soap([IngredientLine(id=1, quantity=Decimal('1'), unit='kg', sub_formulation_id=11)], formulation_id=10)
    b = soap([IngredientLine(id=2, quantity=Decimal('1'), unit='kg', sub_formulation_id=10)], formulation_id=11)
    ok = soap([], formulation_id=12)

    result = refresh_costs([a, b, ok], [])

    assert set(result.errors) == {10, 11}
    assert all(isinstance(e, CycleError) for e in result.errors.values())
    assert 12 in result.costs
