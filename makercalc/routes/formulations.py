import logging
from decimal import Decimal
from flask import Blueprint, current_app, request, jsonify
from flask_babel import gettext as _
from ..models import (
    db, Formulation, FormulationIngredient, RawMaterial, CycleError, NotFoundError,
    ReadOnlyError, ValidationError
)
from ..costing import (
    CostCalculator, FormulationGraph, FormulationSpec, DEFAULT_MARKUP, round_money, display_unit_cost
)
from ..subscription import MATERIALS, FORMULATIONS
from .utils import (
    log_audit, get_current_user, get_json_body, get_owned_or_404, require_name, parse_decimal,
    parse_bool, parse_unit, load_cost_inputs, material_snapshot, formulation_snapshot,
    recalculate_formulations, recalculate_formulation_and_dependents, live_costs, get_soft_lock_status,
    failed_formulations, ensure_can_create_resource, ensure_item_writable, enforce_hard_cap
)

logger = logging.getLogger(__name__)

formulations_blueprint = Blueprint('formulations', __name__)

CONTRIBUTION_PLACES = Decimal("0.0001")


# ----------------------------
# Helpers
# ----------------------------
def reference_graph(user_id, replacing=None):
    """
    Sub-formulation references of the user's formulations. The edges of
    ``replacing`` are left out because its ingredient list is about to be
    rebuilt.
    """
    graph = FormulationGraph()
    for formulation in Formulation.query.filter_by(user_id=user_id).all():
        graph.add_node(formulation.id)
        if formulation.id == replacing:
            continue
        for ingredient in formulation.ingredients:
            if ingredient.sub_formulation_id is not None:
                graph.add_edge(formulation.id, ingredient.sub_formulation_id)
    return graph


def check_reference(graph, formulation_id, sub_formulation_id):
    if graph.would_create_cycle(formulation_id, sub_formulation_id):
        trial = graph.subgraph(graph.nodes)
        trial.add_edge(formulation_id, sub_formulation_id)
        cycle = trial.find_cycle(formulation_id) or [formulation_id, sub_formulation_id, formulation_id]
        logger.warning("Rejected circular reference %s -> %s", formulation_id, sub_formulation_id)
        raise CycleError(cycle)
    graph.add_edge(formulation_id, sub_formulation_id)


def build_ingredient(data, user, status, formulation_id, graph):
    """Validate one ingredient payload and return an unsaved FormulationIngredient"""
    if not isinstance(data, dict):
        raise ValidationError(_('Each ingredient must be an object'))
    material_id = data.get('materialId') or None
    sub_formulation_id = data.get('subFormulationId') or None
    if (material_id is None) == (sub_formulation_id is None):
        raise ValidationError(
            _('An ingredient must reference either a material or a sub-formulation'), field='materialId'
        )
    quantity = parse_decimal(data, 'quantity')
    if quantity <= 0:
        raise ValidationError(_('Ingredient quantity must be greater than zero'), field='quantity', value=quantity)
    unit = parse_unit(data)

    if material_id is not None:
        get_owned_or_404(RawMaterial, material_id, user.id, 'material')
        # Read-only materials cannot be pulled into new recipes
        if status.is_read_only(MATERIALS, material_id):
            raise ReadOnlyError(
                MATERIALS, material_id, plan=status.plan,
                message=_('This material is read-only due to your plan limits and cannot be used in formulations')
            )
    else:
        get_owned_or_404(Formulation, sub_formulation_id, user.id, 'formulation')
        check_reference(graph, formulation_id, sub_formulation_id)

    return FormulationIngredient(
        formulation_id=formulation_id,
        material_id=material_id,
        sub_formulation_id=sub_formulation_id,
        quantity=quantity,
        unit=unit,
        include_in_markup=parse_bool(data, 'includeInMarkup', default=True),
        notes=data.get('notes')
    )


def apply_fields(formulation, data, creating=False):
    if creating or 'name' in data:
        formulation.name = require_name(data)
    if 'description' in data:
        formulation.description = data.get('description')
    if creating or 'batchSize' in data:
        formulation.batch_size = parse_decimal(data, 'batchSize')
    if creating or 'batchUnit' in data:
        formulation.batch_unit = parse_unit(data, 'batchUnit')
    if creating or 'markupPercentage' in data:
        formulation.markup_percentage = parse_decimal(data, 'markupPercentage', required=False,
                                                      default=DEFAULT_MARKUP)
    if 'targetPrice' in data:
        formulation.target_price = parse_decimal(data, 'targetPrice', required=False)
    if 'isActive' in data:
        formulation.is_active = parse_bool(data, 'isActive')

    FormulationSpec(
        id=formulation.id,
        batch_size=formulation.batch_size,
        batch_unit=formulation.batch_unit,
        markup_percentage=formulation.markup_percentage,
        target_price=formulation.target_price,
    ).validate()


def replace_ingredients(formulation, items, user, status):
    if not isinstance(items, list):
        raise ValidationError(_('ingredients must be a list'), field='ingredients')
    graph = reference_graph(user.id, replacing=formulation.id)
    new_rows = [build_ingredient(item, user, status, formulation.id, graph) for item in items]
    formulation.ingredients = new_rows


def recalculate_or_raise(formulation):
    """
    A formulation that cannot be costed is rejected. Returns the dependent
    formulations that failed so the response can report them.
    """
    result, failed = recalculate_formulation_and_dependents(formulation)
    error = result.errors.get(formulation.id)
    if error is not None:
        raise error
    return failed


def live_cost(formulation):
    """Cost from current material prices without writing anything"""
    materials, formulations = load_cost_inputs(formulation.user_id)
    calculator = CostCalculator(
        [material_snapshot(m) for m in materials],
        [formulation_snapshot(f) for f in formulations],
        allow_unit_conversion=current_app.config.get('COST_UNIT_CONVERSION', False),
    )
    return calculator.calculate(formulation.id)


def serialize(formulation, status, costs=None, include_ingredients=False):
    """
    ``costs`` is a RefreshResult from current prices. When given, its figures
    replace the stored ones, and a formulation that cannot be costed keeps its
    last stored figures plus a ``costError``.
    """
    data = formulation.to_dict(
        read_only=status.is_read_only(FORMULATIONS, formulation.id),
        include_ingredients=include_ingredients
    )
    if costs is None:
        return data
    error = costs.errors.get(formulation.id)
    if error is not None:
        data['costError'] = error.to_dict()
        return data
    cost = costs.costs[formulation.id]

    data.update({
        'totalCost': str(round_money(cost.total_cost)),
        'unitCost': display_unit_cost(cost.unit_cost),
        'markupEligibleCost': str(round_money(cost.markup_eligible_cost)),
        'suggestedPrice': str(round_money(cost.suggested_price)),
        'effectivePrice': str(round_money(cost.effective_price)),
        'profitMargin': str(round_money(cost.profit_margin)),
    })
    for ingredient in data.get('ingredients', []):
        contribution = cost.contributions.get(ingredient['id'])
        if contribution is not None:
            ingredient['costContribution'] = str(contribution.quantize(CONTRIBUTION_PLACES))
    return data


def serialize_one(formulation, status, failed=None):
    costs = live_costs(formulation.user_id)
    if formulation.id in costs.errors:
        logger.warning("Formulation %s cannot be costed: %s", formulation.id, costs.errors[formulation.id].message)
    data = serialize(formulation, status, costs, include_ingredients=True)
    if failed is not None:
        data['failedFormulations'] = failed
    return data


# ----------------------------
# Formulations
# ----------------------------
@formulations_blueprint.route('/api/formulations', methods=['GET'])
def list_formulations():
    user = get_current_user()
    archived = request.args.get('archived', 'false') == 'true'
    status = get_soft_lock_status(user)
    formulations = Formulation.query.filter_by(user_id=user.id, is_active=not archived) \
        .order_by(Formulation.name).all()
    # One costing pass from current prices for the whole list
    costs = live_costs(user.id)
    return jsonify([serialize(f, status, costs) for f in formulations])


@formulations_blueprint.route('/api/formulations/<int:formulation_id>', methods=['GET'])
def get_formulation(formulation_id):
    user = get_current_user()
    formulation = get_owned_or_404(Formulation, formulation_id, user.id, 'formulation')
    status = get_soft_lock_status(user)
    return jsonify(serialize_one(formulation, status))


@formulations_blueprint.route('/api/formulations', methods=['POST'])
def create_formulation():
    user = get_current_user()
    data = get_json_body()
    status = ensure_can_create_resource(user, FORMULATIONS)

    formulation = Formulation(user_id=user.id)
    apply_fields(formulation, data, creating=True)
    db.session.add(formulation)
    enforce_hard_cap(user, FORMULATIONS, status)

    replace_ingredients(formulation, data.get('ingredients') or [], user, status)
    failed = recalculate_or_raise(formulation)

    log_audit(
        user.id, 'create', 'formulation', formulation.id,
        f'Created new formulation "{formulation.name}" with batch size of {formulation.batch_size} '
        f'{formulation.batch_unit} and {formulation.markup_percentage}% markup'
    )
    db.session.commit()
    return jsonify(serialize_one(formulation, status, failed)), 201


@formulations_blueprint.route('/api/formulations/<int:formulation_id>', methods=['PUT'])
def update_formulation(formulation_id):
    user = get_current_user()
    formulation = get_owned_or_404(Formulation, formulation_id, user.id, 'formulation')
    status = ensure_item_writable(user, FORMULATIONS, formulation.id)
    data = get_json_body()

    old_total = formulation.total_cost
    apply_fields(formulation, data)
    if 'ingredients' in data:
        replace_ingredients(formulation, data.get('ingredients') or [], user, status)
    failed = recalculate_or_raise(formulation)

    cost_change = ''
    if old_total is not None and round_money(old_total) != round_money(formulation.total_cost):
        cost_change = f" (total cost changed from ${round_money(old_total)} to ${round_money(formulation.total_cost)})"
    log_audit(
        user.id, 'update', 'formulation', formulation.id,
        f'Updated formulation "{formulation.name}" - batch size is now {formulation.batch_size} '
        f'{formulation.batch_unit} with {formulation.markup_percentage}% markup{cost_change}',
        failedFormulations=[f['id'] for f in failed]
    )
    db.session.commit()
    return jsonify(serialize_one(formulation, status, failed))


@formulations_blueprint.route('/api/formulations/<int:formulation_id>', methods=['DELETE'])
def delete_formulation(formulation_id):
    user = get_current_user()
    formulation = get_owned_or_404(Formulation, formulation_id, user.id, 'formulation')
    ensure_item_writable(user, FORMULATIONS, formulation.id)

    parents = FormulationIngredient.query.filter_by(sub_formulation_id=formulation.id).all()
    if parents:
        used_in = sorted({(p.formulation_id, p.formulation.name) for p in parents})
        raise ValidationError(
            _('Formulation is used as a sub-formulation in: %(names)s', names=', '.join(n for _i, n in used_in)),
            field='formulationId', value=formulation.id,
            formulations=[{'id': fid, 'name': name} for fid, name in used_in]
        )

    description = (f'Deleted formulation "{formulation.name}" (was {formulation.batch_size} '
                   f'{formulation.batch_unit} batch with ${round_money(formulation.total_cost or 0)} total cost)')
    db.session.delete(formulation)
    log_audit(user.id, 'delete', 'formulation', formulation_id, description)
    db.session.commit()
    return jsonify({'success': True})


@formulations_blueprint.route('/api/formulations/<int:formulation_id>/archive', methods=['POST'])
def archive_formulation(formulation_id):
    return set_archived(formulation_id, archived=True)


@formulations_blueprint.route('/api/formulations/<int:formulation_id>/restore', methods=['POST'])
def restore_formulation(formulation_id):
    return set_archived(formulation_id, archived=False)


def set_archived(formulation_id, archived):
    user = get_current_user()
    formulation = get_owned_or_404(Formulation, formulation_id, user.id, 'formulation')
    status = ensure_item_writable(user, FORMULATIONS, formulation.id)
    formulation.is_active = not archived
    action = 'Archived' if archived else 'Restored'
    log_audit(user.id, 'update', 'formulation', formulation.id, f'{action} formulation "{formulation.name}"')
    db.session.commit()
    return jsonify(serialize(formulation, status, live_costs(user.id)))


# ----------------------------
# Ingredients
# ----------------------------
@formulations_blueprint.route('/api/formulations/<int:formulation_id>/ingredients', methods=['GET'])
def list_ingredients(formulation_id):
    user = get_current_user()
    formulation = get_owned_or_404(Formulation, formulation_id, user.id, 'formulation')
    return jsonify([i.to_dict() for i in formulation.ingredients])


@formulations_blueprint.route('/api/formulations/<int:formulation_id>/ingredients', methods=['POST'])
def add_ingredient(formulation_id):
    user = get_current_user()
    formulation = get_owned_or_404(Formulation, formulation_id, user.id, 'formulation')
    status = ensure_item_writable(user, FORMULATIONS, formulation.id)
    data = get_json_body()

    ingredient = build_ingredient(data, user, status, formulation.id, reference_graph(user.id))
    formulation.ingredients.append(ingredient)
    failed = recalculate_or_raise(formulation)

    log_audit(user.id, 'update', 'formulation', formulation.id,
              f'Added ingredient to formulation "{formulation.name}"')
    db.session.commit()
    return jsonify(dict(ingredient.to_dict(), failedFormulations=failed)), 201


def load_ingredient(ingredient_id, user):
    ingredient = db.session.get(FormulationIngredient, ingredient_id)
    if ingredient is None or ingredient.formulation.user_id != user.id:
        raise NotFoundError('ingredient', ingredient_id, _('Ingredient not found'))
    return ingredient


@formulations_blueprint.route('/api/formulation-ingredients/<int:ingredient_id>', methods=['PUT'])
def update_ingredient(ingredient_id):
    user = get_current_user()
    ingredient = load_ingredient(ingredient_id, user)
    formulation = ingredient.formulation
    status = ensure_item_writable(user, FORMULATIONS, formulation.id)
    data = get_json_body()

    if 'quantity' in data:
        quantity = parse_decimal(data, 'quantity')
        if quantity <= 0:
            raise ValidationError(_('Ingredient quantity must be greater than zero'), field='quantity', value=quantity)
        ingredient.quantity = quantity
    if 'unit' in data:
        ingredient.unit = parse_unit(data)
    if 'includeInMarkup' in data:
        ingredient.include_in_markup = parse_bool(data, 'includeInMarkup', default=True)
    if 'notes' in data:
        ingredient.notes = data.get('notes')
    if 'materialId' in data or 'subFormulationId' in data:
        graph = reference_graph(user.id, replacing=formulation.id)
        for other in formulation.ingredients:
            if other is not ingredient and other.sub_formulation_id is not None:
                graph.add_edge(formulation.id, other.sub_formulation_id)
        replacement = build_ingredient(
            {
                'materialId': data.get('materialId'),
                'subFormulationId': data.get('subFormulationId'),
                'quantity': ingredient.quantity,
                'unit': ingredient.unit,
            },
            user, status, formulation.id, graph
        )
        ingredient.material_id = replacement.material_id
        ingredient.sub_formulation_id = replacement.sub_formulation_id

    failed = recalculate_or_raise(formulation)
    log_audit(user.id, 'update', 'formulation', formulation.id,
              f'Updated ingredient in formulation "{formulation.name}"')
    db.session.commit()
    return jsonify(dict(ingredient.to_dict(), failedFormulations=failed))


@formulations_blueprint.route('/api/formulation-ingredients/<int:ingredient_id>', methods=['DELETE'])
def delete_ingredient(ingredient_id):
    user = get_current_user()
    ingredient = load_ingredient(ingredient_id, user)
    formulation = ingredient.formulation
    ensure_item_writable(user, FORMULATIONS, formulation.id)

    formulation.ingredients.remove(ingredient)
    failed = recalculate_or_raise(formulation)
    log_audit(user.id, 'update', 'formulation', formulation.id,
              f'Removed ingredient from formulation "{formulation.name}"')
    db.session.commit()
    return jsonify({'success': True, 'failedFormulations': failed})


# ----------------------------
# Costing
# ----------------------------
@formulations_blueprint.route('/api/formulations/<int:formulation_id>/cost-breakdown', methods=['GET'])
def cost_breakdown(formulation_id):
    user = get_current_user()
    formulation = get_owned_or_404(Formulation, formulation_id, user.id, 'formulation')
    cost = live_cost(formulation)

    lines = []
    for ingredient in formulation.ingredients:
        contribution = cost.contributions.get(ingredient.id, Decimal("0"))
        share = contribution / cost.total_cost * 100 if cost.total_cost > 0 else Decimal("0")
        if ingredient.material_id is not None:
            kind, reference = 'material', ingredient.material
        else:
            kind, reference = 'formulation', ingredient.sub_formulation
        lines.append({
            'ingredientId': ingredient.id,
            'type': kind,
            'referenceId': reference.id if reference else None,
            'name': reference.name if reference else None,
            'quantity': str(ingredient.quantity),
            'unit': ingredient.unit,
            'costContribution': str(contribution.quantize(CONTRIBUTION_PLACES)),
            'percentage': str(round_money(share)),
            'includeInMarkup': ingredient.include_in_markup,
        })

    data = cost.to_dict()
    data.update({
        'name': formulation.name,
        'batchSize': str(formulation.batch_size),
        'batchUnit': formulation.batch_unit,
        'markupPercentage': str(formulation.markup_percentage),
        'targetPrice': str(formulation.target_price) if formulation.target_price is not None else None,
        'ingredients': lines,
    })
    return jsonify(data)


@formulations_blueprint.route('/api/formulations/refresh-costs', methods=['POST'])
def refresh_all_costs():
    """Recompute every formulation of the user, sub-formulations first"""
    user = get_current_user()
    result = recalculate_formulations(user.id)
    db.session.commit()
    logger.info("User %s refreshed %d formulations (%d failed)", user.id, len(result.costs), len(result.errors))
    return jsonify({
        'updated': sorted(result.costs),
        'failed': failed_formulations(result),
        'order': result.order,
    })
