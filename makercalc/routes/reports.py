from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from flask import Blueprint, jsonify
from ..models import RawMaterial, Formulation, FormulationIngredient
from ..costing import round_money, display_unit_cost
from .utils import get_current_user, live_costs

reports_blueprint = Blueprint('reports', __name__)

ZERO = Decimal("0")
TOP_N = 5


def report(title, description, data, tier='free'):
    return {
        'title': title,
        'description': description,
        'data': data,
        'generatedAt': datetime.utcnow().isoformat(),
        'tier': tier,
    }


def material_value(materials):
    total = sum((Decimal(m.total_cost) for m in materials), ZERO)
    unit_total = sum((Decimal(m.unit_cost) for m in materials), ZERO)
    return {
        'materialCount': len(materials),
        'totalValue': str(round_money(total)),
        'totalUnitCost': display_unit_cost(unit_total),
    }


def average_cost_by_category(materials):
    groups = defaultdict(list)
    for m in materials:
        groups[m.category.name if m.category else 'Uncategorized'].append(Decimal(m.unit_cost))
    return [
        {
            'category': name,
            'materialCount': len(costs),
            'averageUnitCost': display_unit_cost(sum(costs, ZERO) / len(costs)),
        }
        for name, costs in sorted(groups.items())
    ]


def expensive_materials(materials):
    ranked = sorted(materials, key=lambda m: Decimal(m.unit_cost), reverse=True)

    def entry(m):
        return {'id': m.id, 'name': m.name, 'unitCost': display_unit_cost(m.unit_cost), 'unit': m.unit}

    return {
        'mostExpensive': [entry(m) for m in ranked[:TOP_N]],
        'leastExpensive': [entry(m) for m in reversed(ranked[-TOP_N:])],
    }


def cost_error(costs, formulation_id):
    error = costs.errors.get(formulation_id)
    return error.message if error is not None else None


def batch_costs(formulations, costs):
    result = []
    for f in formulations:
        cost = costs.costs.get(f.id)
        result.append({
            'id': f.id,
            'name': f.name,
            'batchSize': str(f.batch_size),
            'batchUnit': f.batch_unit,
            'totalCost': str(round_money(cost.total_cost)) if cost else None,
            'unitCost': display_unit_cost(cost.unit_cost) if cost else None,
            'costError': cost_error(costs, f.id),
        })
    return result


def profit_margins(formulations, costs):
    result = []
    for f in formulations:
        if not f.is_active:
            continue
        cost = costs.costs.get(f.id)
        result.append({
            'id': f.id,
            'name': f.name,
            'markupPercentage': str(f.markup_percentage),
            'targetPrice': str(f.target_price) if f.target_price is not None else None,
            'profitMargin': str(round_money(cost.profit_margin)) if cost else None,
            'costError': cost_error(costs, f.id),
        })
    return result


def ingredient_breakdown(formulations, costs):
    result = []
    for f in formulations:
        cost = costs.costs.get(f.id)
        if cost is None:
            result.append({'id': f.id, 'name': f.name, 'ingredients': [], 'costError': cost_error(costs, f.id)})
            continue
        lines = []
        for ing in f.ingredients:
            contribution = cost.contributions.get(ing.id, ZERO)
            reference = ing.material or ing.sub_formulation
            lines.append({
                'name': reference.name if reference else None,
                'type': 'material' if ing.material_id is not None else 'formulation',
                'quantity': str(ing.quantity),
                'unit': ing.unit,
                'costContribution': display_unit_cost(contribution),
                'percentage': str(round_money(contribution / cost.total_cost * 100)) if cost.total_cost > 0 else '0.00',
            })
        result.append({'id': f.id, 'name': f.name, 'ingredients': lines})
    return result


def usage_frequency(user_id):
    """How many formulations use each material"""
    rows = FormulationIngredient.query.join(Formulation, FormulationIngredient.formulation_id == Formulation.id) \
        .filter(Formulation.user_id == user_id, FormulationIngredient.material_id.isnot(None)).all()
    usage = defaultdict(set)
    names = {}
    for row in rows:
        usage[row.material_id].add(row.formulation_id)
        names[row.material_id] = row.material.name if row.material else None
    ranked = sorted(usage.items(), key=lambda item: (-len(item[1]), item[0]))
    return [{'materialId': mid, 'name': names[mid], 'usageCount': len(fids)} for mid, fids in ranked]


@reports_blueprint.route('/api/reports')
def reports():
    user = get_current_user()
    materials = RawMaterial.query.filter_by(user_id=user.id).all()
    formulations = Formulation.query.filter_by(user_id=user.id).order_by(Formulation.name).all()
    costs = live_costs(user.id)

    return jsonify([
        report("Total Material Database Value", "Sum of all material costs in your database",
               material_value(materials)),
        report("Average Cost Per Material Category", "Average unit cost for materials in each category",
               average_cost_by_category(materials)),
        report("Most vs Least Expensive Materials", "Comparison of highest and lowest cost materials",
               expensive_materials(materials)),
        report("Unit Cost Calculations Based on Batch Size", "Cost analysis for each batch size",
               batch_costs(formulations, costs)),
        report("Basic Profit Margin Calculations", "Profit margins for all active formulations",
               profit_margins(formulations, costs)),
        report("Cost Per Ingredient Breakdown", "Detailed cost breakdown for each formulation ingredient",
               ingredient_breakdown(formulations, costs)),
        report("Materials Ranked by Usage Frequency", "Materials sorted by how many formulations use them",
               usage_frequency(user.id), tier='pro'),
    ])
