"""
Cost rollup for raw materials and formulations.

Everything in this module works on plain snapshots (``MaterialCost``,
``IngredientLine``, ``FormulationSpec``) so it can be used from request
handlers, maintenance scripts and tests alike. Nothing here touches the
database; callers load the current rows, build snapshots, and write the
resulting ``FormulationCost`` values back.

Costs are carried as full-precision ``Decimal`` values. Rounding only happens
for display (``display_unit_cost``, ``round_money``) or when a value is stored
in a fixed-scale column.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, List, Optional, Set

from .models import CostError, CycleError, NotFoundError, ValidationError, UNITS

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
UNIT_COST_PLACES = Decimal("0.0001")
MONEY_PLACES = Decimal("0.01")
DEFAULT_MARKUP = Decimal("30")
MAX_MARKUP = Decimal("1000")

# Conversion factors to the base unit of each dimension (g, ml, pcs)
UNIT_DIMENSIONS = {
    'g': ('mass', Decimal("1")),
    'kg': ('mass', Decimal("1000")),
    'oz': ('mass', Decimal("28.349523125")),
    'lb': ('mass', Decimal("453.59237")),
    'ml': ('volume', Decimal("1")),
    'L': ('volume', Decimal("1000")),
    'pcs': ('count', Decimal("1")),
}


def to_decimal(value, field_name='value'):
    """Parse user/DB input into a Decimal. Floats go through str() to avoid binary noise."""
    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field_name} is required", field=field_name, value=value)
    try:
        if isinstance(value, float):
            return Decimal(str(value))
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} must be a number", field=field_name, value=value)


def validate_unit(unit, field_name='unit'):
    if unit not in UNITS:
        raise ValidationError(
            f"{field_name} must be one of {', '.join(UNITS)}", field=field_name, value=unit
        )
    return unit


def round_money(value):
    return to_decimal(value).quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


def display_unit_cost(value):
    """Unit costs are shown with 4 decimal places"""
    return str(to_decimal(value).quantize(UNIT_COST_PLACES, rounding=ROUND_HALF_UP))


# ----------------------------
# Material Cost Model
# ----------------------------
def calculate_unit_cost(total_cost, quantity):
    """
    Unit cost of a raw material purchase: total_cost / quantity.

    The result is not rounded; formulation rollups use it at full precision.
    """
    total_cost = to_decimal(total_cost, 'totalCost')
    quantity = to_decimal(quantity, 'quantity')
    if total_cost < 0:
        raise ValidationError("totalCost cannot be negative", field='totalCost', value=total_cost)
    if quantity <= 0:
        raise ValidationError("quantity must be greater than zero", field='quantity', value=quantity)
    return total_cost / quantity


def convert_quantity(quantity, from_unit, to_unit):
    """
    Convert a quantity between units of the same dimension (g/kg/oz/lb, ml/L).

    Mass and volume are never treated as interchangeable.
    """
    quantity = to_decimal(quantity, 'quantity')
    if from_unit == to_unit:
        return quantity
    source = UNIT_DIMENSIONS.get(from_unit)
    target = UNIT_DIMENSIONS.get(to_unit)
    if source is None or target is None or source[0] != target[0]:
        raise ValidationError(
            f"Cannot convert {from_unit} to {to_unit}",
            field='unit', value=from_unit, expectedUnit=to_unit
        )
    return quantity * source[1] / target[1]


# ----------------------------
# Snapshots
# ----------------------------
@dataclass(frozen=True)
class MaterialCost:
    id: int
    unit_cost: Decimal
    unit: str

    @classmethod
    def from_totals(cls, material_id, total_cost, quantity, unit):
        return cls(id=material_id, unit_cost=calculate_unit_cost(total_cost, quantity), unit=unit)


@dataclass(frozen=True)
class IngredientLine:
    quantity: Decimal
    unit: str
    material_id: Optional[int] = None
    sub_formulation_id: Optional[int] = None
    include_in_markup: bool = True
    id: Optional[int] = None

    def validate(self):
        if (self.material_id is None) == (self.sub_formulation_id is None):
            raise ValidationError(
                "An ingredient must reference either a material or a sub-formulation",
                field='materialId', ingredientId=self.id
            )
        quantity = to_decimal(self.quantity, 'quantity')
        if quantity <= 0:
            raise ValidationError(
                "Ingredient quantity must be greater than zero",
                field='quantity', value=quantity, ingredientId=self.id
            )
        validate_unit(self.unit)


@dataclass
class FormulationSpec:
    id: int
    batch_size: Decimal
    batch_unit: str
    markup_percentage: Decimal = DEFAULT_MARKUP
    target_price: Optional[Decimal] = None
    ingredients: List[IngredientLine] = field(default_factory=list)

    @property
    def sub_formulation_ids(self):
        return {i.sub_formulation_id for i in self.ingredients if i.sub_formulation_id is not None}

    @property
    def material_ids(self):
        return {i.material_id for i in self.ingredients if i.material_id is not None}

    def validate(self):
        batch_size = to_decimal(self.batch_size, 'batchSize')
        if batch_size <= 0:
            raise ValidationError("batchSize must be greater than zero", field='batchSize', value=batch_size)
        markup = self.markup_percentage if self.markup_percentage is not None else DEFAULT_MARKUP
        markup = to_decimal(markup, 'markupPercentage')
        if markup < 0 or markup > MAX_MARKUP:
            raise ValidationError(
                f"markupPercentage must be between 0 and {MAX_MARKUP}",
                field='markupPercentage', value=markup
            )
        if self.target_price is not None and to_decimal(self.target_price, 'targetPrice') < 0:
            raise ValidationError("targetPrice cannot be negative", field='targetPrice', value=self.target_price)
        for line in self.ingredients:
            line.validate()


@dataclass
class FormulationCost:
    formulation_id: int
    total_cost: Decimal
    unit_cost: Decimal
    markup_eligible_cost: Decimal
    suggested_price: Decimal
    effective_price: Decimal
    profit_margin: Decimal
    contributions: Dict[int, Decimal] = field(default_factory=dict)

    def to_dict(self):
        return {
            'formulationId': self.formulation_id,
            'totalCost': str(round_money(self.total_cost)),
            'unitCost': display_unit_cost(self.unit_cost),
            'markupEligibleCost': str(round_money(self.markup_eligible_cost)),
            'suggestedPrice': str(round_money(self.suggested_price)),
            'effectivePrice': str(round_money(self.effective_price)),
            'profitMargin': str(round_money(self.profit_margin)),
            'contributions': {str(k): f"{v.quantize(UNIT_COST_PLACES, rounding=ROUND_HALF_UP)}"
                              for k, v in self.contributions.items()},
        }


def calculate_pricing(markup_eligible_cost, markup_percentage, target_price=None):
    """
    Returns (suggested_price, effective_price, profit_margin).

    The target price wins over the markup-based suggestion when it is set and
    positive. Margin is 0 when there is no positive price to divide by.
    """
    markup = to_decimal(markup_percentage if markup_percentage is not None else DEFAULT_MARKUP,
                        'markupPercentage')
    suggested = markup_eligible_cost * (1 + markup / HUNDRED)
    target = to_decimal(target_price, 'targetPrice') if target_price is not None else None
    effective = target if target is not None and target > 0 else suggested
    if effective <= 0:
        return suggested, effective, ZERO
    margin = (effective - markup_eligible_cost) / effective * HUNDRED
    return suggested, effective, margin


# ----------------------------
# Sub-formulation reference graph
# ----------------------------
class FormulationGraph:
    """Directed graph: formulation id -> ids of the sub-formulations it uses"""

    def __init__(self, edges=None):
        self._edges: Dict[int, Set[int]] = defaultdict(set)
        for parent, children in (edges or {}).items():
            self.add_node(parent)
            for child in children:
                self.add_edge(parent, child)

    @classmethod
    def from_specs(cls, specs):
        graph = cls()
        for spec in specs:
            graph.add_node(spec.id)
            for child in spec.sub_formulation_ids:
                graph.add_edge(spec.id, child)
        return graph

    @property
    def nodes(self):
        return set(self._edges)

    def add_node(self, node):
        self._edges.setdefault(node, set())

    def add_edge(self, parent, child):
        self.add_node(parent)
        self.add_node(child)
        self._edges[parent].add(child)

    def children(self, node):
        return set(self._edges.get(node, ()))

    def reachable(self, start):
        """Every node reachable from start, start excluded unless it lies on a cycle"""
        seen = set()
        stack = list(self._edges.get(start, ()))
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            stack.extend(self._edges.get(node, ()))
        return seen

    def would_create_cycle(self, parent, child):
        """True if adding parent -> child closes a loop (self references included)"""
        return parent == child or parent in self.reachable(child)

    def find_cycle(self, start=None):
        """
        Depth-first search with an explicit recursion stack.

        Returns the cycle as a list of ids that starts and ends with the same
        node, or None when the (reachable part of the) graph is acyclic.
        """
        roots = [start] if start is not None else sorted(self._edges)
        done = set()
        for root in roots:
            if root in done:
                continue
            path = [root]
            on_path = {root}
            iterators = [iter(sorted(self._edges.get(root, ())))]
            while iterators:
                child = next(iterators[-1], None)
                if child is None:
                    iterators.pop()
                    finished = path.pop()
                    on_path.discard(finished)
                    done.add(finished)
                    continue
                if child in on_path:
                    return path[path.index(child):] + [child]
                if child in done:
                    continue
                path.append(child)
                on_path.add(child)
                iterators.append(iter(sorted(self._edges.get(child, ()))))
        return None

    def ordering(self):
        """
        Kahn's algorithm with sub-formulations first.

        Returns (order, blocked) where blocked holds the nodes that sit on a
        cycle or depend on one and therefore cannot be ordered.
        """
        pending = {node: len(children) for node, children in self._edges.items()}
        parents = defaultdict(set)
        for parent, children in self._edges.items():
            for child in children:
                parents[child].add(parent)

        ready = sorted(node for node, count in pending.items() if count == 0)
        order = []
        while ready:
            node = ready.pop(0)
            order.append(node)
            for parent in sorted(parents[node]):
                pending[parent] -= 1
                if pending[parent] == 0:
                    ready.append(parent)
        placed = set(order)
        blocked = sorted(node for node in self._edges if node not in placed)
        return order, blocked

    def topological_order(self):
        order, blocked = self.ordering()
        if blocked:
            raise CycleError(self.find_cycle(blocked[0]) or blocked)
        return order

    def subgraph(self, nodes):
        nodes = set(nodes)
        return FormulationGraph({n: self._edges.get(n, set()) & nodes for n in nodes})


class DependencyIndex:
    """
    Reverse lookup of which formulations must be recalculated when a material
    or a sub-formulation changes.
    """

    def __init__(self):
        self.material_dependents: Dict[int, Set[int]] = defaultdict(set)
        self.formulation_parents: Dict[int, Set[int]] = defaultdict(set)

    @classmethod
    def from_specs(cls, specs):
        index = cls()
        for spec in specs:
            for line in spec.ingredients:
                if line.material_id is not None:
                    index.material_dependents[line.material_id].add(spec.id)
                if line.sub_formulation_id is not None:
                    index.formulation_parents[line.sub_formulation_id].add(spec.id)
        return index

    def _closure(self, seeds):
        affected = set()
        stack = list(seeds)
        while stack:
            node = stack.pop()
            if node in affected:
                continue
            affected.add(node)
            stack.extend(self.formulation_parents.get(node, ()))
        return affected

    def dependents_of_material(self, material_id):
        return self._closure(self.material_dependents.get(material_id, ()))

    def dependents_of_formulation(self, formulation_id):
        affected = self._closure(self.formulation_parents.get(formulation_id, ()))
        affected.discard(formulation_id)
        return affected


# ----------------------------
# Formulation Cost Aggregator
# ----------------------------
class CostCalculator:
    """
    Computes formulation costs from current material prices.

    Sub-formulations are costed once per calculator and reused by every
    formulation that includes them.
    """

    def __init__(self, materials=(), formulations=(), allow_unit_conversion=False):
        self.materials = {m.id: m for m in materials}
        self.formulations = {f.id: f for f in formulations}
        self.allow_unit_conversion = allow_unit_conversion
        self.graph = FormulationGraph.from_specs(self.formulations.values())
        self._results: Dict[int, FormulationCost] = {}
        self._errors: Dict[int, CostError] = {}

    def calculate(self, formulation_id):
        if formulation_id in self._results:
            return self._results[formulation_id]
        if formulation_id in self._errors:
            raise self._errors[formulation_id]
        if formulation_id not in self.formulations:
            raise NotFoundError('formulation', formulation_id)

        scope = self.graph.reachable(formulation_id) | {formulation_id}
        try:
            order = self.graph.subgraph(scope).topological_order()
        except CycleError as exc:
            self._errors[formulation_id] = exc
            raise

        for node in order:
            self._compute(node)
        if formulation_id in self._errors:
            raise self._errors[formulation_id]
        return self._results[formulation_id]

    def unit_cost_of(self, formulation_id):
        return self.calculate(formulation_id).unit_cost

    def _compute(self, formulation_id):
        if formulation_id in self._results or formulation_id in self._errors:
            return
        spec = self.formulations.get(formulation_id)
        if spec is None:
            # Referenced but unknown; the parent reports it as missing
            return
        try:
            self._results[formulation_id] = self._cost(spec)
        except CostError as exc:
            self._errors[formulation_id] = exc

    def _referenced(self, line):
        """Returns (unit_cost, unit) of whatever the ingredient points at"""
        if line.material_id is not None:
            material = self.materials.get(line.material_id)
            if material is None:
                raise NotFoundError('material', line.material_id)
            return material.unit_cost, material.unit

        sub_id = line.sub_formulation_id
        if sub_id in self._errors:
            raise self._errors[sub_id]
        sub = self.formulations.get(sub_id)
        if sub is None or sub_id not in self._results:
            raise NotFoundError('formulation', sub_id)
        return self._results[sub_id].unit_cost, sub.batch_unit

    def contribution(self, line):
        unit_cost, unit = self._referenced(line)
        quantity = to_decimal(line.quantity, 'quantity')
        if line.unit != unit:
            if not self.allow_unit_conversion:
                raise ValidationError(
                    f"Ingredient unit {line.unit} does not match {unit}",
                    field='unit', value=line.unit, expectedUnit=unit, ingredientId=line.id
                )
            quantity = convert_quantity(quantity, line.unit, unit)
        return unit_cost * quantity

    def _cost(self, spec):
        spec.validate()
        total = ZERO
        eligible = ZERO
        contributions = {}
        for position, line in enumerate(spec.ingredients):
            cost = self.contribution(line)
            contributions[line.id if line.id is not None else position] = cost
            total += cost
            if line.include_in_markup:
                eligible += cost

        batch_size = to_decimal(spec.batch_size, 'batchSize')
        suggested, effective, margin = calculate_pricing(eligible, spec.markup_percentage, spec.target_price)
        return FormulationCost(
            formulation_id=spec.id,
            total_cost=total,
            unit_cost=total / batch_size,
            markup_eligible_cost=eligible,
            suggested_price=suggested,
            effective_price=effective,
            profit_margin=margin,
            contributions=contributions,
        )


def calculate_formulation_cost(spec, materials=(), sub_formulations=(), allow_unit_conversion=False):
    calculator = CostCalculator(materials, list(sub_formulations) + [spec], allow_unit_conversion)
    return calculator.calculate(spec.id)


@dataclass
class RefreshResult:
    costs: Dict[int, FormulationCost] = field(default_factory=dict)
    errors: Dict[int, CostError] = field(default_factory=dict)
    order: List[int] = field(default_factory=list)


def refresh_costs(formulations, materials, allow_unit_conversion=False):
    """
    Recompute every formulation from current material prices in one pass.

    Sub-formulations are costed before the formulations that use them. A
    failure is recorded against that formulation (and anything built on it)
    without stopping the rest of the batch.
    """
    formulations = list(formulations)
    calculator = CostCalculator(materials, formulations, allow_unit_conversion)
    order, blocked = calculator.graph.ordering()
    known = set(calculator.formulations)

    result = RefreshResult()
    for formulation_id in order:
        if formulation_id not in known:
            continue
        result.order.append(formulation_id)
        try:
            result.costs[formulation_id] = calculator.calculate(formulation_id)
        except CostError as exc:
            result.errors[formulation_id] = exc

    for formulation_id in blocked:
        cycle = calculator.graph.find_cycle(formulation_id) or [formulation_id]
        result.errors[formulation_id] = CycleError(cycle)

    if result.errors:
        logger.warning("Cost refresh failed for formulations %s", sorted(result.errors))
    logger.info("Refreshed costs for %d formulations", len(result.costs))
    return result
