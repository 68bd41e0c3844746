import io
import logging
from datetime import datetime
from decimal import Decimal
import pandas as pd
from flask import Blueprint, request, jsonify, send_file
from flask_babel import gettext as _
from ..models import db, RawMaterial, MaterialCategory, Vendor, UNITS, CostError, ValidationError
from ..costing import calculate_unit_cost, to_decimal
from ..subscription import MATERIALS, is_unlimited
from .utils import (
    log_audit, get_current_user, get_soft_lock_status, sync_material_unit_cost,
    recalculate_formulations, failed_formulations, dependency_index, UNIT_COST_PLACES
)

logger = logging.getLogger(__name__)

import_export_blueprint = Blueprint('import_export', __name__)

COLUMNS = ['Name', 'SKU', 'Category', 'Vendor', 'Total Cost', 'Quantity', 'Unit', 'Unit Cost', 'Notes']
REQUIRED_COLUMNS = ['Name', 'Total Cost', 'Quantity', 'Unit']
EXCEL_MIMETYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'


def cell(row, column):
    """Stripped string value or None for blanks and missing columns"""
    if column not in row.index or pd.isna(row[column]):
        return None
    value = str(row[column]).strip()
    return value or None


def read_upload(upload):
    filename = upload.filename.lower()
    if filename.endswith('.csv'):
        return pd.read_csv(upload.stream)
    if filename.endswith(('.xlsx', '.xls')):
        return pd.read_excel(upload.stream)
    raise ValidationError(_('Upload a .csv or .xlsx file'), field='file', value=upload.filename)


# ----------------------------
# Export
# ----------------------------
@import_export_blueprint.route('/api/raw-materials/export', methods=['GET'])
def export_materials():
    user = get_current_user()
    export_format = request.args.get('format', 'csv').lower()
    if export_format not in ('csv', 'xlsx'):
        raise ValidationError(_('format must be csv or xlsx'), field='format', value=export_format)

    materials = RawMaterial.query.filter_by(user_id=user.id).order_by(RawMaterial.name).all()
    rows = []
    for m in materials:
        rows.append({
            'Name': m.name,
            'SKU': m.sku,
            'Category': m.category.name if m.category else None,
            'Vendor': m.vendor.name if m.vendor else None,
            'Total Cost': float(m.total_cost),
            'Quantity': float(m.quantity),
            'Unit': m.unit,
            'Unit Cost': float(Decimal(m.unit_cost).quantize(Decimal("0.0001"))),
            'Notes': m.notes,
        })
    df = pd.DataFrame(rows, columns=COLUMNS)

    mem = io.BytesIO()
    stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    if export_format == 'xlsx':
        df.to_excel(mem, index=False, sheet_name='Materials', engine='openpyxl')
        mimetype = EXCEL_MIMETYPE
    else:
        mem.write(df.to_csv(index=False).encode('utf-8'))
        mimetype = 'text/csv'
    mem.seek(0)

    return send_file(
        mem,
        as_attachment=True,
        download_name=f"materials_{stamp}.{export_format}",
        mimetype=mimetype
    )


# ----------------------------
# Import
# ----------------------------
@import_export_blueprint.route('/api/raw-materials/import', methods=['POST'])
def import_materials():
    """
    Create or update materials from a spreadsheet.

    Rows are matched to existing materials by name. New rows past the plan
    limit and rows for read-only materials are skipped and reported.
    """
    user = get_current_user()
    upload = request.files.get('file')
    if not upload or not upload.filename:
        raise ValidationError(_('No file selected'), field='file')

    df = read_upload(upload)
    df.columns = df.columns.str.strip()
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValidationError(_('Missing columns: %(columns)s', columns=', '.join(missing)), field='file')

    status = get_soft_lock_status(user)
    limit = status.limits.limit_for(MATERIALS)
    remaining = None if is_unlimited(limit) else max(limit - status.usage.materials, 0)

    categories = {c.name: c for c in MaterialCategory.query.filter_by(user_id=user.id).all()}
    vendors = {v.name: v for v in Vendor.query.filter_by(user_id=user.id).all()}
    existing = {m.name: m for m in RawMaterial.query.filter_by(user_id=user.id).all()}

    created, updated, skipped, errors = [], [], [], []
    changed_materials = []
    for index, row in df.iterrows():
        row_number = int(index) + 2  # header is row 1
        name = cell(row, 'Name')
        if not name:
            continue
        try:
            total_cost = to_decimal(cell(row, 'Total Cost'), 'totalCost')
            quantity = to_decimal(cell(row, 'Quantity'), 'quantity')
            unit = cell(row, 'Unit')
            if unit not in UNITS:
                raise ValidationError(f"unit must be one of {', '.join(UNITS)}", field='unit', value=unit)
            unit_cost = calculate_unit_cost(total_cost, quantity)
        except CostError as e:
            errors.append({'row': row_number, 'name': name, 'error': e.message})
            continue

        category = categories.get(cell(row, 'Category'))
        vendor = vendors.get(cell(row, 'Vendor'))
        material = existing.get(name)

        if material is not None:
            if status.is_read_only(MATERIALS, material.id):
                skipped.append({'row': row_number, 'name': name, 'reason': 'readOnly'})
                continue
            material.total_cost = total_cost
            material.quantity = quantity
            material.unit = unit
            material.sku = cell(row, 'SKU') or material.sku
            material.notes = cell(row, 'Notes') or material.notes
            if category:
                material.category_id = category.id
            if vendor:
                material.vendor_id = vendor.id
            sync_material_unit_cost(material)
            changed_materials.append(material)
            updated.append(name)
            continue

        if remaining is not None and remaining <= 0:
            skipped.append({'row': row_number, 'name': name, 'reason': 'quota'})
            continue

        material = RawMaterial(
            name=name,
            sku=cell(row, 'SKU'),
            category_id=category.id if category else None,
            vendor_id=vendor.id if vendor else None,
            total_cost=total_cost,
            quantity=quantity,
            unit=unit,
            unit_cost=unit_cost.quantize(UNIT_COST_PLACES),
            notes=cell(row, 'Notes'),
            user_id=user.id
        )
        db.session.add(material)
        existing[name] = material
        created.append(name)
        if remaining is not None:
            remaining -= 1

    db.session.flush()
    affected, failed = set(), []
    if changed_materials:
        dependents = dependency_index(user.id)
        for material in changed_materials:
            affected |= dependents.dependents_of_material(material.id)
        if affected:
            failed = failed_formulations(recalculate_formulations(user.id, affected), affected)

    log_audit(
        user.id, 'import', 'material', 0,
        f'Imported materials from "{upload.filename}": {len(created)} created, {len(updated)} updated, '
        f'{len(skipped)} skipped',
        errors=len(errors)
    )
    db.session.commit()
    if skipped:
        logger.warning("Import for user %s skipped %d rows", user.id, len(skipped))

    return jsonify({
        'created': created,
        'updated': updated,
        'skipped': skipped,
        'errors': errors,
        'affectedFormulations': sorted(affected),
        'failedFormulations': failed,
    })
