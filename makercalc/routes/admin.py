import json
import io
from datetime import datetime
from flask import Blueprint, send_file
from ..models import (
    db, Vendor, MaterialCategory, RawMaterial, Formulation, FormulationIngredient, File, FileAttachment,
    AuditLog
)
from .utils import log_audit, get_current_user

admin_blueprint = Blueprint('admin', __name__)


@admin_blueprint.route('/api/admin/backup', methods=['GET'])
def backup_db():
    """Backup of everything the current user owns, ordered so parents come first"""
    user = get_current_user()

    vendors = Vendor.query.filter_by(user_id=user.id).all()
    categories = MaterialCategory.query.filter_by(user_id=user.id).all()
    materials = RawMaterial.query.filter_by(user_id=user.id).all()
    formulations = Formulation.query.filter_by(user_id=user.id).all()
    ingredients = FormulationIngredient.query.join(
        Formulation, FormulationIngredient.formulation_id == Formulation.id
    ).filter(Formulation.user_id == user.id).all()
    files = File.query.filter_by(user_id=user.id).all()
    attachments = FileAttachment.query.join(File).filter(File.user_id == user.id).all()
    audit_logs = AuditLog.query.filter_by(user_id=user.id).order_by(AuditLog.timestamp).all()

    model_counts = {
        'vendors': len(vendors),
        'material_categories': len(categories),
        'raw_materials': len(materials),
        'formulations': len(formulations),
        'formulation_ingredients': len(ingredients),
        'files': len(files),
        'file_attachments': len(attachments),
        'audit_logs': len(audit_logs),
    }
    total_records = sum(model_counts.values())

    data = {
        'version': '1.0',
        'timestamp': datetime.now().isoformat(),
        'database_type': 'postgresql' if 'postgresql' in str(db.engine.url) else 'sqlite',
        'user': user.to_dict(),

        # Level 0 - No dependencies
        'vendors': [v.to_dict() for v in vendors],
        'material_categories': [c.to_dict() for c in categories],

        # Level 1 - Materials and formulations
        'raw_materials': [m.to_dict() for m in materials],
        'formulations': [f.to_dict() for f in formulations],

        # Level 2 - Links
        'formulation_ingredients': [i.to_dict() for i in ingredients],
        'files': [f.to_dict() for f in files],
        'file_attachments': [a.to_dict() for a in attachments],
        'audit_logs': [a.to_dict() for a in audit_logs],

        'statistics': {
            'total_records': total_records,
            'model_counts': model_counts,
        }
    }

    json_str = json.dumps(data, indent=4, ensure_ascii=False)
    mem = io.BytesIO()
    mem.write(json_str.encode('utf-8'))
    mem.seek(0)

    filename = f"makercalc_backup_{datetime.now().strftime('%Y%m%d_%H%M%S')}.json"

    log_audit(user.id, 'backup', 'user', user.id, f"Backup created with {total_records} records")
    db.session.commit()

    return send_file(
        mem,
        as_attachment=True,
        download_name=filename,
        mimetype='application/json'
    )
