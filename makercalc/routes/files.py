import io
import logging
import os
from datetime import datetime
from PIL import Image
from werkzeug.utils import secure_filename
from flask import Blueprint, request, jsonify, current_app, send_from_directory
from flask_babel import gettext as _
from ..models import db, File, FileAttachment, RawMaterial, Formulation, NotFoundError, ValidationError
from ..subscription import FILE_ATTACHMENTS, STORAGE, ensure_can_create
from .utils import (
    log_audit, get_current_user, get_json_body, get_owned_or_404, get_soft_lock_status,
    ensure_can_create_resource, ensure_item_writable, enforce_hard_cap
)

logger = logging.getLogger(__name__)

files_blueprint = Blueprint('files', __name__)

IMAGE_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp'}
DOCUMENT_EXTENSIONS = {'pdf', 'doc', 'docx', 'txt'}
MAX_IMAGE_SIZE = (1024, 1024)
THUMBNAIL_SIZE = (200, 200)

# URL segment or payload value -> (entity_type, model)
ENTITY_TYPES = {
    'material': ('material', RawMaterial),
    'materials': ('material', RawMaterial),
    'raw-materials': ('material', RawMaterial),
    'formulation': ('formulation', Formulation),
    'formulations': ('formulation', Formulation),
}


def file_extension(filename):
    return filename.rsplit('.', 1)[1].lower() if '.' in filename else ''


def resolve_entity(entity_type, entity_id, user_id):
    if entity_type not in ENTITY_TYPES:
        raise ValidationError(_('Files can only be attached to materials or formulations'),
                              field='entityType', value=entity_type)
    normalized, model = ENTITY_TYPES[entity_type]
    if entity_id is None:
        raise ValidationError(_('entityId is required'), field='entityId')
    get_owned_or_404(model, entity_id, user_id, normalized)
    return normalized, int(entity_id)


def save_image(content, filepath, thumbpath):
    """Resize to at most 1024x1024 and write a small thumbnail next to it"""
    img = Image.open(io.BytesIO(content))
    if img.mode in ('RGBA', 'P'):
        img = img.convert('RGB')
    img.thumbnail(MAX_IMAGE_SIZE, Image.Resampling.LANCZOS)
    img.save(filepath, quality=85, optimize=True)

    thumb = img.copy()
    thumb.thumbnail(THUMBNAIL_SIZE, Image.Resampling.LANCZOS)
    thumb.save(thumbpath, quality=80)


# ----------------------------
# Files
# ----------------------------
@files_blueprint.route('/api/files', methods=['GET'])
def list_files():
    user = get_current_user()
    status = get_soft_lock_status(user)
    files = File.query.filter_by(user_id=user.id).order_by(File.uploaded_at.desc()).all()
    return jsonify([f.to_dict(read_only=status.is_read_only(FILE_ATTACHMENTS, f.id)) for f in files])


@files_blueprint.route('/api/files', methods=['POST'])
def upload_file():
    user = get_current_user()
    upload = request.files.get('file')
    if not upload or not upload.filename:
        raise ValidationError(_('No file selected'), field='file')

    extension = file_extension(upload.filename)
    if extension not in IMAGE_EXTENSIONS | DOCUMENT_EXTENSIONS:
        raise ValidationError(_('File type not allowed'), field='file', value=upload.filename)

    content = upload.read()
    size_mb = len(content) / (1024 * 1024)
    status = ensure_can_create_resource(user, FILE_ATTACHMENTS)
    ensure_can_create(status, STORAGE, size_mb)

    entity = None
    if request.form.get('entityType'):
        entity = resolve_entity(request.form.get('entityType'), request.form.get('entityId', type=int), user.id)

    filename = secure_filename(upload.filename)
    timestamp = datetime.now().strftime('%Y%m%d%H%M%S')
    filename = f"{timestamp}_{filename}"

    upload_folder = current_app.config['UPLOAD_FOLDER']
    if not os.path.exists(upload_folder):
        os.makedirs(upload_folder)
    filepath = os.path.join(upload_folder, filename)

    thumbnail_url = None
    if extension in IMAGE_EXTENSIONS:
        thumbname = f"thumb_{filename}"
        try:
            save_image(content, filepath, os.path.join(upload_folder, thumbname))
            thumbnail_url = f"/api/files/raw/{thumbname}"
        except OSError as e:
            # Not a readable image; keep the original bytes
            logger.warning("Image processing failed for %s: %s", filename, e)
            with open(filepath, 'wb') as out:
                out.write(content)
        file_type = 'image'
    else:
        with open(filepath, 'wb') as out:
            out.write(content)
        file_type = 'document'

    record = File(
        user_id=user.id,
        file_name=filename,
        original_name=upload.filename,
        file_url=f"/api/files/raw/{filename}",
        file_type=file_type,
        mime_type=upload.mimetype or 'application/octet-stream',
        file_size=os.path.getsize(filepath),
        thumbnail_url=thumbnail_url,
        description=request.form.get('description')
    )
    db.session.add(record)
    enforce_hard_cap(user, FILE_ATTACHMENTS, status)

    if entity:
        db.session.add(FileAttachment(file_id=record.id, entity_type=entity[0], entity_id=entity[1]))

    log_audit(user.id, 'create', 'file', record.id, f'Uploaded file "{upload.filename}"',
              fileSize=record.file_size)
    db.session.commit()
    return jsonify(record.to_dict()), 201


@files_blueprint.route('/api/files/raw/<path:filename>', methods=['GET'])
def download_file(filename):
    user = get_current_user()
    name = filename[len('thumb_'):] if filename.startswith('thumb_') else filename
    if not File.query.filter_by(user_id=user.id, file_name=name).first():
        raise NotFoundError('file', filename, _('File not found'))
    return send_from_directory(current_app.config['UPLOAD_FOLDER'], filename)


@files_blueprint.route('/api/files/<int:file_id>', methods=['DELETE'])
def delete_file(file_id):
    user = get_current_user()
    record = get_owned_or_404(File, file_id, user.id, 'file')
    ensure_item_writable(user, FILE_ATTACHMENTS, record.id)

    upload_folder = current_app.config['UPLOAD_FOLDER']
    for name in (record.file_name, f"thumb_{record.file_name}"):
        path = os.path.join(upload_folder, name)
        if os.path.exists(path):
            os.remove(path)

    original_name = record.original_name
    db.session.delete(record)
    log_audit(user.id, 'delete', 'file', file_id, f'Deleted file "{original_name}"')
    db.session.commit()
    return jsonify({'success': True})


@files_blueprint.route('/api/files/<int:file_id>/attach', methods=['POST'])
def attach_file(file_id):
    user = get_current_user()
    record = get_owned_or_404(File, file_id, user.id, 'file')
    data = get_json_body()
    entity_type, entity_id = resolve_entity(data.get('entityType'), data.get('entityId'), user.id)

    existing = FileAttachment.query.filter_by(file_id=record.id, entity_type=entity_type, entity_id=entity_id).first()
    if existing:
        raise ValidationError(_('File is already attached to this item'), field='entityId', value=entity_id)

    attachment = FileAttachment(file_id=record.id, entity_type=entity_type, entity_id=entity_id)
    db.session.add(attachment)
    db.session.flush()
    log_audit(user.id, 'update', 'file', record.id,
              f'Attached file "{record.original_name}" to {entity_type} {entity_id}')
    db.session.commit()
    return jsonify(attachment.to_dict()), 201


@files_blueprint.route('/api/files/<int:file_id>/detach', methods=['POST'])
def detach_file(file_id):
    user = get_current_user()
    record = get_owned_or_404(File, file_id, user.id, 'file')
    data = get_json_body()
    entity_type, entity_id = resolve_entity(data.get('entityType'), data.get('entityId'), user.id)

    attachment = FileAttachment.query.filter_by(file_id=record.id, entity_type=entity_type, entity_id=entity_id).first()
    if not attachment:
        raise NotFoundError('attachment', file_id, _('File is not attached to this item'))

    db.session.delete(attachment)
    log_audit(user.id, 'update', 'file', record.id,
              f'Detached file "{record.original_name}" from {entity_type} {entity_id}')
    db.session.commit()
    return jsonify({'success': True})


@files_blueprint.route('/api/<entity_type>/<int:entity_id>/files', methods=['GET'])
def entity_files(entity_type, entity_id):
    user = get_current_user()
    entity_type, entity_id = resolve_entity(entity_type, entity_id, user.id)
    status = get_soft_lock_status(user)
    files = File.query.join(FileAttachment).filter(
        File.user_id == user.id,
        FileAttachment.entity_type == entity_type,
        FileAttachment.entity_id == entity_id
    ).order_by(File.uploaded_at.desc()).all()
    return jsonify([f.to_dict(read_only=status.is_read_only(FILE_ATTACHMENTS, f.id)) for f in files])
