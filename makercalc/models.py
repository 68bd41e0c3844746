from datetime import datetime
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

# Units a material or batch can be measured in
UNITS = ("kg", "g", "L", "ml", "oz", "lb", "pcs")


# ----------------------------
# Custom exceptions
# ----------------------------
class MakerCalcError(Exception):
    """Base class for errors that are reported back to the API caller"""
    status_code = 400
    error = "Bad request"

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {'error': self.error, 'message': self.message}
        payload.update(self.details)
        return payload


class CostError(MakerCalcError):
    """An error that fails the cost calculation of a single formulation"""
    pass


class ValidationError(CostError):
    error = "Validation failed"

    def __init__(self, message, field=None, value=None, **details):
        if field is not None:
            details['field'] = field
        if value is not None:
            details['value'] = str(value)
        super().__init__(message, **details)


class NotFoundError(CostError):
    status_code = 404
    error = "Not found"

    def __init__(self, entity_type, entity_id, message=None):
        super().__init__(
            message or f"{entity_type} {entity_id} not found",
            entityType=entity_type,
            entityId=entity_id,
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class CycleError(CostError):
    error = "Circular formulation reference"

    def __init__(self, cycle, message=None):
        cycle = list(cycle)
        path = " -> ".join(str(node) for node in cycle)
        super().__init__(message or f"Sub-formulation references form a cycle: {path}", cycle=cycle)
        self.cycle = cycle


class QuotaExceededError(MakerCalcError):
    status_code = 403
    error = "Plan limit reached"

    def __init__(self, resource, plan, current, limit, message=None):
        super().__init__(
            message or f"Your {plan} plan allows up to {limit} {resource}. Upgrade to add more.",
            resource=resource,
            plan=plan,
            currentCount=current,
            maxAllowed=limit,
            upgradeUrl='/subscription',
            softLock=True,
        )
        self.resource = resource
        self.plan = plan
        self.current = current
        self.limit = limit


class ReadOnlyError(MakerCalcError):
    status_code = 403
    error = "Item is read-only"

    def __init__(self, resource, item_id, plan=None, message=None):
        super().__init__(
            message or (f"This {resource.rstrip('s')} is read-only due to your current plan limits. "
                        f"Upgrade your plan to edit this item or remove other items to stay within limits."),
            resource=resource,
            itemId=item_id,
            plan=plan,
            upgradeUrl='/subscription',
            softLock=True,
            readOnly=True,
        )
        self.resource = resource
        self.item_id = item_id


def _money(value):
    return f"{value:.2f}" if value is not None else None


def _iso(value):
    return value.isoformat() if value else None


# ----------------------------
# Models
# ----------------------------
class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(100), unique=True, nullable=False)
    email = db.Column(db.String(200), unique=True, nullable=False)
    company = db.Column(db.String(200), nullable=True)
    role = db.Column(db.String(20), nullable=False, default='user')  # 'admin' or 'user'
    subscription_status = db.Column(db.String(20), nullable=False, default='none')
    subscription_plan = db.Column(db.String(20), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @property
    def plan(self):
        return self.subscription_plan or 'free'

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'company': self.company,
            'role': self.role,
            'subscriptionStatus': self.subscription_status,
            'subscriptionPlan': self.plan,
            'createdAt': _iso(self.created_at)
        }


class Vendor(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    contact_email = db.Column(db.String(200), nullable=True)
    contact_phone = db.Column(db.String(50), nullable=True)
    address = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'contactEmail': self.contact_email,
            'contactPhone': self.contact_phone,
            'address': self.address,
            'notes': self.notes,
            'userId': self.user_id,
            'createdAt': _iso(self.created_at)
        }


class MaterialCategory(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    color = db.Column(db.String(20), nullable=False, default='#3b82f6')
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'color': self.color,
            'userId': self.user_id,
            'createdAt': _iso(self.created_at)
        }


class RawMaterial(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    sku = db.Column(db.String(100), nullable=True)
    category_id = db.Column(db.Integer, db.ForeignKey('material_category.id'), nullable=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey('vendor.id'), nullable=True)
    total_cost = db.Column(db.Numeric(10, 2), nullable=False)
    quantity = db.Column(db.Numeric(10, 3), nullable=False)
    unit = db.Column(db.String(10), nullable=False)
    # Cached total_cost / quantity; cost calculations re-derive it from the source fields
    unit_cost = db.Column(db.Numeric(18, 8), nullable=False, default=0)
    notes = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    category = db.relationship('MaterialCategory', backref=db.backref('raw_materials', lazy=True))
    vendor = db.relationship('Vendor', backref=db.backref('raw_materials', lazy=True))

    def to_dict(self, read_only=False):
        from .costing import display_unit_cost
        return {
            'id': self.id,
            'name': self.name,
            'sku': self.sku,
            'categoryId': self.category_id,
            'categoryName': self.category.name if self.category else None,
            'vendorId': self.vendor_id,
            'vendorName': self.vendor.name if self.vendor else None,
            'totalCost': _money(self.total_cost),
            'quantity': str(self.quantity),
            'unit': self.unit,
            'unitCost': display_unit_cost(self.unit_cost or 0),
            'notes': self.notes,
            'isActive': self.is_active,
            'userId': self.user_id,
            'readOnly': read_only,
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at)
        }


class Formulation(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)
    batch_size = db.Column(db.Numeric(10, 3), nullable=False)
    batch_unit = db.Column(db.String(10), nullable=False)
    target_price = db.Column(db.Numeric(10, 2), nullable=True)
    markup_percentage = db.Column(db.Numeric(6, 2), nullable=False, default=30)
    total_cost = db.Column(db.Numeric(14, 4), nullable=False, default=0)
    unit_cost = db.Column(db.Numeric(18, 8), nullable=False, default=0)
    profit_margin = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    is_active = db.Column(db.Boolean, default=True, nullable=False)  # False = archived
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    ingredients = db.relationship(
        'FormulationIngredient',
        backref='formulation',
        foreign_keys='FormulationIngredient.formulation_id',
        cascade='all, delete-orphan',
        order_by='FormulationIngredient.id'
    )

    def to_dict(self, read_only=False, include_ingredients=False):
        from .costing import display_unit_cost
        data = {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'batchSize': str(self.batch_size),
            'batchUnit': self.batch_unit,
            'targetPrice': _money(self.target_price),
            'markupPercentage': _money(self.markup_percentage),
            'totalCost': _money(self.total_cost),
            'unitCost': display_unit_cost(self.unit_cost or 0),
            'profitMargin': _money(self.profit_margin),
            'isActive': self.is_active,
            'userId': self.user_id,
            'readOnly': read_only,
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at)
        }
        if include_ingredients:
            data['ingredients'] = [i.to_dict() for i in self.ingredients]
        return data


class FormulationIngredient(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    formulation_id = db.Column(db.Integer, db.ForeignKey('formulation.id', ondelete='CASCADE'), nullable=False, index=True)
    material_id = db.Column(db.Integer, db.ForeignKey('raw_material.id', ondelete='SET NULL'), nullable=True, index=True)
    sub_formulation_id = db.Column(db.Integer, db.ForeignKey('formulation.id', ondelete='SET NULL'), nullable=True, index=True)
    quantity = db.Column(db.Numeric(10, 3), nullable=False)
    unit = db.Column(db.String(10), nullable=False)
    cost_contribution = db.Column(db.Numeric(14, 4), nullable=False, default=0)
    include_in_markup = db.Column(db.Boolean, default=True, nullable=False)
    notes = db.Column(db.Text, nullable=True)

    material = db.relationship('RawMaterial')
    sub_formulation = db.relationship('Formulation', foreign_keys=[sub_formulation_id])

    def to_dict(self):
        return {
            'id': self.id,
            'formulationId': self.formulation_id,
            'materialId': self.material_id,
            'materialName': self.material.name if self.material else None,
            'subFormulationId': self.sub_formulation_id,
            'subFormulationName': self.sub_formulation.name if self.sub_formulation else None,
            'quantity': str(self.quantity),
            'unit': self.unit,
            'costContribution': f"{self.cost_contribution or 0:.4f}",
            'includeInMarkup': self.include_in_markup,
            'notes': self.notes
        }


class File(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    file_name = db.Column(db.String(255), nullable=False)
    original_name = db.Column(db.String(255), nullable=False)
    file_url = db.Column(db.String(500), nullable=False)
    file_type = db.Column(db.String(50), nullable=False)  # 'image', 'document', ...
    mime_type = db.Column(db.String(100), nullable=False)
    file_size = db.Column(db.Integer, nullable=False)  # bytes
    thumbnail_url = db.Column(db.String(500), nullable=True)
    description = db.Column(db.Text, nullable=True)
    uploaded_at = db.Column(db.DateTime, default=datetime.utcnow)

    attachments = db.relationship('FileAttachment', backref='file', cascade='all, delete-orphan')

    @property
    def created_at(self):
        return self.uploaded_at

    def to_dict(self, read_only=False):
        return {
            'id': self.id,
            'userId': self.user_id,
            'fileName': self.file_name,
            'originalName': self.original_name,
            'fileUrl': self.file_url,
            'fileType': self.file_type,
            'mimeType': self.mime_type,
            'fileSize': self.file_size,
            'thumbnailUrl': self.thumbnail_url,
            'description': self.description,
            'readOnly': read_only,
            'uploadedAt': _iso(self.uploaded_at)
        }


class FileAttachment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    file_id = db.Column(db.Integer, db.ForeignKey('file.id', ondelete='CASCADE'), nullable=False)
    entity_type = db.Column(db.String(20), nullable=False)  # 'material' or 'formulation'
    entity_id = db.Column(db.Integer, nullable=False)
    attached_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (db.UniqueConstraint('file_id', 'entity_type', 'entity_id'),)

    def to_dict(self):
        return {
            'id': self.id,
            'fileId': self.file_id,
            'entityType': self.entity_type,
            'entityId': self.entity_id,
            'attachedAt': _iso(self.attached_at)
        }


class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    action = db.Column(db.String(20), nullable=False)  # 'create', 'update', 'delete'
    entity_type = db.Column(db.String(50), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)
    changes = db.Column(db.Text, nullable=True)  # JSON with description and data
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'action': self.action,
            'entityType': self.entity_type,
            'entityId': self.entity_id,
            'changes': self.changes,
            'timestamp': _iso(self.timestamp)
        }
