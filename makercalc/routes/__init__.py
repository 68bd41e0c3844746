from .main import main_blueprint
from .vendors import vendors_blueprint
from .categories import categories_blueprint
from .raw_materials import raw_materials_blueprint
from .formulations import formulations_blueprint
from .files import files_blueprint
from .subscription import subscription_blueprint
from .reports import reports_blueprint
from .import_export import import_export_blueprint
from .admin import admin_blueprint
