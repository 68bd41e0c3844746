import sys
import os

# Add parent directory to path to allow importing makercalc
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from makercalc import create_app, db
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

app = create_app()


def add_indexes():
    print("Starting database index optimization...")

    indexes = [
        # Ingredient lookups for dependency recalculation
        "CREATE INDEX IF NOT EXISTS idx_ingredient_material ON formulation_ingredient (material_id);",
        "CREATE INDEX IF NOT EXISTS idx_ingredient_sub_formulation ON formulation_ingredient (sub_formulation_id);",

        # Soft-lock ordering (oldest first per user)
        "CREATE INDEX IF NOT EXISTS idx_material_user_created ON raw_material (user_id, created_at, id);",
        "CREATE INDEX IF NOT EXISTS idx_formulation_user_created ON formulation (user_id, created_at, id);",
        "CREATE INDEX IF NOT EXISTS idx_file_user_uploaded ON file (user_id, uploaded_at, id);",

        # Recent activity
        "CREATE INDEX IF NOT EXISTS idx_audit_user_ts ON audit_log (user_id, timestamp);",
        "CREATE INDEX IF NOT EXISTS idx_attachment_entity ON file_attachment (entity_type, entity_id);"
    ]

    with app.app_context():
        for sql in indexes:
            try:
                print(f"Executing: {sql}")
                db.session.execute(text(sql))
                db.session.commit()
                print("  -> Success")
            except SQLAlchemyError as e:
                db.session.rollback()
                print(f"  -> Skipped/Failed: {e}")

    print("Index optimization complete.")


if __name__ == "__main__":
    add_indexes()
