"""
Recompute stored formulation costs from current material prices.

Usage:
    python scripts/refresh_costs.py            # every user
    python scripts/refresh_costs.py --user 3   # one user
"""
import argparse
import sys
import os

# Add parent directory to path to allow importing makercalc
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from makercalc import create_app, db
from makercalc.models import User
from makercalc.routes.utils import recalculate_formulations

app = create_app()


def refresh(user_id=None):
    with app.app_context():
        query = User.query.order_by(User.id)
        if user_id is not None:
            query = query.filter_by(id=user_id)
        users = query.all()
        if not users:
            print("No matching users.")
            return 1

        failures = 0
        for user in users:
            result = recalculate_formulations(user.id)
            print(f"User {user.id} ({user.username}): {len(result.costs)} updated, {len(result.errors)} failed")
            for formulation_id, error in sorted(result.errors.items()):
                print(f"  -> Formulation {formulation_id}: {error.message}")
            failures += len(result.errors)
        db.session.commit()

    print("Cost refresh complete.")
    return 1 if failures else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Refresh formulation costs")
    parser.add_argument('--user', type=int, default=None, help="Only refresh this user id")
    args = parser.parse_args()
    sys.exit(refresh(args.user))
