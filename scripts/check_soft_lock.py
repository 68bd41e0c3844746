import sys
import os

# Add parent directory to path to allow importing makercalc
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from makercalc import create_app
from makercalc.models import User
from makercalc.subscription import LOCKABLE_RESOURCES, STORAGE
from makercalc.routes.utils import get_soft_lock_status

app = create_app()


def check_soft_lock():
    print("Checking plan usage for all users...")
    with app.app_context():
        for user in User.query.order_by(User.id).all():
            status = get_soft_lock_status(user)
            print(f"\nUser {user.id} ({user.username}) - plan: {status.plan}")
            for resource in LOCKABLE_RESOURCES + (STORAGE,):
                limit = status.limits.limit_for(resource)
                usage = status.usage.get(resource)
                flag = " OVER LIMIT" if status.soft_lock[resource] else ""
                print(f"  {resource:16} {usage}/{'unlimited' if limit < 0 else limit}{flag}")
                read_only = status.over_limit_ids.get(resource)
                if read_only:
                    print(f"    read-only ids: {read_only}")


if __name__ == "__main__":
    check_soft_lock()
