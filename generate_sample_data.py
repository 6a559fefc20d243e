import random
from datetime import date, timedelta

from minflow import create_app
from minflow.api import ApiError
from minflow.auth_store import SessionStore
from minflow.extraction import submit_drafts

DEMO_EMAIL = "demo@example.com"
DEMO_PASSWORD = "demo123"
SAMPLE_NAMES = ["Groceries", "Fuel", "Electricity bill", "Coffee", "Movie tickets", "Pharmacy", "Taxi", "Internet"]


def main():
    app = create_app()
    store = SessionStore({}, api=app.build_api_client())
    try:
        store.login(DEMO_EMAIL, DEMO_PASSWORD)
    except ApiError:
        store.signup(DEMO_EMAIL, DEMO_PASSWORD, "Demo User")

    api = app.build_api_client(store.token)
    category_ids = [category["id"] for category in api.list_categories()]
    if not category_ids:
        category_ids = [api.create_category("Other")["id"]]

    start = date.today() - timedelta(days=90)
    drafts = []
    for i in range(40):
        drafts.append({
            "name": random.choice(SAMPLE_NAMES),
            "category_id": random.choice(category_ids),
            "unit": random.randint(1, 3),
            "per_unit_cost": round(random.uniform(5, 200), 2),
            "expense_date": (start + timedelta(days=i * 2)).isoformat(),
        })

    result = submit_drafts(api, drafts)
    print(f"Sample data generated: {result['success_count']} added, {result['error_count']} failed.")
    print(f"Login with {DEMO_EMAIL} / {DEMO_PASSWORD}")


if __name__ == "__main__":
    main()
