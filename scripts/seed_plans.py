"""Seed the plan catalog.

    python -m scripts.seed_plans               # DB only
    python -m scripts.seed_plans --with-stripe # also create catalog prices in Stripe

Idempotent: rows are upserted by plan id, Stripe prices are reused when a
matching active price already exists.
"""

import argparse

import stripe

from bms_billing.billing.catalog import PlanCatalog, PlanCatalogEntry
from bms_billing.billing.errors import PlanNotFoundError
from bms_billing.core.db import run_migrations, session_scope
from config.settings import get_settings

PLANS_DEF = [
    {
        "plan_id": "starter",
        "plan_key": "starter",
        "name": "Starter",
        "monthly_price_cents": 2900,
        "trial_days": 14,
        "branch_limit": 1,
        "staff_limit": 3,
    },
    {
        "plan_id": "growth",
        "plan_key": "growth",
        "name": "Growth",
        "monthly_price_cents": 5900,
        "trial_days": 14,
        "branch_limit": 3,
        "staff_limit": 10,
    },
    {
        "plan_id": "pro",
        "plan_key": "pro",
        "name": "Pro",
        "monthly_price_cents": 9900,
        "trial_days": 0,
        "branch_limit": -1,
        "staff_limit": -1,
    },
]


def ensure_stripe_price(p_def: dict, currency: str, interval_days: int) -> str:
    existing = stripe.Price.search(query=f"active:'true' AND metadata['plan_id']:'{p_def['plan_id']}'")
    for price in existing["data"]:
        recurring = price.get("recurring") or {}
        if (
            price["unit_amount"] == p_def["monthly_price_cents"]
            and recurring.get("interval") == "day"
            and recurring.get("interval_count") == interval_days
        ):
            print(f"  > Found existing price: {price['id']}")
            return price["id"]
    price = stripe.Price.create(
        currency=currency,
        unit_amount=p_def["monthly_price_cents"],
        recurring={"interval": "day", "interval_count": interval_days},
        product_data={"name": f"BMS {p_def['name']}", "metadata": {"plan_id": p_def["plan_id"]}},
        metadata={"plan_id": p_def["plan_id"], "plan_key": p_def["plan_key"]},
    )
    print(f"  > Created price: {price['id']}")
    return price["id"]


def seed_plans(with_stripe: bool = False) -> None:
    settings = get_settings()
    if with_stripe:
        stripe.api_key = settings.stripe_secret_key
    run_migrations()
    catalog = PlanCatalog()

    print("--- Seeding plan catalog ---")
    with session_scope() as db:
        for p_def in PLANS_DEF:
            print(f"Processing plan: {p_def['name']}...")
            price_id = None
            if with_stripe and p_def["monthly_price_cents"] > 0:
                price_id = ensure_stripe_price(p_def, settings.billing_currency, settings.billing_interval_days)
            else:
                try:
                    price_id = catalog.get_plan_by_id(db, p_def["plan_id"]).price_id
                except PlanNotFoundError:
                    pass
            catalog.upsert(db, PlanCatalogEntry(price_id=price_id, **p_def))
            print(f"  > Synced to DB: {p_def['plan_id']}")
    print("--- Done ---")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--with-stripe", action="store_true")
    seed_plans(parser.parse_args().with_stripe)
