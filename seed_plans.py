"""
Script to load the subscription plan catalog into subscription_plans.
Existing plans are updated in place, so it is safe to run after every deploy.
Set DEFAULT_PLAN_ID to one of these ids when more than one plan is active.
"""
from divebilling.database import Base, SessionLocal, engine
from divebilling.models import SubscriptionPlan

PLANS = [
    {
        "id": "instructor-monthly",
        "name": "Instructor Mensual",
        "description": "Student tracking, dive logs and reports for independent instructors.",
        "price": 49900,
        "interval_days": 30,
    },
    {
        "id": "center-monthly",
        "name": "Centro de Buceo Mensual",
        "description": "Everything in the instructor plan for a whole diving center staff.",
        "price": 149900,
        "interval_days": 30,
    },
]


def seed_plans():
    """Insert or refresh the plans above."""
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        for values in PLANS:
            plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.id == values["id"]).first()
            if plan:
                for key, value in values.items():
                    setattr(plan, key, value)
                print(f"🔄 Updated plan {values['id']} ({values['price']} COP / {values['interval_days']} days)")
            else:
                db.add(SubscriptionPlan(active=True, **values))
                print(f"✅ Added plan {values['id']} ({values['price']} COP / {values['interval_days']} days)")

        db.commit()
        print(f"✅ Plan catalog ready: {len(PLANS)} plans")

    except Exception as e:
        db.rollback()
        print(f"❌ Error seeding plans: {str(e)}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed_plans()
