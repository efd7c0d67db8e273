# services/context_builder.py

from datetime import datetime
from decimal import Decimal

from db.models import Order, OrderStatus
from services.criteria import EvaluationContext


class EvaluationContextBuilder:
    def __init__(self, db):
        self.db = db

    def build_context(self, user, now=None) -> EvaluationContext:
        now = now or datetime.utcnow()

        completed_orders = self.db.query(Order)\
            .filter(Order.user_id == user.id, Order.status == OrderStatus.COMPLETED)\
            .all()

        # Calendar month of `now`, not a rolling 30-day window
        monthly_value = sum(
            (Decimal(order.effective_amount) for order in completed_orders
             if order.created_at.year == now.year and order.created_at.month == now.month),
            Decimal("0"),
        )

        return EvaluationContext(
            user_id=user.id,
            total_order_count=len(completed_orders),
            monthly_order_value=monthly_value,
            cohort=user.cohort,
        )
