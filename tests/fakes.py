"""
In-memory stand-ins for the Supabase client, Redis and the Stripe adapter.

FakeSupabase implements the slice of the PostgREST query builder the
repositories use, including unique constraints that fail with the same
APIError code Postgres reports (23505).
"""
import copy
import uuid
from datetime import datetime, timedelta, timezone

from postgrest.exceptions import APIError

from app.core.errors import PaymentMethodInvalid
from app.domain.schemas import PaymentMethodSummary

LIVE = {"active", "past_due", "trialing"}

# table -> list of (columns, row predicate or None)
UNIQUE_CONSTRAINTS = {
    "users": [(("id",), None)],
    "subscriptions": [
        (("external_subscription_id",), None),
        (("user_id",), lambda row: row.get("status") in LIVE),
    ],
    "subscription_invoices": [(("subscription_id", "invoice_id"), None)],
    "billing_events": [(("event_id",), None)],
}


def _comparable(value):
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return value


class FakeResult:
    def __init__(self, data, count=None):
        self.data = data
        self.count = count


class FakeQuery:

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.action = "select"
        self.payload = None
        self.filters = []
        self.ordering = None
        self.max_rows = None
        self.count = None

    # ---- actions ---------------------------------------------------------

    def select(self, columns="*", count=None):
        self.action = "select"
        self.count = count
        return self

    def insert(self, data):
        self.action = "insert"
        self.payload = data
        return self

    def update(self, data):
        self.action = "update"
        self.payload = data
        return self

    def delete(self):
        self.action = "delete"
        return self

    # ---- filters ---------------------------------------------------------

    def eq(self, column, value):
        self.filters.append(lambda row: _comparable(row.get(column)) == _comparable(value))
        return self

    def in_(self, column, values):
        wanted = [_comparable(v) for v in values]
        self.filters.append(lambda row: _comparable(row.get(column)) in wanted)
        return self

    def gte(self, column, value):
        self.filters.append(
            lambda row: row.get(column) is not None and _comparable(row.get(column)) >= _comparable(value)
        )
        return self

    def lte(self, column, value):
        self.filters.append(
            lambda row: row.get(column) is not None and _comparable(row.get(column)) <= _comparable(value)
        )
        return self

    def order(self, column, desc=False):
        self.ordering = (column, desc)
        return self

    def limit(self, n):
        self.max_rows = n
        return self

    # ---- execution ---------------------------------------------------------

    def _matching(self):
        return [row for row in self.db.tables.setdefault(self.table, []) if all(f(row) for f in self.filters)]

    def execute(self):
        self.db.calls.append((self.table, self.action))
        if self.db.fail_next:
            error, self.db.fail_next = self.db.fail_next, None
            raise error

        if self.action == "insert":
            return FakeResult([self.db.insert_row(self.table, self.payload)])

        rows = self._matching()
        if self.action == "update":
            for row in rows:
                row.update(copy.deepcopy(self.payload))
            return FakeResult(copy.deepcopy(rows))
        if self.action == "delete":
            table = self.db.tables[self.table]
            self.db.tables[self.table] = [row for row in table if row not in rows]
            return FakeResult(copy.deepcopy(rows))

        if self.ordering:
            column, desc = self.ordering
            present = [r for r in rows if r.get(column) is not None]
            missing = [r for r in rows if r.get(column) is None]
            rows = sorted(present, key=lambda r: _comparable(r[column]), reverse=desc) + missing
        total = len(rows)
        if self.max_rows is not None:
            rows = rows[: self.max_rows]
        return FakeResult(copy.deepcopy(rows), count=total if self.count else None)


class FakeSupabase:

    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_next: Exception | None = None

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def insert_row(self, table: str, data: dict) -> dict:
        row = copy.deepcopy(data)
        if table != "billing_events":
            row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", datetime.now(timezone.utc).isoformat())

        rows = self.tables.setdefault(table, [])
        for columns, predicate in UNIQUE_CONSTRAINTS.get(table, []):
            if predicate is not None and not predicate(row):
                continue
            key = tuple(row.get(c) for c in columns)
            for other in rows:
                if predicate is not None and not predicate(other):
                    continue
                if tuple(other.get(c) for c in columns) == key:
                    raise APIError({
                        "message": f"duplicate key value violates unique constraint on {table}{columns}",
                        "code": "23505",
                        "hint": None,
                        "details": None,
                    })
        rows.append(row)
        return copy.deepcopy(row)

    def rows(self, table: str) -> list[dict]:
        return self.tables.get(table, [])


class FakeRedis:

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl

    def delete(self, key):
        self.ttls.pop(key, None)
        return 1 if self.store.pop(key, None) is not None else 0


def stripe_subscription(
    sub_id: str = "sub_123",
    customer: str = "cus_123",
    status: str = "active",
    price_id: str = "price_monthly",
    interval: str = "month",
    start: datetime | None = None,
    end: datetime | None = None,
    cancel_at_period_end: bool = False,
    client_secret: str | None = None,
) -> dict:
    """A Stripe subscription object as the API (pinned version) returns it."""
    start = start or datetime.now(timezone.utc).replace(microsecond=0) - timedelta(days=1)
    end = end or start + (timedelta(days=365) if interval == "year" else timedelta(days=31))
    latest_invoice = None
    if client_secret:
        latest_invoice = {"id": "in_pending", "payment_intent": {"id": "pi_1", "client_secret": client_secret}}
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_start": int(start.timestamp()),
        "current_period_end": int(end.timestamp()),
        "cancel_at_period_end": cancel_at_period_end,
        "canceled_at": None,
        "ended_at": None,
        "items": {"data": [{"price": {"id": price_id, "recurring": {"interval": interval}}}]},
        "latest_invoice": latest_invoice,
    }


class FakeProcessor:
    """Records calls and returns canned Stripe objects."""

    def __init__(self, status: str = "active", client_secret: str | None = None):
        self.status = status
        self.client_secret = client_secret
        self.calls: list[tuple] = []
        self.create_error: Exception | None = None
        self.retrieve_status: str | None = None
        self.sub_id = "sub_123"

    def create_customer(self, user_id, email):
        self.calls.append(("create_customer", user_id))
        return f"cus_{user_id}"

    def attach_payment_method(self, customer_id, payment_method_id):
        self.calls.append(("attach_payment_method", customer_id, payment_method_id))
        if payment_method_id == "pm_card_declined":
            raise PaymentMethodInvalid()
        return PaymentMethodSummary(brand="visa", last4="4242", exp_month=12, exp_year=2030)

    def create_subscription(self, customer_id, price_id, idempotency_key):
        self.calls.append(("create_subscription", customer_id, price_id, idempotency_key))
        if self.create_error is not None:
            raise self.create_error
        interval = "year" if price_id == "price_annual" else "month"
        return stripe_subscription(
            sub_id=self.sub_id,
            customer=customer_id,
            status=self.status,
            price_id=price_id,
            interval=interval,
            client_secret=self.client_secret,
        )

    def retrieve_subscription(self, external_subscription_id):
        self.calls.append(("retrieve_subscription", external_subscription_id))
        status = self.retrieve_status or self.status
        return stripe_subscription(
            sub_id=external_subscription_id,
            status=status,
            client_secret=self.client_secret if status == "incomplete" else None,
        )

    def cancel_at_period_end(self, external_subscription_id, idempotency_key):
        self.calls.append(("cancel_at_period_end", external_subscription_id, idempotency_key))
        return {"id": external_subscription_id, "cancel_at_period_end": True}

    def create_portal_session(self, customer_id, return_url):
        self.calls.append(("create_portal_session", customer_id, return_url))
        return f"https://billing.stripe.com/p/session/{customer_id}"
