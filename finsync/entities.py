"""
Entity registry for finsync.

One EntityKind per synced collection. The local store, the REST client,
the Supabase adapter and the reconciler all read table names, resource
paths, foreign keys and column allow-lists from here.
"""

import re
from dataclasses import dataclass


class UnknownEntityError(ValueError):
    """Raised when a name does not match any registered entity kind."""
    pass


class Remote:
    """Remote backends a local record can be synced to."""
    API = "api"
    SUPABASE = "supabase"

    ALL = (API, SUPABASE)


# Local column / record field holding each remote's identifier
REMOTE_COLUMNS = {
    Remote.API: "remote_id",
    Remote.SUPABASE: "supabase_id",
}
REMOTE_FIELDS = {
    Remote.API: "remoteId",
    Remote.SUPABASE: "supabaseId",
}

# Fields that only ever live in the local store
BOOKKEEPING_FIELDS = frozenset({
    "id", "remoteId", "supabaseId", "_shadow", "_id", "__v",
    "mongoId", "supabase_id", "userId", "user_id",
})


@dataclass(frozen=True)
class EntityKind:
    name: str                   # local table name
    entity: str                 # singular alias used by the UI layer
    export_key: str             # key in the migration payload
    api_path: str               # REST resource path
    table: str                  # Supabase table
    allowed_fields: tuple       # Supabase columns (snake_case)
    foreign_keys: tuple = ()    # ((field, referenced kind name), ...)

    @property
    def fk_map(self) -> dict:
        return dict(self.foreign_keys)


_TIMESTAMPS = ("created_at", "updated_at")

# Ordered so that referenced kinds come before the kinds that point at them
KINDS = (
    EntityKind(
        name="lists", entity="list", export_key="lists",
        api_path="/api/lists", table="lists",
        allowed_fields=("id", "user_id", "name", "color") + _TIMESTAMPS,
    ),
    EntityKind(
        name="clients", entity="client", export_key="clients",
        api_path="/api/clients", table="clients",
        allowed_fields=(
            "id", "user_id", "name", "email", "payment_model", "currency",
            "rating", "risk_level", "status",
        ) + _TIMESTAMPS,
    ),
    EntityKind(
        name="savings", entity="saving", export_key="savings",
        api_path="/api/savings", table="savings",
        allowed_fields=(
            "id", "user_id", "name", "type", "currency", "initial_amount",
            "current_amount", "target_amount", "target_date", "interest_rate",
            "maturity_date", "start_date", "quantity", "price_per_unit", "notes",
        ) + _TIMESTAMPS,
    ),
    EntityKind(
        name="income", entity="income", export_key="income",
        api_path="/api/income", table="income",
        allowed_fields=(
            "id", "user_id", "client_id", "amount", "currency",
            "payment_method", "received_date", "is_deposit",
            "is_fixed_portion_only", "tax_category", "is_taxable", "tax_rate",
        ) + _TIMESTAMPS,
        foreign_keys=(("clientId", "clients"),),
    ),
    EntityKind(
        name="expenses", entity="expense", export_key="expenses",
        api_path="/api/expenses", table="expenses",
        allowed_fields=(
            "id", "user_id", "client_id", "amount", "currency", "category",
            "date", "description", "is_recurring", "parent_recurring_id",
            "tax_category", "is_tax_deductible", "tax_rate",
        ) + _TIMESTAMPS,
        foreign_keys=(("clientId", "clients"), ("parentRecurringId", "expenses")),
    ),
    EntityKind(
        name="debts", entity="debt", export_key="debts",
        api_path="/api/debts", table="debts",
        allowed_fields=(
            "id", "user_id", "type", "party_name", "amount", "currency",
            "due_date", "status", "paid_amount",
        ) + _TIMESTAMPS,
    ),
    EntityKind(
        name="goals", entity="goal", export_key="goals",
        api_path="/api/goals", table="goals",
        allowed_fields=(
            "id", "user_id", "type", "target_amount", "current_amount",
            "period", "period_value", "category",
        ) + _TIMESTAMPS,
    ),
    EntityKind(
        name="invoices", entity="invoice", export_key="invoices",
        api_path="/api/invoices", table="invoices",
        allowed_fields=(
            "id", "user_id", "client_id", "invoice_number", "amount",
            "currency", "issue_date", "due_date", "status", "items", "notes",
        ) + _TIMESTAMPS,
        foreign_keys=(("clientId", "clients"),),
    ),
    EntityKind(
        name="todos", entity="todo", export_key="todos",
        api_path="/api/todos", table="todos",
        allowed_fields=(
            "id", "user_id", "list_id", "title", "description", "priority",
            "category", "due_date", "completed", "is_recurring",
            "recurrence_pattern",
        ) + _TIMESTAMPS,
        foreign_keys=(("listId", "lists"),),
    ),
    EntityKind(
        name="savings_transactions", entity="savingsTransaction",
        export_key="savingsTransactions",
        api_path="/api/savings-transactions", table="savings_transactions",
        allowed_fields=(
            "id", "user_id", "savings_id", "type", "amount", "currency", "date",
            "price_per_unit", "quantity", "notes", "created_at",
        ),
        foreign_keys=(("savingsId", "savings"),),
    ),
    EntityKind(
        name="opening_balances", entity="openingBalance",
        export_key="openingBalances",
        api_path="/api/opening-balances", table="opening_balances",
        allowed_fields=(
            "id", "user_id", "period_type", "period", "amount", "currency",
            "notes",
        ) + _TIMESTAMPS,
    ),
    EntityKind(
        name="expected_income", entity="expectedIncome",
        export_key="expectedIncome",
        api_path="/api/expected-income", table="expected_income",
        allowed_fields=(
            "id", "user_id", "client_id", "period", "expected_amount",
            "currency", "notes", "is_paid",
        ) + _TIMESTAMPS,
        foreign_keys=(("clientId", "clients"),),
    ),
)

_LOOKUP = {}
for _kind in KINDS:
    for _alias in (_kind.name, _kind.entity, _kind.export_key, _kind.table):
        _LOOKUP[_alias] = _kind


def get_kind(name) -> EntityKind:
    """Resolve a kind from its table name, export key or singular alias."""
    if isinstance(name, EntityKind):
        return name
    try:
        return _LOOKUP[name]
    except (KeyError, TypeError):
        raise UnknownEntityError(f"Unknown entity kind: {name!r}") from None


def to_snake_case(key: str) -> str:
    return re.sub(r"([A-Z])", r"_\1", key).lower()


def to_camel_case(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)
