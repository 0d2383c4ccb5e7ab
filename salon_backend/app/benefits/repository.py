"""PostgreSQL persistence for the benefit engine."""
from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import date
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import psycopg2
import psycopg2.errors
import psycopg2.extensions
import psycopg2.extras
from psycopg2 import sql
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .exceptions import TransactionConflictError
from .models import (
    Customer,
    CustomerMembership,
    CustomerPackage,
    MembershipBenefit,
    MembershipConfig,
    MembershipFreeze,
    MembershipPlan,
    MembershipStatus,
    MembershipUsage,
    Package,
    PackageCredit,
    PackageRedemption,
    PackageService,
    PackageStatus,
    Validity,
    ValidityUnit,
)
from .numbering import NumberedEntity

try:  # pragma: no cover - resolve connection helper when imported from FastAPI app
    from salon_backend.app_context import get_conn
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "salon_backend":
        raise
    from ...app_context import get_conn  # type: ignore[no-redef]


_RETRYABLE_ERRORS = (psycopg2.errors.SerializationFailure, psycopg2.errors.DeadlockDetected)

_NUMBER_COLUMNS = {
    NumberedEntity.MEMBERSHIP: ("customer_memberships", "membership_number"),
    NumberedEntity.PACKAGE: ("customer_packages", "package_number"),
}

_CUSTOMER_PACKAGE_SELECT = """
    SELECT cp.*, p.package_type
    FROM customer_packages cp
    JOIN packages p ON p.id = cp.package_id
"""


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (frozenset, set)):
        return sorted(value)
    return value


def _column_values(model: Any, *, exclude: Iterable[str] = ()) -> Dict[str, Any]:
    payload = model.model_dump(by_alias=False, exclude=set(exclude))
    return {key: _db_value(value) for key, value in payload.items()}


def _insert_row(cursor: PgCursor, table: str, values: Mapping[str, Any]) -> dict:
    columns = list(values)
    statement = sql.SQL("INSERT INTO {table} ({columns}) VALUES ({values}) RETURNING *").format(
        table=sql.Identifier(table),
        columns=sql.SQL(", ").join(sql.Identifier(column) for column in columns),
        values=sql.SQL(", ").join(sql.Placeholder(column) for column in columns),
    )
    cursor.execute(statement, values)
    row = cursor.fetchone()
    if not row:
        raise RuntimeError(f"Failed to insert into {table}")
    return row


def _update_row(cursor: PgCursor, table: str, values: Mapping[str, Any], *, key: str = "id") -> dict:
    columns = [column for column in values if column != key]
    statement = sql.SQL("UPDATE {table} SET {assignments} WHERE {key} = {key_value} RETURNING *").format(
        table=sql.Identifier(table),
        assignments=sql.SQL(", ").join(
            sql.SQL("{} = {}").format(sql.Identifier(column), sql.Placeholder(column)) for column in columns
        ),
        key=sql.Identifier(key),
        key_value=sql.Placeholder(key),
    )
    cursor.execute(statement, values)
    row = cursor.fetchone()
    if not row:
        raise RuntimeError(f"Failed to update {table} row {values.get(key)}")
    return row


def _date_filters(column: str, start_date: Optional[date], end_date: Optional[date]) -> Tuple[str, List[Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if start_date is not None:
        clauses.append(f"{column} >= %s")
        params.append(start_date)
    if end_date is not None:
        clauses.append(f"{column} <= %s")
        params.append(end_date)
    return "".join(f" AND {clause}" for clause in clauses), params


def _row_to_config(row: dict) -> MembershipConfig:
    return MembershipConfig.model_validate(dict(row))


def _row_to_customer_package(row: dict) -> CustomerPackage:
    return CustomerPackage.model_validate(dict(row))


def _row_to_plan(row: dict, branch_ids: Sequence[str], benefits: Sequence[dict]) -> MembershipPlan:
    return MembershipPlan(
        id=row["id"],
        tenant_id=row["tenant_id"],
        name=row["name"],
        tier=row.get("tier"),
        price=row["price"],
        gst_rate=row["gst_rate"],
        validity=Validity(value=int(row["validity_value"]), unit=ValidityUnit(row["validity_unit"])),
        branch_scope=row["branch_scope"],
        branch_ids=frozenset(branch_ids),
        benefits=tuple(MembershipBenefit.model_validate(dict(benefit)) for benefit in benefits),
        sale_commission_type=row.get("sale_commission_type"),
        sale_commission_value=row.get("sale_commission_value"),
        is_active=row["is_active"],
    )


def _row_to_package(row: dict, branch_ids: Sequence[str], services: Sequence[dict]) -> Package:
    return Package(
        id=row["id"],
        tenant_id=row["tenant_id"],
        name=row["name"],
        package_type=row["package_type"],
        price=row["price"],
        gst_rate=row["gst_rate"],
        credit_value=row.get("credit_value"),
        validity=Validity(value=int(row["validity_value"]), unit=ValidityUnit(row["validity_unit"])),
        branch_scope=row["branch_scope"],
        branch_ids=frozenset(branch_ids),
        services=tuple(PackageService.model_validate(dict(service)) for service in services),
        sale_commission_type=row.get("sale_commission_type"),
        sale_commission_value=row.get("sale_commission_value"),
        is_active=row["is_active"],
    )


class _PostgresAccess:
    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()


class PostgresBenefitRepository(_PostgresAccess):
    """Concrete repository persisting memberships, packages and ledgers in PostgreSQL."""

    @contextmanager
    def transaction(self) -> Iterator["PostgresBenefitRepository"]:
        if self._conn is not None:
            yield self
            return

        connection = get_conn()
        try:
            connection.set_session(isolation_level=psycopg2.extensions.ISOLATION_LEVEL_SERIALIZABLE)
            yield PostgresBenefitRepository(conn=connection)
            connection.commit()
        except _RETRYABLE_ERRORS as exc:
            connection.rollback()
            raise TransactionConflictError(str(exc)) from exc
        except Exception:
            connection.rollback()
            raise
        finally:
            connection.close()

    def next_sequence(self, tenant_id: str, entity: NumberedEntity, prefix: str) -> int:
        table, column = _NUMBER_COLUMNS[entity]
        statement = sql.SQL(
            """
            INSERT INTO benefit_number_sequences (tenant_id, entity, prefix, last_value)
            VALUES (
                %(tenant_id)s,
                %(entity)s,
                %(prefix)s,
                (SELECT COUNT(*) FROM {table} WHERE tenant_id = %(tenant_id)s AND {column} LIKE %(pattern)s) + 1
            )
            ON CONFLICT (tenant_id, entity, prefix) DO UPDATE SET
                last_value = benefit_number_sequences.last_value + 1
            RETURNING last_value
            """
        ).format(table=sql.Identifier(table), column=sql.Identifier(column))
        with self._cursor() as cursor:
            cursor.execute(
                statement,
                {
                    "tenant_id": tenant_id,
                    "entity": entity.value,
                    "prefix": prefix,
                    "pattern": f"{prefix}-%",
                },
            )
            row = cursor.fetchone()
            return int(row["last_value"])

    # Config ---------------------------------------------------------------

    def get_config(self, tenant_id: str) -> Optional[MembershipConfig]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM membership_config WHERE tenant_id = %s LIMIT 1",
                (tenant_id,),
            )
            row = cursor.fetchone()
        return _row_to_config(row) if row else None

    def save_config(self, config: MembershipConfig) -> MembershipConfig:
        values = _column_values(config, exclude={"created_at", "updated_at"})
        columns = list(values)
        statement = sql.SQL(
            """
            INSERT INTO membership_config (id, {columns}, updated_at)
            VALUES (%(id)s, {values}, NOW())
            ON CONFLICT (tenant_id) DO UPDATE SET {assignments}, updated_at = NOW()
            RETURNING *
            """
        ).format(
            columns=sql.SQL(", ").join(sql.Identifier(column) for column in columns),
            values=sql.SQL(", ").join(sql.Placeholder(column) for column in columns),
            assignments=sql.SQL(", ").join(
                sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(column))
                for column in columns
                if column != "tenant_id"
            ),
        )
        with self._cursor() as cursor:
            cursor.execute(statement, {"id": uuid.uuid4().hex, **values})
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist membership config")
            return _row_to_config(row)

    # Memberships ----------------------------------------------------------

    def get_membership(
        self, tenant_id: str, membership_id: str, *, for_update: bool = False
    ) -> Optional[CustomerMembership]:
        query = "SELECT * FROM customer_memberships WHERE id = %s AND tenant_id = %s"
        if for_update:
            query += " FOR UPDATE"
        with self._cursor() as cursor:
            cursor.execute(query, (membership_id, tenant_id))
            row = cursor.fetchone()
        return CustomerMembership.model_validate(dict(row)) if row else None

    def find_open_membership(self, tenant_id: str, customer_id: str, plan_id: str) -> Optional[CustomerMembership]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM customer_memberships
                WHERE tenant_id = %s
                  AND customer_id = %s
                  AND plan_id = %s
                  AND status IN ('active', 'frozen')
                LIMIT 1
                """,
                (tenant_id, customer_id, plan_id),
            )
            row = cursor.fetchone()
        return CustomerMembership.model_validate(dict(row)) if row else None

    def list_memberships(
        self, tenant_id: str, customer_id: str, statuses: Sequence[MembershipStatus]
    ) -> List[CustomerMembership]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM customer_memberships
                WHERE tenant_id = %s
                  AND customer_id = %s
                  AND status = ANY(%s)
                ORDER BY current_expiry_date ASC, created_at ASC
                """,
                (tenant_id, customer_id, [status.value for status in statuses]),
            )
            rows = cursor.fetchall()
        return [CustomerMembership.model_validate(dict(row)) for row in rows]

    def list_lapsed_memberships(self, tenant_id: str, before: date) -> List[CustomerMembership]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM customer_memberships
                WHERE tenant_id = %s
                  AND status IN ('active', 'frozen')
                  AND current_expiry_date < %s
                """,
                (tenant_id, before),
            )
            rows = cursor.fetchall()
        return [CustomerMembership.model_validate(dict(row)) for row in rows]

    def insert_membership(self, membership: CustomerMembership) -> CustomerMembership:
        with self._cursor() as cursor:
            row = _insert_row(cursor, "customer_memberships", _column_values(membership))
        return CustomerMembership.model_validate(dict(row))

    def update_membership(self, membership: CustomerMembership) -> CustomerMembership:
        with self._cursor() as cursor:
            row = _update_row(cursor, "customer_memberships", _column_values(membership, exclude={"created_at"}))
        return CustomerMembership.model_validate(dict(row))

    def get_active_freeze(self, tenant_id: str, membership_id: str) -> Optional[MembershipFreeze]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM membership_freezes
                WHERE tenant_id = %s AND membership_id = %s AND status = 'active'
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (tenant_id, membership_id),
            )
            row = cursor.fetchone()
        return MembershipFreeze.model_validate(dict(row)) if row else None

    def list_freezes(self, tenant_id: str, membership_id: str) -> List[MembershipFreeze]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM membership_freezes
                WHERE tenant_id = %s AND membership_id = %s
                ORDER BY created_at ASC
                """,
                (tenant_id, membership_id),
            )
            rows = cursor.fetchall()
        return [MembershipFreeze.model_validate(dict(row)) for row in rows]

    def insert_freeze(self, freeze: MembershipFreeze) -> MembershipFreeze:
        with self._cursor() as cursor:
            row = _insert_row(cursor, "membership_freezes", _column_values(freeze))
        return MembershipFreeze.model_validate(dict(row))

    def update_freeze(self, freeze: MembershipFreeze) -> MembershipFreeze:
        with self._cursor() as cursor:
            row = _update_row(cursor, "membership_freezes", _column_values(freeze, exclude={"created_at"}))
        return MembershipFreeze.model_validate(dict(row))

    def insert_usage(self, usage: MembershipUsage) -> MembershipUsage:
        with self._cursor() as cursor:
            row = _insert_row(cursor, "membership_usage", _column_values(usage))
        return MembershipUsage.model_validate(dict(row))

    def list_usage(
        self,
        tenant_id: str,
        membership_id: str,
        *,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[MembershipUsage], int]:
        filters, params = _date_filters("usage_date", start_date, end_date)
        base = f"FROM membership_usage WHERE tenant_id = %s AND membership_id = %s{filters}"
        with self._cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) AS total {base}", (tenant_id, membership_id, *params))
            total = int(cursor.fetchone()["total"])
            cursor.execute(
                f"SELECT * {base} ORDER BY usage_date DESC, created_at DESC LIMIT %s OFFSET %s",
                (tenant_id, membership_id, *params, limit, offset),
            )
            rows = cursor.fetchall()
        return [MembershipUsage.model_validate(dict(row)) for row in rows], total

    # Packages -------------------------------------------------------------

    def get_customer_package(
        self, tenant_id: str, customer_package_id: str, *, for_update: bool = False
    ) -> Optional[CustomerPackage]:
        query = _CUSTOMER_PACKAGE_SELECT + " WHERE cp.id = %s AND cp.tenant_id = %s"
        if for_update:
            query += " FOR UPDATE OF cp"
        with self._cursor() as cursor:
            cursor.execute(query, (customer_package_id, tenant_id))
            row = cursor.fetchone()
        return _row_to_customer_package(row) if row else None

    def list_customer_packages(
        self, tenant_id: str, customer_id: str, statuses: Sequence[PackageStatus]
    ) -> List[CustomerPackage]:
        with self._cursor() as cursor:
            cursor.execute(
                _CUSTOMER_PACKAGE_SELECT
                + """
                WHERE cp.tenant_id = %s
                  AND cp.customer_id = %s
                  AND cp.status = ANY(%s)
                ORDER BY cp.expiry_date ASC, cp.created_at ASC
                """,
                (tenant_id, customer_id, [status.value for status in statuses]),
            )
            rows = cursor.fetchall()
        return [_row_to_customer_package(row) for row in rows]

    def list_lapsed_packages(self, tenant_id: str, before: date) -> List[CustomerPackage]:
        with self._cursor() as cursor:
            cursor.execute(
                _CUSTOMER_PACKAGE_SELECT
                + " WHERE cp.tenant_id = %s AND cp.status = 'active' AND cp.expiry_date < %s",
                (tenant_id, before),
            )
            rows = cursor.fetchall()
        return [_row_to_customer_package(row) for row in rows]

    def insert_customer_package(self, customer_package: CustomerPackage) -> CustomerPackage:
        with self._cursor() as cursor:
            row = _insert_row(
                cursor,
                "customer_packages",
                _column_values(customer_package, exclude={"package_type"}),
            )
        return _row_to_customer_package({**row, "package_type": customer_package.package_type.value})

    def update_customer_package(self, customer_package: CustomerPackage) -> CustomerPackage:
        with self._cursor() as cursor:
            row = _update_row(
                cursor,
                "customer_packages",
                _column_values(customer_package, exclude={"package_type", "created_at"}),
            )
        return _row_to_customer_package({**row, "package_type": customer_package.package_type.value})

    def list_package_credits(
        self, tenant_id: str, customer_package_id: str, *, for_update: bool = False
    ) -> List[PackageCredit]:
        query = """
            SELECT *
            FROM package_credits
            WHERE tenant_id = %s AND customer_package_id = %s
            ORDER BY created_at ASC, id ASC
        """
        if for_update:
            query += " FOR UPDATE"
        with self._cursor() as cursor:
            cursor.execute(query, (tenant_id, customer_package_id))
            rows = cursor.fetchall()
        return [PackageCredit.model_validate(dict(row)) for row in rows]

    def insert_package_credits(self, credits: Sequence[PackageCredit]) -> List[PackageCredit]:
        stored: List[PackageCredit] = []
        with self._cursor() as cursor:
            for credit in credits:
                values = {**_column_values(credit), "updated_at": psycopg2.extensions.AsIs("NOW()")}
                stored.append(PackageCredit.model_validate(dict(_insert_row(cursor, "package_credits", values))))
        return stored

    def update_package_credit(self, credit: PackageCredit) -> PackageCredit:
        values = {**_column_values(credit), "updated_at": psycopg2.extensions.AsIs("NOW()")}
        with self._cursor() as cursor:
            row = _update_row(cursor, "package_credits", values)
        return PackageCredit.model_validate(dict(row))

    def insert_redemption(self, redemption: PackageRedemption) -> PackageRedemption:
        with self._cursor() as cursor:
            row = _insert_row(cursor, "package_redemptions", _column_values(redemption))
        return PackageRedemption.model_validate(dict(row))

    def list_redemptions(
        self,
        tenant_id: str,
        customer_package_id: str,
        *,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[PackageRedemption], int]:
        filters, params = _date_filters("redemption_date", start_date, end_date)
        base = f"FROM package_redemptions WHERE tenant_id = %s AND customer_package_id = %s{filters}"
        with self._cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) AS total {base}", (tenant_id, customer_package_id, *params))
            total = int(cursor.fetchone()["total"])
            cursor.execute(
                f"SELECT * {base} ORDER BY redemption_date DESC, created_at DESC LIMIT %s OFFSET %s",
                (tenant_id, customer_package_id, *params, limit, offset),
            )
            rows = cursor.fetchall()
        return [PackageRedemption.model_validate(dict(row)) for row in rows], total


class PostgresBenefitCatalog(_PostgresAccess):
    """Reads plans, packages, customers and invoices owned by other modules."""

    def get_customer(self, tenant_id: str, customer_id: str) -> Optional[Customer]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id, tenant_id, name, deleted_at
                FROM customers
                WHERE id = %s AND tenant_id = %s AND deleted_at IS NULL
                """,
                (customer_id, tenant_id),
            )
            row = cursor.fetchone()
        return Customer.model_validate(dict(row)) if row else None

    def get_plan(self, tenant_id: str, plan_id: str, *, active_only: bool = True) -> Optional[MembershipPlan]:
        query = "SELECT * FROM membership_plans WHERE id = %s AND tenant_id = %s"
        if active_only:
            query += " AND is_active = TRUE"
        with self._cursor() as cursor:
            cursor.execute(query, (plan_id, tenant_id))
            row = cursor.fetchone()
            if not row:
                return None
            cursor.execute("SELECT branch_id FROM membership_plan_branches WHERE plan_id = %s", (plan_id,))
            branch_ids = [branch["branch_id"] for branch in cursor.fetchall()]
            cursor.execute(
                "SELECT * FROM membership_benefits WHERE plan_id = %s ORDER BY priority_level DESC",
                (plan_id,),
            )
            benefits = cursor.fetchall()
        return _row_to_plan(row, branch_ids, benefits)

    def get_package(self, tenant_id: str, package_id: str, *, active_only: bool = True) -> Optional[Package]:
        query = "SELECT * FROM packages WHERE id = %s AND tenant_id = %s"
        if active_only:
            query += " AND is_active = TRUE"
        with self._cursor() as cursor:
            cursor.execute(query, (package_id, tenant_id))
            row = cursor.fetchone()
            if not row:
                return None
            cursor.execute("SELECT branch_id FROM package_branches WHERE package_id = %s", (package_id,))
            branch_ids = [branch["branch_id"] for branch in cursor.fetchall()]
            cursor.execute(
                "SELECT * FROM package_services WHERE package_id = %s ORDER BY created_at ASC, id ASC",
                (package_id,),
            )
            services = cursor.fetchall()
        return _row_to_package(row, branch_ids, services)

    def get_invoice_branch(self, tenant_id: str, invoice_id: str) -> Optional[str]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT branch_id FROM invoices WHERE id = %s AND tenant_id = %s",
                (invoice_id, tenant_id),
            )
            row = cursor.fetchone()
        return row["branch_id"] if row else None

    def get_tenant_slug(self, tenant_id: str) -> Optional[str]:
        with self._cursor() as cursor:
            cursor.execute("SELECT slug FROM tenants WHERE id = %s", (tenant_id,))
            row = cursor.fetchone()
        return row["slug"] if row else None
