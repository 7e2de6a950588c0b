"""
Azure SQL helpers — connection factory and customer store.

Customer credentials are held as a JSON document on the customer row. Updates
merge the supplied credential keys into the stored document, so a partial
write (e.g. consent bookkeeping) never erases unrelated keys such as a
Key Vault secret reference.
"""
import json
import os

import pyodbc

_CUSTOMER_COLUMNS = """
    id, tenant_id, tenant_domain, tenant_name, contact_email, status, credentials_json
"""


def get_connection() -> pyodbc.Connection:
    conn_str = os.environ["MSSQL_CONNECTION"]
    return pyodbc.connect(conn_str, autocommit=False)


def _row_to_customer(cols: list[str], row) -> dict:
    rec = dict(zip(cols, row))
    raw = rec.get("credentials_json")
    try:
        credentials = json.loads(raw) if raw else None
    except ValueError:
        credentials = None
    return {
        "id":            rec.get("id"),
        "tenantId":      rec.get("tenant_id"),
        "tenantDomain":  rec.get("tenant_domain"),
        "tenantName":    rec.get("tenant_name"),
        "contactEmail":  rec.get("contact_email"),
        "status":        rec.get("status"),
        "credentials":   credentials if isinstance(credentials, dict) else None,
    }


def get_customer(conn: pyodbc.Connection, customer_id: str) -> dict | None:
    cursor = conn.cursor()
    cursor.execute(f"SELECT {_CUSTOMER_COLUMNS} FROM customers WHERE id = ?", customer_id)
    row = cursor.fetchone()
    if row is None:
        return None
    cols = [col[0] for col in cursor.description]
    return _row_to_customer(cols, row)


def update_customer(conn: pyodbc.Connection, customer_id: str, partial: dict) -> dict:
    """
    Apply `partial` to a customer: `status` replaces the column, `credentials`
    keys are merged into the stored credentials document. Returns the updated
    customer. Raises KeyError if the customer does not exist.
    """
    current = get_customer(conn, customer_id)
    if current is None:
        raise KeyError(f"Customer {customer_id} not found")

    credentials = dict(current.get("credentials") or {})
    credentials.update(partial.get("credentials") or {})
    status = partial.get("status") or current.get("status")

    cursor = conn.cursor()
    cursor.execute("""
        UPDATE customers
        SET status           = ?,
            credentials_json = ?,
            updated_at       = SYSUTCDATETIME()
        WHERE id = ?
    """, status, json.dumps(credentials), customer_id)
    conn.commit()

    current.update({"status": status, "credentials": credentials})
    return current


class CustomerStore:
    """Repository view of the customers table, one connection per call."""

    def __init__(self, connect=get_connection):
        self._connect = connect

    def get_customer(self, customer_id: str) -> dict | None:
        conn = self._connect()
        try:
            return get_customer(conn, customer_id)
        finally:
            conn.close()

    def update_customer(self, customer_id: str, partial: dict) -> dict:
        conn = self._connect()
        try:
            return update_customer(conn, customer_id, partial)
        finally:
            conn.close()
