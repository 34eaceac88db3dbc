"""Test helper functions."""

import json
from io import BytesIO
from typing import Any, Dict, Optional
from unittest.mock import MagicMock, Mock


def make_query_client(data: Any) -> MagicMock:
    """Mock Supabase client whose query builder chains return ``data``.

    Every builder call (select, eq, in_, order, range, ...) returns the same
    query mock, so any chain ends at ``execute()``.
    """
    client = MagicMock()
    query = MagicMock()
    for method in ("select", "insert", "update", "delete", "eq", "in_", "gte", "lt", "order", "limit", "range"):
        getattr(query, method).return_value = query
    query.execute.return_value = MagicMock(data=data)
    client.table.return_value = query
    client.query = query
    return client


def patch_client(mock_client_class: MagicMock, client: MagicMock) -> None:
    """Wire a patched SupabaseClient class to yield ``client``."""
    mock_client_class.return_value.__aenter__.return_value = client
    mock_client_class.return_value.__aexit__.return_value = False


def call_handler(
    handler_cls,
    method: str,
    path: str,
    body: Any = None,
    headers: Optional[Dict[str, str]] = None,
) -> tuple[int, dict, dict]:
    """Invoke a serverless handler method without a socket.

    ``body`` is JSON-encoded unless it is already bytes.
    Returns (status, json payload, headers sent).
    """
    if isinstance(body, bytes):
        raw = body
    else:
        raw = json.dumps(body).encode("utf-8") if body is not None else b""
    h = handler_cls.__new__(handler_cls)
    h.command = method
    h.path = path
    h.headers = {"Content-Length": str(len(raw)), **(headers or {})}
    h.rfile = BytesIO(raw)
    h.wfile = BytesIO()
    h.send_response = Mock()
    h.send_header = Mock()
    h.end_headers = Mock()

    getattr(h, f"do_{method}")()

    status = h.send_response.call_args[0][0]
    sent_headers = {args[0]: args[1] for args, _ in h.send_header.call_args_list}
    payload = json.loads(h.wfile.getvalue().decode("utf-8"))
    return status, payload, sent_headers


class InMemoryQuery:
    """Just enough of the supabase-py query builder for the tables we use."""

    def __init__(self, rows: list):
        self.rows = rows
        self.operation = "select"
        self.payload: Any = None
        self.columns = "*"
        self.filters: list = []
        self.order_by: list = []
        self.row_limit: Optional[int] = None
        self.row_range: Optional[tuple] = None
        self.count: Optional[str] = None

    def select(self, columns: str = "*", count: Optional[str] = None):
        self.operation, self.columns, self.count = "select", columns, count
        return self

    def insert(self, payload):
        self.operation, self.payload = "insert", payload
        return self

    def update(self, payload):
        self.operation, self.payload = "update", payload
        return self

    def delete(self):
        self.operation = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column, values):
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def gte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row[column] >= value)
        return self

    def lt(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row[column] < value)
        return self

    def order(self, column, desc=False):
        self.order_by.append((column, desc))
        return self

    def limit(self, count):
        self.row_limit = count
        return self

    def range(self, start, end):
        self.row_range = (start, end)
        return self

    def _matches(self) -> list:
        return [row for row in self.rows if all(f(row) for f in self.filters)]

    def execute(self):
        if self.operation == "insert":
            new_rows = self.payload if isinstance(self.payload, list) else [self.payload]
            self.rows.extend(dict(row) for row in new_rows)
            return MagicMock(data=[dict(row) for row in new_rows])

        matched = self._matches()
        if self.operation == "update":
            for row in matched:
                row.update(self.payload)
            return MagicMock(data=[dict(row) for row in matched])
        if self.operation == "delete":
            for row in matched:
                self.rows.remove(row)
            return MagicMock(data=[dict(row) for row in matched])

        total = len(matched) if self.count == "exact" else None
        # stable sorts applied last key first give a multi-column order
        for column, desc in reversed(self.order_by):
            matched = sorted(matched, key=lambda row: row.get(column) or "", reverse=desc)
        if self.row_range is not None:
            start, end = self.row_range
            matched = matched[start:end + 1]
        if self.row_limit is not None:
            matched = matched[:self.row_limit]
        if self.columns != "*":
            names = [name.strip() for name in self.columns.split(",")]
            return MagicMock(data=[{name: row.get(name) for name in names} for row in matched], count=total)
        return MagicMock(data=[dict(row) for row in matched], count=total)


class InMemorySupabase:
    """Stand-in for the Supabase client backed by plain lists per table."""

    def __init__(self, **tables: list):
        self.tables: Dict[str, list] = {name: list(rows) for name, rows in tables.items()}

    def table(self, name: str) -> InMemoryQuery:
        return InMemoryQuery(self.tables.setdefault(name, []))
