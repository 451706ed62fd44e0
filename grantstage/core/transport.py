"""
Transport to the ClickHouse HTTP interface.

One statement per request, no transaction semantics. Timeouts and HTTP
errors surface as StatementExecutionError.
"""

from typing import Any, Dict, List, Mapping, Optional, Protocol

import requests

from . import config
from .errors import StatementExecutionError
from ..util.logging import logger, redact_statement


class Transport(Protocol):
    """Boundary the queue, resolver and audit store talk to."""

    def execute(self, statement: str) -> None:
        ...

    def query(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        ...


class ClickHouseHttpTransport:
    """requests-based client for the ClickHouse HTTP interface."""

    def __init__(self, url: str = None, user: str = None, password: str = None, database: str = None,
                 timeout: float = None, session: requests.Session = None):
        self.url = (url or config.CLICKHOUSE_URL).rstrip("/") + "/"
        self.user = user if user is not None else config.CLICKHOUSE_USER
        self.database = database if database is not None else config.CLICKHOUSE_DATABASE
        self.timeout = timeout or config.TRANSPORT_TIMEOUT_SEC
        self._session = session or requests.Session()
        self._headers = {
            "X-ClickHouse-User": self.user,
            "X-ClickHouse-Key": password if password is not None else config.CLICKHOUSE_PASSWORD,
        }

    def close(self):
        self._session.close()

    def _post(self, statement: str, params: Optional[Mapping[str, Any]] = None) -> requests.Response:
        query_params = {"database": self.database}
        for name, value in (params or {}).items():
            query_params[f"param_{name}"] = value

        try:
            response = self._session.post(
                self.url,
                params=query_params,
                data=statement.encode("utf-8"),
                headers=self._headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise StatementExecutionError(statement, f"Transport error: {e}")

        if not response.ok:
            # ClickHouse puts the server exception text in the body
            message = response.text.strip() or f"HTTP {response.status_code}"
            raise StatementExecutionError(statement, message, status_code=response.status_code)
        return response

    def execute(self, statement: str) -> None:
        logger.debug(f"Executing: {redact_statement(statement)}")
        self._post(statement)

    def query(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        response = self._post(f"{sql.rstrip().rstrip(';')} FORMAT JSON", params)
        try:
            payload = response.json()
        except ValueError as e:
            raise StatementExecutionError(sql, f"Invalid JSON response: {e}")
        return payload.get("data", [])

    def ping(self) -> bool:
        """Check server reachability via the /ping endpoint."""
        try:
            response = self._session.get(self.url + "ping", timeout=self.timeout)
            return response.ok
        except requests.RequestException:
            return False
