"""
SQL Injection Detection Module

Error-based detection only: a syntax-breaking value must produce a
database error fingerprint that a harmless control value does not.
"""

import re
from typing import Dict, List, Optional, Tuple
import logging

from websecscan.scanner.modules.base import (
    BaseModule, Finding, InjectionPoint, Severity, Confidence, TestPayload
)
from websecscan.scanner.core.requester import RequestMethod

logger = logging.getLogger(__name__)

TESTER_ID = 'sqli'

CONTROL_PAYLOAD = TestPayload(
    id='sqli-control', tester_id=TESTER_ID, context='control', payload='wss1234', signal=''
)

# Read-only, syntax-breaking values
SQLI_PAYLOADS = [
    TestPayload(id='sqli-single-quote', tester_id=TESTER_ID, context='string', payload="'", signal='sql-error'),
    TestPayload(id='sqli-double-quote', tester_id=TESTER_ID, context='string', payload='"', signal='sql-error'),
    TestPayload(id='sqli-paren-quote', tester_id=TESTER_ID, context='string', payload="')", signal='sql-error'),
    TestPayload(id='sqli-backtick', tester_id=TESTER_ID, context='identifier', payload='`', signal='sql-error'),
    TestPayload(id='sqli-or-true', tester_id=TESTER_ID, context='string', payload="' OR '1'='1", signal='sql-error'),
    TestPayload(id='sqli-numeric', tester_id=TESTER_ID, context='numeric', payload='1 AND 1=(', signal='sql-error'),
    TestPayload(id='sqli-comment', tester_id=TESTER_ID, context='string', payload="1'--", signal='sql-error'),
]

# SQL Error Patterns by engine
SQL_ERROR_PATTERNS: Dict[str, List[str]] = {
    'MySQL': [
        r"SQL syntax.*MySQL",
        r"Warning.*mysql_",
        r"MySqlException",
        r"valid MySQL result",
        r"check the manual that corresponds to your (MySQL|MariaDB) server version",
        r"MySqlClient\.",
        r"com\.mysql\.jdbc",
    ],
    'PostgreSQL': [
        r"PostgreSQL.*ERROR",
        r"Warning.*\Wpg_",
        r"valid PostgreSQL result",
        r"Npgsql\.",
        r"PG::SyntaxError:",
        r"org\.postgresql\.util\.PSQLException",
        r"ERROR:\s+syntax error at or near",
        r"unterminated quoted string at or near",
    ],
    'Microsoft SQL Server': [
        r"Driver.*SQL Server",
        r"OLE DB.*SQL Server",
        r"Warning.*mssql_",
        r"System\.Data\.SqlClient\.",
        r"Microsoft SQL Native Client error",
        r"ODBC SQL Server Driver",
        r"com\.microsoft\.sqlserver\.jdbc",
        r"Unclosed quotation mark after the character string",
    ],
    'Oracle': [
        r"\bORA-[0-9][0-9][0-9][0-9]",
        r"Oracle error",
        r"Oracle.*Driver",
        r"Warning.*\Woci_",
        r"oracle\.jdbc\.driver",
        r"quoted string not properly terminated",
        r"SQL command not properly ended",
    ],
    'SQLite': [
        r"SQLite/JDBCDriver",
        r"SQLite\.Exception",
        r"System\.Data\.SQLite\.SQLiteException",
        r"Warning.*sqlite_",
        r"Warning.*SQLite3::",
        r"\[SQLITE_ERROR\]",
        r"SQLite error \d+:",
        r"sqlite3\.OperationalError",
        r"SQLite3::SQLException",
        r"unrecognized token:",
    ],
}

# Generic SQL errors (engine unknown)
GENERIC_SQL_ERROR_PATTERNS = [
    r"SQL syntax",
    r"SQL error",
    r"syntax error",
    r"unexpected end of SQL",
    r"SQLSTATE",
    r"SQLException",
    r"Syntax error in query",
]


class SQLInjectionModule(BaseModule):
    """
    SQL Injection Detection Module

    Confidence:
    - HIGH: an engine-specific error appears
    - MEDIUM: only a generic SQL error appears
    """

    name = "sqli"
    description = "Detects error-based SQL injection"
    rule_id = "WSS-SQLI-001"
    cwe_id = "CWE-89"
    owasp_category = "A03:2021"

    def __init__(self, requester=None, events=None):
        super().__init__(requester, events)
        self._engine_patterns: List[Tuple[str, re.Pattern]] = [
            (engine, re.compile(pattern, re.IGNORECASE))
            for engine, patterns in SQL_ERROR_PATTERNS.items()
            for pattern in patterns
        ]
        self._generic_patterns = [
            re.compile(pattern, re.IGNORECASE) for pattern in GENERIC_SQL_ERROR_PATTERNS
        ]

    async def run(self, target: InjectionPoint, payloads: Optional[List[TestPayload]] = None) -> List[Finding]:
        """
        Send the control value, then each breaking payload.

        Returns:
            At most one finding for the injection point
        """
        method = RequestMethod.from_name(target.method)

        control = await self.requester.test_payload(
            url=target.url,
            parameter=target.parameter,
            payload=CONTROL_PAYLOAD.payload,
            method=method,
            base_params=target.baseline,
            component=self.name
        )
        control_errors = {snippet for _, snippet in self.check_sql_errors(control.body)}

        for payload in payloads or SQLI_PAYLOADS:
            response = await self.requester.test_payload(
                url=target.url,
                parameter=target.parameter,
                payload=payload.payload,
                method=method,
                base_params=target.baseline,
                component=self.name
            )

            new_errors = [(engine, snippet) for engine, snippet in self.check_sql_errors(response.body)
                          if snippet not in control_errors]
            if not new_errors:
                continue

            engine, snippet = new_errors[0]
            confidence = Confidence.HIGH if engine else Confidence.MEDIUM
            confidence = self.adjust_confidence(confidence, target.url)
            self.logger.info(f"SQL error from '{target.parameter}' at {target.url} ({engine or 'generic'})")

            evidence = [self.extract_evidence(response.body, snippet) or snippet]
            if response.status >= 500:
                evidence.append(f"HTTP {response.status} returned for the breaking payload")

            return [self.create_finding(
                title="SQL Injection (Error-Based)",
                severity=Severity.CRITICAL if engine else Severity.HIGH,
                confidence=confidence,
                url=target.url,
                method=target.method,
                parameter=target.parameter,
                evidence=evidence,
                payload=payload.payload,
                description=f"The parameter '{target.parameter}' breaks the server's SQL query. "
                            f"Database: {engine or 'unknown'}.",
                remediation=self._get_remediation(),
                references=(
                    "https://owasp.org/www-community/attacks/SQL_Injection",
                    "https://cheatsheetseries.owasp.org/cheatsheets/SQL_Injection_Prevention_Cheat_Sheet.html",
                )
            )]

        return []

    def check_sql_errors(self, body: str) -> List[Tuple[Optional[str], str]]:
        """
        Find SQL error fingerprints in a response body.

        Returns:
            (engine or None, matched text) pairs, engine-specific first
        """
        matches = []
        for engine, pattern in self._engine_patterns:
            match = pattern.search(body)
            if match:
                matches.append((engine, match.group(0)))
        for pattern in self._generic_patterns:
            match = pattern.search(body)
            if match:
                matches.append((None, match.group(0)))
        return matches

    def _get_remediation(self) -> str:
        """Get remediation guidance."""
        return """
1. **Parameterized Queries**: Use prepared statements with bound parameters
   for every query that includes user input.

2. **ORM / Query Builders**: Prefer an ORM or query builder that escapes values.

3. **Error Handling**: Never return database error messages to clients; log
   them server-side instead.

4. **Least Privilege**: Run the application with a database account that has
   only the permissions it needs.
"""


def create(requester, events=None) -> SQLInjectionModule:
    """Module factory used by the engine."""
    return SQLInjectionModule(requester, events)
