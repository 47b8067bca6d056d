"""
Pytest fixtures for the statement reconciliation test suite.

Provides:
- Structured logging setup and captured JSON logs
- Deterministic clock and default configuration
- Builders for statement lines and candidate records
- An in-memory SQLite database for the run store tests

Environment Variables:
- DATABASE_URL: optional SQLAlchemy URL for the store tests.  Defaults to an
  in-memory SQLite database so the suite needs no running server.
"""

import json
import logging
import os
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Generator
from uuid import UUID

import pytest
from sqlalchemy.orm import Session

from recon_config.schema import ReconConfig, ToleranceConfig
from recon_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session,
    init_engine_from_url,
    reset_engine,
)
from recon_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from recon_kernel.domain.clock import DeterministicClock
from recon_kernel.domain.run import StatementPeriod
from recon_kernel.domain.statement import (
    CandidateRecord,
    RecordKind,
    RecordStatus,
    StatementLine,
)
from recon_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from recon_services.reconciliation_service import ReconciliationService

COUNTERPARTY = "CP-ACME"
TEST_RUN_ID = UUID("6f1c2a10-5d43-4c1e-9a8e-0b7d2f3e4a51")
_UNSET = object()


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture recon_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, service):
            service.run_cascade(run_id)
            logs = captured_logs()
            assert any(r["message"] == "cascade_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("recon_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "concurrency: mark test as exercising real threads"
    )
    config.addinivalue_line(
        "markers", "database: mark test as requiring the SQL store"
    )


# =============================================================================
# Builders
# =============================================================================


def build_line(
    line_id: str = "L-001",
    reference: str | None = "INV-1000",
    amount=_UNSET,
    on=_UNSET,
    currency=_UNSET,
    counterparty_id: str = COUNTERPARTY,
) -> StatementLine:
    """Statement line with sensible defaults; pass None to omit a field."""
    return StatementLine(
        line_id=line_id,
        document_reference=reference,
        claimed_date=date(2024, 1, 10) if on is _UNSET else on,
        claimed_amount=Decimal("100.00") if amount is _UNSET else amount,
        currency="USD" if currency is _UNSET else currency,
        counterparty_id=counterparty_id,
    )


def build_record(
    record_id: str = "R-001",
    reference: str = "INV-1000",
    amount="100.00",
    on: date | None = date(2024, 1, 10),
    currency: str = "USD",
    status: RecordStatus = RecordStatus.OPEN,
    counterparty_id: str = COUNTERPARTY,
    kind: RecordKind = RecordKind.INVOICE,
) -> CandidateRecord:
    return CandidateRecord(
        record_id=record_id,
        document_reference=reference,
        record_date=on,
        amount=amount,
        currency=currency,
        status=status,
        counterparty_id=counterparty_id,
        kind=kind,
    )


@pytest.fixture
def make_line():
    """Factory for StatementLine objects."""
    return build_line


@pytest.fixture
def make_record():
    """Factory for CandidateRecord objects."""
    return build_record


# =============================================================================
# Clock, configuration and service
# =============================================================================


@pytest.fixture
def deterministic_clock():
    """Provide a deterministic clock for testing."""
    return DeterministicClock(datetime(2024, 2, 1, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def recon_config() -> ReconConfig:
    """Default configuration without touching the YAML file."""
    return ReconConfig()


@pytest.fixture
def strict_config() -> ReconConfig:
    """Absolute-only tolerance (no percentage component)."""
    return ReconConfig(tolerance=ToleranceConfig(absolute=Decimal("1.00"), percent=Decimal("0")))


@pytest.fixture
def statement_period() -> StatementPeriod:
    return StatementPeriod(date(2024, 1, 1), date(2024, 1, 31))


@pytest.fixture
def service(recon_config, deterministic_clock) -> ReconciliationService:
    return ReconciliationService(config=recon_config, clock=deterministic_clock)


@pytest.fixture
def open_run(service, statement_period):
    """
    Open a run on the ``service`` fixture.

    Usage::

        context = open_run([make_line()], [make_record()])
    """

    def _open(lines, records, run_id: UUID | None = TEST_RUN_ID):
        return service.open_run(COUNTERPARTY, statement_period, lines, records, run_id=run_id)

    return _open


# =============================================================================
# Database fixtures
# =============================================================================


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", "sqlite://")


@pytest.fixture(scope="function")
def db_engine():
    """Fresh engine and schema per test (in-memory SQLite by default)."""
    eng = init_engine_from_url(get_database_url(), echo=False)
    drop_tables()
    create_tables()
    register_immutability_listeners()
    yield eng
    unregister_immutability_listeners()
    drop_tables()
    reset_engine()


@pytest.fixture(scope="function")
def session(db_engine) -> Generator[Session, None, None]:
    """Provide a database session for testing; closed at teardown."""
    sess = get_session()
    try:
        yield sess
    finally:
        sess.rollback()
        sess.close()
