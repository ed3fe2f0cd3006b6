from decimal import Decimal

from core.logging.correlation import CorrelationIdManager, add_correlation_id
from core.utils.exceptions import (
    CircuitOpenError,
    InsufficientSharesError,
    NotFoundError,
    PersistenceError,
    UpstreamUnavailableError,
    ValidationError,
    create_error_context,
    is_retryable_error,
)


def teardown_function():
    CorrelationIdManager.clear_correlation()


def test_ensure_reuses_current_id():
    first = CorrelationIdManager.ensure_correlation_id()
    assert CorrelationIdManager.ensure_correlation_id() == first
    CorrelationIdManager.clear_correlation()
    assert CorrelationIdManager.get_correlation_id() is None


def test_processor_stamps_events():
    CorrelationIdManager.set_correlation_id("req-1")
    assert add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-1"
    assert add_correlation_id(None, "info", {"event": "x", "correlation_id": "other"})["correlation_id"] == "other"


def test_processor_leaves_events_alone_without_id():
    assert "correlation_id" not in add_correlation_id(None, "info", {"event": "x"})


def test_exceptions_capture_current_correlation_id():
    CorrelationIdManager.set_correlation_id("req-2")
    error = NotFoundError("no such portfolio", resource="portfolio", resource_id="p1")
    assert error.correlation_id == "req-2"


def test_retryability():
    assert is_retryable_error(PersistenceError("db down", operation="commit"))
    assert is_retryable_error(CircuitOpenError("open"))
    assert not is_retryable_error(ValidationError("bad", field="amount", value=-1))
    assert not is_retryable_error(PersistenceError("db down", operation="commit", retry_count=5))
    assert not is_retryable_error(KeyError("x"))


def test_error_context_fields():
    error = InsufficientSharesError(
        "not enough shares", requested=Decimal("60"), available=Decimal("50"), portfolio_id="blue-chip"
    )
    context = create_error_context(error, "withdraw", {"user_id": "alice"})

    assert context["error_type"] == "InsufficientSharesError"
    assert context["operation"] == "withdraw"
    assert context["requested"] == "60"
    assert context["available"] == "50"
    assert context["portfolio_id"] == "blue-chip"
    assert context["user_id"] == "alice"
    assert context["retryable"] is False


def test_error_context_symbol():
    context = create_error_context(UpstreamUnavailableError("down", symbol="BTC"), "fetch_price")
    assert context["symbol"] == "BTC"
    assert context["retryable"] is True
