"""Tests for kopf handler wiring."""

import kopf
import pytest

from intent_controller.config import Config
from intent_controller.errors import PreconditionError, TransientError
from intent_controller.handlers import _raise_for_retry, build_registry, configure_settings
from intent_controller.reconciler import ReconcileResult, ReconcileState


class TestRaiseForRetry:
    """Tests for translating results into kopf retries."""

    def test_success_does_not_raise(self) -> None:
        """Test that a converged result returns normally."""
        result = ReconcileResult(key="apps/web", state=ReconcileState.CONVERGED, requeue_after=300)

        _raise_for_retry(result)

    def test_failure_carries_requeue_delay(self) -> None:
        """Test that a failed pass becomes a TemporaryError with the chosen delay."""
        result = ReconcileResult(key="apps/web")
        result.fail(ReconcileState.ROUTING, TransientError("GatewayNotFound", "gateway missing"))
        result.requeue_after = 60

        with pytest.raises(kopf.TemporaryError) as exc_info:
            _raise_for_retry(result)

        assert exc_info.value.delay == 60
        assert "GatewayNotFound" in str(exc_info.value)

    def test_precondition_failure_is_retried_too(self) -> None:
        """Test that precondition failures are retried on the long interval."""
        result = ReconcileResult(key="apps/web")
        result.fail(ReconcileState.VALIDATING, PreconditionError("ServiceNotFound", "missing"))
        result.requeue_after = 300

        with pytest.raises(kopf.TemporaryError) as exc_info:
            _raise_for_retry(result)

        assert exc_info.value.delay == 300


class TestSettings:
    """Tests for operator settings and registration."""

    def test_configure_settings(self) -> None:
        """Test that kopf keeps its bookkeeping out of status and events."""
        settings = kopf.OperatorSettings()

        configure_settings(settings)

        assert settings.posting.enabled is False
        assert isinstance(settings.persistence.progress_storage, kopf.AnnotationsProgressStorage)
        assert isinstance(
            settings.persistence.diffbase_storage, kopf.AnnotationsDiffBaseStorage
        )

    def test_build_registry(self) -> None:
        """Test that a fresh registry is built per configuration."""
        first = build_registry(Config())
        second = build_registry(Config(resync_interval_seconds=120))

        assert isinstance(first, kopf.OperatorRegistry)
        assert first is not second
