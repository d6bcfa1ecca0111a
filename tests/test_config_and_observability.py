import logging

import pytest

from app.core import logging as app_logging
from app.core.config import Settings, get_settings
from app.metrics import (
    DEFAULT_METRIC_DEFINITIONS,
    REJECTIONS_TOTAL,
    WORKFLOW_DURATION_SECONDS,
    MetricsRegistry,
    create_registry,
)


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("HOME_PROVIDER", "ACME")
    monkeypatch.setenv("STATE_MACHINE_CACHE_SIZE", "8")
    monkeypatch.setenv("OBSERVER_ENDPOINT", "http://observer.test")

    settings = Settings()

    assert settings.home_provider == "ACME"
    assert settings.state_machine_cache_size == 8
    assert settings.observer_endpoint == "http://observer.test"
    assert settings.active_service_state == "in_service"


def test_get_settings_is_cached():
    get_settings.cache_clear()
    try:
        assert get_settings() is get_settings()
    finally:
        get_settings.cache_clear()


def test_parse_headers_skips_malformed_items():
    assert app_logging._parse_headers("a=1, b = 2,broken,=x") == {"a": "1", "b": "2"}
    assert app_logging._parse_headers(None) == {}


def test_configure_logging_quiets_http_loggers():
    logger = app_logging.configure_logging(Settings(log_level="debug", app_name="tickets-test"))

    assert logger.name == "tickets-test"
    assert logger.level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.WARNING


def test_tracer_disabled_by_default():
    provider = app_logging.init_tracer(Settings(otel_enabled=False))
    assert provider is None
    app_logging.shutdown_tracer(provider)


def test_default_metrics_registered():
    registry = create_registry()

    names = {metric.name for metric in registry.metrics()}
    assert names == {definition.name for definition in DEFAULT_METRIC_DEFINITIONS}


def test_counter_validates_labels():
    counter = create_registry().counter(REJECTIONS_TOTAL)

    counter.inc(kind="forbidden")
    counter.inc(2, kind="forbidden")
    assert counter.value(kind="forbidden") == 3
    with pytest.raises(ValueError):
        counter.inc(reason="forbidden")
    with pytest.raises(ValueError):
        counter.inc()
    with pytest.raises(ValueError):
        counter.inc(-1, kind="forbidden")


def test_timer_records_even_when_block_fails():
    registry = create_registry()

    with pytest.raises(RuntimeError):
        with registry.time(WORKFLOW_DURATION_SECONDS, operation="assign_dispatcher"):
            raise RuntimeError("boom")

    stats = registry.distribution(WORKFLOW_DURATION_SECONDS).stats(operation="assign_dispatcher")
    assert stats.count == 1
    assert registry.snapshot()[WORKFLOW_DURATION_SECONDS][("assign_dispatcher",)]["count"] == 1.0


def test_registry_rejects_type_clash():
    registry = MetricsRegistry()
    registry.counter("things")

    with pytest.raises(TypeError):
        registry.distribution("things")


def test_timer_on_plain_registry_declares_its_labels():
    registry = MetricsRegistry()

    with registry.time("request_seconds", route="tickets"):
        pass

    distribution = registry.distribution("request_seconds")
    assert distribution.label_names == ("route",)
    assert distribution.stats(route="tickets").count == 1
