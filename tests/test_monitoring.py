from flask import Flask
from prometheus_client import CollectorRegistry, Counter

from ops_app.utils.monitoring import METRICS_VIEW_NAME, init_monitoring, metrics_response


def _app(**config):
    app = Flask(__name__)
    app.config.update(config)
    return app


def test_monitoring_disabled_mounts_nothing():
    app = _app(MONITORING_ENABLED=False)

    assert init_monitoring(app) is False
    assert METRICS_VIEW_NAME not in app.view_functions


def test_metrics_endpoint_exposes_importer_metrics(stage_csv, signups_csv):
    app = _app(MONITORING_ENABLED=True, METRICS_ENDPOINT="/ops-metrics")
    stage_csv(signups_csv)

    assert init_monitoring(app) is True
    assert init_monitoring(app) is True

    response = app.test_client().get("/ops-metrics")

    assert response.status_code == 200
    body = response.get_data(as_text=True)
    assert "historical_import_stage_requests_total" in body
    assert "historical_import_stage_duration_seconds" in body


def test_metrics_response_renders_given_registry(app):
    registry = CollectorRegistry()
    counter = Counter("ops_test_events_total", "Events seen", registry=registry)
    counter.inc(3)

    response = metrics_response(registry)

    assert response.mimetype == "text/plain"
    assert "ops_test_events_total 3.0" in response.get_data(as_text=True)
