# ops_app/utils/monitoring.py

from flask import Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

METRICS_VIEW_NAME = "prometheus_metrics"


def metrics_response(registry=REGISTRY):
    """Render the current Prometheus registry in the text exposition format"""
    return Response(generate_latest(registry), mimetype=CONTENT_TYPE_LATEST)


def init_monitoring(app):
    """Expose the Prometheus scrape endpoint when monitoring is enabled"""
    if not app.config.get("MONITORING_ENABLED", False):
        app.logger.debug("Monitoring disabled; metrics endpoint not mounted.")
        return False

    if METRICS_VIEW_NAME in app.view_functions:
        return True

    endpoint = app.config.get("METRICS_ENDPOINT", "/metrics")
    app.add_url_rule(endpoint, METRICS_VIEW_NAME, metrics_response, methods=["GET"])
    app.logger.info("Metrics endpoint mounted at %s", endpoint)
    return True
