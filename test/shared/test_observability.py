import io
import json
import logging

from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.shared.observability import (
    JsonFormatter,
    ObservabilitySettings,
    RequestContextFilter,
    configure_logging,
    configure_observability,
    get_request_id,
)


def _create_app() -> FastAPI:
    app = FastAPI()

    @app.get("/ping")
    async def ping():
        return {"request_id": get_request_id()}

    return app


def test_request_id_generated_and_echoed() -> None:
    app = _create_app()
    configure_observability(app, ObservabilitySettings())
    response = TestClient(app).get("/ping")

    assert response.status_code == 200
    request_id = response.headers["X-Request-ID"]
    assert request_id
    assert response.json()["request_id"] == request_id


def test_request_id_taken_from_header() -> None:
    app = _create_app()
    configure_observability(app, ObservabilitySettings(request_id_header="X-Trace"))
    response = TestClient(app).get("/ping", headers={"X-Trace": "trace-1"})

    assert response.headers["X-Trace"] == "trace-1"
    assert response.json()["request_id"] == "trace-1"
    assert get_request_id() is None


def test_json_log_lines_carry_request_id() -> None:
    app = FastAPI()
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter("json-service"))
    handler.addFilter(RequestContextFilter())
    logger = logging.getLogger("test.observability.json")
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    @app.get("/log")
    async def log_endpoint():
        logger.info("policy served")
        return {"status": "ok"}

    configure_observability(app, ObservabilitySettings(service_name="json-service"))
    try:
        TestClient(app).get("/log", headers={"X-Request-ID": "req-42"})
    finally:
        logger.removeHandler(handler)

    record = json.loads(stream.getvalue().strip().splitlines()[-1])
    assert record["message"] == "policy served"
    assert record["service"] == "json-service"
    assert record["request_id"] == "req-42"
    assert record["level"] == "INFO"


def test_configure_logging_sets_level_and_formatter() -> None:
    root = logging.getLogger()
    saved_handlers = root.handlers[:]
    saved_level = root.level
    stream = io.StringIO()
    root.handlers = [logging.StreamHandler(stream)]
    try:
        configure_logging(ObservabilitySettings(log_level="warning", json_logs=True))
        assert root.level == logging.WARNING
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        logging.getLogger("test.observability.root").warning("careful")
        assert json.loads(stream.getvalue())["message"] == "careful"
    finally:
        root.handlers = saved_handlers
        root.setLevel(saved_level)
