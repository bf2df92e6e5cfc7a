"""Tests for the flow invocation HTTP API."""
import json
import pytest
from fastapi.testclient import TestClient

import api.main as main
from core.engine import MockModelClient
from core.orchestrator import FlowOrchestrator
from flows.errors import ToolArgumentError, ToolExhaustedError
from models.schemas import Final, ValidationIssue


@pytest.fixture
def use_script(monkeypatch, flow_registry, flow_config):
    """Swap the app's orchestrator for one driven by a scripted model."""
    def _use(*replies, responder=None):
        client = MockModelClient(script=list(replies), responder=responder)
        monkeypatch.setattr(main, "orchestrator", FlowOrchestrator(client, flow_registry, flow_config))
        return client
    return _use


@pytest.fixture
def http() -> TestClient:
    return TestClient(main.app)


def test_health(http, use_script):
    use_script()
    body = http.get("/health").json()
    assert body["status"] == "healthy"
    assert body["provider"] == "mock"
    assert body["flows"] == 2
    assert body["tools"] == 1


def test_list_flows(http, use_script):
    use_script()
    flows = {f["name"]: f for f in http.get("/api/v1/flows").json()}
    assert set(flows) == {"optimizeRouteFlow", "predictEtaFlow"}
    route = flows["optimizeRouteFlow"]
    assert route["tools"] == ["getWeatherConditions"]
    assert route["output_schema"]["required"] == [
        "optimalRoute", "estimatedArrivalTime", "weatherConditions",
    ]


def test_invoke_flow(http, use_script, route_input, route_model):
    use_script(responder=route_model)
    response = http.post("/api/v1/flows/optimizeRouteFlow", json=route_input)

    assert response.status_code == 200
    body = response.json()
    assert body["flow"] == "optimizeRouteFlow"
    assert body["output"]["weatherConditions"] == "Sunny, 72°F"
    assert body["model_turns"] == 2
    assert body["tool_calls"][0]["tool"] == "getWeatherConditions"
    assert body["tool_calls"][0]["ok"] is True


def test_invalid_input_is_422(http, use_script, route_input):
    client = use_script()
    route_input["endLocation"]["lat"] = 123
    response = http.post("/api/v1/flows/optimizeRouteFlow", json=route_input)

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "InputValidationError"
    assert body["flow"] == "optimizeRouteFlow"
    assert body["details"]["issues"][0]["path"] == "endLocation.lat"
    assert client.call_count == 0


def test_unknown_flow_is_404(http, use_script, route_input):
    use_script()
    response = http.post("/api/v1/flows/planMyDay", json=route_input)
    assert response.status_code == 404
    assert response.json()["error"] == "UnknownFlowError"


def test_invalid_output_is_502(http, use_script, route_input):
    use_script(Final(raw_output="no idea"), Final(raw_output=json.dumps({"optimalRoute": "I-5"})))
    response = http.post("/api/v1/flows/optimizeRouteFlow", json=route_input)
    assert response.status_code == 502
    assert response.json()["error"] == "OutputValidationError"


def test_error_details_are_serializable():
    last = ToolArgumentError("getWeatherConditions",
                             [ValidationIssue(path="lat", message="bad", value=object())],
                             arguments={"lat": object()})
    body = main.jsonable_error(ToolExhaustedError("getWeatherConditions", 3, last))
    json.dumps(body)
    assert body["error"] == "ToolExhaustedError"
    assert body["details"]["failures"] == 3
