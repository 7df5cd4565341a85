"""
Tests for the Integration API Routes
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from fhirbridge.api.main import create_app
from fhirbridge.integrations.registry import ConnectorRegistry

from fakes import bundle, capability_statement, fhir_json, operation_outcome


@pytest.fixture
def registry(epic, cerner):
    registry = ConnectorRegistry()
    registry.register(epic)
    registry.register(cerner)
    return registry


@pytest.fixture
def client(registry):
    return TestClient(create_app(registry=registry))


class TestVendorRoutes:

    def test_list_vendors(self, client):
        response = client.get("/integrations/vendors")

        assert response.status_code == 200
        assert response.json() == {"vendors": ["cerner", "epic"]}

    def test_unknown_vendor(self, client):
        response = client.get("/integrations/meditech/Patient/1")

        assert response.status_code == 400
        assert "meditech" in response.json()["detail"]

    def test_registry_not_initialized(self):
        client = TestClient(create_app())

        assert client.get("/integrations/vendors").status_code == 503

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["vendors"] == ["cerner", "epic"]

    def test_metadata(self, client, fake_epic):
        response = client.get("/integrations/epic/metadata")

        assert response.status_code == 200
        assert response.json()["data"]["resourceType"] == "CapabilityStatement"

    def test_metadata_unavailable(self, client, fake_epic):
        fake_epic.metadata_replies.append(httpx.Response(503))

        response = client.get("/integrations/epic/metadata")

        assert response.status_code == 503
        assert response.json()["classification"] == "VendorUnavailable"


class TestPatientRoutes:

    def test_search_patients(self, client, fake_cerner):
        response = client.get("/integrations/cerner/Patient", params={"family": "Smith"})

        body = response.json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["request_id"]
        assert body["data"]["resourceType"] == "Bundle"
        assert fake_cerner.fhir_requests[0].url.params["family"] == "Smith"

    def test_search_by_mrn(self, client, fake_cerner):
        client.get("/integrations/cerner/Patient", params={"mrn": "5500"})

        params = fake_cerner.fhir_requests[0].url.params
        assert params["identifier"] == "https://fhir.cerner.com/id/mrn|5500"
        assert "mrn" not in params

    def test_get_patient_epic_fallback(self, client, fake_epic):
        fake_epic.fhir_replies.extend([
            httpx.Response(404),
            fhir_json(bundle({"resourceType": "Patient", "id": "eABC"})),
        ])

        response = client.get("/integrations/epic/Patient/203713")

        assert response.status_code == 200
        assert response.json()["data"]["id"] == "eABC"

    def test_get_patient_not_found(self, client, fake_cerner):
        fake_cerner.fhir_replies.append(fhir_json(operation_outcome("not-found"), 404))

        response = client.get("/integrations/cerner/Patient/missing")

        body = response.json()
        assert response.status_code == 404
        assert body["success"] is False
        assert body["classification"] == "NotFound"
        assert body["request_id"]
        assert body["message"] == "cerner returned HTTP 404 (not-found)"

    def test_patient_data(self, client, fake_cerner):
        response = client.get("/integrations/cerner/Patient/12724066/Condition")

        assert response.status_code == 200
        assert fake_cerner.fhir_requests[0].url.params["patient"] == "12724066"

    def test_epic_patient_data_returns_resources(self, client, fake_epic):
        fake_epic.fhir_replies.append(
            fhir_json(bundle({"resourceType": "Condition", "id": "c1"}))
        )

        response = client.get("/integrations/epic/Patient/eXYZ/Condition")

        assert response.json()["data"] == [{"resourceType": "Condition", "id": "c1"}]

    def test_epic_patient_data_unsupported(self, client, fake_epic):
        client.get("/integrations/epic/metadata")

        response = client.get("/integrations/epic/Patient/eXYZ/Immunization")

        assert response.status_code == 400

    def test_actor_header_used_for_audit(self, client, audit_sink):
        client.get("/integrations/cerner/Patient/1", headers={"X-Actor-Id": "dr-grey"})

        assert audit_sink.recent()[0].actor_id == "dr-grey"


class TestWriteRoutes:

    def test_create(self, client, fake_cerner):
        fake_cerner.fhir_replies.append(
            fhir_json({"resourceType": "Observation", "id": "obs-1"}, 201)
        )

        response = client.post(
            "/integrations/cerner/Observation",
            json={"resourceType": "Observation", "code": {"text": "Heart rate"}},
        )

        assert response.status_code == 201
        assert response.json()["data"]["id"] == "obs-1"

    def test_update(self, client, fake_cerner):
        response = client.put(
            "/integrations/cerner/Observation/obs-1",
            json={"resourceType": "Observation", "id": "obs-1", "status": "amended"},
        )

        assert response.status_code == 200
        assert fake_cerner.fhir_requests[0].method == "PUT"

    def test_delete(self, client, fake_cerner):
        fake_cerner.fhir_replies.append(httpx.Response(204))

        response = client.delete("/integrations/cerner/Observation/obs-1")

        assert response.status_code == 200
        assert response.json()["data"] is None


class TestFailureMapping:
    """Test ErrorKind to HTTP status mapping."""

    @pytest.mark.parametrize("reply,status,classification", [
        (httpx.Response(400), 422, "VendorRejected"),
        (httpx.Response(500), 503, "VendorUnavailable"),
        (httpx.ConnectError("refused"), 503, "VendorUnavailable"),
    ])
    def test_vendor_failures(self, client, fake_cerner, reply, status, classification):
        fake_cerner.fhir_replies.append(reply)

        response = client.get("/integrations/cerner/Patient/1")

        assert response.status_code == status
        assert response.json()["classification"] == classification

    def test_auth_failure(self, client, fake_cerner):
        fake_cerner.fhir_replies.extend([httpx.Response(401), httpx.Response(401)])

        response = client.get("/integrations/cerner/Patient/1")

        assert response.status_code == 502
        assert response.json()["classification"] == "AuthFailure"

    def test_configuration_error(self, client, fake_epic):
        fake_epic.metadata = capability_statement(token_url=None)

        response = client.get("/integrations/epic/Patient/eXYZ")

        assert response.status_code == 500
        assert response.json()["classification"] == "ConfigurationError"
