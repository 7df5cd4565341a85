"""
Cerner FHIR R4 Connector

Cerner-specific behavior:
- Tenant-scoped static token endpoint
- Cerner-Tenant header
- Namespaced MRN identifier system
- Concurrent multi-type clinical data retrieval
- Observation defaults (status, vital-signs category, source extension)
"""

from typing import Any, Dict, List, Optional, Sequence
import asyncio

import structlog

from fhirbridge.integrations.auth import AuthenticationStrategy, StaticEndpointStrategy
from fhirbridge.integrations.connector import EHRConnector, ensure_extension
from fhirbridge.integrations.models import (
    CallerContext,
    OperationResult,
    bundle_resources,
)

logger = structlog.get_logger(__name__)


TOKEN_URL_TEMPLATE = (
    "https://authorization.cerner.com/tenants/{tenant}"
    "/protocols/oauth2/profiles/smart-v1/token"
)
SOURCE_EXTENSION = "https://fhir.cerner.com/extension/source"
OBSERVATION_CATEGORY_SYSTEM = "http://terminology.hl7.org/CodeSystem/observation-category"

DEFAULT_CLINICAL_TYPES = ("Condition", "Observation", "MedicationRequest", "AllergyIntolerance")


class CernerConnector(EHRConnector):
    """Cerner (Oracle Health) FHIR R4 connector."""

    IDENTIFIER_SYSTEM = "https://fhir.cerner.com/id/mrn"
    SOURCE_NAME = "Healthcare AI Platform"

    def _build_strategy(self) -> AuthenticationStrategy:
        return StaticEndpointStrategy(self.config, self._http, TOKEN_URL_TEMPLATE)

    def vendor_headers(self) -> Dict[str, str]:
        return {
            "Cerner-Tenant": self.config.option("tenant"),
            "Accept-Charset": "utf-8",
        }

    def prepare_for_create(self, resource_type: str, body: Dict[str, Any]) -> Dict[str, Any]:
        resource = super().prepare_for_create(resource_type, body)
        if resource_type != "Observation":
            return resource

        if not resource.get("status"):
            resource["status"] = "final"

        if not resource.get("category"):
            resource["category"] = [{
                "coding": [{
                    "system": OBSERVATION_CATEGORY_SYSTEM,
                    "code": "vital-signs",
                    "display": "Vital Signs",
                }]
            }]

        ensure_extension(resource, {
            "url": SOURCE_EXTENSION,
            "valueUri": self.SOURCE_NAME,
        })
        return resource

    async def get_patient_documents(
        self,
        patient_id: str,
        caller: Optional[CallerContext] = None,
    ) -> OperationResult:
        """Most recent clinical documents for a patient (payload is a list)."""
        result = await self.search(
            "DocumentReference",
            {"patient": patient_id, "_count": 50, "_sort": "-date"},
            caller=caller,
        )
        if not result.success:
            return result
        return result.model_copy(update={"payload": bundle_resources(result.payload)})

    async def get_patient_clinical_data(
        self,
        patient_id: str,
        resource_types: Sequence[str] = DEFAULT_CLINICAL_TYPES,
        caller: Optional[CallerContext] = None,
    ) -> Dict[str, OperationResult]:
        """
        Fetch several resource types for a patient concurrently.

        Each type gets its own result; a failing type does not fail the
        others. Successful payloads are lists of resources.
        """
        async def fetch(resource_type: str) -> OperationResult:
            result = await self.search(
                resource_type,
                {"patient": patient_id, "_count": 100},
                caller=caller,
            )
            if not result.success:
                logger.warning(
                    "Clinical data search failed",
                    vendor=self.vendor_id,
                    resource_type=resource_type,
                    kind=result.classification.value if result.classification else None,
                    request_id=result.request_id,
                )
                return result
            return result.model_copy(update={"payload": bundle_resources(result.payload)})

        types: List[str] = list(dict.fromkeys(resource_types))
        results = await asyncio.gather(*(fetch(t) for t in types))
        return dict(zip(types, results))

    async def create_observation(
        self,
        observation: Dict[str, Any],
        caller: Optional[CallerContext] = None,
    ) -> OperationResult:
        """Create an Observation with Cerner defaults applied."""
        return await self.create("Observation", observation, caller=caller)
