"""
Epic FHIR R4 Connector

Epic-specific behavior:
- Token endpoint discovered from the SMART oauth-uris extension
- Epic-Client-ID and non-production mode headers
- Patient lookup by id with MRN search fallback
- Recent-data default for patient data searches
- Document source extension on DocumentReference creation
"""

from typing import Any, Dict, Optional

import structlog

from fhirbridge.integrations.auth import AuthenticationStrategy, DiscoveryStrategy
from fhirbridge.integrations.connector import EHRConnector, ensure_extension
from fhirbridge.integrations.errors import UnsupportedResourceError
from fhirbridge.integrations.models import (
    CallerContext,
    ErrorKind,
    OperationResult,
    Verb,
    bundle_resources,
)

logger = structlog.get_logger(__name__)


DOCUMENT_SOURCE_EXTENSION = "http://open.epic.com/FHIR/StructureDefinition/document-source"
DEFAULT_LAST_UPDATED = "gt2022-01-01"


class EpicConnector(EHRConnector):
    """
    Epic FHIR R4 connector.

    Epic publishes its token endpoint in the capability statement, so the
    first authentication also loads the capabilities used by is_supported().
    """

    IDENTIFIER_SYSTEM = "MRN"
    SOURCE_NAME = "Healthcare AI Platform"

    def _build_strategy(self) -> AuthenticationStrategy:
        return DiscoveryStrategy(self.config, self._http, self.capabilities)

    def vendor_headers(self) -> Dict[str, str]:
        headers = {"Epic-Client-ID": self.config.client_id}
        if self.config.flag("non_production_mode"):
            headers["Epic-Client-NonProductionMode"] = "true"
        return headers

    def prepare_for_create(self, resource_type: str, body: Dict[str, Any]) -> Dict[str, Any]:
        resource = super().prepare_for_create(resource_type, body)
        if resource_type == "DocumentReference":
            ensure_extension(resource, {
                "url": DOCUMENT_SOURCE_EXTENSION,
                "valueString": self.SOURCE_NAME,
            })
        return resource

    async def get_patient(
        self,
        patient_id: str,
        caller: Optional[CallerContext] = None,
    ) -> OperationResult:
        """
        Read a patient by id, falling back to an MRN search.

        The result carries the request id of the last vendor call made.
        When the MRN search matches nothing, the NotFound result keeps the
        search's request id; that request is audited as a successful
        search, since the vendor answered it with an empty Bundle.
        """
        result = await self.read("Patient", patient_id, caller=caller)
        if result.success or result.classification is not ErrorKind.NOT_FOUND:
            return result

        logger.info("Patient not found by id, trying MRN search", vendor=self.vendor_id)
        search = await self.find_patient_by_external_id(patient_id, caller=caller)
        if not search.success:
            return search

        patients = bundle_resources(search.payload)
        if not patients:
            return OperationResult.failure(
                search.request_id,
                ErrorKind.NOT_FOUND,
                http_status=404,
                vendor_message=f"{self.vendor_id} has no patient with that id or MRN",
            )
        return OperationResult.ok(search.request_id, patients[0], http_status=search.http_status)

    async def get_patient_data(
        self,
        patient_id: str,
        resource_type: str,
        params: Optional[Dict[str, Any]] = None,
        caller: Optional[CallerContext] = None,
    ) -> OperationResult:
        """
        Search a patient's clinical resources of one type.

        Without a date or _lastUpdated filter only recently updated
        resources are returned. The payload is the list of resources.

        Raises:
            UnsupportedResourceError: If the instance does not support
                searching the resource type
        """
        if not self.is_supported(resource_type, Verb.SEARCH.value):
            raise UnsupportedResourceError(self.vendor_id, resource_type, Verb.SEARCH.value)

        params = params or {}
        search_params = {"patient": patient_id, **params}
        if not params.get("date") and not params.get("_lastUpdated"):
            search_params["_lastUpdated"] = self.config.option(
                "default_last_updated", DEFAULT_LAST_UPDATED
            )

        result = await self.search(resource_type, search_params, caller=caller)
        if not result.success:
            return result
        return result.model_copy(update={"payload": bundle_resources(result.payload)})

    async def create_document(
        self,
        document_reference: Dict[str, Any],
        caller: Optional[CallerContext] = None,
    ) -> OperationResult:
        """
        Create a DocumentReference.

        Raises:
            ValueError: If the document has no content
        """
        if not document_reference.get("content"):
            raise ValueError("Document content is required")
        return await self.create("DocumentReference", document_reference, caller=caller)
