"""
Cloud Run hosting control plane integration
Domain mappings that route a verified domain to the site renderer and carry its certificate state
"""

import os
import logging
from typing import Dict, List, Optional, Any

from domain_models import SslStatus, ExternalServiceError, HostingPermissionError
from platform_config import get_platform_config
from services.http_service import HttpApiService

logger = logging.getLogger(__name__)

MAPPING_API_VERSION = 'domains.cloudrun.com/v1'

DELEGATION_REMEDIATION = (
    "The hosting platform could not verify ownership of this domain. "
    "Switch the domain to nameserver delegation so the platform can manage its DNS, then deploy again."
)


class CloudRunService(HttpApiService):
    """Cloud Run domain mapping API (namespaces/{project}/domainmappings)"""

    service_name = 'cloud_run'

    def __init__(self):
        super().__init__()
        config = get_platform_config()
        self.project_id = config.gcp_project_id
        self.region = config.cloud_run_region
        self.service = config.cloud_run_service
        self.access_token = os.getenv('GCP_ACCESS_TOKEN')
        self.base_url = (f"https://{self.region}-run.googleapis.com/apis/{MAPPING_API_VERSION}"
                         f"/namespaces/{self.project_id}")
        self.headers = {'Content-Type': 'application/json', 'Accept': 'application/json'}
        if self.access_token:
            self.headers['Authorization'] = f'Bearer {self.access_token.strip()}'

    @property
    def is_configured(self) -> bool:
        return bool(self.project_id and self.access_token)

    @staticmethod
    def _error_message(data: Dict[str, Any], status_code: int) -> str:
        error = data.get('error') or {}
        if isinstance(error, dict) and error.get('message'):
            return error['message']
        return data.get('message') or f"HTTP {status_code}"

    async def get_mapping(self, domain_name: str) -> Optional[Dict[str, Any]]:
        """Mapping resource for a domain, None when no mapping exists"""
        self._require_configuration()
        response = await self.request('GET', f'/domainmappings/{domain_name}')
        if response.status_code == 404:
            return None
        data = self.json_or_empty(response)
        if response.status_code >= 400:
            raise ExternalServiceError(self.service_name, self._error_message(data, response.status_code),
                                       retryable=False, status_code=response.status_code)
        return data

    async def create_mapping(self, domain_name: str, route_name: Optional[str] = None) -> Dict[str, Any]:
        """
        Map a domain to the renderer service

        An existing mapping counts as success.

        Raises:
            HostingPermissionError: the control plane refused the mapping
            ExternalServiceError: any other rejection
        """
        self._require_configuration()
        body = {
            'apiVersion': MAPPING_API_VERSION,
            'kind': 'DomainMapping',
            'metadata': {'name': domain_name, 'namespace': self.project_id},
            'spec': {'routeName': route_name or self.service, 'certificateMode': 'AUTOMATIC'},
        }
        response = await self.request('POST', '/domainmappings', json=body)
        data = self.json_or_empty(response)

        if response.status_code in (200, 201):
            logger.info(f"✅ Cloud Run mapping created: {domain_name} → {body['spec']['routeName']}")
            return {'success': True, 'created': True, 'mapping': data}
        if response.status_code == 409:
            logger.info(f"ℹ️ Cloud Run mapping already exists for {domain_name}")
            return {'success': True, 'created': False, 'mapping': data}

        message = self._error_message(data, response.status_code)
        if response.status_code in (401, 403):
            logger.error(f"❌ Cloud Run refused mapping for {domain_name}: {message}")
            raise HostingPermissionError(self.service_name, message, status_code=response.status_code)
        raise ExternalServiceError(self.service_name, message, retryable=False, status_code=response.status_code)

    async def delete_mapping(self, domain_name: str) -> bool:
        self._require_configuration()
        response = await self.request('DELETE', f'/domainmappings/{domain_name}')
        if response.status_code in (200, 202, 404):
            logger.info(f"🗑️ Cloud Run mapping released for {domain_name}")
            return True
        logger.error(f"❌ Cloud Run mapping delete failed for {domain_name}: HTTP {response.status_code}")
        return False

    @staticmethod
    def _conditions(mapping: Dict[str, Any]) -> List[Dict[str, Any]]:
        return (mapping.get('status') or {}).get('conditions') or []

    async def certificate_status(self, domain_name: str) -> SslStatus:
        """Certificate state from the mapping's CertificateProvisioned condition"""
        mapping = await self.get_mapping(domain_name)
        if mapping is None:
            return SslStatus.PENDING
        for condition in self._conditions(mapping):
            if condition.get('type') == 'CertificateProvisioned':
                if condition.get('status') == 'True':
                    return SslStatus.ACTIVE
                return SslStatus.PROVISIONING
        return SslStatus.PENDING
