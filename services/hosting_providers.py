"""
Hosting target clients
Attach a verified domain to a project on Vercel, Cloudflare Pages, Netlify or Cloud Run
"""

import os
import logging
from typing import Dict, Any

from domain_models import (
    Domain, DeploymentProvider, DomainValidationError, ExternalServiceError, HostingPermissionError,
)
from services.http_service import HttpApiService
from services.cloud_run import CloudRunService

logger = logging.getLogger(__name__)


class HostingProviderClient(HttpApiService):
    """
    Common shape of a hosting target

    bind() returns {'success': True, 'url': ...} or raises ExternalServiceError;
    unbind() returns whether the binding is gone.
    """

    provider = None

    def _raise_for_status(self, response, data: Dict[str, Any], domain_name: str):
        message = (data.get('error') or {}).get('message') if isinstance(data.get('error'), dict) else None
        message = message or data.get('message') or f"HTTP {response.status_code}"
        if response.status_code in (401, 403):
            raise HostingPermissionError(self.service_name, message, status_code=response.status_code)
        logger.error(f"❌ {self.service_name} rejected {domain_name}: {message}")
        raise ExternalServiceError(self.service_name, message, retryable=False, status_code=response.status_code)

    async def bind(self, domain: Domain) -> Dict[str, Any]:
        raise NotImplementedError

    async def unbind(self, domain: Domain) -> bool:
        raise NotImplementedError


class VercelProvider(HostingProviderClient):
    service_name = 'vercel'
    provider = DeploymentProvider.VERCEL

    def __init__(self):
        super().__init__()
        self.token = os.getenv('VERCEL_TOKEN')
        self.base_url = "https://api.vercel.com"
        if self.token:
            self.headers['Authorization'] = f'Bearer {self.token.strip()}'

    @property
    def is_configured(self) -> bool:
        return bool(self.token)

    async def bind(self, domain: Domain) -> Dict[str, Any]:
        self._require_configuration()
        response = await self.request('POST', f'/v10/projects/{domain.project_id}/domains', json={'name': domain.name})
        data = self.json_or_empty(response)
        # 409: already attached to this project
        if response.status_code in (200, 201, 409):
            return {'success': True, 'url': domain.https_url}
        self._raise_for_status(response, data, domain.name)

    async def unbind(self, domain: Domain) -> bool:
        self._require_configuration()
        response = await self.request('DELETE', f'/v9/projects/{domain.project_id}/domains/{domain.name}')
        return response.status_code in (200, 204, 404)


class NetlifyProvider(HostingProviderClient):
    service_name = 'netlify'
    provider = DeploymentProvider.NETLIFY

    def __init__(self):
        super().__init__()
        self.token = os.getenv('NETLIFY_TOKEN')
        self.base_url = "https://api.netlify.com/api/v1"
        if self.token:
            self.headers['Authorization'] = f'Bearer {self.token.strip()}'

    @property
    def is_configured(self) -> bool:
        return bool(self.token)

    async def bind(self, domain: Domain) -> Dict[str, Any]:
        self._require_configuration()
        response = await self.request('PATCH', f'/sites/{domain.project_id}', json={'custom_domain': domain.name})
        data = self.json_or_empty(response)
        if response.status_code == 200:
            return {'success': True, 'url': domain.https_url}
        self._raise_for_status(response, data, domain.name)

    async def unbind(self, domain: Domain) -> bool:
        self._require_configuration()
        response = await self.request('PATCH', f'/sites/{domain.project_id}', json={'custom_domain': None})
        return response.status_code in (200, 404)


class CloudflarePagesProvider(HostingProviderClient):
    service_name = 'cloudflare_pages'
    provider = DeploymentProvider.CLOUDFLARE

    def __init__(self):
        super().__init__()
        self.token = os.getenv('CLOUDFLARE_API_TOKEN')
        self.account_id = os.getenv('CLOUDFLARE_ACCOUNT_ID')
        self.base_url = f"https://api.cloudflare.com/client/v4/accounts/{self.account_id}/pages/projects"
        if self.token:
            self.headers['Authorization'] = f'Bearer {self.token.strip()}'

    @property
    def is_configured(self) -> bool:
        return bool(self.token and self.account_id)

    async def bind(self, domain: Domain) -> Dict[str, Any]:
        self._require_configuration()
        response = await self.request('POST', f'/{domain.project_id}/domains', json={'name': domain.name})
        data = self.json_or_empty(response)
        if response.status_code == 200 and data.get('success'):
            return {'success': True, 'url': domain.https_url}
        errors = data.get('errors') or []
        if any('already' in str(e.get('message', '')).lower() for e in errors):
            return {'success': True, 'url': domain.https_url}
        if errors:
            data = {'message': '; '.join(str(e.get('message', e)) for e in errors)}
        self._raise_for_status(response, data, domain.name)

    async def unbind(self, domain: Domain) -> bool:
        self._require_configuration()
        response = await self.request('DELETE', f'/{domain.project_id}/domains/{domain.name}')
        return response.status_code in (200, 404)


class CloudRunProvider(HostingProviderClient):
    """Maps the domain to the shared renderer; project_id selects the site by host header"""

    service_name = 'cloud_run'
    provider = DeploymentProvider.CLOUD_RUN

    def __init__(self, cloud_run: CloudRunService = None):
        super().__init__()
        self.cloud_run = cloud_run or CloudRunService()

    @property
    def is_configured(self) -> bool:
        return self.cloud_run.is_configured

    async def bind(self, domain: Domain) -> Dict[str, Any]:
        await self.cloud_run.create_mapping(domain.name)
        return {'success': True, 'url': domain.https_url}

    async def unbind(self, domain: Domain) -> bool:
        return await self.cloud_run.delete_mapping(domain.name)


PROVIDER_CLASSES = {
    DeploymentProvider.VERCEL: VercelProvider,
    DeploymentProvider.NETLIFY: NetlifyProvider,
    DeploymentProvider.CLOUDFLARE: CloudflarePagesProvider,
    DeploymentProvider.CLOUD_RUN: CloudRunProvider,
}


def parse_provider(value) -> DeploymentProvider:
    if isinstance(value, DeploymentProvider):
        return value
    try:
        return DeploymentProvider(str(value or '').strip().lower())
    except ValueError:
        allowed = ', '.join(p.value for p in DeploymentProvider)
        raise DomainValidationError(f"Unknown hosting provider '{value}' (expected one of: {allowed})")


def get_hosting_provider(provider) -> HostingProviderClient:
    return PROVIDER_CLASSES[parse_provider(provider)]()
