"""
Deployment Binder
Binds a domain to its project on a hosting target and records the outcome in the deployment log
"""

import asyncio
import logging
from typing import Dict, Optional, Any

from domain_models import (
    Domain, DomainStatus, DeploymentInfo, DeploymentLogStatus, DeploymentProvider, MappingStatus,
    DomainValidationError, ExternalServiceError, HostingPermissionError, InvalidTransitionError,
    can_transition, utc_now,
)
from admin_alerts import send_warning_alert
from services.cloud_run import DELEGATION_REMEDIATION
from services.hosting_providers import HostingProviderClient, get_hosting_provider, parse_provider

logger = logging.getLogger(__name__)

# Where a failed deployment leaves the domain, keyed by its status before the attempt
REVERT_STATUS = {
    DomainStatus.DEPLOYED: DomainStatus.ACTIVE,
    DomainStatus.DEPLOYING: DomainStatus.PENDING,
    DomainStatus.VERIFYING: DomainStatus.PENDING,
    DomainStatus.ERROR: DomainStatus.PENDING,
}


class DeploymentBinder:
    """Deploy and release hosting bindings under the domain's 'deploy' lease"""

    def __init__(self, registry, leases, providers: Optional[Dict[DeploymentProvider, HostingProviderClient]] = None):
        self.registry = registry
        self.leases = leases
        self._providers: Dict[DeploymentProvider, HostingProviderClient] = dict(providers or {})

    def get_provider(self, provider: DeploymentProvider) -> HostingProviderClient:
        if provider not in self._providers:
            self._providers[provider] = get_hosting_provider(provider)
        return self._providers[provider]

    async def deploy(self, domain_id: str, provider='cloud_run') -> Dict[str, Any]:
        """
        Bind a domain to its project on a hosting provider

        Returns:
            Dict: {'success': True, 'url'} or {'success': False, 'error', 'retryable'}

        Raises:
            DomainValidationError: unknown provider or no project selected (nothing is logged)
            DomainNotFoundError: unknown domain
            InvalidTransitionError: the domain cannot be deployed from its current status
            OperationInProgressError: another operation holds the domain
        """
        target = parse_provider(provider)
        domain = await self.registry.require(domain_id)
        if not domain.project_id:
            raise DomainValidationError(f"Select a project for {domain.name} before deploying")
        if not can_transition(domain.status, DomainStatus.DEPLOYING):
            raise InvalidTransitionError(domain_id, domain.status, DomainStatus.DEPLOYING)

        return await self.leases.run(domain_id, 'deploy', lambda: self._deploy(domain_id, target))

    async def _deploy(self, domain_id: str, provider: DeploymentProvider) -> Dict[str, Any]:
        domain = await self.registry.require(domain_id)
        prior = domain.status
        previous = domain.deployment or DeploymentInfo()
        logger.info(f"🚀 DEPLOY: {domain.name} → {provider.value} (project {domain.project_id})")
        # The target provider is on record before bind() so a delete can always release it
        await self.registry.transition(
            domain_id, DomainStatus.DEPLOYING,
            deployment=DeploymentInfo(
                provider=provider.value,
                deployment_url=previous.deployment_url,
                last_deployed_at=previous.last_deployed_at,
            ),
            status_message=f"Deploying to {provider.value}...",
        )

        try:
            result = await self.get_provider(provider).bind(domain)
        except asyncio.CancelledError:
            if not self.leases.is_deleting(domain_id):
                await self._record_interruption(domain, prior, provider)
            raise
        except Exception as e:
            return await self._record_failure(domain, prior, provider, e)

        url = result.get('url') or domain.https_url
        deployment = DeploymentInfo(provider=provider.value, deployment_url=url, last_deployed_at=utc_now())
        await self.registry.transition(
            domain_id, DomainStatus.DEPLOYED,
            deployment=deployment,
            cloud_run_mapping_status=MappingStatus.OK,
            cloud_run_error=None,
            status_message=f"Live at {url}",
        )
        await self.registry.append_log(
            domain_id, DeploymentLogStatus.SUCCESS, f"Deployed {domain.name} to {provider.value}",
            {'provider': provider.value, 'url': url, 'projectId': domain.project_id},
        )
        logger.info(f"✅ DEPLOY: {domain.name} live at {url}")
        return {'success': True, 'url': url}

    async def _record_interruption(self, domain: Domain, prior: DomainStatus, provider: DeploymentProvider):
        restore_to = REVERT_STATUS[prior] if prior == DomainStatus.DEPLOYING else prior
        logger.warning(f"⚠️ DEPLOY: {domain.name} → {provider.value} interrupted, back to {restore_to.value}")
        await self.registry.transition(
            domain.id, restore_to, status_message=f"Deployment to {provider.value} was interrupted; deploy again",
        )

    async def _record_failure(self, domain: Domain, prior: DomainStatus, provider: DeploymentProvider,
                              error: Exception) -> Dict[str, Any]:
        permission_denied = isinstance(error, HostingPermissionError)
        retryable = isinstance(error, ExternalServiceError) and error.retryable
        if permission_denied:
            error_text = f"{error}. {DELEGATION_REMEDIATION}"
        else:
            error_text = str(error) or type(error).__name__
        if not isinstance(error, ExternalServiceError):
            logger.exception(f"❌ DEPLOY: unexpected failure binding {domain.name}")
        else:
            logger.error(f"❌ DEPLOY: {domain.name} → {provider.value} failed: {error}")

        previous = domain.deployment or DeploymentInfo()
        revert_to = REVERT_STATUS.get(prior, prior)
        await self.registry.transition(
            domain.id, revert_to,
            cloud_run_mapping_status=MappingStatus.ERROR,
            cloud_run_error=error_text,
            deployment=DeploymentInfo(
                provider=provider.value,
                deployment_url=previous.deployment_url,
                last_deployed_at=previous.last_deployed_at,
                error=error_text,
            ),
            status_message=f"Deployment failed: {error_text}",
        )

        details = {'provider': provider.value, 'error': str(error), 'retryable': retryable}
        if permission_denied:
            details['remediation'] = 'switch_to_delegation'
        await self.registry.append_log(
            domain.id, DeploymentLogStatus.FAILED, f"Deployment of {domain.name} to {provider.value} failed", details,
        )

        if permission_denied:
            await send_warning_alert(
                "DeploymentBinder",
                f"Hosting refused mapping for {domain.name}: {error}",
                "hosting",
                {'domain_id': domain.id, 'domain_name': domain.name, 'provider': provider.value},
            )
        return {'success': False, 'error': error_text, 'retryable': retryable}

    async def release(self, domain: Domain) -> bool:
        """Remove the domain's hosting binding; True when nothing remains bound"""
        deployment = domain.deployment
        if deployment is None or not deployment.provider:
            return True
        try:
            provider = parse_provider(deployment.provider)
        except DomainValidationError:
            logger.warning(f"⚠️ Unknown provider '{deployment.provider}' recorded for {domain.name}, nothing to release")
            return True

        try:
            released = await self.get_provider(provider).unbind(domain)
        except ExternalServiceError as e:
            logger.warning(f"⚠️ Could not release {provider.value} binding for {domain.name}: {e}")
            return False
        if released:
            logger.info(f"🔓 Released {provider.value} binding for {domain.name}")
        return released
