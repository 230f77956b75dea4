"""
Certificate Provisioning Monitor
Reflects certificate state from the hosting control plane into domain records.
Never requests issuance; certificates follow from the domain routing to the platform.
"""

import logging
from typing import Dict, Optional, Any

from domain_models import Domain, DomainStatus, SslStatus, ExternalServiceError
from services.cloud_run import CloudRunService

logger = logging.getLogger(__name__)

SWEEP_STATUSES = frozenset({DomainStatus.SSL_PENDING, DomainStatus.ACTIVE, DomainStatus.DEPLOYED})


class CertificateMonitor:
    """Certificate status lookups and the periodic certificate sweep"""

    def __init__(self, registry, cloud_run: Optional[CloudRunService] = None):
        self.registry = registry
        self.cloud_run = cloud_run or CloudRunService()
        self.last_sweep: Optional[Dict[str, Any]] = None

    async def check(self, domain: Domain) -> SslStatus:
        """Current certificate state for a verified domain; lookup failures read as pending"""
        if domain.uses_delegation:
            # Delegated zones are served with the edge certificate once the zone is active
            return SslStatus.ACTIVE
        if not self.cloud_run.is_configured:
            logger.debug(f"Cloud Run not configured, certificate state for {domain.name} unknown")
            return SslStatus.PENDING
        try:
            return await self.cloud_run.certificate_status(domain.name)
        except ExternalServiceError as e:
            logger.warning(f"⚠️ Certificate lookup failed for {domain.name}: {e}")
            return SslStatus.PENDING

    async def reflect(self, domain_id: str) -> Optional[Domain]:
        """Copy the certificate state onto the record; ssl_pending becomes active once issued"""
        domain = await self.registry.get(domain_id)
        if domain is None or domain.status not in SWEEP_STATUSES:
            return domain

        ssl_status = await self.check(domain)
        if domain.status == DomainStatus.SSL_PENDING and ssl_status == SslStatus.ACTIVE:
            logger.info(f"🔒 Certificate issued for {domain.name}")
            return await self.registry.transition(domain_id, DomainStatus.ACTIVE, ssl_status=ssl_status,
                                                  status_message="Domain is live over HTTPS")
        if ssl_status != domain.ssl_status:
            return await self.registry.update(domain_id, ssl_status=ssl_status)
        return domain

    async def run_sweep(self) -> Dict[str, Any]:
        domains = self.registry.list_domains(statuses=SWEEP_STATUSES)
        results = {'checked': 0, 'activated': 0, 'errors': 0}
        if not domains:
            self.last_sweep = results
            return results

        logger.info(f"🔍 Certificate sweep: {len(domains)} domains")
        for domain in domains:
            try:
                updated = await self.reflect(domain.id)
                results['checked'] += 1
                if (updated is not None and domain.status == DomainStatus.SSL_PENDING
                        and updated.status == DomainStatus.ACTIVE):
                    results['activated'] += 1
            except Exception as e:
                logger.error(f"❌ Certificate check failed for {domain.name}: {e}")
                results['errors'] += 1

        if results['activated']:
            logger.info(f"✅ Certificate sweep: {results['activated']} domains now active")
        self.last_sweep = results
        return results
