"""
Certificate monitor tests
Read-only certificate lookups and the ssl_pending → active sweep
"""

import pytest
from unittest.mock import AsyncMock

from domain_models import DomainStatus, SslStatus, DelegationStrategy, ExternalServiceError
from services.certificate_monitor import CertificateMonitor
from conftest import make_domain, PLATFORM_NAMESERVERS


@pytest.mark.asyncio
class TestCertificateCheck:

    async def test_delegated_domains_use_edge_certificate(self, certificates, mock_cloud_run):
        domain = make_domain(dns_config=DelegationStrategy(nameservers=PLATFORM_NAMESERVERS))
        assert await certificates.check(domain) == SslStatus.ACTIVE
        mock_cloud_run.certificate_status.assert_not_awaited()

    async def test_reports_control_plane_state(self, certificates, mock_cloud_run):
        mock_cloud_run.certificate_status.return_value = SslStatus.PROVISIONING
        assert await certificates.check(make_domain(name="example.com")) == SslStatus.PROVISIONING
        mock_cloud_run.certificate_status.assert_awaited_once_with("example.com")

    async def test_lookup_failure_reads_as_pending(self, certificates, mock_cloud_run):
        mock_cloud_run.certificate_status.side_effect = ExternalServiceError('cloud_run', 'unavailable')
        assert await certificates.check(make_domain()) == SslStatus.PENDING

    async def test_unconfigured_control_plane(self, registry, mock_cloud_run):
        mock_cloud_run.is_configured = False
        monitor = CertificateMonitor(registry, cloud_run=mock_cloud_run)
        assert await monitor.check(make_domain()) == SslStatus.PENDING
        mock_cloud_run.certificate_status.assert_not_awaited()


@pytest.mark.asyncio
class TestCertificateSweep:

    async def test_issued_certificate_activates_domain(self, registry, certificates):
        domain = await registry.add(make_domain(status=DomainStatus.SSL_PENDING, ssl_status=SslStatus.PROVISIONING))

        results = await certificates.run_sweep()

        assert results == {'checked': 1, 'activated': 1, 'errors': 0}
        updated = await registry.get(domain.id)
        assert updated.status == DomainStatus.ACTIVE
        assert updated.ssl_status == SslStatus.ACTIVE
        assert certificates.last_sweep == results

    async def test_still_provisioning_updates_ssl_status_only(self, registry, certificates, mock_cloud_run):
        mock_cloud_run.certificate_status.return_value = SslStatus.PROVISIONING
        domain = await registry.add(make_domain(status=DomainStatus.SSL_PENDING, ssl_status=SslStatus.PENDING))

        results = await certificates.run_sweep()

        assert results['activated'] == 0
        updated = await registry.get(domain.id)
        assert updated.status == DomainStatus.SSL_PENDING
        assert updated.ssl_status == SslStatus.PROVISIONING

    async def test_deployed_domains_keep_their_status(self, registry, certificates):
        domain = await registry.add(make_domain(status=DomainStatus.DEPLOYED, ssl_status=SslStatus.PROVISIONING))
        await certificates.run_sweep()
        updated = await registry.get(domain.id)
        assert updated.status == DomainStatus.DEPLOYED
        assert updated.ssl_status == SslStatus.ACTIVE

    async def test_pending_domains_are_skipped(self, registry, certificates, mock_cloud_run):
        await registry.add(make_domain(status=DomainStatus.PENDING))
        results = await certificates.run_sweep()
        assert results == {'checked': 0, 'activated': 0, 'errors': 0}
        mock_cloud_run.certificate_status.assert_not_awaited()

    async def test_one_failure_does_not_stop_the_sweep(self, registry, certificates):
        await registry.add(make_domain(status=DomainStatus.SSL_PENDING))
        await registry.add(make_domain(status=DomainStatus.SSL_PENDING))
        registry.transition = AsyncMock(side_effect=[RuntimeError("store down"), None])

        results = await certificates.run_sweep()
        assert results['errors'] == 1
        assert results['checked'] == 1
