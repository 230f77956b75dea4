"""
Domain Orchestrator - the façade every caller goes through

Owns the per-domain lease arena and the task scheduler, and converts failures from
external services into domain status and messages before anything is persisted.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any

from domain_models import (
    Domain, DomainStatus, SslStatus, OrderState, RecordsStrategy, DelegationStrategy,
    DeploymentLogEntry, OrderStatus, DomainOffer, VERIFIED_STATUSES, AWAITING_DNS_STATUSES,
    DomainLifecycleError, DomainValidationError, ExternalServiceError, LeaseRevokedError, OperationInProgressError,
    validate_domain_name, dns_strategy_from_dict, utc_now,
)
from domain_registry import DomainRegistry, PATCH_ALIASES, BINDING_STATUSES
from operation_leases import OperationLeaseArena
from task_scheduler import TaskScheduler
from platform_config import get_platform_config
from admin_alerts import send_warning_alert
from services.http_service import HttpApiService
from services.cloudflare import CloudflareService
from services.dns_verification import DnsVerificationEngine
from services.certificate_monitor import CertificateMonitor
from services.deployment_binder import DeploymentBinder
from services.order_tracker import DomainOrderTracker
from services.registration_orchestrator import RegistrationOrchestrator

logger = logging.getLogger(__name__)

DNS_SWEEP_KEY = 'sweep:dns'
CERTIFICATE_SWEEP_KEY = 'sweep:certificates'


def _walk_subclasses(cls):
    for subclass in cls.__subclasses__():
        yield subclass
        yield from _walk_subclasses(subclass)


class DomainOrchestrator:
    """Add, update, delete, verify, deploy and purchase domains"""

    def __init__(self, registry: Optional[DomainRegistry] = None, verifier: Optional[DnsVerificationEngine] = None,
                 certificates: Optional[CertificateMonitor] = None, binder: Optional[DeploymentBinder] = None,
                 tracker: Optional[DomainOrderTracker] = None, registration: Optional[RegistrationOrchestrator] = None,
                 cloudflare: Optional[CloudflareService] = None, leases: Optional[OperationLeaseArena] = None,
                 scheduler: Optional[TaskScheduler] = None, config=None):
        self.config = config or get_platform_config()
        self.registry = registry or DomainRegistry()
        self.leases = leases or OperationLeaseArena()
        self.scheduler = scheduler or TaskScheduler()
        self.cloudflare = cloudflare or CloudflareService()
        self.verifier = verifier or DnsVerificationEngine(cloudflare=self.cloudflare, config=self.config)
        self.certificates = certificates or CertificateMonitor(self.registry)
        self.binder = binder or DeploymentBinder(self.registry, self.leases)
        self.tracker = tracker or DomainOrderTracker(self.registry, scheduler=self.scheduler, config=self.config)
        self.registration = registration or RegistrationOrchestrator(
            self.registry, cloudflare=self.cloudflare, config=self.config)
        self._stale_alerted: set = set()

    # ============================================================================
    # CRUD
    # ============================================================================

    async def refetch(self, user_id: Optional[str] = None) -> List[Domain]:
        """Reload domains from the store"""
        return await self.registry.refresh(user_id)

    async def list_domains(self, user_id: Optional[str] = None) -> List[Domain]:
        await self.registry.refresh(user_id)
        return self.registry.list_domains(user_id)

    async def get_domain(self, domain_id: str) -> Domain:
        return await self.registry.require(domain_id)

    async def add_domain(self, name: str, user_id: str, project_id: Optional[str] = None,
                         project_user_id: Optional[str] = None, use_delegation: bool = False) -> Domain:
        """
        Connect an externally registered domain

        The domain starts in pending with the A/CNAME records the user must create, or in
        pending_nameservers when delegation is requested and the zone could be set up.

        Raises:
            DomainValidationError: malformed name, missing user, delegation unavailable
            DuplicateDomainError: the name is already connected
        """
        domain_name = validate_domain_name(name)
        if not user_id:
            raise DomainValidationError("A user is required to connect a domain")
        if use_delegation and not self.cloudflare.is_configured:
            raise DomainValidationError("Nameserver delegation is not available right now; use DNS records instead")

        domain = await self.registry.add(Domain(
            name=domain_name,
            user_id=user_id,
            project_id=project_id,
            project_user_id=project_user_id or (user_id if project_id else None),
            dns_config=RecordsStrategy(a_record=self.config.platform_ip, cname_target=domain_name),
            status_message=f"Add A @ → {self.config.platform_ip} and CNAME www → {domain_name}",
        ))

        if use_delegation:
            result = await self.switch_to_delegation(domain.id)
            if not result['success']:
                logger.warning(f"⚠️ Delegation setup failed for {domain_name}, keeping DNS records: {result['error']}")
                return await self.registry.update(
                    domain.id, status_message=f"Nameserver setup failed ({result['error']}). "
                                              f"Add A @ → {self.config.platform_ip} instead or retry delegation.")
            return result['domain']
        return domain

    async def update_domain(self, domain_id: str, patch: Dict[str, Any]) -> Domain:
        """
        Apply a patch in wire (camelCase) or attribute form

        Only projectId, projectUserId, dnsConfig, expiryDate, sslStatus and status are
        patchable. A 'status' key goes through the transition table and may not name
        deploying or deployed, which only a deployment writes.
        """
        patchable = set(PATCH_ALIASES.values())
        fields = {}
        status = None
        for key, value in (patch or {}).items():
            attr = PATCH_ALIASES.get(key, key)
            if attr not in patchable:
                raise DomainValidationError(f"Field '{key}' cannot be patched")
            if attr == 'status':
                status = self._coerce(DomainStatus, value, 'status')
                if status in BINDING_STATUSES:
                    raise DomainValidationError(f"Use deploy to move a domain to {status.value}")
            elif attr in ('project_id', 'project_user_id'):
                if value is not None and not isinstance(value, str):
                    raise DomainValidationError(f"Invalid {key} '{value}'")
                fields[attr] = value or None
            elif attr == 'dns_config':
                fields[attr] = value if value is None or isinstance(value, (RecordsStrategy, DelegationStrategy)) \
                    else dns_strategy_from_dict(value)
            elif attr == 'ssl_status':
                fields[attr] = self._coerce(SslStatus, value, 'sslStatus')
            elif attr == 'expiry_date':
                fields[attr] = self._parse_expiry(value)

        if status is not None:
            lease = self.leases.current(domain_id)
            if lease is not None:
                raise OperationInProgressError(domain_id, lease.operation)
            return await self.registry.transition(domain_id, status, **fields)
        return await self.registry.update(domain_id, **fields)

    @staticmethod
    def _parse_expiry(value) -> Optional[datetime]:
        if value is None or isinstance(value, datetime):
            return value
        if not isinstance(value, str):
            raise DomainValidationError(f"Invalid expiryDate '{value}'")
        try:
            return datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            raise DomainValidationError(f"Invalid expiryDate '{value}'")

    @staticmethod
    def _coerce(enum_cls, value, label: str):
        if isinstance(value, enum_cls):
            return value
        try:
            return enum_cls(value)
        except ValueError:
            raise DomainValidationError(f"Invalid {label} '{value}'")

    async def delete_domain(self, domain_id: str) -> Dict[str, Any]:
        """
        Delete a domain from any state; repeated or unknown ids are a no-op success

        Cancels the domain's in-flight operation and order polling, releases the hosting
        binding and the platform-created zone (best effort), then removes the record.
        """
        await self.leases.revoke_and_wait(domain_id)
        domain = await self.registry.get(domain_id)
        if domain is None:
            logger.info(f"ℹ️ Delete requested for unknown or deleted domain {domain_id}")
            return {'success': True, 'deleted': False}

        if domain.order_id:
            self.tracker.dismiss(domain.order_id)

        if not await self.binder.release(domain):
            await send_warning_alert(
                "DomainOrchestrator", f"Hosting binding for deleted domain {domain.name} was not released",
                "hosting", {'domain_id': domain.id, 'provider': domain.deployment.provider if domain.deployment else None},
            )
        await self._release_zone(domain)

        removed = await self.registry.remove(domain_id)
        return {'success': True, 'deleted': removed}

    async def _release_zone(self, domain: Domain):
        strategy = domain.dns_config
        if not isinstance(strategy, DelegationStrategy) or not strategy.zone_id or not self.cloudflare.is_configured:
            return
        try:
            released = await self.cloudflare.delete_zone(strategy.zone_id)
        except ExternalServiceError as e:
            logger.warning(f"⚠️ Zone release failed for {domain.name}: {e}")
            released = False
        if not released:
            await send_warning_alert(
                "DomainOrchestrator", f"Cloudflare zone for deleted domain {domain.name} was not released",
                "dns", {'domain_id': domain.id, 'zone_id': strategy.zone_id},
            )

    # ============================================================================
    # VERIFICATION
    # ============================================================================

    @staticmethod
    def _verify_response(verified: bool, message: str, domain: Domain, **extra) -> Dict[str, Any]:
        return {
            'verified': verified,
            'message': message,
            'status': domain.status.value,
            'ssl_status': domain.ssl_status.value,
            **extra,
        }

    @staticmethod
    def _awaiting_status(domain: Domain) -> DomainStatus:
        return DomainStatus.PENDING_NAMESERVERS if domain.uses_delegation else DomainStatus.PENDING

    async def verify_domain(self, domain_id: str) -> Dict[str, Any]:
        """
        Check DNS for a domain and move it along the state machine

        Already verified domains are left untouched. Concurrent calls for the same domain
        share one check. A negative result returns the domain to pending unless the records
        conflict; lookup failures never mark the domain as error.
        """
        domain = await self.registry.require(domain_id)
        if domain.status in VERIFIED_STATUSES:
            return self._verify_response(True, "Domain is verified", domain)
        if domain.status == DomainStatus.PENDING_REGISTRATION:
            return self._verify_response(False, "Registration is still in progress", domain)

        try:
            return await self.leases.run(domain_id, 'verify', lambda: self._verify(domain_id), coalesce=True)
        except LeaseRevokedError as e:
            if e.deleted:
                domain.status = DomainStatus.DELETED
                return self._verify_response(False, "Verification cancelled because the domain was deleted", domain)
            current = await self.registry.require(domain_id)
            return self._verify_response(False, "Verification was interrupted", current, retryable=True)

    async def _verify(self, domain_id: str) -> Dict[str, Any]:
        domain = await self.registry.require(domain_id)
        awaiting = self._awaiting_status(domain)
        # A check that leaves the domain where it was keeps its waiting clock
        since = domain.status_changed_at if domain.status == awaiting else None
        await self.registry.transition(domain_id, DomainStatus.VERIFYING, status_message="Checking DNS...")

        try:
            result = await self.verifier.verify(domain)
        except asyncio.CancelledError:
            if not self.leases.is_deleting(domain_id):
                await self.registry.transition(domain_id, awaiting, status_changed_at=since)
            raise
        except DomainValidationError:
            await self.registry.transition(domain_id, awaiting, status_changed_at=since)
            raise
        except Exception as e:
            logger.warning(f"⚠️ DNS check for {domain.name} could not complete: {e}")
            message = "We couldn't complete the DNS check right now. Try again in a few minutes."
            updated = await self.registry.transition(domain_id, awaiting, status_changed_at=since,
                                                     status_message=message)
            return self._verify_response(False, message, updated, retryable=True)

        if result.verified:
            ssl_status = await self.certificates.check(domain)
            target = DomainStatus.ACTIVE if ssl_status == SslStatus.ACTIVE else DomainStatus.SSL_PENDING
            message = result.message if target == DomainStatus.ACTIVE else \
                f"{result.message}. Certificate is being provisioned."
            updated = await self.registry.transition(
                domain_id, target, ssl_status=ssl_status, verified_at=utc_now(), status_message=message,
            )
            self._stale_alerted.discard(domain_id)
            logger.info(f"✅ {domain.name} verified → {target.value}")
            return self._verify_response(True, message, updated)

        if result.conflict:
            updated = await self.registry.transition(domain_id, DomainStatus.ERROR, status_message=result.message)
            logger.warning(f"⚠️ {domain.name} has conflicting DNS: {result.message}")
            return self._verify_response(False, result.message, updated, conflict=True)

        updated = await self.registry.transition(domain_id, awaiting, status_changed_at=since,
                                                 status_message=result.message)
        return self._verify_response(False, result.message, updated)

    async def switch_to_delegation(self, domain_id: str) -> Dict[str, Any]:
        """
        Move a domain to platform nameservers

        The remediation after the hosting platform refuses a record-based mapping.

        Returns:
            Dict: {'success': True, 'nameservers', 'domain'} or {'success': False, 'error', 'retryable'}
        """
        domain = await self.registry.require(domain_id)
        if not self.cloudflare.is_configured:
            raise DomainValidationError("Nameserver delegation is not available right now")

        async def switch() -> Dict[str, Any]:
            try:
                setup = await self.cloudflare.setup_delegated_domain(domain.name)
            except ExternalServiceError as e:
                return {'success': False, 'error': str(e), 'retryable': e.retryable}
            if not setup.get('success'):
                return {'success': False, 'error': setup.get('error', 'Zone setup failed'), 'retryable': True}

            nameservers = list(setup['nameservers'])
            updated = await self.registry.transition(
                domain_id, DomainStatus.PENDING_NAMESERVERS,
                dns_config=DelegationStrategy(nameservers=tuple(nameservers), zone_id=setup['zone_id']),
                cloud_run_mapping_status=None,
                cloud_run_error=None,
                status_message=f"Set your nameservers to {', '.join(nameservers)} at your registrar",
            )
            logger.info(f"🌐 {domain.name} switched to nameserver delegation")
            return {'success': True, 'nameservers': nameservers, 'domain': updated}

        return await self.leases.run(domain_id, 'delegation', switch)

    # ============================================================================
    # DEPLOYMENT
    # ============================================================================

    async def deploy_domain(self, domain_id: str, provider='cloud_run') -> Dict[str, Any]:
        try:
            return await self.binder.deploy(domain_id, provider)
        except LeaseRevokedError as e:
            if e.deleted:
                return {'success': False, 'error': "Deployment cancelled because the domain was deleted",
                        'retryable': False}
            return {'success': False, 'error': "Deployment was interrupted", 'retryable': True}

    async def get_deployment_logs(self, domain_id: str) -> List[DeploymentLogEntry]:
        await self.registry.require(domain_id)
        return await self.registry.get_logs(domain_id)

    # ============================================================================
    # PURCHASE
    # ============================================================================

    async def search_domains(self, query: str) -> List[DomainOffer]:
        return await self.tracker.search(query)

    async def buy_domain(self, domain_name: str, price: float, user_id: str, years: int = 1) -> Dict[str, Any]:
        if not user_id:
            raise DomainValidationError("A user is required to buy a domain")
        return await self.tracker.buy(domain_name, price, user_id, years)

    async def handle_checkout_return(self, params: Dict[str, Any]) -> Dict[str, Any]:
        outcome = self.tracker.parse_checkout_return(params)
        if outcome['outcome'] == 'success' and outcome['order_id']:
            self.tracker.track_order(outcome['order_id'])
            outcome['tracking'] = True
        return outcome

    async def poll_order(self, order_id: str) -> OrderStatus:
        return await self.tracker.poll_order(order_id)

    def dismiss_order(self, order_id: str) -> bool:
        return self.tracker.dismiss(order_id)

    async def handle_payment_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        if event.get('type') != 'checkout.session.completed':
            return {'status': 'ignored'}
        session = (event.get('data') or {}).get('object') or {}
        return await self.registration.handle_checkout_session(session)

    # ============================================================================
    # SWEEPS
    # ============================================================================

    async def _registration_failed(self, domain: Domain) -> bool:
        if domain.status != DomainStatus.ERROR or not domain.order_id:
            return False
        order = await self.registry.get_order(domain.order_id)
        return order is not None and order.status == OrderState.FAILED

    async def run_verification_sweep(self) -> Dict[str, Any]:
        """Re-verify every domain waiting on DNS and flag the ones waiting too long"""
        domains = await self.registry.refresh()
        results = {'checked': 0, 'verified': 0, 'errors': 0, 'stale': 0}
        stale_after = timedelta(hours=self.config.pending_alert_hours)
        now = utc_now()

        for domain in domains:
            if domain.status not in AWAITING_DNS_STATUSES or self.leases.is_busy(domain.id):
                continue
            if await self._registration_failed(domain):
                continue

            since = self.registry.pending_since(domain)
            if since is not None and now - since > stale_after and domain.id not in self._stale_alerted:
                self._stale_alerted.add(domain.id)
                results['stale'] += 1
                await send_warning_alert(
                    "DomainOrchestrator",
                    f"{domain.name} has been {domain.status.value} for over {self.config.pending_alert_hours:g} hours",
                    "dns",
                    {'domain_id': domain.id, 'user_id': domain.user_id, 'since': since.isoformat()},
                )

            try:
                response = await self.verify_domain(domain.id)
                results['checked'] += 1
                if response['verified']:
                    results['verified'] += 1
            except DomainLifecycleError as e:
                logger.warning(f"⚠️ Verification sweep skipped {domain.name}: {e}")
                results['errors'] += 1

        if results['checked']:
            logger.info(f"🔍 Verification sweep: {results['verified']}/{results['checked']} verified")
        return results

    async def run_certificate_sweep(self) -> Dict[str, Any]:
        return await self.certificates.run_sweep()

    def start_background_tasks(self):
        async def dns_tick() -> bool:
            await self.run_verification_sweep()
            return False

        async def certificate_tick() -> bool:
            await self.run_certificate_sweep()
            return False

        self.scheduler.schedule(DNS_SWEEP_KEY, dns_tick, self.config.dns_verify_sweep_interval,
                                run_immediately=False)
        self.scheduler.schedule(CERTIFICATE_SWEEP_KEY, certificate_tick, self.config.certificate_sweep_interval,
                                run_immediately=False)
        logger.info("⏱️ Background sweeps scheduled")

    async def shutdown(self):
        """Cancel polling, sweeps and in-flight operations, then close HTTP clients"""
        self.tracker.shutdown()
        self.scheduler.cancel_all()
        revoked = await self.leases.revoke_all()
        if revoked:
            logger.info(f"🛑 Cancelled {revoked} in-flight domain operations")
        for service_cls in _walk_subclasses(HttpApiService):
            await service_cls.close_client()
        logger.info("🛑 Domain orchestrator stopped")
