"""
Domain Registration Orchestrator - payment-gated registration pipeline

Moves a paid order through its statuses and produces the Domain record:

    pending_payment → registering → configuring_dns → updating_nameservers → completed
                                                                           ↘ failed

Architecture:
- Atomic claim (pending_payment → registering) so a redelivered webhook never registers twice
- Registrar failure is critical: order failed, domain error, operator alert, no automatic retry
- DNS zone and nameserver steps are best effort; the domain falls back to record-based DNS
"""

import logging
from datetime import timedelta
from typing import Optional, Dict, Any

from domain_models import (
    Domain, DomainStatus, DomainOrder, OrderState, RecordsStrategy, DelegationStrategy,
    DomainLifecycleError, ExternalServiceError, InvalidTransitionError, DomainNotFoundError, utc_now,
)
from platform_config import get_platform_config
from admin_alerts import send_critical_alert
from services.namecom import NameComService
from services.cloudflare import CloudflareService

logger = logging.getLogger(__name__)

# ====================================================================
# DOMAIN REGISTRATION ORCHESTRATOR
# ====================================================================

class RegistrationProcessingError(DomainLifecycleError):
    """Critical registration failure; the order cannot complete"""


class RegistrationOrchestrator:
    """Single entry point for turning a paid order into a registered domain"""

    def __init__(self, registry, registrar: Optional[NameComService] = None,
                 cloudflare: Optional[CloudflareService] = None, config=None):
        self.registry = registry
        self.registrar = registrar or NameComService()
        self.cloudflare = cloudflare or CloudflareService()
        self.config = config or get_platform_config()

    async def handle_checkout_session(self, session: Dict[str, Any]) -> Dict[str, Any]:
        """Entry point for a checkout.session.completed payload"""
        metadata = session.get('metadata') or {}
        if metadata.get('type') != 'domain_purchase':
            logger.info(f"ℹ️ REGISTRATION: ignoring checkout session {session.get('id')} (not a domain purchase)")
            return {'status': 'ignored'}
        if session.get('payment_status') not in (None, 'paid', 'no_payment_required'):
            logger.warning(f"⚠️ REGISTRATION: session {session.get('id')} not paid ({session.get('payment_status')})")
            return {'status': 'unpaid'}

        order_id = metadata.get('order_id') or session.get('client_reference_id')
        if not order_id:
            logger.error(f"❌ REGISTRATION: session {session.get('id')} carries no order id")
            return {'status': 'invalid', 'error': 'missing order id'}
        return await self.process_paid_order(order_id, session_id=session.get('id'))

    async def process_paid_order(self, order_id: str, session_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Run the registration pipeline for a paid order

        Returns:
            Dict: {'status': 'completed' | 'failed' | 'already_processed' | 'not_found', 'order_id', ...}
        """
        logger.info(f"🎯 REGISTRATION: Starting registration for order {order_id}")

        order = await self.registry.claim_order(order_id, [OrderState.PENDING_PAYMENT], OrderState.REGISTERING)
        if order is None:
            existing = await self.registry.get_order(order_id)
            if existing is None:
                logger.error(f"❌ REGISTRATION: Order {order_id} not found")
                return {'status': 'not_found', 'order_id': order_id}
            logger.warning(f"🚫 REGISTRATION: Order {order_id} already {existing.status.value}")
            return {'status': 'already_processed', 'order_id': order_id, 'order_status': existing.status.value}

        if session_id and not order.session_id:
            order.session_id = session_id

        domain: Optional[Domain] = None
        try:
            domain = await self._create_domain_record(order)
            await self._register_with_registrar(order)
            zone = await self._configure_dns(order)
            if zone:
                await self._update_nameservers(order, zone)
            domain = await self._complete_registration(order, domain)
        except Exception as e:
            reason = str(e)
            logger.error(f"❌ REGISTRATION: Order {order_id} failed: {reason}")
            await self._fail_registration(order, domain, reason)
            return {'status': 'failed', 'order_id': order_id, 'error': reason}

        logger.info(f"✅ REGISTRATION: {order.domain_name} registered for order {order_id}")
        return {
            'status': 'completed',
            'order_id': order_id,
            'domain_id': domain.id,
            'nameservers': list(order.nameservers),
        }

    async def _create_domain_record(self, order: DomainOrder) -> Domain:
        domain = await self.registry.add(Domain(
            name=order.domain_name,
            user_id=order.user_id,
            status=DomainStatus.PENDING_REGISTRATION,
            provider='Name.com',
            order_id=order.id,
            status_message="Registering your domain...",
        ))
        order.domain_id = domain.id
        await self.registry.save_order(order)
        return domain

    async def _register_with_registrar(self, order: DomainOrder):
        logger.info(f"🔄 Phase 1: Registering {order.domain_name} with Name.com")
        result = await self.registrar.register_domain(order.domain_name, order.years,
                                                      purchase_price=order.wholesale_price)
        if not result.get('success'):
            raise RegistrationProcessingError(f"Domain registration failed: {result.get('error', 'Unknown error')}")

    async def _configure_dns(self, order: DomainOrder) -> Optional[Dict[str, Any]]:
        """Zone and platform records; None when skipped or failed"""
        order.status = OrderState.CONFIGURING_DNS
        await self.registry.save_order(order)

        if not self.cloudflare.is_configured:
            logger.warning(f"⚠️ Phase 2: Cloudflare not configured, {order.domain_name} will use DNS records")
            return None

        logger.info(f"🔄 Phase 2: Setting up Cloudflare DNS for {order.domain_name}")
        try:
            zone = await self.cloudflare.setup_delegated_domain(order.domain_name)
        except ExternalServiceError as e:
            logger.warning(f"⚠️ Cloudflare setup failed (non-critical) for {order.domain_name}: {e}")
            return None
        if not zone.get('success') or not zone.get('nameservers'):
            logger.warning(f"⚠️ Cloudflare setup failed (non-critical) for {order.domain_name}: {zone.get('error')}")
            return None
        return zone

    async def _update_nameservers(self, order: DomainOrder, zone: Dict[str, Any]):
        order.status = OrderState.UPDATING_NAMESERVERS
        order.nameservers = list(zone['nameservers'])
        order.zone_id = zone.get('zone_id')
        await self.registry.save_order(order)

        logger.info(f"🔄 Phase 3: Updating nameservers for {order.domain_name}")
        try:
            await self.registrar.set_nameservers(order.domain_name, order.nameservers)
        except ExternalServiceError as e:
            logger.warning(f"⚠️ Nameserver update failed (non-critical) for {order.domain_name}: {e}")

    async def _complete_registration(self, order: DomainOrder, domain: Domain) -> Domain:
        expiry_date = utc_now() + timedelta(days=365 * order.years)
        if order.nameservers:
            strategy = DelegationStrategy(nameservers=tuple(order.nameservers), zone_id=order.zone_id)
            target = DomainStatus.PENDING_NAMESERVERS
            message = "Waiting for nameserver delegation to propagate"
        else:
            strategy = RecordsStrategy(a_record=self.config.platform_ip, cname_target=order.domain_name)
            target = DomainStatus.PENDING
            message = f"Add A @ → {self.config.platform_ip} and CNAME www → {order.domain_name}"

        domain = await self.registry.transition(
            domain.id, target, dns_config=strategy, expiry_date=expiry_date, status_message=message,
        )
        order.status = OrderState.COMPLETED
        order.error = None
        await self.registry.save_order(order)
        return domain

    async def _fail_registration(self, order: DomainOrder, domain: Optional[Domain], reason: str):
        order.status = OrderState.FAILED
        order.error = reason
        await self.registry.save_order(order)

        if domain is not None:
            try:
                await self.registry.transition(domain.id, DomainStatus.ERROR,
                                               status_message=f"Registration failed: {reason}")
            except (InvalidTransitionError, DomainNotFoundError) as e:
                logger.warning(f"⚠️ REGISTRATION: could not mark {order.domain_name} as error: {e}")

        await send_critical_alert(
            "RegistrationOrchestrator",
            f"Paid domain registration failed for order {order.id}: {reason}",
            "domain_registration",
            {
                "order_id": order.id,
                "user_id": order.user_id,
                "domain_name": order.domain_name,
                "customer_price": order.customer_price,
                "session_id": order.session_id,
            }
        )
