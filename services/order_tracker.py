"""
Purchase & Order Tracker
Domain search, checkout creation and order polling after the customer returns from payment
"""

import logging
from typing import Dict, List, Optional, Any, Callable, Awaitable

from domain_models import (
    DomainOffer, DomainOrder, OrderState, OrderStatus, DomainValidationError, DomainNotFoundError,
    validate_domain_name, get_domain_tld,
)
from platform_config import get_platform_config
from services.namecom import NameComService, PRIORITY_TLDS, extract_keyword
from services.payment_provider import StripeCheckoutService
from task_scheduler import TaskScheduler, PeriodicTask
from utils.environment import build_checkout_success_url, build_checkout_cancel_url

logger = logging.getLogger(__name__)

UNRANKED_TLD_PRIORITY = 100
MISSING_PRICE_SORT_VALUE = 999

STILL_PROCESSING_MESSAGE = (
    "Your domain is still being processed. Registration continues in the background; "
    "check your domains list again in a few minutes."
)


# ============================================================================
# SEARCH ORDERING
# ============================================================================

def get_tld_priority(domain_name: str) -> int:
    """Index of the name's TLD in the preferred list, 100 for anything else"""
    tld = get_domain_tld(domain_name or '')
    try:
        return PRIORITY_TLDS.index(tld)
    except ValueError:
        return UNRANKED_TLD_PRIORITY


def offer_sort_key(offer: DomainOffer):
    price = offer.price if offer.price is not None else MISSING_PRICE_SORT_VALUE
    return (get_tld_priority(offer.name), not offer.available, price)


def sort_domain_offers(offers: List[DomainOffer]) -> List[DomainOffer]:
    """TLD priority, then available first, then cheapest; equal keys keep their input order"""
    return sorted(offers, key=offer_sort_key)


# ============================================================================
# TRACKER
# ============================================================================

class DomainOrderTracker:
    """Search, checkout and order polling; each tracked order is a task keyed order:<id>"""

    def __init__(self, registry, registrar: Optional[NameComService] = None,
                 payments: Optional[StripeCheckoutService] = None,
                 scheduler: Optional[TaskScheduler] = None, config=None):
        self.registry = registry
        self.registrar = registrar or NameComService()
        self.payments = payments or StripeCheckoutService()
        self.scheduler = scheduler or TaskScheduler()
        self.config = config or get_platform_config()
        self._tracked: Dict[str, OrderStatus] = {}
        self._given_up: set = set()

    @staticmethod
    def task_key(order_id: str) -> str:
        return f"order:{order_id}"

    async def search(self, query: str) -> List[DomainOffer]:
        if not extract_keyword(query):
            raise DomainValidationError("Enter a name to search for")
        offers = await self.registrar.search_suggestions(query)
        ranked = sort_domain_offers(offers)
        logger.info(f"🔍 ORDER TRACKER: {len(ranked)} results for '{query}' "
                    f"({sum(1 for o in ranked if o.available)} available)")
        return ranked

    async def buy(self, domain_name: str, price: float, user_id: str, years: int = 1) -> Dict[str, Any]:
        """
        Create an order and a checkout session for it

        Returns:
            Dict: {'success': True, 'checkout_url', 'order_id', 'session_id'}
                  or {'success': False, 'error'} when the name can no longer be bought at that price

        Raises:
            DomainValidationError: malformed name, price or years
            ExternalServiceError: registrar or payment provider unreachable
        """
        name = validate_domain_name(domain_name)
        if price is None or float(price) <= 0:
            raise DomainValidationError("A valid price is required")
        if not isinstance(years, int) or years < 1 or years > self.config.max_registration_years:
            raise DomainValidationError(f"Years must be between 1 and {self.config.max_registration_years}")
        price = float(price)

        row = await self.registrar.get_offer(name)
        if not row or not row.get('purchasable'):
            logger.info(f"ℹ️ ORDER TRACKER: {name} no longer available")
            return {'success': False, 'error': f"{name} is no longer available"}

        offer = self.registrar.to_offer(row)
        if offer.price is not None and price + 0.005 < offer.price:
            return {'success': False, 'error': f"The price for {name} is now ${offer.price:.2f}", 'price': offer.price}

        order = DomainOrder(
            domain_name=name,
            user_id=user_id,
            customer_price=price,
            wholesale_price=row.get('purchasePrice'),
            years=years,
        )
        await self.registry.create_order(order)

        session = await self.payments.create_checkout_session(
            order_id=order.id,
            domain_name=name,
            price=price,
            years=years,
            user_id=user_id,
            success_url=build_checkout_success_url(order.id, name),
            cancel_url=build_checkout_cancel_url(name),
            wholesale_price=order.wholesale_price,
        )
        order.session_id = session['session_id']
        await self.registry.save_order(order)

        logger.info(f"💳 ORDER TRACKER: order {order.id} for {name} awaiting payment")
        return {
            'success': True,
            'checkout_url': session['checkout_url'],
            'order_id': order.id,
            'session_id': order.session_id,
        }

    @staticmethod
    def parse_checkout_return(params: Dict[str, Any]) -> Dict[str, Any]:
        """Interpret the query parameters the payment redirect carries back"""
        domain = (params.get('domain') or '').strip().lower() or None
        if str(params.get('domain_success', '')).lower() == 'true' and domain:
            order_id = params.get('order_id') or params.get('session_id')
            return {'outcome': 'success', 'domain': domain, 'order_id': order_id}
        if str(params.get('domain_cancel', '')).lower() == 'true':
            return {'outcome': 'cancelled', 'domain': domain, 'order_id': None,
                    'message': "Checkout cancelled. You have not been charged."}
        return {'outcome': 'none', 'domain': domain, 'order_id': None}

    async def _load_order(self, order_id: str) -> DomainOrder:
        order = await self.registry.get_order(order_id)
        if order is None:
            raise DomainNotFoundError(f"Order {order_id} not found")
        return order

    async def poll_order(self, order_id: str) -> OrderStatus:
        """
        Current status read from the store

        An order that background polling gave up on keeps the still-processing step
        until the store reports it completed or failed.
        """
        status = OrderStatus.from_order(await self._load_order(order_id))
        if status.status.is_terminal:
            self._given_up.discard(order_id)
            self._tracked.pop(order_id, None)
        elif order_id in self._given_up:
            status.step = STILL_PROCESSING_MESSAGE
        return status

    def get_tracked_order(self, order_id: str) -> Optional[OrderStatus]:
        return self._tracked.get(order_id)

    def is_tracking(self, order_id: str) -> bool:
        return self.scheduler.is_scheduled(self.task_key(order_id))

    def track_order(self, order_id: str,
                    on_update: Optional[Callable[[OrderStatus], Awaitable[None]]] = None) -> PeriodicTask:
        """
        Poll an order every interval until it completes or fails

        On completion the owner's domains are reloaded into the registry so the new
        domain is visible. Polling gives up after the configured attempt ceiling and
        reports a still-processing status; the order itself is left untouched.
        """

        async def poll() -> bool:
            order = await self._load_order(order_id)
            status = OrderStatus.from_order(order)
            self._tracked[order_id] = status
            if on_update is not None:
                await on_update(status)
            if order.status.is_terminal:
                self._tracked.pop(order_id, None)

            if order.status == OrderState.COMPLETED:
                await self.registry.refresh(order.user_id)
                logger.info(f"✅ ORDER TRACKER: order {order_id} completed, {order.domain_name} registered")
                return True
            if order.status == OrderState.FAILED:
                logger.warning(f"⚠️ ORDER TRACKER: order {order_id} failed: {order.error}")
                return True
            return False

        async def exhausted():
            self._given_up.add(order_id)
            last = self._tracked.get(order_id)
            self._tracked[order_id] = OrderStatus(
                order_id=order_id,
                domain_name=last.domain_name if last else '',
                status=last.status if last else OrderState.PENDING_PAYMENT,
                step=STILL_PROCESSING_MESSAGE,
                nameservers=list(last.nameservers) if last else [],
            )

        self._given_up.discard(order_id)
        logger.info(f"⏱️ ORDER TRACKER: tracking order {order_id}")
        return self.scheduler.schedule(
            self.task_key(order_id),
            poll,
            interval=self.config.order_poll_interval,
            max_runs=self.config.order_poll_max_attempts,
            on_exhausted=exhausted,
        )

    def dismiss(self, order_id: str) -> bool:
        """Stop polling an order (view closed or user dismissed the banner)"""
        self._tracked.pop(order_id, None)
        self._given_up.discard(order_id)
        stopped = self.scheduler.cancel(self.task_key(order_id))
        if stopped:
            logger.info(f"🛑 ORDER TRACKER: stopped tracking order {order_id}")
        return stopped

    def shutdown(self) -> int:
        self._tracked.clear()
        self._given_up.clear()
        return self.scheduler.cancel_prefix('order:')
