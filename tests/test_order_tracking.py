"""
Purchase and order tracking tests
Search ordering, checkout creation and cancellable order polling
"""

import pytest
from unittest.mock import AsyncMock

from domain_models import (
    Domain, DomainStatus, OrderState, DomainValidationError, DomainNotFoundError, ExternalServiceError,
)
from services.order_tracker import (
    sort_domain_offers, get_tld_priority, STILL_PROCESSING_MESSAGE,
)
from conftest import make_offer, make_order, settle, AvailabilityRowFactory


class TestSearchOrdering:
    """Priority TLD, then availability, then price"""

    def test_priority_tld_index(self):
        assert get_tld_priority("shop.com") == 0
        assert get_tld_priority("shop.io") == 3
        assert get_tld_priority("shop.xyz") == 100

    def test_tld_priority_wins_over_price(self):
        offers = [
            make_offer(name="shop.net", price=5.0),
            make_offer(name="shop.com", price=50.0),
            make_offer(name="shop.xyz", price=1.0),
        ]
        assert [o.name for o in sort_domain_offers(offers)] == ["shop.com", "shop.net", "shop.xyz"]

    def test_available_before_unavailable(self):
        offers = [
            make_offer(name="shop.com", available=False, price=None),
            make_offer(name="getshop.com", available=True, price=30.0),
        ]
        assert [o.name for o in sort_domain_offers(offers)] == ["getshop.com", "shop.com"]

    def test_missing_price_sorts_as_999(self):
        offers = [
            make_offer(name="a.com", price=None),
            make_offer(name="b.com", price=998.0),
            make_offer(name="c.com", price=1000.0),
        ]
        assert [o.name for o in sort_domain_offers(offers)] == ["b.com", "a.com", "c.com"]

    def test_sort_is_stable(self):
        offers = [make_offer(name=f"n{i}.com", price=10.0) for i in range(5)]
        assert sort_domain_offers(offers) == offers


@pytest.mark.asyncio
class TestSearch:

    async def test_search_prices_with_margin_and_sorts(self, tracker, registrar):
        registrar.check_availability.return_value = [
            AvailabilityRowFactory(domainName="shop.xyz", purchasePrice=1.99),
            AvailabilityRowFactory(domainName="shop.com", purchasable=False),
            AvailabilityRowFactory(domainName="shop.net", purchasePrice=10.00),
        ]

        results = await tracker.search("Shop")

        assert [o.name for o in results] == ["shop.com", "shop.net", "shop.xyz"]
        assert results[0].available is False and results[0].price is None
        assert results[1].price == 12.0
        candidates = registrar.check_availability.await_args.args[0]
        assert candidates[:2] == ["shop.com", "shop.net"]

    async def test_empty_query_rejected(self, tracker, registrar):
        with pytest.raises(DomainValidationError):
            await tracker.search("  !!! ")
        registrar.check_availability.assert_not_awaited()


@pytest.mark.asyncio
class TestBuy:

    async def test_buy_returns_checkout_url(self, tracker, registrar, mock_payments, registry):
        registrar.check_availability.return_value = [AvailabilityRowFactory(domainName="shop.com", purchasePrice=11.99)]

        result = await tracker.buy("Shop.com", 14.39, "user-1")

        assert result['success'] is True
        assert result['checkout_url'] == 'https://checkout.stripe.com/c/pay/cs_test_123'
        order = await registry.get_order(result['order_id'])
        assert order.status == OrderState.PENDING_PAYMENT
        assert order.session_id == 'cs_test_123'
        assert order.wholesale_price == 11.99

        kwargs = mock_payments.create_checkout_session.await_args.kwargs
        assert kwargs['domain_name'] == "shop.com"
        assert kwargs['price'] == 14.39
        assert f"order_id={order.id}" in kwargs['success_url']
        assert "session_id={CHECKOUT_SESSION_ID}" in kwargs['success_url']
        assert "domain_cancel=true" in kwargs['cancel_url']

    async def test_unavailable_name(self, tracker, registrar, mock_payments):
        registrar.check_availability.return_value = [AvailabilityRowFactory(domainName="shop.com", purchasable=False)]
        result = await tracker.buy("shop.com", 14.39, "user-1")
        assert result['success'] is False
        mock_payments.create_checkout_session.assert_not_awaited()

    async def test_price_increase_rejected(self, tracker, registrar, mock_payments):
        registrar.check_availability.return_value = [AvailabilityRowFactory(domainName="shop.com", purchasePrice=20.00)]
        result = await tracker.buy("shop.com", 14.39, "user-1")
        assert result['success'] is False
        assert result['price'] == 24.0
        mock_payments.create_checkout_session.assert_not_awaited()

    @pytest.mark.parametrize("price,years", [(0, 1), (-5, 1), (14.39, 0), (14.39, 11)])
    async def test_invalid_price_or_years(self, tracker, price, years):
        with pytest.raises(DomainValidationError):
            await tracker.buy("shop.com", price, "user-1", years)

    async def test_payment_provider_failure_propagates(self, tracker, registrar, mock_payments):
        registrar.check_availability.return_value = [AvailabilityRowFactory(domainName="shop.com")]
        mock_payments.create_checkout_session.side_effect = ExternalServiceError('stripe', 'card declined',
                                                                                 retryable=False)
        with pytest.raises(ExternalServiceError):
            await tracker.buy("shop.com", 14.39, "user-1")


class TestCheckoutReturn:

    def test_success_redirect(self, tracker):
        outcome = tracker.parse_checkout_return({'domain_success': 'true', 'domain': 'Shop.com', 'order_id': 'o1'})
        assert outcome == {'outcome': 'success', 'domain': 'shop.com', 'order_id': 'o1'}

    def test_session_id_stands_in_for_order_id(self, tracker):
        outcome = tracker.parse_checkout_return({'domain_success': 'true', 'domain': 'shop.com',
                                                 'session_id': 'cs_1'})
        assert outcome['order_id'] == 'cs_1'

    def test_cancel_redirect(self, tracker):
        outcome = tracker.parse_checkout_return({'domain_cancel': 'true', 'domain': 'shop.com'})
        assert outcome['outcome'] == 'cancelled'
        assert 'not been charged' in outcome['message']

    def test_unrelated_params(self, tracker):
        assert tracker.parse_checkout_return({})['outcome'] == 'none'


@pytest.mark.asyncio
class TestOrderPolling:
    """pollOrder every 3 seconds until completed or failed"""

    async def test_poll_unknown_order(self, tracker):
        with pytest.raises(DomainNotFoundError):
            await tracker.poll_order('missing')

    async def test_completed_order_refreshes_registry(self, tracker, registry, store, manual_clock):
        order = await registry.create_order(make_order(domain_name="shop.com", user_id="user-1"))
        updates = []

        async def on_update(status):
            updates.append(status.status)

        task = tracker.track_order(order.id, on_update=on_update)
        await settle()
        assert tracker.is_tracking(order.id)
        assert updates == [OrderState.PENDING_PAYMENT]

        # Registration finishes behind the registry's back
        await store.insert_domain(Domain(name="shop.com", user_id="user-1", status=DomainStatus.PENDING))
        order.status = OrderState.COMPLETED
        await store.save_order(order)
        assert registry.list_domains("user-1") == []

        await manual_clock.advance(3)

        assert task.completed
        assert not tracker.is_tracking(order.id)
        assert updates[-1] == OrderState.COMPLETED
        assert [d.name for d in registry.list_domains("user-1")] == ["shop.com"]
        assert tracker.get_tracked_order(order.id) is None

    async def test_failed_order_stops_polling(self, tracker, registry, store, manual_clock):
        order = await registry.create_order(make_order())
        updates = []

        async def on_update(status):
            updates.append(status)

        task = tracker.track_order(order.id, on_update=on_update)
        await settle()

        order.status = OrderState.FAILED
        order.error = "Domain registration failed: taken"
        await store.save_order(order)
        await manual_clock.advance(3)

        assert task.completed
        assert updates[-1].error == "Domain registration failed: taken"
        assert tracker.get_tracked_order(order.id) is None

    async def test_polls_every_three_seconds(self, tracker, registry, manual_clock):
        order = await registry.create_order(make_order())
        registry.get_order = AsyncMock(wraps=registry.get_order)
        tracker.track_order(order.id)
        await settle()

        await manual_clock.advance(2)
        assert registry.get_order.await_count == 1
        await manual_clock.advance(1)
        assert registry.get_order.await_count == 2
        tracker.shutdown()

    async def test_gives_up_with_still_processing_message(self, tracker, registry, manual_clock):
        order = await registry.create_order(make_order(domain_name="shop.com"))
        task = tracker.track_order(order.id)
        await settle()
        for _ in range(4):
            await manual_clock.advance(3)

        assert task.exhausted
        status = tracker.get_tracked_order(order.id)
        assert status.step == STILL_PROCESSING_MESSAGE
        assert status.domain_name == "shop.com"
        assert (await registry.get_order(order.id)).status == OrderState.PENDING_PAYMENT

    async def test_poll_reads_store_after_giving_up(self, tracker, registry, store, manual_clock):
        order = await registry.create_order(make_order(domain_name="shop.com"))
        tracker.track_order(order.id)
        await settle()
        for _ in range(4):
            await manual_clock.advance(3)

        waiting = await tracker.poll_order(order.id)
        assert waiting.status == OrderState.PENDING_PAYMENT
        assert waiting.step == STILL_PROCESSING_MESSAGE

        order.status = OrderState.COMPLETED
        await store.save_order(order)

        finished = await tracker.poll_order(order.id)
        assert finished.status == OrderState.COMPLETED
        assert finished.step != STILL_PROCESSING_MESSAGE
        assert tracker.get_tracked_order(order.id) is None

    async def test_finished_tracking_leaves_no_scheduler_entry(self, tracker, registry, store, scheduler,
                                                               manual_clock):
        order = await registry.create_order(make_order())
        tracker.track_order(order.id)
        await settle()
        assert scheduler.active_keys() == [tracker.task_key(order.id)]

        order.status = OrderState.COMPLETED
        await store.save_order(order)
        await manual_clock.advance(3)
        await settle()

        assert scheduler.get(tracker.task_key(order.id)) is None
        assert tracker.get_tracked_order(order.id) is None

    async def test_dismiss_cancels_polling(self, tracker, registry, manual_clock):
        order = await registry.create_order(make_order())
        registry.get_order = AsyncMock(wraps=registry.get_order)
        tracker.track_order(order.id)
        await settle()

        assert tracker.dismiss(order.id) is True
        await settle()
        await manual_clock.advance(30)

        assert registry.get_order.await_count == 1
        assert tracker.get_tracked_order(order.id) is None
        assert tracker.dismiss(order.id) is False

    async def test_shutdown_cancels_every_order(self, tracker, registry):
        first = await registry.create_order(make_order())
        second = await registry.create_order(make_order())
        tracker.track_order(first.id)
        tracker.track_order(second.id)
        await settle()

        assert tracker.shutdown() == 2
