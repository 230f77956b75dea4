"""
Webhook and HTTP API security tests
P0 Critical: payment webhook authentication, caller identity and ownership checks
"""

import hmac
import json
import time
import hashlib

import pytest
from aiohttp import test_utils

from domain_models import DomainStatus
from services.payment_provider import verify_webhook_signature
from webhook_handler import create_app
from conftest import make_domain, make_order, AvailabilityRowFactory

WEBHOOK_SECRET = 'whsec_test_secret'


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: float = None) -> str:
    ts = str(int(timestamp if timestamp is not None else time.time()))
    signature = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def checkout_completed(order_id: str) -> bytes:
    return json.dumps({
        'id': 'evt_1',
        'type': 'checkout.session.completed',
        'data': {'object': {
            'id': 'cs_test_123',
            'payment_status': 'paid',
            'metadata': {'type': 'domain_purchase', 'order_id': order_id},
        }},
    }).encode()


async def start_client(orchestrator) -> test_utils.TestClient:
    client = test_utils.TestClient(test_utils.TestServer(create_app(orchestrator)))
    await client.start_server()
    return client


class TestSignatureVerification:
    """Stripe-Signature header validation"""

    def test_valid_signature(self):
        payload = b'{"type": "checkout.session.completed"}'
        assert verify_webhook_signature(payload, sign(payload), WEBHOOK_SECRET)

    def test_tampered_payload(self):
        header = sign(b'{"amount": 100}')
        assert not verify_webhook_signature(b'{"amount": 1}', header, WEBHOOK_SECRET)

    def test_wrong_secret(self):
        payload = b'{}'
        assert not verify_webhook_signature(payload, sign(payload, secret='whsec_other'), WEBHOOK_SECRET)

    def test_stale_timestamp_rejected(self):
        payload = b'{}'
        header = sign(payload, timestamp=time.time() - 3600)
        assert not verify_webhook_signature(payload, header, WEBHOOK_SECRET)

    def test_injected_clock(self):
        payload = b'{}'
        header = sign(payload, timestamp=1_700_000_000)
        assert verify_webhook_signature(payload, header, WEBHOOK_SECRET, now=1_700_000_100)

    def test_any_matching_v1_signature_accepted(self):
        payload = b'{}'
        header = sign(payload) + ",v1=" + "0" * 64
        assert verify_webhook_signature(payload, header, WEBHOOK_SECRET)

    @pytest.mark.parametrize("header", [None, "", "garbage", "t=123", "v1=abc", "t=notanumber,v1=abc"])
    def test_malformed_headers(self, header):
        assert not verify_webhook_signature(b'{}', header, WEBHOOK_SECRET)

    def test_missing_secret(self):
        payload = b'{}'
        assert not verify_webhook_signature(payload, sign(payload), None)


@pytest.mark.asyncio
class TestPaymentWebhook:
    """POST /webhook/stripe"""

    async def test_unsigned_request_rejected(self, orchestrator, registry, registrar):
        order = await registry.create_order(make_order())
        client = await start_client(orchestrator)
        try:
            response = await client.post('/webhook/stripe', data=checkout_completed(order.id))
            assert response.status == 400
            assert (await response.json())['error'] == 'Invalid signature'
        finally:
            await client.close()
        registrar.register_domain.assert_not_awaited()

    async def test_signed_event_registers_once(self, orchestrator, registry, registrar):
        order = await registry.create_order(make_order(domain_name="shop.com"))
        payload = checkout_completed(order.id)
        client = await start_client(orchestrator)
        try:
            first = await client.post('/webhook/stripe', data=payload, headers={'Stripe-Signature': sign(payload)})
            replay = await client.post('/webhook/stripe', data=payload, headers={'Stripe-Signature': sign(payload)})

            assert first.status == 200
            assert await first.json() == {'received': True, 'result': 'completed'}
            assert (await replay.json())['result'] == 'already_processed'
        finally:
            await client.close()
        registrar.register_domain.assert_awaited_once()

    async def test_signed_garbage_payload(self, orchestrator):
        payload = b'not json'
        client = await start_client(orchestrator)
        try:
            response = await client.post('/webhook/stripe', data=payload, headers={'Stripe-Signature': sign(payload)})
            assert response.status == 400
        finally:
            await client.close()

    async def test_health(self, orchestrator):
        client = await start_client(orchestrator)
        try:
            response = await client.get('/health')
            body = await response.json()
            assert response.status == 200
            assert body['status'] == 'healthy'
            assert body['checks']['database'] == 'in_memory'
        finally:
            await client.close()


@pytest.mark.asyncio
class TestDomainApi:
    """Caller identity, ownership and error mapping on /api/domains"""

    async def test_identity_required(self, orchestrator):
        client = await start_client(orchestrator)
        try:
            response = await client.get('/api/domains')
            assert response.status == 401
        finally:
            await client.close()

    async def test_add_list_and_get(self, orchestrator):
        client = await start_client(orchestrator)
        headers = {'X-User-Id': 'user-1'}
        try:
            created = await client.post('/api/domains', json={'name': 'example.com', 'projectId': 'proj-1'},
                                        headers=headers)
            assert created.status == 201
            domain = await created.json()
            assert domain['status'] == 'pending'
            assert domain['dnsConfig']['aRecord'] == '130.211.43.242'

            listing = await (await client.get('/api/domains', headers=headers)).json()
            assert [d['name'] for d in listing['domains']] == ['example.com']

            fetched = await client.get(f"/api/domains/{domain['id']}", headers=headers)
            assert (await fetched.json())['projectId'] == 'proj-1'
        finally:
            await client.close()

    async def test_other_users_domain_is_not_found(self, orchestrator, registry):
        domain = await registry.add(make_domain(user_id='user-1'))
        client = await start_client(orchestrator)
        try:
            response = await client.get(f"/api/domains/{domain.id}", headers={'X-User-Id': 'user-2'})
            assert response.status == 404
            deleted = await client.delete(f"/api/domains/{domain.id}", headers={'X-User-Id': 'user-2'})
            assert deleted.status == 404
        finally:
            await client.close()
        assert await registry.get(domain.id) is not None

    async def test_error_mapping(self, orchestrator, registry):
        domain = await registry.add(make_domain(user_id='user-1', project_id=None, status=DomainStatus.ACTIVE))
        headers = {'X-User-Id': 'user-1'}
        client = await start_client(orchestrator)
        try:
            duplicate = await client.post('/api/domains', json={'name': domain.name}, headers=headers)
            assert duplicate.status == 409

            bad_name = await client.post('/api/domains', json={'name': 'nope'}, headers=headers)
            assert bad_name.status == 400

            bad_json = await client.post('/api/domains', data=b'{', headers={**headers,
                                                                              'Content-Type': 'application/json'})
            assert bad_json.status == 400

            no_project = await client.post(f"/api/domains/{domain.id}/deploy", json={}, headers=headers)
            assert no_project.status == 400

            bad_transition = await client.patch(f"/api/domains/{domain.id}", json={'status': 'pending_registration'},
                                                headers=headers)
            assert bad_transition.status == 409

            owner_change = await client.patch(f"/api/domains/{domain.id}", json={'userId': 'user-2'},
                                              headers=headers)
            assert owner_change.status == 400
        finally:
            await client.close()
        assert await registry.get_logs(domain.id) == []

    async def test_delete_is_idempotent(self, orchestrator, registry):
        domain = await registry.add(make_domain(user_id='user-1'))
        headers = {'X-User-Id': 'user-1'}
        client = await start_client(orchestrator)
        try:
            first = await client.delete(f"/api/domains/{domain.id}", headers=headers)
            second = await client.delete(f"/api/domains/{domain.id}", headers=headers)
            assert (await first.json()) == {'success': True, 'deleted': True}
            assert second.status == 200
            assert (await second.json()) == {'success': True, 'deleted': False}
        finally:
            await client.close()

    async def test_verify_endpoint(self, orchestrator, registry, fake_resolver):
        domain = await registry.add(make_domain(name="example.com", user_id='user-1'))
        fake_resolver.set("example.com", "A", ["130.211.43.242"])
        client = await start_client(orchestrator)
        try:
            response = await client.post(f"/api/domains/{domain.id}/verify", headers={'X-User-Id': 'user-1'})
            body = await response.json()
            assert body['verified'] is True
            assert body['status'] == 'active'
        finally:
            await client.close()


@pytest.mark.asyncio
class TestPurchaseApi:

    async def test_search_requires_query(self, orchestrator):
        client = await start_client(orchestrator)
        try:
            response = await client.get('/api/domains/search?q=', headers={'X-User-Id': 'user-1'})
            assert response.status == 400
        finally:
            await client.close()

    async def test_checkout_returns_payment_url(self, orchestrator, registrar):
        registrar.check_availability.return_value = [AvailabilityRowFactory(domainName="shop.com", purchasePrice=11.99)]
        client = await start_client(orchestrator)
        try:
            response = await client.post('/api/domains/checkout', json={'domainName': 'shop.com', 'price': 14.39},
                                         headers={'X-User-Id': 'user-1'})
            body = await response.json()
            assert response.status == 200
            assert body['checkout_url'].startswith('https://checkout.stripe.com/')
        finally:
            await client.close()

    async def test_checkout_price_must_be_numeric(self, orchestrator):
        client = await start_client(orchestrator)
        try:
            response = await client.post('/api/domains/checkout', json={'domainName': 'shop.com', 'price': 'free'},
                                         headers={'X-User-Id': 'user-1'})
            assert response.status == 400
        finally:
            await client.close()

    async def test_unknown_order(self, orchestrator):
        client = await start_client(orchestrator)
        try:
            response = await client.get('/api/orders/missing', headers={'X-User-Id': 'user-1'})
            assert response.status == 404
        finally:
            await client.close()

    async def test_other_users_order_is_not_found(self, orchestrator, registry):
        order = await registry.create_order(make_order(domain_name="shop.com", user_id='user-1'))
        intruder = {'X-User-Id': 'user-2'}
        client = await start_client(orchestrator)
        try:
            status = await client.get(f"/api/orders/{order.id}", headers=intruder)
            assert status.status == 404

            track = await client.post('/api/orders/track', headers=intruder, json={
                'domain_success': 'true', 'domain': 'shop.com', 'order_id': order.id})
            assert track.status == 404
            assert not orchestrator.tracker.is_tracking(order.id)

            dismiss = await client.delete(f"/api/orders/{order.id}", headers=intruder)
            assert dismiss.status == 404

            owner = await client.get(f"/api/orders/{order.id}", headers={'X-User-Id': 'user-1'})
            assert owner.status == 200
            assert (await owner.json())['domainName'] == "shop.com"
        finally:
            await client.close()
