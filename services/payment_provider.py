"""
Stripe checkout integration for domain purchases
Checkout session creation over the REST API and webhook signature verification
"""

import os
import hmac
import time
import hashlib
import logging
from typing import Dict, Optional, Any

from domain_models import ExternalServiceError
from pricing_utils import cents
from services.http_service import HttpApiService

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300


class StripeCheckoutService(HttpApiService):
    """Opens hosted checkout sessions; the customer is redirected back with the order id"""

    service_name = 'stripe'

    def __init__(self):
        super().__init__()
        self.secret_key = os.getenv('STRIPE_SECRET_KEY')
        self.webhook_secret = os.getenv('STRIPE_WEBHOOK_SECRET')
        self.base_url = "https://api.stripe.com/v1"
        self.headers = {'Accept': 'application/json'}
        if self.secret_key:
            self.headers['Authorization'] = f'Bearer {self.secret_key.strip()}'
        else:
            logger.warning("⚠️ STRIPE_SECRET_KEY not configured - domain checkout disabled")

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)

    async def create_checkout_session(self, order_id: str, domain_name: str, price: float, years: int,
                                      user_id: str, success_url: str, cancel_url: str,
                                      wholesale_price: Optional[float] = None) -> Dict[str, Any]:
        """
        Create a hosted checkout session for a domain order

        Returns:
            Dict: {'session_id', 'checkout_url'}

        Raises:
            ExternalServiceError: Stripe rejected the request or could not be reached
        """
        self._require_configuration()
        form = {
            'mode': 'payment',
            'success_url': success_url,
            'cancel_url': cancel_url,
            'client_reference_id': order_id,
            'line_items[0][quantity]': '1',
            'line_items[0][price_data][currency]': 'usd',
            'line_items[0][price_data][unit_amount]': str(cents(price)),
            'line_items[0][price_data][product_data][name]': f"Domain: {domain_name}",
            'line_items[0][price_data][product_data][description]':
                f"{years} year{'s' if years > 1 else ''} registration",
            'metadata[type]': 'domain_purchase',
            'metadata[order_id]': order_id,
            'metadata[domain_name]': domain_name,
            'metadata[user_id]': user_id,
            'metadata[years]': str(years),
        }
        if wholesale_price is not None:
            form['metadata[wholesale_price]'] = str(wholesale_price)

        response = await self.request('POST', '/checkout/sessions', data=form)
        data = self.json_or_empty(response)
        if response.status_code >= 400:
            message = (data.get('error') or {}).get('message') or f"HTTP {response.status_code}"
            logger.error(f"❌ Stripe checkout creation failed for {domain_name}: {message}")
            raise ExternalServiceError(self.service_name, message, retryable=False, status_code=response.status_code)

        logger.info(f"💳 Checkout session {data.get('id')} created for order {order_id} ({domain_name})")
        return {'session_id': data.get('id'), 'checkout_url': data.get('url')}


def verify_webhook_signature(payload: bytes, signature_header: Optional[str], secret: Optional[str],
                             tolerance: int = SIGNATURE_TOLERANCE_SECONDS, now: Optional[float] = None) -> bool:
    """
    Verify a 'Stripe-Signature: t=<ts>,v1=<hex>' header against the raw request body

    Args:
        payload: Raw request body
        signature_header: Header value as received
        secret: Endpoint signing secret
        tolerance: Maximum accepted age of the timestamp in seconds
        now: Current unix time (tests)

    Returns:
        bool: True if one of the v1 signatures matches and the timestamp is fresh
    """
    if not signature_header:
        logger.error("🛡️ WEBHOOK AUTH FAILURE: Missing Stripe-Signature header")
        return False
    if not secret:
        logger.error("🛡️ WEBHOOK AUTH FAILURE: STRIPE_WEBHOOK_SECRET not set in environment")
        return False

    timestamp = None
    signatures = []
    for part in signature_header.split(','):
        key, _, value = part.strip().partition('=')
        if key == 't':
            timestamp = value
        elif key == 'v1':
            signatures.append(value)

    if not timestamp or not signatures:
        logger.error("🛡️ WEBHOOK AUTH FAILURE: Malformed Stripe-Signature header")
        return False

    try:
        timestamp_value = int(timestamp)
    except ValueError:
        logger.error("🛡️ WEBHOOK AUTH FAILURE: Non-numeric signature timestamp")
        return False

    current = now if now is not None else time.time()
    if abs(current - timestamp_value) > tolerance:
        logger.error("🛡️ WEBHOOK AUTH FAILURE: Signature timestamp outside tolerance")
        return False

    signed_payload = f"{timestamp}.".encode() + payload
    expected = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
    if any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        logger.debug("✅ Webhook signature verified")
        return True

    logger.error("🛡️ WEBHOOK AUTH FAILURE: Signature mismatch")
    return False
