"""Public URL helpers for checkout redirects and webhooks"""

import logging
from urllib.parse import urlencode

from platform_config import get_platform_config

logger = logging.getLogger(__name__)


def get_public_base_url() -> str:
    """
    Get the externally reachable base URL of this service

    Returns:
        str: Base URL without a trailing slash
    """
    base_url = get_platform_config().public_base_url
    if base_url.startswith('http://localhost'):
        logger.debug(f"🔧 Using local base URL: {base_url}")
    return base_url


def get_webhook_url(endpoint: str) -> str:
    """
    Get the complete webhook URL for a specific endpoint

    Args:
        endpoint: The endpoint path (e.g., 'stripe')
    """
    return f"{get_public_base_url()}/webhook/{endpoint}"


def build_checkout_success_url(order_id: str, domain_name: str) -> str:
    """Success return URL; Stripe substitutes the literal {CHECKOUT_SESSION_ID}"""
    query = urlencode({'domain_success': 'true', 'domain': domain_name, 'order_id': order_id})
    return f"{get_public_base_url()}/domains?{query}&session_id={{CHECKOUT_SESSION_ID}}"


def build_checkout_cancel_url(domain_name: str) -> str:
    query = urlencode({'domain_cancel': 'true', 'domain': domain_name})
    return f"{get_public_base_url()}/domains?{query}"
