"""
HTTP surface for the domain lifecycle service
Health checks, the payment webhook, and the JSON API used by the dashboard
"""

import os
import json
import time
import logging
from typing import Dict, Any

from aiohttp import web
from aiohttp.web_request import Request
from aiohttp.web_response import Response

import database
from domain_models import (
    Domain, DomainOrder, DomainValidationError, DomainNotFoundError, DuplicateDomainError, OperationInProgressError,
    InvalidTransitionError, ExternalServiceError,
)
from services.domain_orchestrator import DomainOrchestrator
from services.payment_provider import verify_webhook_signature

logger = logging.getLogger(__name__)

# Suppress aiohttp access logs for successful requests but keep errors
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

ORCHESTRATOR_KEY = web.AppKey('orchestrator', DomainOrchestrator)

# Webhook failure tracking for alerting
_webhook_failure_count = 0
_last_successful_webhook = 0.0

_webhook_server = None


# ====================================================================
# ERROR MAPPING
# ====================================================================

def _error_response(status: int, message: str, **extra) -> Response:
    return web.json_response({'error': message, **extra}, status=status)


@web.middleware
async def error_middleware(request: Request, handler):
    """Translate lifecycle exceptions into HTTP status codes"""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except DomainValidationError as e:
        return _error_response(400, str(e))
    except DomainNotFoundError as e:
        return _error_response(404, str(e))
    except (DuplicateDomainError, OperationInProgressError, InvalidTransitionError) as e:
        return _error_response(409, str(e))
    except ExternalServiceError as e:
        logger.warning(f"⚠️ {request.method} {request.path}: {e}")
        return _error_response(502, str(e), retryable=e.retryable)


def _orchestrator(request: Request) -> DomainOrchestrator:
    return request.app[ORCHESTRATOR_KEY]


def _user_id(request: Request) -> str:
    """Caller identity set by the upstream authentication layer"""
    user_id = (request.headers.get('X-User-Id') or '').strip()
    if not user_id:
        raise web.HTTPUnauthorized(text=json.dumps({'error': 'Missing X-User-Id header'}),
                                   content_type='application/json')
    return user_id


async def _json_body(request: Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise DomainValidationError("Request body must be JSON")
    if not isinstance(body, dict):
        raise DomainValidationError("Request body must be a JSON object")
    return body


async def _owned_domain(request: Request) -> Domain:
    domain_id = request.match_info['domain_id']
    domain = await _orchestrator(request).get_domain(domain_id)
    if domain.user_id != _user_id(request):
        raise DomainNotFoundError(f"Domain {domain_id} not found")
    return domain


# ====================================================================
# HEALTH AND WEBHOOKS
# ====================================================================

async def health_handler(request: Request) -> Response:
    orchestrator = _orchestrator(request)
    response_data = {
        'status': 'healthy',
        'service': 'domain_lifecycle',
        'timestamp': time.time(),
        'checks': {
            'database': 'configured' if database.is_database_configured() else 'in_memory',
            'scheduled_tasks': orchestrator.scheduler.active_keys(),
            'active_operations': orchestrator.leases.active_count(),
            'last_successful_webhook': _last_successful_webhook or None,
            'webhook_failures': _webhook_failure_count,
        },
    }
    return web.json_response(response_data)


async def stripe_webhook_handler(request: Request) -> Response:
    """checkout.session.completed → registration pipeline"""
    global _webhook_failure_count, _last_successful_webhook

    raw_payload = await request.read()
    if not verify_webhook_signature(raw_payload, request.headers.get('Stripe-Signature'),
                                    os.getenv('STRIPE_WEBHOOK_SECRET')):
        _webhook_failure_count += 1
        return _error_response(400, 'Invalid signature')

    try:
        event = json.loads(raw_payload)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _error_response(400, 'Invalid payload')

    logger.info(f"📦 Payment webhook received: {event.get('type')} ({event.get('id')})")
    result = await _orchestrator(request).handle_payment_event(event)

    _webhook_failure_count = 0
    _last_successful_webhook = time.time()
    return web.json_response({'received': True, 'result': result.get('status')})


# ====================================================================
# ORDERS
# ====================================================================

async def _owned_order(request: Request, order_id: str) -> DomainOrder:
    order = await _orchestrator(request).registry.get_order(order_id)
    if order is None or order.user_id != _user_id(request):
        raise DomainNotFoundError(f"Order {order_id} not found")
    return order


async def order_status_handler(request: Request) -> Response:
    order = await _owned_order(request, request.match_info['order_id'])
    status = await _orchestrator(request).poll_order(order.id)
    return web.json_response(status.to_dict())


async def order_track_handler(request: Request) -> Response:
    """Start polling after the checkout redirect; body carries the redirect's query parameters"""
    _user_id(request)
    orchestrator = _orchestrator(request)
    params = await _json_body(request)
    order_id = orchestrator.tracker.parse_checkout_return(params)['order_id']
    if order_id:
        order = await _owned_order(request, order_id)
        params = {**params, 'order_id': order.id}
    return web.json_response(await orchestrator.handle_checkout_return(params))


async def order_dismiss_handler(request: Request) -> Response:
    order = await _owned_order(request, request.match_info['order_id'])
    stopped = _orchestrator(request).dismiss_order(order.id)
    return web.json_response({'success': True, 'stopped': stopped})


# ====================================================================
# DOMAINS
# ====================================================================

async def list_domains_handler(request: Request) -> Response:
    domains = await _orchestrator(request).list_domains(_user_id(request))
    return web.json_response({'domains': [d.to_dict() for d in domains]})


async def refetch_handler(request: Request) -> Response:
    user_id = _user_id(request)
    orchestrator = _orchestrator(request)
    await orchestrator.refetch(user_id)
    return web.json_response({'domains': [d.to_dict() for d in orchestrator.registry.list_domains(user_id)]})


async def add_domain_handler(request: Request) -> Response:
    user_id = _user_id(request)
    body = await _json_body(request)
    domain = await _orchestrator(request).add_domain(
        body.get('name') or body.get('domain'),
        user_id,
        project_id=body.get('projectId'),
        project_user_id=body.get('projectUserId'),
        use_delegation=bool(body.get('useDelegation')),
    )
    return web.json_response(domain.to_dict(), status=201)


async def get_domain_handler(request: Request) -> Response:
    return web.json_response((await _owned_domain(request)).to_dict())


async def update_domain_handler(request: Request) -> Response:
    domain = await _owned_domain(request)
    patch = await _json_body(request)
    if 'userId' in patch or 'user_id' in patch:
        raise DomainValidationError("A domain's owner cannot be changed")
    updated = await _orchestrator(request).update_domain(domain.id, patch)
    return web.json_response(updated.to_dict())


async def delete_domain_handler(request: Request) -> Response:
    user_id = _user_id(request)
    orchestrator = _orchestrator(request)
    domain_id = request.match_info['domain_id']
    domain = await orchestrator.registry.get(domain_id)
    if domain is not None and domain.user_id != user_id:
        raise DomainNotFoundError(f"Domain {domain_id} not found")
    return web.json_response(await orchestrator.delete_domain(domain_id))


async def verify_domain_handler(request: Request) -> Response:
    domain = await _owned_domain(request)
    return web.json_response(await _orchestrator(request).verify_domain(domain.id))


async def deploy_domain_handler(request: Request) -> Response:
    domain = await _owned_domain(request)
    body = await _json_body(request)
    result = await _orchestrator(request).deploy_domain(domain.id, body.get('provider') or 'cloud_run')
    return web.json_response(result)


async def switch_to_delegation_handler(request: Request) -> Response:
    domain = await _owned_domain(request)
    result = await _orchestrator(request).switch_to_delegation(domain.id)
    if result.get('domain') is not None:
        result = {**result, 'domain': result['domain'].to_dict()}
    return web.json_response(result)


async def deployment_logs_handler(request: Request) -> Response:
    domain = await _owned_domain(request)
    logs = await _orchestrator(request).get_deployment_logs(domain.id)
    return web.json_response({'logs': [entry.to_dict() for entry in logs]})


async def search_domains_handler(request: Request) -> Response:
    _user_id(request)
    offers = await _orchestrator(request).search_domains(request.query.get('q', ''))
    return web.json_response({'results': [offer.to_dict() for offer in offers]})


async def checkout_handler(request: Request) -> Response:
    user_id = _user_id(request)
    body = await _json_body(request)
    try:
        price = float(body.get('price'))
        years = int(body.get('years', 1))
    except (TypeError, ValueError):
        raise DomainValidationError("price and years must be numbers")
    result = await _orchestrator(request).buy_domain(body.get('domainName') or body.get('domain'),
                                                     price, user_id, years)
    return web.json_response(result, status=200 if result.get('success') else 409)


# ====================================================================
# SERVER
# ====================================================================

def create_app(orchestrator: DomainOrchestrator) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[ORCHESTRATOR_KEY] = orchestrator

    app.router.add_get('/health', health_handler)
    app.router.add_get('/healthz', health_handler)
    app.router.add_post('/webhook/stripe', stripe_webhook_handler)

    app.router.add_post('/api/orders/track', order_track_handler)
    app.router.add_get('/api/orders/{order_id}', order_status_handler)
    app.router.add_delete('/api/orders/{order_id}', order_dismiss_handler)

    app.router.add_get('/api/domains', list_domains_handler)
    app.router.add_post('/api/domains', add_domain_handler)
    app.router.add_get('/api/domains/search', search_domains_handler)
    app.router.add_post('/api/domains/checkout', checkout_handler)
    app.router.add_post('/api/domains/refetch', refetch_handler)
    app.router.add_get('/api/domains/{domain_id}', get_domain_handler)
    app.router.add_patch('/api/domains/{domain_id}', update_domain_handler)
    app.router.add_delete('/api/domains/{domain_id}', delete_domain_handler)
    app.router.add_post('/api/domains/{domain_id}/verify', verify_domain_handler)
    app.router.add_post('/api/domains/{domain_id}/deploy', deploy_domain_handler)
    app.router.add_post('/api/domains/{domain_id}/delegation', switch_to_delegation_handler)
    app.router.add_get('/api/domains/{domain_id}/logs', deployment_logs_handler)
    return app


async def start_webhook_server(orchestrator: DomainOrchestrator, port: int = 8000) -> web.AppRunner:
    """Start the aiohttp server in the current event loop"""
    global _webhook_server

    try:
        runner = web.AppRunner(create_app(orchestrator))
        await runner.setup()

        site = web.TCPSite(runner, '0.0.0.0', port)
        await site.start()

        _webhook_server = runner
        logger.info(f"✅ HTTP server started on http://0.0.0.0:{port}")
        logger.info("🔗 Health check endpoint: /health, /healthz")
        return runner

    except Exception as e:
        logger.error(f"❌ Failed to start HTTP server: {e}")
        raise


async def stop_webhook_server():
    global _webhook_server

    if _webhook_server:
        await _webhook_server.cleanup()
        _webhook_server = None

    logger.info("✅ HTTP server stopped")
