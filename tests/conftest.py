"""
Shared test fixtures and configuration for the domain lifecycle test suite
Provides factories, a manual clock, a scripted DNS resolver and a fully wired orchestrator
"""

import os
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import factory
from factory.faker import Faker
from factory.declarations import Sequence, LazyFunction

# Configure test logging
logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger(__name__)

# Test environment configuration: no live credentials, no database, alerts logged only
for key in ('DATABASE_URL', 'ADMIN_ALERT_WEBHOOK_URL', 'STRIPE_SECRET_KEY', 'NAMECOM_USERNAME',
            'NAMECOM_API_TOKEN', 'CLOUDFLARE_API_TOKEN', 'CLOUDFLARE_EMAIL', 'CLOUDFLARE_API_KEY',
            'GCP_ACCESS_TOKEN', 'GCP_PROJECT_ID', 'VERCEL_TOKEN', 'NETLIFY_TOKEN', 'PLATFORM_NAMESERVERS'):
    os.environ.pop(key, None)

test_env_vars = {
    'PLATFORM_IP': '130.211.43.242',
    'STRIPE_WEBHOOK_SECRET': 'whsec_test_secret',
    'PUBLIC_BASE_URL': 'https://app.example.test',
    'ORDER_POLL_INTERVAL_SECONDS': '3',
    'ORDER_POLL_MAX_ATTEMPTS': '5',
    'PENDING_ALERT_HOURS': '72',
    'DOMAIN_MARGIN_PERCENT': '20',
    'ADMIN_ALERTS_ENABLED': 'true',
}
for key, value in test_env_vars.items():
    os.environ[key] = value

import dns.resolver

from admin_alerts import reset_admin_alert_system, get_admin_alert_system
from platform_config import get_platform_config, reset_platform_config
from domain_models import Domain, DomainOrder, DomainOffer, DomainStatus, DeploymentProvider, SslStatus
from domain_registry import DomainRegistry, InMemoryDomainStore
from operation_leases import OperationLeaseArena
from task_scheduler import TaskScheduler
from services.cloudflare import CloudflareService
from services.cloud_run import CloudRunService
from services.namecom import NameComService
from services.payment_provider import StripeCheckoutService
from services.hosting_providers import CloudRunProvider
from services.dns_verification import DnsVerificationEngine
from services.certificate_monitor import CertificateMonitor
from services.deployment_binder import DeploymentBinder
from services.order_tracker import DomainOrderTracker
from services.registration_orchestrator import RegistrationOrchestrator
from services.domain_orchestrator import DomainOrchestrator

PLATFORM_IP = '130.211.43.242'
PLATFORM_NAMESERVERS = ('ada.ns.cloudflare.com', 'bob.ns.cloudflare.com')


# ============================================================================
# TIME AND DNS DOUBLES
# ============================================================================

async def settle(rounds: int = 20):
    """Let scheduled tasks run until they block again"""
    for _ in range(rounds):
        await asyncio.sleep(0)


class ManualClock:
    """Clock whose sleeps only finish when the test advances time"""

    def __init__(self):
        self._now = 0.0
        self._sleepers = []

    def now(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()
        self._sleepers.append((self._now + seconds, future))
        await future

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, future in self._sleepers if not future.done())

    async def advance(self, seconds: float) -> None:
        self._now += seconds
        due = [(deadline, f) for deadline, f in self._sleepers if deadline <= self._now]
        self._sleepers = [(deadline, f) for deadline, f in self._sleepers if deadline > self._now]
        for _, future in due:
            if not future.done():
                future.set_result(None)
        await settle()


class FakeRdata:
    def __init__(self, text: str):
        self._text = text

    def to_text(self) -> str:
        return self._text


class FakeResolver:
    """Scripted stand-in for dns.asyncresolver.Resolver"""

    def __init__(self):
        self.answers = {}
        self.queries = []

    def set(self, qname: str, rdtype: str, values):
        self.answers[(qname, rdtype)] = values

    async def resolve(self, qname: str, rdtype: str):
        self.queries.append((qname, rdtype))
        value = self.answers.get((qname, rdtype))
        if isinstance(value, BaseException) or (isinstance(value, type) and issubclass(value, BaseException)):
            raise value
        if value is None:
            raise dns.resolver.NoAnswer()
        return [FakeRdata(text) for text in value]


# ============================================================================
# FACTORIES
# ============================================================================

class DomainFactory(factory.Factory):  # type: ignore[misc]
    """Keyword arguments for a Domain record"""
    class Meta:  # type: ignore[misc]
        model = dict

    name = Sequence(lambda n: f"site{n}.com")
    user_id = 'user-1'
    project_id = Faker('uuid4')
    status = DomainStatus.PENDING


class OrderFactory(factory.Factory):  # type: ignore[misc]
    """Keyword arguments for a DomainOrder"""
    class Meta:  # type: ignore[misc]
        model = dict

    domain_name = Sequence(lambda n: f"shop{n}.com")
    user_id = 'user-1'
    customer_price = 14.39
    wholesale_price = 11.99
    years = 1


class OfferFactory(factory.Factory):  # type: ignore[misc]
    """Keyword arguments for a DomainOffer"""
    class Meta:  # type: ignore[misc]
        model = dict

    name = Sequence(lambda n: f"brand{n}.com")
    available = True
    price = 14.39
    renewal_price = 17.99
    premium = False


class AvailabilityRowFactory(factory.Factory):  # type: ignore[misc]
    """Raw registrar availability row"""
    class Meta:  # type: ignore[misc]
        model = dict

    domainName = Sequence(lambda n: f"brand{n}.com")
    purchasable = True
    purchasePrice = 11.99
    renewalPrice = 14.99
    premium = False


def make_domain(**overrides) -> Domain:
    return Domain(**DomainFactory(**overrides))


def make_order(**overrides) -> DomainOrder:
    return DomainOrder(**OrderFactory(**overrides))


def make_offer(**overrides) -> DomainOffer:
    return DomainOffer(**OfferFactory(**overrides))


def hours_ago(hours: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=hours)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture(autouse=True)
def fresh_singletons():
    """Re-read configuration and start each test with an empty alert history"""
    reset_platform_config()
    reset_admin_alert_system()
    yield
    reset_platform_config()
    reset_admin_alert_system()


@pytest.fixture
def platform_config():
    return get_platform_config()


@pytest.fixture
def delivered_alerts():
    """Alerts delivered during the test (log-only delivery)"""
    return get_admin_alert_system().delivered


@pytest.fixture
def store():
    return InMemoryDomainStore()


@pytest.fixture
def registry(store):
    return DomainRegistry(store)


@pytest.fixture
def manual_clock():
    return ManualClock()


@pytest.fixture
def scheduler(manual_clock):
    return TaskScheduler(clock=manual_clock)


@pytest.fixture
def leases():
    return OperationLeaseArena()


@pytest.fixture
def fake_resolver():
    return FakeResolver()


@pytest.fixture
def mock_cloudflare():
    """Configured Cloudflare client whose calls are scripted per test"""
    cloudflare = MagicMock(spec=CloudflareService)
    cloudflare.is_configured = True
    cloudflare.get_zone_status = AsyncMock(return_value=None)
    cloudflare.setup_delegated_domain = AsyncMock(return_value={
        'success': True,
        'zone_id': 'zone-123',
        'nameservers': list(PLATFORM_NAMESERVERS),
        'zone_status': 'pending',
        'created_zone': True,
    })
    cloudflare.delete_zone = AsyncMock(return_value=True)
    return cloudflare


@pytest.fixture
def mock_cloud_run():
    cloud_run = MagicMock(spec=CloudRunService)
    cloud_run.is_configured = True
    cloud_run.certificate_status = AsyncMock(return_value=SslStatus.ACTIVE)
    return cloud_run


@pytest.fixture
def mock_hosting():
    """Cloud Run hosting provider that binds successfully"""
    provider = MagicMock(spec=CloudRunProvider)
    provider.bind = AsyncMock(side_effect=lambda domain: {'success': True, 'url': domain.https_url})
    provider.unbind = AsyncMock(return_value=True)
    return provider


@pytest.fixture
def registrar():
    """Real Name.com client with the HTTP layer replaced"""
    service = NameComService()
    service.check_availability = AsyncMock(return_value=[])
    service.register_domain = AsyncMock(return_value={'success': True, 'already_owned': False, 'response': {}})
    service.set_nameservers = AsyncMock(return_value=True)
    return service


@pytest.fixture
def mock_payments():
    payments = MagicMock(spec=StripeCheckoutService)
    payments.create_checkout_session = AsyncMock(return_value={
        'session_id': 'cs_test_123',
        'checkout_url': 'https://checkout.stripe.com/c/pay/cs_test_123',
    })
    return payments


@pytest.fixture
def verifier(fake_resolver, mock_cloudflare, platform_config):
    return DnsVerificationEngine(resolver=fake_resolver, cloudflare=mock_cloudflare, config=platform_config)


@pytest.fixture
def certificates(registry, mock_cloud_run):
    return CertificateMonitor(registry, cloud_run=mock_cloud_run)


@pytest.fixture
def binder(registry, leases, mock_hosting):
    return DeploymentBinder(registry, leases, providers={DeploymentProvider.CLOUD_RUN: mock_hosting})


@pytest.fixture
def tracker(registry, registrar, mock_payments, scheduler, platform_config):
    return DomainOrderTracker(registry, registrar=registrar, payments=mock_payments,
                              scheduler=scheduler, config=platform_config)


@pytest.fixture
def registration(registry, registrar, mock_cloudflare, platform_config):
    return RegistrationOrchestrator(registry, registrar=registrar, cloudflare=mock_cloudflare,
                                    config=platform_config)


@pytest.fixture
def orchestrator(registry, verifier, certificates, binder, tracker, registration, mock_cloudflare,
                 leases, scheduler, platform_config):
    """Orchestrator wired to in-memory storage and scripted external services"""
    return DomainOrchestrator(
        registry=registry,
        verifier=verifier,
        certificates=certificates,
        binder=binder,
        tracker=tracker,
        registration=registration,
        cloudflare=mock_cloudflare,
        leases=leases,
        scheduler=scheduler,
        config=platform_config,
    )
