"""
Domain lifecycle models
Domain records, DNS strategies, orders, deployment logs and the status state machine
"""

import re
import uuid
import logging
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any, Union

import idna

logger = logging.getLogger(__name__)


# ============================================================================
# EXCEPTIONS
# ============================================================================

class DomainLifecycleError(Exception):
    """Base class for domain lifecycle failures"""


class DomainValidationError(DomainLifecycleError):
    """Rejected input: malformed name, missing project, unknown provider"""


class DomainNotFoundError(DomainLifecycleError):
    """No live domain with the requested id"""


class DuplicateDomainError(DomainLifecycleError):
    """Domain name already present in the registry"""


class InvalidTransitionError(DomainLifecycleError):
    """Status change not allowed by the transition table"""

    def __init__(self, domain_id: str, current: 'DomainStatus', target: 'DomainStatus'):
        self.domain_id = domain_id
        self.current = current
        self.target = target
        super().__init__(f"Domain {domain_id}: cannot move from {current.value} to {target.value}")


class OperationInProgressError(DomainLifecycleError):
    """Another operation holds the domain's lease"""

    def __init__(self, domain_id: str, operation: str):
        self.domain_id = domain_id
        self.operation = operation
        super().__init__(f"Domain {domain_id} is busy: {operation} already in progress")


class LeaseRevokedError(DomainLifecycleError):
    """Operation cancelled because its lease was revoked (domain deleted or service stopping)"""

    def __init__(self, domain_id: str, operation: str, deleted: bool = False):
        self.domain_id = domain_id
        self.operation = operation
        self.deleted = deleted
        super().__init__(f"{operation} for domain {domain_id} was cancelled")


class ExternalServiceError(DomainLifecycleError):
    """External API failure after the client's retry budget"""

    def __init__(self, service: str, message: str, retryable: bool = True, status_code: Optional[int] = None):
        self.service = service
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(f"{service}: {message}")


class HostingPermissionError(ExternalServiceError):
    """Hosting control plane refused the mapping (permissions or unverified ownership)"""

    def __init__(self, service: str, message: str, status_code: Optional[int] = 403):
        super().__init__(service, message, retryable=False, status_code=status_code)


# ============================================================================
# ENUMS
# ============================================================================

class DomainStatus(Enum):
    PENDING_REGISTRATION = "pending_registration"
    PENDING = "pending"
    PENDING_NAMESERVERS = "pending_nameservers"
    VERIFYING = "verifying"
    SSL_PENDING = "ssl_pending"
    ACTIVE = "active"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    ERROR = "error"
    DELETED = "deleted"


class SslStatus(Enum):
    NONE = "none"
    PENDING = "pending"
    PROVISIONING = "provisioning"
    ACTIVE = "active"


class OrderState(Enum):
    PENDING_PAYMENT = "pending_payment"
    REGISTERING = "registering"
    CONFIGURING_DNS = "configuring_dns"
    UPDATING_NAMESERVERS = "updating_nameservers"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderState.COMPLETED, OrderState.FAILED)


class DeploymentLogStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    INFO = "info"


class DeploymentProvider(Enum):
    VERCEL = "vercel"
    CLOUDFLARE = "cloudflare"
    NETLIFY = "netlify"
    CLOUD_RUN = "cloud_run"


class MappingStatus(Enum):
    OK = "ok"
    ERROR = "error"


ORDER_STEP_MESSAGES = {
    OrderState.PENDING_PAYMENT: "Waiting for payment confirmation...",
    OrderState.REGISTERING: "Registering your domain...",
    OrderState.CONFIGURING_DNS: "Configuring DNS...",
    OrderState.UPDATING_NAMESERVERS: "Updating nameservers...",
    OrderState.COMPLETED: "Domain registered successfully!",
    OrderState.FAILED: "Registration failed",
}


# ============================================================================
# STATE MACHINE
# ============================================================================

S = DomainStatus

ALLOWED_TRANSITIONS: Dict[DomainStatus, frozenset] = {
    S.PENDING_REGISTRATION: frozenset({S.PENDING, S.PENDING_NAMESERVERS, S.ACTIVE, S.ERROR, S.DELETED}),
    S.PENDING: frozenset({S.VERIFYING, S.PENDING_NAMESERVERS, S.DEPLOYING, S.ERROR, S.DELETED}),
    S.PENDING_NAMESERVERS: frozenset({S.VERIFYING, S.PENDING, S.DEPLOYING, S.ERROR, S.DELETED}),
    S.VERIFYING: frozenset({S.PENDING, S.PENDING_NAMESERVERS, S.SSL_PENDING, S.ACTIVE, S.ERROR, S.DELETED}),
    S.SSL_PENDING: frozenset({S.VERIFYING, S.ACTIVE, S.PENDING_NAMESERVERS, S.DEPLOYING, S.ERROR, S.DELETED}),
    S.ACTIVE: frozenset({S.SSL_PENDING, S.PENDING_NAMESERVERS, S.DEPLOYING, S.ERROR, S.DELETED}),
    S.DEPLOYING: frozenset({S.DEPLOYED, S.PENDING, S.PENDING_NAMESERVERS, S.SSL_PENDING, S.ACTIVE,
                            S.ERROR, S.DELETED}),
    S.DEPLOYED: frozenset({S.DEPLOYING, S.ACTIVE, S.PENDING_NAMESERVERS, S.ERROR, S.DELETED}),
    S.ERROR: frozenset({S.VERIFYING, S.DEPLOYING, S.PENDING, S.PENDING_NAMESERVERS, S.DELETED}),
    S.DELETED: frozenset(),
}

# Statuses in which DNS already resolves to the platform
VERIFIED_STATUSES = frozenset({S.ACTIVE, S.DEPLOYED})

# Statuses the periodic verification sweep picks up
AWAITING_DNS_STATUSES = frozenset({S.PENDING, S.PENDING_NAMESERVERS, S.SSL_PENDING, S.ERROR})

del S


def can_transition(current: DomainStatus, target: DomainStatus) -> bool:
    """Whether a domain may move from current to target (self-transitions are allowed)"""
    if current == target:
        return current != DomainStatus.DELETED
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


# ============================================================================
# DOMAIN NAMES
# ============================================================================

DOMAIN_NAME_PATTERN = re.compile(r'^[a-z0-9]+([\-\.][a-z0-9]+)*\.[a-z]{2,}$')


def normalize_domain_name(raw: Optional[str]) -> str:
    """Lower-case, strip scheme, leading www. and any path"""
    if not raw:
        return ''
    name = raw.strip().lower()
    name = re.sub(r'^https?://', '', name)
    name = re.sub(r'^www\.', '', name)
    name = name.split('/')[0]
    return name.rstrip('.')


def validate_domain_name(raw: Optional[str]) -> str:
    """
    Normalise and validate a domain name

    Internationalised names are checked in their ASCII (punycode) form.

    Args:
        raw: Domain name as supplied by the user

    Returns:
        str: Normalised domain name

    Raises:
        DomainValidationError: when the name is missing or malformed
    """
    name = normalize_domain_name(raw)
    if not name:
        raise DomainValidationError("Domain name is required")

    try:
        ascii_name = idna.encode(name, uts46=True).decode('ascii')
    except idna.IDNAError as e:
        raise DomainValidationError(f"Invalid domain name '{name}': {e}")

    if len(ascii_name) > 253:
        raise DomainValidationError(f"Domain name too long ({len(ascii_name)} characters, max 253)")

    labels = ascii_name.split('.')
    if len(labels) < 2:
        raise DomainValidationError(f"Domain name '{name}' must include a TLD (for example {name}.com)")

    for label in labels:
        if not label or len(label) > 63:
            raise DomainValidationError(f"Invalid label length in '{name}'")
        if label.startswith('-') or label.endswith('-'):
            raise DomainValidationError(f"Labels in '{name}' cannot start or end with a hyphen")

    tld = labels[-1]
    if not (tld.isalpha() or tld.startswith('xn--')) or len(tld) < 2:
        raise DomainValidationError(f"Invalid TLD '.{tld}' in '{name}'")

    if not ascii_name.startswith('xn--') and '.xn--' not in ascii_name and not DOMAIN_NAME_PATTERN.match(ascii_name):
        raise DomainValidationError(f"Invalid domain name format: '{name}'")

    return name


def get_domain_tld(name: str) -> str:
    """Return '.tld' for a domain name ('.co.uk' style suffixes keep every label after the first)"""
    parts = name.lower().split('.', 1)
    return f".{parts[1]}" if len(parts) == 2 else ''


# ============================================================================
# DNS STRATEGIES
# ============================================================================

@dataclass(frozen=True)
class RecordsStrategy:
    """User keeps their DNS provider and points A @ and CNAME www at the platform"""
    a_record: str
    cname_target: str

    mode = 'records'

    def to_dict(self) -> Dict[str, Any]:
        return {'aRecord': self.a_record, 'cnameRecord': self.cname_target}


@dataclass(frozen=True)
class DelegationStrategy:
    """Authoritative DNS delegated to platform nameservers"""
    nameservers: tuple
    zone_id: Optional[str] = None

    mode = 'delegation'

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'cloudflareNameservers': list(self.nameservers)}
        if self.zone_id:
            data['cloudflareZoneId'] = self.zone_id
        return data


DnsStrategy = Union[RecordsStrategy, DelegationStrategy]


def dns_strategy_from_dict(data: Optional[Dict[str, Any]]) -> Optional[DnsStrategy]:
    """Rebuild a strategy from its stored form; the presence of nameservers selects delegation"""
    if not data:
        return None
    nameservers = data.get('cloudflareNameservers') or data.get('nameservers')
    if nameservers:
        return DelegationStrategy(
            nameservers=tuple(ns.lower().rstrip('.') for ns in nameservers),
            zone_id=data.get('cloudflareZoneId') or data.get('zone_id'),
        )
    a_record = data.get('aRecord') or data.get('a_record')
    cname = data.get('cnameRecord') or data.get('cname_target')
    if a_record or cname:
        return RecordsStrategy(a_record=a_record or '', cname_target=cname or '')
    return None


# ============================================================================
# RECORDS
# ============================================================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace('Z', '+00:00'))


@dataclass
class DeploymentInfo:
    provider: Optional[str] = None
    deployment_url: Optional[str] = None
    last_deployed_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'provider': self.provider,
            'deploymentUrl': self.deployment_url,
            'lastDeployedAt': _iso(self.last_deployed_at),
            'error': self.error,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['DeploymentInfo']:
        if not data:
            return None
        return cls(
            provider=data.get('provider'),
            deployment_url=data.get('deploymentUrl'),
            last_deployed_at=_parse_dt(data.get('lastDeployedAt')),
            error=data.get('error'),
        )


@dataclass
class Domain:
    """A domain record and its lifecycle status"""
    name: str
    user_id: str
    id: str = field(default_factory=new_id)
    status: DomainStatus = DomainStatus.PENDING
    ssl_status: SslStatus = SslStatus.NONE
    provider: str = 'External'
    project_id: Optional[str] = None
    project_user_id: Optional[str] = None
    dns_config: Optional[DnsStrategy] = None
    cloud_run_mapping_status: Optional[MappingStatus] = None
    cloud_run_error: Optional[str] = None
    deployment: Optional[DeploymentInfo] = None
    status_message: Optional[str] = None
    order_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    status_changed_at: datetime = field(default_factory=utc_now)
    expiry_date: Optional[datetime] = None
    verified_at: Optional[datetime] = None

    @property
    def uses_delegation(self) -> bool:
        return isinstance(self.dns_config, DelegationStrategy)

    @property
    def https_url(self) -> str:
        return f"https://{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'userId': self.user_id,
            'status': self.status.value,
            'sslStatus': self.ssl_status.value,
            'provider': self.provider,
            'projectId': self.project_id,
            'projectUserId': self.project_user_id,
            'dnsConfig': self.dns_config.to_dict() if self.dns_config else None,
            'cloudRunMappingStatus': self.cloud_run_mapping_status.value if self.cloud_run_mapping_status else None,
            'cloudRunError': self.cloud_run_error,
            'deployment': self.deployment.to_dict() if self.deployment else None,
            'statusMessage': self.status_message,
            'orderId': self.order_id,
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
            'statusChangedAt': _iso(self.status_changed_at),
            'expiryDate': _iso(self.expiry_date),
            'verifiedAt': _iso(self.verified_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Domain':
        mapping = data.get('cloudRunMappingStatus')
        now = utc_now()
        return cls(
            id=data['id'],
            name=data['name'],
            user_id=data.get('userId') or '',
            status=DomainStatus(data.get('status') or DomainStatus.PENDING.value),
            ssl_status=SslStatus(data.get('sslStatus') or SslStatus.NONE.value),
            provider=data.get('provider') or 'External',
            project_id=data.get('projectId'),
            project_user_id=data.get('projectUserId'),
            dns_config=dns_strategy_from_dict(data.get('dnsConfig')),
            cloud_run_mapping_status=MappingStatus(mapping) if mapping else None,
            cloud_run_error=data.get('cloudRunError'),
            deployment=DeploymentInfo.from_dict(data.get('deployment')),
            status_message=data.get('statusMessage'),
            order_id=data.get('orderId'),
            created_at=_parse_dt(data.get('createdAt')) or now,
            updated_at=_parse_dt(data.get('updatedAt')) or now,
            status_changed_at=_parse_dt(data.get('statusChangedAt')) or now,
            expiry_date=_parse_dt(data.get('expiryDate')),
            verified_at=_parse_dt(data.get('verifiedAt')),
        )


@dataclass(frozen=True)
class DeploymentLogEntry:
    """Append-only deployment log line owned by a domain"""
    domain_id: str
    status: DeploymentLogStatus
    message: str
    details: Optional[Dict[str, Any]] = None
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'domainId': self.domain_id,
            'status': self.status.value,
            'message': self.message,
            'details': self.details,
            'timestamp': _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeploymentLogEntry':
        return cls(
            id=data['id'],
            domain_id=data['domainId'],
            status=DeploymentLogStatus(data['status']),
            message=data['message'],
            details=data.get('details'),
            timestamp=_parse_dt(data.get('timestamp')) or utc_now(),
        )


@dataclass
class DomainOrder:
    """Server-side purchase order driven by the registration pipeline"""
    domain_name: str
    user_id: str
    customer_price: float
    wholesale_price: Optional[float] = None
    years: int = 1
    id: str = field(default_factory=new_id)
    status: OrderState = OrderState.PENDING_PAYMENT
    session_id: Optional[str] = None
    nameservers: List[str] = field(default_factory=list)
    zone_id: Optional[str] = None
    domain_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'domainName': self.domain_name,
            'userId': self.user_id,
            'customerPrice': self.customer_price,
            'wholesalePrice': self.wholesale_price,
            'years': self.years,
            'status': self.status.value,
            'sessionId': self.session_id,
            'nameservers': list(self.nameservers),
            'zoneId': self.zone_id,
            'domainId': self.domain_id,
            'error': self.error,
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DomainOrder':
        now = utc_now()
        return cls(
            id=data['id'],
            domain_name=data['domainName'],
            user_id=data.get('userId') or '',
            customer_price=float(data.get('customerPrice') or 0),
            wholesale_price=float(data['wholesalePrice']) if data.get('wholesalePrice') is not None else None,
            years=int(data.get('years') or 1),
            status=OrderState(data.get('status') or OrderState.PENDING_PAYMENT.value),
            session_id=data.get('sessionId'),
            nameservers=list(data.get('nameservers') or []),
            zone_id=data.get('zoneId'),
            domain_id=data.get('domainId'),
            error=data.get('error'),
            created_at=_parse_dt(data.get('createdAt')) or now,
            updated_at=_parse_dt(data.get('updatedAt')) or now,
        )


@dataclass
class OrderStatus:
    """What a purchase poll reports back to the caller"""
    order_id: str
    domain_name: str
    status: OrderState
    step: str = ''
    nameservers: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def __post_init__(self):
        if not self.step:
            self.step = ORDER_STEP_MESSAGES.get(self.status, '')

    @classmethod
    def from_order(cls, order: DomainOrder) -> 'OrderStatus':
        return cls(
            order_id=order.id,
            domain_name=order.domain_name,
            status=order.status,
            nameservers=list(order.nameservers),
            error=order.error,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'orderId': self.order_id,
            'domainName': self.domain_name,
            'status': self.status.value,
            'step': self.step,
            'nameservers': list(self.nameservers),
            'error': self.error,
        }


@dataclass
class DomainOffer:
    """One search result row"""
    name: str
    available: bool
    price: Optional[float] = None
    renewal_price: Optional[float] = None
    premium: bool = False
    currency: str = 'USD'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'available': self.available,
            'price': self.price,
            'renewalPrice': self.renewal_price,
            'premium': self.premium,
            'currency': self.currency,
        }
