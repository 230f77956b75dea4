"""
Domain Registry
Single source of truth for domain records, deployment logs and purchase orders.
All status writes go through transition(), which enforces the lifecycle state machine.
"""

import copy
import logging
from datetime import datetime
from typing import Dict, List, Optional, Any

import database
from domain_models import (
    Domain, DomainStatus, DomainOrder, OrderState, DeploymentLogEntry, DeploymentLogStatus,
    DeploymentInfo, MappingStatus, SslStatus, DuplicateDomainError, DomainNotFoundError,
    DomainValidationError, InvalidTransitionError, can_transition, dns_strategy_from_dict, utc_now,
)

logger = logging.getLogger(__name__)

# Fields callers may change through update(); status goes through transition()
UPDATABLE_FIELDS = frozenset({
    'project_id', 'project_user_id', 'dns_config', 'provider', 'expiry_date', 'ssl_status',
    'cloud_run_mapping_status', 'cloud_run_error', 'deployment', 'status_message', 'order_id',
    'verified_at',
})

# Wire names accepted in patches from the HTTP surface; nothing else is patchable
PATCH_ALIASES = {
    'projectId': 'project_id',
    'projectUserId': 'project_user_id',
    'dnsConfig': 'dns_config',
    'expiryDate': 'expiry_date',
    'sslStatus': 'ssl_status',
    'status': 'status',
}

# Only the deployment binder moves a domain into these, and only with a project selected
BINDING_STATUSES = frozenset({DomainStatus.DEPLOYING, DomainStatus.DEPLOYED})


# ============================================================================
# STORES
# ============================================================================

class InMemoryDomainStore:
    """Process-local store with the same interface as PostgresDomainStore"""

    def __init__(self):
        self._domains: Dict[str, Domain] = {}
        self._logs: Dict[str, List[DeploymentLogEntry]] = {}
        self._orders: Dict[str, DomainOrder] = {}

    async def load_domains(self, user_id: Optional[str] = None) -> List[Domain]:
        return [
            copy.deepcopy(d) for d in self._domains.values()
            if d.status != DomainStatus.DELETED and (user_id is None or d.user_id == user_id)
        ]

    async def get_domain(self, domain_id: str) -> Optional[Domain]:
        domain = self._domains.get(domain_id)
        return copy.deepcopy(domain) if domain else None

    async def find_live_domain_by_name(self, name: str) -> Optional[Domain]:
        for domain in self._domains.values():
            if domain.name == name and domain.status != DomainStatus.DELETED:
                return copy.deepcopy(domain)
        return None

    async def insert_domain(self, domain: Domain) -> None:
        if await self.find_live_domain_by_name(domain.name):
            raise DuplicateDomainError(f"Domain {domain.name} already exists")
        self._domains[domain.id] = copy.deepcopy(domain)

    async def save_domain(self, domain: Domain) -> None:
        if domain.id not in self._domains:
            raise DomainNotFoundError(f"Domain {domain.id} not found")
        self._domains[domain.id] = copy.deepcopy(domain)

    async def append_log(self, entry: DeploymentLogEntry) -> None:
        self._logs.setdefault(entry.domain_id, []).append(entry)

    async def list_logs(self, domain_id: str) -> List[DeploymentLogEntry]:
        return sorted(self._logs.get(domain_id, []), key=lambda e: e.timestamp, reverse=True)

    async def insert_order(self, order: DomainOrder) -> None:
        self._orders[order.id] = copy.deepcopy(order)

    async def save_order(self, order: DomainOrder) -> None:
        self._orders[order.id] = copy.deepcopy(order)

    async def get_order(self, order_id: str) -> Optional[DomainOrder]:
        order = self._orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def find_order_by_session(self, session_id: str) -> Optional[DomainOrder]:
        for order in self._orders.values():
            if order.session_id == session_id:
                return copy.deepcopy(order)
        return None

    async def claim_order(self, order_id: str, from_states: List[OrderState], to_state: OrderState) -> Optional[DomainOrder]:
        order = self._orders.get(order_id)
        if not order or order.status not in from_states:
            return None
        order.status = to_state
        order.updated_at = utc_now()
        return copy.deepcopy(order)


class PostgresDomainStore:
    """Store backed by the domains, deployment_logs and domain_orders tables"""

    @staticmethod
    def _domain_to_row(domain: Domain) -> Dict[str, Any]:
        return {
            'id': domain.id,
            'name': domain.name,
            'user_id': domain.user_id,
            'status': domain.status.value,
            'ssl_status': domain.ssl_status.value,
            'provider': domain.provider,
            'project_id': domain.project_id,
            'project_user_id': domain.project_user_id,
            'dns_config': domain.dns_config.to_dict() if domain.dns_config else None,
            'cloud_run_mapping_status': domain.cloud_run_mapping_status.value if domain.cloud_run_mapping_status else None,
            'cloud_run_error': domain.cloud_run_error,
            'deployment': domain.deployment.to_dict() if domain.deployment else None,
            'status_message': domain.status_message,
            'order_id': domain.order_id,
            'created_at': domain.created_at,
            'updated_at': domain.updated_at,
            'status_changed_at': domain.status_changed_at,
            'expiry_date': domain.expiry_date,
            'verified_at': domain.verified_at,
        }

    @staticmethod
    def _row_to_domain(row: Dict[str, Any]) -> Domain:
        mapping = row.get('cloud_run_mapping_status')
        return Domain(
            id=row['id'],
            name=row['name'],
            user_id=row['user_id'],
            status=DomainStatus(row['status']),
            ssl_status=SslStatus(row.get('ssl_status') or 'none'),
            provider=row.get('provider') or 'External',
            project_id=row.get('project_id'),
            project_user_id=row.get('project_user_id'),
            dns_config=dns_strategy_from_dict(row.get('dns_config')),
            cloud_run_mapping_status=MappingStatus(mapping) if mapping else None,
            cloud_run_error=row.get('cloud_run_error'),
            deployment=DeploymentInfo.from_dict(row.get('deployment')),
            status_message=row.get('status_message'),
            order_id=row.get('order_id'),
            created_at=row['created_at'],
            updated_at=row['updated_at'],
            status_changed_at=row['status_changed_at'],
            expiry_date=row.get('expiry_date'),
            verified_at=row.get('verified_at'),
        )

    @staticmethod
    def _order_to_row(order: DomainOrder) -> Dict[str, Any]:
        return {
            'id': order.id,
            'domain_name': order.domain_name,
            'user_id': order.user_id,
            'customer_price': order.customer_price,
            'wholesale_price': order.wholesale_price,
            'years': order.years,
            'status': order.status.value,
            'session_id': order.session_id,
            'nameservers': list(order.nameservers),
            'zone_id': order.zone_id,
            'domain_id': order.domain_id,
            'error': order.error,
            'created_at': order.created_at,
            'updated_at': order.updated_at,
        }

    @staticmethod
    def _row_to_order(row: Dict[str, Any]) -> DomainOrder:
        return DomainOrder(
            id=row['id'],
            domain_name=row['domain_name'],
            user_id=row['user_id'],
            customer_price=float(row['customer_price']),
            wholesale_price=float(row['wholesale_price']) if row.get('wholesale_price') is not None else None,
            years=row.get('years') or 1,
            status=OrderState(row['status']),
            session_id=row.get('session_id'),
            nameservers=list(row.get('nameservers') or []),
            zone_id=row.get('zone_id'),
            domain_id=row.get('domain_id'),
            error=row.get('error'),
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )

    async def load_domains(self, user_id: Optional[str] = None) -> List[Domain]:
        return [self._row_to_domain(r) for r in await database.list_live_domain_rows(user_id)]

    async def get_domain(self, domain_id: str) -> Optional[Domain]:
        row = await database.get_domain_row(domain_id)
        return self._row_to_domain(row) if row else None

    async def find_live_domain_by_name(self, name: str) -> Optional[Domain]:
        row = await database.get_live_domain_row_by_name(name)
        return self._row_to_domain(row) if row else None

    async def insert_domain(self, domain: Domain) -> None:
        try:
            await database.insert_domain_row(self._domain_to_row(domain))
        except database.UniqueViolation:
            raise DuplicateDomainError(f"Domain {domain.name} already exists")

    async def save_domain(self, domain: Domain) -> None:
        updated = await database.update_domain_row(domain.id, self._domain_to_row(domain))
        if not updated:
            raise DomainNotFoundError(f"Domain {domain.id} not found")

    async def append_log(self, entry: DeploymentLogEntry) -> None:
        await database.insert_deployment_log_row({
            'id': entry.id,
            'domain_id': entry.domain_id,
            'status': entry.status.value,
            'message': entry.message,
            'details': entry.details,
            'created_at': entry.timestamp,
        })

    async def list_logs(self, domain_id: str) -> List[DeploymentLogEntry]:
        rows = await database.list_deployment_log_rows(domain_id)
        return [
            DeploymentLogEntry(
                id=r['id'],
                domain_id=r['domain_id'],
                status=DeploymentLogStatus(r['status']),
                message=r['message'],
                details=r.get('details'),
                timestamp=r['created_at'],
            )
            for r in rows
        ]

    async def insert_order(self, order: DomainOrder) -> None:
        await database.insert_order_row(self._order_to_row(order))

    async def save_order(self, order: DomainOrder) -> None:
        await database.update_order_row(order.id, self._order_to_row(order))

    async def get_order(self, order_id: str) -> Optional[DomainOrder]:
        row = await database.get_order_row(order_id)
        return self._row_to_order(row) if row else None

    async def find_order_by_session(self, session_id: str) -> Optional[DomainOrder]:
        row = await database.get_order_row_by_session(session_id)
        return self._row_to_order(row) if row else None

    async def claim_order(self, order_id: str, from_states: List[OrderState], to_state: OrderState) -> Optional[DomainOrder]:
        row = await database.claim_order_row(order_id, [s.value for s in from_states], to_state.value)
        return self._row_to_order(row) if row else None


def create_default_store():
    """PostgreSQL when DATABASE_URL is set, otherwise a process-local store"""
    if database.is_database_configured():
        logger.info("🗄️ Domain registry using PostgreSQL store")
        return PostgresDomainStore()
    logger.warning("⚠️ DATABASE_URL not set - domain registry using in-memory store")
    return InMemoryDomainStore()


# ============================================================================
# REGISTRY
# ============================================================================

class DomainRegistry:
    """
    Cached view over a domain store

    Reads are served from the cache when possible and refresh() reloads it.
    Every write goes to the store first, then to the cache.
    """

    def __init__(self, store=None):
        self.store = store if store is not None else create_default_store()
        self._cache: Dict[str, Domain] = {}

    # ---------------------------------------------------------------- reads

    async def refresh(self, user_id: Optional[str] = None) -> List[Domain]:
        domains = await self.store.load_domains(user_id)
        if user_id is None:
            self._cache = {d.id: d for d in domains}
        else:
            self._cache = {k: v for k, v in self._cache.items() if v.user_id != user_id}
            self._cache.update({d.id: d for d in domains})
        logger.debug(f"🔄 Registry refreshed: {len(domains)} domains")
        return [copy.deepcopy(d) for d in domains]

    async def get(self, domain_id: str) -> Optional[Domain]:
        """Live domain by id, None when missing or deleted"""
        domain = self._cache.get(domain_id)
        if domain is None:
            domain = await self.store.get_domain(domain_id)
            if domain is None or domain.status == DomainStatus.DELETED:
                return None
            self._cache[domain.id] = domain
        return copy.deepcopy(domain)

    async def require(self, domain_id: str) -> Domain:
        domain = await self.get(domain_id)
        if domain is None:
            raise DomainNotFoundError(f"Domain {domain_id} not found")
        return domain

    async def get_by_name(self, name: str) -> Optional[Domain]:
        for domain in self._cache.values():
            if domain.name == name:
                return copy.deepcopy(domain)
        return await self.store.find_live_domain_by_name(name)

    def list_domains(self, user_id: Optional[str] = None, statuses=None) -> List[Domain]:
        return [
            copy.deepcopy(d) for d in sorted(self._cache.values(), key=lambda d: d.created_at, reverse=True)
            if (user_id is None or d.user_id == user_id) and (statuses is None or d.status in statuses)
        ]

    # ---------------------------------------------------------------- writes

    async def add(self, domain: Domain) -> Domain:
        existing = await self.get_by_name(domain.name)
        if existing:
            if existing.user_id != domain.user_id:
                raise DuplicateDomainError(f"Domain {domain.name} is already connected to another account")
            raise DuplicateDomainError(f"Domain {domain.name} is already in your account")
        await self.store.insert_domain(domain)
        self._cache[domain.id] = copy.deepcopy(domain)
        logger.info(f"✅ Domain added: {domain.name} ({domain.id}) status={domain.status.value}")
        return copy.deepcopy(domain)

    async def update(self, domain_id: str, **fields) -> Domain:
        """Patch non-status fields"""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise DomainValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        domain = await self.require(domain_id)
        for name, value in fields.items():
            setattr(domain, name, value)
        self._check_project_binding(domain, domain.status)
        return await self._save(domain)

    async def transition(self, domain_id: str, status: DomainStatus, status_changed_at: Optional[datetime] = None,
                         **fields) -> Domain:
        """
        Move a domain to status, optionally patching fields in the same write

        status_changed_at backdates the change, for a check that returns the domain to where it was.
        """
        domain = await self.require(domain_id)
        if not can_transition(domain.status, status):
            raise InvalidTransitionError(domain_id, domain.status, status)
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise DomainValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        previous = domain.status
        for name, value in fields.items():
            setattr(domain, name, value)
        self._check_project_binding(domain, status)
        if previous != status:
            domain.status = status
            domain.status_changed_at = status_changed_at or utc_now()
            logger.info(f"🔄 {domain.name}: {previous.value} → {status.value}")
        return await self._save(domain)

    @staticmethod
    def _check_project_binding(domain: Domain, status: DomainStatus):
        if status in BINDING_STATUSES and not domain.project_id:
            raise DomainValidationError(
                f"{domain.name} has no project; it cannot be {status.value} without one")

    async def remove(self, domain_id: str) -> bool:
        """Tombstone a domain; False when it was already gone"""
        domain = await self.store.get_domain(domain_id)
        if domain is None or domain.status == DomainStatus.DELETED:
            self._cache.pop(domain_id, None)
            return False
        domain.status = DomainStatus.DELETED
        domain.status_changed_at = utc_now()
        domain.updated_at = domain.status_changed_at
        await self.store.save_domain(domain)
        self._cache.pop(domain_id, None)
        logger.info(f"🗑️ Domain removed: {domain.name} ({domain_id})")
        return True

    async def _save(self, domain: Domain) -> Domain:
        domain.updated_at = utc_now()
        await self.store.save_domain(domain)
        self._cache[domain.id] = copy.deepcopy(domain)
        return domain

    # ---------------------------------------------------------------- logs

    async def append_log(self, domain_id: str, status: DeploymentLogStatus, message: str,
                         details: Optional[Dict[str, Any]] = None) -> DeploymentLogEntry:
        entry = DeploymentLogEntry(domain_id=domain_id, status=status, message=message, details=details)
        await self.store.append_log(entry)
        return entry

    async def get_logs(self, domain_id: str) -> List[DeploymentLogEntry]:
        return await self.store.list_logs(domain_id)

    # ---------------------------------------------------------------- orders

    async def create_order(self, order: DomainOrder) -> DomainOrder:
        await self.store.insert_order(order)
        return order

    async def save_order(self, order: DomainOrder) -> DomainOrder:
        order.updated_at = utc_now()
        await self.store.save_order(order)
        return order

    async def get_order(self, order_id: str) -> Optional[DomainOrder]:
        order = await self.store.get_order(order_id)
        if order is None:
            order = await self.store.find_order_by_session(order_id)
        return order

    async def claim_order(self, order_id: str, from_states: List[OrderState], to_state: OrderState) -> Optional[DomainOrder]:
        return await self.store.claim_order(order_id, from_states, to_state)

    def pending_since(self, domain: Domain) -> Optional[datetime]:
        """When an awaiting-DNS domain entered its current status"""
        if domain.status in (DomainStatus.PENDING, DomainStatus.PENDING_NAMESERVERS, DomainStatus.SSL_PENDING):
            return domain.status_changed_at
        return None
