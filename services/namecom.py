"""
Name.com domain registration API integration
Handles availability checks, suggestion search, registration and nameserver updates
"""

import os
import re
import logging
from typing import Dict, List, Optional, Any

import httpx

from domain_models import DomainOffer, ExternalServiceError, get_domain_tld
from pricing_utils import apply_margin
from platform_config import get_platform_config
from services.http_service import HttpApiService

logger = logging.getLogger(__name__)

NAMECOM_API_URL = "https://api.name.com/v4"
NAMECOM_SANDBOX_API_URL = "https://api.dev.name.com/v4"

MAX_NAMES_PER_CHECK = 50
PRIORITY_TLDS = ['.com', '.net', '.org', '.io', '.co']
OTHER_TLDS = ['.app', '.dev', '.shop', '.store', '.online', '.site', '.tech', '.xyz']
SUGGESTION_PREFIXES = ['get', 'try', 'my', 'the']

# Registration errors meaning the name already sits in our registrar account
ALREADY_OWNED_MARKERS = ('domain exists', 'domain is not available')


def extract_keyword(query: str) -> str:
    """'My Shop.com' -> 'myshop'"""
    query = (query or '').strip().lower()
    query = re.sub(r'^https?://', '', query)
    query = re.sub(r'^www\.', '', query)
    keyword = query.split('.', 1)[0]
    return re.sub(r'[^a-z0-9-]', '', keyword).strip('-')


def build_search_candidates(query: str) -> List[str]:
    """Names to check for a query, in the order they should be asked for"""
    keyword = extract_keyword(query)
    if not keyword:
        return []

    candidates: List[str] = []

    def add(name: str):
        if len(name.split('.', 1)[0]) <= 63 and name not in candidates and len(candidates) < MAX_NAMES_PER_CHECK:
            candidates.append(name)

    # An exact name with a TLD is checked first
    cleaned = (query or '').strip().lower()
    if '.' in cleaned:
        tld = get_domain_tld(re.sub(r'^(https?://)?(www\.)?', '', cleaned).split('/')[0])
        if re.fullmatch(r'(\.[a-z]{2,})+', tld or ''):
            add(f"{keyword}{tld}")

    for tld in PRIORITY_TLDS + OTHER_TLDS:
        add(f"{keyword}{tld}")
    for prefix in SUGGESTION_PREFIXES:
        for tld in PRIORITY_TLDS + OTHER_TLDS:
            add(f"{prefix}{keyword}{tld}")
    return candidates


class NameComService(HttpApiService):
    """Name.com API client"""

    service_name = 'name.com'

    def __init__(self):
        super().__init__()
        self.username = os.getenv('NAMECOM_USERNAME')
        self.api_token = os.getenv('NAMECOM_API_TOKEN')
        self.use_sandbox = os.getenv('NAMECOM_USE_SANDBOX', 'false').lower() == 'true'
        self.base_url = NAMECOM_SANDBOX_API_URL if self.use_sandbox else NAMECOM_API_URL
        self.headers = {'Content-Type': 'application/json', 'Accept': 'application/json'}
        self.margin_percent = get_platform_config().domain_margin_percent

        if self.is_configured:
            logger.info(f"🔧 Name.com client configured ({'sandbox' if self.use_sandbox else 'production'})")
        else:
            logger.warning("⚠️ Name.com credentials not configured - domain search and purchase disabled")

    @property
    def is_configured(self) -> bool:
        return bool(self.username and self.api_token)

    @property
    def auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self.username or '', self.api_token or '')

    async def _call(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self._require_configuration()
        response = await self.request(method, path, json=body, auth=self.auth)
        data = self.json_or_empty(response)
        if response.status_code >= 400:
            message = data.get('message') or data.get('details') or f"HTTP {response.status_code}"
            logger.error(f"❌ Name.com API error {response.status_code} on {path}: {message}")
            raise ExternalServiceError(self.service_name, str(message), retryable=False,
                                       status_code=response.status_code)
        return data

    # -------------------------------------------------------------- search

    async def check_availability(self, domain_names: List[str]) -> List[Dict[str, Any]]:
        """Raw availability rows (domainName, purchasable, purchasePrice, renewalPrice, premium)"""
        if not domain_names:
            return []
        if len(domain_names) > MAX_NAMES_PER_CHECK:
            raise ValueError(f"Maximum {MAX_NAMES_PER_CHECK} domains per availability check")
        data = await self._call('POST', '/domains:checkAvailability', {'domainNames': domain_names})
        return data.get('results') or []

    def to_offer(self, row: Dict[str, Any]) -> DomainOffer:
        """Registrar row -> customer-facing offer with margin; unavailable rows carry no price"""
        available = bool(row.get('purchasable'))
        if not available:
            return DomainOffer(name=row.get('domainName', ''), available=False, price=None, premium=False)
        return DomainOffer(
            name=row.get('domainName', ''),
            available=True,
            price=apply_margin(row.get('purchasePrice'), self.margin_percent),
            renewal_price=apply_margin(row.get('renewalPrice'), self.margin_percent),
            premium=bool(row.get('premium')),
        )

    async def search_suggestions(self, query: str) -> List[DomainOffer]:
        candidates = build_search_candidates(query)
        if not candidates:
            return []
        logger.info(f"🔍 Name.com: checking {len(candidates)} names for '{extract_keyword(query)}'")
        rows = await self.check_availability(candidates)
        return [self.to_offer(row) for row in rows]

    async def get_offer(self, domain_name: str) -> Optional[Dict[str, Any]]:
        """Current availability row for one name, None when the registrar does not know it"""
        rows = await self.check_availability([domain_name])
        for row in rows:
            if row.get('domainName', '').lower() == domain_name:
                return row
        return rows[0] if rows else None

    # -------------------------------------------------------- registration

    async def register_domain(self, domain_name: str, years: int = 1,
                              purchase_price: Optional[float] = None) -> Dict[str, Any]:
        """
        Register a domain

        Returns:
            Dict: {'success': True, 'already_owned': bool, 'response': ...} or {'success': False, 'error': reason}
        """
        body: Dict[str, Any] = {'domain': {'domainName': domain_name}, 'years': years}
        if purchase_price is not None:
            body['purchasePrice'] = purchase_price
        try:
            data = await self._call('POST', '/domains', body)
            logger.info(f"✅ Name.com registration successful for {domain_name}")
            return {'success': True, 'already_owned': False, 'response': data}
        except ExternalServiceError as e:
            if not e.retryable and any(marker in str(e).lower() for marker in ALREADY_OWNED_MARKERS):
                logger.info(f"ℹ️ {domain_name} already in our Name.com account, continuing")
                return {'success': True, 'already_owned': True, 'response': None}
            if e.retryable:
                raise
            return {'success': False, 'error': str(e).split(': ', 1)[-1]}

    async def set_nameservers(self, domain_name: str, nameservers: List[str]) -> bool:
        await self._call('POST', f'/domains/{domain_name}:setNameservers', {'nameservers': nameservers})
        logger.info(f"✅ Nameservers updated for {domain_name}: {', '.join(nameservers)}")
        return True
