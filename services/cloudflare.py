"""
Cloudflare DNS management API integration
Zones for nameserver delegation, platform DNS records and SSL mode
"""

import os
import logging
from typing import Dict, List, Optional, Any

from services.http_service import HttpApiService
from platform_config import get_platform_config

logger = logging.getLogger(__name__)

ZONE_ALREADY_EXISTS = 1061


class CloudflareService(HttpApiService):
    """Cloudflare API service for delegated domains"""

    service_name = 'cloudflare'

    def __init__(self):
        super().__init__()
        self.api_token = os.getenv('CLOUDFLARE_API_TOKEN')
        self.account_id = os.getenv('CLOUDFLARE_ACCOUNT_ID')
        self.base_url = "https://api.cloudflare.com/client/v4"
        self.headers = {
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }
        if self.api_token:
            self.headers['Authorization'] = f'Bearer {self.api_token.strip()}'

    @property
    def is_configured(self) -> bool:
        return bool(self.api_token)

    @staticmethod
    def _errors(data: Dict[str, Any]) -> List[Dict[str, Any]]:
        return data.get('errors') or []

    def _error_message(self, data: Dict[str, Any], status_code: int) -> str:
        errors = self._errors(data)
        if errors:
            return '; '.join(str(e.get('message', e)) for e in errors)
        return f"HTTP {status_code}"

    # ------------------------------------------------------------------ zones

    async def get_zone_by_name(self, domain_name: str) -> Optional[Dict]:
        """Get zone by domain name"""
        self._require_configuration()
        response = await self.request('GET', '/zones', params={'name': domain_name})
        data = self.json_or_empty(response)
        if response.status_code == 200 and data.get('success'):
            zones = data.get('result') or []
            return zones[0] if zones else None
        logger.error(f"❌ Cloudflare zone lookup failed for {domain_name}: {self._error_message(data, response.status_code)}")
        return None

    async def get_zone_info(self, zone_id: str) -> Optional[Dict]:
        self._require_configuration()
        response = await self.request('GET', f'/zones/{zone_id}')
        data = self.json_or_empty(response)
        if response.status_code == 200 and data.get('success'):
            return data.get('result') or {}
        return None

    async def get_zone_status(self, zone_id: str) -> Optional[str]:
        """'active' once Cloudflare sees its nameservers at the registry"""
        zone = await self.get_zone_info(zone_id)
        return zone.get('status') if zone else None

    async def create_zone(self, domain_name: str) -> Dict[str, Any]:
        """
        Create (or reuse) the zone for a domain

        Returns:
            Dict: {'success', 'zone_id', 'nameservers', 'status', 'created'} or {'success': False, 'error'}
        """
        self._require_configuration()
        existing = await self.get_zone_by_name(domain_name)
        if existing:
            logger.info(f"✅ Zone already exists in Cloudflare for {domain_name}")
            return self._zone_result(existing, created=False)

        payload: Dict[str, Any] = {'name': domain_name, 'type': 'full'}
        if self.account_id:
            payload['account'] = {'id': self.account_id}

        response = await self.request('POST', '/zones', json=payload)
        data = self.json_or_empty(response)
        if response.status_code == 200 and data.get('success'):
            logger.info(f"✅ Cloudflare zone created for {domain_name}")
            return self._zone_result(data.get('result') or {}, created=True)

        if any(e.get('code') == ZONE_ALREADY_EXISTS for e in self._errors(data)):
            logger.info(f"🔄 Zone already exists in Cloudflare (error {ZONE_ALREADY_EXISTS}), fetching existing zone")
            existing = await self.get_zone_by_name(domain_name)
            if existing:
                return self._zone_result(existing, created=False)

        error = self._error_message(data, response.status_code)
        logger.error(f"❌ Cloudflare zone creation failed for {domain_name}: {error}")
        return {'success': False, 'error': error}

    @staticmethod
    def _zone_result(zone: Dict[str, Any], created: bool) -> Dict[str, Any]:
        return {
            'success': bool(zone.get('id')),
            'zone_id': zone.get('id'),
            'nameservers': [ns.lower() for ns in zone.get('name_servers') or []],
            'status': zone.get('status') or 'pending',
            'created': created,
        }

    async def delete_zone(self, zone_id: str) -> bool:
        self._require_configuration()
        response = await self.request('DELETE', f'/zones/{zone_id}')
        if response.status_code in (200, 404):
            logger.info(f"🗑️ Cloudflare zone {zone_id} deleted")
            return True
        logger.error(f"❌ Cloudflare zone delete failed for {zone_id}: HTTP {response.status_code}")
        return False

    # ------------------------------------------------------------ dns records

    async def list_dns_records(self, zone_id: str, record_type: Optional[str] = None) -> List[Dict]:
        params = {'type': record_type} if record_type else {}
        response = await self.request('GET', f'/zones/{zone_id}/dns_records', params=params)
        data = self.json_or_empty(response)
        if response.status_code == 200 and data.get('success'):
            return data.get('result') or []
        return []

    async def create_dns_record(self, zone_id: str, record_type: str, name: str, content: str,
                                ttl: int = 1, proxied: bool = True) -> Dict:
        """Create a new DNS record (ttl 1 means automatic)"""
        response = await self.request('POST', f'/zones/{zone_id}/dns_records', json={
            'type': record_type.upper(),
            'name': name,
            'content': content,
            'ttl': ttl,
            'proxied': proxied,
        })
        data = self.json_or_empty(response)
        if response.status_code == 200 and data.get('success'):
            logger.info(f"✅ DNS record created: {record_type} {name} → {content}")
            return {'success': True, 'result': data.get('result') or {}}
        error = self._error_message(data, response.status_code)
        logger.error(f"❌ DNS record creation failed for {name}: {error}")
        return {'success': False, 'error': error}

    async def ensure_platform_records(self, zone_id: str, domain_name: str) -> Dict[str, Any]:
        """Point the apex at the platform IP and www at the apex, proxied"""
        platform_ip = get_platform_config().platform_ip
        created = []

        a_records = await self.list_dns_records(zone_id, 'A')
        if not any(r.get('name') == domain_name for r in a_records):
            result = await self.create_dns_record(zone_id, 'A', domain_name, platform_ip)
            if not result['success']:
                return result
            created.append('A')
        else:
            logger.info(f"ℹ️ A record already exists for {domain_name}")

        www_name = f"www.{domain_name}"
        cnames = await self.list_dns_records(zone_id, 'CNAME')
        if not any(r.get('name') == www_name for r in cnames):
            result = await self.create_dns_record(zone_id, 'CNAME', www_name, domain_name)
            if not result['success']:
                return result
            created.append('CNAME')

        return {'success': True, 'created': created}

    async def enable_strict_ssl(self, zone_id: str) -> bool:
        response = await self.request('PATCH', f'/zones/{zone_id}/settings/ssl', json={'value': 'strict'})
        data = self.json_or_empty(response)
        if response.status_code == 200 and data.get('success'):
            logger.info(f"🔒 Strict SSL enabled for zone {zone_id}")
            return True
        logger.warning(f"⚠️ Could not enable strict SSL for zone {zone_id}: {self._error_message(data, response.status_code)}")
        return False

    async def setup_delegated_domain(self, domain_name: str) -> Dict[str, Any]:
        """
        Zone, platform records and strict SSL for a domain moving to delegation

        Returns:
            Dict: {'success', 'zone_id', 'nameservers', 'zone_status', 'created_zone'} or {'success': False, 'error'}
        """
        logger.info(f"🌐 Setting up Cloudflare delegation for {domain_name}")
        zone = await self.create_zone(domain_name)
        if not zone.get('success'):
            return {'success': False, 'error': zone.get('error', 'Zone creation failed')}

        records = await self.ensure_platform_records(zone['zone_id'], domain_name)
        if not records.get('success'):
            return {'success': False, 'error': f"DNS record setup failed: {records.get('error')}"}

        await self.enable_strict_ssl(zone['zone_id'])
        return {
            'success': True,
            'zone_id': zone['zone_id'],
            'nameservers': zone['nameservers'],
            'zone_status': zone['status'],
            'created_zone': zone['created'],
        }
