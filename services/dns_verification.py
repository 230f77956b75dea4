"""
DNS Verification Engine
Checks whether a domain's public DNS routes it to the platform, per DNS strategy.
Side-effect free: results are returned to the caller, which owns every status write.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

import dns.resolver
import dns.exception
import dns.asyncresolver

from domain_models import (
    Domain, RecordsStrategy, DelegationStrategy, DomainValidationError, ExternalServiceError,
)
from platform_config import get_platform_config

logger = logging.getLogger(__name__)

PROPAGATION_HINT = "DNS changes can take up to 48 hours to propagate."


@dataclass
class VerificationResult:
    verified: bool
    message: str
    conflict: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'verified': self.verified,
            'message': self.message,
            'conflict': self.conflict,
            'details': self.details,
        }


class DnsVerificationEngine:
    """Resolves public DNS and compares it with the domain's strategy"""

    def __init__(self, resolver=None, cloudflare=None, config=None):
        self.config = config or get_platform_config()
        if resolver is None:
            resolver = dns.asyncresolver.Resolver()
            resolver.lifetime = self.config.dns_timeout
        self.resolver = resolver
        self.cloudflare = cloudflare

    async def verify(self, domain: Domain) -> VerificationResult:
        """
        Verify a domain, dispatching on its DNS strategy

        Domains without a stored strategy are checked against the default records.

        Raises:
            DomainValidationError: the domain has no name to query
        """
        if domain is None or not domain.name:
            raise DomainValidationError("Cannot verify DNS without a domain name")

        strategy = domain.dns_config
        if isinstance(strategy, DelegationStrategy):
            return await self.verify_delegation(domain.name, strategy)
        if strategy is None:
            strategy = RecordsStrategy(a_record=self.config.platform_ip, cname_target=domain.name)
        return await self.verify_records(domain.name, strategy)

    async def _lookup(self, qname: str, rdtype: str) -> List[str]:
        """Answer strings, lower-cased without trailing dots; an empty answer gives []"""
        try:
            answer = await self.resolver.resolve(qname, rdtype)
        except dns.resolver.NoAnswer:
            return []
        return [rdata.to_text().rstrip('.').lower() for rdata in answer]

    # ============================================================================
    # RECORD-BASED DNS
    # ============================================================================

    async def verify_records(self, name: str, strategy: RecordsStrategy) -> VerificationResult:
        expected_ip = strategy.a_record or self.config.platform_ip
        expected_cname = (strategy.cname_target or name).lower().rstrip('.')
        details: Dict[str, Any] = {'mode': 'records', 'expected_ip': expected_ip, 'expected_cname': expected_cname}

        logger.info(f"🔍 Checking A @ and CNAME www for {name}")
        try:
            apex = await self._lookup(name, 'A')
        except dns.resolver.NXDOMAIN:
            return VerificationResult(False, f"{name} does not resolve yet. Add an A record for @ pointing to "
                                             f"{expected_ip}. {PROPAGATION_HINT}", details=details)
        except (dns.exception.Timeout, dns.resolver.NoNameservers) as e:
            logger.warning(f"⚠️ DNS lookup for {name} failed: {type(e).__name__}")
            return VerificationResult(False, f"DNS lookup for {name} timed out. We'll check again shortly.",
                                      details=details)

        try:
            www = await self._lookup(f"www.{name}", 'CNAME')
        except (dns.resolver.NXDOMAIN, dns.exception.Timeout, dns.resolver.NoNameservers):
            www = []

        details.update({'a_records': apex, 'www_cname': www})
        foreign_ips = [ip for ip in apex if ip != expected_ip]

        if expected_ip in apex:
            if foreign_ips:
                return VerificationResult(
                    False,
                    f"Conflicting A records for @: remove {', '.join(foreign_ips)} so only {expected_ip} remains.",
                    conflict=True, details=details,
                )
            return VerificationResult(True, f"DNS configured correctly: A @ → {expected_ip}", details=details)

        foreign_cnames = [target for target in www if target != expected_cname]
        if foreign_cnames:
            return VerificationResult(
                False,
                f"CNAME www points to {foreign_cnames[0]}; change it to {expected_cname} and set "
                f"A @ to {expected_ip}.",
                conflict=True, details=details,
            )

        if apex:
            return VerificationResult(
                False, f"A record for @ points to {', '.join(apex)}; expected {expected_ip}. {PROPAGATION_HINT}",
                details=details,
            )
        return VerificationResult(
            False, f"No A record found for @ yet. Point it to {expected_ip}. {PROPAGATION_HINT}", details=details,
        )

    # ============================================================================
    # NAMESERVER DELEGATION
    # ============================================================================

    async def verify_delegation(self, name: str, strategy: DelegationStrategy) -> VerificationResult:
        expected = {ns.lower().rstrip('.') for ns in strategy.nameservers} or set(self.config.platform_nameservers)
        details: Dict[str, Any] = {'mode': 'delegation', 'expected_nameservers': sorted(expected)}

        zone_status = await self._zone_status(strategy.zone_id)
        if zone_status is not None:
            details['zone_status'] = zone_status
            if zone_status == 'active':
                return VerificationResult(True, "Nameservers delegated to the platform", details=details)

        if not expected:
            return VerificationResult(False, "Platform nameservers have not been assigned yet.", details=details)

        logger.info(f"🔍 Checking NS delegation for {name}")
        try:
            current = set(await self._lookup(name, 'NS'))
        except dns.resolver.NXDOMAIN:
            return VerificationResult(False, f"{name} is not visible in DNS yet. {PROPAGATION_HINT}", details=details)
        except (dns.exception.Timeout, dns.resolver.NoNameservers) as e:
            logger.warning(f"⚠️ NS lookup for {name} failed: {type(e).__name__}")
            return VerificationResult(False, f"Nameserver lookup for {name} timed out. We'll check again shortly.",
                                      details=details)

        details['nameservers'] = sorted(current)
        if current == expected:
            return VerificationResult(True, "Nameservers delegated to the platform", details=details)

        if expected <= current:
            extra = sorted(current - expected)
            return VerificationResult(
                False, f"Remove the extra nameservers at your registrar: {', '.join(extra)}",
                conflict=True, details=details,
            )

        shown = ', '.join(sorted(current)) or 'none'
        return VerificationResult(
            False,
            f"Nameservers are {shown}; set them to {', '.join(sorted(expected))} at your registrar. {PROPAGATION_HINT}",
            details=details,
        )

    async def _zone_status(self, zone_id: Optional[str]) -> Optional[str]:
        if not zone_id or self.cloudflare is None or not self.cloudflare.is_configured:
            return None
        try:
            return await self.cloudflare.get_zone_status(zone_id)
        except ExternalServiceError as e:
            logger.warning(f"⚠️ Zone status unavailable for {zone_id}, falling back to NS lookup: {e}")
            return None
