"""
Platform configuration for the domain lifecycle service
Reads environment variables once and exposes them through a singleton
"""

import os
import logging
from typing import Dict, Any, List

logger = logging.getLogger(__name__)

DEFAULT_PLATFORM_IP = '130.211.43.242'


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}='{raw}', using default {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid number for {name}='{raw}', using default {default}")
        return default


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name) or ''
    return [item.strip().lower().rstrip('.') for item in raw.split(',') if item.strip()]


class PlatformConfig:
    """Configuration class for platform, polling and integration settings"""

    _instance = None
    _initialized = False

    def __new__(cls):
        """Singleton pattern to ensure consistent configuration"""
        if cls._instance is None:
            cls._instance = super(PlatformConfig, cls).__new__(cls)
        return cls._instance

    def __init__(self):
        # Only initialize once to prevent inconsistent environment variable loading
        if PlatformConfig._initialized:
            return

        # DNS targets users must configure
        self.platform_ip = os.getenv('PLATFORM_IP') or DEFAULT_PLATFORM_IP
        self.platform_nameservers = _env_list('PLATFORM_NAMESERVERS')
        self.dns_timeout = _env_float('DNS_TIMEOUT_SECONDS', 5.0)

        # Polling and sweeps
        self.order_poll_interval = _env_float('ORDER_POLL_INTERVAL_SECONDS', 3.0)
        self.order_poll_max_attempts = _env_int('ORDER_POLL_MAX_ATTEMPTS', 1200)
        self.dns_verify_sweep_interval = _env_float('DNS_VERIFY_SWEEP_SECONDS', 900.0)
        self.certificate_sweep_interval = _env_float('CERTIFICATE_SWEEP_SECONDS', 600.0)
        self.pending_alert_hours = _env_float('PENDING_ALERT_HOURS', 72.0)

        # Purchase
        self.domain_margin_percent = _env_float('DOMAIN_MARGIN_PERCENT', 20.0)
        self.max_registration_years = _env_int('MAX_REGISTRATION_YEARS', 10)
        self.public_base_url = (os.getenv('PUBLIC_BASE_URL') or 'http://localhost:8000').rstrip('/')

        # Cloud Run hosting control plane
        self.gcp_project_id = os.getenv('GCP_PROJECT_ID', '')
        self.cloud_run_region = os.getenv('CLOUD_RUN_REGION', 'us-central1')
        self.cloud_run_service = os.getenv('CLOUD_RUN_SERVICE', 'website-renderer')

        self.webhook_port = _env_int('WEBHOOK_PORT', 8000)

        PlatformConfig._initialized = True
        logger.debug(f"🔧 Platform configuration initialized: ip={self.platform_ip}")

    def get_config_info(self) -> Dict[str, Any]:
        """Get current configuration for logging/debugging (no secrets)"""
        return {
            'platform_ip': self.platform_ip,
            'platform_nameservers': self.platform_nameservers,
            'dns_timeout': self.dns_timeout,
            'order_poll_interval': self.order_poll_interval,
            'order_poll_max_attempts': self.order_poll_max_attempts,
            'dns_verify_sweep_interval': self.dns_verify_sweep_interval,
            'certificate_sweep_interval': self.certificate_sweep_interval,
            'pending_alert_hours': self.pending_alert_hours,
            'domain_margin_percent': self.domain_margin_percent,
            'max_registration_years': self.max_registration_years,
            'public_base_url': self.public_base_url,
            'cloud_run_region': self.cloud_run_region,
            'cloud_run_service': self.cloud_run_service,
        }


def get_platform_config() -> PlatformConfig:
    return PlatformConfig()


def reset_platform_config():
    """Drop the cached singleton so the next access re-reads the environment"""
    PlatformConfig._instance = None
    PlatformConfig._initialized = False


def get_startup_message() -> str:
    config = get_platform_config()
    return f"🚀 Domain lifecycle service starting (platform IP {config.platform_ip}, port {config.webhook_port})"
