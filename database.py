"""
PostgreSQL persistence for the domain lifecycle service
Raw SQL over a psycopg2 connection pool, executed in worker threads so the event loop never blocks
"""

import os
import time
import asyncio
import logging
import threading
from typing import Optional, Dict, List, Any, Sequence

import psycopg2
import psycopg2.pool
import psycopg2.errors
from psycopg2.extras import RealDictCursor, Json

logger = logging.getLogger(__name__)

_connection_pool = None
_pool_lock = threading.Lock()

# Connection-level failures worth retrying on reads
_RETRYABLE_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


class UniqueViolation(Exception):
    """Raised when an insert hits a unique constraint"""


def is_database_configured() -> bool:
    return bool(os.getenv('DATABASE_URL'))


def get_connection_pool():
    """Get or create the shared connection pool"""
    global _connection_pool
    if _connection_pool is None:
        with _pool_lock:
            if _connection_pool is None:
                database_url = os.getenv('DATABASE_URL')
                if not database_url:
                    raise ValueError("DATABASE_URL environment variable not found")

                _connection_pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=int(os.getenv('DB_POOL_MIN', '2')),
                    maxconn=int(os.getenv('DB_POOL_MAX', '20')),
                    dsn=database_url,
                    cursor_factory=RealDictCursor,
                    connect_timeout=5,
                    keepalives_idle=600,
                    keepalives_interval=30,
                    keepalives_count=3,
                    sslmode=os.getenv('DB_SSLMODE', 'prefer'),
                )
                logger.info("✅ Database connection pool created")
    return _connection_pool


def close_connection_pool():
    """Close every pooled connection (shutdown and tests)"""
    global _connection_pool
    with _pool_lock:
        if _connection_pool is not None:
            _connection_pool.closeall()
            _connection_pool = None
            logger.info("🔄 Database connection pool closed")


def get_connection():
    conn = get_connection_pool().getconn()
    conn.autocommit = True
    return conn


def return_connection(conn, is_broken: bool = False):
    try:
        get_connection_pool().putconn(conn, close=is_broken)
    except psycopg2.pool.PoolError as e:
        logger.warning(f"⚠️ Could not return connection to pool: {e}")
        conn.close()


async def execute_query(query: str, params: Optional[Sequence] = None) -> List[Dict]:
    """Execute a SELECT query and return rows as dicts, retrying dead connections"""

    def _execute() -> List[Dict]:
        max_retries = 3
        for attempt in range(max_retries):
            conn = None
            broken = False
            try:
                conn = get_connection()
                with conn.cursor() as cursor:
                    cursor.execute(query, params)
                    results = cursor.fetchall()
                    return [dict(row) for row in results] if results else []
            except _RETRYABLE_ERRORS as e:
                broken = True
                if attempt < max_retries - 1:
                    logger.warning(f"🔄 Database connection retry {attempt + 1}/{max_retries}: {e}")
                    time.sleep(0.5 + attempt * 0.5)
                    continue
                logger.error(f"❌ All database connection attempts failed after {max_retries} retries: {e}")
                raise
            finally:
                if conn:
                    return_connection(conn, is_broken=broken)
        return []

    return await asyncio.to_thread(_execute)


async def execute_update(query: str, params: Optional[Sequence] = None) -> int:
    """Execute an INSERT/UPDATE/DELETE and return affected rows (no retries to prevent duplicates)"""

    def _execute() -> int:
        conn = None
        broken = False
        try:
            conn = get_connection()
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                return cursor.rowcount
        except psycopg2.errors.UniqueViolation as e:
            raise UniqueViolation(str(e)) from e
        except _RETRYABLE_ERRORS as e:
            broken = True
            logger.error(f"❌ Database update connection failed: {e}")
            raise
        finally:
            if conn:
                return_connection(conn, is_broken=broken)

    return await asyncio.to_thread(_execute)


async def execute_returning(query: str, params: Optional[Sequence] = None) -> Optional[Dict]:
    """Execute a write with a RETURNING clause and return the first row, if any"""

    def _execute() -> Optional[Dict]:
        conn = None
        broken = False
        try:
            conn = get_connection()
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                row = cursor.fetchone()
                return dict(row) if row else None
        except _RETRYABLE_ERRORS:
            broken = True
            raise
        finally:
            if conn:
                return_connection(conn, is_broken=broken)

    return await asyncio.to_thread(_execute)


async def init_database():
    """Create tables and indexes if they don't exist"""

    def _init():
        conn = get_connection()
        try:
            with conn.cursor() as cursor:
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS domains (
                        id VARCHAR(64) PRIMARY KEY,
                        name VARCHAR(253) NOT NULL,
                        user_id VARCHAR(255) NOT NULL,
                        status VARCHAR(32) NOT NULL,
                        ssl_status VARCHAR(32) NOT NULL DEFAULT 'none',
                        provider VARCHAR(64) NOT NULL DEFAULT 'External',
                        project_id VARCHAR(255),
                        project_user_id VARCHAR(255),
                        dns_config JSONB,
                        cloud_run_mapping_status VARCHAR(16),
                        cloud_run_error TEXT,
                        deployment JSONB,
                        status_message TEXT,
                        order_id VARCHAR(64),
                        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
                        status_changed_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
                        expiry_date TIMESTAMPTZ,
                        verified_at TIMESTAMPTZ
                    )
                """)
                # A name is unique among live domains; tombstones keep their row
                cursor.execute("""
                    CREATE UNIQUE INDEX IF NOT EXISTS domains_live_name_key
                    ON domains (name) WHERE status <> 'deleted'
                """)
                cursor.execute("CREATE INDEX IF NOT EXISTS domains_user_idx ON domains (user_id)")

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS deployment_logs (
                        id VARCHAR(64) PRIMARY KEY,
                        domain_id VARCHAR(64) NOT NULL,
                        status VARCHAR(16) NOT NULL,
                        message TEXT NOT NULL,
                        details JSONB,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
                    )
                """)
                cursor.execute("CREATE INDEX IF NOT EXISTS deployment_logs_domain_idx ON deployment_logs (domain_id, created_at)")

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS domain_orders (
                        id VARCHAR(64) PRIMARY KEY,
                        domain_name VARCHAR(253) NOT NULL,
                        user_id VARCHAR(255) NOT NULL,
                        customer_price NUMERIC(10,2) NOT NULL,
                        wholesale_price NUMERIC(10,2),
                        years INTEGER NOT NULL DEFAULT 1,
                        status VARCHAR(32) NOT NULL,
                        session_id VARCHAR(255),
                        nameservers TEXT[],
                        zone_id VARCHAR(64),
                        domain_id VARCHAR(64),
                        error TEXT,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
                    )
                """)
                cursor.execute("CREATE INDEX IF NOT EXISTS domain_orders_session_idx ON domain_orders (session_id)")

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS admin_alerts (
                        id SERIAL PRIMARY KEY,
                        severity VARCHAR(16) NOT NULL,
                        category VARCHAR(32) NOT NULL,
                        component VARCHAR(64) NOT NULL,
                        message TEXT NOT NULL,
                        details JSONB,
                        fingerprint VARCHAR(32),
                        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
                    )
                """)
            logger.info("✅ Database tables verified")
        finally:
            return_connection(conn)

    await asyncio.to_thread(_init)


# ============================================================================
# DOMAINS
# ============================================================================

DOMAIN_COLUMNS = (
    'id', 'name', 'user_id', 'status', 'ssl_status', 'provider', 'project_id', 'project_user_id',
    'dns_config', 'cloud_run_mapping_status', 'cloud_run_error', 'deployment', 'status_message',
    'order_id', 'created_at', 'updated_at', 'status_changed_at', 'expiry_date', 'verified_at',
)
_JSON_COLUMNS = {'dns_config', 'deployment', 'details'}


def _adapt(column: str, value: Any) -> Any:
    if column in _JSON_COLUMNS and value is not None:
        return Json(value)
    return value


async def insert_domain_row(row: Dict[str, Any]) -> None:
    columns = [c for c in DOMAIN_COLUMNS if c in row]
    placeholders = ', '.join(['%s'] * len(columns))
    await execute_update(
        f"INSERT INTO domains ({', '.join(columns)}) VALUES ({placeholders})",
        tuple(_adapt(c, row[c]) for c in columns),
    )


async def update_domain_row(domain_id: str, row: Dict[str, Any]) -> int:
    columns = [c for c in DOMAIN_COLUMNS if c in row and c != 'id']
    assignments = ', '.join(f"{c} = %s" for c in columns)
    params = tuple(_adapt(c, row[c]) for c in columns) + (domain_id,)
    return await execute_update(f"UPDATE domains SET {assignments} WHERE id = %s", params)


async def get_domain_row(domain_id: str) -> Optional[Dict]:
    rows = await execute_query("SELECT * FROM domains WHERE id = %s", (domain_id,))
    return rows[0] if rows else None


async def get_live_domain_row_by_name(name: str) -> Optional[Dict]:
    rows = await execute_query(
        "SELECT * FROM domains WHERE name = %s AND status <> 'deleted'", (name,)
    )
    return rows[0] if rows else None


async def list_live_domain_rows(user_id: Optional[str] = None) -> List[Dict]:
    if user_id:
        return await execute_query(
            "SELECT * FROM domains WHERE user_id = %s AND status <> 'deleted' ORDER BY created_at DESC",
            (user_id,),
        )
    return await execute_query("SELECT * FROM domains WHERE status <> 'deleted' ORDER BY created_at DESC")


# ============================================================================
# DEPLOYMENT LOGS (append-only)
# ============================================================================

async def insert_deployment_log_row(row: Dict[str, Any]) -> None:
    await execute_update(
        """
        INSERT INTO deployment_logs (id, domain_id, status, message, details, created_at)
        VALUES (%s, %s, %s, %s, %s, %s)
        """,
        (row['id'], row['domain_id'], row['status'], row['message'],
         _adapt('details', row.get('details')), row['created_at']),
    )


async def list_deployment_log_rows(domain_id: str) -> List[Dict]:
    return await execute_query(
        "SELECT * FROM deployment_logs WHERE domain_id = %s ORDER BY created_at DESC",
        (domain_id,),
    )


# ============================================================================
# ORDERS
# ============================================================================

ORDER_COLUMNS = (
    'id', 'domain_name', 'user_id', 'customer_price', 'wholesale_price', 'years', 'status',
    'session_id', 'nameservers', 'zone_id', 'domain_id', 'error', 'created_at', 'updated_at',
)


async def insert_order_row(row: Dict[str, Any]) -> None:
    columns = [c for c in ORDER_COLUMNS if c in row]
    placeholders = ', '.join(['%s'] * len(columns))
    await execute_update(
        f"INSERT INTO domain_orders ({', '.join(columns)}) VALUES ({placeholders})",
        tuple(row[c] for c in columns),
    )


async def update_order_row(order_id: str, row: Dict[str, Any]) -> int:
    columns = [c for c in ORDER_COLUMNS if c in row and c != 'id']
    assignments = ', '.join(f"{c} = %s" for c in columns)
    return await execute_update(
        f"UPDATE domain_orders SET {assignments} WHERE id = %s",
        tuple(row[c] for c in columns) + (order_id,),
    )


async def get_order_row(order_id: str) -> Optional[Dict]:
    rows = await execute_query("SELECT * FROM domain_orders WHERE id = %s", (order_id,))
    return rows[0] if rows else None


async def get_order_row_by_session(session_id: str) -> Optional[Dict]:
    rows = await execute_query("SELECT * FROM domain_orders WHERE session_id = %s", (session_id,))
    return rows[0] if rows else None


async def claim_order_row(order_id: str, from_statuses: List[str], to_status: str) -> Optional[Dict]:
    """Atomically move an order out of one of from_statuses; None when another worker got there first"""
    return await execute_returning(
        """
        UPDATE domain_orders
        SET status = %s, updated_at = CURRENT_TIMESTAMP
        WHERE id = %s AND status = ANY(%s)
        RETURNING *
        """,
        (to_status, order_id, list(from_statuses)),
    )


# ============================================================================
# ADMIN ALERTS
# ============================================================================

async def insert_admin_alert_row(row: Dict[str, Any]) -> None:
    await execute_update(
        """
        INSERT INTO admin_alerts (severity, category, component, message, details, fingerprint)
        VALUES (%s, %s, %s, %s, %s, %s)
        """,
        (row['severity'], row['category'], row['component'], row['message'],
         _adapt('details', row.get('details')), row.get('fingerprint')),
    )
