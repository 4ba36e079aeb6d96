"""
Ledgerflow — Database Layer
File-based JSON store with PostgreSQL upgrade path, plus the small set of
query/insert/update helpers the pipeline stages use.
"""
import os, json, uuid, logging, threading
from contextlib import contextmanager
from datetime import datetime

from ledgerflow.config import DB_PATH, PERSIST_DATA
from ledgerflow.errors import PersistenceError

logger = logging.getLogger(__name__)

# ============================================================
# DATABASE URL (PostgreSQL optional, file-based default)
# ============================================================
DATABASE_URL = os.environ.get("DATABASE_URL")

# ============================================================
# EMPTY DB SCHEMA
# ============================================================
EMPTY_DB = {
    "events": [], "master_operations": [], "operation_sources": [],
    "business_rules": [], "agent_logs": [], "alerts": [], "tasks": [],
    "briefings": [], "companies": [], "company_clients": [], "profiles": [],
    "command_logs": [], "integrations": [],
}

# Guards every read-modify-write against the in-process cache
_lock = threading.RLock()


def _fresh_db():
    """Return a fresh empty database."""
    return json.loads(json.dumps(EMPTY_DB))


# ============================================================
# FILE BACKEND
# ============================================================
_db_cache = None


def _file_load():
    global _db_cache
    if PERSIST_DATA and DB_PATH.exists():
        try:
            with open(DB_PATH) as f:
                _db_cache = json.load(f)
            for k, v in EMPTY_DB.items():
                if k not in _db_cache:
                    _db_cache[k] = type(v)()
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("[DB] Could not read %s (%s), starting empty", DB_PATH, e)
            _db_cache = _fresh_db()
    else:
        _db_cache = _fresh_db()
    return _db_cache


def _file_save(db):
    global _db_cache
    _db_cache = db
    if PERSIST_DATA:
        try:
            with open(DB_PATH, "w") as f:
                json.dump(db, f, indent=2, default=str)
        except OSError as e:
            raise PersistenceError(f"Failed to write {DB_PATH}: {e}") from e


def _file_get():
    if _db_cache is None:
        return _file_load()
    return _db_cache


# ============================================================
# POSTGRES BACKEND (optional)
# ============================================================
_pg_pool = None


def _pg_connect():
    """Initialize PostgreSQL connection pool and the app_state row."""
    global _pg_pool
    import psycopg2
    from psycopg2.pool import SimpleConnectionPool
    try:
        _pg_pool = SimpleConnectionPool(1, 5, DATABASE_URL)
    except psycopg2.Error as e:
        raise PersistenceError(f"PostgreSQL connection failed: {e}") from e
    conn = _pg_pool.getconn()
    try:
        cur = conn.cursor()
        cur.execute("""
            CREATE TABLE IF NOT EXISTS app_state (
                id TEXT PRIMARY KEY DEFAULT 'main',
                data JSONB NOT NULL DEFAULT '{}',
                updated_at TIMESTAMP DEFAULT NOW()
            )
        """)
        cur.execute("INSERT INTO app_state (id, data) VALUES ('main', %s) ON CONFLICT DO NOTHING",
                    (json.dumps(EMPTY_DB),))
        conn.commit()
        logger.info("[DB] Connected to PostgreSQL")
    except psycopg2.Error as e:
        conn.rollback()
        raise PersistenceError(f"PostgreSQL init failed: {e}") from e
    finally:
        _pg_pool.putconn(conn)


def _pg_load():
    global _db_cache
    conn = _pg_pool.getconn()
    try:
        cur = conn.cursor()
        cur.execute("SELECT data FROM app_state WHERE id='main'")
        row = cur.fetchone()
        _db_cache = row[0] if row else _fresh_db()
        for k, v in EMPTY_DB.items():
            _db_cache.setdefault(k, type(v)())
        return _db_cache
    finally:
        _pg_pool.putconn(conn)


def _pg_save(db):
    import psycopg2
    global _db_cache
    _db_cache = db
    conn = _pg_pool.getconn()
    try:
        cur = conn.cursor()
        cur.execute("UPDATE app_state SET data=%s, updated_at=NOW() WHERE id='main'",
                    (json.dumps(db, default=str),))
        conn.commit()
    except psycopg2.Error as e:
        conn.rollback()
        raise PersistenceError(f"PostgreSQL write failed: {e}") from e
    finally:
        _pg_pool.putconn(conn)


def _pg_get():
    if _db_cache is None:
        return _pg_load()
    return _db_cache


# ============================================================
# BACKEND SELECTION
# ============================================================
if DATABASE_URL:
    logger.info("[DB] Using PostgreSQL backend")
    _pg_connect()
    save_db = _pg_save
    get_db = _pg_get
else:
    logger.info("[DB] Using file backend (db.json)")
    save_db = _file_save
    get_db = _file_get


@contextmanager
def transaction():
    """Hold the store lock across a multi-step read-then-write."""
    with _lock:
        yield


def reset_db():
    """Drop every record. Used by RESET_ON_START and tests."""
    with _lock:
        save_db(_fresh_db())


# ============================================================
# QUERY HELPERS
# ============================================================
def new_id() -> str:
    return str(uuid.uuid4())


def _collection(db: dict, name: str) -> list:
    if name not in db:
        raise PersistenceError(f"Unknown collection: {name}")
    return db[name]


def _matches(record: dict, criteria: dict) -> bool:
    return all(record.get(k) == v for k, v in criteria.items())


def insert(collection: str, record: dict) -> dict:
    """Insert a record, assigning id and created_at when missing. Returns the stored copy."""
    with _lock:
        db = get_db()
        row = dict(record)
        row.setdefault("id", new_id())
        row.setdefault("created_at", datetime.now().isoformat())
        rows = _collection(db, collection)
        rows.append(row)
        try:
            save_db(db)
        except PersistenceError:
            rows.pop()
            raise
        return dict(row)


def insert_if_absent(collection: str, match: dict, record: dict) -> tuple:
    """Atomic check-then-insert. Returns (row, created)."""
    with _lock:
        db = get_db()
        rows = _collection(db, collection)
        existing = next((r for r in rows if _matches(r, match)), None)
        if existing is not None:
            return dict(existing), False
        return insert(collection, record), True


def find(collection: str, where=None, order_by: str = None, descending: bool = False,
         limit: int = None, **criteria) -> list:
    """Equality filter plus optional predicate, ordering and limit."""
    with _lock:
        rows = [dict(r) for r in _collection(get_db(), collection) if _matches(r, criteria)]
    if where is not None:
        rows = [r for r in rows if where(r)]
    if order_by:
        # Missing values sort last in either direction
        present = sorted((r for r in rows if r.get(order_by) is not None),
                         key=lambda r: r[order_by], reverse=descending)
        rows = present + [r for r in rows if r.get(order_by) is None]
    if limit is not None:
        rows = rows[:limit]
    return rows


def find_one(collection: str, **criteria):
    rows = find(collection, limit=1, **criteria)
    return rows[0] if rows else None


def update(collection: str, record_id: str, fields: dict) -> dict:
    """Merge fields into the record with this id. Returns the updated copy."""
    with _lock:
        db = get_db()
        for row in _collection(db, collection):
            if row.get("id") == record_id:
                before = dict(row)
                row.update(fields)
                row["updated_at"] = datetime.now().isoformat()
                try:
                    save_db(db)
                except PersistenceError:
                    row.clear()
                    row.update(before)
                    raise
                return dict(row)
    raise PersistenceError(f"{collection} record not found: {record_id}")


# ============================================================
# UTILITIES
# ============================================================
def _n(val, default=0):
    """Safe numeric conversion: None/empty → default, strings → float."""
    if val is None or val == "":
        return float(default)
    try:
        return float(val)
    except (ValueError, TypeError):
        return float(default)
