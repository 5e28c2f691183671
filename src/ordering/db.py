import psycopg2
import psycopg2.extras

from .config import DATABASE_URL, DB_CONNECT_TIMEOUT, DB_STATEMENT_TIMEOUT_MS


def get_conn():
    kwargs = {"connect_timeout": DB_CONNECT_TIMEOUT}
    # session default, so reads outside transaction() are bounded too
    if DB_STATEMENT_TIMEOUT_MS:
        kwargs["options"] = f"-c statement_timeout={DB_STATEMENT_TIMEOUT_MS}"
    return psycopg2.connect(
        DATABASE_URL,
        cursor_factory=psycopg2.extras.RealDictCursor,
        **kwargs,
    )
