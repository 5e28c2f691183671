import os

from dotenv import load_dotenv


load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "postgresql://localhost:5432/ordering")

# "serializable" or "version"
ORDER_CONCURRENCY_MODE = os.getenv("ORDER_CONCURRENCY_MODE", "serializable").lower()
ORDER_MAX_ATTEMPTS = int(os.getenv("ORDER_MAX_ATTEMPTS", "3"))
ORDER_RETRY_BACKOFF = float(os.getenv("ORDER_RETRY_BACKOFF", "0.05"))

# 0 disables the per-transaction statement timeout
DB_STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "5000"))
# seconds; 0 waits forever
DB_CONNECT_TIMEOUT = int(os.getenv("DB_CONNECT_TIMEOUT", "5"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
