import os
from typing import Optional

# Aurora DSQL cluster (token authentication)
CLUSTER_ENDPOINT: str = os.getenv("CLUSTER_ENDPOINT", "")
REGION: str = os.getenv("REGION", "us-west-2")
DB_USER: str = os.getenv("DB_USER", "admin")
DB_NAME: str = os.getenv("DB_NAME", "postgres")
DB_PORT: int = int(os.getenv("DB_PORT", "5432"))
DB_SSL: str = os.getenv("DB_SSL", "require")

# Plain PostgreSQL DSN for local runs. When set, no token is generated.
DATABASE_URL: str = os.getenv("DATABASE_URL", "")

# Pool
POOL_MIN_SIZE: int = int(os.getenv("POOL_MIN_SIZE", "1"))
POOL_MAX_SIZE: int = int(os.getenv("POOL_MAX_SIZE", "10"))
POOL_IDLE_TIMEOUT: float = float(os.getenv("POOL_IDLE_TIMEOUT", "2"))

# Accounts schema: "accounts" with integer ids, "accounts2" with UUID ids
ACCOUNTS_TABLE: str = os.getenv("ACCOUNTS_TABLE", "accounts")
ACCOUNT_ID_TYPE: str = os.getenv("ACCOUNT_ID_TYPE", "int")

# Transfer retry. Unset means retry conflicts until commit.
_raw_max_attempts = os.getenv("TRANSFER_MAX_ATTEMPTS", "")
TRANSFER_MAX_ATTEMPTS: Optional[int] = int(_raw_max_attempts) if _raw_max_attempts else None
TRANSFER_ISOLATION: Optional[str] = os.getenv("TRANSFER_ISOLATION") or None

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
