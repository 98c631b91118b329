"""
IAM token generation for Aurora DSQL.

DSQL has no static passwords: every new connection authenticates with a
short-lived token signed from the caller's AWS credentials.
"""

from typing import Optional

import boto3

from .config import CLUSTER_ENDPOINT, DB_USER, REGION
from .exceptions import ConfigurationError
from .logger import get_logger

logger = get_logger(__name__)

ADMIN_USER = "admin"


class TokenGenerator:
    """Mints connection tokens for one cluster endpoint and database user."""

    def __init__(
        self,
        cluster_endpoint: str = CLUSTER_ENDPOINT,
        region: str = REGION,
        user: str = DB_USER,
        client=None,
    ):
        if not cluster_endpoint:
            raise ConfigurationError("CLUSTER_ENDPOINT is not configured")
        self.cluster_endpoint = cluster_endpoint
        self.region = region
        self.user = user
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("dsql", region_name=self.region)
        return self._client

    def generate(self, expires_in: Optional[int] = None) -> str:
        """Return a fresh password token for ``self.user``."""
        kwargs = {"Hostname": self.cluster_endpoint, "Region": self.region}
        if expires_in is not None:
            kwargs["ExpiresIn"] = expires_in

        if self.user == ADMIN_USER:
            token = self.client.generate_db_connect_admin_auth_token(**kwargs)
        else:
            token = self.client.generate_db_connect_auth_token(**kwargs)

        logger.debug("Generated auth token for %s@%s", self.user, self.cluster_endpoint)
        return token

    def __call__(self) -> str:
        # asyncpg calls the password callable for every new physical connection
        return self.generate()
