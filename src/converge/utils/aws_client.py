"""AWS session and client management for AWS-backed providers."""

import threading

import boto3
from botocore.config import Config
from typing import Optional, Dict, Any
from converge.utils.logging import get_logger

logger = get_logger(__name__)


class AWSClientManager:
    """Creates one boto3 session per run and caches clients per service."""

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        max_pool_connections: int = 50
    ):
        """Initialize AWS client manager.

        Args:
            profile: AWS profile name to use
            region: AWS region to use
            max_pool_connections: Maximum number of connections in the pool;
                should be at least the executor's worker count
        """
        self.profile = profile
        self.region = region
        self._session: Optional[boto3.Session] = None
        self._clients: Dict[str, Any] = {}
        # Sessions are not thread-safe; creation happens under this lock
        self._lock = threading.RLock()

        # botocore's own retries are kept small: transient errors are handled
        # by the provider's bounded backoff
        self._boto_config = Config(
            max_pool_connections=max_pool_connections,
            retries={
                'mode': 'standard',
                'max_attempts': 3
            },
            connect_timeout=10,
            read_timeout=60
        )

    @property
    def session(self) -> boto3.Session:
        """Get or create boto3 session."""
        with self._lock:
            if self._session is None:
                kwargs = {}
                if self.profile:
                    kwargs['profile_name'] = self.profile
                if self.region:
                    kwargs['region_name'] = self.region

                self._session = boto3.Session(**kwargs)
                logger.info(f"Created AWS session - Region: {self._session.region_name}, "
                            f"Profile: {self.profile or 'default'}")

            return self._session

    def get_client(self, service_name: str):
        """Get a cached boto3 client for a service.

        boto3 clients are thread-safe, so one client is shared by all workers.
        """
        with self._lock:
            if service_name not in self._clients:
                self._clients[service_name] = self.session.client(service_name, config=self._boto_config)
                logger.debug(f"Created {service_name} client")

            return self._clients[service_name]

    def get_region(self) -> Optional[str]:
        """Get the AWS region."""
        return self.session.region_name

    def clear_cache(self):
        """Clear cached clients and session."""
        with self._lock:
            self._clients.clear()
            self._session = None
        logger.debug("Cleared AWS client cache")
