"""GCP Secret Manager connector."""
import os
import logging
import subprocess
from typing import Dict, Optional, Set

from google.api_core import exceptions as gcp_exceptions
from google.cloud import secretmanager

from .connector import CachingConnector
from .errors import FetchError
from .models import SecretValue

logger = logging.getLogger(__name__)


def detect_project_id() -> Optional[str]:
    """
    Auto-detect the GCP project ID.

    Priority order:
    1. GCP_PROJECT environment variable
    2. gcloud config get-value project

    Returns:
        Project ID string, or None if not found
    """
    gcp_project_env = os.getenv("GCP_PROJECT")
    if gcp_project_env:
        logger.debug(f"Using GCP_PROJECT from environment: {gcp_project_env}")
        return gcp_project_env

    try:
        result = subprocess.run(
            ["gcloud", "config", "get-value", "project"],
            capture_output=True, text=True, check=True
        )
    except (OSError, subprocess.CalledProcessError) as e:
        logger.warning(f"Failed to auto-detect project_id: {e}")
        return None

    project_id = result.stdout.strip()
    if project_id:
        logger.debug(f"Using project from gcloud config: {project_id}")
        return project_id
    return None


class GCPSecretConnector(CachingConnector):
    """
    Fetches secrets from GCP Secret Manager.

    Each name maps to projects/<project>/secrets/<name>/versions/<version>.
    Failures for individual secrets are collected so load() reports all of
    them at once.
    """

    def __init__(self, project_id: Optional[str] = None, version: str = "latest",
                 client: Optional[secretmanager.SecretManagerServiceClient] = None):
        super().__init__()
        self._project_id = project_id
        self.version = version
        self._client = client

    @property
    def client(self) -> secretmanager.SecretManagerServiceClient:
        """Lazy-initialize client."""
        if self._client is None:
            self._client = secretmanager.SecretManagerServiceClient()
        return self._client

    @property
    def project_id(self) -> Optional[str]:
        if self._project_id is None:
            self._project_id = detect_project_id()
        return self._project_id

    def resource_name(self, secret_name: str) -> str:
        return f"projects/{self.project_id}/secrets/{secret_name}/versions/{self.version}"

    def _fetch(self, names: Set[str]) -> Dict[str, SecretValue]:
        if not self.project_id:
            raise FetchError(
                "GCP project ID not found. Set GCP_PROJECT or configure project_id",
                names,
            )

        found = {}
        for name in sorted(names):
            try:
                response = self.client.access_secret_version(
                    request={"name": self.resource_name(name)}
                )
            except (gcp_exceptions.GoogleAPICallError, gcp_exceptions.RetryError) as e:
                # The exception text never includes the payload
                logger.warning(f"GCP fetch failed for {name}: {e}")
                continue
            data = response.payload.data
            try:
                found[name] = data.decode("UTF-8")
            except UnicodeDecodeError:
                # Binary payloads (keystores, certificates) stay bytes
                found[name] = data
        return found
