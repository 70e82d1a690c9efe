"""Administrator logins kept for provisioned clusters.

Nodes are created with an administrator account whose password is either
given by the operator or generated on the first provisioning run.  The login
is written to a private YAML file so later runs create replacement nodes with
the same password and the operator can look it up.
"""

import os
import secrets
from pathlib import Path

import yaml
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from cluster_hosting.exceptions import ConfigurationError
from cluster_hosting.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_LOGIN_FOLDER = Path.home() / ".cluster-hosting" / "logins"
DEFAULT_ADMIN_USERNAME = "sysadmin"


class ClusterLogin(BaseModel):
    """Administrator credentials shared by every node of a cluster."""

    cluster: str
    admin_username: str = DEFAULT_ADMIN_USERNAME
    admin_password: str


class LoginStore:
    """Reads and writes cluster logins, one file per cluster."""

    def __init__(self, folder: Path | None = None):
        self.folder = Path(folder) if folder else DEFAULT_LOGIN_FOLDER

    def path(self, cluster: str) -> Path:
        return self.folder / f"{cluster}.yaml"

    def load(self, cluster: str) -> ClusterLogin | None:
        """Return the stored login, or None when the cluster has none.

        Raises:
            ConfigurationError: If the login file cannot be parsed
        """
        path = self.path(cluster)
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            return None
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Cluster login is not valid YAML: {path}", str(e))

        try:
            return ClusterLogin(**(data or {}))
        except (PydanticValidationError, TypeError) as e:
            raise ConfigurationError(f"Cluster login is invalid: {path}", str(e))

    def save(self, login: ClusterLogin) -> Path:
        """Write a login readable only by the current user."""
        os.makedirs(self.folder, exist_ok=True)
        path = self.path(login.cluster)
        path.write_text(yaml.safe_dump(login.model_dump(), sort_keys=False))
        os.chmod(path, 0o600)
        logger.info(f"Saved administrator login for cluster {login.cluster} to {path}")
        return path

    def ensure(
        self, cluster: str, admin_username: str = DEFAULT_ADMIN_USERNAME, admin_password: str | None = None
    ) -> ClusterLogin:
        """Return the cluster's login, creating or updating the stored one as needed.

        An explicit password replaces the stored one.  Without one, the stored
        password is reused, and a new one is generated only when none exists.
        """
        login = self.load(cluster)
        if login is not None and admin_password in (None, login.admin_password):
            if login.admin_username == admin_username:
                return login

        password = admin_password or (login.admin_password if login else secrets.token_urlsafe(24))
        login = ClusterLogin(cluster=cluster, admin_username=admin_username, admin_password=password)
        self.save(login)
        return login

    def remove(self, cluster: str) -> None:
        path = self.path(cluster)
        if path.exists():
            path.unlink()
            logger.info(f"Removed administrator login for cluster {cluster}")
