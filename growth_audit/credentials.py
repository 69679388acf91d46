"""
Per-instance database credentials from SSM Parameter Store.

Each audited instance carries a tag (``cred_path`` by default) of the form
``<region>:<parameter path>``. The parameter is a SecureString holding JSON:

    {"username": "auditor", "password": "..."}
"""
import json
import logging
from typing import Optional, Tuple

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
)

from .constants import CREDENTIAL_PATH_SEPARATOR, DEFAULT_CREDENTIAL_TAG_KEY
from .errors import CredentialError
from .models import Credential, Instance
from .utils import ClientCache, retry_with_backoff

logger = logging.getLogger(__name__)


def parse_credential_path(value: Optional[str]) -> Tuple[str, str]:
    """
    Split a ``<region>:<path>`` tag value on its first colon.

    Example: "us-east-1:/app/creds" -> ("us-east-1", "/app/creds")

    Raises:
        CredentialError: if there is no colon or either side is empty
    """
    if not value or CREDENTIAL_PATH_SEPARATOR not in value:
        raise CredentialError(f"Malformed credential path {value!r}, expected '<region>:<path>'")

    region, path = value.split(CREDENTIAL_PATH_SEPARATOR, 1)
    region, path = region.strip(), path.strip()
    if not region or not path:
        raise CredentialError(f"Malformed credential path {value!r}, expected '<region>:<path>'")
    return region, path


def parse_credential_document(body: str, path: str) -> Credential:
    """Build a Credential from the JSON body of a parameter."""
    try:
        document = json.loads(body)
    except (TypeError, ValueError) as e:
        raise CredentialError(f"Parameter {path} is not valid JSON", e) from e

    if not isinstance(document, dict):
        raise CredentialError(f"Parameter {path} must hold a JSON object")

    credential = Credential(
        user=str(document.get('username') or ''),
        password=str(document.get('password') or ''),
    )
    if not credential.is_valid():
        raise CredentialError(f"Parameter {path} is missing a username or password")
    return credential


class CredentialResolver:
    """Resolves the login for an instance through its credential-path tag."""

    def __init__(self, clients: ClientCache, tag_key: str = DEFAULT_CREDENTIAL_TAG_KEY):
        self.clients = clients
        self.tag_key = tag_key

    @retry_with_backoff(max_attempts=3, exceptions=(EndpointConnectionError, ConnectTimeoutError))
    def _get_parameter(self, path: str, region: str) -> str:
        ssm = self.clients.client('ssm', region)
        response = ssm.get_parameter(Name=path, WithDecryption=True)
        return response['Parameter']['Value']

    def resolve(self, instance: Instance) -> Credential:
        """
        Return the Credential for ``instance``.

        Raises:
            CredentialError: malformed tag, store failure or incomplete secret
        """
        region, path = parse_credential_path(instance.tag_value(self.tag_key))

        try:
            body = self._get_parameter(path, region)
        except (ClientError, BotoCoreError) as e:
            raise CredentialError(
                f"Could not retrieve parameter {path} in {region} for {instance.name}: {e}", e
            ) from e

        credential = parse_credential_document(body, path)
        logger.debug(f"Resolved credentials for {instance.name} from {region}:{path}")
        return credential
