import os
from typing import Dict, Mapping, Optional

import hvac
import requests
from pydantic import SecretStr

from fleetgate.errors import InputError, ObservationError
from fleetgate.interfaces import Credentials


class EnvSecretProvider:
    """Read node-bootstrap credentials from environment variables.

    `mapping` is credential name -> variable name. Values are wrapped in
    SecretStr right away so they never show up in reprs or logs.
    """

    def __init__(self, mapping: Mapping[str, str], environ: Optional[Mapping[str, str]] = None):
        self.mapping: Dict[str, str] = dict(mapping)
        self.environ = environ if environ is not None else os.environ

    def credentials(self) -> Credentials:
        missing = sorted(var for var in self.mapping.values() if not self.environ.get(var))
        if missing:
            raise InputError(f"missing credential environment variable(s): {', '.join(missing)}")
        return {name: SecretStr(self.environ[var]) for name, var in self.mapping.items()}


class VaultSecretProvider:
    """Read node-bootstrap credentials from a Vault KV v2 secret.

    Every key of the secret's data becomes one credential. The token is taken
    from `token_env` at call time and is never stored on the instance.
    """

    def __init__(
        self,
        addr: str,
        path: str,
        mount_point: str = "secret",
        token_env: str = "VAULT_TOKEN",
        client: Optional[hvac.Client] = None,
    ):
        self.addr = addr
        self.path = path
        self.mount_point = mount_point
        self.token_env = token_env
        self._client = client

    def _connect(self) -> hvac.Client:
        if self._client is not None:
            return self._client
        token = os.environ.get(self.token_env)
        if not token:
            raise InputError(f"{self.token_env} is not set; cannot authenticate with Vault at {self.addr}")
        client = hvac.Client(url=self.addr, token=token)
        try:
            authenticated = client.is_authenticated()
        except requests.RequestException as e:
            raise ObservationError(f"Vault at {self.addr} is unreachable: {e}") from e
        if not authenticated:
            raise InputError(f"authentication with Vault at {self.addr} failed")
        return client

    def credentials(self) -> Credentials:
        client = self._connect()
        try:
            found = client.secrets.kv.v2.read_secret_version(
                path=self.path,
                mount_point=self.mount_point,
                raise_on_deleted_version=True,
            )
        except hvac.exceptions.InvalidPath as e:
            raise InputError(f"no Vault secret at {self.mount_point}/{self.path}") from e
        except hvac.exceptions.Forbidden as e:
            raise InputError(f"Vault token may not read {self.mount_point}/{self.path}") from e
        except (hvac.exceptions.VaultError, requests.RequestException) as e:
            raise ObservationError(f"reading {self.mount_point}/{self.path} from Vault failed: {e}") from e
        data = found["data"]["data"]
        return {name: SecretStr(str(value)) for name, value in data.items()}
