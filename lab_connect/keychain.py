import json
import logging
import os
import re
import subprocess
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List

from .errors import LabConnectError, SecretNotFound

DEFAULT_SERVICE = "lab-connect"


class SecretStore(ABC):
    """Keychain-style credential storage keyed by (service, account)."""

    @abstractmethod
    def store(self, service: str, account: str, secret: str): ...

    @abstractmethod
    def retrieve(self, service: str, account: str) -> str: ...

    @abstractmethod
    def delete(self, service: str, account: str): ...

    @abstractmethod
    def list(self, service: str) -> List[str]: ...


class FileKeychain(SecretStore):
    """Plain-file fallback: one owner-only JSON file per secret."""

    def __init__(self, store_dir: Path):
        self.store_dir = Path(store_dir)
        self.store_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    def _path(self, service: str, account: str) -> Path:
        if "/" in account or "\\" in account or account.startswith("."):
            raise LabConnectError(f"invalid keychain account name: {account!r}")
        return self.store_dir / f"{service}-{account}.json"

    def store(self, service: str, account: str, secret: str):
        path = self._path(service, account)
        data = json.dumps({"service": service, "account": account, "secret": secret})
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)

    def retrieve(self, service: str, account: str) -> str:
        path = self._path(service, account)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise SecretNotFound(f"no secret stored for {account}")
        except (OSError, ValueError) as e:
            raise LabConnectError(f"failed to read secret for {account}: {e}") from e
        return data["secret"]

    def delete(self, service: str, account: str):
        try:
            self._path(service, account).unlink()
        except FileNotFoundError:
            raise SecretNotFound(f"no secret stored for {account}")

    def list(self, service: str) -> List[str]:
        prefix = f"{service}-"
        return sorted(
            p.name[len(prefix):-len(".json")]
            for p in self.store_dir.glob(f"{prefix}*.json")
        )


class MacOSKeychain(SecretStore):
    """macOS login keychain through the `security` command."""

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run(["security", *args], capture_output=True, text=True)

    def store(self, service: str, account: str, secret: str):
        # -U updates an existing item in place
        result = self._run("add-generic-password", "-s", service, "-a", account, "-w", secret, "-U")
        if result.returncode != 0:
            raise LabConnectError(f"failed to store in keychain: {result.stderr.strip()}")

    def retrieve(self, service: str, account: str) -> str:
        result = self._run("find-generic-password", "-s", service, "-a", account, "-w")
        if result.returncode != 0:
            raise SecretNotFound(f"no secret stored for {account}")
        return result.stdout.strip()

    def delete(self, service: str, account: str):
        result = self._run("delete-generic-password", "-s", service, "-a", account)
        if result.returncode != 0:
            raise SecretNotFound(f"no secret stored for {account}")

    def list(self, service: str) -> List[str]:
        result = self._run("dump-keychain")
        if result.returncode != 0:
            raise LabConnectError(f"failed to list keychain: {result.stderr.strip()}")
        accounts = []
        # dump-keychain prints one block per item; pair each acct with its svce
        for block in result.stdout.split("keychain: ")[1:]:
            svce = re.search(r'"svce"<blob>="([^"]*)"', block)
            acct = re.search(r'"acct"<blob>="([^"]*)"', block)
            if svce and acct and svce.group(1) == service:
                accounts.append(acct.group(1))
        return sorted(accounts)


def new_secret_store(keychain_dir: Path, backend: str = "auto") -> SecretStore:
    if backend == "auto" and sys.platform == "darwin":
        logging.debug("[KEYCHAIN] Using macOS keychain")
        return MacOSKeychain()
    return FileKeychain(keychain_dir)


class KeyStore:
    """SSH key material for each (project, username), kept in a SecretStore."""

    def __init__(self, store: SecretStore, service: str = DEFAULT_SERVICE):
        self.store = store
        self.service = service

    @staticmethod
    def account(project: str, username: str) -> str:
        return f"{project}-{username}"

    def store_key(self, project: str, username: str, key_data: str):
        self.store.store(self.service, self.account(project, username), key_data)

    def retrieve_key(self, project: str, username: str) -> str:
        return self.store.retrieve(self.service, self.account(project, username))

    def delete_key(self, project: str, username: str):
        self.store.delete(self.service, self.account(project, username))

    def list_keys(self) -> List[str]:
        return self.store.list(self.service)
