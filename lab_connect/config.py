import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

DEFAULT_POLL_INTERVAL = 10.0
DEFAULT_CONNECT_TIMEOUT = 300.0
DEFAULT_IP_LOOKUP_URL = "https://api.ipify.org"


class SyncConfig(BaseModel):
    """Where one project's mailbox lives. Passed to the mailbox explicitly."""

    mailbox_url: str
    project: str
    enabled: bool = True
    timeout: float = 30.0


class Settings(BaseModel):
    home: Path
    mailbox_url: Optional[str] = None
    project: Optional[str] = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    keychain: str = "auto"
    ssh_user_prefix: str = ""
    ip_lookup_url: Optional[str] = DEFAULT_IP_LOOKUP_URL
    subscription_id: Optional[str] = None
    resource_group: Optional[str] = None
    instance_template: str = "{username}"
    log_level: str = "WARNING"

    @property
    def tokens_dir(self) -> Path:
        return self.home / "tokens"

    @property
    def issued_dir(self) -> Path:
        return self.home / "issued"

    @property
    def keychain_dir(self) -> Path:
        return self.home / "keychain"

    @classmethod
    def from_env(cls) -> "Settings":
        home = os.getenv("LAB_CONNECT_HOME") or str(Path.home() / ".lab-connect")
        return cls(
            home=Path(home).expanduser(),
            mailbox_url=os.getenv("LAB_CONNECT_MAILBOX_URL"),
            project=os.getenv("LAB_CONNECT_PROJECT"),
            poll_interval=float(os.getenv("LAB_CONNECT_POLL_INTERVAL", DEFAULT_POLL_INTERVAL)),
            connect_timeout=float(os.getenv("LAB_CONNECT_CONNECT_TIMEOUT", DEFAULT_CONNECT_TIMEOUT)),
            keychain=os.getenv("LAB_CONNECT_KEYCHAIN", "auto"),
            ssh_user_prefix=os.getenv("LAB_CONNECT_SSH_USER_PREFIX", ""),
            # An empty value disables the public address lookup
            ip_lookup_url=os.getenv("LAB_CONNECT_IP_LOOKUP_URL", DEFAULT_IP_LOOKUP_URL) or None,
            subscription_id=os.getenv("AZURE_SUBSCRIPTION_ID"),
            resource_group=os.getenv("AZURE_RESOURCE_GROUP"),
            instance_template=os.getenv("LAB_CONNECT_INSTANCE_TEMPLATE", "{username}"),
            log_level=os.getenv("LOG_LEVEL", "WARNING").upper(),
        )

    def sync_config(self, project: str, mailbox_url: Optional[str] = None) -> SyncConfig:
        url = mailbox_url or self.mailbox_url
        return SyncConfig(mailbox_url=url or "", project=project, enabled=bool(url))
