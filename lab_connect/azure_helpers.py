"""
Azure SDK plumbing for the administrator commands.

Student commands never build a credential: they reach the mailbox through
the container URL alone.
"""
import logging
from typing import Optional

from azure.identity import DefaultAzureCredential

# Loggers that stay at WARNING even with -v; they log every request and header
NOISY_LOGGERS = (
    "azure.core.pipeline.policies.http_logging_policy",
    "azure.identity",
)

_admin_credential: Optional[DefaultAzureCredential] = None


def get_azure_credential() -> DefaultAzureCredential:
    """Shared by the mailbox and the management clients of one admin run."""
    global _admin_credential

    if _admin_credential is None:
        logging.info("[AZURE] Creating administrator credential")
        _admin_credential = DefaultAzureCredential(
            # Admin runs are often unattended; never open a browser prompt
            exclude_interactive_browser_credential=True,
            exclude_visual_studio_code_credential=True,
            exclude_shared_token_cache_credential=True,
            exclude_powershell_credential=True,
        )
    return _admin_credential


def configure_azure_sdk_logging(verbose: bool = False):
    logging.getLogger("azure").setLevel(logging.INFO if verbose else logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
