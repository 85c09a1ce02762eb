import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import List, Optional

from . import admin
from .azure_helpers import configure_azure_sdk_logging, get_azure_credential
from .config import Settings
from .connect import ConnectOrchestrator
from .control_plane import AzureControlPlane
from .errors import LabConnectError, WaitCancelled
from .keychain import KeyStore, new_secret_store
from .mailbox import Mailbox
from .tokens import TokenManager


def _tokens(settings: Settings) -> TokenManager:
    return TokenManager(settings.tokens_dir)


def _keys(settings: Settings) -> KeyStore:
    return KeyStore(new_secret_store(settings.keychain_dir, settings.keychain))


def _admin_mailbox(settings: Settings, project: str, mailbox_url: Optional[str]) -> Mailbox:
    return Mailbox(settings.sync_config(project, mailbox_url), credential=get_azure_credential())


def _control_plane(settings: Settings) -> AzureControlPlane:
    if not settings.subscription_id or not settings.resource_group:
        raise LabConnectError("Azure subscription is not configured; set AZURE_SUBSCRIPTION_ID and AZURE_RESOURCE_GROUP")
    return AzureControlPlane(settings.subscription_id, settings.resource_group)


def format_error(e: LabConnectError) -> str:
    """One line per failure; `Run:` only ever precedes a command."""
    message = str(e).rstrip(".")
    if e.remediation:
        return f"Error: {message}. Run: {e.remediation}"
    return f"Error: {message}."


# --- student commands ---

def cmd_activate(args, settings: Settings) -> int:
    print(f"Activating access token for student ID: {args.student_id}")
    print("Binding to current machine...")
    token = _tokens(settings).activate_token(args.token, args.student_id)
    print("✅ Token activated!")
    print(f"Project: {token.project}")
    print(f"Username: {token.username}")
    print(f"Student ID: {token.student_id}")
    print(f"Expires: {token.expires_at:%Y-%m-%d}")
    print(f"\nYou can now connect with: lab-connect connect {token.username}")
    return 0


def cmd_connect(args, settings: Settings) -> int:
    orchestrator = ConnectOrchestrator(_tokens(settings), _keys(settings), settings)
    return orchestrator.connect(args.username, project=args.project, force=args.force,
                                timeout=args.timeout, cancel=threading.Event())


def cmd_list(args, settings: Settings) -> int:
    manager = _tokens(settings)
    tokens = manager.list_tokens()
    if not tokens:
        print("No access tokens configured.")
        print("To add access: lab-connect activate <token> <student-id>")
        return 0

    print(f"{'USERNAME':<15} {'PROJECT':<15} {'ROLE':<10} {'EXPIRES':<12} {'STATUS':<15}")
    print("-" * 70)
    for token in tokens:
        print(f"{token.username:<15} {token.project:<15} {token.role:<10} "
              f"{token.expires_at:%Y-%m-%d}   {manager.describe(token):<15}")
    print(f"\nTotal: {len(tokens)} connections")
    return 0


def cmd_status(args, settings: Settings) -> int:
    orchestrator = ConnectOrchestrator(_tokens(settings), _keys(settings), settings)
    token, status = orchestrator.instance_status(args.username, args.project)
    print(f"Project: {token.project}")
    if status is None:
        print("Instance state: not reported yet")
        return 0
    print(f"Instance state: {status.state}")
    print(f"Address: {status.address or '-'}")
    print(f"Last updated: {status.last_updated:%Y-%m-%d %H:%M:%S} UTC")
    if status.start_requested:
        print(f"Start requested: {status.requested_at:%Y-%m-%d %H:%M:%S} by {status.requested_by or '-'}"
              if status.requested_at else "Start requested: yes")
    if status.budget_remaining is not None:
        print(f"Budget remaining: {status.budget_remaining:.2f}")
    if status.access_expires is not None:
        print(f"Access expires: {status.access_expires:%Y-%m-%d}")
    return 0


def cmd_keychain_store(args, settings: Settings) -> int:
    key_data = Path(args.key_file).read_text(encoding="utf-8")
    _keys(settings).store_key(args.project, args.username, key_data)
    print(f"✅ Key stored securely for {args.username} in project {args.project}")
    return 0


def cmd_keychain_list(args, settings: Settings) -> int:
    accounts = _keys(settings).list_keys()
    if not accounts:
        print("No keys stored.")
        return 0
    for account in accounts:
        print(account)
    print(f"\nTotal: {len(accounts)} keys")
    return 0


def cmd_keychain_delete(args, settings: Settings) -> int:
    _keys(settings).delete_key(args.project, args.username)
    print(f"✅ Key deleted for {args.username} in project {args.project}")
    return 0


# --- administrator commands ---

def cmd_admin_tokens(args, settings: Settings) -> int:
    config = admin.load_class_config(Path(args.class_file))
    tokens_file = admin.generate_class_tokens(config, TokenManager(settings.issued_dir), Path(args.output))
    print(f"🎉 Tokens saved to: {tokens_file}")
    print("Send each user their own token; they activate it with:")
    print("  lab-connect activate <their-token> <their-student-id>")
    return 0


def cmd_admin_requests(args, settings: Settings) -> int:
    mailbox = _admin_mailbox(settings, args.project, args.mailbox_url)
    control_plane = _control_plane(settings) if args.approve else None
    issued = TokenManager(settings.issued_dir) if settings.issued_dir.is_dir() else None
    outcomes = admin.process_start_requests(
        mailbox, control_plane, args.project, approve=args.approve,
        issued=issued, instance_template=settings.instance_template,
    )
    if not outcomes:
        print("No pending start requests.")
        return 0
    print(f"{'USERNAME':<15} {'OUTCOME':<10}")
    print("-" * 26)
    for username, outcome in outcomes.items():
        print(f"{username:<15} {outcome:<10}")
    if not args.approve:
        print(f"\nApprove with: lab-connect admin requests --project {args.project} --approve")
    return 1 if "failed" in outcomes.values() else 0


def cmd_admin_sync(args, settings: Settings) -> int:
    mailbox = _admin_mailbox(settings, args.project, args.mailbox_url)
    status = admin.publish_instance_status(mailbox, _control_plane(settings), args.project,
                                           args.username, args.instance)
    print(f"✅ Published {status.state} for {args.username} ({status.address or 'no address'})")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lab-connect", description="Credential-free access to lab workstations")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress details")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("activate", help="Activate an access token for this machine")
    p.add_argument("token")
    p.add_argument("student_id")
    p.set_defaults(func=cmd_activate)

    p = sub.add_parser("connect", help="Connect to your instance, requesting a start if needed")
    p.add_argument("username")
    p.add_argument("-p", "--project", default=None, help="Project of the token to use")
    p.add_argument("-f", "--force", action="store_true", help="Connect even if the instance is not running")
    p.add_argument("--timeout", type=float, default=None, help="Seconds to wait for the instance (default: 300)")
    p.set_defaults(func=cmd_connect)

    p = sub.add_parser("list", help="List activated tokens")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("status", help="Show the reported state of your instance")
    p.add_argument("username")
    p.add_argument("-p", "--project", default=None)
    p.set_defaults(func=cmd_status)

    p_keychain = sub.add_parser("keychain", help="Manage stored SSH keys")
    keychain_sub = p_keychain.add_subparsers(dest="keychain_command", required=True)
    p = keychain_sub.add_parser("store", help="Store an SSH private key")
    p.add_argument("project")
    p.add_argument("username")
    p.add_argument("key_file")
    p.set_defaults(func=cmd_keychain_store)
    p = keychain_sub.add_parser("list", help="List stored keys")
    p.set_defaults(func=cmd_keychain_list)
    p = keychain_sub.add_parser("delete", help="Delete a stored key")
    p.add_argument("project")
    p.add_argument("username")
    p.set_defaults(func=cmd_keychain_delete)

    p_admin = sub.add_parser("admin", help="Administrator commands (require Azure credentials)")
    admin_sub = p_admin.add_subparsers(dest="admin_command", required=True)
    p = admin_sub.add_parser("tokens", help="Generate tokens for a class roster")
    p.add_argument("class_file", help="Class configuration JSON")
    p.add_argument("-o", "--output", default="./student-tokens", help="Output directory")
    p.set_defaults(func=cmd_admin_tokens)
    p = admin_sub.add_parser("requests", help="Check pending start requests")
    p.add_argument("-p", "--project", required=True)
    p.add_argument("-a", "--approve", action="store_true", help="Start the requested instances")
    p.add_argument("--mailbox-url", default=None)
    p.set_defaults(func=cmd_admin_requests)
    p = admin_sub.add_parser("sync", help="Publish an instance's state to the mailbox")
    p.add_argument("-p", "--project", required=True)
    p.add_argument("username")
    p.add_argument("instance")
    p.add_argument("--mailbox-url", default=None)
    p.set_defaults(func=cmd_admin_sync)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    logging.basicConfig(
        level=logging.INFO if args.verbose else settings.log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    configure_azure_sdk_logging(args.verbose)

    try:
        return args.func(args, settings)
    except (WaitCancelled, KeyboardInterrupt):
        print("\nCancelled.", file=sys.stderr)
        return 130
    except LabConnectError as e:
        print(format_error(e), file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
