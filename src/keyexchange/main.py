"""
keyexchange - Command line entry point.

Each invocation runs one command against the configured store and exits.
Secrets are prompted with getpass and passed down as plain parameters.
"""

import argparse
import logging
import sys
from getpass import getpass
from pathlib import Path
from typing import Optional, Sequence

from dotenv import find_dotenv, load_dotenv
from rich.console import Console
from rich.table import Table
from rich.text import Text

from . import __version__
from .config import Config
from .constants import LOGS_DIR
from .crypto import public_key_fingerprint
from .directory import DirectoryService
from .errors import KeyExchangeError, ValidationError
from .keys import KeyManager
from .messenger import Messenger
from .passwords import PasswordHasher
from .store import open_store
from .utils import format_fingerprint, format_timestamp, setup_logging

logger = logging.getLogger(__name__)

console = Console(highlight=False, markup=False)
err_console = Console(stderr=True, highlight=False, markup=False)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with one subcommand per flow."""
    parser = argparse.ArgumentParser(
        prog="keyexchange",
        description="keyexchange - RSA encrypted messaging over a shared key directory",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  keyexchange generate-keys --username alice
  keyexchange send-message --username bob --to alice --message "hello alice"
  keyexchange list-messages --username alice
  keyexchange read-message --username alice --index 1
        """,
    )
    parser.add_argument("--version", action="version", version=f"keyexchange {__version__}")
    parser.add_argument("--config", type=str, default=None, help="Path to config.toml")
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="Directory for configuration, keys and logs (default: ~/.keyexchange)",
    )
    parser.add_argument("--debug", action="store_true", help="Show debug logging on the console")

    user = argparse.ArgumentParser(add_help=False)
    user.add_argument("--username", "-u", type=str, default=None, help="Your username (prompted if omitted)")

    sub = parser.add_subparsers(dest="command", metavar="<command>")
    sub.required = True

    p = sub.add_parser("generate-keys", parents=[user], help="Create or reuse a key pair and register it")
    p.add_argument("--rotate", action="store_true", help="Archive local keys and publish a fresh pair")
    p.add_argument(
        "--separate-password",
        action="store_true",
        help="Use a directory password different from the key passphrase",
    )
    p.set_defaults(handler=cmd_generate_keys)

    p = sub.add_parser("share-public-key", parents=[user], help="Publish your local public key")
    p.set_defaults(handler=cmd_share_public_key)

    p = sub.add_parser("send-message", parents=[user], help="Encrypt and send a message")
    p.add_argument("--to", dest="recipient", type=str, default=None, help="Recipient username")
    p.add_argument("--message", "-m", type=str, default=None, help="Message text")
    p.set_defaults(handler=cmd_send_message)

    p = sub.add_parser("list-messages", parents=[user], help="List messages addressed to you")
    p.add_argument("--from", dest="sender", type=str, default=None, help="Only messages from this user")
    p.set_defaults(handler=cmd_list_messages)

    p = sub.add_parser("read-message", parents=[user], help="Decrypt one of your messages")
    selector = p.add_mutually_exclusive_group()
    selector.add_argument("--index", "-n", type=int, default=None, help="Position in list-messages (1-based)")
    selector.add_argument("--id", dest="message_id", type=str, default=None, help="Message id")
    p.add_argument(
        "--separate-password",
        action="store_true",
        help="Prompt for the key passphrase separately from the password",
    )
    p.set_defaults(handler=cmd_read_message)

    p = sub.add_parser("download-public-key", help="Save another user's public key locally")
    p.add_argument("target", metavar="USERNAME", help="User whose key to download")
    p.set_defaults(handler=cmd_download_public_key)

    p = sub.add_parser("init-store", help="Create store tables and indexes")
    p.set_defaults(handler=cmd_init_store)

    p = sub.add_parser("init-config", help="Write a config.toml with default values")
    p.add_argument("--force", action="store_true", help="Overwrite an existing file")
    p.set_defaults(handler=cmd_init_config, needs_store=False)

    return parser


def _ask(value: Optional[str], prompt: str) -> str:
    if value:
        return value
    return input(prompt).strip()


def _ask_secret(prompt: str, confirm: bool = False) -> str:
    secret = getpass(prompt)
    if confirm and secret != getpass("Confirm: "):
        raise ValidationError("Entries do not match")
    return secret


def _build_messenger(config: Config, store) -> Messenger:
    hasher = PasswordHasher.from_config(config)
    return Messenger(
        store,
        KeyManager(config.keys_dir),
        DirectoryService(store.users, hasher),
        key_size=config.get("security", "key_size"),
    )


def cmd_generate_keys(args, config: Config, messenger: Messenger) -> int:
    username = _ask(args.username, "Username: ")
    new_pair = args.rotate or not messenger.key_manager.has_key_pair(username)
    passphrase = _ask_secret("Passphrase: ", confirm=new_pair)
    password = _ask_secret("Password: ") if args.separate_password else None

    if new_pair:
        console.print(f"Generating {messenger.key_size}-bit RSA key pair...")
    result = messenger.generate_keys(username, passphrase, password=password, rotate=args.rotate)

    if result.archive_dir is not None:
        console.print(f"Previous keys archived to {result.archive_dir}")
    action = "Generated new" if result.generated else "Reused existing"
    console.print(Text(f"{action} key pair for {username}", style="bold"))
    console.print("Registered in directory" if result.created else "Directory record updated")
    console.print(f"Fingerprint: {format_fingerprint(result.fingerprint)}")
    return 0


def cmd_share_public_key(args, config: Config, messenger: Messenger) -> int:
    username = _ask(args.username, "Username: ")
    password = _ask_secret("Password: ")
    record = messenger.share_public_key(username, password)
    console.print(f"Public key published for {record.username}")
    console.print(f"Fingerprint: {format_fingerprint(public_key_fingerprint(record.public_key_pem))}")
    return 0


def cmd_send_message(args, config: Config, messenger: Messenger) -> int:
    username = _ask(args.username, "Username: ")
    password = _ask_secret("Password: ")
    recipient = _ask(args.recipient, "Recipient: ")
    message = args.message if args.message is not None else input("Message: ")
    envelope = messenger.send_message(username, password, recipient, message)
    console.print(f"Message sent to {recipient} (id {envelope.message_id})")
    return 0


def cmd_list_messages(args, config: Config, messenger: Messenger) -> int:
    username = _ask(args.username, "Username: ")
    password = _ask_secret("Password: ")
    messages = messenger.list_messages(username, password, sender=args.sender)
    if not messages:
        console.print("No messages.")
        return 0

    table = Table(title=f"Messages for {username}")
    table.add_column("#", justify="right")
    table.add_column("From")
    table.add_column("Sent (UTC)")
    table.add_column("Id", style="dim")
    for number, envelope in enumerate(messages, start=1):
        table.add_row(
            str(number),
            Text(envelope.sender_id),
            format_timestamp(envelope.sent_time),
            envelope.message_id,
        )
    console.print(table)
    return 0


def cmd_read_message(args, config: Config, messenger: Messenger) -> int:
    username = _ask(args.username, "Username: ")
    password = _ask_secret("Password: ")
    passphrase = _ask_secret("Passphrase: ") if args.separate_password else password

    if args.message_id is not None:
        selector = args.message_id
    elif args.index is not None:
        selector = args.index
    else:
        raw = _ask(None, "Message number: ")
        try:
            selector = int(raw)
        except ValueError:
            raise ValidationError(f"Not a message number: {raw!r}") from None

    result = messenger.read_message(username, password, passphrase, selector)
    envelope = result.envelope
    console.print(
        Text(f"From {envelope.sender_id} at {format_timestamp(envelope.sent_time)} UTC", style="bold")
    )
    console.print(Text(result.plaintext))
    return 0


def cmd_download_public_key(args, config: Config, messenger: Messenger) -> int:
    path = messenger.download_public_key(args.target)
    fingerprint = public_key_fingerprint(messenger.key_manager.read_contact_key(args.target))
    console.print(f"Public key of {args.target} saved to {path}")
    console.print(f"Fingerprint: {format_fingerprint(fingerprint)}")
    console.print("Compare the fingerprint with its owner before trusting it.")
    return 0


def cmd_init_store(args, config: Config, messenger: Messenger) -> int:
    messenger.store.ensure_schema()
    console.print(f"Store ready: {config.get('store', 'uri')}")
    return 0


def cmd_init_config(args, config: Config, messenger: Optional[Messenger]) -> int:
    if config.config_path.exists() and not args.force:
        raise ValidationError(
            f"{config.config_path} already exists (use --force to overwrite)",
            {"path": str(config.config_path)},
        )
    Config.create_example(config.config_path)
    console.print(f"Configuration written to {config.config_path}")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the keyexchange command.

    Returns:
        Process exit status: 0 on success, 1 on error, 130 on interrupt
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    load_dotenv(find_dotenv(usecwd=True))

    try:
        config = Config(
            config_path=Path(args.config).expanduser() if args.config else None,
            data_dir=Path(args.data_dir).expanduser() if args.data_dir else None,
        )
        log_dir = config.data_dir / LOGS_DIR if config.get("logging", "file_logging") else None
        setup_logging(
            level=config.get("logging", "level"),
            log_dir=log_dir,
            console=config.get("logging", "console_logging") or args.debug,
            debug=args.debug,
        )
        logger.debug(f"Running {args.command} with data dir {config.data_dir}")

        if not getattr(args, "needs_store", True):
            return args.handler(args, config, None)

        with open_store(config) as store:
            return args.handler(args, config, _build_messenger(config, store))

    except KeyExchangeError as e:
        logger.debug(f"{args.command} failed: {e}")
        err_console.print(Text(f"Error: {e.message}", style="bold red"))
        return 1
    except KeyboardInterrupt:
        err_console.print("\nInterrupted.")
        return 130
    except EOFError:
        err_console.print("\nNo input.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
