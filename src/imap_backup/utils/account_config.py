"""
Account Configuration

Builds account conf dicts either from command-line arguments (with
environment-variable defaults) or from a JSON file listing several accounts:

    {
        "accounts": [
            {
                "username": "me@example.com",
                "password": "app-password",
                "local_path": "~/mail-backup/me",
                "folders": ["INBOX", "Archive"],
                "server": "imaps://imap.example.com:993",
                "multi_fetch_size": 10
            }
        ]
    }
"""

import json
import os

from imap_backup.core import imap_retry
from imap_backup.core.imap_session import DEFAULT_MULTI_FETCH_SIZE, build_account_conf

ACCOUNT_KEYS = ("username", "password", "local_path", "folders", "server", "connection_options", "multi_fetch_size")


class ConfigError(Exception):
    pass


def env_bool(name, default="false"):
    return os.getenv(name, default).lower() == "true"


def int_setting(value, env_name, default=1):
    """A positive integer option: the command-line value, else env_name, else default."""
    raw = value if value is not None else os.getenv(env_name, default)
    try:
        number = int(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid {env_name}: {raw!r} is not a number") from e
    if number < 1:
        raise ConfigError(f"{env_name} must be >= 1, got {number}")
    return number


def add_account_arguments(parser, prefix, workers=True):
    """
    Add the single-account options to an argparse parser.

    prefix is "src" (backup/status) or "dest" (restore); it selects both the
    flag names (--src-host) and the environment variables (SRC_IMAP_HOST).
    workers=False leaves out --workers for commands that run accounts one by one.
    """
    env = prefix.upper()
    parser.add_argument(
        f"--{prefix}-host",
        dest="host",
        default=os.getenv(f"{env}_IMAP_HOST"),
        help=f"IMAP server, host or imap(s)://host:port (or {env}_IMAP_HOST). "
        "Defaults to the provider of the username's domain.",
    )
    parser.add_argument(
        f"--{prefix}-user",
        dest="user",
        default=os.getenv(f"{env}_IMAP_USERNAME"),
        help=f"Username (or {env}_IMAP_USERNAME)",
    )
    parser.add_argument(
        f"--{prefix}-pass",
        dest="password",
        default=os.getenv(f"{env}_IMAP_PASSWORD"),
        help=f"Password (or {env}_IMAP_PASSWORD)",
    )
    parser.add_argument(
        "--path",
        dest="local_path",
        default=os.getenv("BACKUP_LOCAL_PATH"),
        help="Local backup directory (or BACKUP_LOCAL_PATH)",
    )
    parser.add_argument(
        "--config",
        default=os.getenv("IMAP_BACKUP_CONFIG"),
        help="JSON file listing accounts (or IMAP_BACKUP_CONFIG); replaces the single-account options",
    )
    parser.add_argument(
        "--accounts",
        default=os.getenv("IMAP_BACKUP_ACCOUNTS"),
        help="Comma-separated usernames to process from --config",
    )
    if workers:
        parser.add_argument(
            "--workers",
            type=int,
            help="Accounts processed concurrently (or MAX_WORKERS; default: 1)",
        )
    parser.add_argument("folders", nargs="*", help="Folders to process (default: all)")


def conf_from_dict(data, base_dir=None):
    """Build an account conf from one entry of a config file."""
    if not isinstance(data, dict):
        raise ConfigError(f"Account entry must be an object, got {type(data).__name__}")
    unknown = set(data) - set(ACCOUNT_KEYS)
    if unknown:
        raise ConfigError(f"Unknown account settings for {data.get('username')}: {', '.join(sorted(unknown))}")

    local_path = data.get("local_path")
    if local_path:
        local_path = os.path.expanduser(local_path)
        if base_dir and not os.path.isabs(local_path):
            local_path = os.path.join(base_dir, local_path)

    try:
        return build_account_conf(
            data.get("username"),
            data.get("password"),
            local_path,
            folders=data.get("folders"),
            server=data.get("server"),
            connection_options=data.get("connection_options"),
            multi_fetch_size=data.get("multi_fetch_size", DEFAULT_MULTI_FETCH_SIZE),
        )
    except ValueError as e:
        raise ConfigError(str(e)) from e


def load_config_file(path):
    """Load every account conf from a JSON config file."""
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e

    accounts = data.get("accounts") if isinstance(data, dict) else None
    if not isinstance(accounts, list):
        raise ConfigError(f"Config file {path} has no 'accounts' list")

    base_dir = os.path.dirname(os.path.abspath(path))
    return [conf_from_dict(entry, base_dir) for entry in accounts]


def select_accounts(confs, names):
    """Keep only the accounts whose username is in a comma-separated list."""
    if not names:
        return confs
    wanted = [n.strip() for n in names.split(",") if n.strip()]
    unknown = set(wanted) - {c["username"] for c in confs}
    if unknown:
        raise ConfigError(f"Unknown accounts: {', '.join(sorted(unknown))}")
    return [c for c in confs if c["username"] in wanted]


def confs_from_args(args, multi_fetch_size=DEFAULT_MULTI_FETCH_SIZE):
    """
    Account confs for a parsed command line: from --config if given,
    otherwise a single account from the individual options.
    """
    if args.config:
        confs = select_accounts(load_config_file(os.path.expanduser(args.config)), args.accounts)
        if args.folders:
            for conf in confs:
                conf["folders"] = list(args.folders)
        return confs

    if args.accounts:
        raise ConfigError("--accounts requires --config")

    missing = [flag for flag, value in (("user", args.user), ("path", args.local_path)) if not value]
    if missing:
        raise ConfigError(f"Missing required settings: {', '.join(missing)}")

    try:
        return [
            build_account_conf(
                args.user,
                args.password,
                os.path.expanduser(args.local_path),
                folders=args.folders,
                server=args.host,
                multi_fetch_size=multi_fetch_size,
            )
        ]
    except ValueError as e:
        raise ConfigError(str(e)) from e


def folder_options_from_env():
    """Retry policies for ImapFolder from FETCH_RETRY_LIMIT / APPEND_RETRY_LIMIT."""
    try:
        fetch_limit = int(os.getenv("FETCH_RETRY_LIMIT", imap_retry.DEFAULT_FETCH_RETRY_LIMIT))
        append_limit = int(os.getenv("APPEND_RETRY_LIMIT", imap_retry.DEFAULT_APPEND_RETRY_LIMIT))
        return {
            "fetch_retry": imap_retry.fetch_policy(limit=fetch_limit),
            "append_retry": imap_retry.append_policy(limit=append_limit),
        }
    except ValueError as e:
        raise ConfigError(f"Invalid retry limit: {e}") from e
