"""Command-line administration for llamagate.

Usage:
    llamagate-admin generatekey
    llamagate-admin ratelimit <key> 30
    llamagate-admin shell            # interactive console, one command per line

Works directly on the database named by DATABASE_URL / DATABASE_PATH, so it
can run next to a live server.
"""

import argparse
import asyncio
import os
import shlex
import sys
from typing import List, Optional

from dotenv import load_dotenv

from llamagate.admin import AdminError, KeyAdmin
from llamagate.config import ConfigError, DEFAULT_RATE_LIMIT, save_ollama_url, save_port
from llamagate.database import ApiKeyRecord, Database, create_database


def _format_key(record: ApiKeyRecord) -> str:
    status = "active" if record.active else "inactive"
    line = f"{record.key}  [{status}]  {record.tokens}/{record.rate_limit} tokens"
    if record.description:
        line += f"  - {record.description}"
    return line


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="llamagate-admin", description="Manage llamagate API keys and webhooks")
    parser.add_argument("--database", help="SQLite file or PostgreSQL URL (defaults to DATABASE_URL / DATABASE_PATH)")
    parser.add_argument("--config-dir", default=".", help="Directory holding port.conf and ollamaURL.conf")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("generatekey", help="Generate a new API key")
    p = sub.add_parser("generatekeys", help="Generate several API keys")
    p.add_argument("count", type=int)
    sub.add_parser("listkeys", help="List all API keys")
    sub.add_parser("listactivekeys", help="List active API keys")
    sub.add_parser("listinactivekeys", help="List deactivated API keys")
    p = sub.add_parser("addkey", help="Register a key of your choosing")
    p.add_argument("key")
    p = sub.add_parser("removekey", help="Delete an API key")
    p.add_argument("key")
    p = sub.add_parser("ratelimit", help="Set requests per minute for a key")
    p.add_argument("key")
    p.add_argument("limit", type=int)
    p = sub.add_parser("activatekey", help="Activate an API key")
    p.add_argument("key")
    p = sub.add_parser("deactivatekey", help="Deactivate an API key")
    p.add_argument("key")
    sub.add_parser("activateallkeys", help="Activate every API key")
    sub.add_parser("deactivateallkeys", help="Deactivate every API key")
    p = sub.add_parser("addkeydescription", help="Attach a description to a key")
    p.add_argument("key")
    p.add_argument("description", nargs="+")
    p = sub.add_parser("listkeydescription", help="Show a key's description")
    p.add_argument("key")
    p = sub.add_parser("regeneratekey", help="Replace a key with a new one")
    p.add_argument("key")
    p = sub.add_parser("getkeyinfo", help="Show everything stored for a key")
    p.add_argument("key")
    p = sub.add_parser("addwebhook", help="Register a webhook URL")
    p.add_argument("url")
    p = sub.add_parser("deletewebhook", help="Delete a webhook by id")
    p.add_argument("id", type=int)
    sub.add_parser("listwebhooks", help="List webhooks")
    p = sub.add_parser("changeport", help="Set the listening port (applies on restart)")
    p.add_argument("port")
    p = sub.add_parser("changeollamaurl", help="Set the Ollama server address")
    p.add_argument("url")
    sub.add_parser("shell", help="Interactive console")
    return parser


def open_database(target: Optional[str] = None) -> Database:
    target = target or os.getenv("DATABASE_URL") or os.getenv("DATABASE_PATH", "./apiKeys.db")
    if target.startswith(("postgres://", "postgresql://")):
        return create_database(database_url=target)
    return create_database(database_path=target)


async def run_command(args: argparse.Namespace, admin: KeyAdmin) -> int:
    """Execute one parsed command, printing its result. Returns an exit code."""
    command = args.command

    if command == "generatekey":
        print(f"API key generated: {(await admin.generate_key()).key}")
    elif command == "generatekeys":
        for record in await admin.generate_keys(args.count):
            print(f"API key generated: {record.key}")
    elif command in ("listkeys", "listactivekeys", "listinactivekeys"):
        active = {"listkeys": None, "listactivekeys": True, "listinactivekeys": False}[command]
        records = await admin.list_keys(active)
        if not records:
            print("No API keys found.")
        for record in records:
            print(_format_key(record))
    elif command == "addkey":
        print("Warning: Adding your own keys may be unsafe. It is recommended to generate keys using the generatekey command.")
        print(f"API key added: {(await admin.add_key(args.key)).key}")
    elif command == "removekey":
        if not await admin.remove_key(args.key):
            print("No API key found with the given key.")
            return 1
        print("API key removed")
    elif command == "ratelimit":
        if not await admin.set_rate_limit(args.key, args.limit):
            print("No API key found with the given key.")
            return 1
        print(f"Rate limit set to {args.limit} requests per minute for API key: {args.key}")
    elif command in ("activatekey", "deactivatekey"):
        active = command == "activatekey"
        if not await admin.set_active(args.key, active):
            print("No API key found with the given key.")
            return 1
        print(f"API key {args.key} {'activated' if active else 'deactivated'}")
    elif command in ("activateallkeys", "deactivateallkeys"):
        active = command == "activateallkeys"
        count = await admin.set_all_active(active)
        print(f"{count} API keys {'activated' if active else 'deactivated'}")
    elif command == "addkeydescription":
        if not await admin.set_description(args.key, " ".join(args.description)):
            print("No API key found with the given key.")
            return 1
        print(f"Description added to API key {args.key}")
    elif command == "listkeydescription":
        record = await admin.key_info(args.key)
        if record and record.description:
            print(f"Description for API key {args.key}: {record.description}")
        else:
            print(f"No description found for API key {args.key}")
    elif command == "regeneratekey":
        new_key = await admin.regenerate_key(args.key)
        if not new_key:
            print("No API key found with the given key.")
            return 1
        print(f"API key regenerated. New API key: {new_key}")
    elif command == "getkeyinfo":
        record = await admin.key_info(args.key)
        if not record:
            print("No API key found with the given key.")
            return 1
        print(_format_key(record))
        print(f"  created:   {record.created_at.isoformat()}")
        print(f"  last used: {record.last_used_at.isoformat()}")
        print(f"  requests:  {await admin.database.count_usage(record.key)}")
    elif command == "addwebhook":
        webhook_id = await admin.add_webhook(args.url)
        print(f"Webhook added: {args.url} (id {webhook_id})")
    elif command == "deletewebhook":
        if not await admin.delete_webhook(args.id):
            print("No webhook found with the given id.")
            return 1
        print("Webhook deleted")
    elif command == "listwebhooks":
        webhooks = await admin.list_webhooks()
        if not webhooks:
            print("No webhooks registered.")
        for webhook in webhooks:
            print(f"{webhook.id}: {webhook.url}")
    elif command == "changeport":
        path = save_port(args.port, args.config_dir)
        print(f"Port number saved to {path}; restart the server to apply it.")
    elif command == "changeollamaurl":
        ollama_url = await admin.set_ollama_url(args.url)
        path = save_ollama_url(ollama_url, args.config_dir)
        print(f"Ollama URL saved to {path}: {ollama_url}")
    return 0


async def _shell(parser: argparse.ArgumentParser, base_args: argparse.Namespace, admin: KeyAdmin) -> int:
    loop = asyncio.get_running_loop()
    print("llamagate admin console. Type 'help' for commands, 'exit' to quit.")
    while True:
        try:
            line = await loop.run_in_executor(None, input, "> ")
        except EOFError:
            return 0
        try:
            words = shlex.split(line)
        except ValueError as e:
            print(f"Error: {e}")
            continue
        if not words:
            continue
        if words[0] == "exit":
            return 0
        if words[0] == "help":
            parser.print_help()
            continue
        if words[0] == "shell":
            continue
        try:
            args = parser.parse_args(["--config-dir", base_args.config_dir] + words)
        except SystemExit:
            continue
        try:
            await run_command(args, admin)
        except (AdminError, ConfigError) as e:
            print(f"Error: {e}")


async def _main_async(args: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    database = open_database(args.database)
    await database.initialize()
    default_rate_limit = int(os.getenv("DEFAULT_RATE_LIMIT", str(DEFAULT_RATE_LIMIT)))
    admin = KeyAdmin(database, default_rate_limit=default_rate_limit)
    try:
        if args.command == "shell":
            return await _shell(parser, args, admin)
        return await run_command(args, admin)
    finally:
        await database.close()


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return asyncio.run(_main_async(args, parser))
    except (AdminError, ConfigError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
