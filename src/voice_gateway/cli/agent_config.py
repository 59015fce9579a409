"""Encrypt and upload the agent-config file to the secret store.

Usage:
    voice-gateway-agent-config --file agents.json
    voice-gateway-agent-config --file agents.json --dry-run
    voice-gateway-agent-config --file agents.json --no-upload --output envelope.json

Exit codes: 0 ok, 1 invalid config file, 2 usage or key error.
"""

import argparse
import json
import os
import sys
from pathlib import Path

from voice_gateway.app.config import get_settings
from voice_gateway.infra.crypto import encrypt_envelope, parse_encryption_key
from voice_gateway.infra.secret_store import SecretStore
from voice_gateway.services.agent_config import validate_agent_configs

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="voice-gateway-agent-config",
        description="Validate, encrypt and upload voice agent configs",
    )
    parser.add_argument("--file", required=True, help="Path to the agent-config JSON array")
    parser.add_argument("--secret", default="AGENT_CONFIGS", help="Secret name to write (default: AGENT_CONFIGS)")
    parser.add_argument("--key", help="Encryption key, 64 hex chars or base64 (default: AGENT_CONFIG_ENCRYPTION_KEY)")
    parser.add_argument("--store", help="Secret store directory (default: SECRET_STORE_NAME)")
    parser.add_argument("--no-upload", action="store_true", help="Encrypt without writing to the secret store")
    parser.add_argument("--dry-run", action="store_true", help="Validate and encrypt only; write nothing")
    parser.add_argument("--output", help="Also write the encrypted envelope to this file")
    return parser


def load_entries(path: Path) -> list:
    """Read the config file; raises ValueError when it is not a JSON array."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"{path} is not valid JSON: {e}") from e
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON array of agent configs")
    if not data:
        raise ValueError(f"{path} contains no agent configs")
    return data


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    path = Path(args.file)
    if not path.is_file():
        print(f"Error: config file not found: {path}", file=sys.stderr)
        return EXIT_USAGE

    try:
        entries = load_entries(path)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID

    configs, errors = validate_agent_configs(entries)
    if errors:
        print(f"Validation failed ({len(errors)} problem(s)):", file=sys.stderr)
        for message in errors:
            print(f"  - {message}", file=sys.stderr)
        return EXIT_INVALID
    print(f"Validated {len(configs)} agent config(s): {', '.join(c.agent_id for c in configs)}")

    raw_key = args.key or os.environ.get("AGENT_CONFIG_ENCRYPTION_KEY") or settings.agent_config_encryption_key
    if not raw_key:
        print("Error: no encryption key (use --key or AGENT_CONFIG_ENCRYPTION_KEY)", file=sys.stderr)
        return EXIT_USAGE
    try:
        key = parse_encryption_key(raw_key)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    plaintext = json.dumps(entries, separators=(",", ":"))
    envelope = encrypt_envelope(plaintext, key)
    serialized = json.dumps(envelope, indent=2)

    if args.dry_run:
        print(f"Dry run: envelope for secret {args.secret} built ({len(serialized)} bytes), nothing written")
        return EXIT_OK

    if args.output:
        Path(args.output).write_text(serialized, encoding="utf-8")
        print(f"Envelope written to {args.output}")

    if args.no_upload:
        print("Upload skipped (--no-upload)")
        return EXIT_OK

    store_dir = args.store or settings.secret_store_name
    if not store_dir:
        print("Error: no secret store configured (use --store or SECRET_STORE_NAME)", file=sys.stderr)
        return EXIT_USAGE

    written = SecretStore(store_dir).put_secret(args.secret, serialized)
    print(f"Uploaded {len(configs)} agent config(s) to {written}")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
