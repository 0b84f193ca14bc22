"""
dvmpay CLI.

Commands:
  dvmpay keygen            Generate a consumer keypair (prints DVMPAY_PRIVATE_KEY line for .env)
  dvmpay resolve <id>      Resolve a provider id (hex, npub, nprofile) to its hex public key
  dvmpay config            Show the effective configuration (.env + environment)
"""
import sys

from dvmpay.config import ConsumerConfig, load_env
from dvmpay.errors import InvalidIdentifier
from dvmpay.identity import ENV_PRIVATE_KEY, Identity, encode_nsec, resolve_pubkey
from dvmpay.payments.lnbits import is_lnbits_configured


def keygen_command():
    """Generate a fresh identity. Nothing is written to disk."""
    identity = Identity.generate()
    print("Public key (hex): ", identity.public_key)
    print("Public key (npub):", identity.npub)
    print("Private key (nsec):", encode_nsec(identity.private_key))
    print("\nAdd this line to your .env (never commit it):")
    print(f"  {ENV_PRIVATE_KEY}={identity.private_key}")


def resolve_command():
    if len(sys.argv) < 3:
        print("Usage: dvmpay resolve <hex|npub|nprofile>")
        sys.exit(1)
    try:
        print(resolve_pubkey(sys.argv[2]))
    except InvalidIdentifier as e:
        print(f"Invalid identifier: {e}")
        sys.exit(1)


def config_command():
    try:
        config = ConsumerConfig.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}")
        sys.exit(1)
    print("dvmpay configuration")
    for key, value in config.model_dump().items():
        if isinstance(value, list):
            value = ", ".join(value)
        print(f"  {key}: {value}")
    if config.payment_method == "lnbits":
        print(f"  lnbits wallet: {'configured' if is_lnbits_configured() else 'not configured (payments stay pending)'}")


def main():
    """CLI entry point."""
    load_env()
    if len(sys.argv) < 2:
        print("dvmpay CLI")
        print("\nCommands:")
        print("  dvmpay keygen          Generate a consumer keypair")
        print("  dvmpay resolve <id>    Resolve hex / npub / nprofile to a hex public key")
        print("  dvmpay config          Show effective configuration")
        sys.exit(1)

    command = sys.argv[1]

    if command == "keygen":
        keygen_command()
    elif command == "resolve":
        resolve_command()
    elif command == "config":
        config_command()
    else:
        print(f"Unknown command: {command}")
        print("Use 'dvmpay keygen', 'dvmpay resolve <id>' or 'dvmpay config'")
        sys.exit(1)


if __name__ == "__main__":
    main()
