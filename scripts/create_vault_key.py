from __future__ import annotations

import argparse
import os

from medguard.core.crypto import generate_vault_key_bytes, key_id_from_key_bytes


def main() -> None:
    ap = argparse.ArgumentParser(description="Generate an AES-256 vault key for medguard.")
    ap.add_argument("--env-name", default="MEDGUARD_ENCRYPTION_KEY", help="Environment variable the key is exported as.")
    args = ap.parse_args()

    if os.environ.get(args.env_name):
        print(f"{args.env_name} is already set; refusing to print a replacement.")
        return

    key = generate_vault_key_bytes()
    print(f"export {args.env_name}={key.hex()}")
    print(f"Key fingerprint (key_id): {key_id_from_key_bytes(key)}")


if __name__ == "__main__":
    main()
