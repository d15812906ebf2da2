#!/usr/bin/env python3
"""Generate signing keys and a session encryption key for authkeeper.

Usage:
    # RS256 key pair + AES-256 session key as .env lines:
    python scripts/generate_keys.py >> .env

    # ECDSA instead, printed as JSON:
    python scripts/generate_keys.py --algorithm ES256 --format json

PEM blocks are printed with escaped newlines so they fit on one .env line;
authkeeper restores the newlines when it loads them.
"""
from __future__ import annotations

import argparse
import json
import secrets
import sys
from pathlib import Path
from typing import Dict

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from cryptography.hazmat.primitives import serialization  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import ec, rsa  # noqa: E402

_CURVES = {
    "ES256": ec.SECP256R1,
    "ES384": ec.SECP384R1,
    "ES512": ec.SECP521R1,
}


def _pem_pair(private_key) -> tuple[str, str]:
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = (
        private_key.public_key()
        .public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode()
    )
    return private_pem, public_pem


def generate_keys(algorithm: str = "RS256", rsa_bits: int = 2048) -> Dict[str, str]:
    """Return env-style settings for ``algorithm`` plus a fresh session key."""
    from authkeeper.config import SUPPORTED_JWT_ALGORITHMS
    from authkeeper.service.crypto import generate_encryption_key

    algorithm = algorithm.upper()
    if algorithm not in SUPPORTED_JWT_ALGORITHMS:
        raise ValueError(f"unsupported algorithm: {algorithm}")

    values = {"JWT_ALGORITHM": algorithm}
    if algorithm.startswith("HS"):
        values["JWT_SECRET"] = secrets.token_urlsafe(64)
    else:
        if algorithm.startswith("RS"):
            private_key = rsa.generate_private_key(public_exponent=65537, key_size=rsa_bits)
        else:
            private_key = ec.generate_private_key(_CURVES[algorithm]())
        private_pem, public_pem = _pem_pair(private_key)
        values["JWT_PRIVATE_KEY"] = private_pem
        values["JWT_PUBLIC_KEY"] = public_pem
    values["SESSION_ENCRYPTION_KEY"] = generate_encryption_key()
    return values


def format_env(values: Dict[str, str]) -> str:
    lines = []
    for key, value in values.items():
        escaped = value.strip().replace("\n", "\\n")
        lines.append(f'{key}="{escaped}"')
    return "\n".join(lines)


def main():
    parser = argparse.ArgumentParser(
        description="Generate authkeeper signing and encryption keys",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--algorithm",
        default="RS256",
        help="JWT signing algorithm (HS256, RS256, ES256, ...)",
    )
    parser.add_argument(
        "--rsa-bits",
        type=int,
        default=2048,
        help="RSA modulus size for RS* algorithms",
    )
    parser.add_argument(
        "--format",
        choices=("env", "json"),
        default="env",
        help="Output as .env lines or a JSON object",
    )

    args = parser.parse_args()

    if args.rsa_bits < 2048:
        print("Error: --rsa-bits must be at least 2048")
        sys.exit(1)

    try:
        values = generate_keys(args.algorithm, args.rsa_bits)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.format == "json":
        print(json.dumps(values, indent=2))
    else:
        print(format_env(values))


if __name__ == "__main__":
    main()
