#!/usr/bin/env python3

import os
import sys
import datetime
import logging
import argparse
from typing import List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from provisioning_config import CertLayout, setup_logging, DEFAULT_CERT_DIR


def verify_key_pair(cert_path: str, key_path: str) -> List[str]:
    """Check that an issued certificate belongs to the local private key"""
    issues = []

    for name, path in (('certificate', cert_path), ('key', key_path)):
        if not os.path.exists(path):
            issues.append(f"Missing {name} file: {path}")
    if issues:
        return issues

    try:
        with open(cert_path, 'rb') as f:
            cert = x509.load_pem_x509_certificate(f.read())
    except ValueError as e:
        return [f"Error loading certificate {cert_path}: {e}"]

    now = datetime.datetime.now(datetime.timezone.utc)
    if cert.not_valid_after_utc < now:
        issues.append(f"Certificate has expired on {cert.not_valid_after_utc}")

    try:
        with open(key_path, 'rb') as f:
            private_key = serialization.load_pem_private_key(f.read(), password=None)
    except (ValueError, TypeError) as e:
        issues.append(f"Error loading private key {key_path}: {e}")
        return issues

    if cert.public_key().public_numbers() != private_key.public_key().public_numbers():
        issues.append("Private key does not match certificate")

    return issues


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description='Check issued certificates against local keys')
    parser.add_argument('--cert-dir', default=DEFAULT_CERT_DIR,
                       help='Directory holding key/, csr/ and crt/')
    args = parser.parse_args(argv)
    setup_logging()

    layout = CertLayout(args.cert_dir)
    try:
        names = layout.device_names()
    except FileNotFoundError as e:
        logging.error(f"Fatal error: {e}")
        sys.exit(1)

    failed = False
    for name in names:
        issues = verify_key_pair(layout.crt_path(name), layout.key_path(name))
        if issues:
            failed = True
            for issue in issues:
                print(f"❌ {name}: {issue}")
        else:
            print(f"✅ {name}")

    sys.exit(1 if failed else 0)


if __name__ == '__main__':
    main()
