#!/usr/bin/env python3

"""
Turn issued certificates and private keys into firmware headers.

For every device with a CSR under <cert-dir>/csr this writes
<cert-dir>/bin/<device>/cert.der, private.der and secrets.h.
"""

import os
import sys
import logging
import argparse
from typing import List, Optional

import cert_tools
from cert_check import verify_key_pair
from provisioning_config import CertLayout, setup_logging, DEFAULT_CERT_DIR

CERT_DER = 'cert.der'
KEY_DER = 'private.der'
SECRETS_HEADER = 'secrets.h'


class DeviceBundle:
    def __init__(self, name: str, bin_dir: str, crt_path: str, key_path: str):
        self.name = name
        self.bin_dir = bin_dir
        self.crt_path = crt_path
        self.key_path = key_path


def bundles(layout: CertLayout) -> List[DeviceBundle]:
    return [
        DeviceBundle(name, layout.bin_dir(name), layout.crt_path(name), layout.key_path(name))
        for name in layout.device_names()
    ]


def convert_to_der(bundle: DeviceBundle, verify: bool = True):
    """Write the device certificate and key as DER into its bin directory"""
    if verify:
        issues = verify_key_pair(bundle.crt_path, bundle.key_path)
        if issues:
            raise ValueError(f"{bundle.name}: {'; '.join(issues)}")

    os.makedirs(bundle.bin_dir, exist_ok=True)
    cert_tools.convert_cert_to_der(bundle.crt_path, os.path.join(bundle.bin_dir, CERT_DER))
    cert_tools.convert_key_to_der(bundle.key_path, os.path.join(bundle.bin_dir, KEY_DER))


def generate_secrets(bin_dir: str) -> str:
    """Dump every DER file in bin_dir into a single secrets.h"""
    der_files = sorted(fname for fname in os.listdir(bin_dir) if fname.endswith('.der'))
    if not der_files:
        raise FileNotFoundError(f"No DER files in {bin_dir}")

    arrays = [cert_tools.hexdump_c_array(os.path.join(bin_dir, fname)) for fname in der_files]
    secrets_path = os.path.join(bin_dir, SECRETS_HEADER)
    with open(secrets_path, 'w') as f:
        f.write(''.join(arrays))
    return secrets_path


def convert_all(layout: CertLayout, verify: bool = True) -> List[str]:
    devices = bundles(layout)
    if not devices:
        raise FileNotFoundError(f"No CSRs found in {layout.csr_dir}")

    os.makedirs(layout.bin_root, exist_ok=True)
    for bundle in devices:
        convert_to_der(bundle, verify=verify)

    secrets = []
    for bundle in devices:
        secrets.append(generate_secrets(bundle.bin_dir))
        logging.info(f"Converted {bundle.name}")
    return secrets


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description='Convert device certificates to firmware headers')
    parser.add_argument('--cert-dir', default=DEFAULT_CERT_DIR,
                       help='Directory holding key/, csr/ and crt/')
    parser.add_argument('--no-verify', action='store_true',
                       help='Skip checking that each certificate matches its key')
    parser.add_argument('--log-file', help='Also write logs to this file')
    parser.add_argument('--verbose', action='store_true', help='Enable debug logs')

    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.log_file)

    try:
        secrets = convert_all(CertLayout(args.cert_dir), verify=not args.no_verify)
        for path in secrets:
            logging.info(f"Secrets header: {path}")
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
