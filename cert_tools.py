"""
Wrappers around the openssl and xxd command line tools.

Every call runs with check=True so a failing tool aborts the batch.
"""

import os
import logging
import subprocess
from typing import List, Optional

OPENSSL = 'openssl'
XXD = 'xxd'
KEY_SPEC = 'rsa:2048'
# Wide enough that xxd never wraps a DER blob
XXD_COLUMNS = '100000000'


def run_tool(command: List[str], cwd: Optional[str] = None) -> subprocess.CompletedProcess:
    """Run an external tool, logging stderr when it fails"""
    logging.debug(f"Running: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True
        )
    except subprocess.CalledProcessError as e:
        logging.error(f"{command[0]} exited with {e.returncode}: {(e.stderr or '').strip()}")
        raise

    if result.stderr:
        logging.debug(result.stderr.strip())
    return result


def generate_key_and_csr(key_path: str, csr_path: str, subject: str):
    """Create a new RSA key and a certificate signing request for it"""
    run_tool([
        OPENSSL, 'req', '-new',
        '-newkey', KEY_SPEC,
        '-nodes',
        '-keyout', key_path,
        '-out', csr_path,
        '-subj', subject,
    ])
    os.chmod(key_path, 0o600)


def convert_cert_to_der(crt_path: str, out_path: str) -> str:
    run_tool([OPENSSL, 'x509', '-in', crt_path, '-out', out_path, '-outform', 'DER'])
    return out_path


def convert_key_to_der(key_path: str, out_path: str) -> str:
    run_tool([OPENSSL, 'rsa', '-in', key_path, '-out', out_path, '-outform', 'DER'])
    return out_path


def hexdump_c_array(path: str) -> str:
    """
    Dump a binary file as a C byte array.

    xxd names the array after the path it is given, so it runs inside the
    file's directory: cert.der becomes cert_der and cert_der_len.
    """
    directory, filename = os.path.split(os.path.abspath(path))
    result = run_tool([XXD, '-c', XXD_COLUMNS, '-i', filename], cwd=directory)
    return result.stdout
