import os
import sys
import json
import logging
from typing import Dict, List, Optional

from dotenv import find_dotenv, load_dotenv

# Constants
DEFAULT_REGION = 'us-west-2'
DEFAULT_CERT_DIR = './certs'
DEFAULT_SUBJECT = '/C=US/ST=CA/O=SmartGarden'
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

REQUIRED_FIELDS = ['bucket_name', 'bucket_file', 'role_arn', 'template']
ENV_FIELDS = {
    'BUCKET_NAME': 'bucket_name',
    'BUCKET_FILE': 'bucket_file',
    'ROLE_ARN': 'role_arn',
    'TEMPLATE': 'template',
    'AWS_REGION': 'region',
    'CSR_SUBJECT': 'subject',
}


def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    """Configure logging"""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers
    )


class Device:
    """A device to provision: thing name plus hardware serial"""
    def __init__(self, name: str, chip_id: str):
        self.name = name
        self.chip_id = chip_id

    def __repr__(self):
        return f"Device(name={self.name!r}, chip_id={self.chip_id!r})"

    def __eq__(self, other):
        if not isinstance(other, Device):
            return NotImplemented
        return (self.name, self.chip_id) == (other.name, other.chip_id)


def parse_devices(records: List[Dict]) -> List[Device]:
    """Validate raw device records"""
    devices = []
    for index, record in enumerate(records):
        name = record.get('name')
        chip_id = record.get('chip_id', record.get('chipId'))
        if not name or chip_id in (None, ''):
            raise ValueError(f"Device record {index} needs 'name' and 'chip_id': {record}")
        devices.append(Device(str(name), str(chip_id)))
    return devices


def load_devices(path: str) -> List[Device]:
    """Load a JSON array of device records"""
    if not os.path.exists(path):
        raise FileNotFoundError(f"Devices file not found at {path}")
    logging.info(f"Loading devices from {path}")
    with open(path, 'r') as f:
        records = json.load(f)
    if not isinstance(records, list):
        raise ValueError(f"Devices file {path} must contain a JSON array")
    return parse_devices(records)


class CertLayout:
    """Where keys, CSRs, certificates and firmware secrets live on disk"""
    def __init__(self, root: str = DEFAULT_CERT_DIR):
        self.root = os.path.abspath(root)
        self.key_dir = os.path.join(self.root, 'key')
        self.csr_dir = os.path.join(self.root, 'csr')
        self.crt_dir = os.path.join(self.root, 'crt')
        self.bin_root = os.path.join(self.root, 'bin')

    def key_path(self, name: str) -> str:
        return os.path.join(self.key_dir, f"{name}.key")

    def csr_path(self, name: str) -> str:
        return os.path.join(self.csr_dir, f"{name}.csr")

    def crt_path(self, name: str) -> str:
        return os.path.join(self.crt_dir, f"{name}.crt")

    def bin_dir(self, name: str) -> str:
        return os.path.join(self.bin_root, name)

    def make_dirs(self):
        for path in (self.key_dir, self.csr_dir, self.crt_dir):
            os.makedirs(path, exist_ok=True)

    def device_names(self) -> List[str]:
        """Devices that have a CSR on disk"""
        if not os.path.isdir(self.csr_dir):
            raise FileNotFoundError(f"CSR directory not found at {self.csr_dir}")
        return sorted(
            fname[:-len('.csr')]
            for fname in os.listdir(self.csr_dir)
            if fname.endswith('.csr')
        )


class ProvisioningConfig:
    """Bulk registration settings from a JSON file and the environment"""
    def __init__(self, data: dict):
        missing = [field for field in REQUIRED_FIELDS if not data.get(field)]
        if missing:
            raise ValueError(f"Missing required config fields: {missing}")

        self.bucket_name = data['bucket_name']
        self.bucket_file = data['bucket_file']
        self.role_arn = data['role_arn']
        self.template = data['template']
        self.region = data.get('region') or DEFAULT_REGION
        self.subject = data.get('subject') or DEFAULT_SUBJECT
        self.devices = parse_devices(data.get('devices', []))

    @classmethod
    def load(cls, config_path: Optional[str] = None, env=None, dotenv_path: Optional[str] = None):
        if env is None:
            load_dotenv(dotenv_path or find_dotenv(usecwd=True))
            env = os.environ

        data = {}
        if config_path:
            if not os.path.exists(config_path):
                raise FileNotFoundError(f"Config file not found at {config_path}")
            logging.info(f"Loading config from {config_path}")
            with open(config_path, 'r') as f:
                data = json.load(f)

        for env_name, field in ENV_FIELDS.items():
            if env.get(env_name):
                data[field] = env[env_name]

        return cls(data)

    def template_body(self) -> str:
        """Read the provisioning template referenced by the config"""
        if not os.path.exists(self.template):
            raise FileNotFoundError(f"Provisioning template not found at {self.template}")
        with open(self.template, 'r') as f:
            return f.read()
