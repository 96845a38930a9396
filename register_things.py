#!/usr/bin/env python3

import os
import sys
import json
import time
import logging
import argparse
from typing import Dict, List, Optional

import boto3
import requests
from botocore.exceptions import ClientError

import cert_tools
from provisioning_config import (
    CertLayout,
    Device,
    ProvisioningConfig,
    load_devices,
    setup_logging,
    DEFAULT_CERT_DIR,
)

TASK_COMPLETED = 'Completed'
TASK_FAILED_STATES = ('Failed', 'Cancelled')
DEFAULT_RETRIES = 10
DEFAULT_INTERVAL = 1.0
DOWNLOAD_TIMEOUT = 30


def build_manifest_record(device: Device, csr_text: str) -> Dict[str, str]:
    """One line of the bulk registration input file"""
    return {
        'ThingName': device.name,
        'SerialNumber': device.chip_id,
        'CSR': csr_text.replace('\n', ''),
    }


def thing_name_from_arn(thing_arn: str) -> str:
    if 'thing/' not in thing_arn:
        raise ValueError(f"Not a thing ARN: {thing_arn}")
    return thing_arn.split('thing/', 1)[1]


def parse_report(text: str) -> List[dict]:
    """Parse a JSON-lines task report, skipping blank lines"""
    return [json.loads(line) for line in text.splitlines() if line.strip()]


class ThingRegistrar:
    """Runs a bulk thing registration task from local CSRs to saved certificates"""
    def __init__(self, config: ProvisioningConfig, layout: CertLayout,
                 iot=None, s3=None, http=requests):
        self.config = config
        self.layout = layout
        self.iot = iot or boto3.client('iot', region_name=config.region)
        self.s3 = s3 or boto3.client('s3', region_name=config.region)
        self.http = http

    def create_thing(self, device: Device) -> Dict[str, str]:
        """Generate the device key and CSR, return its manifest record"""
        key_path = self.layout.key_path(device.name)
        csr_path = self.layout.csr_path(device.name)
        cert_tools.generate_key_and_csr(key_path, csr_path, self.config.subject)
        logging.info(f"Generated key and CSR for {device.name}")

        with open(csr_path, 'r') as f:
            return build_manifest_record(device, f.read())

    def write_manifest(self, devices: List[Device]) -> str:
        records = [self.create_thing(device) for device in devices]
        path = self.config.bucket_file
        with open(path, 'w') as f:
            f.write('\n'.join(json.dumps(record) for record in records))
        logging.info(f"Wrote {len(records)} provisioning records to {path}")
        return path

    def upload_manifest(self, path: str):
        if not os.path.exists(path):
            raise FileNotFoundError(f"Provisioning file does not exist: {path}")
        with open(path, 'rb') as f:
            self.s3.put_object(
                Bucket=self.config.bucket_name,
                Key=self.config.bucket_file,
                Body=f.read()
            )
        logging.info(f"Uploaded {path} to s3://{self.config.bucket_name}/{self.config.bucket_file}")

    def start_registration(self) -> str:
        response = self.iot.start_thing_registration_task(
            templateBody=self.config.template_body(),
            inputFileBucket=self.config.bucket_name,
            inputFileKey=self.config.bucket_file,
            roleArn=self.config.role_arn
        )
        task_id = response['taskId']
        logging.info(f"Started registration task {task_id}")
        return task_id

    def wait_for_task(self, task_id: str, retries: int = DEFAULT_RETRIES,
                      interval: float = DEFAULT_INTERVAL) -> dict:
        """Poll the task until it completes or the retries run out"""
        retries = max(retries, 0)
        for attempt in range(retries + 1):
            task = self.iot.describe_thing_registration_task(taskId=task_id)
            status = task.get('status')
            logging.info(f"Status: {status}: {task.get('percentageProgress', 0)}%")

            if status == TASK_COMPLETED:
                return task
            if status in TASK_FAILED_STATES:
                raise RuntimeError(
                    f"Registration task {task_id} ended as {status}: {task.get('message', '')}"
                )
            if attempt < retries:
                time.sleep(interval)

        raise TimeoutError(f"Registration task {task_id} retries exceeded ({retries})")

    def _download_report(self, task_id: str, report_type: str) -> List[dict]:
        response = self.iot.list_thing_registration_task_reports(
            taskId=task_id,
            reportType=report_type
        )
        links = response.get('resourceLinks', [])
        if not links:
            raise RuntimeError(f"No {report_type} report for registration task {task_id}")

        logging.info(f"Downloading {report_type} report...")
        download = self.http.get(links[0], timeout=DOWNLOAD_TIMEOUT)
        download.raise_for_status()
        return parse_report(download.text)

    def fetch_results(self, task_id: str) -> List[dict]:
        return self._download_report(task_id, 'RESULTS')

    def fetch_errors(self, task_id: str) -> List[dict]:
        return self._download_report(task_id, 'ERRORS')

    def save_certificate(self, record: dict) -> str:
        response = record.get('response')
        if record.get('errorCode') or not response:
            raise RuntimeError(
                f"Registration failed for record {record.get('id')}: "
                f"{record.get('errorCode')} {record.get('errorMessage', '')}".strip()
            )

        name = thing_name_from_arn(response['ResourceArns']['thing'])
        crt_path = self.layout.crt_path(name)
        with open(crt_path, 'w') as f:
            f.write(response['CertificatePem'])
        logging.info(f"Saved certificate for {name} to {crt_path}")
        return crt_path

    def register(self, devices: List[Device], retries: int = DEFAULT_RETRIES,
                 interval: float = DEFAULT_INTERVAL) -> List[str]:
        """Provision every device in one batch; any failure aborts the batch"""
        if not devices:
            raise ValueError("No devices to register")

        self.layout.make_dirs()
        manifest = self.write_manifest(devices)
        self.upload_manifest(manifest)
        task_id = self.start_registration()

        task = self.wait_for_task(task_id, retries=retries, interval=interval)
        if task.get('failureCount'):
            for error in self.fetch_errors(task_id):
                logging.error(f"Registration error: {error}")
            raise RuntimeError(
                f"Registration task {task_id} reported {task['failureCount']} failure(s)"
            )

        return [self.save_certificate(record) for record in self.fetch_results(task_id)]


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description='Bulk register devices in AWS IoT')
    parser.add_argument('--config', help='Path to JSON config file')
    parser.add_argument('--devices', help='JSON file with [{"name": ..., "chip_id": ...}]')
    parser.add_argument('--cert-dir', default=DEFAULT_CERT_DIR,
                       help='Directory to store keys, CSRs and certificates')
    parser.add_argument('--retries', type=int, default=DEFAULT_RETRIES,
                       help='Status polls after the first before giving up')
    parser.add_argument('--interval', type=float, default=DEFAULT_INTERVAL,
                       help='Seconds between status polls')
    parser.add_argument('--log-file', help='Also write logs to this file')
    parser.add_argument('--verbose', action='store_true', help='Enable debug logs')

    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.log_file)

    try:
        config = ProvisioningConfig.load(args.config)
        devices = load_devices(args.devices) if args.devices else config.devices
        registrar = ThingRegistrar(config, CertLayout(args.cert_dir))
        certs = registrar.register(devices, retries=args.retries, interval=args.interval)
        logging.info(f"✅ Certificates in {registrar.layout.crt_dir}: {len(certs)} saved")
    except ClientError as e:
        logging.error(f"❌ AWS error: {e}")
        sys.exit(1)
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
