# src/tools/trufflehog_adapter.py
"""
TruffleHogAdapter: runs the TruffleHog image through the docker SDK against a remote git repository.
"""
import json
import logging
import time

import docker
import requests
from docker.errors import DockerException

from engine.config import SCAN_TIMEOUT_SECONDS, TRUFFLEHOG_IMAGE
from engine.errors import ScanExecutionError
from utils.report_utils import build_report
from .base import SecretScanner

SUPPORTED_DETECTORS = [
    'AWS', 'Azure', 'GCP', 'GitHub', 'GitLab', 'Slack', 'Stripe',
    'Docker', 'NPM', 'PyPI', 'Mailgun', 'SendGrid', 'Twilio',
    'Generic', 'PrivateKey', 'JWT', 'Database', 'URI',
]


class TruffleHogAdapter(SecretScanner):
    def __init__(self, image: str = TRUFFLEHOG_IMAGE, timeout: int = SCAN_TIMEOUT_SECONDS, docker_client=None):
        self.image = image
        self.timeout = timeout
        self._docker_client = docker_client

    @property
    def docker_client(self):
        # connect lazily so the API can start without a docker daemon
        if self._docker_client is None:
            try:
                self._docker_client = docker.from_env()
            except DockerException as e:
                raise ScanExecutionError(f"Docker is not available: {e}") from e
        return self._docker_client

    def scan(self, target: str) -> dict:
        started = time.monotonic()
        logging.info(f"Starting TruffleHog scan for repository: {target}")
        exit_code, stdout, stderr = self._run(["git", target, "--json", "--no-update"], self.timeout)
        if exit_code != 0:
            detail = stderr.strip()[-500:] or "no output"
            raise ScanExecutionError(f"TruffleHog exited with status {exit_code}: {detail}")
        report = self.parse_output(stdout)
        report["summary"]["scan_duration"] = int(round(time.monotonic() - started))
        logging.info(
            f"TruffleHog scan completed for {target}. Found {report['summary']['total_findings']} "
            f"findings ({report['summary']['verified_findings']} verified) "
            f"in {report['summary']['scan_duration']}s"
        )
        return report

    def supported_detectors(self) -> list:
        return list(SUPPORTED_DETECTORS)

    def scanner_info(self) -> dict:
        info = {"image": self.image, "version": "unknown", "supported_detectors": self.supported_detectors()}
        try:
            exit_code, stdout, stderr = self._run(["--version"], 10)
        except ScanExecutionError as e:
            logging.warning(f"Failed to get scanner info: {e}")
            return info
        version = (stdout.strip() or stderr.strip())
        if exit_code == 0 and version:
            info["version"] = version.splitlines()[-1]
        return info

    @staticmethod
    def parse_output(output: str) -> dict:
        """
        Turn TruffleHog's line-delimited JSON into a report. Lines that are not findings are skipped.
        """
        findings = []
        files = set()
        commits = set()
        for line in output.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except ValueError:
                logging.warning(f"Failed to parse TruffleHog line: {line[:200]}")
                continue
            if not isinstance(record, dict) or not record.get("Raw") or not record.get("DetectorName"):
                continue
            git = ((record.get("SourceMetadata") or {}).get("Data") or {}).get("Git") or {}
            findings.append({
                "detector_type": str(record.get("DetectorName") or record.get("DetectorType")),
                "detector_name": record.get("DetectorName"),
                "decoder_name": record.get("DecoderName"),
                "verified": bool(record.get("Verified", False)),
                "raw": record.get("Raw"),
                "redacted": record.get("Redacted"),
                "extra_data": record.get("ExtraData"),
                "source": {
                    "commit": git.get("commit", ""),
                    "file": git.get("file", ""),
                    "email": git.get("email", ""),
                    "repository": git.get("repository", ""),
                    "timestamp": git.get("timestamp", ""),
                    "line": git.get("line", 0),
                    "visibility": git.get("visibility"),
                },
            })
            if git.get("file"):
                files.add(git["file"])
            if git.get("commit"):
                commits.add(git["commit"])
        return build_report(findings, scanned_files=len(files), scanned_commits=len(commits))

    def _run(self, command, timeout):
        try:
            container = self.docker_client.containers.run(self.image, command, detach=True)
        except DockerException as e:
            raise ScanExecutionError(f"Failed to start TruffleHog container: {e}") from e
        try:
            try:
                outcome = container.wait(timeout=timeout)
            except requests.exceptions.RequestException as e:
                self._kill(container)
                raise ScanExecutionError(f"TruffleHog scan timed out after {timeout}s") from e
            stdout = container.logs(stdout=True, stderr=False).decode("utf-8", errors="replace")
            stderr = container.logs(stdout=False, stderr=True).decode("utf-8", errors="replace")
            return outcome.get("StatusCode", 1), stdout, stderr
        except DockerException as e:
            raise ScanExecutionError(f"TruffleHog container failed: {e}") from e
        finally:
            try:
                container.remove(force=True)
            except DockerException as e:
                logging.warning(f"Failed to remove TruffleHog container: {e}")

    @staticmethod
    def _kill(container):
        try:
            container.kill()
        except DockerException as e:
            logging.warning(f"Failed to kill timed out TruffleHog container: {e}")
