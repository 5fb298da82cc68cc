# src/tools/base.py
from abc import ABC, abstractmethod
from urllib.parse import urlparse


class SecretScanner(ABC):
    @abstractmethod
    def scan(self, target: str) -> dict:
        """
        Scan a repository URL and return a report. Raises ScanExecutionError on failure.
        """

    @abstractmethod
    def supported_detectors(self) -> list:
        pass

    def scanner_info(self) -> dict:
        return {"version": "unknown", "supported_detectors": self.supported_detectors()}

    def validate_target_url(self, target: str) -> bool:
        if not isinstance(target, str) or not target or any(c.isspace() for c in target):
            return False
        try:
            parsed = urlparse(target)
            hostname = parsed.hostname
        except ValueError:
            return False
        return parsed.scheme in ("http", "https") and bool(hostname)
