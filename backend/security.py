import ipaddress
import json
import logging
import os
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from anomaly import PortScanDetector
from knowledge import get_port_info
from schemas import (
    AlertTypeEnum,
    PortInfo,
    PortRecord,
    SecurityAlert,
    SeverityEnum,
    Whitelist,
)

logger = logging.getLogger(__name__)

ROOT_EQUIVALENT = {"root", "system", "nt authority\\system"}
LOOPBACK_NAMES = {"localhost"}


def is_loopback(address: Optional[str]) -> bool:
    if not address:
        return False
    if address in LOOPBACK_NAMES:
        return True
    try:
        return ipaddress.ip_address(address.split("%", 1)[0]).is_loopback
    except ValueError:
        return False


def has_real_process(record: PortRecord) -> bool:
    return bool(record.process_name) and record.process_name != "unknown" and not record.process_inferred


class WhitelistStore:
    """
    Ports and process names excluded from alerting, kept in a small JSON document:
        {"ports": [22, 443], "processes": ["sshd"]}
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.RLock()
        self._cache: Optional[Whitelist] = None

    def _read(self) -> Whitelist:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return Whitelist(**data)
        except FileNotFoundError:
            return Whitelist()
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring unreadable whitelist {self.path}: {e}")
            return Whitelist()

    def _write(self, whitelist: Whitelist) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(whitelist.model_dump(), indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    def load(self) -> Whitelist:
        with self._lock:
            if self._cache is None:
                self._cache = self._read()
            return self._cache.model_copy(deep=True)

    def save(self, whitelist: Whitelist) -> None:
        with self._lock:
            self._write(whitelist)
            self._cache = whitelist.model_copy(deep=True)

    def add(self, port: int, process: Optional[str] = None) -> Whitelist:
        with self._lock:
            whitelist = self.load()
            if port not in whitelist.ports:
                whitelist.ports.append(port)
            if process and process not in whitelist.processes:
                whitelist.processes.append(process)
            self.save(whitelist)
        logger.info(f"Whitelisted port {port}" + (f" and process {process}" if process else ""))
        return whitelist

    def remove(self, port: int) -> Whitelist:
        with self._lock:
            whitelist = self.load()
            whitelist.ports = [p for p in whitelist.ports if p != port]
            self.save(whitelist)
        logger.info(f"Removed port {port} from whitelist")
        return whitelist

    def remove_process(self, process: str) -> Whitelist:
        with self._lock:
            whitelist = self.load()
            whitelist.processes = [p for p in whitelist.processes if p != process]
            self.save(whitelist)
        return whitelist

    def invalidate(self) -> None:
        with self._lock:
            self._cache = None


@dataclass(frozen=True)
class ClassificationRule:
    alert_type: AlertTypeEnum
    severity: SeverityEnum
    applies: Callable[[PortRecord, PortInfo], bool]
    message: Callable[[PortRecord, PortInfo], str]
    recommendations: Sequence[str]


# Evaluated top to bottom, first match wins. The last rule always matches.
CLASSIFICATION_RULES: List[ClassificationRule] = [
    ClassificationRule(
        AlertTypeEnum.DANGEROUS_PORT, SeverityEnum.CRITICAL,
        lambda r, info: info.is_dangerous,
        lambda r, info: f"CRITICAL: Dangerous service {info.service} detected on port {r.port}",
        ["Close the port or block it at the firewall",
         "Replace the service with a secure alternative",
         "Check the host for signs of compromise"],
    ),
    ClassificationRule(
        AlertTypeEnum.UNKNOWN_PORT, SeverityEnum.MEDIUM,
        lambda r, info: not info.is_known,
        lambda r, info: f"Unknown service on port {r.port} ({r.protocol.value.upper()})",
        ["Identify the service listening on this port",
         "Close the port if it is not needed",
         "Whitelist the port if it is expected"],
    ),
    ClassificationRule(
        AlertTypeEnum.HIGH_RISK_SERVICE, SeverityEnum.HIGH,
        lambda r, info: info.risk == "high",
        lambda r, info: f"High-risk service {info.service} on port {r.port}",
        ["Restrict network access to trusted hosts",
         "Require strong authentication",
         "Keep the service patched"],
    ),
    ClassificationRule(
        AlertTypeEnum.DEV_SERVICE_EXPOSED, SeverityEnum.HIGH,
        lambda r, info: info.is_development and not is_loopback(r.address),
        lambda r, info: f"Development service {info.service} exposed to external connections on {r.address}:{r.port}",
        ["Bind the service to 127.0.0.1",
         "Block external access with firewall rules",
         "Do not run development servers in production"],
    ),
    ClassificationRule(
        AlertTypeEnum.PROCESS_MISMATCH, SeverityEnum.MEDIUM,
        lambda r, info: has_real_process(r) and not info.process_match,
        lambda r, info: f'Unexpected process "{r.process_name}" on {info.service} port {r.port}',
        ["Verify the process is legitimate",
         "Check the binary path and owner",
         "Look for port hijacking or a replaced service"],
    ),
    ClassificationRule(
        AlertTypeEnum.INFO, SeverityEnum.LOW,
        lambda r, info: True,
        lambda r, info: f"{info.service} service active on port {r.port}",
        ["No action required",
         "Review periodically whether the service is still needed"],
    ),
]


@dataclass(frozen=True)
class SuspiciousPattern:
    pattern: "re.Pattern"
    severity: SeverityEnum
    reason: str


SUSPICIOUS_PROCESS_PATTERNS = [
    SuspiciousPattern(re.compile(r"^(?:nc|ncat|netcat)(?:[.\-]\w+)?$|netcat", re.I), SeverityEnum.HIGH,
                      "Potential backdoor"),
    SuspiciousPattern(re.compile(r"miner|xmrig|cpuminer|ethminer", re.I), SeverityEnum.CRITICAL,
                      "Crypto miner detected"),
    SuspiciousPattern(re.compile(r"telnet|rlogind|rshd", re.I), SeverityEnum.MEDIUM,
                      "Insecure protocol"),
    SuspiciousPattern(re.compile(r"torrent|transmission", re.I), SeverityEnum.LOW,
                      "P2P activity"),
]

SUSPICIOUS_PROCESS_RECOMMENDATIONS = [
    "Investigate the process further",
    "Check for malware",
    "Monitor network traffic",
]

PRIVILEGE_RECOMMENDATIONS = [
    "Check process permissions",
    "Check for privilege escalation",
    "Analyze system security",
]


class SecurityAnalyzer:
    """
    Turns port records into security alerts. Owns the whitelist and the
    port-scan detector state.
    """

    def __init__(self, whitelist: WhitelistStore, detector: Optional[PortScanDetector] = None):
        self.whitelist = whitelist
        self.detector = detector or PortScanDetector()

    def _alert(self, record: PortRecord, info: PortInfo, alert_type, severity, message, recommendations):
        return SecurityAlert(
            type=alert_type,
            severity=severity,
            message=message,
            port=record.port,
            process=record.process_name or "unknown",
            address=record.address or "unknown",
            service=info.service,
            category=info.category,
            recommendations=list(recommendations),
            process_match=info.process_match,
            port_info=info,
        )

    def _classify(self, record: PortRecord) -> List[SecurityAlert]:
        info = get_port_info(record.port, record.protocol.value, record.process_name)
        alerts = []

        for rule in CLASSIFICATION_RULES:
            if rule.applies(record, info):
                alerts.append(self._alert(
                    record, info, rule.alert_type, rule.severity,
                    rule.message(record, info), rule.recommendations))
                break

        if has_real_process(record):
            for suspicious in SUSPICIOUS_PROCESS_PATTERNS:
                if suspicious.pattern.search(record.process_name):
                    alerts.append(self._alert(
                        record, info, AlertTypeEnum.SUSPICIOUS_PROCESS, suspicious.severity,
                        f"{suspicious.reason}: {record.process_name} on port {record.port}",
                        SUSPICIOUS_PROCESS_RECOMMENDATIONS))

        # Unknown owner: nothing to judge
        owner = record.user
        if record.port < 1024 and record.pid and owner and owner.lower() not in ROOT_EQUIVALENT:
            alerts.append(self._alert(
                record, info, AlertTypeEnum.PRIVILEGE_VIOLATION, SeverityEnum.HIGH,
                f"Non-root process {record.process_name} ({owner}) using privileged port {record.port}",
                PRIVILEGE_RECOMMENDATIONS))

        return alerts

    def classify(self, record: PortRecord, whitelist: Optional[Whitelist] = None) -> List[SecurityAlert]:
        """
        Alerts for one record; empty when its port or process is whitelisted.
        """
        whitelist = whitelist if whitelist is not None else self.whitelist.load()
        if record.port in whitelist.ports or record.process_name in whitelist.processes:
            return []

        try:
            return self._classify(record)
        except Exception:
            logger.exception(f"Failed to classify port {record.port}, using fallback alert")
            return [SecurityAlert(
                type=AlertTypeEnum.UNKNOWN_PORT,
                severity=SeverityEnum.MEDIUM,
                message=f"Unknown service on port {record.port}",
                port=record.port,
                process=record.process_name or "unknown",
                address=record.address or "unknown",
                recommendations=list(CLASSIFICATION_RULES[1].recommendations),
            )]

    def analyze(self, records: Sequence[PortRecord], detect_scan: bool = True) -> List[SecurityAlert]:
        whitelist = self.whitelist.load()
        alerts: List[SecurityAlert] = []

        for record in records:
            alerts.extend(self.classify(record, whitelist))

        if detect_scan:
            scan_alert = self.detector.observe(records)
            if scan_alert:
                alerts.append(scan_alert)

        return alerts
