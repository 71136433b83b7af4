"""
Static reference data about well-known ports: expected service, risk level and the
processes normally found listening on them.
"""
from typing import Dict, List, Optional

from schemas import PortInfo

COMMON_PORTS: Dict[int, dict] = {
    # Web
    80: {
        "service": "HTTP",
        "description": "Hypertext Transfer Protocol - unencrypted web traffic",
        "protocol": "tcp",
        "risk": "medium",
        "category": "web",
        "recommendations": [
            "Use HTTPS (port 443) instead of HTTP",
            "Put a web application firewall in front of the service",
            "Monitor for unusual requests",
        ],
        "common_processes": ["nginx", "apache2", "httpd", "lighttpd", "caddy"],
    },
    443: {
        "service": "HTTPS",
        "description": "HTTP Secure - encrypted web traffic",
        "protocol": "tcp",
        "risk": "low",
        "category": "web",
        "recommendations": [
            "Only allow strong TLS versions",
            "Use valid TLS certificates",
            "Enable HTTP Strict Transport Security (HSTS)",
        ],
        "common_processes": ["nginx", "apache2", "httpd", "caddy"],
    },
    8080: {
        "service": "HTTP-Alt",
        "description": "Alternative HTTP port, often used for development servers or proxies",
        "protocol": "tcp",
        "risk": "medium",
        "category": "web",
        "recommendations": [
            "Restrict access to the required addresses",
            "Require authentication",
            "Monitor for unauthorized access",
        ],
        "common_processes": ["tomcat", "jetty", "node", "python", "java"],
    },
    8000: {
        "service": "HTTP-Dev",
        "description": "Development HTTP server",
        "protocol": "tcp",
        "risk": "high",
        "category": "development",
        "recommendations": [
            "Use only for development",
            "Do not run in production environments",
            "Block external access with firewall rules",
        ],
        "common_processes": ["python", "node", "ruby", "php"],
    },
    # Remote access
    22: {
        "service": "SSH",
        "description": "Secure Shell - encrypted remote access and file transfer",
        "protocol": "tcp",
        "risk": "low",
        "category": "remote",
        "recommendations": [
            "Use key-based authentication",
            "Disable root login",
            "Install Fail2Ban or similar brute-force protection",
        ],
        "common_processes": ["sshd", "openssh-server", "dropbear"],
    },
    23: {
        "service": "Telnet",
        "description": "Telnet - INSECURE plaintext remote access",
        "protocol": "tcp",
        "risk": "critical",
        "category": "remote",
        "recommendations": [
            "Disable immediately and use SSH instead",
            "Change all passwords",
            "Check the network for signs of compromise",
        ],
        "common_processes": ["telnetd", "xinetd", "inetd"],
    },
    3389: {
        "service": "RDP",
        "description": "Remote Desktop Protocol",
        "protocol": "tcp",
        "risk": "high",
        "category": "remote",
        "recommendations": [
            "Only expose through a VPN",
            "Enable Network Level Authentication",
            "Use strong passwords",
            "Monitor login attempts",
        ],
        "common_processes": ["xrdp", "TermService", "rdp"],
    },
    # Databases
    3306: {
        "service": "MySQL",
        "description": "MySQL/MariaDB database",
        "protocol": "tcp",
        "risk": "high",
        "category": "database",
        "recommendations": [
            "Use strong passwords",
            "Restrict network access",
            "Enable TLS",
            "Apply security updates regularly",
        ],
        "common_processes": ["mysqld", "mariadbd", "mariadb"],
    },
    5432: {
        "service": "PostgreSQL",
        "description": "PostgreSQL database",
        "protocol": "tcp",
        "risk": "high",
        "category": "database",
        "recommendations": [
            "Harden pg_hba.conf",
            "Use TLS connections",
            "Restrict network access",
            "Enable logging",
        ],
        "common_processes": ["postgres", "postmaster"],
    },
    27017: {
        "service": "MongoDB",
        "description": "MongoDB NoSQL database",
        "protocol": "tcp",
        "risk": "high",
        "category": "database",
        "recommendations": [
            "Enable authentication",
            "Use TLS",
            "Restrict network access",
            "Take regular backups",
        ],
        "common_processes": ["mongod"],
    },
    6379: {
        "service": "Redis",
        "description": "Redis in-memory database/cache",
        "protocol": "tcp",
        "risk": "high",
        "category": "database",
        "recommendations": [
            "Enable authentication (requirepass)",
            "Bind to localhost only",
            "Use firewall rules",
            "Disable dangerous commands",
        ],
        "common_processes": ["redis-server"],
    },
    # Network services
    53: {
        "service": "DNS",
        "description": "Domain Name System",
        "protocol": "both",
        "risk": "medium",
        "category": "network",
        "recommendations": [
            "Restrict recursive queries",
            "Filter DNS traffic",
            "Watch for DNS tunneling",
            "Use DNS over HTTPS/TLS upstream",
        ],
        "common_processes": ["named", "dnsmasq", "systemd-resolve", "systemd-resolved", "unbound"],
    },
    161: {
        "service": "SNMP",
        "description": "Simple Network Management Protocol",
        "protocol": "udp",
        "risk": "high",
        "category": "network",
        "recommendations": [
            "Use SNMPv3 with encryption",
            "Change default community strings",
            "Restrict access with a firewall",
            "Monitor SNMP queries",
        ],
        "common_processes": ["snmpd"],
    },
    5353: {
        "service": "mDNS",
        "description": "Multicast DNS (Bonjour/Avahi)",
        "protocol": "udp",
        "risk": "low",
        "category": "network",
        "recommendations": [
            "Disable if not needed",
            "Restrict to local networks",
        ],
        "common_processes": ["avahi-daemon", "mDNSResponder"],
    },
    # File transfer
    21: {
        "service": "FTP",
        "description": "File Transfer Protocol - INSECURE",
        "protocol": "tcp",
        "risk": "high",
        "category": "file",
        "recommendations": [
            "Use SFTP or FTPS instead",
            "Restrict to internal networks",
            "Monitor file transfers",
            "Use strong authentication",
        ],
        "common_processes": ["vsftpd", "proftpd", "ftpd", "pure-ftpd"],
    },
    445: {
        "service": "SMB",
        "description": "Server Message Block - Windows file sharing",
        "protocol": "tcp",
        "risk": "critical",
        "category": "file",
        "recommendations": [
            "Block external access immediately",
            "Disable SMBv1",
            "Use strong authentication",
            "Monitor file shares",
        ],
        "common_processes": ["smbd", "System"],
    },
    # Mail
    25: {
        "service": "SMTP",
        "description": "Simple Mail Transfer Protocol",
        "protocol": "tcp",
        "risk": "medium",
        "category": "mail",
        "recommendations": [
            "Use STARTTLS",
            "Publish SPF/DKIM/DMARC records",
            "Watch for open relay abuse",
            "Require authentication",
        ],
        "common_processes": ["master", "postfix", "sendmail", "exim", "exim4"],
    },
    587: {
        "service": "SMTP-Submission",
        "description": "SMTP with authentication (submission)",
        "protocol": "tcp",
        "risk": "low",
        "category": "mail",
        "recommendations": [
            "Enforce STARTTLS",
            "Use strong authentication",
            "Rate-limit submissions",
        ],
        "common_processes": ["master", "postfix", "exim", "exim4"],
    },
    993: {
        "service": "IMAPS",
        "description": "IMAP over TLS - secure mail retrieval",
        "protocol": "tcp",
        "risk": "low",
        "category": "mail",
        "recommendations": [
            "Only allow strong TLS versions",
            "Enable two-factor authentication",
            "Monitor login attempts",
        ],
        "common_processes": ["dovecot", "imap-login", "courier-imap"],
    },
    # Development & monitoring
    3000: {
        "service": "Node.js Dev",
        "description": "Node.js development server",
        "protocol": "tcp",
        "risk": "medium",
        "category": "development",
        "recommendations": [
            "Use only for development",
            "Restrict network access",
            "Keep secrets in environment variables",
        ],
        "common_processes": ["node", "npm", "yarn"],
    },
    3001: {
        "service": "Grafana",
        "description": "Grafana dashboard",
        "protocol": "tcp",
        "risk": "medium",
        "category": "monitoring",
        "recommendations": [
            "Use a strong admin password",
            "Enable HTTPS",
            "Restrict dashboard access",
        ],
        "common_processes": ["grafana-server", "grafana"],
    },
    9090: {
        "service": "Prometheus",
        "description": "Prometheus monitoring",
        "protocol": "tcp",
        "risk": "medium",
        "category": "monitoring",
        "recommendations": [
            "Restrict access to the monitoring network",
            "Require authentication",
            "Review which metrics are exposed",
        ],
        "common_processes": ["prometheus"],
    },
    # Windows
    135: {
        "service": "MS-RPC",
        "description": "Microsoft RPC endpoint mapper",
        "protocol": "tcp",
        "risk": "critical",
        "category": "windows",
        "recommendations": [
            "Block external access",
            "Keep Windows updates current",
            "Monitor RPC traffic",
        ],
        "common_processes": ["svchost.exe"],
    },
}

DANGEROUS_PORTS = frozenset([23, 135, 139, 445, 1433, 1521, 2049, 3389, 5900, 5984, 6000, 8080, 8888, 9200])
DEVELOPMENT_PORTS = frozenset([3000, 3001, 4000, 5000, 8000, 8080, 8888, 9000])
DATABASE_PORTS = frozenset([1433, 1521, 3306, 5432, 6379, 27017, 28017])

# Last-resort process names when the socket table carries no owner
WELL_KNOWN_SERVICES: Dict[int, str] = {
    22: "ssh",
    53: "dns",
    80: "http",
    443: "https",
    631: "cups",
    3000: "node",
    3306: "mysql",
    5432: "postgresql",
    6379: "redis",
    8000: "http-alt",
    8080: "http-proxy",
    8888: "http-alt",
    27017: "mongodb",
}


def identify_port_service(port: int) -> Optional[str]:
    return WELL_KNOWN_SERVICES.get(port)


def process_matches(process: Optional[str], common_processes: List[str]) -> bool:
    if not process:
        return False
    name = process.lower()
    return any(p.lower() in name for p in common_processes)


def get_port_info(port: int, protocol: str = "tcp", process: Optional[str] = None) -> PortInfo:
    """
    Look up a port in the knowledge table. Unknown ports get a synthesized entry
    whose risk depends on the port range.
    """
    entry = COMMON_PORTS.get(port)
    if entry:
        return PortInfo(
            **entry,
            is_known=True,
            is_dangerous=port in DANGEROUS_PORTS,
            is_development=port in DEVELOPMENT_PORTS,
            is_database=port in DATABASE_PORTS,
            process_match=process_matches(process, entry["common_processes"]),
        )

    risk = "low"
    category = "unknown"
    recommendations = ["Identify the service", "Check whether the port is needed"]

    if port < 1024:
        risk = "medium"
        recommendations.append("System port - check privileged processes")
    if port >= 49152:
        category = "dynamic"
        recommendations.append("Dynamic port - likely a temporary listener")
    if port in DANGEROUS_PORTS:
        risk = "critical"
        recommendations.append("CRITICAL: known dangerous port")

    return PortInfo(
        service="Unknown",
        description=f"Unknown service on port {port}",
        protocol=protocol,
        risk=risk,
        category=category,
        recommendations=recommendations,
        is_known=False,
        is_dangerous=port in DANGEROUS_PORTS,
        is_development=port in DEVELOPMENT_PORTS,
        is_database=port in DATABASE_PORTS,
        process_match=False,
    )
