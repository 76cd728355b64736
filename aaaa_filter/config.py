import configparser
import logging
import os
import sys
from typing import Any, Optional, Tuple

from aaaa_filter.constants import (
    DEFAULT_FILTER_DOMAINS,
    DEFAULT_UPSTREAM_ADDRESS,
    DNS_DEFAULT_PORT,
)

logger = logging.getLogger(__name__)


def normalize_domain(name: str) -> str:
    """Return the lower-case, trailing-dot form of a domain name"""
    name = name.strip().lower()
    if not name.endswith("."):
        name += "."
    return name


def parse_server_spec(server_spec: str, default_port: int = DNS_DEFAULT_PORT) -> Tuple[str, int]:
    """Parse a server specification into a (host, port) tuple

    Accepted forms:
    - IPv4 or hostname: "10.10.10.1"
    - With port: "10.10.10.1:5353"
    - IPv6: "[2001:db8::1]"
    - IPv6 with port: "[2001:db8::1]:53"
    - Bare IPv6 without brackets: "2001:db8::1"
    """
    server_spec = server_spec.strip()

    # IPv6 with port: [2001:db8::1]:53
    if server_spec.startswith("[") and "]:" in server_spec:
        bracket_end = server_spec.index("]")
        host = server_spec[1:bracket_end]
        port_str = server_spec[bracket_end + 2 :]
    # IPv6 without port: [2001:db8::1]
    elif server_spec.startswith("[") and server_spec.endswith("]"):
        return server_spec[1:-1], default_port
    # Host with port, but only when there is exactly one colon
    elif server_spec.count(":") == 1:
        host, port_str = server_spec.rsplit(":", 1)
    else:
        return server_spec, default_port

    try:
        port = int(port_str)
    except ValueError:
        logger.warning(f"Invalid port '{port_str}' for server '{host}', using default {default_port}")
        port = default_port
    return host, port


class FilterProxyConfig:
    """Configuration manager for the AAAA filter proxy"""

    DEFAULT_CONFIG_PATH = "/etc/aaaa-filter/aaaa-filter.cfg"
    DEFAULT_CONFIG = {
        "aaaa-filter": {
            "listen-port": str(DNS_DEFAULT_PORT),
            "listen-address": "0.0.0.0",
            "enable-tcp": "false",
            "user": "",
            "group": "",
            "pid-file": "",
        },
        "forwarder-dns": {
            "server-address": DEFAULT_UPSTREAM_ADDRESS,
            "server-port": str(DNS_DEFAULT_PORT),
            "timeout": "5.0",
            "retry-delay": "0.01",
        },
        "filter": {
            "domains": ", ".join(DEFAULT_FILTER_DOMAINS),
        },
        "stats": {
            "queue-size": "10",
            "report-size": "10",
        },
        "console": {
            "confirm-window": "30",
        },
        "log-file": {
            "log-file": "none",
            "debug-level": "INFO",
            "syslog": "false",
        },
        "metrics": {
            "enabled": "false",
            "listen-address": "127.0.0.1",
            "listen-port": "9090",
        },
    }

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self.DEFAULT_CONFIG_PATH
        self.config = configparser.ConfigParser()
        self._load_defaults()
        self._load_config()

    def _load_defaults(self):
        """Load default configuration"""
        for section, options in self.DEFAULT_CONFIG.items():
            self.config.add_section(section)
            for key, value in options.items():
                self.config.set(section, key, value)

    def _load_config(self):
        """Load configuration from file"""
        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, encoding="utf-8") as f:
                    self.config.read_file(f)
            except (OSError, UnicodeDecodeError, configparser.Error) as e:
                print(f"Error reading config file {self.config_path}: {e}", file=sys.stderr)
                sys.exit(1)
        else:
            print(f"Warning: Config file {self.config_path} not found, using defaults")

    def get(self, section: str, option: str, fallback: Any = None) -> str:
        """Get configuration value"""
        try:
            return self.config.get(section, option)
        except (configparser.NoSectionError, configparser.NoOptionError):
            return fallback

    def getint(self, section: str, option: str, fallback: int = 0) -> int:
        """Get integer configuration value"""
        try:
            return self.config.getint(section, option)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return fallback

    def getfloat(self, section: str, option: str, fallback: float = 0.0) -> float:
        """Get float configuration value"""
        try:
            return self.config.getfloat(section, option)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return fallback

    def getboolean(self, section: str, option: str, fallback: bool = False) -> bool:
        """Get boolean configuration value"""
        try:
            return self.config.getboolean(section, option)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return fallback

    def get_upstream_server(self) -> Tuple[str, int]:
        """Get the upstream resolver as a (host, port) tuple

        server-address may carry its own port ("10.10.10.1:53" or
        "[2001:db8::1]:53"); otherwise server-port applies.
        """
        default_port = self.getint("forwarder-dns", "server-port", DNS_DEFAULT_PORT)
        server_address = self.get("forwarder-dns", "server-address", DEFAULT_UPSTREAM_ADDRESS)
        if not server_address or not server_address.strip():
            server_address = DEFAULT_UPSTREAM_ADDRESS
        return parse_server_spec(server_address, default_port)

    def get_filter_domains(self) -> Tuple[str, ...]:
        """Get the ordered set of domains whose AAAA queries are suppressed"""
        raw = self.get("filter", "domains", "")
        domains = []
        for entry in raw.replace("\n", ",").split(","):
            if not entry.strip():
                continue
            domain = normalize_domain(entry)
            if domain not in domains:
                domains.append(domain)
        return tuple(domains)
