# aaaa_filter/constants.py
# Version: 1.0.0
# All hardcoded values in one place for easy configuration

"""
AAAA Filter Proxy Constants

Defaults for every tunable value live here so they are visible in one place.
Configuration file values override most of them at runtime.
"""

# =============================================================================
# DNS PROTOCOL CONSTANTS
# =============================================================================
DNS_DEFAULT_PORT = 53
DNS_UDP_MAX_SIZE = 512  # RFC 1035 standard UDP DNS message size
DNS_TCP_MAX_SIZE = 65535  # Maximum TCP DNS message size
MIN_DNS_PACKET_SIZE = 12  # Header only
MAX_DNS_QUESTIONS = 1  # Every real resolver sends exactly one question

# =============================================================================
# UPSTREAM FORWARDING
# =============================================================================
DEFAULT_UPSTREAM_ADDRESS = "10.10.10.1"
DNS_QUERY_TIMEOUT = 5.0  # Seconds to wait for a single upstream attempt
UPSTREAM_RETRY_DELAY = 0.01  # Fixed backoff before the one retry
UPSTREAM_MAX_ATTEMPTS = 2

# =============================================================================
# FILTERING
# =============================================================================
DEFAULT_FILTER_DOMAINS = ("youtube.com.", "googlevideo.com.")

# =============================================================================
# STATISTICS
# =============================================================================
STATS_QUEUE_SIZE = 10  # Producers block once this many events are pending
STATS_REPORT_SIZE = 10  # Domains shown in the ranked report
STATS_UNKNOWN_ROOT = ""  # Bucket for names with fewer than two labels

# =============================================================================
# OPERATOR CONSOLE
# =============================================================================
SHUTDOWN_CONFIRM_WINDOW = 30.0  # Seconds to repeat a termination signal

# =============================================================================
# METRICS
# =============================================================================
METRICS_DEFAULT_ADDRESS = "127.0.0.1"
METRICS_DEFAULT_PORT = 9090
METRICS_UPTIME_INTERVAL = 60  # Seconds between uptime gauge refreshes

# =============================================================================
# LOGGING
# =============================================================================
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 5

# =============================================================================
# PORT VALIDATION
# =============================================================================
MIN_PORT_NUMBER = 1
MAX_PORT_NUMBER = 65535
