#!/usr/bin/env python3
"""
Main entry point for the AAAA filter proxy
UDP listener with optional TCP, signal driven operator console
"""

import argparse
import errno
import logging
import logging.handlers
import os
import sys

from twisted.internet import defer

from aaaa_filter.constants import (
    DNS_DEFAULT_PORT,
    DNS_QUERY_TIMEOUT,
    LOG_FILE_BACKUP_COUNT,
    LOG_FILE_MAX_BYTES,
    LOG_FORMAT,
    MAX_PORT_NUMBER,
    METRICS_DEFAULT_ADDRESS,
    METRICS_DEFAULT_PORT,
    MIN_PORT_NUMBER,
    SHUTDOWN_CONFIRM_WINDOW,
    STATS_QUEUE_SIZE,
    STATS_REPORT_SIZE,
    UPSTREAM_RETRY_DELAY,
)


def setup_logging(log_file=None, log_level="INFO", syslog=False):
    """Setup logging configuration"""
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file and log_file.lower() != "none":
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir and not os.path.exists(log_dir):
                os.makedirs(log_dir, mode=0o755)

            file_handler = logging.handlers.RotatingFileHandler(
                log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUP_COUNT
            )
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            print(f"Warning: Could not setup file logging to {log_file}: {e}")

    if syslog:
        try:
            syslog_handler = logging.handlers.SysLogHandler(address="/dev/log")
            syslog_handler.setFormatter(
                logging.Formatter("aaaa-filter[%(process)d]: %(levelname)s - %(message)s")
            )
            root_logger.addHandler(syslog_handler)
        except OSError as e:
            print(f"Warning: Could not setup syslog: {e}")


def _validate_port(value):
    """Validate port number is in valid range"""
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid port number: {value}")
    if port < MIN_PORT_NUMBER or port > MAX_PORT_NUMBER:
        raise argparse.ArgumentTypeError(
            f"Port must be between {MIN_PORT_NUMBER} and {MAX_PORT_NUMBER}"
        )
    return port


def _parse_arguments(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Forwarding DNS proxy that suppresses AAAA answers for selected domains.",
        epilog="Send SIGUSR1 for a status line, SIGUSR2 for the ranked domain report. "
        "SIGINT/SIGTERM must be sent twice within the confirmation window to stop.",
    )
    parser.add_argument(
        "-c", "--config", default="/etc/aaaa-filter/aaaa-filter.cfg", help="Configuration file path"
    )
    parser.add_argument("-l", "--logfile", help="Log file path (overrides config)")
    parser.add_argument(
        "-L", "--loglevel", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level"
    )
    parser.add_argument("-p", "--port", type=_validate_port, help="Listen port (overrides config)")
    parser.add_argument("-a", "--address", help="Listen address (overrides config)")
    parser.add_argument(
        "-u",
        "--upstream",
        help="Upstream DNS server (overrides config). "
        "Format: IP[:port] or [IPv6]:port. Examples: 10.10.10.1, 10.10.10.1:53",
    )
    parser.add_argument(
        "-f",
        "--filter-domain",
        action="append",
        help="Domain whose AAAA queries are suppressed (repeatable, overrides config)",
    )
    parser.add_argument("--tcp", action="store_true", help="Also listen on TCP")
    parser.add_argument("-v", "--version", action="store_true", help="Show version")
    parser.add_argument("--pidfile", help="PID file path")

    return parser.parse_args(argv)


def _handle_version_check(args):
    """Handle version check and exit if requested"""
    if args.version:
        from aaaa_filter import __version__

        print(f"AAAA Filter Proxy version {__version__}")
        sys.exit(0)


def _load_configuration(config_path):
    """Load configuration from file"""
    from aaaa_filter.config import FilterProxyConfig

    print(f"Loading configuration from: {config_path}")
    return FilterProxyConfig(config_path)


def _get_logging_config(config, args):
    """Get logging configuration from config and args"""
    log_file = args.logfile or config.get("log-file", "log-file")
    log_level = args.loglevel or config.get("log-file", "debug-level", "INFO")
    syslog = config.getboolean("log-file", "syslog", False)

    return log_file, log_level, syslog


def _get_proxy_config(config, args):
    """Get proxy configuration from config and args"""
    from aaaa_filter.config import normalize_domain, parse_server_spec

    listen_port = args.port or config.getint("aaaa-filter", "listen-port", DNS_DEFAULT_PORT)
    listen_address = args.address or config.get("aaaa-filter", "listen-address", "0.0.0.0")

    if args.upstream:
        upstream_server = parse_server_spec(args.upstream, DNS_DEFAULT_PORT)
    else:
        upstream_server = config.get_upstream_server()

    if args.filter_domain:
        filter_domains = tuple(dict.fromkeys(normalize_domain(d) for d in args.filter_domain))
    else:
        filter_domains = config.get_filter_domains()

    return {
        "listen_port": listen_port,
        "listen_address": listen_address,
        "enable_tcp": args.tcp or config.getboolean("aaaa-filter", "enable-tcp", False),
        "upstream_server": upstream_server,
        "upstream_timeout": config.getfloat("forwarder-dns", "timeout", DNS_QUERY_TIMEOUT),
        "retry_delay": config.getfloat("forwarder-dns", "retry-delay", UPSTREAM_RETRY_DELAY),
        "filter_domains": filter_domains,
        "queue_size": config.getint("stats", "queue-size", STATS_QUEUE_SIZE),
        "report_size": config.getint("stats", "report-size", STATS_REPORT_SIZE),
        "confirm_window": config.getfloat("console", "confirm-window", SHUTDOWN_CONFIRM_WINDOW),
        "user": config.get("aaaa-filter", "user", ""),
        "group": config.get("aaaa-filter", "group", ""),
        "pid_file": args.pidfile or config.get("aaaa-filter", "pid-file", ""),
        "metrics_enabled": config.getboolean("metrics", "enabled", False),
        "metrics_address": config.get("metrics", "listen-address", METRICS_DEFAULT_ADDRESS),
        "metrics_port": config.getint("metrics", "listen-port", METRICS_DEFAULT_PORT),
    }


def _validate_config(proxy_config, logger):
    """Validate configuration and log settings"""
    errors = []
    if proxy_config["upstream_timeout"] <= 0:
        errors.append("forwarder-dns timeout must be positive")
    if proxy_config["retry_delay"] < 0:
        errors.append("forwarder-dns retry-delay cannot be negative")
    if proxy_config["queue_size"] < 1:
        errors.append("stats queue-size must be at least 1")
    if proxy_config["confirm_window"] <= 0:
        errors.append("console confirm-window must be positive")
    for error in errors:
        logger.error(f"Invalid configuration: {error}")
    if errors:
        sys.exit(1)

    if not proxy_config["filter_domains"]:
        logger.warning("No filter domains configured, every query will be forwarded")

    host, port = proxy_config["upstream_server"]
    logger.info("Configuration loaded:")
    logger.info(f"  Listen: {proxy_config['listen_address']}:{proxy_config['listen_port']}")
    logger.info(f"  TCP: {'enabled' if proxy_config['enable_tcp'] else 'disabled'}")
    logger.info(f"  Upstream server: {host}:{port}")
    logger.info(f"  AAAA filtered domains: {', '.join(proxy_config['filter_domains']) or 'none'}")
    logger.info(f"  Shutdown confirmation window: {proxy_config['confirm_window']:g}s")


def _initialize_components(proxy_config):
    """Build the stats collector, metrics and query dispatcher"""
    from aaaa_filter.metrics import MetricsCollector
    from aaaa_filter.resolver import AAAAFilter, QueryDispatcher, RecursionForwarder
    from aaaa_filter.stats import StatsCollector

    collector = StatsCollector(queue_size=proxy_config["queue_size"])
    metrics = MetricsCollector(enabled=proxy_config["metrics_enabled"])

    host, port = proxy_config["upstream_server"]
    forwarder = RecursionForwarder(
        host,
        port,
        stats=collector,
        metrics=metrics,
        timeout=proxy_config["upstream_timeout"],
        retry_delay=proxy_config["retry_delay"],
    )
    aaaa_filter = AAAAFilter(forwarder, stats=collector, metrics=metrics)
    dispatcher = QueryDispatcher(
        proxy_config["filter_domains"], aaaa_filter, forwarder, metrics=metrics
    )

    return collector, metrics, dispatcher


def _handle_bind_error(error, port, address, logger):
    """Log a port binding error with a hint and exit"""
    socket_error = getattr(error, "socketError", error)
    error_code = getattr(socket_error, "errno", None)
    error_msg = str(error)

    if error_code == errno.EADDRINUSE or "Address already in use" in error_msg:
        logger.error(f"Port {port} is already in use on {address}")
        logger.error("Please check if another instance is running or use a different port")
    elif error_code == errno.EACCES or "Permission denied" in error_msg:
        logger.error(f"Permission denied to bind to port {port}")
        if port < 1024:
            logger.error("Ports below 1024 require root privileges")
    else:
        logger.error(f"Failed to bind to {address}:{port}: {error}")

    sys.exit(1)


def _bind_servers(reactor, proxy_config, dispatcher, logger):
    """Bind the UDP listener and, when enabled, the TCP listener"""
    from twisted.internet.error import CannotListenError

    from aaaa_filter.resolver import DNSProxyProtocol, DNSTCPFactory

    listen_port = proxy_config["listen_port"]
    listen_address = proxy_config["listen_address"]
    ports = []

    try:
        udp_port = reactor.listenUDP(
            listen_port, DNSProxyProtocol(dispatcher), interface=listen_address
        )
        ports.append(udp_port)

        # Port 0 picks a free port; TCP has to share it
        actual_port = udp_port.getHost().port
        logger.info(f"UDP server listening on {listen_address}:{actual_port}")

        if proxy_config["enable_tcp"]:
            tcp_port = reactor.listenTCP(
                actual_port, DNSTCPFactory(dispatcher), interface=listen_address
            )
            ports.append(tcp_port)
            logger.info(f"TCP server listening on {listen_address}:{actual_port}")

        if listen_port == 0:
            print(f"ACTUAL_PORT={actual_port}")
    except (CannotListenError, OSError) as e:
        _handle_bind_error(e, listen_port, listen_address, logger)

    return ports


def _drop_privileges(proxy_config, logger):
    """Write the PID file and give up root once the sockets are bound"""
    from aaaa_filter.daemon import DaemonError, create_pid_file, drop_privileges

    if proxy_config["pid_file"]:
        try:
            create_pid_file(proxy_config["pid_file"])
        except DaemonError as e:
            logger.warning(f"Could not create PID file: {e}")

    user, group = proxy_config["user"], proxy_config["group"]
    if user and group:
        try:
            drop_privileges(user, group)
        except DaemonError as e:
            logger.error(str(e))
            sys.exit(1)


def _shutdown(reactor, ports, collector, metrics, metrics_server, logger):
    """Stop listening, drain the stats queue and stop the reactor"""
    logger.info("Stopping listeners")
    stopping = [defer.maybeDeferred(port.stopListening) for port in ports]

    def finish(_):
        collector.stop()
        metrics.stop()
        if metrics_server is not None:
            metrics_server.stop()
        reactor.stop()

    d = defer.DeferredList(stopping, consumeErrors=True)
    d.addCallback(finish)
    return d


def start_proxy(proxy_config, logger):
    """Bind, start the collector and console, and run the reactor"""
    from twisted.internet import reactor
    from twisted.internet.error import CannotListenError

    from aaaa_filter.console import OperatorConsole
    from aaaa_filter.daemon import remove_pid_file
    from aaaa_filter.metrics import MetricsServer

    collector, metrics, dispatcher = _initialize_components(proxy_config)

    ports = _bind_servers(reactor, proxy_config, dispatcher, logger)

    metrics_server = None
    if metrics.enabled:
        metrics_server = MetricsServer(
            metrics, proxy_config["metrics_address"], proxy_config["metrics_port"]
        )
        try:
            metrics_server.start(reactor)
        except (CannotListenError, OSError) as e:
            _handle_bind_error(
                e, proxy_config["metrics_port"], proxy_config["metrics_address"], logger
            )
        reactor.callWhenRunning(metrics.start_updates, lambda: collector.pending)

    _drop_privileges(proxy_config, logger)

    collector.start()

    console = OperatorConsole(
        collector,
        lambda: _shutdown(reactor, ports, collector, metrics, metrics_server, logger),
        confirm_window=proxy_config["confirm_window"],
        report_size=proxy_config["report_size"],
    )
    console.install_signal_handlers(reactor)

    logger.info("AAAA filter proxy started")
    # Our own handlers own SIGINT/SIGTERM, Twisted's would stop on the first one
    reactor.run(installSignalHandlers=False)

    collector.stop()
    if proxy_config["pid_file"]:
        remove_pid_file(proxy_config["pid_file"])
    logger.info("AAAA filter proxy stopped")


def main(argv=None):
    """Main entry point"""
    args = _parse_arguments(argv)

    _handle_version_check(args)

    config = _load_configuration(args.config)

    log_file, log_level, syslog = _get_logging_config(config, args)
    setup_logging(log_file, log_level, syslog)
    logger = logging.getLogger("aaaa_filter")

    logger.info("Starting AAAA filter proxy")

    proxy_config = _get_proxy_config(config, args)
    _validate_config(proxy_config, logger)

    try:
        start_proxy(proxy_config, logger)
    except Exception:
        logger.exception("Fatal error in AAAA filter proxy")
        sys.exit(1)


if __name__ == "__main__":
    main()
