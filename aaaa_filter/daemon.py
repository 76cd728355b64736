import grp
import logging
import os
import pwd

logger = logging.getLogger(__name__)


class DaemonError(Exception):
    """Process management step failed"""

    pass


def drop_privileges(user: str, group: str):
    """Switch to user/group once the privileged port is bound"""
    if os.getuid() != 0:
        logger.info("Not running as root, skipping privilege drop")
        return

    try:
        user_info = pwd.getpwnam(user)
        group_info = grp.getgrnam(group)
    except KeyError as e:
        raise DaemonError(f"User or group not found: {e}")

    try:
        # Group first, setgid is not permitted after giving up root
        os.setgroups([])
        os.setgid(group_info.gr_gid)
        os.setuid(user_info.pw_uid)
    except OSError as e:
        raise DaemonError(f"Failed to drop privileges to {user}:{group}: {e}")

    logger.info(f"Dropped privileges to {user}:{group}")


def create_pid_file(pid_file: str):
    """Write the current PID, creating the directory if needed"""
    pid_dir = os.path.dirname(pid_file)
    try:
        if pid_dir and not os.path.exists(pid_dir):
            os.makedirs(pid_dir, mode=0o755)
            logger.info(f"Created PID directory: {pid_dir}")

        with open(pid_file, "w") as f:
            f.write(f"{os.getpid()}\n")
    except OSError as e:
        raise DaemonError(f"Failed to create PID file {pid_file}: {e}")

    logger.info(f"PID file created: {pid_file}")


def remove_pid_file(pid_file: str):
    """Remove the PID file if it still belongs to this process"""
    try:
        with open(pid_file) as f:
            owner = f.read().strip()
    except FileNotFoundError:
        return
    except OSError as e:
        logger.error(f"Failed to read PID file {pid_file}: {e}")
        return

    if owner != str(os.getpid()):
        logger.warning(f"PID file {pid_file} belongs to process {owner}, leaving it")
        return

    try:
        os.unlink(pid_file)
        logger.info(f"PID file removed: {pid_file}")
    except OSError as e:
        logger.error(f"Failed to remove PID file {pid_file}: {e}")
