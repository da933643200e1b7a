"""Process helpers: privilege dropping, daemonizing, limits and usage text."""

from __future__ import annotations

import errno
import logging
import os
import sys

try:
    import pwd
except ImportError:  # pragma: no cover - platforms without a passwd database
    pwd = None  # type: ignore[assignment]

try:
    import resource
except ImportError:  # pragma: no cover - platforms without rlimits
    resource = None  # type: ignore[assignment]

VERSION = "2.5.6"
USING_CRYPTO = "python"

_log = logging.getLogger("ssrrelay")


class FatalError(Exception):
    """Raised for unrecoverable errors; the program should exit with status 255."""

    exit_code = 255


def fatal(msg: str) -> None:
    """Log ``msg`` as an error and raise :class:`FatalError`."""
    _log.error("%s", msg)
    raise FatalError(msg)


def is_numeric(s: str | None) -> bool:
    """Return true if ``s`` is a non-empty string of ASCII digits only."""
    if not s:
        return False
    return all(c in "0123456789" for c in s)


def run_as(user: str):
    """Switch the process to ``user`` (a name or a numeric uid).

    The group id and supplementary groups are changed before the user id.
    Returns the password entry that was switched to, or ``None`` when
    ``user`` is empty or the platform has no user database.  Raises
    ``KeyError`` for an unknown user and ``OSError`` when a change fails.
    """
    if not user or pwd is None:
        return None

    try:
        entry = pwd.getpwuid(int(user)) if is_numeric(user) else pwd.getpwnam(user)
    except (KeyError, OverflowError, ValueError):
        _log.error("run_as user '%s' could not be found.", user)
        raise KeyError(user) from None

    try:
        os.setgid(entry.pw_gid)
    except OSError as exc:
        _log.error(
            "Could not change group id to that of run_as user '%s': %s",
            entry.pw_name, exc.strerror,
        )
        raise
    try:
        os.initgroups(entry.pw_name, entry.pw_gid)
    except OSError:
        _log.error("Could not change supplementary groups for user '%s'.", entry.pw_name)
        raise
    try:
        os.setuid(entry.pw_uid)
    except OSError as exc:
        _log.error(
            "Could not change user id to that of run_as user '%s': %s",
            entry.pw_name, exc.strerror,
        )
        raise
    return entry


def daemonize(pid_path: str) -> int:
    """Detach the running process from its terminal.

    Writes the process id to ``pid_path``, starts a new session where that
    is allowed, clears the file mode mask, moves to ``/`` and points the
    standard streams at the null device.  Returns the process id written.
    A pid file that cannot be written is fatal; failing to change directory
    exits with status 1.
    """
    pid = os.getpid()
    try:
        with open(pid_path, "w", encoding="ascii") as handle:
            handle.write(str(pid))
    except OSError:
        fatal("Invalid pid file")

    os.umask(0)
    try:
        os.setsid()
    except OSError as exc:
        # Already a process group leader: the session cannot be changed.
        if exc.errno != errno.EPERM:
            raise SystemExit(1) from None
    try:
        os.chdir("/")
    except OSError:
        raise SystemExit(1) from None

    devnull = os.open(os.devnull, os.O_RDWR)
    for fd in (0, 1, 2):
        os.dup2(devnull, fd)
    if devnull > 2:
        os.close(devnull)
    return pid


def set_nofile(nofile: int) -> tuple[int, int]:
    """Set both the soft and hard limit on open files to ``nofile``.

    Returns the ``(soft, hard)`` pair that was applied.
    """
    if nofile <= 0:
        fatal("nofile must be greater than 0")
    if resource is None:
        raise OSError(errno.ENOSYS, "changing the open file limit is not supported")
    limits = (nofile, nofile)
    try:
        resource.setrlimit(resource.RLIMIT_NOFILE, limits)
    except (OSError, ValueError) as exc:
        code = getattr(exc, "errno", None)
        if code == errno.EPERM:
            _log.error("insufficient permission to change NOFILE, not starting as root?")
        elif code == errno.EINVAL or isinstance(exc, ValueError):
            _log.error("invalid nofile, decrease nofile and try again")
        else:
            _log.error("setrlimit failed: %s", exc)
        if isinstance(exc, ValueError):
            raise OSError(errno.EINVAL, str(exc)) from exc
        raise
    return limits


def usage(program: str = "ss-server") -> None:
    """Print the command-line help for ``program`` to standard output."""
    remote = program == "ss-server"
    local = program == "ss-local"
    tunnel = program == "ss-tunnel"
    redir = program == "ss-redir"
    manager = program == "ss-manager"
    linux = sys.platform.startswith("linux")

    lines = [
        "",
        f"shadowsocks-libev {VERSION} with {USING_CRYPTO}",
        "",
        "  usage:",
        "",
        f"    {program}",
        "",
        "       -s <server_host>           Host name or IP address of your remote server.",
        "       -p <server_port>           Port number of your remote server.",
        "       -l <local_port>            Port number of your local server.",
        "       -k <password>              Password of your remote server.",
        "       -m <encrypt_method>        Encrypt method: table, rc4, rc4-md5,",
        "                                  aes-128-cfb, aes-192-cfb, aes-256-cfb,",
        "                                  aes-128-ctr, aes-192-ctr, aes-256-ctr,",
        "                                  bf-cfb, camellia-128-cfb, camellia-192-cfb,",
        "                                  camellia-256-cfb, cast5-cfb, des-cfb,",
        "                                  idea-cfb, rc2-cfb, seed-cfb, salsa20,",
        "                                  chacha20 and chacha20-ietf.",
        "                                  The default cipher is rc4-md5.",
        "",
        "       [-a <user>]                Run as another user.",
        "       [-f <pid_file>]            The file path to store pid.",
        "       [-t <timeout>]             Socket timeout in seconds.",
        "       [-c <config_file>]         The path to config file.",
    ]
    if resource is not None:
        lines.append("       [-n <number>]              Max number of open files.")
    if not redir:
        lines.append("       [-i <interface>]           Network interface to bind.")
    lines += [
        "       [-b <local_address>]       Local address to bind.",
        "",
        "       [-u]                       Enable UDP relay.",
    ]
    if redir:
        lines.append("                                  TPROXY is required in redir mode.")
    lines += [
        "       [-U]                       Enable UDP relay and disable TCP relay.",
        "       [-A]                       Enable onetime authentication.",
    ]
    if remote:
        lines.append("       [-6]                       Resovle hostname to IPv6 address first.")
    lines.append("")
    if tunnel:
        lines += [
            "       [-L <addr>:<port>]         Destination server address and port",
            "                                  for local port forwarding.",
        ]
    if remote:
        lines.append("       [-d <addr>]                Name servers for internal DNS resolver.")
    if remote or local:
        lines += [
            "       [--fast-open]              Enable TCP fast open.",
            "                                  with Linux kernel > 3.7.0.",
            "       [--acl <acl_file>]         Path to ACL (Access Control List).",
        ]
    if remote or manager:
        lines.append("       [--manager-address <addr>] UNIX domain socket address.")
    if manager:
        lines.append("       [--executable <path>]      Path to the executable of ss-server.")
    lines.append("       [--mtu <MTU>]              MTU of your network interface.")
    if linux:
        lines.append("       [--mptcp]                  Enable Multipath TCP on MPTCP Kernel.")
        if remote:
            lines.append("       [--firewall]               Setup firewall rules for auto blocking.")
    lines += [
        "",
        "       [-v]                       Verbose mode.",
        "       [-h, --help]               Print this message.",
        "",
    ]
    print("\n".join(lines))