#!/usr/bin/env python3
"""
Provision a Dante SOCKS server whose access list permits exactly a set of client IPv4 addresses/CIDRs.

- Parses -a/-r comma-separated IPv4/CIDR tokens, normalizes bare hosts to /32
- Recovers the current allow-list from the existing danted.conf ("client pass" blocks)
- Reconciles adds/removes idempotently; never leaves an empty allow-list
- Renders a complete danted.conf: directives, client pass/block rules, socks pass/block rules
- Installs dante-server, detects the egress interface, backs up the old config,
  writes the new one in place and restarts the service
- With --dry-run: logs host actions instead of running them and prints the config to stdout
"""

import argparse
import logging
import os
import re
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple, Union

# ---------------- Defaults ----------------
DEFAULT_PORT        = 1080
DEFAULT_CONFIG_PATH = "/etc/danted.conf"
DEFAULT_PACKAGE     = "dante-server"
DEFAULT_SERVICE     = "danted"
LISTEN_ADDRESS      = "0.0.0.0"
ANY_NETWORK         = "0.0.0.0/0"
LOG_OUTPUT          = "syslog"
PRIVILEGED_USER     = "root"
UNPRIVILEGED_USER   = "nobody"
LIBWRAP_USER        = "nobody"
LOG_PASS            = "connect disconnect error"
LOG_BLOCK           = "connect error"
PASS_PROTOCOLS      = "tcp udp"
COMMAND_TIMEOUT     = 60
INSTALL_TIMEOUT     = 900  # apt-get on a cold cache

AddressSpec = str
AllowList = Tuple[AddressSpec, ...]

logger = logging.getLogger('danted-allowlist')

# ---------------- Regexes ----------------
ADDRESS_TOKEN = re.compile(r'^([0-9]{1,3}(?:\.[0-9]{1,3}){3})(?:/(3[0-2]|[12]?[0-9]))?\Z')
RULE_OPEN     = re.compile(r'^\s*(?:(client|socks)\s+)?(pass|block)\s*\{\s*$')
RULE_CLOSE    = re.compile(r'^\s*\}\s*$')
FIELD         = re.compile(r'^\s*([A-Za-z][\w.-]*)\s*:\s*(.*?)\s*$')
PORT_TOKEN    = re.compile(r'^[0-9]+\Z')

# ---------------- Errors ----------------
class DanteSetupError(Exception):
    """Fatal error; the run aborts with ``exit_code``."""
    exit_code = 1

class InvalidAddress(DanteSetupError):
    """ a client token is not a valid IPv4 address or CIDR block """

    def __init__(self, token: str, reason: str = "Invalid IPv4 or CIDR block"):
        super().__init__(f"{reason}: {token}")
        self.token = token

class InvalidPort(DanteSetupError):
    """ the listen port is not an integer in 1..65535 """

class NoAllowListEntries(DanteSetupError):
    """ no prior allow-list and nothing to add """

class AllowListWouldBeEmpty(DanteSetupError):
    """ removals would leave no permitted clients """

class UsageError(DanteSetupError):
    """ bad command line """

class MissingOptionArgument(UsageError):
    """ an option was given without its value """

class UnknownOption(UsageError):
    """ an option (or stray argument) was not recognized """

class HostError(DanteSetupError):
    """ a host-side action failed """
    exit_code = 2

# ---------------- Address validation ----------------
def parse_address(tok: str) -> AddressSpec:
    """Return 'A.B.C.D/N' for 'A.B.C.D' or 'A.B.C.D/N' (host -> /32); raise InvalidAddress otherwise."""
    m = ADDRESS_TOKEN.match(tok)
    if not m:
        raise InvalidAddress(tok)
    if any(int(octet) > 255 for octet in m.group(1).split('.')):
        raise InvalidAddress(tok, "Invalid IPv4 address octet in")
    return tok if m.group(2) is not None else f"{tok}/32"

def split_tokens(values: Iterable[str]) -> List[AddressSpec]:
    """Split each comma-separated option value and validate every non-empty token.

    The whole batch is validated before anything is returned, so one bad
    token rejects the lot.
    """
    specs = []
    for value in values:
        for tok in value.split(','):
            tok = tok.strip()
            if not tok:
                continue
            specs.append(parse_address(tok))
    return specs

def parse_port(value: Union[str, int]) -> int:
    s = str(value).strip()
    if not PORT_TOKEN.match(s) or not 1 <= int(s) <= 65535:
        raise InvalidPort(f"Invalid port: {value}. Must be an integer between 1 and 65535.")
    return int(s)

# ---------------- Config grammar ----------------
@dataclass(frozen=True)
class Directive:
    """Top-level ``key: value`` line."""
    key: str
    value: str

@dataclass(frozen=True)
class Rule:
    """A ``{ ... }`` rule block.

    scope is "client" (client-rules, evaluated at connection accept) or
    "socks" (socks-rules, bare ``pass``/``block`` in the file); verdict is
    "pass" or "block".
    """
    scope: str
    verdict: str
    fields: Tuple[Tuple[str, str], ...] = ()

    @property
    def opener(self) -> str:
        return f"client {self.verdict}" if self.scope == "client" else self.verdict

    @property
    def permits_clients(self) -> bool:
        return self.scope == "client" and self.verdict == "pass"

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        for k, v in self.fields:
            if k == key:
                return v
        return default

Block = Union[Directive, Rule]

def parse_config(text: str) -> List[Block]:
    """Split danted.conf text into directives and rule blocks.

    Comments, blank lines and anything outside the grammar are skipped.
    A block still open at end of file is kept with the fields seen so far.
    """
    blocks: List[Block] = []
    scope = verdict = None
    fields: List[Tuple[str, str]] = []

    for raw in text.splitlines():
        line = raw.split('#', 1)[0]
        if not line.strip():
            continue
        if verdict is None:
            m = RULE_OPEN.match(line)
            if m:
                scope, verdict, fields = m.group(1) or "socks", m.group(2), []
                continue
            m = FIELD.match(line)
            if m:
                blocks.append(Directive(m.group(1), m.group(2)))
            else:
                logger.debug("Ignoring unrecognized config line: %s", raw.strip())
            continue
        if RULE_CLOSE.match(line):
            blocks.append(Rule(scope, verdict, tuple(fields)))
            scope = verdict = None
            continue
        m = RULE_OPEN.match(line)
        if m:
            # missing '}': close the open block where the next one starts
            logger.debug("Unterminated '%s' block before: %s", Rule(scope, verdict).opener, raw.strip())
            blocks.append(Rule(scope, verdict, tuple(fields)))
            scope, verdict, fields = m.group(1) or "socks", m.group(2), []
            continue
        m = FIELD.match(line)
        if m:
            fields.append((m.group(1), m.group(2)))

    if verdict is not None:
        logger.debug("Unterminated '%s' block at end of config", Rule(scope, verdict).opener)
        blocks.append(Rule(scope, verdict, tuple(fields)))
    return blocks

def format_block(block: Block) -> List[str]:
    if isinstance(block, Directive):
        return [f"{block.key}: {block.value}"]
    lines = [f"{block.opener} {{"]
    lines += [f"    {k}: {v}" for k, v in block.fields]
    lines.append("}")
    return lines

# ---------------- Extraction ----------------
def read_config(path: Path) -> Optional[str]:
    """Return the artifact text, or None if there is no prior config."""
    if not path.is_file():
        return None
    try:
        with open(path, "r", encoding="utf-8", errors="ignore") as f:
            return f.read()
    except OSError as e:
        raise HostError(f"Failed to read {path}: {e}") from e

def extract_allow_list(text: Optional[str]) -> AllowList:
    """Recover the allow-list from every ``from:`` field of every ``client pass`` block."""
    if text is None:
        return ()
    found: List[AddressSpec] = []
    for block in parse_config(text):
        if not isinstance(block, Rule) or not block.permits_clients:
            continue
        for key, source in block.fields:
            if key != "from" or not source:
                continue
            tok = source.split()[0]
            try:
                spec = parse_address(tok)
            except InvalidAddress:
                logger.warning("Ignoring unsupported client entry in existing config: %s", tok)
                continue
            if spec not in found:
                found.append(spec)
    return tuple(found)

# ---------------- Reconciliation ----------------
def reconcile(current: Sequence[AddressSpec], to_add: Sequence[AddressSpec],
              to_remove: Sequence[AddressSpec]) -> AllowList:
    """Apply additions then removals to ``current`` and return the new allow-list.

    Existing order is kept and additions are appended in the order given.
    Already-present additions are absorbed; removing an absent entry only
    warns. Raises NoAllowListEntries when there is nothing to start from and
    AllowListWouldBeEmpty when the result would permit nobody.
    """
    if not current and not to_add:
        raise NoAllowListEntries(
            "No existing allow-list entries found. Use -a to specify at least one client IP/CIDR.")

    result = list(current)
    for spec in to_add:
        if spec not in result:
            result.append(spec)

    for spec in to_remove:
        if spec in result:
            result = [s for s in result if s != spec]
        else:
            logger.warning("Client %s not present in allow-list; skipping removal.", spec)

    if not result:
        raise AllowListWouldBeEmpty(
            "At least one allowed client IP/CIDR must remain after applying changes.")
    return tuple(result)

# ---------------- Renderer ----------------
def build_config(port: int, iface: str, allow_list: Sequence[AddressSpec]) -> List[Block]:
    """Blocks of a complete danted.conf; rules are first-match, so each deny follows its passes."""
    blocks: List[Block] = [
        Directive("logoutput", LOG_OUTPUT),
        Directive("internal", f"{LISTEN_ADDRESS} port = {port}"),
        Directive("external", iface),
        Directive("clientmethod", "none"),
        Directive("socksmethod", "none"),
        Directive("user.privileged", PRIVILEGED_USER),
        Directive("user.notprivileged", UNPRIVILEGED_USER),
        Directive("user.libwrap", LIBWRAP_USER),
    ]
    for cidr in allow_list:
        blocks.append(Rule("client", "pass", (("from", cidr), ("to", ANY_NETWORK), ("log", LOG_PASS))))
    blocks.append(Rule("client", "block", (("from", ANY_NETWORK), ("to", ANY_NETWORK), ("log", LOG_BLOCK))))
    for cidr in allow_list:
        blocks.append(Rule("socks", "pass", (("from", cidr), ("to", ANY_NETWORK),
                                             ("protocol", PASS_PROTOCOLS), ("log", LOG_PASS))))
    blocks.append(Rule("socks", "block", (("from", ANY_NETWORK), ("to", ANY_NETWORK), ("log", LOG_BLOCK))))
    return blocks

def render_config(port: int, iface: str, allow_list: Sequence[AddressSpec]) -> str:
    lines = []
    for block in build_config(port, iface, allow_list):
        lines += format_block(block)
    return "\n".join(lines) + "\n"

# ---------------- Host ----------------
def parse_default_interface(route_output: str) -> Optional[str]:
    """Return the device of the first 'default ... dev <iface>' route, if any."""
    for line in route_output.splitlines():
        fields = line.split()
        if fields and fields[0] == "default" and "dev" in fields:
            i = fields.index("dev")
            if i + 1 < len(fields):
                return fields[i + 1]
    return None

class SystemHost:
    """Host-side actions around the config engine.

    With dry_run=True every mutating action is only logged.
    """

    def __init__(self, dry_run: bool = False, package: str = DEFAULT_PACKAGE,
                 service: str = DEFAULT_SERVICE):
        self.dry_run = dry_run
        self.package = package
        self.service = service

    def _run(self, cmd: List[str], timeout: int = COMMAND_TIMEOUT,
             env: Optional[dict] = None) -> subprocess.CompletedProcess:
        logger.debug("Running: %s", " ".join(cmd))
        try:
            return subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                                  check=True, timeout=timeout, env=env)
        except subprocess.CalledProcessError as e:
            detail = (e.stderr or b"").decode("utf-8", "ignore").strip()
            raise HostError(f"Command failed: {' '.join(cmd)}" + (f"\n{detail}" if detail else "")) from e
        except subprocess.TimeoutExpired as e:
            raise HostError(f"Command timed out after {timeout}s: {' '.join(cmd)}") from e
        except OSError as e:
            raise HostError(f"Could not run {cmd[0]}: {e}") from e

    def require_root(self) -> None:
        if self.dry_run:
            logger.debug("[DRY RUN] Skipping root check")
            return
        if os.geteuid() != 0:
            raise HostError("This script must be run as root.")

    def install_package(self) -> None:
        if self.dry_run:
            logger.info("[DRY RUN] Would install package: %s", self.package)
            return
        env = dict(os.environ, DEBIAN_FRONTEND="noninteractive")
        self._run(["apt-get", "update"], timeout=INSTALL_TIMEOUT, env=env)
        self._run(["apt-get", "install", "-y", self.package], timeout=INSTALL_TIMEOUT, env=env)

    def default_interface(self) -> str:
        out = self._run(["ip", "route", "show", "default"]).stdout.decode("utf-8", "ignore")
        iface = parse_default_interface(out)
        if not iface:
            raise HostError("Could not determine the default network interface.")
        return iface

    def backup(self, path: Path) -> Optional[Path]:
        if not path.is_file():
            return None
        dst = path.with_name(f"{path.name}.bak-{time.strftime('%Y%m%d%H%M%S')}")
        if self.dry_run:
            logger.info("[DRY RUN] Would back up %s to %s", path, dst)
            return dst
        try:
            shutil.copy2(path, dst)
        except OSError as e:
            raise HostError(f"Failed to back up {path}: {e}") from e
        logger.debug("Backed up %s to %s", path, dst)
        return dst

    def write_config(self, path: Path, text: str) -> None:
        if self.dry_run:
            logger.info("[DRY RUN] Would write %s (%d lines)", path, len(text.splitlines()))
            sys.stdout.write(text)
            return
        tmp = path.with_name(path.name + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(text)
            os.chmod(tmp, 0o644)
            os.replace(tmp, path)
        except OSError as e:
            raise HostError(f"Failed to write {path}: {e}") from e

    def restart_service(self) -> None:
        if self.dry_run:
            logger.info("[DRY RUN] Would reload systemd, enable and restart %s", self.service)
            return
        self._run(["systemctl", "daemon-reload"])
        self._run(["systemctl", "enable", self.service])
        self._run(["systemctl", "restart", self.service])

# ---------------- CLI ----------------
class TagFormatter(logging.Formatter):
    """Prefix records with [INFO]/[WARN]/[ERROR]/[DEBUG]."""
    TAGS = {"WARNING": "WARN", "CRITICAL": "ERROR"}

    def format(self, record: logging.LogRecord) -> str:
        record.tag = self.TAGS.get(record.levelname, record.levelname)
        return super().format(record)

class ConsoleHandler(logging.StreamHandler):
    """Progress and summary to stdout; warnings and errors to stderr."""

    def emit(self, record: logging.LogRecord) -> None:
        # resolved per record so redirected sys streams are honoured
        self.stream = sys.stdout if record.levelno < logging.WARNING else sys.stderr
        super().emit(record)

def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    if quiet:
        level, fmt = logging.ERROR, '[%(tag)s] %(message)s'
    elif verbose:
        level, fmt = logging.DEBUG, '%(asctime)s [%(tag)s] %(message)s'
    else:
        level, fmt = logging.INFO, '[%(tag)s] %(message)s'
    handler = ConsoleHandler()
    handler.setFormatter(TagFormatter(fmt))
    for old in list(logger.handlers):
        logger.removeHandler(old)
    logger.addHandler(handler)
    logger.setLevel(level)

class ArgumentParser(argparse.ArgumentParser):
    """argparse that raises UsageError instead of exiting with status 2."""

    def error(self, message):
        if "expected one argument" in message:
            raise MissingOptionArgument(message)
        raise UnknownOption(message)

def build_parser() -> ArgumentParser:
    ap = ArgumentParser(description="Install and configure a Dante SOCKS server that only admits allow-listed clients.")
    ap.add_argument("-a", dest="add", action="append", default=[], metavar="IP_OR_CIDR[,...]",
                    help="Comma-separated client IPs/CIDRs to add to the allow-list (repeatable). "
                         "At least one allow-list entry must remain.")
    ap.add_argument("-r", dest="remove", action="append", default=[], metavar="IP_OR_CIDR[,...]",
                    help="Comma-separated client IPs/CIDRs to remove from the allow-list (repeatable).")
    ap.add_argument("-p", dest="port", default=str(DEFAULT_PORT), metavar="PORT",
                    help=f"Port Dante should listen on (default: {DEFAULT_PORT}).")
    ap.add_argument("--config", default=DEFAULT_CONFIG_PATH, help=f"Dante config file (default: {DEFAULT_CONFIG_PATH}).")
    ap.add_argument("--no-install", action="store_true", help=f"Do not install the {DEFAULT_PACKAGE} package.")
    ap.add_argument("--dry-run", action="store_true",
                    help="Log host actions instead of running them and print the config to stdout.")
    ap.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging.")
    ap.add_argument("--quiet", "-q", action="store_true", help="Suppress non-error output.")
    return ap

def run(args: argparse.Namespace, host) -> AllowList:
    """Validate, reconcile, render and apply; returns the allow-list written."""
    port = parse_port(args.port)
    to_add = split_tokens(args.add)
    to_remove = split_tokens(args.remove)

    host.require_root()

    config_path = Path(args.config)
    current = extract_allow_list(read_config(config_path))
    logger.debug("Existing allow-list: %s", " ".join(current) or "(none)")
    allow_list = reconcile(current, to_add, to_remove)

    if args.no_install:
        logger.debug("Skipping package installation")
    else:
        logger.info("Installing Dante server package...")
        host.install_package()

    iface = host.default_interface()

    logger.info("Backing up existing configuration (if any)...")
    host.backup(config_path)

    logger.info("Writing new configuration...")
    host.write_config(config_path, render_config(port, iface, allow_list))

    logger.info("Restarting Dante service...")
    host.restart_service()

    logger.info("Dante server is configured to listen on port %d", port)
    if to_add:
        logger.info("Added clients: %s", " ".join(to_add))
    if to_remove:
        logger.info("Removed clients: %s", " ".join(to_remove))
    logger.info("Allowed clients: %s", " ".join(allow_list))
    logger.info("Default interface: %s", iface)
    return allow_list

# ---------------- Main ----------------
def main(argv: Optional[List[str]] = None, host=None) -> int:
    ap = build_parser()
    try:
        args = ap.parse_args(argv)
    except UsageError as e:
        sys.stderr.write(f"[ERROR] {e}\n")
        ap.print_usage(sys.stderr)
        return e.exit_code

    configure_logging(args.verbose, args.quiet)
    if args.dry_run:
        logger.info("[DRY RUN MODE] No changes will be made to the system")
    if host is None:
        host = SystemHost(dry_run=args.dry_run)

    try:
        run(args, host)
    except DanteSetupError as e:
        logger.error("%s", e)
        if isinstance(e, NoAllowListEntries):
            ap.print_usage(sys.stderr)
        return e.exit_code
    return 0

if __name__ == "__main__":
    sys.exit(main())
