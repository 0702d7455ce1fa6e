# Copyright Red Hat
#
# autosnap/_autosnap.py - Automatic snapshot global definitions
#
# This file is part of the autosnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Global definitions for the top-level autosnap package.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import SysLogHandler
from os.path import basename
from typing import Optional, Tuple
import logging
import string
import re

# Syslog style log levels not provided by the logging module.
LOG_NOTICE = 25
LOG_ALERT = 55
LOG_EMERGENCY = 60

logging.addLevelName(LOG_NOTICE, "NOTICE")
logging.addLevelName(LOG_ALERT, "ALERT")
logging.addLevelName(LOG_EMERGENCY, "EMERGENCY")

# Autosnap debugging subsystem mask (legacy interface)
AUTOSNAP_DEBUG_MANAGER = 1
AUTOSNAP_DEBUG_COMMAND = 2
AUTOSNAP_DEBUG_MOUNTS = 4
AUTOSNAP_DEBUG_BTRFS = 8
AUTOSNAP_DEBUG_ALL = (
    AUTOSNAP_DEBUG_MANAGER
    | AUTOSNAP_DEBUG_COMMAND
    | AUTOSNAP_DEBUG_MOUNTS
    | AUTOSNAP_DEBUG_BTRFS
)

# Autosnap debugging subsystem names
AUTOSNAP_SUBSYSTEM_MANAGER = "autosnap.manager"
AUTOSNAP_SUBSYSTEM_COMMAND = "autosnap.command"
AUTOSNAP_SUBSYSTEM_MOUNTS = "autosnap.mounts"
AUTOSNAP_SUBSYSTEM_BTRFS = "autosnap.btrfs"

_DEBUG_MASK_TO_SUBSYSTEM = {
    AUTOSNAP_DEBUG_MANAGER: AUTOSNAP_SUBSYSTEM_MANAGER,
    AUTOSNAP_DEBUG_COMMAND: AUTOSNAP_SUBSYSTEM_COMMAND,
    AUTOSNAP_DEBUG_MOUNTS: AUTOSNAP_SUBSYSTEM_MOUNTS,
    AUTOSNAP_DEBUG_BTRFS: AUTOSNAP_SUBSYSTEM_BTRFS,
}

_debug_subsystems = set()

#: Default snapshot name prefix
DEFAULT_PREFIX = "btrfs-auto-snap"

#: Default name of the per-volume snapshot storage directory
DEFAULT_SNAPSHOT_DIR = ".snapshot-store"

#: File system type managed by autosnap
BTRFS_FSTYPE = "btrfs"

#: Target name meaning "every mounted btrfs volume"
ALL_VOLUMES = "//"

#: Continue with later volumes after a failed btrfs callout
ON_ERROR_CONTINUE = "continue"
#: Stop at the first failed btrfs callout
ON_ERROR_ABORT = "abort"
ON_ERROR_POLICIES = (ON_ERROR_CONTINUE, ON_ERROR_ABORT)

# Exit status values returned from ``autosnap.command.main()``
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_USAGE = 128
EXIT_BAD_KEEP = 129
EXIT_BAD_PREFIX = 131
EXIT_NO_TARGETS = 133
EXIT_BAD_WILDCARD = 134
EXIT_NOT_FOUND = 138
EXIT_EXISTS = 139
EXIT_CALLOUT = 140

#: Characters allowed in a snapshot name prefix
AUTOSNAP_VALID_PREFIX_CHARS = set(
    string.ascii_lowercase + string.ascii_uppercase + string.digits + "_.: -"
)

#: Timestamp format embedded in snapshot names (UTC, minute resolution)
SNAPSHOT_TIME_FORMAT = "%Y-%m-%d-%H%M"

# Fields: prefix_label-timestamp
SNAPSHOT_NAME_FORMAT = "%s_%s-%s"

_TIMESTAMP_SUFFIX_RE = re.compile(r"-(?P<ts>[0-9]{4}-[0-9]{2}-[0-9]{2}-[0-9]{4})$")

_KEEP_RE = re.compile(r"^[0-9]+$")


class SubsystemFilter(logging.Filter):
    """
    Filters DEBUG records based on a set of enabled subsystem names.
    Non-DEBUG records or DEBUG records without a 'subsystem' attribute
    are always passed through.
    """

    def __init__(self, name=""):
        super().__init__(name)
        self.enabled_subsystems = set(_debug_subsystems)

    def filter(self, record):
        if record.levelno != logging.DEBUG:
            return True

        if not hasattr(record, "subsystem"):
            return True

        return record.subsystem in self.enabled_subsystems

    def set_debug_subsystems(self, subsystems):
        """Sets the collection of subsystems to allow."""
        self.enabled_subsystems = set(subsystems)


def set_debug_mask(mask):
    """
    Set the debug mask for the ``autosnap`` package.

    :param mask: the logical OR of the ``AUTOSNAP_DEBUG_*``
                 values to log.
    :rtype: None
    """
    # pylint: disable=global-statement
    global _debug_subsystems

    if mask < 0 or mask > AUTOSNAP_DEBUG_ALL:
        raise ValueError(f"Invalid autosnap debug mask: {mask}")

    enabled_subsystems = []
    for flag, subsystem_name in _DEBUG_MASK_TO_SUBSYSTEM.items():
        if mask & flag:
            enabled_subsystems.append(subsystem_name)

    autosnap_log = logging.getLogger("autosnap")
    for handler in autosnap_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                f.set_debug_subsystems(enabled_subsystems)

    _debug_subsystems = set(enabled_subsystems)


class VerbosityFilter(logging.Filter):
    """
    Gate console records by level according to the quiet, verbose and
    debug settings.

    Records at ERROR and above are always passed to the error stream.
    WARNING records go to the error stream unless quiet. NOTICE records go
    to the output stream unless quiet, and INFO records only when verbose
    and not quiet. DEBUG records are passed to the error stream only when
    debugging is enabled.
    """

    def __init__(self, quiet=False, verbose=False, debug=False, output=False):
        super().__init__()
        self.quiet = quiet
        self.verbose = verbose
        self.debug = debug
        self.output = output

    def filter(self, record):
        level = record.levelno
        if level >= logging.ERROR:
            return not self.output
        if level >= logging.WARNING:
            return not self.output and not self.quiet
        if level >= LOG_NOTICE:
            return self.output and not self.quiet
        if level >= logging.INFO:
            return self.output and self.verbose and not self.quiet
        return not self.output and self.debug


class ConsoleFormatter(logging.Formatter):
    """
    Prefix console messages with a readable level tag. NOTICE and INFO
    messages are printed bare.
    """

    _level_tags = {
        LOG_EMERGENCY: "Emergency: ",
        LOG_ALERT: "Alert: ",
        logging.CRITICAL: "Critical: ",
        logging.ERROR: "Error: ",
        logging.WARNING: "Warning: ",
        logging.DEBUG: "Debug: ",
    }

    def format(self, record):
        return self._level_tags.get(record.levelno, "") + super().format(record)


class AutosnapSysLogHandler(SysLogHandler):
    """
    A ``SysLogHandler`` that knows the syslog priorities for the NOTICE,
    ALERT and EMERGENCY levels.
    """

    priority_map = dict(
        SysLogHandler.priority_map,
        NOTICE="notice",
        ALERT="alert",
        EMERGENCY="emerg",
    )


#
# Autosnap exception types
#


class AutosnapError(Exception):
    """
    Base class for autosnap errors.
    """

    exit_status = EXIT_FAILURE


class AutosnapSystemError(AutosnapError):
    """
    An error when calling the operating system.
    """


class AutosnapConfigError(AutosnapError):
    """
    An invalid value was found in the configuration file.
    """


class AutosnapPluginError(AutosnapError):
    """
    An error initialising or using a snapshot provider.
    """


class AutosnapUsageError(AutosnapError):
    """
    The command line could not be parsed.
    """

    exit_status = EXIT_USAGE


class AutosnapKeepError(AutosnapError):
    """
    The retention count is not a positive integer.
    """

    exit_status = EXIT_BAD_KEEP


class AutosnapPrefixError(AutosnapError):
    """
    The snapshot name prefix contains characters outside the allowed set.
    """

    exit_status = EXIT_BAD_PREFIX


class AutosnapEmptyTargetsError(AutosnapError):
    """
    No target volumes were given.
    """

    exit_status = EXIT_NO_TARGETS


class AutosnapWildcardError(AutosnapError):
    """
    The all volumes token was combined with other target names.
    """

    exit_status = EXIT_BAD_WILDCARD


class AutosnapNotFoundError(AutosnapError):
    """
    The requested object does not exist: for e.g. a target that is not a
    mounted btrfs volume, or a missing btrfs command.
    """

    exit_status = EXIT_NOT_FOUND


class AutosnapExistsError(AutosnapError):
    """
    A snapshot with the name to be created already exists.
    """

    exit_status = EXIT_EXISTS


class AutosnapCalloutError(AutosnapError):
    """
    An error calling out to an external program.
    """

    exit_status = EXIT_CALLOUT


def validate_keep(value):
    """
    Validate a retention count given as a string.

    :param value: The ``--keep`` argument value.
    :returns: The retention count as an ``int``.
    :raises AutosnapKeepError: If ``value`` is not a positive integer.
    """
    if not _KEEP_RE.match(str(value)) or int(value) <= 0:
        raise AutosnapKeepError(
            f"The --keep parameter must be a positive integer: '{value}'"
        )
    return int(value)


def validate_prefix(value):
    """
    Validate a snapshot name prefix.

    :param value: The prefix to check.
    :returns: ``value`` unchanged.
    :raises AutosnapPrefixError: If ``value`` contains a character outside
                                 ``[A-Za-z0-9_.: -]``.
    """
    bad_chars = sorted(set(value) - AUTOSNAP_VALID_PREFIX_CHARS)
    if bad_chars:
        raise AutosnapPrefixError(
            f"The --prefix parameter must be alphanumeric: '{value}' "
            f"contains {', '.join(repr(c) for c in bad_chars)}"
        )
    return value


# pylint: disable=too-many-instance-attributes
@dataclass(frozen=True)
class Configuration:
    """
    Settings for a single autosnap run. Built once from the command line
    and configuration file and never modified.
    """

    debug: bool = False
    dry_run: bool = False
    keep: Optional[int] = None
    label: str = ""
    prefix: str = DEFAULT_PREFIX
    syslog: bool = False
    verbose: bool = False
    quiet: bool = False
    writable: bool = False
    on_error: str = ON_ERROR_CONTINUE
    snapshot_dir: str = DEFAULT_SNAPSHOT_DIR

    def __post_init__(self):
        if self.keep is not None and self.keep <= 0:
            raise AutosnapKeepError(
                f"The --keep parameter must be a positive integer: '{self.keep}'"
            )
        validate_prefix(self.prefix)
        if self.on_error not in ON_ERROR_POLICIES:
            raise AutosnapConfigError(f"Invalid error policy: '{self.on_error}'")


@dataclass(frozen=True)
class SnapshotEntry:
    """
    A snapshot reported by the volume management tool.
    """

    subvol_id: int
    generation: int
    path: str

    @property
    def name(self):
        """The last path component of this snapshot."""
        return basename(self.path)


def format_snapshot_name(prefix: str, label: str, timestamp: datetime) -> str:
    """
    Format structured snapshot name.

    Format a snapshot name as ``<prefix>_<label>-<YYYY-MM-DD>-<HHMM>``
    using the UTC time of ``timestamp``.
    """
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc)
    return SNAPSHOT_NAME_FORMAT % (
        prefix,
        label,
        timestamp.strftime(SNAPSHOT_TIME_FORMAT),
    )


def parse_snapshot_name(name: str, prefix: str) -> Optional[Tuple[str, datetime]]:
    """
    Attempt to parse an autosnap snapshot name.

    Returns a tuple of (label, timestamp) if ``name`` is a snapshot name
    created with ``prefix``, or ``None`` otherwise.
    """
    if not name.startswith(prefix + "_"):
        return None
    base = name.removeprefix(prefix + "_")
    match = _TIMESTAMP_SUFFIX_RE.search(base)
    if not match:
        return None
    try:
        timestamp = datetime.strptime(match.group("ts"), SNAPSHOT_TIME_FORMAT)
    except ValueError:
        return None
    label = base[: match.start()]
    return (label, timestamp.replace(tzinfo=timezone.utc))


__all__ = [
    "LOG_NOTICE",
    "LOG_ALERT",
    "LOG_EMERGENCY",
    "AUTOSNAP_DEBUG_MANAGER",
    "AUTOSNAP_DEBUG_COMMAND",
    "AUTOSNAP_DEBUG_MOUNTS",
    "AUTOSNAP_DEBUG_BTRFS",
    "AUTOSNAP_DEBUG_ALL",
    "AUTOSNAP_SUBSYSTEM_MANAGER",
    "AUTOSNAP_SUBSYSTEM_COMMAND",
    "AUTOSNAP_SUBSYSTEM_MOUNTS",
    "AUTOSNAP_SUBSYSTEM_BTRFS",
    "DEFAULT_PREFIX",
    "DEFAULT_SNAPSHOT_DIR",
    "BTRFS_FSTYPE",
    "ALL_VOLUMES",
    "ON_ERROR_CONTINUE",
    "ON_ERROR_ABORT",
    "ON_ERROR_POLICIES",
    "EXIT_SUCCESS",
    "EXIT_FAILURE",
    "EXIT_USAGE",
    "EXIT_BAD_KEEP",
    "EXIT_BAD_PREFIX",
    "EXIT_NO_TARGETS",
    "EXIT_BAD_WILDCARD",
    "EXIT_NOT_FOUND",
    "EXIT_EXISTS",
    "EXIT_CALLOUT",
    "AUTOSNAP_VALID_PREFIX_CHARS",
    "SNAPSHOT_TIME_FORMAT",
    # Debug logging - subsystem name interface
    "SubsystemFilter",
    # Debug logging - legacy interface
    "set_debug_mask",
    # Console and syslog output
    "VerbosityFilter",
    "ConsoleFormatter",
    "AutosnapSysLogHandler",
    "AutosnapError",
    "AutosnapSystemError",
    "AutosnapConfigError",
    "AutosnapPluginError",
    "AutosnapUsageError",
    "AutosnapKeepError",
    "AutosnapPrefixError",
    "AutosnapEmptyTargetsError",
    "AutosnapWildcardError",
    "AutosnapNotFoundError",
    "AutosnapExistsError",
    "AutosnapCalloutError",
    "validate_keep",
    "validate_prefix",
    "Configuration",
    "SnapshotEntry",
    "format_snapshot_name",
    "parse_snapshot_name",
]
