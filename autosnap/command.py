# Copyright Red Hat
#
# autosnap/command.py - Automatic snapshot command interface
#
# This file is part of the autosnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""The ``autosnap.command`` module provides the autosnap command line
interface: option parsing, logging set up, configuration file loading
and the ``main()`` entry point used by the ``autosnap`` script.

A typical crontab entry keeps 24 hourly snapshots of every mounted
btrfs volume::

    0 * * * * root autosnap --syslog --quiet --label=hourly --keep=24 //
"""
from argparse import Action, ArgumentParser
from configparser import ConfigParser, Error as ConfigParserError
from os.path import basename
from typing import Dict, List, Optional, Tuple
import logging
import sys
import os

from autosnap import (
    AUTOSNAP_DEBUG_ALL,
    AUTOSNAP_SUBSYSTEM_COMMAND,
    ALL_VOLUMES,
    DEFAULT_PREFIX,
    DEFAULT_SNAPSHOT_DIR,
    EXIT_FAILURE,
    EXIT_SUCCESS,
    EXIT_USAGE,
    ON_ERROR_CONTINUE,
    ON_ERROR_POLICIES,
    AutosnapError,
    AutosnapConfigError,
    AutosnapSysLogHandler,
    Configuration,
    ConsoleFormatter,
    SubsystemFilter,
    VerbosityFilter,
    set_debug_mask,
    validate_keep,
    validate_prefix,
    __version__,
)
from autosnap.manager import Manager, check_target_names

_log = logging.getLogger(__name__)

_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_command(msg, *args, **kwargs):
    """A wrapper for command subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": AUTOSNAP_SUBSYSTEM_COMMAND}, **kwargs)


#: Default configuration file path
AUTOSNAP_CONF = "/etc/autosnap/autosnap.conf"

#: Configuration file section holding default option values
_CFG_DEFAULTS = "Defaults"
_CFG_PREFIX = "Prefix"
_CFG_SNAPSHOT_DIR = "SnapshotDirectory"
_CFG_ON_ERROR = "OnError"
_CFG_WRITABLE = "Writable"

#: Syslog socket
_SYSLOG_ADDRESS = "/dev/log"

# Ordered verbosity events recorded by ``_OrderedFlagAction``
_FLAG_DEBUG = "debug"
_FLAG_QUIET = "quiet"
_FLAG_VERBOSE = "verbose"
_FLAG_DRY_RUN = "dry_run"


class AutosnapArgumentParser(ArgumentParser):
    """
    An ``ArgumentParser`` that exits with ``EXIT_USAGE`` on errors.
    """

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


class _OrderedFlagAction(Action):
    """
    Store ``True`` in ``dest`` and record the flag in ``flag_order`` so
    that interacting flags can be applied in command line order.
    """

    def __init__(self, option_strings, dest, **kwargs):
        super().__init__(option_strings, dest, nargs=0, default=False, **kwargs)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        order = list(getattr(namespace, "flag_order", None) or [])
        order.append(self.dest)
        namespace.flag_order = order


def fold_verbosity(flag_order: List[str]) -> Tuple[bool, bool, bool]:
    """
    Apply the debug, quiet, verbose and dry-run flags in command line
    order, the last flag winning on conflicts.

    :param flag_order: The flags in the order they were given.
    :returns: A ``(debug, verbose, quiet)`` tuple.
    """
    debug = verbose = quiet = False
    for flag in flag_order:
        if flag == _FLAG_DEBUG:
            debug, verbose, quiet = True, True, False
        elif flag == _FLAG_QUIET:
            debug, verbose, quiet = False, False, True
        elif flag == _FLAG_VERBOSE:
            verbose, quiet = True, False
        elif flag == _FLAG_DRY_RUN:
            verbose = True
    return (debug, verbose, quiet)


def load_defaults(path: Optional[str] = None) -> Dict[str, object]:
    """
    Load default option values from the autosnap configuration file.

    :param path: The configuration file to read. Defaults to the value of
                 the ``AUTOSNAP_CONF`` environment variable, or
                 ``/etc/autosnap/autosnap.conf``.
    :returns: A dictionary of default values. A missing file gives an
              empty dictionary.
    :raises AutosnapConfigError: If the file is malformed or holds an
                                 invalid value.
    """
    path = path or os.getenv("AUTOSNAP_CONF", AUTOSNAP_CONF)
    defaults = {}
    if not os.path.exists(path):
        _log_debug_command("No configuration file at %s", path)
        return defaults

    cfg = ConfigParser()
    try:
        cfg.read(path, encoding="utf8")
    except ConfigParserError as err:
        raise AutosnapConfigError(f"Error reading {path}: {err}") from err

    if not cfg.has_section(_CFG_DEFAULTS):
        return defaults

    section = cfg[_CFG_DEFAULTS]
    if _CFG_PREFIX in section:
        defaults["prefix"] = validate_prefix(section[_CFG_PREFIX])
    if _CFG_SNAPSHOT_DIR in section:
        snapshot_dir = section[_CFG_SNAPSHOT_DIR]
        if not snapshot_dir or "/" in snapshot_dir or snapshot_dir in (".", ".."):
            raise AutosnapConfigError(
                f"Invalid {_CFG_SNAPSHOT_DIR} in {path}: '{snapshot_dir}'"
            )
        defaults["snapshot_dir"] = snapshot_dir
    if _CFG_ON_ERROR in section:
        on_error = section[_CFG_ON_ERROR]
        if on_error not in ON_ERROR_POLICIES:
            raise AutosnapConfigError(
                f"Invalid {_CFG_ON_ERROR} in {path}: '{on_error}' "
                f"(expected one of {', '.join(ON_ERROR_POLICIES)})"
            )
        defaults["on_error"] = on_error
    if _CFG_WRITABLE in section:
        try:
            defaults["writable"] = section.getboolean(_CFG_WRITABLE)
        except ValueError as err:
            raise AutosnapConfigError(
                f"Invalid {_CFG_WRITABLE} in {path}: {err}"
            ) from err

    _log_debug_command("Loaded defaults from %s: %s", path, defaults)
    return defaults


def build_configuration(cmd_args, defaults: Optional[Dict[str, object]] = None):
    """
    Build a ``Configuration`` from parsed command line arguments and
    configuration file defaults.

    :param cmd_args: The ``argparse.Namespace`` returned by the parser.
    :param defaults: Default values from ``load_defaults()``.
    :returns: A new ``Configuration``.
    :raises AutosnapKeepError: If ``--keep`` is not a positive integer.
    :raises AutosnapPrefixError: If ``--prefix`` contains invalid characters.
    """
    defaults = defaults or {}
    (debug, verbose, quiet) = fold_verbosity(getattr(cmd_args, "flag_order", None) or [])

    keep = validate_keep(cmd_args.keep) if cmd_args.keep is not None else None

    if cmd_args.prefix is not None:
        prefix = validate_prefix(cmd_args.prefix)
    else:
        prefix = defaults.get("prefix", DEFAULT_PREFIX)

    return Configuration(
        debug=debug,
        dry_run=cmd_args.dry_run,
        keep=keep,
        label=cmd_args.label if cmd_args.label is not None else "",
        prefix=prefix,
        syslog=cmd_args.syslog,
        verbose=verbose,
        quiet=quiet,
        writable=cmd_args.writable or defaults.get("writable", False),
        on_error=cmd_args.on_error or defaults.get("on_error", ON_ERROR_CONTINUE),
        snapshot_dir=defaults.get("snapshot_dir", DEFAULT_SNAPSHOT_DIR),
    )


def setup_logging(debug=False, verbose=False, quiet=False):
    """
    Set up autosnap console logging.

    NOTICE and INFO messages are written to ``sys.stdout`` and all other
    messages to ``sys.stderr``, gated by ``VerbosityFilter``.
    """
    autosnap_log = logging.getLogger("autosnap")
    autosnap_log.setLevel(logging.DEBUG)
    if autosnap_log.hasHandlers():
        autosnap_log.handlers.clear()

    formatter = ConsoleFormatter("%(message)s")

    for stream, output in ((sys.stdout, True), (sys.stderr, False)):
        handler = logging.StreamHandler(stream)
        handler.setFormatter(formatter)
        handler.addFilter(
            VerbosityFilter(quiet=quiet, verbose=verbose, debug=debug, output=output)
        )
        handler.addFilter(SubsystemFilter("autosnap"))
        autosnap_log.addHandler(handler)


def setup_syslog(prefix):
    """
    Mirror all autosnap log records to the system log, tagged with
    ``prefix``.
    """
    try:
        handler = AutosnapSysLogHandler(
            address=_SYSLOG_ADDRESS, facility=AutosnapSysLogHandler.LOG_DAEMON
        )
    except OSError as err:
        _log_warn("Could not connect to syslog at %s: %s", _SYSLOG_ADDRESS, err)
        return
    handler.ident = f"{prefix}: "
    handler.setFormatter(logging.Formatter("%(message)s"))
    logging.getLogger("autosnap").addHandler(handler)


def shutdown_logging():
    """
    Shut down autosnap logging.
    """
    logging.shutdown()


def _autosnap_cmd(config: Configuration, names: List[str]):
    """
    Snapshot command handler.

    Take a snapshot of each target volume and prune old snapshots.

    :param config: The ``Configuration`` for this run.
    :param names: The positional target arguments.
    :returns: integer status code returned from ``main()``
    """
    check_target_names(names)
    manager = Manager(config)
    manager.run(names)
    return EXIT_SUCCESS


def _add_options(parser):
    """
    Add autosnap command line options.
    """
    parser.add_argument(
        "-d",
        "--debug",
        action=_OrderedFlagAction,
        help="Print debugging messages (implies --verbose)",
    )
    parser.add_argument(
        "-g",
        "--syslog",
        action="store_true",
        help="Write messages into the system log",
    )
    parser.add_argument(
        "-k",
        "--keep",
        metavar="NUM",
        type=str,
        help="Keep NUM recent snapshots and destroy older snapshots",
    )
    parser.add_argument(
        "-l",
        "--label",
        metavar="LAB",
        type=str,
        help="LAB is usually 'hourly', 'daily', or 'monthly'",
    )
    parser.add_argument(
        "-n",
        "--dry-run",
        action=_OrderedFlagAction,
        help="Print actions without actually doing anything (implies --verbose)",
    )
    parser.add_argument(
        "-p",
        "--prefix",
        metavar="PRE",
        type=str,
        help=f"PRE is '{DEFAULT_PREFIX}' by default",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action=_OrderedFlagAction,
        help="Suppress warnings and notices at the console",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action=_OrderedFlagAction,
        help="Print info messages",
    )
    parser.add_argument(
        "-w",
        "--writeable",
        "--writable",
        dest="writable",
        action="store_true",
        help="Create writable snapshots instead of read-only snapshots",
    )
    parser.add_argument(
        "--on-error",
        choices=ON_ERROR_POLICIES,
        default=None,
        help="Continue with the next volume or abort when a btrfs command fails",
    )
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        help="Report the version number of autosnap",
        version=__version__,
    )
    parser.add_argument(
        "names",
        metavar="NAME",
        type=str,
        nargs="*",
        help=f"A btrfs mount point to snapshot, or '{ALL_VOLUMES}' for all",
    )


def main(args):
    """
    Main entry point for autosnap.
    """
    parser = AutosnapArgumentParser(
        description="Automatic btrfs snapshots", prog=basename(args[0])
    )
    _add_options(parser)

    cmd_args = parser.parse_args(args[1:])

    (debug, verbose, quiet) = fold_verbosity(getattr(cmd_args, "flag_order", None) or [])
    setup_logging(debug=debug, verbose=verbose, quiet=quiet)
    if debug:
        set_debug_mask(AUTOSNAP_DEBUG_ALL)

    _log_debug_command("Parsed %s", " ".join(args[1:]))

    status = EXIT_FAILURE
    try:
        config = build_configuration(cmd_args, load_defaults())
        if config.syslog:
            setup_syslog(config.prefix)
        _log_debug_command("Using %s", config)
        status = _autosnap_cmd(config, cmd_args.names)
    except AutosnapError as err:
        _log_error("%s", err)
        status = err.exit_status
    except KeyboardInterrupt:  # pragma: no cover
        _log_info("Exiting on user cancel")
    # pylint: disable=broad-except
    except Exception as err:
        if debug:
            raise
        _log_error("Command failed: %s", err)

    shutdown_logging()
    return status


def run():
    """
    Console script entry point.
    """
    sys.exit(main(sys.argv))


# vim: set et ts=4 sw=4 :
