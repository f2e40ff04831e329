#!/usr/bin/env python
"""
The main module provides the executable entrypoint for strata
"""

# Standard
from typing import Dict, List, Optional, Tuple
import argparse
import sys

# Third Party
import yaml

# First Party
import aconfig
import alog

# Local
from . import config
from .cmd import CmdBase, ResolveCmd, RunControllerCmd
from .config.config import library_config, validation_config
from .config.validation import get_invalid_params
from .log_format import StrataJsonFormatter

## Constants ###################################################################

log = alog.use_channel("MAIN")

## Helpers #####################################################################


def _parse_bool(value: str) -> bool:
    return str(value).strip().lower() in ("true", "1", "yes", "on")


def add_library_config_args(parser, config_obj=None, path=None):
    """Automatically add args for all elements of the library config"""
    path = path or []
    setters = {}
    config_obj = config_obj if config_obj is not None else library_config
    for key, val in config_obj.items():
        sub_path = path + [key]

        # If this is a nested arg, recurse
        if isinstance(val, aconfig.AttributeAccessDict):
            sub_setters = add_library_config_args(parser, config_obj=val, path=sub_path)
            for dest_name, nested_path in sub_setters.items():
                setters[dest_name] = nested_path

        # Otherwise, add an argument explicitly
        else:
            arg_name = ".".join(sub_path)
            dest_name = "_".join(sub_path)
            kwargs = {
                "default": val,
                "dest": dest_name,
                "help": f"Library config override for {arg_name} (see strata.config)",
            }
            if isinstance(val, list):
                kwargs["nargs"] = "*"
            elif isinstance(val, bool):
                # --flag alone means true, --flag false turns it off
                kwargs["nargs"] = "?"
                kwargs["const"] = True
                kwargs["type"] = _parse_bool
            elif val is None:
                # Unset values take whatever type the yaml parses to
                kwargs["type"] = yaml.safe_load
            else:
                kwargs["type"] = type(val)

            if (
                f"--{arg_name}"
                not in parser._option_string_actions  # pylint: disable=protected-access
            ):
                parser.add_argument(f"--{arg_name}", **kwargs)
                setters[dest_name] = sub_path
    return setters


def update_library_config(args, setters):
    """Update the library config values based on the parsed arguments"""
    for dest_name, config_path in setters.items():
        config_obj = library_config
        while len(config_path) > 1:
            config_obj = config_obj[config_path[0]]
            config_path = config_path[1:]
        config_obj[config_path[0]] = getattr(args, dest_name)


def add_command(
    subparsers: argparse._SubParsersAction,
    cmd: CmdBase,
) -> Tuple[argparse.ArgumentParser, Dict[str, List[str]]]:
    """Add the subparser and set up the default fun call"""
    parser = cmd.add_subparser(subparsers)
    parser.set_defaults(func=cmd.cmd)
    library_args = parser.add_argument_group("Library Configuration")
    library_config_setters = add_library_config_args(library_args)
    return parser, library_config_setters


## Main ########################################################################


def main(argv: Optional[List[str]] = None) -> int:
    """The main module provides the executable entrypoint for strata"""
    parser = argparse.ArgumentParser(description=__doc__)

    # Add the subcommands
    subparsers = parser.add_subparsers(help="Available commands", dest="command")
    command_setters = {}
    run_parser, command_setters["run"] = add_command(subparsers, RunControllerCmd())
    _, command_setters["resolve"] = add_command(subparsers, ResolveCmd())

    # Use a preliminary parser to check for the presence of a command and fall
    # back to the default command if not found
    check_parser = argparse.ArgumentParser(add_help=False)
    check_parser.add_argument("command", nargs="?")
    check_args, _ = check_parser.parse_known_args(argv)
    if check_args.command not in subparsers.choices:
        args = run_parser.parse_args(argv)
        args.command = "run"
    else:
        args = parser.parse_args(argv)

    # Provide overrides to the library configs
    update_library_config(args, command_setters[args.command])
    invalid_params = get_invalid_params(library_config, validation_config)
    if invalid_params:
        parser.error(f"Invalid library config overrides: {invalid_params}")

    # Reconfigure logging
    alog.configure(
        default_level=config.log_level,
        filters=config.log_filters,
        formatter=StrataJsonFormatter() if config.log_json else "pretty",
        thread_id=config.log_thread_id,
    )

    # Run the command's function
    return args.func(args) or 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
