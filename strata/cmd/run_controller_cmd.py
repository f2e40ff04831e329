"""
This is the main entrypoint command for running the controller
"""
# Standard
import argparse
import os
import signal

# First Party
import alog

# Local
from .. import config
from ..controller import Controller
from ..store import DryRunObjectStore, KubeObjectStore
from .base import CmdBase, parse_resource_dir

log = alog.use_channel("MAIN")


class RunControllerCmd(CmdBase):
    __doc__ = __doc__

    ## Interface ##

    def add_subparser(
        self,
        subparsers: argparse._SubParsersAction,
    ) -> argparse.ArgumentParser:
        parser = subparsers.add_parser("run", help=__doc__)
        runtime_args = parser.add_argument_group("Runtime Configuration")
        runtime_args.add_argument(
            "--resource_dir",
            "-r",
            default=None,
            help="(dry run) Path to a directory of yaml files that should exist in the cluster",
        )
        runtime_args.add_argument(
            "--max_concurrent_reconciles",
            "-w",
            type=int,
            default=None,
            help="Number of reconcile workers. Overrides reconcile.max_concurrent_reconciles",
        )
        return parser

    def cmd(self, args: argparse.Namespace):
        # Validate args
        assert args.resource_dir is None or (
            config.dry_run and os.path.isdir(args.resource_dir)
        ), "Can only specify --resource_dir with dry run and it must point to a valid directory"

        if config.dry_run:
            log.info("Running DRY RUN")
            store = DryRunObjectStore(resources=parse_resource_dir(args.resource_dir))
        else:  # pragma: no cover
            store = KubeObjectStore()

        controller = Controller(
            store=store, max_concurrent_reconciles=args.max_concurrent_reconciles
        )

        # Register the signal handler to stop the controller
        def do_stop(*_, **__):  # pragma: no cover
            controller.stop()

        signal.signal(signal.SIGINT, do_stop)
        signal.signal(signal.SIGTERM, do_stop)

        log.info("Starting Controller")
        controller.start()
        controller.wait()

        # All done!
        log.info("SHUTTING DOWN")
