"""
Resolve the effective configuration of a single ManagedObject from a directory
of manifests and print it along with the source of every value
"""
# Standard
import argparse
import sys

# Third Party
import yaml

# First Party
import alog

# Local
from .. import config
from ..exceptions import StrataError
from ..managed_object import ManagedObject, managed_object_api_version
from ..resolver import ConfigResolver
from ..store import DryRunObjectStore
from ..types import EffectiveConfig
from .base import CmdBase, parse_resource_dir

log = alog.use_channel("MAIN")


class ResolveCmd(CmdBase):
    __doc__ = __doc__

    ## Interface ##

    def add_subparser(
        self,
        subparsers: argparse._SubParsersAction,
    ) -> argparse.ArgumentParser:
        parser = subparsers.add_parser("resolve", help=__doc__)
        runtime_args = parser.add_argument_group("Resolve Configuration")
        runtime_args.add_argument(
            "--resource_dir",
            "-r",
            required=True,
            help="Path to a directory of yaml files holding the ManagedObject and its sources",
        )
        runtime_args.add_argument(
            "--name",
            "-n",
            required=True,
            help="Name of the ManagedObject to resolve",
        )
        runtime_args.add_argument(
            "--namespace",
            "-N",
            default="default",
            help="Namespace of the ManagedObject to resolve",
        )
        return parser

    def cmd(self, args: argparse.Namespace) -> int:
        store = DryRunObjectStore(resources=parse_resource_dir(args.resource_dir))
        try:
            success, resource = store.get_object_current_state(
                kind=config.managed_object.kind,
                name=args.name,
                namespace=args.namespace,
                api_version=managed_object_api_version(),
            )
            if not success or resource is None:
                sys.stderr.write(
                    f"{config.managed_object.kind} {args.namespace}/{args.name} not found\n"
                )
                return 1

            managed_object = ManagedObject.from_resource(resource)
            effective_config = ConfigResolver(store).resolve(managed_object)
        except StrataError as err:
            log.debug("Resolution failed: %s", err, exc_info=True)
            sys.stderr.write(f"{err.kind.value}: {err}\n")
            return 1

        sys.stdout.write(yaml.safe_dump(self.render(effective_config), sort_keys=True))
        return 0

    ## Impl ##

    @staticmethod
    def render(effective_config: EffectiveConfig) -> dict:
        """Get the printable representation of an EffectiveConfig"""
        return {
            "object": str(effective_config.object_id),
            "version": effective_config.version,
            "config": effective_config.data,
            "provenance": {
                key: {"source": value.source_kind.value, "origin": value.origin}
                for key, value in effective_config.values.items()
            },
            "sourceVersions": dict(effective_config.source_versions),
        }
