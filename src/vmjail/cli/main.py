"""vmjail command-line entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError

from ..common.errors import MissingInput, VmJailError
from ..common.observability import configure_logging, configure_tracing, shutdown_tracing
from ..common.settings import VmJailSettings
from ..preflight import check_environment
from ..vm.lifecycle import VmLifecycleManager

Handler = Callable[[argparse.Namespace, VmJailSettings], Awaitable[int]]


def build_manager(settings: VmJailSettings) -> VmLifecycleManager:
    return VmLifecycleManager(settings)


def _require_id(args: argparse.Namespace) -> str:
    if not args.id:
        raise MissingInput("--id is required")
    return args.id


async def create_command(args: argparse.Namespace, settings: VmJailSettings) -> int:
    manager = build_manager(settings)
    template = Path(args.template) if args.template else settings.template_path
    status = await manager.create(_require_id(args), args.cni or settings.cni_profile, template)
    print(f"{status.vm_id}: {status.phase.value}")
    return 0


async def destroy_command(args: argparse.Namespace, settings: VmJailSettings) -> int:
    manager = build_manager(settings)
    vm_id = _require_id(args)
    await manager.destroy(vm_id, args.cni or settings.cni_profile, timeout=args.timeout)
    print(f"{vm_id}: destroyed")
    return 0


async def stop_command(args: argparse.Namespace, settings: VmJailSettings) -> int:
    manager = build_manager(settings)
    vm_id = _require_id(args)
    stopped = await manager.stop(vm_id, timeout=args.timeout)
    print(f"{vm_id}: {'stopped' if stopped else 'not running'}")
    return 0


async def create_network_command(args: argparse.Namespace, settings: VmJailSettings) -> int:
    manager = build_manager(settings)
    descriptor = await manager.network.create(_require_id(args), args.cni or settings.cni_profile)
    print(json.dumps(descriptor.model_dump(mode="json"), indent=2, sort_keys=True))
    return 0


async def destroy_network_command(args: argparse.Namespace, settings: VmJailSettings) -> int:
    manager = build_manager(settings)
    vm_id = await manager.network.destroy(_require_id(args), args.cni or settings.cni_profile)
    print(f"{vm_id}: network destroyed")
    return 0


async def status_command(args: argparse.Namespace, settings: VmJailSettings) -> int:
    manager = build_manager(settings)
    status = manager.status(_require_id(args))
    if args.json:
        print(json.dumps(status.to_dict(), indent=2, sort_keys=True))
    else:
        print(f"{status.vm_id}: {status.phase.value}")
        for key in ("running", "pid", "network_provisioned", "namespace_present", "config_present", "jail_present"):
            print(f"  {key}: {getattr(status, key)}")
        if status.error:
            print(f"  error: {status.error}")
    return 0


async def check_command(args: argparse.Namespace, settings: VmJailSettings) -> int:
    for name, location in check_environment(settings).items():
        print(f"{name}: {location}")
    return 0


def _add_identity(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--id", help="VM identity (also the network namespace name)")


def _add_cni(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--cni", help="CNI network profile (default: VMJAIL_CNI_PROFILE)")


def _add_timeout(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--timeout", type=float, help="Seconds to wait for the VM to exit")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vmjail", description="Manage jailed Firecracker microVMs")
    subparsers = parser.add_subparsers(dest="command")

    create_parser = subparsers.add_parser("create", aliases=["create-vm"], help="Provision and boot a microVM")
    _add_identity(create_parser)
    _add_cni(create_parser)
    create_parser.add_argument("--template", help="Firecracker config template (default: VMJAIL_TEMPLATE)")
    create_parser.set_defaults(handler=create_command, preflight=True)

    destroy_parser = subparsers.add_parser(
        "destroy",
        aliases=["destroy-vm"],
        help="Stop a microVM and remove its jail and network",
    )
    _add_identity(destroy_parser)
    _add_cni(destroy_parser)
    _add_timeout(destroy_parser)
    destroy_parser.set_defaults(handler=destroy_command, preflight=True)

    stop_parser = subparsers.add_parser("stop", aliases=["stop-vm"], help="Gracefully shut a microVM down")
    _add_identity(stop_parser)
    _add_timeout(stop_parser)
    stop_parser.set_defaults(handler=stop_command, preflight=True)

    network_parser = subparsers.add_parser("create-network", help="Create a namespace and attach it via CNI")
    _add_identity(network_parser)
    _add_cni(network_parser)
    network_parser.set_defaults(handler=create_network_command, preflight=True)

    teardown_parser = subparsers.add_parser(
        "destroy-network",
        help="Detach and delete a namespace (accepts a unique identity prefix)",
    )
    _add_identity(teardown_parser)
    _add_cni(teardown_parser)
    teardown_parser.set_defaults(handler=destroy_network_command, preflight=True)

    status_parser = subparsers.add_parser("status", help="Show the observed state of a microVM")
    _add_identity(status_parser)
    status_parser.add_argument("--json", action="store_true", help="Output raw JSON")
    status_parser.set_defaults(handler=status_command, preflight=False)

    check_parser = subparsers.add_parser("check", help="Verify required tools and directories")
    check_parser.set_defaults(handler=check_command, preflight=False)

    subparsers.add_parser("help", help="Show this help message")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    handler: Optional[Handler] = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 0

    try:
        settings = VmJailSettings()
    except ValidationError as exc:
        print(f"error: invalid configuration: {exc.errors()[0]['msg']}", file=sys.stderr)
        return 1

    configure_logging("vmjail", settings.log_level, settings.log_format)
    configure_tracing(
        service_name="vmjail",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
    try:
        if args.preflight:
            check_environment(settings)
        return asyncio.run(handler(args, settings))
    except VmJailError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"error: {exc.strerror or exc}", file=sys.stderr)
        return 1
    finally:
        shutdown_tracing()


if __name__ == "__main__":
    raise SystemExit(main())
