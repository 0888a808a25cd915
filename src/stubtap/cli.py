"""
StubTap CLI

Command-line interface for running a stub server outside a test run.

Commands:
    serve       - Start a stub server (blocks until Ctrl+C)
    validate    - Check a stub mapping file

Examples:
    # Serve stubs from a mapping file, proxy everything else to staging
    stubtap serve --mappings stubs.yaml --fallback https://staging.example.test

    # Browser proxy mode on a fixed port
    stubtap serve --proxy-mode --port 8089

    # Validate a mapping file
    stubtap validate stubs.yaml --resource-dir tests/resources
"""

import argparse
import logging
import sys
import threading

from .errors import StubTapError
from .mock import MockConfig, ServerInstance, load_mappings


def _build_config(args) -> MockConfig:
    config = MockConfig.from_yaml(args.config) if args.config else MockConfig()
    if args.host:
        config.host = args.host
    if args.resource_dir:
        config.resource_dirs = list(config.resource_dirs) + args.resource_dir
    if args.log_level:
        config.log_level = args.log_level
    return config


def cmd_serve(args, stop_event=None):
    """
    Start one stub server and block until interrupted.

    Args:
        args: Parsed command-line arguments
        stop_event: Optional event that ends the wait (used by tests)
    """
    print("🎭 StubTap Stub Server")

    try:
        config = _build_config(args)
        mappings = load_mappings(args.mappings, config.resource_dirs) if args.mappings else None
    except StubTapError as e:
        print(f"❌ {e}")
        sys.exit(1)

    instance = ServerInstance(config, proxy_mode=args.proxy_mode, name="stubtap-cli", port=args.port)

    try:
        base_url = instance.start()
    except StubTapError as e:
        print(f"❌ Failed to start stub server: {e}")
        sys.exit(1)

    try:
        if mappings:
            mappings.apply(instance)
            print(f"   Stubs loaded: {len(mappings.stubs)} from {mappings.source}")
        if args.fallback:
            instance.set_fallback(args.fallback)
    except StubTapError as e:
        print(f"❌ {e}")
        instance.stop()
        sys.exit(1)

    fallback = instance.registry.fallback
    print(f"   Base URL: {base_url}")
    print(f"   Proxy mode: {'on' if args.proxy_mode else 'off'}")
    if fallback:
        print(f"   Fallback: {fallback.response.proxy_base_url}")
    if config.admin_enabled:
        print(f"   Admin API: {base_url}{config.admin_prefix}/mappings")
    print()

    waiter = stop_event or threading.Event()
    try:
        while not waiter.wait(0.5):
            pass
    except KeyboardInterrupt:
        print("\n\n👋 Stub server stopped")
    finally:
        instance.stop()


def cmd_validate(args):
    """
    Load a mapping file and report what it contains.

    Args:
        args: Parsed command-line arguments
    """
    print("🔍 StubTap Mapping Validation")
    print(f"   File: {args.mapping_file}")

    try:
        mappings = load_mappings(args.mapping_file, args.resource_dir or [])
    except StubTapError as e:
        print(f"❌ {e}")
        for problem in getattr(e, 'problems', []) or []:
            print(f"   • {problem}")
        sys.exit(1)

    for rule in mappings.stubs:
        print(f"   • {rule.describe()}")
    if mappings.fallback:
        print(f"   • fallback -> {mappings.fallback}")
    print(f"✅ {len(mappings.stubs)} stubs valid")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='stubtap',
        description="StubTap - HTTP stub and proxy server for end-to-end tests",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve stubs with a fallback upstream
  %(prog)s serve --mappings stubs.yaml --fallback https://staging.example.test

  # Browser proxy mode
  %(prog)s serve --proxy-mode --port 8089

  # Validate a mapping file
  %(prog)s validate stubs.yaml
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # --- SERVE command ---
    serve_parser = subparsers.add_parser('serve', help='Start a stub server')
    serve_parser.add_argument('--host', help='Interface to bind (default: 127.0.0.1)')
    serve_parser.add_argument('-p', '--port', type=int, default=0, help='Port to bind (default: 0 = pick a free one)')
    serve_parser.add_argument('-m', '--mappings', help='YAML/JSON stub mapping file')
    serve_parser.add_argument('-f', '--fallback', help='Forward unmatched requests to this base URL')
    serve_parser.add_argument('--proxy-mode', action='store_true', help='Accept CONNECT and browser proxy requests')
    serve_parser.add_argument('-c', '--config', help='YAML server config file')
    serve_parser.add_argument('--resource-dir', action='append', help='Directory searched for body files (repeatable)')
    serve_parser.add_argument('--log-level', choices=['debug', 'info', 'warning', 'error'],
                              help='Log level (default: warning)')

    # --- VALIDATE command ---
    validate_parser = subparsers.add_parser('validate', help='Validate a stub mapping file')
    validate_parser.add_argument('mapping_file', help='YAML/JSON stub mapping file')
    validate_parser.add_argument('--resource-dir', action='append', help='Directory searched for body files (repeatable)')

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    level = getattr(args, 'log_level', None) or 'warning'
    logging.basicConfig(level=getattr(logging, level.upper()), format='%(asctime)s %(name)s %(levelname)s %(message)s')

    if args.command == 'serve':
        cmd_serve(args)
    elif args.command == 'validate':
        cmd_validate(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == '__main__':
    main()
