#!/usr/bin/env python3
"""ServerNap - Main Entry Point

Keeps a Minecraft server asleep until a player tries to join, then starts it
and stops it again over RCON once nobody has been online for a while.
"""

import asyncio
import argparse
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import requests

from servernap import __version__
from servernap.activation_controller import ActivationController, EXIT_FAILURE, EXIT_OK
from servernap.config_manager import ConfigManager, build_run_config
from servernap.errors import AuthError, RconError
from servernap.rcon_client import send_stop_command
from servernap.status_server import start_status_server


RCON_OPTIONS = ('--rcon-port', '--rcon-pass')


def setup_logging(config: dict, debug: bool = False) -> None:
    """Set up logging configuration."""
    log_config = config.get("logging", {})
    level_name = "DEBUG" if debug else log_config.get("level", "INFO").upper()
    log_level = getattr(logging, level_name)
    log_file = log_config.get("file")
    max_size_mb = log_config.get("max_size_mb", 10)
    backup_count = log_config.get("backup_count", 3)
    console_output = log_config.get("console_output", True)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if not log_file:
        return

    # File handler with rotation
    try:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=int(max_size_mb * 1024 * 1024),
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        logging.info(f"Logging configured - Level: {level_name}, File: {log_file}")

    except OSError as e:
        print(f"Warning: Could not set up file logging: {e}", file=sys.stderr)
        print("Continuing with console logging only", file=sys.stderr)


def extract_options(server_args: Sequence[str], names: Sequence[str]) -> Tuple[Dict[str, str], List[str]]:
    """
    Pull ``--name value`` and ``--name=value`` options out of the server arguments.

    Everything after a literal ``--`` is passed to the server untouched.
    """
    found = {}
    rest = []
    passthrough = False
    i = 0

    while i < len(server_args):
        arg = server_args[i]
        if passthrough:
            rest.append(arg)
        elif arg == '--':
            passthrough = True
        elif arg in names and i + 1 < len(server_args):
            found[arg] = server_args[i + 1]
            i += 1
        elif '=' in arg and arg.split('=', 1)[0] in names:
            name, value = arg.split('=', 1)
            found[name] = value
        else:
            rest.append(arg)
        i += 1

    return found, rest


async def main_service(args, config: dict) -> int:
    """Run the listen / start / idle-stop lifecycle."""
    run_config = build_run_config(
        config,
        host=args.host,
        port=args.port,
        command=args.cmd,
        args=args.args,
        rcon_port=args.rcon_port,
        rcon_pass=args.rcon_pass
    )

    logging.info(f"Starting ServerNap {__version__}")
    logging.info(f"Configuration loaded from: {args.config}")

    controller = ActivationController(run_config)
    controller.install_signal_handlers()

    status_runner = None
    if config["monitoring"]["health_check_enabled"]:
        status_port = config["monitoring"]["status_endpoint_port"]
        try:
            status_runner = await start_status_server(controller, status_port)
        except OSError as e:
            logging.warning(f"Failed to start status server: {e}")

    try:
        exit_code = await controller.run()
    finally:
        if status_runner:
            await status_runner.cleanup()

    if controller.failure:
        stage, error = controller.failure
        print(f"Fatal error during {stage}: {error}", file=sys.stderr)

    logging.info("ServerNap stopped")
    return exit_code


async def stop_service(args, config: dict) -> int:
    """Send a single stop command over RCON."""
    host = args.rcon_host or config["rcon"]["host"]
    timeout = config["rcon"]["timeout_seconds"]

    try:
        await send_stop_command(host, args.rcon_port, args.rcon_pass, timeout)
    except AuthError as e:
        print(f"Fatal error during auth: {e}", file=sys.stderr)
        return EXIT_FAILURE
    except RconError as e:
        print(f"Fatal error during stop: {e}", file=sys.stderr)
        return EXIT_FAILURE

    return EXIT_OK


def create_example_config(path: str) -> None:
    """Create an example configuration file."""
    config_manager = ConfigManager()
    config_manager.save_example_config(path)
    print(f"Example configuration saved to: {path}")


def validate_config(path: str) -> int:
    """Validate configuration file."""
    try:
        config_manager = ConfigManager(path)
        config = config_manager.load_config()
    except ValueError as e:
        print(f"Configuration validation failed: {e}", file=sys.stderr)
        return EXIT_FAILURE

    print(f"Configuration file {path} is valid")

    print("\nConfiguration Summary:")
    print(f"  MOTD: {config['minecraft']['motd_text']}")
    print(f"  Server Icon: {config['minecraft']['server_icon'] or 'None'}")
    print(f"  RCON Host: {config['rcon']['host']}")
    print(f"  Poll Interval: {config['timing']['poll_interval_seconds']} seconds")
    print(f"  Idle Timeout: {config['timing']['idle_timeout_seconds']} seconds")
    print(f"  Relisten After Stop: {config['lifecycle']['relisten_after_stop']}")
    return EXIT_OK


def show_status(config_path: str) -> int:
    """Show current status of a running instance."""
    config_manager = ConfigManager(config_path)
    config = config_manager.load_config()

    if not config["monitoring"]["health_check_enabled"]:
        print("Status endpoint is disabled in configuration")
        return EXIT_FAILURE

    port = config["monitoring"]["status_endpoint_port"]
    url = f"http://localhost:{port}/status"

    try:
        response = requests.get(url, timeout=5)
        status_data = response.json()
    except (requests.RequestException, ValueError) as e:
        print(f"Failed to get status: {e}")
        return EXIT_FAILURE

    print("ServerNap Status:")
    print(f"  Status: {status_data['status']}")

    if 'servernap' in status_data:
        status = status_data['servernap']
        print(f"  State: {status['state']}")
        print(f"  Listening: {status['listening']}")
        print(f"  Server PID: {status['server_pid']}")
        print(f"  Players Online: {status['player_count']}")
        if status['idle_seconds'] is not None:
            print(f"  Idle For: {status['idle_seconds']:.0f} seconds")

        stats = status['statistics']
        print(f"  Activations: {stats['activations']}")
        print(f"  Status Pings: {stats['status_pings']}")
        print(f"  Login Attempts: {stats['login_attempts']}")

    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="servernap",
        description="Start a Minecraft server when a player joins, stop it when idle",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s listen 0.0.0.0 25565 java -Xmx4G -jar server.jar nogui --rcon-port 25575 --rcon-pass secret
  %(prog)s stop --rcon-port 25575 --rcon-pass secret
  %(prog)s --config /etc/servernap.json status
  %(prog)s create-config
        """
    )

    parser.add_argument(
        '--config', '-c',
        default='config.json',
        help='Configuration file path (default: config.json)'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )
    parser.add_argument(
        '--version', '-v',
        action='version',
        version=f'ServerNap {__version__}'
    )

    subparsers = parser.add_subparsers(dest='action', required=True)

    listen = subparsers.add_parser('listen', help='Listen on a port and start the server on the first join')
    listen.add_argument('--rcon-port', type=int, help='RCON port of the server')
    listen.add_argument('--rcon-pass', help='RCON password of the server')
    listen.add_argument('host', help='Host/IP to bind')
    listen.add_argument('port', type=int, help='Port to listen on')
    listen.add_argument('cmd', help="Command to launch (e.g. 'java' or path to a start script)")
    listen.add_argument('args', nargs=argparse.REMAINDER,
                        help='Arguments for the command; use -- before arguments that clash with ours')

    stop = subparsers.add_parser('stop', help='Immediately stop the server via RCON')
    stop.add_argument('--rcon-port', type=int, required=True, help='RCON port')
    stop.add_argument('--rcon-pass', required=True, help='RCON password')
    stop.add_argument('--rcon-host', help='RCON host (default: rcon.host from the config file)')

    subparsers.add_parser('status', help='Show the status of a running instance')
    subparsers.add_parser('create-config', help='Create an example configuration file')
    subparsers.add_parser('validate-config', help='Validate the configuration file')

    return parser


def parse_args(argv=None) -> argparse.Namespace:
    """Parse the command line, including RCON options given after the server arguments."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.action == 'listen':
        found, args.args = extract_options(args.args, RCON_OPTIONS)
        if '--rcon-port' in found:
            try:
                args.rcon_port = int(found['--rcon-port'])
            except ValueError:
                parser.error(f"argument --rcon-port: invalid int value: {found['--rcon-port']!r}")
        if '--rcon-pass' in found:
            args.rcon_pass = found['--rcon-pass']
        if args.rcon_port is None or args.rcon_pass is None:
            parser.error("listen requires --rcon-port and --rcon-pass")

    return args


def main(argv=None) -> int:
    """Main entry point with command line argument handling."""
    args = parse_args(argv)

    if args.action == 'create-config':
        create_example_config(args.config + '.example')
        return EXIT_OK

    if args.action == 'validate-config':
        return validate_config(args.config)

    try:
        config = ConfigManager(args.config).load_config()
    except ValueError as e:
        print(f"Fatal error during config: {e}", file=sys.stderr)
        return EXIT_FAILURE

    if args.action == 'status':
        return show_status(args.config)

    setup_logging(config, debug=args.debug)

    try:
        if args.action == 'stop':
            return asyncio.run(stop_service(args, config))
        return asyncio.run(main_service(args, config))
    except KeyboardInterrupt:
        print("\nInterrupted")
        return EXIT_OK
    except ValueError as e:
        print(f"Fatal error during config: {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == '__main__':
    sys.exit(main())
