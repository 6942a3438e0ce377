"""esmon: command line front end for the Embedded Serial Monitor.

Commands:
- monitor: stream a port to stdout until a stop condition fires
- serve: stream a port and publish events over WebSocket
- ports: list serial ports
- run: run a flash/compile tool while holding the port lock
- installs: show recent install log entries
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import signal
import sys
from typing import Any, Optional

from .broadcaster import QueueSubscriber
from .config import MonitorConfig
from .errors import PortBusyError, SessionStartError
from .implementations import RealSerialPort
from .log_config import configure_logging
from .supervisor import Supervisor


def _print(obj: Any, *, json_mode: bool) -> None:
    if json_mode:
        print(json.dumps(obj, indent=2, sort_keys=True))
    else:
        if isinstance(obj, str):
            print(obj)
        else:
            print(json.dumps(obj, indent=2, sort_keys=True))


def _print_event(event: dict[str, Any], *, json_mode: bool) -> None:
    if json_mode:
        print(json.dumps(event, sort_keys=True), flush=True)
        return
    if event.get("type") == "serial":
        prefix = "! " if event.get("stream") == "stderr" else ""
        print(f"{prefix}{event.get('line', '')}", flush=True)
    elif event.get("type") == "install_log":
        print(f"[install_log] {event.get('key')}", flush=True)


def _install_stop_handler(supervisor: Supervisor, token: str) -> None:
    loop = asyncio.get_running_loop()

    def _request_stop() -> None:
        loop.create_task(supervisor.stop_monitor(token=token))

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop)
        except (NotImplementedError, RuntimeError):
            pass  # add_signal_handler is unavailable on Windows event loops


async def _stream(supervisor: Supervisor, args: argparse.Namespace, *, echo: bool) -> dict[str, Any]:
    subscriber = QueueSubscriber(maxsize=10000)
    supervisor.broadcaster.add_subscriber(subscriber)
    token = await supervisor.start_monitor(
        args.port,
        baud=args.baud,
        auto_baud=not args.no_auto_baud,
        max_seconds=args.max_seconds,
        max_lines=args.max_lines,
        stop_pattern=args.stop_on,
        detect_reboot=not args.no_detect_reboot,
        raw=getattr(args, "raw", False),
    )
    _install_stop_handler(supervisor, token)

    while True:
        event = await subscriber.get()
        if echo:
            _print_event(event, json_mode=args.json)
        if event.get("type") == "serial_end" and event.get("token") == token:
            break

    summary = await supervisor.wait_monitor(token)
    result = summary.to_dict() if summary else {"token": token}
    result["health"] = supervisor.health_report(args.port)
    supervisor.broadcaster.remove_subscriber(subscriber)
    return result


def cmd_monitor(args: argparse.Namespace, config: MonitorConfig) -> int:
    async def _main() -> dict[str, Any]:
        supervisor = Supervisor(config)
        try:
            return await _stream(supervisor, args, echo=True)
        finally:
            await supervisor.close()

    try:
        result = asyncio.run(_main())
    except (ValueError, PortBusyError, SessionStartError) as e:
        _print({"ok": False, "error": str(e)}, json_mode=args.json)
        return 2
    _print(result, json_mode=args.json)
    return 0 if result.get("ok") else 1


def cmd_serve(args: argparse.Namespace, config: MonitorConfig) -> int:
    from .ws_server import serve_events

    async def _main() -> dict[str, Any]:
        supervisor = Supervisor(config)
        server = await serve_events(supervisor.broadcaster, args.host, args.ws_port)
        print(f"esmon streaming {args.port} at ws://{args.host}:{args.ws_port}", file=sys.stderr)
        try:
            return await _stream(supervisor, args, echo=False)
        finally:
            server.close()
            await server.wait_closed()
            await supervisor.close()

    try:
        result = asyncio.run(_main())
    except (ValueError, PortBusyError, SessionStartError) as e:
        _print({"ok": False, "error": str(e)}, json_mode=args.json)
        return 2
    _print(result, json_mode=args.json)
    return 0 if result.get("ok") else 1


def cmd_ports(*, json_mode: bool) -> int:
    ports = [dataclasses.asdict(p) for p in RealSerialPort.list_ports()]
    if json_mode:
        _print({"ports": ports}, json_mode=True)
        return 0
    if not ports:
        print("No serial ports found.")
    for p in ports:
        print(f"{p['device']}\t{p['description']}\t{p['hwid']}")
    return 0


def cmd_run(args: argparse.Namespace, config: MonitorConfig) -> int:
    argv = [a for a in args.argv if a != "--"]
    if not argv:
        _print({"ok": False, "error": "no command given"}, json_mode=args.json)
        return 2

    async def _main():
        supervisor = Supervisor(config)
        try:
            return await supervisor.run_tool(argv, port=args.port, operation=args.operation, timeout_s=args.timeout)
        finally:
            await supervisor.close()

    result = asyncio.run(_main())
    if args.json:
        _print(result.to_dict(), json_mode=True)
    else:
        sys.stdout.write(result.stdout)
        sys.stderr.write(result.stderr)
        if result.error:
            print(f"ERROR: {result.error}", file=sys.stderr)
    if result.exit_code is None:
        return 2
    return result.exit_code


def cmd_installs(limit: int, config: MonitorConfig, *, json_mode: bool) -> int:
    from .implementations import RealClock
    from .install_log import InstallLogStore

    entries = InstallLogStore(config.install_log_path, RealClock()).get_recent(limit)
    _print({"entries": entries}, json_mode=json_mode)
    return 0


def _add_monitor_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--port", "-p", required=True, help="Serial port path")
    p.add_argument("--baud", "-b", type=int, default=None, help="Baud rate (default: 115200)")
    p.add_argument("--no-auto-baud", action="store_true", help="Skip baud negotiation")
    p.add_argument("--max-seconds", type=float, default=0, help="Stop after N seconds (0 = no limit)")
    p.add_argument("--max-lines", type=int, default=0, help="Stop after N lines (0 = no limit)")
    p.add_argument("--stop-on", default=None, help="Stop when a line matches this regex")
    p.add_argument("--no-detect-reboot", action="store_true", help="Do not flag reboots in the summary")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="esmon", description="Embedded Serial Monitor")
    parser.add_argument("--json", action="store_true", help="Machine-readable output")
    parser.add_argument("--config", default=None, help="YAML config file")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("monitor", help="Stream a serial port to stdout")
    _add_monitor_args(p)
    p.add_argument("--raw", action="store_true", help="Pass bytes through (base64 events)")

    p = sub.add_parser("serve", help="Stream a serial port over WebSocket")
    _add_monitor_args(p)
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--ws-port", type=int, default=8765)

    sub.add_parser("ports", help="List serial ports")

    p = sub.add_parser("run", help="Run a flash/compile tool while holding the port lock")
    p.add_argument("--port", "-p", default=None)
    p.add_argument("--operation", default="upload", choices=["upload", "flash", "compile"])
    p.add_argument("--timeout", type=float, default=None)
    p.add_argument("argv", nargs=argparse.REMAINDER, help="Tool command line (after --)")

    p = sub.add_parser("installs", help="Show recent install log entries")
    p.add_argument("--limit", type=int, default=5)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for the ``esmon`` CLI.

    Args:
        argv: Argument list to parse.  Defaults to ``sys.argv[1:]``.

    Returns:
        Exit code: 0 on success, non-zero on error.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = MonitorConfig.load(args.config)
    except (OSError, ValueError) as e:
        _print({"ok": False, "error": str(e)}, json_mode=args.json)
        return 2

    if args.cmd == "monitor":
        return cmd_monitor(args, config)
    if args.cmd == "serve":
        return cmd_serve(args, config)
    if args.cmd == "ports":
        return cmd_ports(json_mode=args.json)
    if args.cmd == "run":
        return cmd_run(args, config)
    if args.cmd == "installs":
        return cmd_installs(args.limit, config, json_mode=args.json)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
