"""Command-line interface for UMH Link."""

from __future__ import annotations

import argparse
import logging
import sys
import threading
import time
from typing import List, Optional

from tqdm import tqdm

from . import SERIAL_BAUD_RATE, SERIAL_PORT, VALID_BAUD_RATES
from .context import DeviceContext
from .controller import DeviceController
from .exceptions import UMHLinkError
from .protocol import CommandType, DeviceStatus, Frame, parse_hex_payload
from .scanner import PortScanner, ProbeResult, candidate_ports
from .transport import list_ports

_COMMAND_NAMES = {
    "set-point": CommandType.SET_POINT,
    "enable-disable": CommandType.ENABLE_DISABLE,
    "get-status": CommandType.GET_STATUS,
    "ping": CommandType.PING,
}


def _format_status(status: DeviceStatus) -> str:
    return f"Voltage: {status.voltage:.2f} V  Temperature: {status.temperature:.1f} C"


def open_controller(args) -> Optional[DeviceController]:
    """Connect to ``--serial-port`` if given, otherwise scan for the device."""
    controller = DeviceController(baud_rate=args.baud_rate)
    port = args.serial_port or SERIAL_PORT
    if port:
        controller.connect(port)
        return controller
    if controller.scan_and_connect(context="CLI discovery"):
        return controller
    print("Error: No UMH device found on any serial port.", file=sys.stderr)
    return None


def command_ports(args) -> int:
    """List available serial ports."""
    ports = list_ports()
    if not ports:
        print("No serial ports found.")
        return 0
    probed = set(candidate_ports())
    print("Available serial ports:")
    for p in ports:
        marker = " " if p.device in probed else "x"
        print(f"  [{marker}] {p.device} - {p.description}")
    return 0


def command_scan(args) -> int:
    """Probe serial ports for the device and print the one that answered."""
    try:
        scanner = PortScanner(
            baud_rate=args.baud_rate,
            open_timeout_s=args.open_timeout / 1000.0,
            ping_window_s=args.ping_window / 1000.0,
        )
        candidates = candidate_ports(args.candidates or None, scanner.exclude)
        progress = None
        on_probe_done = None
        if args.progress:
            progress = tqdm(total=len(candidates), unit="port", desc="Probing serial ports")
            lock = threading.Lock()

            def on_probe_done(result: ProbeResult) -> None:
                with lock:
                    progress.update(1)

        try:
            result = scanner.scan(candidates, context="CLI scan", on_probe_done=on_probe_done)
        finally:
            if progress is not None:
                progress.close()

        if args.verbose:
            for probe in result.probes:
                print(f"  {probe.port}: {probe.outcome.value} {probe.detail}".rstrip())

        if not result.found:
            print("No UMH device found.", file=sys.stderr)
            return 1
        result.session.dispose()
        print(result.port)
        return 0

    except UMHLinkError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def command_ping(args) -> int:
    """Ping the device and wait for the echo."""
    try:
        controller = open_controller(args)
        if controller is None:
            return 1
        with controller:
            echoed = threading.Event()
            sent: List[int] = []

            def on_frame(frame: Frame) -> None:
                if sent and frame.is_ping_ack_for(sent[0]):
                    echoed.set()

            controller.frame_received += on_frame
            start = time.monotonic()
            value = controller.ping()
            if value is None:
                print(f"Error: Could not send PING on {controller.port}", file=sys.stderr)
                return 1
            sent.append(value)
            if not echoed.wait(args.timeout / 1000.0):
                print(f"No PING_ACK for 0x{value:02X} from {controller.port}", file=sys.stderr)
                return 1
            elapsed_ms = (time.monotonic() - start) * 1000.0
            print(f"PING_ACK 0x{value:02X} from {controller.port} in {elapsed_ms:.1f} ms")
            return 0

    except UMHLinkError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def command_status(args) -> int:
    """Request the device status once and print it."""
    try:
        controller = open_controller(args)
        if controller is None:
            return 1
        with controller:
            received = threading.Event()
            controller.status_received += lambda status: received.set()
            if not controller.request_status():
                print(f"Error: Could not send GET_STATUS on {controller.port}", file=sys.stderr)
                return 1
            if not received.wait(args.timeout / 1000.0):
                print(f"No status from {controller.port} within {args.timeout} ms", file=sys.stderr)
                return 1
            print(_format_status(controller.last_status))
            return 0

    except UMHLinkError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def command_send(args) -> int:
    """Send one command frame and print the frames that come back."""
    try:
        command = _COMMAND_NAMES.get(args.frame_command)
        if command is None:
            command = int(args.frame_command, 0)
        payload = parse_hex_payload(args.payload) if args.payload else b""
    except ValueError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1

    try:
        controller = open_controller(args)
        if controller is None:
            return 1
        with controller:
            controller.frame_received += lambda frame: print(frame, flush=True)
            if not controller.send_command(command, payload):
                print(f"Error: Could not send frame on {controller.port}", file=sys.stderr)
                return 1
            time.sleep(args.wait / 1000.0)
            return 0

    except UMHLinkError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def command_monitor(args) -> int:
    """Poll the device status and print every update."""
    try:
        with DeviceContext(
            baud_rate=args.baud_rate,
            poll_interval_s=args.interval,
            poll_initial_delay_s=0.0,
        ) as device:
            device.controller.status_received += (
                lambda status: print(_format_status(status), flush=True)
            )
            device.controller.error_received += (
                lambda code: print(f"Device error 0x{code:02X}", file=sys.stderr, flush=True)
            )
            if not device.start(port=args.serial_port):
                print("Error: No UMH device found on any serial port.", file=sys.stderr)
                return 1
            deadline = time.monotonic() + args.duration if args.duration > 0 else None
            try:
                while device.controller.is_connected:
                    if deadline is not None and time.monotonic() >= deadline:
                        break
                    time.sleep(0.1)
            except KeyboardInterrupt:
                pass
            return 0 if device.controller.is_connected else 1

    except UMHLinkError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def _add_serial_args(parser: argparse.ArgumentParser, with_port: bool = True) -> None:
    parser.add_argument(
        "--baud-rate", type=int, default=SERIAL_BAUD_RATE, choices=VALID_BAUD_RATES,
        help=f"Baud rate (default: {SERIAL_BAUD_RATE})",
    )
    if with_port:
        parser.add_argument(
            "--serial-port", type=str, default=None,
            help="Serial port path (e.g. /dev/ttyUSB0 or COM3). "
                 "Skips discovery. Defaults to $UMH_PORT.",
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="UMH Link - talk to a UMH device over a serial port"
    )
    parser.add_argument(
        "--log-level", default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Library log level (default: WARNING)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # Port listing
    ports_parser = subparsers.add_parser("ports", help="List available serial ports")
    ports_parser.set_defaults(func=command_ports)

    # Discovery
    scan_parser = subparsers.add_parser("scan", help="Find the port the device is attached to")
    scan_parser.add_argument(
        "candidates", nargs="*", metavar="PORT",
        help="Ports to probe (default: every serial port)",
    )
    scan_parser.add_argument(
        "--open-timeout", type=int, default=100,
        help="Per-port open timeout in milliseconds (default: 100)",
    )
    scan_parser.add_argument(
        "--ping-window", type=int, default=200,
        help="How long each port gets to echo the ping, in milliseconds (default: 200)",
    )
    scan_parser.add_argument(
        "--progress", action="store_true", default=False,
        help="Show a progress bar while probing",
    )
    scan_parser.add_argument(
        "--verbose", "-v", action="store_true", default=False,
        help="Print the outcome for every probed port",
    )
    _add_serial_args(scan_parser, with_port=False)
    scan_parser.set_defaults(func=command_scan)

    # Ping
    ping_parser = subparsers.add_parser("ping", help="Ping the device")
    ping_parser.add_argument(
        "--timeout", type=int, default=500,
        help="How long to wait for PING_ACK, in milliseconds (default: 500)",
    )
    _add_serial_args(ping_parser)
    ping_parser.set_defaults(func=command_ping)

    # Status
    status_parser = subparsers.add_parser("status", help="Read voltage and temperature once")
    status_parser.add_argument(
        "--timeout", type=int, default=1000,
        help="How long to wait for the status, in milliseconds (default: 1000)",
    )
    _add_serial_args(status_parser)
    status_parser.set_defaults(func=command_status)

    # Raw command
    send_parser = subparsers.add_parser("send", help="Send one command frame")
    send_parser.add_argument(
        "frame_command", metavar="COMMAND",
        help="One of: " + ", ".join(_COMMAND_NAMES) + ", or a numeric type code (e.g. 0x03)",
    )
    send_parser.add_argument(
        "--payload", type=str, default=None,
        help="Payload as hex, e.g. '01 02 ff'",
    )
    send_parser.add_argument(
        "--wait", type=int, default=500,
        help="How long to print incoming frames afterwards, in milliseconds (default: 500)",
    )
    _add_serial_args(send_parser)
    send_parser.set_defaults(func=command_send)

    # Monitor
    monitor_parser = subparsers.add_parser("monitor", help="Poll and print status continuously")
    monitor_parser.add_argument(
        "--interval", type=float, default=1.0,
        help="Seconds between status requests (default: 1.0)",
    )
    monitor_parser.add_argument(
        "--duration", type=float, default=0.0,
        help="Stop after this many seconds (default: run until interrupted)",
    )
    _add_serial_args(monitor_parser)
    monitor_parser.set_defaults(func=command_monitor)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
