from typing import Any, Callable, Dict, List, Optional
import argparse
import json
import logging
import sys

from rich.console import Console
from rich.table import Table

from .config import BridgeSettings, load_settings, parse_usb_id
from .service import PrinterService


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s: %(message)s"


def _configure_logging(level_name: str) -> None:
    level = getattr(logging, (level_name or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[logging.StreamHandler()])


def _make_service(settings: BridgeSettings, hotplug: bool = False) -> PrinterService:
    # Imported lazily so --help works on machines without libusb
    from ..usb.pyusb_host import PyUsbHost

    host = PyUsbHost(hotplug_interval=settings.hotplug_interval if hotplug else 0)
    return PrinterService(host, settings)


def _connect(service: PrinterService, settings: BridgeSettings) -> Dict[str, Any]:
    if settings.vendor_id is not None:
        return service.connect_usb(settings.vendor_id, settings.product_id)
    return service.connect()


def _print_result(result: Dict[str, Any]) -> int:
    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("success") else 1


def _render_devices(result: Dict[str, Any]) -> int:
    console = Console()
    if not result.get("success"):
        console.print(f"[red]{result.get('error', 'Device listing failed')}[/red]")
        return 1
    devices = result.get("devices") or []
    if not devices:
        console.print("No USB devices detected.")
        return 0
    table = Table(title="USB devices")
    for column in ("", "VID", "PID", "Model", "Manufacturer / product", "Path", "Interfaces"):
        table.add_column(column)
    for dev in devices:
        classes = ", ".join(
            f"#{intf['number']} cls={intf['class']}" for intf in dev.get("interfaces", [])
        )
        table.add_row(
            "*" if dev.get("selected") else "",
            f"0x{dev['vendor_id']:04x}",
            f"0x{dev['product_id']:04x}",
            dev.get("model", ""),
            " ".join(p for p in (dev.get("manufacturer"), dev.get("product")) if p),
            dev.get("device_name", ""),
            classes,
        )
    console.print(table)
    console.print("* = device the bridge would pick")
    return 0


def _serve(service: PrinterService, settings: BridgeSettings, host: str, port: int) -> int:
    from .web_server import create_app

    app = create_app(service, api_token=settings.api_token)
    if host not in {"127.0.0.1", "localhost", "::1"} and not settings.api_token:
        logging.warning("Serving on a non-loopback address without TB_API_TOKEN")
    try:
        from waitress import serve  # type: ignore
        print(f"Starting server on {host}:{port}")
        serve(app, host=host, port=port)
    except ImportError:
        print(
            "WARNING: Waitress not installed. "
            "Using Flask development server (not suitable for production)"
        )
        print("Install waitress with: pip install waitress")
        print(f"Starting development server on {host}:{port}")
        app.run(host=host, port=port)
    return 0


def _build_parser(settings: BridgeSettings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="USB ESC/POS receipt printer bridge")
    parser.add_argument("--log-level", default=settings.log_level, help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--vid", help="Printer vendor ID (hex like 0x0b1b or decimal)")
    parser.add_argument("--pid", help="Printer product ID; 0 matches any product")
    parser.add_argument("--attempts", type=int, default=settings.max_attempts,
                        help="Connection attempts before giving up")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("devices", help="List USB devices and the one that would be picked")
    sub.add_parser("info", help="Connect and show printer information")

    serve = sub.add_parser("serve", help="Run the HTTP bridge")
    serve.add_argument("--host", default=settings.host)
    serve.add_argument("--port", type=int, default=settings.port)
    serve.add_argument("--no-connect", action="store_true", help="Do not connect at startup")

    text = sub.add_parser("print", help="Print a line of text")
    text.add_argument("text")
    text.add_argument("--bold", action="store_true")
    text.add_argument("--align", choices=["left", "center", "right"], default="left")
    text.add_argument("--size", choices=["normal", "double"], default="normal")
    text.add_argument("--cut", action="store_true", help="Feed and cut afterwards")

    feed = sub.add_parser("feed", help="Feed paper")
    feed.add_argument("lines", type=int, nargs="?", default=3)

    cut = sub.add_parser("cut", help="Cut paper")
    cut.add_argument("--partial", action="store_true")

    sub.add_parser("drawer", help="Kick the cash drawer")

    barcode = sub.add_parser("barcode", help="Print a CODE128 barcode")
    barcode.add_argument("data")
    barcode.add_argument("--height", type=int, default=80)

    qr = sub.add_parser("qr", help="Print a QR code")
    qr.add_argument("data")
    qr.add_argument("--size", type=int, default=6)

    raw = sub.add_parser("raw", help="Send raw bytes given as hex")
    raw.add_argument("hex")

    sub.add_parser("test-page", help="Print a self-test receipt")
    return parser


def _print_job(args: argparse.Namespace) -> Optional[Callable[[PrinterService], Dict[str, Any]]]:
    if args.command == "info":
        return lambda s: s.get_printer_info()
    if args.command == "print":
        def _job(s: PrinterService) -> Dict[str, Any]:
            result = s.print_formatted(args.text, bold=args.bold, align=args.align, size=args.size)
            if result.get("success") and args.cut:
                s.feed(3)
                return s.cut()
            return result
        return _job
    if args.command == "feed":
        return lambda s: s.feed(args.lines)
    if args.command == "cut":
        return lambda s: s.cut(partial=args.partial)
    if args.command == "drawer":
        return lambda s: s.open_drawer()
    if args.command == "barcode":
        return lambda s: s.print_barcode(args.data, height=args.height)
    if args.command == "qr":
        return lambda s: s.print_qr(args.data, size=args.size)
    if args.command == "raw":
        try:
            data = bytes.fromhex(args.hex)
        except ValueError:
            raise SystemExit(f"Not a hex string: {args.hex!r}")
        return lambda s: s.send_raw_command(data)
    if args.command == "test-page":
        return lambda s: s.test_print()
    return None


def run(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the printer bridge."""
    settings = load_settings()
    parser = _build_parser(settings)
    args = parser.parse_args(argv)

    _configure_logging(args.log_level)
    if args.vid:
        vid = parse_usb_id(args.vid)
        if vid is None:
            parser.error(f"invalid --vid {args.vid!r}")
        settings.vendor_id = vid
    if args.pid:
        pid = parse_usb_id(args.pid)
        if pid is None:
            parser.error(f"invalid --pid {args.pid!r}")
        settings.product_id = pid
    settings.max_attempts = max(1, args.attempts)

    if not args.command:
        parser.print_help()
        return 2

    if args.command == "devices":
        service = _make_service(settings)
        try:
            return _render_devices(service.list_devices())
        finally:
            service.close()

    if args.command == "serve":
        service = _make_service(settings, hotplug=True)
        try:
            if not args.no_connect:
                result = _connect(service, settings)
                if not result.get("success"):
                    logging.warning(f"Startup connect failed: {result.get('error')}")
            return _serve(service, settings, args.host, args.port)
        finally:
            service.close()

    job = _print_job(args)
    if job is None:
        parser.print_help()
        return 2
    service = _make_service(settings)
    try:
        result = _connect(service, settings)
        if not result.get("success"):
            return _print_result(result)
        return _print_result(job(service))
    finally:
        service.close()


if __name__ == "__main__":
    sys.exit(run())
